"""AES-256-GCM encryption of provider tokens and API keys at rest.

Ciphertexts look like ``base64(nonce):base64(tag):base64(payload)``. The key
for each configured secret is the SHA-256 digest of that secret, so a
ciphertext carries no key id: decryption simply tries every accepted secret.

Rotation: prepend the new secret (``ESP_TOKEN_SECRET``) and move the old one
to ``ESP_TOKEN_SECRET_PREVIOUS``, run ``scripts/reencrypt_credentials.py``,
then drop the previous secret.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from collections.abc import Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from esp_integration.domain.errors import DecryptionFailed, VaultMisconfigured


NONCE_LENGTH = 16
TAG_LENGTH = 16


def _derive_key(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise DecryptionFailed("Invalid encrypted token format") from exc


class CredentialVault:
    def __init__(self, secrets: Sequence[str]):
        cleaned: list[str] = []
        for secret in secrets:
            text = (secret or "").strip()
            if text and text not in cleaned:
                cleaned.append(text)
        self._keys = [_derive_key(secret) for secret in cleaned]

    @property
    def configured(self) -> bool:
        return bool(self._keys)

    @property
    def secret_count(self) -> int:
        return len(self._keys)

    def require_configured(self) -> None:
        if not self._keys:
            raise VaultMisconfigured("ESP_TOKEN_SECRET is required for ESP token encryption")

    def encrypt(self, plaintext: str) -> str:
        self.require_configured()
        nonce = os.urandom(NONCE_LENGTH)
        sealed = AESGCM(self._keys[0]).encrypt(nonce, plaintext.encode("utf-8"), None)
        payload, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join(base64.b64encode(part).decode("ascii") for part in (nonce, tag, payload))

    def decrypt(self, ciphertext: str) -> str:
        self.require_configured()
        parts = str(ciphertext or "").split(":")
        if len(parts) != 3 or not parts[0] or not parts[1]:
            raise DecryptionFailed("Invalid encrypted token format")
        nonce, tag, payload = (_b64decode(part) for part in parts)
        if not nonce or len(tag) != TAG_LENGTH:
            raise DecryptionFailed("Invalid encrypted token format")

        for key in self._keys:
            try:
                plaintext = AESGCM(key).decrypt(nonce, payload + tag, None)
            except InvalidTag:
                continue
            return plaintext.decode("utf-8")
        raise DecryptionFailed("Failed to decrypt token with configured ESP secrets")

    def reencrypt(self, ciphertext: str) -> str:
        return self.encrypt(self.decrypt(ciphertext))
