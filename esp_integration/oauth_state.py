"""Signed OAuth `state` parameter.

The state carries the account key and provider through the provider's consent
screen. It is ``base64url(json).hex_hmac_sha256`` and expires after
``DEFAULT_STATE_TTL_SECONDS``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from collections.abc import Sequence
from dataclasses import dataclass

from esp_integration.domain.errors import OAuthStateInvalid


DEFAULT_STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class OAuthState:
    account_key: str
    provider: str
    issued_at: int
    nonce: str


def _sign(secret: str, payload: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_state(account_key: str, provider: str, secrets_: Sequence[str], *, now: float | None = None) -> str:
    if not secrets_:
        raise OAuthStateInvalid("ESP_OAUTH_STATE_SECRET is required for OAuth flows")
    body = {
        "account_key": account_key,
        "provider": provider,
        "issued_at": int(now if now is not None else time.time()),
        "nonce": secrets.token_urlsafe(8),
    }
    payload = base64.urlsafe_b64encode(json.dumps(body, sort_keys=True).encode("utf-8")).decode("ascii").rstrip("=")
    return f"{payload}.{_sign(secrets_[0], payload)}"


def verify_state(
    state: str,
    secrets_: Sequence[str],
    *,
    ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
    now: float | None = None,
) -> OAuthState:
    if not secrets_:
        raise OAuthStateInvalid("ESP_OAUTH_STATE_SECRET is required for OAuth flows")
    payload, _, signature = (state or "").partition(".")
    if not payload or not signature:
        raise OAuthStateInvalid("Malformed OAuth state")
    if not any(hmac.compare_digest(_sign(secret, payload), signature) for secret in secrets_):
        raise OAuthStateInvalid("OAuth state signature mismatch")

    try:
        padded = payload + "=" * (-len(payload) % 4)
        body = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, binascii.Error) as exc:
        raise OAuthStateInvalid("Malformed OAuth state") from exc
    if not isinstance(body, dict):
        raise OAuthStateInvalid("Malformed OAuth state")

    try:
        issued_at = int(body.get("issued_at") or 0)
    except (TypeError, ValueError) as exc:
        raise OAuthStateInvalid("Malformed OAuth state") from exc
    current = now if now is not None else time.time()
    if current - issued_at > ttl_seconds:
        raise OAuthStateInvalid("OAuth state expired")
    account_key = str(body.get("account_key") or "")
    provider = str(body.get("provider") or "")
    if not account_key or not provider:
        raise OAuthStateInvalid("Malformed OAuth state")
    return OAuthState(
        account_key=account_key,
        provider=provider,
        issued_at=issued_at,
        nonce=str(body.get("nonce") or ""),
    )
