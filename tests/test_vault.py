import pytest

from esp_integration.domain.errors import DecryptionFailed, VaultMisconfigured
from esp_integration.vault import CredentialVault


def test_ciphertext_has_three_base64_parts_and_hides_plaintext():
    vault = CredentialVault(["primary"])
    ciphertext = vault.encrypt("pit-token-123")

    assert len(ciphertext.split(":")) == 3
    assert "pit-token-123" not in ciphertext
    assert vault.decrypt(ciphertext) == "pit-token-123"


def test_same_plaintext_encrypts_differently_each_time():
    vault = CredentialVault(["primary"])
    assert vault.encrypt("same") != vault.encrypt("same")


def test_previous_secret_still_decrypts_after_rotation():
    old_vault = CredentialVault(["old-secret"])
    stored = old_vault.encrypt("refresh-abc")

    rotated = CredentialVault(["new-secret", "old-secret"])
    assert rotated.decrypt(stored) == "refresh-abc"

    rewritten = rotated.reencrypt(stored)
    assert CredentialVault(["new-secret"]).decrypt(rewritten) == "refresh-abc"
    with pytest.raises(DecryptionFailed):
        old_vault.decrypt(rewritten)


def test_unknown_secret_fails_decryption():
    stored = CredentialVault(["a"]).encrypt("token")
    with pytest.raises(DecryptionFailed, match="configured ESP secrets"):
        CredentialVault(["b"]).decrypt(stored)


@pytest.mark.parametrize("ciphertext", ["", "abc", "a:b", "not base64!:x:y", "::"])
def test_malformed_ciphertext_is_rejected(ciphertext):
    with pytest.raises(DecryptionFailed, match="Invalid encrypted token format"):
        CredentialVault(["primary"]).decrypt(ciphertext)


def test_tampered_payload_is_rejected():
    vault = CredentialVault(["primary"])
    nonce, tag, payload = vault.encrypt("token").split(":")
    with pytest.raises(DecryptionFailed):
        vault.decrypt(f"{nonce}:{tag}:{payload[:-4]}AAAA")


def test_blank_and_duplicate_secrets_are_ignored():
    vault = CredentialVault(["", "  ", "primary", "primary"])
    assert vault.configured is True
    assert vault.secret_count == 1


def test_unconfigured_vault_refuses_both_directions():
    vault = CredentialVault([])
    assert vault.configured is False
    with pytest.raises(VaultMisconfigured):
        vault.encrypt("token")
    with pytest.raises(VaultMisconfigured):
        vault.decrypt("a:b:c")
