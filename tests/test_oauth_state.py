import pytest

from esp_integration.domain.errors import OAuthStateInvalid
from esp_integration.oauth_state import DEFAULT_STATE_TTL_SECONDS, sign_state, verify_state


SECRETS = ["state-secret"]


def test_state_round_trip_carries_account_and_provider():
    state = sign_state("acme", "ghl", SECRETS, now=1_000_000)

    verified = verify_state(state, SECRETS, now=1_000_060)

    assert verified.account_key == "acme"
    assert verified.provider == "ghl"
    assert verified.issued_at == 1_000_000
    assert verified.nonce


def test_nonce_makes_each_state_unique():
    assert sign_state("acme", "ghl", SECRETS, now=1) != sign_state("acme", "ghl", SECRETS, now=1)


def test_previous_secret_still_verifies():
    state = sign_state("acme", "ghl", ["old-secret"], now=1_000_000)
    assert verify_state(state, ["new-secret", "old-secret"], now=1_000_000).account_key == "acme"


def test_expired_state_is_rejected():
    state = sign_state("acme", "ghl", SECRETS, now=1_000_000)
    with pytest.raises(OAuthStateInvalid, match="expired"):
        verify_state(state, SECRETS, now=1_000_000 + DEFAULT_STATE_TTL_SECONDS + 1)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda s: s[:-1] + ("0" if s[-1] != "0" else "1"),
        lambda s: "x" + s,
        lambda s: s.split(".")[0],
        lambda s: "",
    ],
)
def test_tampered_state_is_rejected(mutate):
    state = sign_state("acme", "ghl", SECRETS, now=1_000_000)
    with pytest.raises(OAuthStateInvalid):
        verify_state(mutate(state), SECRETS, now=1_000_000)


def test_missing_secret_is_a_configuration_error():
    with pytest.raises(OAuthStateInvalid, match="ESP_OAUTH_STATE_SECRET"):
        sign_state("acme", "ghl", [])
    with pytest.raises(OAuthStateInvalid, match="ESP_OAUTH_STATE_SECRET"):
        verify_state("a.b", [])
