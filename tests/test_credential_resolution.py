from datetime import datetime, timedelta, timezone

import pytest

from esp_integration.context import resolve_adapter_and_credentials
from esp_integration.domain.errors import CapabilityUnsupported, CredentialsMissing
from esp_integration.providers.base import resolve_connection_credentials
from esp_integration.providers.ghl import client as ghl_client
from esp_integration.providers.ghl.adapter import REQUIRED_SCOPES


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _save_oauth(ctx, *, expires_in=timedelta(hours=2), scopes=REQUIRED_SCOPES, account_key="acme"):
    ctx.connections.upsert_oauth_connection(
        account_key,
        "ghl",
        location_id="loc-1",
        access_token="access-old",
        refresh_token="refresh-old",
        token_expires_at=NOW + expires_in,
        scopes=list(scopes),
    )


@pytest.mark.asyncio
async def test_valid_oauth_connection_wins(ctx):
    _save_oauth(ctx)
    ctx.connections.upsert_api_key_connection("acme", "ghl", api_key="pit-key", account_id="loc-1")

    oauth = ctx.registry.get_adapter("ghl").oauth
    credentials = await resolve_connection_credentials(ctx.connections, "acme", "ghl", oauth=oauth, now=NOW)

    assert credentials.auth_mode == "oauth"
    assert credentials.token == "access-old"
    assert credentials.location_id == "loc-1"
    assert "access-old" not in repr(credentials)


@pytest.mark.asyncio
async def test_missing_scopes_fall_through_to_api_key(ctx):
    _save_oauth(ctx, scopes=["contacts.readonly"])
    ctx.connections.upsert_api_key_connection("acme", "ghl", api_key="pit-key", account_id="loc-1")

    oauth = ctx.registry.get_adapter("ghl").oauth
    credentials = await resolve_connection_credentials(ctx.connections, "acme", "ghl", oauth=oauth, now=NOW)

    assert credentials.auth_mode == "api_key"
    assert credentials.token == "pit-key"


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_stored(ctx, monkeypatch):
    _save_oauth(ctx, expires_in=timedelta(seconds=60))
    forms = []

    async def _fake_request_token(form, timeout_seconds=12.0):
        forms.append(form)
        return {
            "access_token": "access-new",
            "refresh_token": "refresh-new",
            "expires_in": 86399,
            "locationId": "loc-1",
            "scope": " ".join(REQUIRED_SCOPES),
        }

    monkeypatch.setattr(ghl_client, "request_token", _fake_request_token)
    oauth = ctx.registry.get_adapter("ghl").oauth

    credentials = await resolve_connection_credentials(ctx.connections, "acme", "ghl", oauth=oauth, now=NOW)

    assert credentials.token == "access-new"
    assert forms[0]["grant_type"] == "refresh_token"
    assert forms[0]["refresh_token"] == "refresh-old"
    stored = ctx.connections.get_oauth_connection("acme", "ghl")
    assert stored.access_token == "access-new"
    assert stored.refresh_token == "refresh-new"


@pytest.mark.asyncio
async def test_failed_refresh_falls_back_to_api_key(ctx, monkeypatch):
    _save_oauth(ctx, expires_in=timedelta(seconds=-10))
    ctx.connections.upsert_api_key_connection("acme", "ghl", api_key="pit-key", account_id="loc-1")

    async def _failing_request_token(form, timeout_seconds=12.0):
        raise ghl_client.GhlProviderError("invalid_grant", status_code=400)

    monkeypatch.setattr(ghl_client, "request_token", _failing_request_token)
    oauth = ctx.registry.get_adapter("ghl").oauth

    credentials = await resolve_connection_credentials(ctx.connections, "acme", "ghl", oauth=oauth, now=NOW)

    assert credentials.auth_mode == "api_key"
    assert ctx.connections.get_oauth_connection("acme", "ghl").access_token == "access-old"


@pytest.mark.asyncio
async def test_no_connection_resolves_to_none(ctx):
    assert await resolve_connection_credentials(ctx.connections, "acme", "ghl", now=NOW) is None


@pytest.mark.asyncio
async def test_resolve_adapter_and_credentials_raises_typed_errors(ctx):
    with pytest.raises(CredentialsMissing) as missing:
        await resolve_adapter_and_credentials(ctx, "acme", "campaigns")
    assert missing.value.provider == "ghl"

    ctx.connections.upsert_api_key_connection("bolt", "klaviyo", api_key="pk", account_id="KL1")
    with pytest.raises(CapabilityUnsupported):
        await resolve_adapter_and_credentials(ctx, "bolt", "custom_values")

    adapter, credentials = await resolve_adapter_and_credentials(ctx, "bolt", "campaigns")
    assert adapter.provider == "klaviyo"
    assert credentials.account_id == "KL1"
