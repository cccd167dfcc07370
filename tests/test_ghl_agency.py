from datetime import datetime, timedelta, timezone

import pytest

from esp_integration.domain.errors import CredentialsMissing, MalformedPayload
from esp_integration.models.credentials import TokenSet
from esp_integration.observability import metrics_snapshot
from esp_integration.providers.ghl import client as ghl_client
from esp_integration.providers.ghl.agency import (
    AGENCY_ACCOUNT_KEY,
    location_token_from_payload,
    location_token_ttl,
)
from esp_integration.providers.ghl.client import GhlProviderError


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _agency(ctx):
    return ctx.registry.get_adapter("ghl").agency


def _save_agency(ctx, *, expires_at=None, subject_id="co-1"):
    return ctx.connections.upsert_provider_credential(
        "ghl",
        access_token="agency-access",
        refresh_token="agency-refresh",
        token_expires_at=expires_at,
        scopes=["locations.readonly", "oauth.write"],
        subject_id=subject_id,
    )


@pytest.fixture
def minted(monkeypatch):
    calls = []

    async def _mint(agency_token, location_id, company_id=None, timeout_seconds=12.0):
        calls.append((agency_token, location_id, company_id))
        return {"data": {"accessToken": f"loc-token-{len(calls)}", "expiresIn": 600}}

    monkeypatch.setattr(ghl_client, "mint_location_token", _mint)
    return calls


def test_location_token_payload_shapes():
    assert location_token_from_payload({"access_token": "a"}) == "a"
    assert location_token_from_payload({"data": {"locationAccessToken": "b"}}) == "b"
    assert location_token_from_payload({"token": "  "}) is None
    assert location_token_ttl({"expires_in": "120"}) == 120
    assert location_token_ttl({"data": {"ttl": 30}}) == 30
    assert location_token_ttl({"expires_in": 0}) == 900


def test_agency_credential_is_encrypted_at_rest(ctx, fake_db):
    credential = _agency(ctx).store_credential(
        TokenSet(
            access_token="agency-access",
            refresh_token="agency-refresh",
            expires_at=NOW,
            scopes=("locations.readonly",),
            company_id="co-9",
        )
    )

    assert credential.subject_id == "co-9"
    row = fake_db.tables["esp_provider_oauth_credentials"][0]
    assert row["provider"] == "ghl"
    assert "agency-access" not in str(row)
    assert "agency-refresh" not in str(row)
    assert ctx.connections.get_provider_credential("ghl").access_token == "agency-access"
    assert "agency-access" not in repr(credential)


def test_agency_credential_requires_refresh_token(ctx):
    with pytest.raises(GhlProviderError, match="refresh token"):
        _agency(ctx).store_credential(TokenSet(access_token="a", refresh_token="", expires_at=None))


@pytest.mark.asyncio
async def test_expiring_agency_token_is_refreshed_as_company(ctx, monkeypatch):
    _save_agency(ctx, expires_at=NOW + timedelta(minutes=2))
    forms = []

    async def _request_token(form, timeout_seconds=12.0):
        forms.append(form)
        return {"access_token": "agency-new", "refresh_token": "refresh-new", "expires_in": 86399}

    monkeypatch.setattr(ghl_client, "request_token", _request_token)

    agency = await _agency(ctx).valid_token(NOW)

    assert agency.token == "agency-new"
    assert agency.subject_id == "co-1"
    assert forms[0]["user_type"] == "Company"
    assert forms[0]["refresh_token"] == "agency-refresh"
    assert ctx.connections.get_provider_credential("ghl").refresh_token == "refresh-new"


@pytest.mark.asyncio
async def test_failed_agency_refresh_keeps_stored_token(ctx, monkeypatch):
    _save_agency(ctx, expires_at=NOW - timedelta(minutes=1))

    async def _request_token(form, timeout_seconds=12.0):
        raise GhlProviderError("invalid_grant", status_code=400)

    monkeypatch.setattr(ghl_client, "request_token", _request_token)

    agency = await _agency(ctx).valid_token(NOW)

    assert agency.token == "agency-access"
    assert agency.source == "oauth"
    assert metrics_snapshot()["esp.oauth.refresh_failed|kind=agency|provider=ghl"] == 1


@pytest.mark.asyncio
async def test_env_token_is_the_last_fallback(ctx):
    assert await _agency(ctx).valid_token(NOW) is None

    ctx.settings.ghl_agency_token = "env-agency"
    ctx.settings.ghl_agency_company_id = "co-env"
    agency = await _agency(ctx).valid_token(NOW)

    assert (agency.token, agency.source, agency.subject_id) == ("env-agency", "env", "co-env")
    assert _agency(ctx).status().source == "env"


@pytest.mark.asyncio
async def test_agency_mode_mints_and_caches_location_tokens(ctx, minted):
    ctx.settings.ghl_oauth_mode = "agency"
    _save_agency(ctx)
    ctx.connections.upsert_account_link("acme", "ghl", location_id="loc-acme")
    contacts = ctx.registry.get_adapter("ghl").contacts

    first = await contacts.resolve_credentials("acme")
    second = await contacts.resolve_credentials("acme")

    assert first.token == "loc-token-1"
    assert first.location_id == "loc-acme"
    assert first.auth_mode == "oauth"
    assert second.token == "loc-token-1"
    assert minted == [("agency-access", "loc-acme", "co-1")]


@pytest.mark.asyncio
async def test_cached_location_token_is_reminted_near_expiry(ctx, minted):
    _save_agency(ctx)
    ctx.connections.upsert_account_link("acme", "ghl", location_id="loc-acme")
    agency = _agency(ctx)

    await agency.location_credentials("acme", now=NOW)
    # 600s ttl minus the two minute buffer
    await agency.location_credentials("acme", now=NOW + timedelta(seconds=479))
    assert len(minted) == 1

    refreshed = await agency.location_credentials("acme", now=NOW + timedelta(seconds=481))
    assert refreshed.token == "loc-token-2"
    assert len(minted) == 2


@pytest.mark.asyncio
async def test_hybrid_mode_falls_back_to_legacy_connection(ctx, monkeypatch):
    ctx.settings.ghl_oauth_mode = "hybrid"
    _save_agency(ctx)
    ctx.connections.upsert_account_link("acme", "ghl", location_id="loc-acme")
    ctx.connections.upsert_api_key_connection("acme", "ghl", api_key="pit-key", account_id="loc-acme")

    async def _mint(*args, **kwargs):
        raise GhlProviderError("Location token mint failed", status_code=403)

    monkeypatch.setattr(ghl_client, "mint_location_token", _mint)

    credentials = await ctx.registry.get_adapter("ghl").contacts.resolve_credentials("acme")

    assert credentials.auth_mode == "api_key"
    assert credentials.token == "pit-key"
    assert metrics_snapshot()["esp.ghl.location_token.failed"] == 1


@pytest.mark.asyncio
async def test_agency_mode_does_not_fall_back(ctx, monkeypatch):
    ctx.settings.ghl_oauth_mode = "agency"
    ctx.connections.upsert_api_key_connection("acme", "ghl", api_key="pit-key", account_id="loc-acme")

    assert await ctx.registry.get_adapter("ghl").contacts.resolve_credentials("acme") is None


@pytest.mark.asyncio
async def test_unknown_mode_behaves_as_legacy(ctx, minted):
    ctx.settings.ghl_oauth_mode = "sideways"
    _save_agency(ctx)
    ctx.connections.upsert_account_link("acme", "ghl", location_id="loc-acme")
    ctx.connections.upsert_api_key_connection("acme", "ghl", api_key="pit-key", account_id="loc-acme")

    credentials = await ctx.registry.get_adapter("ghl").contacts.resolve_credentials("acme")

    assert credentials.token == "pit-key"
    assert minted == []


@pytest.mark.asyncio
async def test_link_prefers_provider_location_name_and_resets_cached_token(ctx, minted, monkeypatch):
    _save_agency(ctx)
    agency = _agency(ctx)

    async def _get_location(token, location_id, timeout_seconds=8.0):
        assert token == "agency-access"
        return {"id": location_id, "name": "Acme Motors GHL"}

    monkeypatch.setattr(ghl_client, "get_location", _get_location)

    await agency.link_account("acme", "loc-acme", "typed name")
    await agency.location_credentials("acme", now=NOW)
    link = await agency.link_account(" acme ", "loc-acme")
    await agency.location_credentials("acme", now=NOW)

    assert link.account_key == "acme"
    assert link.location_name == "Acme Motors GHL"
    assert len(minted) == 2


@pytest.mark.asyncio
async def test_link_keeps_given_name_when_lookup_fails(ctx, monkeypatch):
    _save_agency(ctx)

    async def _get_location(token, location_id, timeout_seconds=8.0):
        raise GhlProviderError("GHL API returned HTTP 500", status_code=500)

    monkeypatch.setattr(ghl_client, "get_location", _get_location)

    link = await _agency(ctx).link_account("acme", "loc-acme", "Acme")

    assert link.location_name == "Acme"
    assert ctx.connections.get_account_link("acme", "ghl").location_id == "loc-acme"


@pytest.mark.asyncio
async def test_link_rejects_agency_key_and_requires_connection(ctx):
    agency = _agency(ctx)

    with pytest.raises(MalformedPayload):
        await agency.link_account(AGENCY_ACCOUNT_KEY, "loc-1")
    with pytest.raises(CredentialsMissing):
        await agency.link_account("acme", "loc-1")
    with pytest.raises(MalformedPayload):
        agency.unlink_account(AGENCY_ACCOUNT_KEY)


@pytest.mark.asyncio
async def test_list_locations_normalizes_filters_and_caps(ctx, monkeypatch):
    _save_agency(ctx)
    calls = []

    async def _search(token, *, company_id=None, limit=100, search="", timeout_seconds=12.0):
        calls.append({"company_id": company_id, "limit": limit, "search": search})
        return [
            {"_id": "loc-1", "businessName": "Acme Motors", "postalCode": "30301"},
            {"id": "loc-2", "name": "Bolt Auto", "email": "sales@acme.example"},
            {"id": "loc-3", "name": "Zed Cars"},
            {"name": "no id"},
        ]

    monkeypatch.setattr(ghl_client, "search_locations", _search)

    locations = await _agency(ctx).list_locations(" ACME ", limit=500)

    assert [location.id for location in locations] == ["loc-1", "loc-2"]
    assert locations[0].name == "Acme Motors"
    assert locations[0].postal_code == "30301"
    assert calls == [{"company_id": "co-1", "limit": 200, "search": "acme"}]

    await _agency(ctx).list_locations(limit=0)
    assert calls[1]["limit"] == 1


@pytest.mark.asyncio
async def test_reencrypt_covers_agency_credential(ctx, fake_db):
    _save_agency(ctx)

    stats = ctx.connections.reencrypt_all(dry_run=True)

    assert stats.provider_credential_rows == 1
    assert stats.provider_credential_updated == 1
    assert stats.failed == 0
