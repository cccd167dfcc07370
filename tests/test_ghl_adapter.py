import pytest

from esp_integration.models.account_features import BusinessDetails, CustomValueInput, MediaUploadInput
from esp_integration.models.campaigns import EspCampaign
from esp_integration.models.credentials import Credentials
from esp_integration.providers.ghl import client as ghl_client
from esp_integration.providers.ghl.adapter import map_campaign, token_set_from_payload
from esp_integration.providers.ghl.client import GhlProviderError


CREDS = Credentials(provider="ghl", token="tok", location_id="loc-1", auth_mode="oauth")


@pytest.fixture
def ghl(ctx):
    return ctx.registry.get_adapter("ghl")


def test_map_campaign_reads_nested_stats_and_normalizes_status():
    campaign = map_campaign(
        {
            "_id": "sched-1",
            "campaignId": "cmp-9",
            "title": "  Spring Sale ",
            "status": "COMPLETED",
            "sentOn": "2026-01-05T10:00:00Z",
            "stats": {"totalSent": "120", "uniqueOpened": 30, "clicks": None, "bounces": -3},
        },
        "loc-1",
    )

    assert campaign.id == "sched-1"
    assert campaign.schedule_id == "sched-1"
    assert campaign.campaign_id == "cmp-9"
    assert campaign.name == "Spring Sale"
    assert campaign.status == "completed"
    assert campaign.sent_at == "2026-01-05T10:00:00Z"
    assert campaign.sent_count == 120
    assert campaign.opened_count == 30
    assert campaign.clicked_count is None
    assert campaign.bounced_count == 0
    assert campaign.store_ids() == ["sched-1", "cmp-9"]


def test_token_set_from_payload():
    tokens = token_set_from_payload(
        {"access_token": "a", "refresh_token": "r", "expires_in": 3600, "scope": "contacts.readonly  workflows.readonly", "locationId": "loc-1"}
    )
    assert tokens.scopes == ("contacts.readonly", "workflows.readonly")
    assert tokens.location_id == "loc-1"
    assert tokens.expires_at is not None


@pytest.mark.asyncio
async def test_campaign_list_is_cached_until_forced(ghl, ctx, monkeypatch):
    calls = []

    async def _list(token, location_id, timeout_seconds=12.0):
        calls.append(location_id)
        return [{"id": "s1", "name": "One", "status": "draft"}]

    monkeypatch.setattr(ghl_client, "list_email_schedules", _list)

    first = await ghl.campaigns.fetch_campaigns(CREDS)
    second = await ghl.campaigns.fetch_campaigns(CREDS)
    forced = await ghl.campaigns.fetch_campaigns(CREDS, force_refresh=True)

    assert calls == ["loc-1", "loc-1"]
    assert [c.id for c in first] == [c.id for c in second] == [c.id for c in forced] == ["s1"]
    assert ctx.cache.get("ghl", "loc-1") is not None


@pytest.mark.asyncio
async def test_analytics_prefers_schedule_stats(ghl, monkeypatch):
    async def _stats(token, location_id, schedule_id, timeout_seconds=12.0):
        return {"schedule": {"id": schedule_id, "statistics": {"delivered": 90, "opened": 40}}}

    monkeypatch.setattr(ghl_client, "get_schedule_stats", _stats)
    campaign = EspCampaign(id="s1", name="One", status="sent", location_id="loc-1", sent_count=100)

    analytics = await ghl.campaigns.fetch_analytics(CREDS, campaign)

    assert analytics.source == "ghl-schedule-stats"
    assert analytics.delivered_count == 90
    assert analytics.opened_count == 40
    assert analytics.sent_count is None


@pytest.mark.asyncio
async def test_analytics_falls_back_to_list_counts(ghl, monkeypatch):
    async def _stats(token, location_id, schedule_id, timeout_seconds=12.0):
        return {"id": schedule_id, "name": "One"}

    monkeypatch.setattr(ghl_client, "get_schedule_stats", _stats)
    campaign = EspCampaign(id="s1", name="One", status="sent", location_id="loc-1", sent_count=100, opened_count=12)

    analytics = await ghl.campaigns.fetch_analytics(CREDS, campaign)

    assert analytics.source == "ghl-campaign-list"
    assert analytics.sent_count == 100
    assert analytics.opened_count == 12


@pytest.mark.asyncio
async def test_custom_values_sync_diffs_by_name(ghl, monkeypatch):
    remote = [
        {"id": "cv-1", "name": "Dealer Name", "value": "Acme"},
        {"id": "cv-2", "name": "Phone", "value": "555-0100"},
        {"id": "cv-3", "name": "Old Promo", "value": "x"},
        {"id": "cv-4", "name": "Unmanaged", "value": "keep"},
    ]
    writes = []

    async def _list(token, location_id, timeout_seconds=12.0):
        return remote

    async def _create(token, location_id, name, value, timeout_seconds=12.0):
        if name == "Broken":
            raise GhlProviderError("GHL API returned HTTP 422: bad name", status_code=422)
        writes.append(("create", name, value))
        return {"id": "new", "name": name, "value": value}

    async def _update(token, location_id, custom_value_id, name, value, timeout_seconds=12.0):
        writes.append(("update", custom_value_id, value))
        return {}

    async def _delete(token, location_id, custom_value_id, timeout_seconds=12.0):
        writes.append(("delete", custom_value_id))

    monkeypatch.setattr(ghl_client, "list_custom_values", _list)
    monkeypatch.setattr(ghl_client, "create_custom_value", _create)
    monkeypatch.setattr(ghl_client, "update_custom_value", _update)
    monkeypatch.setattr(ghl_client, "delete_custom_value", _delete)

    result = await ghl.custom_values.sync_custom_values(
        CREDS,
        [
            CustomValueInput(name="dealer name", value="Acme"),
            CustomValueInput(name="Phone", value="555-0199"),
            CustomValueInput(name="Website", value="https://acme.example"),
            CustomValueInput(name="Broken", value="?"),
        ],
        managed_names=["Old Promo", "Phone", "Missing"],
    )

    assert result.unchanged == ["dealer name"]
    assert result.updated == ["Phone"]
    assert result.created == ["Website"]
    assert result.deleted == ["Old Promo"]
    assert result.errors == [{"name": "Broken", "error": "GHL API returned HTTP 422: bad name"}]
    assert writes == [
        ("update", "cv-2", "555-0199"),
        ("create", "Website", "https://acme.example"),
        ("delete", "cv-3"),
    ]


@pytest.mark.asyncio
async def test_business_details_only_send_provided_fields(ghl, monkeypatch):
    sent = {}

    async def _update(token, location_id, fields, timeout_seconds=12.0):
        sent.update(fields)
        return {}

    monkeypatch.setattr(ghl_client, "update_location", _update)

    result = await ghl.account_details_sync.sync_business_details(
        CREDS, BusinessDetails(name="Acme Motors", postal_code="90210", phone="")
    )

    assert sent == {"name": "Acme Motors", "postalCode": "90210"}
    assert result.updated_fields == ["name", "postal_code"]


@pytest.mark.asyncio
async def test_media_upload_rejects_invalid_base64(ghl):
    with pytest.raises(GhlProviderError) as exc_info:
        await ghl.media.upload_media(CREDS, MediaUploadInput(file_name="logo.png", content_base64="not base64!"))
    assert exc_info.value.status_code == 400


def test_authorization_url_carries_state_and_scopes(ghl):
    url = ghl.oauth.authorization_url("signed-state")
    assert url.startswith(ghl_client.GHL_AUTH_URL + "?")
    assert "state=signed-state" in url
    assert "client_id=ghl-client" in url
    assert "contacts.readonly" in url
