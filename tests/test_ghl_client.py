import httpx
import pytest

from esp_integration.providers import transport
from esp_integration.providers.ghl import client as ghl_client
from esp_integration.providers.ghl.client import GhlProviderError


def _install(monkeypatch, handler):
    calls: list[dict] = []

    async def _fake_request_with_retry(**kwargs):
        calls.append(kwargs)
        return handler(kwargs)

    monkeypatch.setattr(transport, "request_with_retry", _fake_request_with_retry)
    return calls


@pytest.mark.asyncio
async def test_schedule_stats_falls_back_to_next_path_on_404(monkeypatch):
    def _handler(kwargs):
        if kwargs["url"].endswith("/stats"):
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(200, json={"schedule": {"id": "s1", "opened": 4}})

    calls = _install(monkeypatch, _handler)

    payload = await ghl_client.get_schedule_stats("tok", "loc-1", "s1")

    assert payload == {"schedule": {"id": "s1", "opened": 4}}
    assert [c["url"] for c in calls] == [
        "https://services.leadconnectorhq.com/emails/schedule/s1/stats",
        "https://services.leadconnectorhq.com/emails/schedule/s1",
    ]
    assert calls[0]["headers"]["Authorization"] == "Bearer tok"
    assert calls[0]["headers"]["Version"] == ghl_client.GHL_API_VERSION


@pytest.mark.asyncio
async def test_every_path_missing_raises_last_error(monkeypatch):
    _install(monkeypatch, lambda kwargs: httpx.Response(404))

    with pytest.raises(GhlProviderError, match="GHL endpoint not found: /emails/schedule/s1$"):
        await ghl_client.get_schedule_stats("tok", "loc-1", "s1")


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_failures_are_terminal(monkeypatch, status_code):
    _install(monkeypatch, lambda kwargs: httpx.Response(status_code))

    with pytest.raises(GhlProviderError) as exc_info:
        await ghl_client.list_workflows("tok", "loc-1")

    assert exc_info.value.status_code == status_code
    assert exc_info.value.category == "terminal"
    assert str(exc_info.value) == "Invalid or expired GHL access token"


@pytest.mark.asyncio
async def test_server_errors_are_retryable_provider_errors(monkeypatch):
    _install(monkeypatch, lambda kwargs: httpx.Response(503, text="maintenance"))

    with pytest.raises(GhlProviderError) as exc_info:
        await ghl_client.list_workflows("tok", "loc-1")

    assert exc_info.value.retryable is True
    assert "HTTP 503: maintenance" in str(exc_info.value)


@pytest.mark.asyncio
async def test_connectivity_errors_are_transient(monkeypatch):
    async def _boom(**kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(transport, "request_with_retry", _boom)

    with pytest.raises(GhlProviderError) as exc_info:
        await ghl_client.count_contacts("tok", "loc-1")

    assert exc_info.value.category == "transient"


@pytest.mark.asyncio
async def test_email_schedules_are_paginated_until_short_page(monkeypatch):
    def _handler(kwargs):
        offset = kwargs["params"]["offset"]
        size = 100 if offset < 200 else 7
        return httpx.Response(200, json={"schedules": [{"id": f"s{offset + i}"} for i in range(size)]})

    calls = _install(monkeypatch, _handler)

    rows = await ghl_client.list_email_schedules("tok", "loc-1")

    assert len(rows) == 207
    assert [c["params"]["offset"] for c in calls] == [0, 100, 200]
    assert all(c["params"]["locationId"] == "loc-1" for c in calls)


@pytest.mark.asyncio
async def test_rows_are_found_under_nested_data(monkeypatch):
    _install(monkeypatch, lambda kwargs: httpx.Response(200, json={"data": {"workflows": [{"id": "w1"}, "junk"]}}))
    assert await ghl_client.list_workflows("tok", "loc-1") == [{"id": "w1"}]


@pytest.mark.asyncio
async def test_count_contacts_reads_meta_total(monkeypatch):
    _install(monkeypatch, lambda kwargs: httpx.Response(200, json={"contacts": [], "meta": {"total": 1234}}))
    assert await ghl_client.count_contacts("tok", "loc-1") == 1234

    _install(monkeypatch, lambda kwargs: httpx.Response(200, json={"contacts": []}))
    with pytest.raises(GhlProviderError, match="did not include a total"):
        await ghl_client.count_contacts("tok", "loc-1")


@pytest.mark.asyncio
async def test_empty_and_non_json_bodies(monkeypatch):
    _install(monkeypatch, lambda kwargs: httpx.Response(204))
    assert await ghl_client.update_location("tok", "loc-1", {"name": "Acme"}) == {}

    _install(monkeypatch, lambda kwargs: httpx.Response(200, text="<html>"))
    with pytest.raises(GhlProviderError, match="non-JSON"):
        await ghl_client.get_location("tok", "loc-1")


@pytest.mark.asyncio
async def test_template_creation_writes_html_in_second_call(monkeypatch):
    def _handler(kwargs):
        if kwargs["url"].endswith("/emails/builder"):
            return httpx.Response(201, json={"id": "tpl-1", "title": "Promo"})
        return httpx.Response(200, json={"ok": True})

    calls = _install(monkeypatch, _handler)

    created = await ghl_client.create_email_template("tok", "loc-1", title="Promo", html="<p>Hi</p>")

    assert created["id"] == "tpl-1"
    assert calls[1]["json_payload"] == {
        "locationId": "loc-1",
        "templateId": "tpl-1",
        "html": "<p>Hi</p>",
        "editorType": "html",
    }


@pytest.mark.asyncio
async def test_token_request_is_unauthenticated_form_post(monkeypatch):
    calls = _install(monkeypatch, lambda kwargs: httpx.Response(200, json={"access_token": "a", "refresh_token": "r"}))

    payload = await ghl_client.request_token({"grant_type": "refresh_token", "refresh_token": "r"})

    assert payload["access_token"] == "a"
    assert "Authorization" not in calls[0]["headers"]
    assert calls[0]["data"]["grant_type"] == "refresh_token"

    _install(monkeypatch, lambda kwargs: httpx.Response(200, json={"error": "invalid_grant"}))
    with pytest.raises(GhlProviderError, match="no access token"):
        await ghl_client.request_token({"grant_type": "refresh_token"})


@pytest.mark.asyncio
async def test_location_token_mint_posts_location_and_company(monkeypatch):
    calls = _install(monkeypatch, lambda kwargs: httpx.Response(200, json={"access_token": "loc-token"}))

    payload = await ghl_client.mint_location_token("agency-tok", "loc-1", "co-1")

    assert payload == {"access_token": "loc-token"}
    assert calls[0]["method"] == "POST"
    assert calls[0]["url"].endswith("/oauth/locationToken")
    assert calls[0]["headers"]["Authorization"] == "Bearer agency-tok"
    assert calls[0]["json_payload"] == {"locationId": "loc-1", "companyId": "co-1"}

    await ghl_client.mint_location_token("agency-tok", "loc-2")
    assert calls[1]["json_payload"] == {"locationId": "loc-2"}


@pytest.mark.asyncio
async def test_location_search_retries_with_alternate_search_param(monkeypatch):
    def _handler(kwargs):
        if "query" in kwargs["params"]:
            return httpx.Response(422, json={"message": "property query should not exist"})
        return httpx.Response(200, json={"locations": [{"id": "loc-1", "name": "Acme"}]})

    calls = _install(monkeypatch, _handler)

    rows = await ghl_client.search_locations("agency-tok", company_id="co-1", limit=25, search="acme")

    assert rows == [{"id": "loc-1", "name": "Acme"}]
    assert calls[0]["params"] == {"limit": 25, "companyId": "co-1", "query": "acme"}
    assert calls[1]["params"] == {"limit": 25, "companyId": "co-1", "search": "acme"}


@pytest.mark.asyncio
async def test_location_search_auth_failure_is_not_retried(monkeypatch):
    calls = _install(monkeypatch, lambda kwargs: httpx.Response(401))

    with pytest.raises(GhlProviderError) as exc_info:
        await ghl_client.search_locations("agency-tok", search="acme")

    assert exc_info.value.status_code == 401
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_location_search_reads_single_location_payload(monkeypatch):
    _install(monkeypatch, lambda kwargs: httpx.Response(200, json={"location": {"id": "loc-9"}}))

    assert await ghl_client.search_locations("agency-tok") == [{"id": "loc-9"}]
