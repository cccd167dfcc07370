from __future__ import annotations

from typing import Any

import httpx

from esp_integration.domain.errors import ProviderError
from esp_integration.providers import transport


KLAVIYO_API_BASE = "https://a.klaviyo.com/api"
KLAVIYO_REVISION = "2024-10-15"
_MAX_PAGES = 50
_MAX_PROFILE_COUNT = 100_000


class KlaviyoProviderError(ProviderError):
    """Provider-level exception for Klaviyo integration failures."""

    provider = "klaviyo"


def _headers(api_key: str, json_body: bool = False) -> dict[str, str]:
    headers = {
        "Authorization": f"Klaviyo-API-Key {api_key}",
        "revision": KLAVIYO_REVISION,
        "Accept": "application/vnd.api+json",
    }
    if json_body:
        headers["Content-Type"] = "application/vnd.api+json"
    return headers


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return str(errors[0].get("detail") or errors[0].get("title") or "")[:200]
    return response.text[:200]


async def _request_json(
    *,
    method: str,
    url: str,
    api_key: str,
    timeout_seconds: float = 12.0,
    params: dict[str, Any] | None = None,
    json_payload: Any = None,
    files: dict[str, Any] | None = None,
    data: dict[str, Any] | None = None,
) -> Any:
    if not api_key:
        raise KlaviyoProviderError("Missing Klaviyo API key")
    if not url.startswith("http"):
        url = f"{KLAVIYO_API_BASE}{url}"
    try:
        response = await transport.request_with_retry(
            method=method,
            url=url,
            headers=_headers(api_key, json_body=json_payload is not None),
            params=params,
            json_payload=json_payload,
            files=files,
            data=data,
            timeout_seconds=timeout_seconds,
        )
    except httpx.HTTPError as exc:
        raise KlaviyoProviderError(f"Klaviyo connectivity error: {exc}") from exc

    if response.status_code in {401, 403}:
        raise KlaviyoProviderError("Invalid Klaviyo API key", status_code=response.status_code)
    if response.status_code >= 400:
        raise KlaviyoProviderError(
            f"Klaviyo API returned HTTP {response.status_code}: {_error_detail(response)}",
            status_code=response.status_code,
        )
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise KlaviyoProviderError("Klaviyo returned non-JSON response") from exc


async def _paginate(
    path: str,
    api_key: str,
    *,
    params: dict[str, Any] | None = None,
    timeout_seconds: float = 12.0,
    max_items: int | None = None,
) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    url: str | None = path
    page_params = params
    for _ in range(_MAX_PAGES):
        if not url:
            break
        payload = await _request_json(
            method="GET",
            url=url,
            api_key=api_key,
            params=page_params,
            timeout_seconds=timeout_seconds,
        )
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise KlaviyoProviderError("Unexpected Klaviyo list response shape")
        items.extend(item for item in data if isinstance(item, dict))
        if max_items is not None and len(items) >= max_items:
            break
        links = payload.get("links") if isinstance(payload.get("links"), dict) else {}
        url = links.get("next")
        # next links carry their own query string
        page_params = None
    return items


async def get_account(api_key: str, timeout_seconds: float = 8.0) -> dict[str, Any]:
    payload = await _request_json(method="GET", url="/accounts/", api_key=api_key, timeout_seconds=timeout_seconds)
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise KlaviyoProviderError("Klaviyo returned no account data", status_code=400)
    return data[0]


async def list_email_campaigns(api_key: str, timeout_seconds: float = 12.0) -> list[dict[str, Any]]:
    return await _paginate(
        "/campaigns/",
        api_key,
        params={"filter": "equals(messages.channel,'email')", "sort": "-created_at"},
        timeout_seconds=timeout_seconds,
    )


async def get_campaign_values_report(
    api_key: str,
    campaign_id: str,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    payload = await _request_json(
        method="POST",
        url="/campaign-values-reports/",
        api_key=api_key,
        timeout_seconds=timeout_seconds,
        json_payload={
            "data": {
                "type": "campaign-values-report",
                "attributes": {
                    "statistics": [
                        "recipients",
                        "delivered",
                        "opens_unique",
                        "clicks_unique",
                        "bounced",
                        "unsubscribes",
                        "spam_complaints",
                    ],
                    "timeframe": {"key": "last_12_months"},
                    "filter": f'equals(campaign_id,"{campaign_id}")',
                },
            }
        },
    )
    attributes = ((payload or {}).get("data") or {}).get("attributes") or {}
    results = attributes.get("results") or []
    if not results or not isinstance(results[0], dict):
        return {}
    statistics = results[0].get("statistics")
    return statistics if isinstance(statistics, dict) else {}


async def list_flows(api_key: str, timeout_seconds: float = 12.0) -> list[dict[str, Any]]:
    return await _paginate("/flows/", api_key, params={"sort": "-created"}, timeout_seconds=timeout_seconds)


async def count_profiles(api_key: str, timeout_seconds: float = 12.0) -> int:
    """Klaviyo exposes no total; count pages up to a safety cap."""
    profiles = await _paginate(
        "/profiles/",
        api_key,
        params={"page[size]": 100, "fields[profile]": "email"},
        timeout_seconds=timeout_seconds,
        max_items=_MAX_PROFILE_COUNT,
    )
    return len(profiles)


async def create_template(
    api_key: str,
    *,
    name: str,
    html: str,
    editor_type: str = "CODE",
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    payload = await _request_json(
        method="POST",
        url="/templates/",
        api_key=api_key,
        timeout_seconds=timeout_seconds,
        json_payload={"data": {"type": "template", "attributes": {"name": name, "editor_type": editor_type, "html": html}}},
    )
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict) or not data.get("id"):
        raise KlaviyoProviderError("Klaviyo did not return a template id")
    return data


async def upload_image(
    api_key: str,
    *,
    file_name: str,
    content: bytes,
    content_type: str,
    timeout_seconds: float = 30.0,
) -> dict[str, Any]:
    payload = await _request_json(
        method="POST",
        url="/image-upload/",
        api_key=api_key,
        timeout_seconds=timeout_seconds,
        files={"file": (file_name, content, content_type)},
        data={"name": file_name},
    )
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict) or not data.get("id"):
        raise KlaviyoProviderError("Klaviyo did not return an image id")
    return data
