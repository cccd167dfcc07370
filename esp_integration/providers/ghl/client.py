from __future__ import annotations

from typing import Any

import httpx

from esp_integration.domain.errors import ProviderError
from esp_integration.providers import transport


GHL_API_BASE = "https://services.leadconnectorhq.com"
GHL_API_VERSION = "2021-07-28"
GHL_AUTH_URL = "https://marketplace.gohighlevel.com/oauth/chooselocation"
GHL_TOKEN_PATH = "/oauth/token"
GHL_LOCATION_TOKEN_PATH = "/oauth/locationToken"
_PAGE_SIZE = 100
_MAX_PAGES = 20


class GhlProviderError(ProviderError):
    """Provider-level exception for GoHighLevel integration failures."""

    provider = "ghl"


def _headers(token: str | None) -> dict[str, str]:
    headers = {
        "Version": GHL_API_VERSION,
        "Accept": "application/json",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


async def _request_json(
    *,
    method: str,
    candidate_paths: list[str],
    token: str | None,
    timeout_seconds: float = 12.0,
    params: dict[str, Any] | None = None,
    json_payload: Any = None,
    data: dict[str, Any] | None = None,
    files: dict[str, Any] | None = None,
) -> Any:
    last_error: str | None = None

    for path in candidate_paths:
        url = f"{GHL_API_BASE}{path}"
        try:
            response = await transport.request_with_retry(
                method=method,
                url=url,
                headers=_headers(token),
                params=params,
                json_payload=json_payload,
                data=data,
                files=files,
                timeout_seconds=timeout_seconds,
            )
        except httpx.HTTPError as exc:
            last_error = f"GHL connectivity error: {exc}"
            continue

        if response.status_code == 404:
            last_error = f"GHL endpoint not found: {path}"
            continue
        if response.status_code in {401, 403}:
            raise GhlProviderError("Invalid or expired GHL access token", status_code=response.status_code)
        if response.status_code >= 400:
            raise GhlProviderError(
                f"GHL API returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise GhlProviderError("GHL returned non-JSON response") from exc

    raise GhlProviderError(last_error or "Unable to reach GHL API")


def _pick_rows(payload: Any, *keys: str) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if not isinstance(payload, dict):
        return []
    nested = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    for source in (payload, nested):
        for key in (*keys, "items", "results"):
            value = source.get(key)
            if isinstance(value, list):
                return [row for row in value if isinstance(row, dict)]
    if isinstance(payload.get("data"), list):
        return [row for row in payload["data"] if isinstance(row, dict)]
    return []


async def list_email_schedules(
    token: str,
    location_id: str,
    timeout_seconds: float = 12.0,
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for page in range(_MAX_PAGES):
        payload = await _request_json(
            method="GET",
            candidate_paths=["/emails/schedule"],
            token=token,
            timeout_seconds=timeout_seconds,
            params={"locationId": location_id, "limit": _PAGE_SIZE, "offset": page * _PAGE_SIZE},
        )
        page_rows = _pick_rows(payload, "schedules", "campaigns", "emailSchedules", "emails")
        rows.extend(page_rows)
        if len(page_rows) < _PAGE_SIZE:
            break
    return rows


async def get_schedule_stats(
    token: str,
    location_id: str,
    schedule_id: str,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    payload = await _request_json(
        method="GET",
        candidate_paths=[
            f"/emails/schedule/{schedule_id}/stats",
            f"/emails/schedule/{schedule_id}",
        ],
        token=token,
        timeout_seconds=timeout_seconds,
        params={"locationId": location_id, "includeStats": "true"},
    )
    return payload if isinstance(payload, dict) else {}


async def count_contacts(token: str, location_id: str, timeout_seconds: float = 12.0) -> int:
    payload = await _request_json(
        method="GET",
        candidate_paths=["/contacts/"],
        token=token,
        timeout_seconds=timeout_seconds,
        params={"locationId": location_id, "limit": 1},
    )
    if not isinstance(payload, dict):
        raise GhlProviderError("Unexpected GHL contacts response shape")
    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
    total = meta.get("total", payload.get("total"))
    if total is None:
        raise GhlProviderError("GHL contacts response did not include a total")
    return int(total)


async def list_workflows(token: str, location_id: str, timeout_seconds: float = 12.0) -> list[dict[str, Any]]:
    payload = await _request_json(
        method="GET",
        candidate_paths=["/workflows/"],
        token=token,
        timeout_seconds=timeout_seconds,
        params={"locationId": location_id},
    )
    return _pick_rows(payload, "workflows")


async def create_email_template(
    token: str,
    location_id: str,
    *,
    title: str,
    html: str,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    created = await _request_json(
        method="POST",
        candidate_paths=["/emails/builder"],
        token=token,
        timeout_seconds=timeout_seconds,
        json_payload={"locationId": location_id, "title": title, "type": "html"},
    )
    template_id = str((created or {}).get("id") or (created or {}).get("templateId") or "")
    if not template_id:
        raise GhlProviderError("GHL did not return a template id")
    await _request_json(
        method="POST",
        candidate_paths=["/emails/builder/data"],
        token=token,
        timeout_seconds=timeout_seconds,
        json_payload={
            "locationId": location_id,
            "templateId": template_id,
            "html": html,
            "editorType": "html",
        },
    )
    return {**created, "id": template_id}


async def upload_media_file(
    token: str,
    location_id: str,
    *,
    file_name: str,
    content: bytes,
    content_type: str,
    timeout_seconds: float = 30.0,
) -> dict[str, Any]:
    payload = await _request_json(
        method="POST",
        candidate_paths=["/medias/upload-file"],
        token=token,
        timeout_seconds=timeout_seconds,
        params={"altId": location_id, "altType": "location"},
        data={"hosted": "false", "name": file_name},
        files={"file": (file_name, content, content_type)},
    )
    return payload if isinstance(payload, dict) else {}


async def list_custom_values(token: str, location_id: str, timeout_seconds: float = 12.0) -> list[dict[str, Any]]:
    payload = await _request_json(
        method="GET",
        candidate_paths=[f"/locations/{location_id}/customValues"],
        token=token,
        timeout_seconds=timeout_seconds,
    )
    return _pick_rows(payload, "customValues")


async def create_custom_value(
    token: str, location_id: str, name: str, value: str, timeout_seconds: float = 12.0
) -> dict[str, Any]:
    payload = await _request_json(
        method="POST",
        candidate_paths=[f"/locations/{location_id}/customValues"],
        token=token,
        timeout_seconds=timeout_seconds,
        json_payload={"name": name, "value": value},
    )
    return payload.get("customValue", payload) if isinstance(payload, dict) else {}


async def update_custom_value(
    token: str, location_id: str, custom_value_id: str, name: str, value: str, timeout_seconds: float = 12.0
) -> dict[str, Any]:
    payload = await _request_json(
        method="PUT",
        candidate_paths=[f"/locations/{location_id}/customValues/{custom_value_id}"],
        token=token,
        timeout_seconds=timeout_seconds,
        json_payload={"name": name, "value": value},
    )
    return payload.get("customValue", payload) if isinstance(payload, dict) else {}


async def delete_custom_value(
    token: str, location_id: str, custom_value_id: str, timeout_seconds: float = 12.0
) -> None:
    await _request_json(
        method="DELETE",
        candidate_paths=[f"/locations/{location_id}/customValues/{custom_value_id}"],
        token=token,
        timeout_seconds=timeout_seconds,
    )


async def get_location(token: str, location_id: str, timeout_seconds: float = 8.0) -> dict[str, Any]:
    payload = await _request_json(
        method="GET",
        candidate_paths=[f"/locations/{location_id}"],
        token=token,
        timeout_seconds=timeout_seconds,
    )
    if isinstance(payload, dict) and isinstance(payload.get("location"), dict):
        return payload["location"]
    return payload if isinstance(payload, dict) else {}


async def update_location(
    token: str, location_id: str, fields: dict[str, Any], timeout_seconds: float = 12.0
) -> dict[str, Any]:
    payload = await _request_json(
        method="PUT",
        candidate_paths=[f"/locations/{location_id}"],
        token=token,
        timeout_seconds=timeout_seconds,
        json_payload=fields,
    )
    return payload if isinstance(payload, dict) else {}


async def request_token(form: dict[str, str], timeout_seconds: float = 12.0) -> dict[str, Any]:
    payload = await _request_json(
        method="POST",
        candidate_paths=[GHL_TOKEN_PATH],
        token=None,
        timeout_seconds=timeout_seconds,
        data=form,
    )
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise GhlProviderError("GHL token endpoint returned no access token")
    return payload


async def mint_location_token(
    agency_token: str,
    location_id: str,
    company_id: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    body = {"locationId": location_id}
    if company_id:
        body["companyId"] = company_id
    payload = await _request_json(
        method="POST",
        candidate_paths=[GHL_LOCATION_TOKEN_PATH],
        token=agency_token,
        timeout_seconds=timeout_seconds,
        json_payload=body,
    )
    return payload if isinstance(payload, dict) else {}


async def search_locations(
    token: str,
    *,
    company_id: str | None = None,
    limit: int = 100,
    search: str = "",
    timeout_seconds: float = 12.0,
) -> list[dict[str, Any]]:
    """Locations visible to an agency token.

    GHL has accepted the search term as either `query` or `search`; both are
    tried before giving up. Auth failures are raised immediately.
    """
    params: dict[str, Any] = {"limit": limit}
    if company_id:
        params["companyId"] = company_id
    search_params = ("query", "search") if search else (None,)
    last_error: GhlProviderError | None = None

    for search_param in search_params:
        attempt = dict(params)
        if search_param:
            attempt[search_param] = search
        try:
            payload = await _request_json(
                method="GET",
                candidate_paths=["/locations/search"],
                token=token,
                timeout_seconds=timeout_seconds,
                params=attempt,
            )
        except GhlProviderError as exc:
            if exc.status_code in {401, 403}:
                raise
            last_error = exc
            continue
        rows = _pick_rows(payload, "locations")
        if not rows and isinstance(payload, dict) and isinstance(payload.get("location"), dict):
            rows = [payload["location"]]
        return rows

    raise last_error or GhlProviderError("Failed to list GHL locations")
