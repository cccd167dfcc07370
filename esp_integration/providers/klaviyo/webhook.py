from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping
from typing import Any

from esp_integration.domain.errors import MalformedPayload
from esp_integration.domain.normalization import normalize_event_column, parse_event_time
from esp_integration.models.webhooks import CanonicalWebhookEvent, ExtractionResult, SkippedEvent
from esp_integration.observability import log_event


EMAIL_STATS_FAMILY = "email-stats"
SIGNATURE_HEADER = "klaviyo-signature"
TIMESTAMP_HEADER = "klaviyo-timestamp"

_ACCOUNT_ID_PATHS = (
    "account_id",
    "accountId",
    "organization_id",
    "organizationId",
    "company_id",
    "companyId",
    "relationships.account.data.id",
    "account.id",
)
_EVENT_NAME_PATHS = ("event", "event_name", "eventName", "metric.name", "name", "attributes.name")
_EVENT_ID_PATHS = ("id", "event_id", "eventId", "uuid")
_CAMPAIGN_ID_PATHS = (
    "campaign_id",
    "campaignId",
    "campaign.id",
    "campaign_ids",
    "campaignIds",
    "message.campaign_id",
    "message.campaignId",
    "event_properties.campaign_id",
    "event_properties.campaignId",
    "properties.campaign_id",
    "properties.campaignId",
    "relationships.campaign.data.id",
    "data.relationships.campaign.data.id",
)
_TIMESTAMP_PATHS = (
    "timestamp",
    "datetime",
    "occurred_at",
    "occurredAt",
    "created",
    "created_at",
    "attributes.timestamp",
)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _read_path(source: dict[str, Any], path: str) -> Any:
    cursor: Any = source
    for part in path.split("."):
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(part)
    return cursor


def _first_value(sources: list[dict[str, Any]], paths: tuple[str, ...]) -> Any:
    for source in sources:
        for path in paths:
            value = _read_path(source, path)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
    return None


def _first_text(sources: list[dict[str, Any]], paths: tuple[str, ...]) -> str:
    value = _first_value(sources, paths)
    return str(value).strip() if value is not None else ""


def _all_texts(sources: list[dict[str, Any]], paths: tuple[str, ...]) -> list[str]:
    values: list[str] = []

    def _add(text: str) -> None:
        if text and text not in values:
            values.append(text)

    for source in sources:
        for path in paths:
            raw = _read_path(source, path)
            if isinstance(raw, str):
                _add(raw.strip())
            elif isinstance(raw, list):
                for item in raw:
                    if isinstance(item, str):
                        _add(item.strip())
            elif isinstance(raw, dict) and isinstance(raw.get("id"), str):
                _add(raw["id"].strip())
    return values


def _root_events(payload: dict[str, Any]) -> list[dict[str, Any]]:
    data = payload.get("data")
    if isinstance(data, list):
        return [_as_dict(item) for item in data]
    if isinstance(data, dict):
        return [data]
    if isinstance(payload.get("events"), list):
        return [_as_dict(item) for item in payload["events"]]
    return [payload]


def extract_email_stats(payload: Any) -> ExtractionResult:
    """Canonical events from a Klaviyo webhook body.

    Klaviyo payloads vary by integration, so each field is looked up along a
    list of candidate paths on the event, its attributes, its properties and
    the metric.
    """
    if not isinstance(payload, dict):
        raise MalformedPayload("Unsupported webhook payload")
    root_sources = [payload, _as_dict(payload.get("attributes")), _as_dict(payload.get("meta"))]
    root_account_id = _first_text(root_sources, _ACCOUNT_ID_PATHS)

    result = ExtractionResult()
    for event_root in _root_events(payload):
        attrs = _as_dict(event_root.get("attributes"))
        sources = [
            event_root,
            attrs,
            _as_dict(attrs.get("event_properties")),
            _as_dict(attrs.get("properties")),
            _as_dict(event_root.get("metric")),
        ]
        event_name = _first_text(sources, _EVENT_NAME_PATHS)
        event_id = _first_text([event_root, attrs], _EVENT_ID_PATHS) or None

        column = normalize_event_column(event_name)
        if column is None:
            result.skipped.append(SkippedEvent(reason="unsupported-event", raw_event_name=event_name, event_id=event_id))
            continue

        account_id = _first_text(sources, _ACCOUNT_ID_PATHS) or root_account_id
        if not account_id:
            result.skipped.append(SkippedEvent(reason="no-account-id", raw_event_name=event_name, event_id=event_id))
            continue

        campaign_ids = _all_texts(sources, _CAMPAIGN_ID_PATHS)
        if not campaign_ids:
            log_event(
                "esp_webhook_no_campaign_id",
                level=logging.WARNING,
                provider="klaviyo",
                account_id=account_id,
                raw_event=event_name,
                webhook_event_id=event_id,
            )
            result.skipped.append(SkippedEvent(reason="no-campaign-id", raw_event_name=event_name, event_id=event_id))
            continue

        occurred_at = parse_event_time(_first_value(sources, _TIMESTAMP_PATHS))
        for campaign_id in campaign_ids:
            result.events.append(
                CanonicalWebhookEvent(
                    provider="klaviyo",
                    account_id=account_id,
                    campaign_id=campaign_id,
                    column=column,
                    occurred_at=occurred_at,
                    raw_event_name=event_name or "unknown",
                    event_id=event_id,
                )
            )
    return result


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class KlaviyoWebhook:
    """HMAC-SHA256 (hex) over the raw body followed by the timestamp header."""

    signature_header_candidates = (SIGNATURE_HEADER,)

    def __init__(self, secret: str | None):
        self._secret = (secret or "").strip()

    def verify_signature(self, raw_body: bytes, signature: str | None, headers: Mapping[str, str]) -> bool:
        if not self._secret:
            log_event(
                "esp_webhook_signature_unconfigured",
                level=logging.WARNING,
                provider="klaviyo",
            )
            return False
        if not signature:
            return False
        mac = hmac.new(self._secret.encode("utf-8"), raw_body, hashlib.sha256)
        timestamp = _header(headers, TIMESTAMP_HEADER)
        if timestamp:
            mac.update(timestamp.encode("utf-8"))
        return hmac.compare_digest(mac.hexdigest(), signature.strip().lower())

    def extract_events(self, family: str, payload: Any) -> ExtractionResult:
        if family != EMAIL_STATS_FAMILY:
            raise MalformedPayload(f"Unsupported webhook family: {family}")
        return extract_email_stats(payload)
