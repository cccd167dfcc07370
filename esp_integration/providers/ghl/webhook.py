from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Mapping
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from esp_integration.domain.errors import MalformedPayload
from esp_integration.domain.normalization import normalize_event_column, parse_event_time
from esp_integration.models.webhooks import CanonicalWebhookEvent, ExtractionResult, SkippedEvent
from esp_integration.observability import log_event


EMAIL_STATS_FAMILY = "email-stats"
EMAIL_STATS_TYPE = "LCEmailStats"
SIGNATURE_HEADER = "x-wh-signature"
_CAMPAIGN_TAG_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{10,}$")


def _load_public_key(pem: str | None) -> RSAPublicKey | None:
    text = (pem or "").strip()
    if not text:
        return None
    key = load_pem_public_key(text.replace("\\n", "\n").encode("utf-8"))
    if not isinstance(key, RSAPublicKey):
        raise ValueError("GHL webhook public key must be an RSA key")
    return key


def extract_campaign_ids(webhook_payload: Mapping[str, Any]) -> list[str]:
    """Campaign ids from `campaigns`, plus id-shaped tags."""
    ids: list[str] = []
    campaigns = webhook_payload.get("campaigns")
    if isinstance(campaigns, list):
        for value in campaigns:
            text = str(value or "").strip()
            if text and text not in ids:
                ids.append(text)
    tags = webhook_payload.get("tags")
    if isinstance(tags, list):
        for tag in tags:
            text = str(tag or "").strip()
            if _CAMPAIGN_TAG_PATTERN.match(text) and text not in ids:
                ids.append(text)
    return ids


def extract_email_stats(payload: Any) -> ExtractionResult:
    if not isinstance(payload, dict):
        raise MalformedPayload("Unsupported webhook type")
    webhook_payload = payload.get("webhookPayload")
    location_id = str(payload.get("locationId") or "").strip()
    if payload.get("type") != EMAIL_STATS_TYPE or not location_id or not isinstance(webhook_payload, dict):
        raise MalformedPayload("Unsupported webhook type")

    result = ExtractionResult()
    event_name = str(webhook_payload.get("event") or "").strip()
    event_id = str(webhook_payload.get("id") or "").strip() or None
    column = normalize_event_column(event_name)
    if column is None:
        result.skipped.append(SkippedEvent(reason="unsupported-event", raw_event_name=event_name, event_id=event_id))
        return result

    campaign_ids = extract_campaign_ids(webhook_payload)
    if not campaign_ids:
        log_event(
            "esp_webhook_no_campaign_id",
            level=logging.WARNING,
            provider="ghl",
            location_id=location_id,
            raw_event=event_name,
            webhook_event_id=event_id,
        )
        result.skipped.append(SkippedEvent(reason="no-campaign-id", raw_event_name=event_name, event_id=event_id))
        return result

    occurred_at = parse_event_time(webhook_payload.get("timestamp"))
    for campaign_id in campaign_ids:
        result.events.append(
            CanonicalWebhookEvent(
                provider="ghl",
                account_id=location_id,
                campaign_id=campaign_id,
                column=column,
                occurred_at=occurred_at,
                raw_event_name=event_name,
                event_id=event_id,
            )
        )
    return result


class GhlWebhook:
    """RSA-SHA256 signed LeadConnector webhooks."""

    signature_header_candidates = (SIGNATURE_HEADER,)

    def __init__(self, public_key_pem: str | None, signature_mode: str = "enforce"):
        self._public_key = _load_public_key(public_key_pem)
        self._permissive = (signature_mode or "").strip().lower() == "permissive_dev"

    def verify_signature(self, raw_body: bytes, signature: str | None, headers: Mapping[str, str]) -> bool:
        if self._public_key is None:
            if self._permissive:
                log_event(
                    "esp_webhook_signature_skipped",
                    level=logging.WARNING,
                    provider="ghl",
                    reason="GHL_WEBHOOK_PUBLIC_KEY not set (permissive_dev)",
                )
                return True
            log_event(
                "esp_webhook_signature_unconfigured",
                level=logging.ERROR,
                provider="ghl",
            )
            return False
        if not signature:
            return False
        try:
            decoded = base64.b64decode(signature.strip(), validate=True)
        except (ValueError, binascii.Error):
            return False
        try:
            self._public_key.verify(decoded, raw_body, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True

    def extract_events(self, family: str, payload: Any) -> ExtractionResult:
        if family != EMAIL_STATS_FAMILY:
            raise MalformedPayload(f"Unsupported webhook family: {family}")
        return extract_email_stats(payload)
