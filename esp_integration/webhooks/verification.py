from __future__ import annotations

import logging
from collections.abc import Mapping

from esp_integration.observability import incr_metric, log_event
from esp_integration.providers.base import WebhookModule


def signature_from_headers(headers: Mapping[str, str], candidates: tuple[str, ...]) -> str | None:
    """Value of the first candidate header present, matched case-insensitively."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in candidates:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def verify_webhook_signature(
    provider: str,
    webhook: WebhookModule,
    raw_body: bytes,
    headers: Mapping[str, str],
    *,
    request_id: str | None = None,
) -> bool:
    signature = signature_from_headers(headers, webhook.signature_header_candidates)
    try:
        verified = bool(webhook.verify_signature(raw_body, signature, headers))
    except Exception as exc:
        # Malformed keys or signatures surface as arbitrary crypto errors.
        incr_metric("webhook.signature.errors", provider=provider)
        log_event(
            "webhook_signature_error",
            level=logging.WARNING,
            request_id=request_id,
            provider=provider,
            error=f"{exc.__class__.__name__}: {exc}",
        )
        return False
    if not verified:
        incr_metric("webhook.signature.rejected", provider=provider)
        log_event(
            "webhook_signature_rejected",
            level=logging.WARNING,
            request_id=request_id,
            provider=provider,
            has_signature=bool(signature),
        )
    return verified
