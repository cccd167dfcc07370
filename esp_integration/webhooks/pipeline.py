"""Inbound ESP webhook ingestion.

received -> signature-verified -> parsed -> normalized -> aggregated ->
cache-invalidated. Only the first two stages can reject the request; from
normalization on, per-event problems are counted and the batch continues.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from esp_integration.domain.errors import MalformedPayload, SignatureInvalid, UpsertFailure
from esp_integration.models.webhooks import CanonicalWebhookEvent
from esp_integration.observability import incr_metric, log_event
from esp_integration.providers.registry import AdapterRegistry
from esp_integration.stores.campaign_cache import CampaignListCache
from esp_integration.stores.campaign_stats import CampaignStatsStore
from esp_integration.stores.dedup import WebhookEventLedger
from esp_integration.webhooks.families import resolve_webhook_route
from esp_integration.webhooks.verification import verify_webhook_signature


def parse_webhook_body(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload("Invalid JSON") from exc


@dataclass
class IngestOutcome:
    provider: str
    family: str
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    duplicates: int = 0
    processed_events: int = 0
    invalidated_accounts: list[str] = field(default_factory=list)

    def as_response(self) -> dict[str, Any]:
        return {
            "ok": True,
            "provider": self.provider,
            "family": self.family,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "processed_events": self.processed_events,
        }


class WebhookPipeline:
    def __init__(
        self,
        registry: AdapterRegistry,
        stats: CampaignStatsStore,
        ledger: WebhookEventLedger | None,
        cache: CampaignListCache,
    ):
        self._registry = registry
        self._stats = stats
        self._ledger = ledger
        self._cache = cache

    def ingest(
        self,
        provider: str,
        family: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        *,
        request_id: str | None = None,
    ) -> IngestOutcome:
        route = resolve_webhook_route(self._registry, provider, family)
        provider = route.provider
        incr_metric("webhook.events.received", provider=provider, family=family)

        if not verify_webhook_signature(provider, route.webhook, raw_body, headers, request_id=request_id):
            raise SignatureInvalid("Invalid signature")

        payload = parse_webhook_body(raw_body)
        extraction = route.webhook.extract_events(family, payload)

        outcome = IngestOutcome(
            provider=provider,
            family=family,
            skipped=len(extraction.skipped),
            processed_events=len(extraction.events),
        )
        for skipped in extraction.skipped:
            incr_metric("webhook.events.skipped", provider=provider, reason=skipped.reason)

        touched_accounts: list[str] = []
        for event in extraction.events:
            applied = self._apply(event, outcome, request_id=request_id)
            if applied and event.account_id not in touched_accounts:
                touched_accounts.append(event.account_id)

        for account_id in touched_accounts:
            self._cache.invalidate(provider, account_id)
        outcome.invalidated_accounts = touched_accounts

        incr_metric("webhook.events.processed", provider=provider, family=family)
        log_event(
            "webhook_processed",
            request_id=request_id,
            provider=provider,
            family=family,
            updated=outcome.updated,
            failed=outcome.failed,
            skipped=outcome.skipped,
            duplicates=outcome.duplicates,
            processed_events=outcome.processed_events,
        )
        return outcome

    def _claim(self, event: CanonicalWebhookEvent, request_id: str | None) -> bool | None:
        """True when claimed, False for a duplicate, None when dedup is unavailable."""
        key = event.dedup_key()
        if key is None or self._ledger is None:
            return None
        try:
            return self._ledger.record(event.provider, key)
        except Exception as exc:
            incr_metric("webhook.ledger.unavailable", provider=event.provider)
            log_event(
                "webhook_ledger_unavailable",
                level=logging.WARNING,
                request_id=request_id,
                provider=event.provider,
                event_key=key,
                error=str(exc),
            )
            return None

    def _release(self, event: CanonicalWebhookEvent, request_id: str | None) -> None:
        key = event.dedup_key()
        if key is None or self._ledger is None:
            return
        try:
            self._ledger.release(event.provider, key)
        except Exception as exc:
            log_event(
                "webhook_ledger_release_failed",
                level=logging.ERROR,
                request_id=request_id,
                provider=event.provider,
                event_key=key,
                error=str(exc),
            )

    def _apply(self, event: CanonicalWebhookEvent, outcome: IngestOutcome, *, request_id: str | None) -> bool:
        claimed = self._claim(event, request_id)
        if claimed is False:
            outcome.duplicates += 1
            incr_metric("webhook.events.duplicate", provider=event.provider)
            log_event(
                "webhook_duplicate_ignored",
                request_id=request_id,
                provider=event.provider,
                event_key=event.dedup_key(),
            )
            return False

        try:
            self._stats.increment(event)
        except UpsertFailure as exc:
            outcome.failed += 1
            incr_metric("webhook.events.failed", provider=event.provider)
            log_event(
                "webhook_upsert_failed",
                level=logging.ERROR,
                request_id=request_id,
                provider=event.provider,
                account_id=event.account_id,
                campaign_id=event.campaign_id,
                column=event.column,
                error=str(exc),
            )
            if claimed:
                self._release(event, request_id)
            return False

        outcome.updated += 1
        return True
