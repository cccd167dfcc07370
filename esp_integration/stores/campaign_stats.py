from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from esp_integration.domain.errors import UpsertFailure
from esp_integration.domain.normalization import STATS_COLUMNS
from esp_integration.models.campaigns import CampaignStatsAggregate
from esp_integration.models.webhooks import CanonicalWebhookEvent
from esp_integration.observability import log_event


CAMPAIGN_STATS_TABLE = "campaign_email_stats"
INCREMENT_FUNCTION = "increment_campaign_email_stats"
BACKFILL_FUNCTION = "backfill_campaign_email_stats"


class CampaignStatsStore:
    """Per-campaign engagement counters keyed by (provider, account_id, campaign_id).

    Webhook increments go through a single SQL function so concurrent
    deliveries for the same row never lose updates.
    """

    def __init__(self, client: Any):
        self._client = client

    def increment(self, event: CanonicalWebhookEvent) -> None:
        if event.column not in STATS_COLUMNS:
            raise UpsertFailure(f"Unknown stats column: {event.column}")
        try:
            self._client.rpc(
                INCREMENT_FUNCTION,
                {
                    "p_provider": event.provider,
                    "p_account_id": event.account_id,
                    "p_campaign_id": event.campaign_id,
                    "p_column": event.column,
                    "p_occurred_at": event.occurred_at.isoformat(),
                },
            ).execute()
        except Exception as exc:
            raise UpsertFailure(
                f"Failed to increment {event.column} for {event.provider}/{event.account_id}/{event.campaign_id}: {exc}"
            ) from exc

    def get(self, provider: str, account_id: str, campaign_id: str) -> CampaignStatsAggregate | None:
        result = (
            self._client.table(CAMPAIGN_STATS_TABLE)
            .select("*")
            .eq("provider", provider)
            .eq("account_id", account_id)
            .eq("campaign_id", campaign_id)
            .execute()
        )
        if not result.data:
            return None
        return CampaignStatsAggregate.from_row(result.data[0])

    def list_for_account(
        self,
        provider: str,
        account_id: str,
        campaign_ids: list[str] | None = None,
    ) -> list[CampaignStatsAggregate]:
        if campaign_ids is not None and not campaign_ids:
            return []
        query = (
            self._client.table(CAMPAIGN_STATS_TABLE)
            .select("*")
            .eq("provider", provider)
            .eq("account_id", account_id)
        )
        if campaign_ids is not None:
            query = query.in_("campaign_id", campaign_ids)
        return [CampaignStatsAggregate.from_row(row) for row in query.execute().data or []]

    def apply_backfill(
        self,
        provider: str,
        account_id: str,
        campaign_id: str,
        counts: dict[str, int],
        *,
        last_event_at: datetime | None = None,
        first_delivered_at: datetime | None = None,
    ) -> None:
        """Overwrite counters with absolute values pulled from the provider.

        Timestamps only ever move one way: `last_event_at` keeps the later of
        the stored and given values, `first_delivered_at` the earlier one.
        Counters missing from `counts` keep their stored values.
        """
        params: dict[str, Any] = {
            "p_provider": provider,
            "p_account_id": account_id,
            "p_campaign_id": campaign_id,
            "p_last_event_at": (last_event_at or datetime.now(timezone.utc)).isoformat(),
            "p_first_delivered_at": first_delivered_at.isoformat() if first_delivered_at else None,
        }
        for column in STATS_COLUMNS:
            params[f"p_{column}"] = int(counts[column]) if column in counts else None
        try:
            self._client.rpc(BACKFILL_FUNCTION, params).execute()
        except Exception as exc:
            raise UpsertFailure(f"Failed to write backfilled stats for {provider}/{account_id}/{campaign_id}: {exc}") from exc

    def wipe(self, provider: str | None = None, account_id: str | None = None) -> int:
        query = self._client.table(CAMPAIGN_STATS_TABLE).delete()
        if provider:
            query = query.eq("provider", provider)
        else:
            query = query.neq("provider", "")
        if account_id:
            query = query.eq("account_id", account_id)
        deleted = len(query.execute().data or [])
        log_event(
            "campaign_stats_wiped",
            level=logging.WARNING,
            provider=provider,
            account_id=account_id,
            deleted=deleted,
        )
        return deleted
