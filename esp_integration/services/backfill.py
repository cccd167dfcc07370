from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any

from esp_integration.context import IntegrationContext, resolve_credentials
from esp_integration.domain.capabilities import has_capability
from esp_integration.domain.fanout import error_message, run_bounded, with_timeout
from esp_integration.domain.normalization import is_sent_campaign_status, parse_optional_ts, safe_count
from esp_integration.models.campaigns import CampaignAnalytics, EspCampaign
from esp_integration.models.credentials import Credentials
from esp_integration.observability import incr_metric, log_event
from esp_integration.providers.base import ProviderAdapter
from esp_integration.stores.accounts import AccountRecord


def analytics_counts(analytics: CampaignAnalytics) -> dict[str, int]:
    delivered = analytics.delivered_count if analytics.delivered_count is not None else analytics.sent_count
    return {
        "delivered_count": safe_count(delivered),
        "opened_count": safe_count(analytics.opened_count),
        "clicked_count": safe_count(analytics.clicked_count),
        "bounced_count": safe_count(analytics.bounced_count),
        "complained_count": 0,
        "unsubscribed_count": safe_count(analytics.unsubscribed_count),
    }


async def _probe_campaign(
    adapter: ProviderAdapter,
    credentials: Credentials,
    campaign: EspCampaign,
    timeout_seconds: float,
) -> CampaignAnalytics:
    return await with_timeout(adapter.campaigns.fetch_analytics(credentials, campaign), timeout_seconds)


def _empty_result(account: AccountRecord) -> dict[str, Any]:
    return {
        "account_key": account.key,
        "provider": None,
        "location_id": None,
        "campaigns_total": 0,
        "sent_campaigns": 0,
        "campaigns_probed": 0,
        "stats_found": 0,
        "upserted": 0,
        "errors": [],
    }


async def backfill_account(
    ctx: IntegrationContext,
    account: AccountRecord,
    *,
    limit: int | None = None,
    timeout_seconds: float | None = None,
) -> dict[str, Any]:
    """Pull provider-side analytics for sent campaigns and store absolute counters."""
    result = _empty_result(account)
    timeout = timeout_seconds or ctx.settings.esp_backfill_timeout_seconds

    try:
        adapter = ctx.registry.get_adapter_for_account(account.key, account.esp_provider)
    except Exception as exc:
        result["errors"].append(f"adapter: {error_message(exc)}")
        return result
    result["provider"] = adapter.provider
    if not has_capability(adapter, "campaigns"):
        result["errors"].append(f"{adapter.provider} does not currently support campaigns")
        return result

    try:
        credentials = await resolve_credentials(ctx, adapter, account.key)
    except Exception as exc:
        result["errors"].append(f"credentials: {error_message(exc)}")
        return result
    if credentials is None:
        result["errors"].append("No credentials")
        return result
    result["location_id"] = credentials.account_id

    try:
        campaigns = await adapter.campaigns.fetch_campaigns(credentials, force_refresh=True)
    except Exception as exc:
        result["errors"].append(f"fetch_campaigns: {error_message(exc)}")
        return result

    sent = [campaign for campaign in campaigns if is_sent_campaign_status(campaign.status)]
    result["campaigns_total"] = len(campaigns)
    result["sent_campaigns"] = len(sent)
    if limit and limit > 0:
        sent = sent[:limit]

    tasks = [partial(_probe_campaign, adapter, credentials, campaign, timeout) for campaign in sent]
    outcomes = await run_bounded(tasks, ctx.settings.esp_backfill_concurrency)

    for campaign, outcome in zip(sent, outcomes):
        result["campaigns_probed"] += 1
        if not outcome.ok:
            result["errors"].append(f"analytics {campaign.id}: {error_message(outcome.error)}")
            continue
        analytics = outcome.value
        if analytics is None or not analytics.has_engagement():
            continue
        result["stats_found"] += 1
        counts = analytics_counts(analytics)
        sent_at = parse_optional_ts(campaign.sent_at)
        last_event_at = sent_at or datetime.now(timezone.utc)
        first_delivered_at = sent_at if counts["delivered_count"] > 0 else None
        for campaign_id in campaign.store_ids():
            try:
                ctx.campaign_stats.apply_backfill(
                    adapter.provider,
                    credentials.account_id,
                    campaign_id,
                    counts,
                    last_event_at=last_event_at,
                    first_delivered_at=first_delivered_at,
                )
                result["upserted"] += 1
            except Exception as exc:
                result["errors"].append(f"upsert {campaign_id}: {error_message(exc)}")

    if result["upserted"]:
        ctx.cache.invalidate(adapter.provider, credentials.account_id)
    return result


async def backfill_campaign_stats(
    ctx: IntegrationContext,
    account_keys: list[str] | None = None,
    *,
    limit: int | None = None,
    timeout_seconds: float | None = None,
) -> dict[str, Any]:
    accounts = ctx.accounts.list_accounts(account_keys)
    results: list[dict[str, Any]] = []
    for account in accounts:
        results.append(await backfill_account(ctx, account, limit=limit, timeout_seconds=timeout_seconds))

    summary = {
        "accounts_processed": len(results),
        "campaigns_probed": sum(r["campaigns_probed"] for r in results),
        "stats_found": sum(r["stats_found"] for r in results),
        "upserted": sum(r["upserted"] for r in results),
        "error_count": sum(len(r["errors"]) for r in results),
    }
    incr_metric("esp.backfill.runs")
    log_event(
        "esp_backfill_completed",
        level=logging.WARNING if summary["error_count"] else logging.INFO,
        **summary,
    )
    return {"accounts": results, "summary": summary}
