"""Cross-account fan-out reads: campaigns, workflows and contact counts.

Accounts are processed with bounded concurrency. An account without a capable
adapter or without credentials is skipped and counted; an account whose fetch
raises is reported under ``errors``. Neither affects its siblings.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from esp_integration.context import IntegrationContext, resolve_credentials
from esp_integration.domain.capabilities import has_capability
from esp_integration.domain.fanout import error_message, run_bounded
from esp_integration.models.campaigns import EspCampaign
from esp_integration.models.credentials import Credentials
from esp_integration.observability import incr_metric, log_event
from esp_integration.providers.base import ProviderAdapter
from esp_integration.stores.accounts import AccountRecord


Fetch = Callable[[ProviderAdapter, Credentials, AccountRecord], Awaitable[list[dict[str, Any]]]]


@dataclass
class _AccountResult:
    provider: str
    status: str  # fetched | no_adapter | no_credentials
    rows: list[dict[str, Any]] | None = None


async def _fetch_account(
    ctx: IntegrationContext,
    capability: str,
    fetch: Fetch,
    account: AccountRecord,
) -> _AccountResult:
    adapter = ctx.registry.get_adapter_for_account(account.key, account.esp_provider)
    if not has_capability(adapter, capability) or not has_capability(adapter, "contacts"):
        return _AccountResult(provider=adapter.provider, status="no_adapter")
    credentials = await resolve_credentials(ctx, adapter, account.key)
    if credentials is None:
        log_event(
            "esp_fanout_no_credentials",
            level=logging.WARNING,
            account_key=account.key,
            provider=adapter.provider,
            capability=capability,
        )
        return _AccountResult(provider=adapter.provider, status="no_credentials")
    rows = await fetch(adapter, credentials, account)
    return _AccountResult(provider=adapter.provider, status="fetched", rows=rows)


async def fan_out(
    ctx: IntegrationContext,
    capability: str,
    fetch: Fetch,
    account_keys: list[str] | None = None,
) -> dict[str, Any]:
    accounts = ctx.accounts.list_accounts(account_keys)
    tasks = [partial(_fetch_account, ctx, capability, fetch, account) for account in accounts]
    outcomes = await run_bounded(tasks, ctx.settings.esp_fanout_concurrency)

    results: list[dict[str, Any]] = []
    per_account: dict[str, dict[str, Any]] = {}
    errors: dict[str, str] = {}
    skipped_no_adapter = 0
    skipped_no_credentials = 0

    for account, outcome in zip(accounts, outcomes):
        if not outcome.ok:
            errors[account.key] = error_message(outcome.error)
            per_account[account.key] = {"dealer": account.dealer, "count": 0, "connected": True, "provider": "unknown"}
            continue
        fetched = outcome.value
        if fetched.status == "no_adapter":
            skipped_no_adapter += 1
        elif fetched.status == "no_credentials":
            skipped_no_credentials += 1
        rows = fetched.rows or []
        results.extend(rows)
        per_account[account.key] = {
            "dealer": account.dealer,
            "count": len(rows),
            "connected": fetched.status == "fetched",
            "provider": fetched.provider,
        }

    meta = {
        "total_fetched": len(results),
        "accounts_fetched": len(per_account),
        "skipped_no_adapter": skipped_no_adapter,
        "skipped_no_credentials": skipped_no_credentials,
        "error_count": len(errors),
    }
    incr_metric("esp.fanout.runs", capability=capability)
    if errors or skipped_no_credentials:
        log_event("esp_fanout_partial", level=logging.WARNING, capability=capability, **meta)
    return {"results": results, "per_account": per_account, "errors": errors, "meta": meta}


def _stats_by_campaign(ctx: IntegrationContext, provider: str, account_id: str, campaigns: list[EspCampaign]) -> dict[str, dict[str, Any]]:
    ids = sorted({store_id for campaign in campaigns for store_id in campaign.store_ids()})
    rows = ctx.campaign_stats.list_for_account(provider, account_id, ids)
    return {
        row.campaign_id: row.model_dump(mode="json", exclude={"provider", "account_id", "campaign_id"})
        for row in rows
    }


async def campaign_rows(
    ctx: IntegrationContext,
    adapter: ProviderAdapter,
    credentials: Credentials,
    account: AccountRecord,
    force_refresh: bool = False,
) -> list[dict[str, Any]]:
    """Campaigns for one account, each carrying its webhook-derived stats row."""
    campaigns = await adapter.campaigns.fetch_campaigns(credentials, force_refresh=force_refresh)
    stats = _stats_by_campaign(ctx, adapter.provider, credentials.account_id, campaigns)
    rows: list[dict[str, Any]] = []
    for campaign in campaigns:
        webhook_stats = next((stats[i] for i in campaign.store_ids() if i in stats), None)
        rows.append(
            {
                **campaign.model_dump(mode="json"),
                "account_key": campaign.account_key or account.key,
                "dealer": account.dealer,
                "provider": adapter.provider,
                "webhook_stats": webhook_stats,
            }
        )
    return rows


async def _fetch_workflow_rows(
    adapter: ProviderAdapter,
    credentials: Credentials,
    account: AccountRecord,
) -> list[dict[str, Any]]:
    workflows = await adapter.workflows.fetch_workflows(credentials)
    return [
        {**workflow.model_dump(mode="json"), "account_key": account.key, "dealer": account.dealer, "provider": adapter.provider}
        for workflow in workflows
    ]


async def _fetch_contact_count_row(
    adapter: ProviderAdapter,
    credentials: Credentials,
    account: AccountRecord,
) -> list[dict[str, Any]]:
    count = await adapter.contacts.fetch_contact_count(credentials)
    return [{"account_key": account.key, "dealer": account.dealer, "provider": adapter.provider, "contact_count": count}]


async def aggregate_campaigns(ctx: IntegrationContext, account_keys: list[str] | None = None) -> dict[str, Any]:
    return await fan_out(ctx, "campaigns", partial(campaign_rows, ctx), account_keys)


async def aggregate_workflows(ctx: IntegrationContext, account_keys: list[str] | None = None) -> dict[str, Any]:
    return await fan_out(ctx, "workflows", _fetch_workflow_rows, account_keys)


async def aggregate_contact_counts(ctx: IntegrationContext, account_keys: list[str] | None = None) -> dict[str, Any]:
    report = await fan_out(ctx, "contacts", _fetch_contact_count_row, account_keys)
    report["meta"]["total_contacts"] = sum(row["contact_count"] for row in report["results"])
    return report
