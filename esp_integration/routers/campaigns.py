from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from esp_integration.auth import require_internal_caller
from esp_integration.context import IntegrationContext, get_integration_context, resolve_adapter_and_credentials
from esp_integration.domain.errors import EspIntegrationError
from esp_integration.models.campaigns import CampaignListResponse, CampaignStatsResponse
from esp_integration.observability import incr_metric, log_event
from esp_integration.routers.common import http_error, request_id
from esp_integration.services.aggregation import (
    aggregate_campaigns,
    aggregate_contact_counts,
    aggregate_workflows,
    campaign_rows,
)
from esp_integration.services.backfill import backfill_campaign_stats
from esp_integration.stores.accounts import AccountRecord


router = APIRouter(
    prefix="/api/esp",
    tags=["esp-campaigns"],
    dependencies=[Depends(require_internal_caller)],
)


def _account_keys(account_key: list[str] | None) -> list[str] | None:
    keys = [key.strip() for key in account_key or [] if key.strip()]
    return keys or None


@router.get("/campaigns", response_model=CampaignListResponse)
async def list_account_campaigns(
    request: Request,
    account_key: str = Query(min_length=1),
    provider: str | None = None,
    force_refresh: bool = False,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        adapter, credentials = await resolve_adapter_and_credentials(ctx, account_key, "campaigns", provider)
        account = ctx.accounts.get_account(account_key) or AccountRecord(key=account_key, dealer=account_key)
        rows = await campaign_rows(ctx, adapter, credentials, account, force_refresh=force_refresh)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="list_campaigns", req_id=request_id(request)) from exc
    return CampaignListResponse(
        account_key=account_key,
        provider=adapter.provider,
        location_id=credentials.location_id,
        campaigns=rows,
    )


@router.get("/campaigns/aggregate")
async def get_campaigns_aggregate(
    account_key: list[str] | None = Query(default=None),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    return await aggregate_campaigns(ctx, _account_keys(account_key))


@router.get("/workflows/aggregate")
async def get_workflows_aggregate(
    account_key: list[str] | None = Query(default=None),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    return await aggregate_workflows(ctx, _account_keys(account_key))


@router.get("/contacts/aggregate")
async def get_contacts_aggregate(
    account_key: list[str] | None = Query(default=None),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    return await aggregate_contact_counts(ctx, _account_keys(account_key))


@router.get("/campaigns/stats", response_model=CampaignStatsResponse)
async def get_campaign_stats(
    request: Request,
    account_key: str = Query(min_length=1),
    campaign_id: list[str] | None = Query(default=None),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        adapter, credentials = await resolve_adapter_and_credentials(ctx, account_key)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="campaign_stats", req_id=request_id(request)) from exc
    stats = ctx.campaign_stats.list_for_account(adapter.provider, credentials.account_id, campaign_id or None)
    return CampaignStatsResponse(
        account_key=account_key,
        provider=adapter.provider,
        account_id=credentials.account_id,
        stats=stats,
    )


@router.post("/campaigns/backfill-stats")
async def post_backfill_campaign_stats(
    request: Request,
    account_key: str | None = None,
    limit: int | None = Query(default=None, ge=1),
    timeout_seconds: float | None = Query(default=None, gt=0, le=120),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    account_keys = None
    if account_key:
        account = ctx.accounts.get_account(account_key)
        if account is None or account.internal:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f'Account "{account_key}" not found')
        account_keys = [account.key]

    incr_metric("esp.backfill.requested", scoped=bool(account_keys))
    log_event(
        "esp_backfill_started",
        request_id=request_id(request),
        account_key=account_key,
        limit=limit,
        timeout_seconds=timeout_seconds,
    )
    return await backfill_campaign_stats(ctx, account_keys, limit=limit, timeout_seconds=timeout_seconds)
