from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from esp_integration.auth import require_internal_caller
from esp_integration.context import IntegrationContext, get_integration_context
from esp_integration.domain.normalization import normalize_provider_id
from esp_integration.observability import log_event, metrics_snapshot
from esp_integration.routers.common import request_id


router = APIRouter(
    prefix="/api/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_caller)],
)


@router.get("/metrics")
async def get_metrics(prefix: str | None = None):
    snapshot = metrics_snapshot()
    if prefix:
        snapshot = {key: value for key, value in snapshot.items() if key.startswith(prefix)}
    return {"metrics": snapshot}


@router.post("/webhook-ledger/purge")
async def purge_webhook_ledger(request: Request, ctx: IntegrationContext = Depends(get_integration_context)):
    purged = ctx.ledger.purge_expired()
    log_event("webhook_ledger_purged", request_id=request_id(request), purged=purged)
    return {"purged": purged}


@router.delete("/campaign-stats")
async def wipe_campaign_stats(
    provider: str | None = None,
    account_id: str | None = Query(default=None, min_length=1),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    normalized = normalize_provider_id(provider) or None
    deleted = ctx.campaign_stats.wipe(normalized, account_id)
    ctx.cache.clear()
    return {"deleted": deleted, "provider": normalized, "account_id": account_id}
