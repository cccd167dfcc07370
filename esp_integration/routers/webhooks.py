from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from esp_integration.context import IntegrationContext, get_integration_context
from esp_integration.domain.errors import (
    CapabilityUnsupported,
    EspIntegrationError,
    MalformedPayload,
    SignatureInvalid,
    unsupported_capability_detail,
)
from esp_integration.models.webhooks import WebhookEndpointInfo, WebhookIngestResponse
from esp_integration.observability import incr_metric, log_event
from esp_integration.routers.common import http_error, request_id
from esp_integration.webhooks.families import (
    family_expects,
    resolve_webhook_route,
    supported_providers,
    webhook_endpoint,
)


router = APIRouter(prefix="/api/webhooks/esp", tags=["webhooks"])


def _route_error(exc: EspIntegrationError, ctx: IntegrationContext, family: str, req_id: str | None) -> HTTPException:
    if isinstance(exc, CapabilityUnsupported):
        incr_metric("webhook.events.unsupported", provider=exc.provider, family=family)
        return HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail=unsupported_capability_detail(exc, supported_providers=supported_providers(ctx.registry, family)),
        )
    return http_error(exc, operation="webhook_ingest", provider_in_path=True, req_id=req_id)


@router.get("/{provider}/{family}", response_model=WebhookEndpointInfo)
async def describe_webhook_endpoint(
    provider: str,
    family: str,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        route = resolve_webhook_route(ctx.registry, provider, family)
    except EspIntegrationError as exc:
        raise _route_error(exc, ctx, family, request_id(request)) from exc
    return WebhookEndpointInfo(
        provider=route.provider,
        family=route.family,
        endpoint=webhook_endpoint(route.provider, route.family),
        expects=family_expects(route.family),
        signature_headers=list(route.webhook.signature_header_candidates),
    )


@router.post("/{provider}/{family}", response_model=WebhookIngestResponse)
async def ingest_esp_webhook(
    provider: str,
    family: str,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    req_id = request_id(request)
    raw_body = await request.body()
    try:
        outcome = ctx.webhooks.ingest(provider, family, raw_body, request.headers, request_id=req_id)
    except SignatureInvalid as exc:
        log_event("webhook_rejected", level=logging.WARNING, request_id=req_id, provider=provider, family=family, reason="signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature") from exc
    except MalformedPayload as exc:
        incr_metric("webhook.events.malformed", provider=provider, family=family)
        log_event("webhook_rejected", level=logging.WARNING, request_id=req_id, provider=provider, family=family, reason=str(exc))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except EspIntegrationError as exc:
        raise _route_error(exc, ctx, family, req_id) from exc
    return outcome.as_response()
