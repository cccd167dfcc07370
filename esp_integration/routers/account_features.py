from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from esp_integration.auth import require_internal_caller
from esp_integration.context import IntegrationContext, get_integration_context, resolve_adapter_and_credentials
from esp_integration.domain.errors import EspIntegrationError
from esp_integration.models.account_features import (
    BusinessDetails,
    BusinessDetailsSyncResult,
    CustomValueSyncRequest,
    CustomValueSyncResult,
    EspMedia,
    EspTemplate,
    MediaUploadInput,
    TemplateInput,
)
from esp_integration.observability import incr_metric, log_event
from esp_integration.routers.common import http_error, request_id


router = APIRouter(
    prefix="/api/esp",
    tags=["esp-account-features"],
    dependencies=[Depends(require_internal_caller)],
)


@router.post("/templates/{account_key}", response_model=EspTemplate)
async def create_template(
    account_key: str,
    payload: TemplateInput,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        adapter, credentials = await resolve_adapter_and_credentials(ctx, account_key, "templates")
        template = await adapter.templates.create_template(credentials, payload)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="create_template", req_id=request_id(request)) from exc
    incr_metric("esp.templates.created", provider=adapter.provider)
    log_event("esp_template_created", request_id=request_id(request), account_key=account_key, provider=adapter.provider, template_id=template.id)
    return template


@router.post("/media/{account_key}", response_model=EspMedia)
async def upload_media(
    account_key: str,
    payload: MediaUploadInput,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        adapter, credentials = await resolve_adapter_and_credentials(ctx, account_key, "media")
        media = await adapter.media.upload_media(credentials, payload)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="upload_media", req_id=request_id(request)) from exc
    incr_metric("esp.media.uploaded", provider=adapter.provider)
    return media


@router.post("/custom-values/{account_key}/sync", response_model=CustomValueSyncResult)
async def sync_custom_values(
    account_key: str,
    payload: CustomValueSyncRequest,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        adapter, credentials = await resolve_adapter_and_credentials(ctx, account_key, "custom_values")
        result = await adapter.custom_values.sync_custom_values(credentials, payload.values, payload.managed_names)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="sync_custom_values", req_id=request_id(request)) from exc
    return result


@router.post("/accounts/{account_key}/sync-details", response_model=BusinessDetailsSyncResult)
async def sync_account_details(
    account_key: str,
    payload: BusinessDetails,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        adapter, credentials = await resolve_adapter_and_credentials(ctx, account_key, "account_details_sync")
        return await adapter.account_details_sync.sync_business_details(credentials, payload)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="sync_account_details", req_id=request_id(request)) from exc
