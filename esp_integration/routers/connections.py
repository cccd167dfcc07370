from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from esp_integration.auth import require_internal_caller
from esp_integration.context import IntegrationContext, get_integration_context
from esp_integration.domain.errors import EspIntegrationError
from esp_integration.domain.normalization import normalize_provider_id
from esp_integration.models.account_features import ValidationInput, ValidationResult
from esp_integration.models.connections import (
    AgencyDisconnectResponse,
    AgencyStatusResponse,
    ApiKeyConnectRequest,
    AuthorizeResponse,
    BulkLocationLinkRequest,
    BulkLocationLinkResponse,
    ConnectionStatusResponse,
    DisconnectResponse,
    LocationLinkRequest,
    LocationLinkResponse,
    LocationLinkStatusResponse,
    LocationListResponse,
    LocationUnlinkResponse,
    RequiredScopesResponse,
    ValidateCredentialsRequest,
)
from esp_integration.models.credentials import ProviderOAuthCredential
from esp_integration.observability import log_event
from esp_integration.routers.common import http_error, request_id
from esp_integration.services import connections as connection_service


router = APIRouter(
    prefix="/api/esp/connections",
    tags=["esp-connections"],
    dependencies=[Depends(require_internal_caller)],
)
# Provider redirects land here without the internal key; the signed state authenticates them.
oauth_callback_router = APIRouter(prefix="/api/esp/connections", tags=["esp-connections"])


@router.post("/validate", response_model=ValidationResult)
async def validate_connection_credentials(
    payload: ValidateCredentialsRequest,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        return await connection_service.validate_credentials(
            ctx,
            payload.provider,
            ValidationInput(
                api_key=payload.api_key,
                access_token=payload.access_token,
                location_id=payload.location_id,
            ),
        )
    except EspIntegrationError as exc:
        raise http_error(exc, operation="validate_credentials", provider_in_path=True, req_id=request_id(request)) from exc


@router.get("/required-scopes", response_model=RequiredScopesResponse)
async def get_required_scopes(
    request: Request,
    provider: str = Query(min_length=1),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        return connection_service.required_scopes(ctx, provider)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="required_scopes", provider_in_path=True, req_id=request_id(request)) from exc


@router.get("/{provider}/agency", response_model=AgencyStatusResponse)
async def get_agency_status(
    provider: str,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        return connection_service.agency_status(ctx, provider)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="agency_status", provider_in_path=True, req_id=request_id(request)) from exc


@router.delete("/{provider}/agency", response_model=AgencyDisconnectResponse)
async def disconnect_agency(
    provider: str,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        return connection_service.disconnect_agency(ctx, provider)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="agency_disconnect", provider_in_path=True, req_id=request_id(request)) from exc


@router.get("/{provider}/locations", response_model=LocationListResponse)
async def list_agency_locations(
    provider: str,
    request: Request,
    search: str = "",
    limit: int | None = Query(default=None),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        locations = await connection_service.list_agency_locations(ctx, provider, search, limit)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="list_locations", provider_in_path=True, req_id=request_id(request)) from exc
    return LocationListResponse(provider=normalize_provider_id(provider), total=len(locations), locations=locations)


@router.get("/{provider}/location-link", response_model=LocationLinkStatusResponse)
async def get_location_link(
    provider: str,
    request: Request,
    account_key: str = Query(min_length=1),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        return connection_service.location_link_status(ctx, provider, account_key)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="location_link_status", provider_in_path=True, req_id=request_id(request)) from exc


@router.post("/{provider}/location-link", response_model=LocationLinkResponse)
async def link_location(
    provider: str,
    payload: LocationLinkRequest,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        link = await connection_service.link_account_location(
            ctx, provider, payload.account_key, payload.location_id, payload.location_name
        )
    except EspIntegrationError as exc:
        raise http_error(exc, operation="link_location", provider_in_path=True, req_id=request_id(request)) from exc
    return LocationLinkResponse(
        success=True,
        provider=link.provider,
        account_key=link.account_key,
        location_id=link.location_id,
        location_name=link.location_name,
    )


@router.delete("/{provider}/location-link", response_model=LocationUnlinkResponse)
async def unlink_location(
    provider: str,
    request: Request,
    account_key: str = Query(min_length=1),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        removed = connection_service.unlink_account_location(ctx, provider, account_key)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="unlink_location", provider_in_path=True, req_id=request_id(request)) from exc
    return LocationUnlinkResponse(success=True, provider=normalize_provider_id(provider), removed=removed)


@router.post("/{provider}/location-link/bulk", response_model=BulkLocationLinkResponse)
async def bulk_link_locations(
    provider: str,
    payload: BulkLocationLinkRequest,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        return await connection_service.bulk_link_account_locations(ctx, provider, payload.mappings)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="bulk_link_locations", provider_in_path=True, req_id=request_id(request)) from exc


@router.get("/{account_key}", response_model=ConnectionStatusResponse)
async def get_connection_status(account_key: str, ctx: IntegrationContext = Depends(get_integration_context)):
    return connection_service.connection_status(ctx, account_key)


@router.post("/{account_key}/api-key")
async def connect_with_api_key(
    account_key: str,
    payload: ApiKeyConnectRequest,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        connection = await connection_service.connect_api_key(ctx, account_key, payload.provider, payload.api_key)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="connect_api_key", provider_in_path=True, req_id=request_id(request)) from exc
    log_event(
        "esp_connection_stored",
        request_id=request_id(request),
        account_key=account_key,
        provider=connection.provider,
        auth_mode="api_key",
    )
    return {
        "account_key": account_key,
        "provider": connection.provider,
        "auth_mode": "api_key",
        "account_id": connection.account_id,
        "account_name": connection.account_name,
        "connected": True,
    }


@router.delete("/{account_key}/{provider}", response_model=DisconnectResponse)
async def disconnect_provider(
    account_key: str,
    provider: str,
    request: Request,
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        return connection_service.disconnect(ctx, account_key, provider)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="disconnect", provider_in_path=True, req_id=request_id(request)) from exc


@router.get("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize_provider(
    provider: str,
    request: Request,
    account_key: str = Query(min_length=1),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        url = connection_service.authorization_url(ctx, provider, account_key)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="oauth_authorize", provider_in_path=True, req_id=request_id(request)) from exc
    return AuthorizeResponse(provider=normalize_provider_id(provider), account_key=account_key, authorization_url=url)


@oauth_callback_router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: str = Query(min_length=1),
    state: str = Query(min_length=1),
    ctx: IntegrationContext = Depends(get_integration_context),
):
    try:
        connection = await connection_service.complete_oauth(ctx, provider, code, state)
    except EspIntegrationError as exc:
        raise http_error(exc, operation="oauth_callback", provider_in_path=True, req_id=request_id(request)) from exc
    if isinstance(connection, ProviderOAuthCredential):
        log_event(
            "esp_connection_stored",
            request_id=request_id(request),
            provider=connection.provider,
            auth_mode="agency",
            subject_id=connection.subject_id,
        )
        return {
            "provider": connection.provider,
            "auth_mode": "agency",
            "subject_type": connection.subject_type,
            "subject_id": connection.subject_id,
            "scopes": list(connection.scopes),
            "connected": True,
        }
    log_event(
        "esp_connection_stored",
        request_id=request_id(request),
        account_key=connection.account_key,
        provider=connection.provider,
        auth_mode="oauth",
    )
    return {
        "account_key": connection.account_key,
        "provider": connection.provider,
        "auth_mode": "oauth",
        "location_id": connection.location_id,
        "scopes": list(connection.scopes),
        "connected": True,
    }
