from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from esp_integration.auth import require_internal_caller
from esp_integration.context import IntegrationContext, get_integration_context
from esp_integration.domain.errors import AdapterNotRegistered
from esp_integration.domain.normalization import normalize_provider_id
from esp_integration.models.providers import ProviderDescription, ProviderListResponse
from esp_integration.webhooks.families import webhook_endpoint


router = APIRouter(
    prefix="/api/esp/providers",
    tags=["esp-providers"],
    dependencies=[Depends(require_internal_caller)],
)


def _describe(ctx: IntegrationContext, provider: str) -> ProviderDescription:
    adapter = ctx.registry.get_adapter(provider)
    families = list(adapter.webhook_families) if adapter.webhook is not None else []
    return ProviderDescription(
        provider=adapter.provider,
        capabilities=adapter.capabilities.as_dict(),
        webhook_families=families,
        webhook_endpoints=[webhook_endpoint(adapter.provider, family) for family in families],
    )


@router.get("", response_model=ProviderListResponse)
async def list_providers(ctx: IntegrationContext = Depends(get_integration_context)):
    try:
        default_provider: str | None = ctx.registry.default_provider()
    except AdapterNotRegistered:
        default_provider = None
    return ProviderListResponse(
        providers=[_describe(ctx, provider) for provider in ctx.registry.registered_providers()],
        default_provider=default_provider,
    )


@router.get("/{provider}", response_model=ProviderDescription)
async def get_provider(provider: str, ctx: IntegrationContext = Depends(get_integration_context)):
    try:
        return _describe(ctx, provider)
    except AdapterNotRegistered as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/{provider}/capabilities")
async def get_provider_capabilities(provider: str, ctx: IntegrationContext = Depends(get_integration_context)):
    try:
        capabilities = ctx.registry.capabilities(provider)
    except AdapterNotRegistered as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return {"provider": normalize_provider_id(provider), "capabilities": capabilities.as_dict()}
