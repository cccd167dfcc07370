from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request

from esp_integration.config import Settings
from esp_integration.domain.capabilities import require_capability
from esp_integration.domain.errors import CredentialsMissing
from esp_integration.models.credentials import Credentials
from esp_integration.providers.base import ProviderAdapter, resolve_connection_credentials
from esp_integration.providers.catalog import build_adapters
from esp_integration.providers.registry import AdapterRegistry
from esp_integration.stores.accounts import AccountDirectory
from esp_integration.stores.campaign_cache import CampaignListCache
from esp_integration.stores.campaign_stats import CampaignStatsStore
from esp_integration.stores.connections import ConnectionStore
from esp_integration.stores.dedup import WebhookEventLedger
from esp_integration.vault import CredentialVault
from esp_integration.webhooks.pipeline import WebhookPipeline


@dataclass
class IntegrationContext:
    """Everything a request handler needs, built once per process."""
    settings: Settings
    vault: CredentialVault
    accounts: AccountDirectory
    connections: ConnectionStore
    campaign_stats: CampaignStatsStore
    ledger: WebhookEventLedger
    cache: CampaignListCache
    registry: AdapterRegistry
    webhooks: WebhookPipeline


def build_integration_context(
    app_settings: Settings,
    client: Any,
    adapters: list[ProviderAdapter] | None = None,
) -> IntegrationContext:
    vault = CredentialVault(app_settings.token_secrets())
    accounts = AccountDirectory(client)
    connections = ConnectionStore(client, vault)
    campaign_stats = CampaignStatsStore(client)
    ledger = WebhookEventLedger(client, ttl_seconds=app_settings.esp_webhook_dedup_ttl_seconds)
    cache = CampaignListCache(ttl_seconds=app_settings.esp_campaign_cache_ttl_seconds)
    registry = AdapterRegistry(accounts, connections, default_provider=app_settings.default_esp_provider)
    for adapter in adapters if adapters is not None else build_adapters(connections, cache, app_settings):
        registry.register(adapter)
    return IntegrationContext(
        settings=app_settings,
        vault=vault,
        accounts=accounts,
        connections=connections,
        campaign_stats=campaign_stats,
        ledger=ledger,
        cache=cache,
        registry=registry,
        webhooks=WebhookPipeline(registry, campaign_stats, ledger, cache),
    )


def get_integration_context(request: Request) -> IntegrationContext:
    return request.app.state.integration


async def resolve_credentials(ctx: IntegrationContext, adapter: ProviderAdapter, account_key: str) -> Credentials | None:
    if adapter.contacts is not None:
        return await adapter.contacts.resolve_credentials(account_key)
    return await resolve_connection_credentials(
        ctx.connections,
        account_key,
        adapter.provider,
        oauth=adapter.oauth,
        refresh_buffer_seconds=ctx.settings.oauth_refresh_buffer_seconds,
    )


async def resolve_adapter_and_credentials(
    ctx: IntegrationContext,
    account_key: str,
    capability: str | None = None,
    explicit_provider: str | None = None,
) -> tuple[ProviderAdapter, Credentials]:
    """Adapter for the account plus its credentials.

    Raises AdapterNotRegistered, CapabilityUnsupported or CredentialsMissing.
    """
    adapter = ctx.registry.get_adapter_for_account(account_key, explicit_provider)
    if capability:
        require_capability(adapter, capability)
    credentials = await resolve_credentials(ctx, adapter, account_key)
    if credentials is None:
        raise CredentialsMissing(account_key, adapter.provider)
    return adapter, credentials
