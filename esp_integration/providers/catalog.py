from __future__ import annotations

from esp_integration.config import Settings
from esp_integration.providers.base import ProviderAdapter
from esp_integration.providers.ghl.adapter import GhlAdapter
from esp_integration.providers.klaviyo.adapter import KlaviyoAdapter
from esp_integration.stores.campaign_cache import CampaignListCache
from esp_integration.stores.connections import ConnectionStore


def build_adapters(
    connections: ConnectionStore,
    cache: CampaignListCache,
    settings: Settings,
) -> list[ProviderAdapter]:
    """Every adapter shipped with the service, in registration order."""
    return [
        GhlAdapter(connections, cache, settings),
        KlaviyoAdapter(connections, cache, settings),
    ]
