from __future__ import annotations

from dataclasses import dataclass

from esp_integration.domain.capabilities import has_capability
from esp_integration.domain.errors import CapabilityUnsupported, UnknownWebhookFamily
from esp_integration.providers.base import ProviderAdapter, WebhookModule
from esp_integration.providers.registry import AdapterRegistry


EMAIL_STATS_FAMILY = "email-stats"
KNOWN_WEBHOOK_FAMILIES: tuple[str, ...] = (EMAIL_STATS_FAMILY,)

_FAMILY_EXPECTS = {
    EMAIL_STATS_FAMILY: "POST provider email stats payload",
}


@dataclass(frozen=True)
class WebhookRoute:
    provider: str
    family: str
    adapter: ProviderAdapter
    webhook: WebhookModule


def webhook_endpoint(provider: str, family: str) -> str:
    return f"/api/webhooks/esp/{provider}/{family}"


def family_expects(family: str) -> str:
    return _FAMILY_EXPECTS.get(family, "POST provider webhook payload")


def supported_providers(registry: AdapterRegistry, family: str) -> list[str]:
    providers: list[str] = []
    for provider in registry.registered_providers():
        adapter = registry.get_adapter(provider)
        if family in adapter.webhook_families and has_capability(adapter, "webhook"):
            providers.append(provider)
    return providers


def resolve_webhook_route(registry: AdapterRegistry, provider: str, family: str) -> WebhookRoute:
    """Family first, then provider, then handler.

    Raises UnknownWebhookFamily or AdapterNotRegistered (404) and
    CapabilityUnsupported (501) when the adapter has no handler for the family.
    """
    if family not in KNOWN_WEBHOOK_FAMILIES:
        raise UnknownWebhookFamily(family)
    adapter = registry.get_adapter(provider)
    if family not in adapter.webhook_families or not has_capability(adapter, "webhook"):
        raise CapabilityUnsupported(adapter.provider, f"webhook:{family}")
    return WebhookRoute(provider=adapter.provider, family=family, adapter=adapter, webhook=adapter.webhook)
