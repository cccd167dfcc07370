from __future__ import annotations

import logging

from esp_integration.domain.capabilities import ProviderCapabilities, capability_violations
from esp_integration.domain.errors import AdapterNotRegistered
from esp_integration.domain.normalization import normalize_provider_id
from esp_integration.observability import log_event
from esp_integration.providers.base import ProviderAdapter
from esp_integration.stores.accounts import AccountDirectory
from esp_integration.stores.connections import ConnectionStore


class AdapterRegistry:
    """Provider id -> adapter, plus per-account provider resolution.

    Account resolution order: the account's explicit provider, then the most
    recently installed connection whose provider is registered, then the
    configured default (or the first registered adapter).
    """

    def __init__(
        self,
        accounts: AccountDirectory,
        connections: ConnectionStore,
        default_provider: str | None = None,
    ):
        self._accounts = accounts
        self._connections = connections
        self._default_provider = normalize_provider_id(default_provider) or None
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        provider = adapter.provider
        if not provider or provider != normalize_provider_id(provider):
            raise ValueError(f"Adapter provider id must be lowercase and non-empty: {provider!r}")
        violations = capability_violations(adapter)
        if violations:
            raise ValueError(f"Adapter {provider} misreports capabilities: {'; '.join(violations)}")
        self._adapters[provider] = adapter

    def registered_providers(self) -> list[str]:
        return list(self._adapters)

    def get_adapter(self, provider: str) -> ProviderAdapter:
        adapter = self._adapters.get(normalize_provider_id(provider))
        if adapter is None:
            raise AdapterNotRegistered(provider)
        return adapter

    def capabilities(self, provider: str) -> ProviderCapabilities:
        return self.get_adapter(provider).capabilities

    def default_provider(self) -> str:
        if self._default_provider:
            if self._default_provider not in self._adapters:
                raise AdapterNotRegistered(
                    self._default_provider,
                    f'DEFAULT_ESP_PROVIDER "{self._default_provider}" is not a registered adapter',
                )
            return self._default_provider
        if not self._adapters:
            raise AdapterNotRegistered("", "No ESP adapters are registered")
        return next(iter(self._adapters))

    def get_account_provider(self, account_key: str, explicit_provider: str | None = None) -> str:
        explicit = normalize_provider_id(explicit_provider)
        if not explicit:
            account = self._accounts.get_account(account_key)
            explicit = account.esp_provider if account else ""
        if explicit:
            if explicit not in self._adapters:
                raise AdapterNotRegistered(
                    explicit, f'Account {account_key} uses unregistered ESP provider "{explicit}"'
                )
            return explicit

        latest = self._connections.latest_connected_provider(account_key)
        if latest and latest in self._adapters:
            return latest
        if latest:
            log_event(
                "esp_connection_provider_unregistered",
                level=logging.WARNING,
                account_key=account_key,
                provider=latest,
            )
        return self.default_provider()

    def get_adapter_for_account(self, account_key: str, explicit_provider: str | None = None) -> ProviderAdapter:
        return self.get_adapter(self.get_account_provider(account_key, explicit_provider))
