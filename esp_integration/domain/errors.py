from __future__ import annotations

from typing import Any, Protocol


class EspIntegrationError(Exception):
    """Base class for integration-layer failures."""


class AdapterNotRegistered(EspIntegrationError):
    def __init__(self, provider: str, message: str | None = None):
        self.provider = provider
        super().__init__(message or f'No ESP adapter registered for provider "{provider}"')


class CapabilityUnsupported(EspIntegrationError):
    def __init__(self, provider: str, capability: str):
        self.provider = provider
        self.capability = capability
        super().__init__(f"{provider} does not currently support {capability}")


class CredentialsMissing(EspIntegrationError):
    def __init__(self, account_key: str, provider: str):
        self.account_key = account_key
        self.provider = provider
        super().__init__(f"ESP not connected for this account ({provider})")


class AccountNotFound(EspIntegrationError):
    def __init__(self, account_key: str):
        self.account_key = account_key
        super().__init__("Account not found")


class SignatureInvalid(EspIntegrationError):
    pass


class MalformedPayload(EspIntegrationError):
    pass


class UnmappableEvent(EspIntegrationError):
    pass


class UnresolvableCampaignId(EspIntegrationError):
    pass


class UpsertFailure(EspIntegrationError):
    pass


class VaultMisconfigured(EspIntegrationError):
    pass


class DecryptionFailed(EspIntegrationError):
    pass


class OperationTimeout(EspIntegrationError, TimeoutError):
    pass


class OAuthStateInvalid(EspIntegrationError):
    pass


class ProviderError(EspIntegrationError):
    """Provider-level exception raised by provider HTTP clients.

    `status_code` carries the upstream HTTP status when there was one.
    """

    provider = "unknown"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def category(self) -> str:
        if self.status_code is None:
            return "transient" if "connectivity error" in str(self).lower() else "unknown"
        if self.status_code == 429 or self.status_code >= 500:
            return "transient"
        if 400 <= self.status_code < 500:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


class ProviderErrorLike(Protocol):
    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


def provider_error_http_status(exc: ProviderErrorLike) -> int:
    return 503 if exc.retryable else 502


def provider_error_detail(*, provider: str, operation: str, exc: ProviderErrorLike) -> dict[str, Any]:
    return {
        "type": "provider_error",
        "provider": provider,
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "message": str(exc),
    }


def unsupported_capability_detail(exc: CapabilityUnsupported, **extra: Any) -> dict[str, Any]:
    return {
        "type": "capability_unsupported",
        "error": str(exc),
        "provider": exc.provider,
        "capability": exc.capability,
        "unsupported": True,
        **extra,
    }


class UnknownWebhookFamily(EspIntegrationError):
    def __init__(self, family: str):
        self.family = family
        super().__init__(f'Unknown webhook family "{family}"')
