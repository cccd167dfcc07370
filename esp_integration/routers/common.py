from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from esp_integration.domain.errors import (
    AccountNotFound,
    AdapterNotRegistered,
    CapabilityUnsupported,
    CredentialsMissing,
    EspIntegrationError,
    MalformedPayload,
    OAuthStateInvalid,
    OperationTimeout,
    ProviderError,
    UnknownWebhookFamily,
    VaultMisconfigured,
    provider_error_detail,
    provider_error_http_status,
    unsupported_capability_detail,
)
from esp_integration.observability import incr_metric, log_event


def request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def http_error(
    exc: EspIntegrationError,
    *,
    operation: str,
    provider_in_path: bool = False,
    req_id: str | None = None,
) -> HTTPException:
    """Translate an integration error into the HTTPException a route raises."""
    if isinstance(exc, CapabilityUnsupported):
        incr_metric("esp.capability.unsupported", provider=exc.provider, capability=exc.capability)
        return HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=unsupported_capability_detail(exc))
    if isinstance(exc, CredentialsMissing):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "type": "credentials_missing",
                "error": str(exc),
                "provider": exc.provider,
                "account_key": exc.account_key,
            },
        )
    if isinstance(exc, AdapterNotRegistered):
        if provider_in_path:
            return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"type": "provider_not_found", "error": str(exc), "provider": exc.provider})
        log_event("esp_adapter_misconfigured", level=logging.ERROR, request_id=req_id, operation=operation, error=str(exc))
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"type": "adapter_not_registered", "error": str(exc), "provider": exc.provider},
        )
    if isinstance(exc, AccountNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"type": "account_not_found", "error": str(exc), "account_key": exc.account_key})
    if isinstance(exc, UnknownWebhookFamily):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"type": "webhook_family_not_found", "error": str(exc)})
    if isinstance(exc, (MalformedPayload, OAuthStateInvalid)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, ProviderError):
        log_event(
            "esp_provider_error",
            level=logging.WARNING,
            request_id=req_id,
            provider=exc.provider,
            operation=operation,
            category=exc.category,
            error=str(exc),
        )
        return HTTPException(
            status_code=provider_error_http_status(exc),
            detail=provider_error_detail(provider=exc.provider, operation=operation, exc=exc),
        )
    if isinstance(exc, OperationTimeout):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc))
    if isinstance(exc, VaultMisconfigured):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    log_event("esp_operation_failed", level=logging.ERROR, request_id=req_id, operation=operation, error=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
