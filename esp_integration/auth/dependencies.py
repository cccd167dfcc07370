import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from esp_integration.context import IntegrationContext, get_integration_context
from esp_integration.observability import incr_metric, log_event


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


async def require_internal_caller(
    request: Request,
    x_internal_api_key: str | None = Header(default=None, alias="X-Internal-Api-Key"),
    ctx: IntegrationContext = Depends(get_integration_context),
) -> None:
    """Guard for service-to-service routes: shared secret in X-Internal-Api-Key."""
    configured_key = ctx.settings.internal_api_key
    if not configured_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal api key is not configured",
        )
    if not x_internal_api_key or not hmac.compare_digest(x_internal_api_key, configured_key):
        incr_metric("auth.internal.failed", path=request.url.path)
        log_event("internal_auth_failed", request_id=_request_id(request), path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid internal api key",
        )
