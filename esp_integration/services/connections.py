from __future__ import annotations

from esp_integration.context import IntegrationContext
from esp_integration.domain.capabilities import require_capability
from esp_integration.domain.errors import (
    AccountNotFound,
    AdapterNotRegistered,
    CapabilityUnsupported,
    EspIntegrationError,
    OAuthStateInvalid,
    ProviderError,
)
from esp_integration.domain.normalization import normalize_provider_id
from esp_integration.models.account_features import ValidationInput, ValidationResult
from esp_integration.models.connections import (
    AgencyDisconnectResponse,
    AgencyStatusResponse,
    BulkLocationLinkMapping,
    BulkLocationLinkResponse,
    BulkLocationLinkResult,
    ConnectionStatusResponse,
    DisconnectResponse,
    LocationLinkStatusResponse,
    LocationLinkView,
    LocationSummary,
    RequiredScopesResponse,
)
from esp_integration.models.credentials import (
    AccountProviderLink,
    ApiKeyConnection,
    OAuthConnection,
    ProviderOAuthCredential,
)
from esp_integration.oauth_state import sign_state, verify_state
from esp_integration.observability import incr_metric, log_event


def connection_status(ctx: IntegrationContext, account_key: str) -> ConnectionStatusResponse:
    summaries = ctx.connections.list_connection_summaries(account_key)
    try:
        provider: str | None = ctx.registry.get_account_provider(account_key)
    except AdapterNotRegistered:
        provider = None
    return ConnectionStatusResponse(
        account_key=account_key,
        provider=provider,
        connected=any(summary.provider == provider for summary in summaries),
        connections=summaries,
    )


async def validate_credentials(ctx: IntegrationContext, provider: str, request: ValidationInput) -> ValidationResult:
    adapter = ctx.registry.get_adapter(provider)
    validation = require_capability(adapter, "validation")
    return await validation.validate(request)


async def connect_api_key(
    ctx: IntegrationContext,
    account_key: str,
    provider: str,
    api_key: str,
) -> ApiKeyConnection:
    adapter = ctx.registry.get_adapter(provider)
    if adapter.capabilities.auth not in ("api_key", "both"):
        raise CapabilityUnsupported(adapter.provider, "api_key")
    ctx.vault.require_configured()
    validated = await validate_credentials(ctx, adapter.provider, ValidationInput(api_key=api_key))
    connection = ctx.connections.upsert_api_key_connection(
        account_key,
        adapter.provider,
        api_key=api_key,
        account_id=validated.account_id,
        account_name=validated.account_name,
        metadata=validated.metadata,
    )
    incr_metric("esp.connections.connected", provider=adapter.provider, auth_mode="api_key")
    return connection


def disconnect(ctx: IntegrationContext, account_key: str, provider: str) -> DisconnectResponse:
    adapter = ctx.registry.get_adapter(provider)
    summaries = [s for s in ctx.connections.list_connection_summaries(account_key) if s.provider == adapter.provider]
    oauth_deleted = ctx.connections.delete_oauth_connection(account_key, adapter.provider)
    api_key_deleted = ctx.connections.delete_api_key_connection(account_key, adapter.provider)
    for summary in summaries:
        ctx.cache.invalidate(adapter.provider, summary.account_id)
    incr_metric("esp.connections.disconnected", provider=adapter.provider)
    log_event(
        "esp_connection_removed",
        account_key=account_key,
        provider=adapter.provider,
        oauth_deleted=oauth_deleted,
        api_key_deleted=api_key_deleted,
    )
    return DisconnectResponse(
        account_key=account_key,
        provider=adapter.provider,
        oauth_deleted=oauth_deleted,
        api_key_deleted=api_key_deleted,
    )


def authorization_url(ctx: IntegrationContext, provider: str, account_key: str) -> str:
    adapter = ctx.registry.get_adapter(provider)
    if adapter.oauth is None:
        raise CapabilityUnsupported(adapter.provider, "oauth")
    state = sign_state(account_key, adapter.provider, ctx.settings.oauth_state_secrets())
    return adapter.oauth.authorization_url(state)


async def complete_oauth(
    ctx: IntegrationContext, provider: str, code: str, state: str
) -> OAuthConnection | ProviderOAuthCredential:
    adapter = ctx.registry.get_adapter(provider)
    if adapter.oauth is None:
        raise CapabilityUnsupported(adapter.provider, "oauth")
    verified = verify_state(state, ctx.settings.oauth_state_secrets())
    if verified.provider != adapter.provider:
        raise OAuthStateInvalid("OAuth state was issued for a different provider")
    ctx.vault.require_configured()

    if adapter.agency is not None and verified.account_key == adapter.agency.account_key:
        tokens = await adapter.oauth.exchange_code(code, user_type="Company")
        return adapter.agency.store_credential(tokens)

    tokens = await adapter.oauth.exchange_code(code)
    if not tokens.location_id:
        raise ProviderError("Token response did not identify a location")
    connection = ctx.connections.upsert_oauth_connection(
        verified.account_key,
        adapter.provider,
        location_id=tokens.location_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_expires_at=tokens.expires_at,
        scopes=list(tokens.scopes),
    )
    ctx.cache.invalidate(adapter.provider, tokens.location_id)
    incr_metric("esp.connections.connected", provider=adapter.provider, auth_mode="oauth")
    return connection


def required_scopes(ctx: IntegrationContext, provider: str) -> RequiredScopesResponse:
    adapter = ctx.registry.get_adapter(provider)
    if adapter.oauth is None:
        raise CapabilityUnsupported(adapter.provider, "oauth")
    return RequiredScopesResponse(provider=adapter.provider, scopes=list(adapter.oauth.required_scopes))


def _agency(ctx: IntegrationContext, provider: str):
    adapter = ctx.registry.get_adapter(provider)
    if adapter.agency is None:
        raise CapabilityUnsupported(adapter.provider, "agency_oauth")
    return adapter.agency


def agency_status(ctx: IntegrationContext, provider: str) -> AgencyStatusResponse:
    agency = _agency(ctx, provider)
    status = agency.status()
    try:
        status.authorization_url = authorization_url(ctx, provider, agency.account_key)
    except ProviderError:
        status.authorization_url = None
    return status


def disconnect_agency(ctx: IntegrationContext, provider: str) -> AgencyDisconnectResponse:
    removed = _agency(ctx, provider).disconnect()
    env_token_configured = bool((ctx.settings.ghl_agency_token or "").strip())
    incr_metric("esp.connections.disconnected", provider=normalize_provider_id(provider), auth_mode="agency")
    return AgencyDisconnectResponse(
        success=True,
        removed=removed,
        env_token_configured=env_token_configured,
        warning=(
            "GHL_AGENCY_TOKEN is set in the environment; agency access remains until it is removed"
            if env_token_configured
            else None
        ),
    )


async def list_agency_locations(
    ctx: IntegrationContext, provider: str, search: str = "", limit: int | None = None
) -> list[LocationSummary]:
    return await _agency(ctx, provider).list_locations(search, limit)


def location_link_status(ctx: IntegrationContext, provider: str, account_key: str) -> LocationLinkStatusResponse:
    agency_provider = normalize_provider_id(provider)
    _agency(ctx, agency_provider)
    link = ctx.connections.get_account_link(account_key, agency_provider)
    return LocationLinkStatusResponse(
        account_key=account_key,
        provider=agency_provider,
        linked=bool(link and link.location_id),
        link=(
            LocationLinkView(
                location_id=link.location_id,
                location_name=link.location_name,
                linked_at=link.linked_at,
                updated_at=link.updated_at,
            )
            if link
            else None
        ),
    )


async def link_account_location(
    ctx: IntegrationContext,
    provider: str,
    account_key: str,
    location_id: str,
    location_name: str | None = None,
) -> AccountProviderLink:
    agency = _agency(ctx, provider)
    if ctx.accounts.get_account(account_key.strip()) is None:
        raise AccountNotFound(account_key)
    link = await agency.link_account(account_key, location_id, location_name)
    log_event("esp_location_linked", account_key=link.account_key, provider=link.provider, location_id=link.location_id)
    return link


def unlink_account_location(ctx: IntegrationContext, provider: str, account_key: str) -> bool:
    removed = _agency(ctx, provider).unlink_account(account_key)
    log_event("esp_location_unlinked", account_key=account_key, provider=normalize_provider_id(provider), removed=removed)
    return removed


async def bulk_link_account_locations(
    ctx: IntegrationContext, provider: str, mappings: list[BulkLocationLinkMapping]
) -> BulkLocationLinkResponse:
    """Link many accounts at once. Each line succeeds or fails on its own."""
    agency = _agency(ctx, provider)
    results: list[BulkLocationLinkResult] = []
    pending: list[tuple[int, str, str, str | None]] = []
    seen: set[str] = set()

    def _failed(line: int, account_key: str, location_id: str, location_name: str | None, error: str) -> None:
        results.append(
            BulkLocationLinkResult(
                line=line,
                account_key=account_key,
                location_id=location_id,
                location_name=location_name,
                success=False,
                error=error,
            )
        )

    for index, mapping in enumerate(mappings):
        line = mapping.line if mapping.line and mapping.line > 0 else index + 1
        account_key = mapping.account_key.strip()
        location_id = mapping.location_id.strip()
        location_name = (mapping.location_name or "").strip() or None
        if not account_key:
            _failed(line, account_key, location_id, location_name, "account_key is required")
        elif not location_id:
            _failed(line, account_key, location_id, location_name, "location_id is required")
        elif account_key in seen:
            _failed(line, account_key, location_id, location_name, "Duplicate account_key in batch")
        else:
            seen.add(account_key)
            pending.append((line, account_key, location_id, location_name))

    existing = {record.key for record in ctx.accounts.list_accounts(sorted(seen))} if seen else set()
    for line, account_key, location_id, location_name in pending:
        if account_key not in existing:
            _failed(line, account_key, location_id, location_name, "Account not found")
            continue
        try:
            link = await agency.link_account(account_key, location_id, location_name)
        except EspIntegrationError as exc:
            _failed(line, account_key, location_id, location_name, str(exc))
            continue
        results.append(
            BulkLocationLinkResult(
                line=line,
                account_key=account_key,
                location_id=link.location_id,
                location_name=link.location_name,
                success=True,
            )
        )

    ordered = sorted(results, key=lambda row: row.line)
    linked = sum(1 for row in ordered if row.success)
    log_event(
        "esp_location_bulk_linked",
        provider=normalize_provider_id(provider),
        linked=linked,
        failed=len(ordered) - linked,
    )
    return BulkLocationLinkResponse(
        success=linked == len(ordered),
        total=len(ordered),
        linked=linked,
        failed=len(ordered) - linked,
        results=ordered,
    )
