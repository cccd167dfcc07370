"""Provider adapter contract.

An adapter is a bundle of optional sub-modules. Each sub-module exists exactly
when the matching flag in ``ProviderCapabilities`` is set; callers check with
``has_capability``/``require_capability`` rather than probing attributes.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from esp_integration.domain.capabilities import ProviderCapabilities
from esp_integration.domain.errors import DecryptionFailed, ProviderError, VaultMisconfigured
from esp_integration.models.account_features import (
    BusinessDetails,
    BusinessDetailsSyncResult,
    CustomValueInput,
    CustomValueSyncResult,
    EspMedia,
    EspTemplate,
    MediaUploadInput,
    TemplateInput,
    ValidationInput,
    ValidationResult,
)
from esp_integration.models.campaigns import CampaignAnalytics, EspCampaign, EspWorkflow
from esp_integration.models.credentials import Credentials, TokenSet
from esp_integration.models.webhooks import ExtractionResult
from esp_integration.observability import incr_metric, log_event
from esp_integration.stores.connections import ConnectionStore


class ContactsModule(Protocol):
    async def resolve_credentials(self, account_key: str) -> Credentials | None: ...

    async def fetch_contact_count(self, credentials: Credentials) -> int: ...


class CampaignsModule(Protocol):
    async def fetch_campaigns(self, credentials: Credentials, force_refresh: bool = False) -> list[EspCampaign]: ...

    async def fetch_analytics(self, credentials: Credentials, campaign: EspCampaign) -> CampaignAnalytics: ...


class WorkflowsModule(Protocol):
    async def fetch_workflows(self, credentials: Credentials) -> list[EspWorkflow]: ...


class TemplatesModule(Protocol):
    async def create_template(self, credentials: Credentials, template: TemplateInput) -> EspTemplate: ...


class MediaModule(Protocol):
    async def upload_media(self, credentials: Credentials, upload: MediaUploadInput) -> EspMedia: ...


class CustomValuesModule(Protocol):
    async def sync_custom_values(
        self,
        credentials: Credentials,
        desired: list[CustomValueInput],
        managed_names: list[str] | None = None,
    ) -> CustomValueSyncResult: ...


class AccountDetailsSyncModule(Protocol):
    async def sync_business_details(
        self, credentials: Credentials, details: BusinessDetails
    ) -> BusinessDetailsSyncResult: ...


class ValidationModule(Protocol):
    async def validate(self, request: ValidationInput) -> ValidationResult: ...


class WebhookModule(Protocol):
    signature_header_candidates: tuple[str, ...]

    def verify_signature(self, raw_body: bytes, signature: str | None, headers: Mapping[str, str]) -> bool: ...

    def extract_events(self, family: str, payload: Any) -> ExtractionResult: ...


class OAuthModule(Protocol):
    required_scopes: tuple[str, ...]

    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> TokenSet: ...

    async def refresh(self, refresh_token: str) -> TokenSet: ...


class ProviderAdapter:
    """Base adapter: every sub-module absent until a subclass provides it."""

    provider: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities(auth="api_key")
    webhook_families: tuple[str, ...] = ()

    contacts: ContactsModule | None = None
    campaigns: CampaignsModule | None = None
    workflows: WorkflowsModule | None = None
    templates: TemplatesModule | None = None
    media: MediaModule | None = None
    custom_values: CustomValuesModule | None = None
    account_details_sync: AccountDetailsSyncModule | None = None
    webhook: WebhookModule | None = None
    validation: ValidationModule | None = None
    oauth: OAuthModule | None = None
    # Provider-wide install that can act for linked accounts (GHL agency).
    agency: Any = None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} provider={self.provider!r}>"


def _scopes_cover(granted: list[str] | tuple[str, ...], required: tuple[str, ...]) -> bool:
    if not required:
        return True
    return set(required).issubset(set(granted))


async def resolve_connection_credentials(
    connections: ConnectionStore,
    account_key: str,
    provider: str,
    *,
    oauth: OAuthModule | None = None,
    refresh_buffer_seconds: int = 300,
    now: datetime | None = None,
) -> Credentials | None:
    """OAuth connection first, then API key, else None.

    An OAuth token expiring within the refresh buffer is refreshed and the new
    tokens stored. Missing scopes, a failed refresh or an undecryptable row
    fall through to the API-key connection.
    """
    current = now or datetime.now(timezone.utc)

    try:
        oauth_connection = connections.get_oauth_connection(account_key, provider)
    except (DecryptionFailed, VaultMisconfigured) as exc:
        incr_metric("esp.credentials.decrypt_failed", provider=provider, kind="oauth")
        log_event(
            "esp_credentials_decrypt_failed",
            level=logging.WARNING,
            account_key=account_key,
            provider=provider,
            kind="oauth",
            error=str(exc),
        )
        oauth_connection = None

    if oauth_connection is not None:
        required = oauth.required_scopes if oauth is not None else ()
        if not _scopes_cover(oauth_connection.scopes, required):
            missing = sorted(set(required) - set(oauth_connection.scopes))
            log_event(
                "esp_oauth_scopes_missing",
                level=logging.WARNING,
                account_key=account_key,
                provider=provider,
                missing=missing,
            )
        else:
            expires_at = oauth_connection.token_expires_at
            expiring = expires_at is not None and expires_at - current <= timedelta(seconds=refresh_buffer_seconds)
            if not expiring:
                return Credentials(
                    provider=provider,
                    token=oauth_connection.access_token,
                    location_id=oauth_connection.location_id,
                    auth_mode="oauth",
                    scopes=tuple(oauth_connection.scopes),
                    expires_at=expires_at,
                )
            if oauth is not None and oauth_connection.refresh_token:
                try:
                    tokens = await oauth.refresh(oauth_connection.refresh_token)
                except ProviderError as exc:
                    incr_metric("esp.oauth.refresh_failed", provider=provider)
                    log_event(
                        "esp_oauth_refresh_failed",
                        level=logging.WARNING,
                        account_key=account_key,
                        provider=provider,
                        error=str(exc),
                    )
                else:
                    scopes = list(tokens.scopes) or list(oauth_connection.scopes)
                    refreshed = connections.upsert_oauth_connection(
                        account_key,
                        provider,
                        location_id=tokens.location_id or oauth_connection.location_id,
                        access_token=tokens.access_token,
                        refresh_token=tokens.refresh_token or oauth_connection.refresh_token,
                        token_expires_at=tokens.expires_at,
                        scopes=scopes,
                        location_name=oauth_connection.location_name,
                    )
                    incr_metric("esp.oauth.refreshed", provider=provider)
                    return Credentials(
                        provider=provider,
                        token=refreshed.access_token,
                        location_id=refreshed.location_id,
                        auth_mode="oauth",
                        scopes=tuple(refreshed.scopes),
                        expires_at=refreshed.token_expires_at,
                    )

    try:
        api_key_connection = connections.get_api_key_connection(account_key, provider)
    except (DecryptionFailed, VaultMisconfigured) as exc:
        incr_metric("esp.credentials.decrypt_failed", provider=provider, kind="api_key")
        log_event(
            "esp_credentials_decrypt_failed",
            level=logging.WARNING,
            account_key=account_key,
            provider=provider,
            kind="api_key",
            error=str(exc),
        )
        api_key_connection = None

    if api_key_connection is not None:
        return Credentials(
            provider=provider,
            token=api_key_connection.api_key,
            location_id=api_key_connection.account_id or account_key,
            auth_mode="api_key",
        )
    return None
