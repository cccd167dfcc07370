"""GHL agency (company-level) OAuth.

One agency credential can mint short-lived location tokens for every
sub-account, so accounts only need a link to a location id. The credential
mode decides how account credentials are resolved:

- ``legacy``: per-account location OAuth connections only.
- ``hybrid``: mint from the agency credential, fall back to legacy.
- ``agency``: mint from the agency credential only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from esp_integration.config import Settings
from esp_integration.domain.errors import (
    CredentialsMissing,
    DecryptionFailed,
    MalformedPayload,
    ProviderError,
    VaultMisconfigured,
)
from esp_integration.models.connections import AgencyStatusResponse, LocationSummary
from esp_integration.models.credentials import AccountProviderLink, Credentials, ProviderOAuthCredential, TokenSet
from esp_integration.observability import incr_metric, log_event
from esp_integration.providers.ghl import client as ghl_client
from esp_integration.providers.ghl.client import GhlProviderError
from esp_integration.stores.connections import ConnectionStore


PROVIDER = "ghl"
AGENCY_ACCOUNT_KEY = "__ghl_agency__"
OAUTH_MODES = ("legacy", "hybrid", "agency")

AGENCY_REFRESH_BUFFER = timedelta(minutes=5)
LOCATION_TOKEN_REFRESH_BUFFER = timedelta(minutes=2)
DEFAULT_LOCATION_TOKEN_TTL_SECONDS = 15 * 60
DEFAULT_LOCATION_LIMIT = 100
MAX_LOCATION_LIMIT = 200

_TOKEN_KEYS = ("access_token", "accessToken", "token", "locationAccessToken")
_EXPIRY_KEYS = ("expires_in", "expiresIn", "expiresInSeconds", "ttl")


def oauth_mode(settings: Settings) -> str:
    mode = (settings.ghl_oauth_mode or "").strip().lower()
    return mode if mode in OAUTH_MODES else "legacy"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _payload_sources(payload: dict[str, Any]) -> tuple[dict[str, Any], ...]:
    nested = payload.get("data")
    return (payload, nested) if isinstance(nested, dict) else (payload,)


def location_token_from_payload(payload: dict[str, Any]) -> str | None:
    for source in _payload_sources(payload):
        for key in _TOKEN_KEYS:
            token = _text(source.get(key))
            if token:
                return token
    return None


def location_token_ttl(payload: dict[str, Any]) -> int:
    for source in _payload_sources(payload):
        for key in _EXPIRY_KEYS:
            try:
                seconds = int(float(source.get(key)))
            except (TypeError, ValueError):
                continue
            if seconds > 0:
                return seconds
    return DEFAULT_LOCATION_TOKEN_TTL_SECONDS


def normalize_location(row: dict[str, Any]) -> LocationSummary:
    return LocationSummary(
        id=_text(row.get("id") or row.get("_id")),
        name=_text(row.get("name") or row.get("businessName")),
        email=_text(row.get("email")),
        phone=_text(row.get("phone")),
        address=_text(row.get("address")),
        city=_text(row.get("city")),
        state=_text(row.get("state")),
        postal_code=_text(row.get("postalCode") or row.get("postal_code") or row.get("zipCode")),
        website=_text(row.get("website")),
        timezone=_text(row.get("timezone")),
    )


@dataclass(frozen=True)
class AgencyToken:
    token: str
    source: str  # oauth | env
    subject_id: str | None = None

    def __repr__(self) -> str:
        return f"AgencyToken(source={self.source!r}, subject_id={self.subject_id!r}, token='***')"


class GhlAgency:
    """Agency credential lifecycle, location links and minted location tokens."""

    account_key = AGENCY_ACCOUNT_KEY

    def __init__(self, connections: ConnectionStore, oauth: Any, settings: Settings):
        self._connections = connections
        self._oauth = oauth
        self._settings = settings
        self._location_tokens: dict[str, tuple[str, datetime]] = {}

    @property
    def mode(self) -> str:
        return oauth_mode(self._settings)

    def _company_id(self, agency: AgencyToken) -> str | None:
        return agency.subject_id or _text(self._settings.ghl_agency_company_id) or None

    def _load_credential(self) -> ProviderOAuthCredential | None:
        try:
            return self._connections.get_provider_credential(PROVIDER)
        except (DecryptionFailed, VaultMisconfigured) as exc:
            incr_metric("esp.credentials.decrypt_failed", provider=PROVIDER, kind="agency")
            log_event("ghl_agency_credential_unreadable", level=logging.WARNING, error=str(exc))
            return None

    def clear_location_tokens(self, location_id: str | None = None) -> None:
        if location_id is None:
            self._location_tokens.clear()
        else:
            self._location_tokens.pop(location_id, None)

    # -- agency credential -----------------------------------------------

    def store_credential(self, tokens: TokenSet) -> ProviderOAuthCredential:
        if not tokens.access_token or not tokens.refresh_token:
            raise GhlProviderError("Agency token response is missing an access or refresh token")
        credential = self._connections.upsert_provider_credential(
            PROVIDER,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
            scopes=list(tokens.scopes),
            subject_type="agency",
            subject_id=tokens.company_id or _text(self._settings.ghl_agency_company_id) or None,
        )
        self.clear_location_tokens()
        incr_metric("esp.connections.connected", provider=PROVIDER, auth_mode="agency")
        return credential

    async def valid_token(self, now: datetime | None = None) -> AgencyToken | None:
        """Stored agency token, refreshed when close to expiry, else the env token."""
        current = now or datetime.now(timezone.utc)
        credential = self._load_credential()
        if credential is not None:
            expires_at = credential.token_expires_at
            if expires_at is None or expires_at - current > AGENCY_REFRESH_BUFFER:
                return AgencyToken(credential.access_token, "oauth", credential.subject_id)
            try:
                tokens = await self._oauth.refresh(credential.refresh_token, user_type="Company")
            except ProviderError as exc:
                incr_metric("esp.oauth.refresh_failed", provider=PROVIDER, kind="agency")
                log_event("ghl_agency_refresh_failed", level=logging.WARNING, error=str(exc))
                return AgencyToken(credential.access_token, "oauth", credential.subject_id)
            refreshed = self._connections.upsert_provider_credential(
                PROVIDER,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or credential.refresh_token,
                token_expires_at=tokens.expires_at,
                scopes=list(tokens.scopes) or credential.scopes,
                subject_type=credential.subject_type,
                subject_id=tokens.company_id or credential.subject_id,
            )
            incr_metric("esp.oauth.refreshed", provider=PROVIDER, kind="agency")
            return AgencyToken(refreshed.access_token, "oauth", refreshed.subject_id)

        env_token = _text(self._settings.ghl_agency_token)
        if env_token:
            return AgencyToken(env_token, "env", _text(self._settings.ghl_agency_company_id) or None)
        return None

    def status(self) -> AgencyStatusResponse:
        credential = self._load_credential()
        if credential is not None:
            return AgencyStatusResponse(
                provider=PROVIDER,
                connected=True,
                source="oauth",
                mode=self.mode,
                subject_type=credential.subject_type,
                subject_id=credential.subject_id,
                scopes=credential.scopes,
                token_expires_at=credential.token_expires_at,
                installed_at=credential.installed_at,
            )
        if _text(self._settings.ghl_agency_token):
            return AgencyStatusResponse(
                provider=PROVIDER,
                connected=True,
                source="env",
                mode=self.mode,
                subject_type="agency",
                subject_id=_text(self._settings.ghl_agency_company_id) or None,
            )
        return AgencyStatusResponse(provider=PROVIDER, connected=False, source="none", mode=self.mode)

    def disconnect(self) -> bool:
        removed = self._connections.delete_provider_credential(PROVIDER)
        self.clear_location_tokens()
        log_event("ghl_agency_disconnected", removed=removed)
        return removed

    # -- locations ---------------------------------------------------------

    async def _require_token(self) -> AgencyToken:
        agency = await self.valid_token()
        if agency is None:
            raise CredentialsMissing(AGENCY_ACCOUNT_KEY, PROVIDER)
        return agency

    async def list_locations(self, search: str = "", limit: int | None = None) -> list[LocationSummary]:
        agency = await self._require_token()
        capped = DEFAULT_LOCATION_LIMIT if limit is None else max(1, min(int(limit), MAX_LOCATION_LIMIT))
        term = search.strip().lower()
        rows = await ghl_client.search_locations(
            agency.token,
            company_id=self._company_id(agency),
            limit=capped,
            search=term,
            timeout_seconds=self._settings.esp_http_timeout_seconds,
        )
        locations = [location for location in map(normalize_location, rows) if location.id]
        if term:
            locations = [
                location
                for location in locations
                if term in location.name.lower() or term in location.id.lower() or term in location.email.lower()
            ]
        return locations[:capped]

    async def link_account(
        self, account_key: str, location_id: str, location_name: str | None = None
    ) -> AccountProviderLink:
        account_key = account_key.strip()
        location_id = location_id.strip()
        if not account_key:
            raise MalformedPayload("account_key is required")
        if not location_id:
            raise MalformedPayload("location_id is required")
        if account_key == AGENCY_ACCOUNT_KEY:
            raise MalformedPayload("Agency account key cannot be linked to a location")

        agency = await self._require_token()
        name = _text(location_name) or None
        try:
            details = await ghl_client.get_location(agency.token, location_id)
        except ProviderError as exc:
            log_event("ghl_location_lookup_failed", level=logging.WARNING, location_id=location_id, error=str(exc))
        else:
            name = _text(details.get("name")) or name

        link = self._connections.upsert_account_link(
            account_key, PROVIDER, location_id=location_id, location_name=name
        )
        self.clear_location_tokens(location_id)
        return link

    def unlink_account(self, account_key: str) -> bool:
        account_key = account_key.strip()
        if account_key == AGENCY_ACCOUNT_KEY:
            raise MalformedPayload("Use the agency disconnect endpoint to remove agency OAuth")
        existing = self._connections.get_account_link(account_key, PROVIDER)
        removed = self._connections.delete_account_link(account_key, PROVIDER)
        if existing is not None:
            self.clear_location_tokens(existing.location_id)
        return removed

    # -- location tokens ---------------------------------------------------

    def _account_location(self, account_key: str) -> str | None:
        link = self._connections.get_account_link(account_key, PROVIDER)
        if link is not None and link.location_id:
            return link.location_id
        try:
            legacy = self._connections.get_oauth_connection(account_key, PROVIDER)
        except (DecryptionFailed, VaultMisconfigured):
            return None
        return legacy.location_id if legacy is not None and legacy.location_id else None

    async def _location_token(self, agency: AgencyToken, location_id: str, now: datetime) -> tuple[str, datetime]:
        cached = self._location_tokens.get(location_id)
        if cached is not None and cached[1] - now > LOCATION_TOKEN_REFRESH_BUFFER:
            return cached

        payload = await ghl_client.mint_location_token(
            agency.token,
            location_id,
            self._company_id(agency),
            timeout_seconds=self._settings.esp_http_timeout_seconds,
        )
        token = location_token_from_payload(payload)
        if not token:
            raise GhlProviderError("Location token mint response did not contain an access token")
        minted = (token, now + timedelta(seconds=location_token_ttl(payload)))
        self._location_tokens[location_id] = minted
        incr_metric("esp.ghl.location_token.minted")
        return minted

    async def location_credentials(self, account_key: str, now: datetime | None = None) -> Credentials | None:
        """Credentials minted from the agency token for the account's location, or None."""
        current = now or datetime.now(timezone.utc)
        location_id = self._account_location(account_key)
        if not location_id:
            return None
        agency = await self.valid_token(current)
        if agency is None:
            return None
        try:
            token, expires_at = await self._location_token(agency, location_id, current)
        except ProviderError as exc:
            incr_metric("esp.ghl.location_token.failed")
            log_event(
                "ghl_location_token_failed",
                level=logging.WARNING,
                account_key=account_key,
                location_id=location_id,
                error=str(exc),
            )
            return None
        return Credentials(
            provider=PROVIDER,
            token=token,
            location_id=location_id,
            auth_mode="oauth",
            expires_at=expires_at,
        )
