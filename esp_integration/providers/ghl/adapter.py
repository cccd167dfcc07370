from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

from esp_integration.config import Settings
from esp_integration.domain.capabilities import ProviderCapabilities
from esp_integration.domain.normalization import safe_count
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
from esp_integration.observability import log_event
from esp_integration.providers.base import ProviderAdapter, resolve_connection_credentials
from esp_integration.providers.ghl.agency import GhlAgency
from esp_integration.providers.ghl import client as ghl_client
from esp_integration.providers.ghl.client import GhlProviderError
from esp_integration.providers.ghl.webhook import EMAIL_STATS_FAMILY, GhlWebhook
from esp_integration.stores.campaign_cache import CampaignListCache
from esp_integration.stores.connections import ConnectionStore


PROVIDER = "ghl"

REQUIRED_SCOPES: tuple[str, ...] = (
    "locations.readonly",
    "locations.write",
    "locations/customValues.readonly",
    "locations/customValues.write",
    "contacts.readonly",
    "emails/schedule.readonly",
    "campaigns.readonly",
    "workflows.readonly",
    "emails/builder.readonly",
    "emails/builder.write",
    "medias.readonly",
    "medias.write",
)

_STAT_KEYS: dict[str, tuple[str, ...]] = {
    "sent_count": ("sent", "sentCount", "totalSent", "sent_count"),
    "delivered_count": ("delivered", "deliveredCount", "totalDelivered", "delivered_count"),
    "opened_count": ("opened", "openedCount", "uniqueOpened", "opens", "opened_count"),
    "clicked_count": ("clicked", "clickedCount", "uniqueClicked", "clicks", "clicked_count"),
    "bounced_count": ("bounced", "bouncedCount", "bounces", "bounced_count"),
    "unsubscribed_count": ("unsubscribed", "unsubscribedCount", "unsubscribes", "unsubscribed_count"),
}

_BUSINESS_FIELD_MAP = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "website": "website",
    "address": "address",
    "city": "city",
    "state": "state",
    "postal_code": "postalCode",
    "country": "country",
    "timezone": "timezone",
    "logo_url": "logoUrl",
}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _stats_source(row: dict[str, Any]) -> dict[str, Any]:
    for key in ("stats", "statistics", "analytics"):
        if isinstance(row.get(key), dict):
            return {**row, **row[key]}
    if isinstance(row.get("data"), dict):
        return _stats_source(row["data"])
    return row


def _read_stat(source: dict[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        if key in source and source[key] is not None:
            return safe_count(source[key])
    return None


def map_campaign(row: dict[str, Any], location_id: str) -> EspCampaign:
    record_id = _text(row.get("id") or row.get("_id")) or ""
    stats = _stats_source(row)
    return EspCampaign(
        id=record_id,
        schedule_id=_text(row.get("scheduleId")) or record_id or None,
        campaign_id=_text(row.get("campaignId")),
        name=_text(row.get("name") or row.get("title")) or "Untitled",
        status=(_text(row.get("status")) or "unknown").lower(),
        created_at=_text(row.get("createdAt")),
        updated_at=_text(row.get("updatedAt")),
        scheduled_at=_text(row.get("scheduledAt") or row.get("scheduleTime")),
        sent_at=_text(row.get("sentAt") or row.get("sentOn")),
        location_id=location_id,
        **{field: _read_stat(stats, keys) for field, keys in _STAT_KEYS.items()},
    )


def map_workflow(row: dict[str, Any], location_id: str) -> EspWorkflow:
    return EspWorkflow(
        id=_text(row.get("id") or row.get("_id")) or "",
        name=_text(row.get("name")) or "Untitled",
        status=(_text(row.get("status")) or "unknown").lower(),
        created_at=_text(row.get("createdAt")),
        updated_at=_text(row.get("updatedAt")),
        location_id=location_id,
    )


def token_set_from_payload(payload: dict[str, Any], now: datetime | None = None) -> TokenSet:
    current = now or datetime.now(timezone.utc)
    expires_in = payload.get("expires_in")
    expires_at = current + timedelta(seconds=int(expires_in)) if expires_in else None
    scope = payload.get("scope") or ""
    return TokenSet(
        access_token=str(payload["access_token"]),
        refresh_token=str(payload.get("refresh_token") or ""),
        expires_at=expires_at,
        location_id=_text(payload.get("locationId")),
        scopes=tuple(part for part in str(scope).split() if part),
        company_id=_text(payload.get("companyId")),
    )


class GhlOAuth:
    required_scopes = REQUIRED_SCOPES

    def __init__(self, settings: Settings):
        self._settings = settings

    def _client_config(self) -> tuple[str, str, str]:
        client_id = self._settings.ghl_client_id
        client_secret = self._settings.ghl_client_secret
        redirect_uri = self._settings.ghl_redirect_uri
        if not client_id or not client_secret or not redirect_uri:
            raise GhlProviderError("GHL OAuth client is not configured")
        return client_id, client_secret, redirect_uri

    def authorization_url(self, state: str) -> str:
        client_id, _, redirect_uri = self._client_config()
        query = urlencode(
            {
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": " ".join(self.required_scopes),
                "state": state,
            }
        )
        return f"{ghl_client.GHL_AUTH_URL}?{query}"

    async def exchange_code(self, code: str, *, user_type: str = "Location") -> TokenSet:
        client_id, client_secret, redirect_uri = self._client_config()
        payload = await ghl_client.request_token(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "user_type": user_type,
            }
        )
        return token_set_from_payload(payload)

    async def refresh(self, refresh_token: str, *, user_type: str = "Location") -> TokenSet:
        client_id, client_secret, _ = self._client_config()
        payload = await ghl_client.request_token(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "user_type": user_type,
            }
        )
        return token_set_from_payload(payload)


class GhlContacts:
    def __init__(self, adapter: "GhlAdapter"):
        self._adapter = adapter

    async def resolve_credentials(self, account_key: str) -> Credentials | None:
        mode = self._adapter.agency.mode
        if mode != "legacy":
            credentials = await self._adapter.agency.location_credentials(account_key)
            if credentials is not None or mode == "agency":
                return credentials
        return await resolve_connection_credentials(
            self._adapter.connections,
            account_key,
            PROVIDER,
            oauth=self._adapter.oauth,
            refresh_buffer_seconds=self._adapter.settings.oauth_refresh_buffer_seconds,
        )

    async def fetch_contact_count(self, credentials: Credentials) -> int:
        return await ghl_client.count_contacts(
            credentials.token,
            credentials.location_id,
            timeout_seconds=self._adapter.settings.esp_http_timeout_seconds,
        )


class GhlCampaigns:
    def __init__(self, adapter: "GhlAdapter"):
        self._adapter = adapter

    async def fetch_campaigns(self, credentials: Credentials, force_refresh: bool = False) -> list[EspCampaign]:
        cache = self._adapter.cache
        if not force_refresh:
            cached = cache.get(PROVIDER, credentials.location_id)
            if cached is not None:
                return cached
        rows = await ghl_client.list_email_schedules(
            credentials.token,
            credentials.location_id,
            timeout_seconds=self._adapter.settings.esp_http_timeout_seconds,
        )
        campaigns = [map_campaign(row, credentials.location_id) for row in rows]
        cache.put(PROVIDER, credentials.location_id, campaigns)
        return campaigns

    async def fetch_analytics(self, credentials: Credentials, campaign: EspCampaign) -> CampaignAnalytics:
        schedule_id = campaign.schedule_id or campaign.id
        payload = await ghl_client.get_schedule_stats(
            credentials.token,
            credentials.location_id,
            schedule_id,
            timeout_seconds=self._adapter.settings.esp_http_timeout_seconds,
        )
        source = payload.get("schedule") if isinstance(payload.get("schedule"), dict) else payload
        stats = _stats_source(source)
        counts = {field: _read_stat(stats, keys) for field, keys in _STAT_KEYS.items()}
        if all(value is None for value in counts.values()):
            # Stats endpoints are not enabled for every location; use list counts.
            counts = {field: getattr(campaign, field) for field in _STAT_KEYS}
            return CampaignAnalytics(**counts, source="ghl-campaign-list")
        return CampaignAnalytics(**counts, source="ghl-schedule-stats")


class GhlWorkflows:
    def __init__(self, adapter: "GhlAdapter"):
        self._adapter = adapter

    async def fetch_workflows(self, credentials: Credentials) -> list[EspWorkflow]:
        rows = await ghl_client.list_workflows(
            credentials.token,
            credentials.location_id,
            timeout_seconds=self._adapter.settings.esp_http_timeout_seconds,
        )
        return [map_workflow(row, credentials.location_id) for row in rows]


class GhlTemplates:
    def __init__(self, adapter: "GhlAdapter"):
        self._adapter = adapter

    async def create_template(self, credentials: Credentials, template: TemplateInput) -> EspTemplate:
        created = await ghl_client.create_email_template(
            credentials.token,
            credentials.location_id,
            title=template.name,
            html=template.html,
            timeout_seconds=self._adapter.settings.esp_http_timeout_seconds,
        )
        return EspTemplate(
            id=created["id"],
            name=_text(created.get("title") or created.get("name")) or template.name,
            provider=PROVIDER,
            created_at=_text(created.get("createdAt")),
            edit_url=_text(created.get("editUrl") or created.get("previewUrl")),
        )


class GhlMedia:
    def __init__(self, adapter: "GhlAdapter"):
        self._adapter = adapter

    async def upload_media(self, credentials: Credentials, upload: MediaUploadInput) -> EspMedia:
        try:
            content = base64.b64decode(upload.content_base64, validate=True)
        except (ValueError, binascii.Error) as exc:
            raise GhlProviderError("Media content is not valid base64", status_code=400) from exc
        payload = await ghl_client.upload_media_file(
            credentials.token,
            credentials.location_id,
            file_name=upload.file_name,
            content=content,
            content_type=upload.content_type,
        )
        media_id = _text(payload.get("fileId") or payload.get("id") or payload.get("_id"))
        url = _text(payload.get("url") or payload.get("fileUrl"))
        if not media_id or not url:
            raise GhlProviderError("GHL media upload returned no file id or url")
        return EspMedia(
            id=media_id,
            url=url,
            name=upload.file_name,
            provider=PROVIDER,
            content_type=upload.content_type,
        )


class GhlCustomValues:
    """Diff-and-apply sync of location custom values, matched by name."""

    def __init__(self, adapter: "GhlAdapter"):
        self._adapter = adapter

    async def sync_custom_values(
        self,
        credentials: Credentials,
        desired: list[CustomValueInput],
        managed_names: list[str] | None = None,
    ) -> CustomValueSyncResult:
        timeout = self._adapter.settings.esp_http_timeout_seconds
        remote_rows = await ghl_client.list_custom_values(credentials.token, credentials.location_id, timeout)
        remote = {str(row.get("name") or "").strip().lower(): row for row in remote_rows if row.get("name")}
        result = CustomValueSyncResult()
        desired_keys: set[str] = set()

        for item in desired:
            key = item.name.strip().lower()
            desired_keys.add(key)
            existing = remote.get(key)
            try:
                if existing is None:
                    await ghl_client.create_custom_value(
                        credentials.token, credentials.location_id, item.name, item.value, timeout
                    )
                    result.created.append(item.name)
                elif str(existing.get("value") or "") != item.value:
                    await ghl_client.update_custom_value(
                        credentials.token,
                        credentials.location_id,
                        str(existing.get("id") or existing.get("_id")),
                        item.name,
                        item.value,
                        timeout,
                    )
                    result.updated.append(item.name)
                else:
                    result.unchanged.append(item.name)
            except GhlProviderError as exc:
                result.errors.append({"name": item.name, "error": str(exc)})

        for name in managed_names or []:
            key = name.strip().lower()
            existing = remote.get(key)
            if key in desired_keys or existing is None:
                continue
            try:
                await ghl_client.delete_custom_value(
                    credentials.token,
                    credentials.location_id,
                    str(existing.get("id") or existing.get("_id")),
                    timeout,
                )
                result.deleted.append(str(existing.get("name")))
            except GhlProviderError as exc:
                result.errors.append({"name": name, "error": str(exc)})

        log_event(
            "esp_custom_values_synced",
            provider=PROVIDER,
            location_id=credentials.location_id,
            created=len(result.created),
            updated=len(result.updated),
            deleted=len(result.deleted),
            errors=len(result.errors),
        )
        return result


class GhlAccountDetails:
    def __init__(self, adapter: "GhlAdapter"):
        self._adapter = adapter

    async def sync_business_details(
        self, credentials: Credentials, details: BusinessDetails
    ) -> BusinessDetailsSyncResult:
        provided = details.provided_fields()
        body = {_BUSINESS_FIELD_MAP[key]: value for key, value in provided.items() if key in _BUSINESS_FIELD_MAP}
        if body:
            await ghl_client.update_location(
                credentials.token,
                credentials.location_id,
                body,
                timeout_seconds=self._adapter.settings.esp_http_timeout_seconds,
            )
        return BusinessDetailsSyncResult(
            provider=PROVIDER,
            location_id=credentials.location_id,
            updated_fields=sorted(provided),
        )


class GhlValidation:
    async def validate(self, request: ValidationInput) -> ValidationResult:
        if not request.access_token or not request.location_id:
            raise GhlProviderError("GHL validation requires access_token and location_id", status_code=400)
        location = await ghl_client.get_location(request.access_token, request.location_id)
        return ValidationResult(
            provider=PROVIDER,
            account_id=_text(location.get("id")) or request.location_id,
            account_name=_text(location.get("name")),
        )


class GhlAdapter(ProviderAdapter):
    provider = PROVIDER
    capabilities = ProviderCapabilities(
        auth="oauth",
        contacts=True,
        campaigns=True,
        workflows=True,
        templates=True,
        media=True,
        custom_values=True,
        account_details_sync=True,
        webhook=True,
        validation=True,
    )
    webhook_families = (EMAIL_STATS_FAMILY,)

    def __init__(self, connections: ConnectionStore, cache: CampaignListCache, settings: Settings):
        self.connections = connections
        self.cache = cache
        self.settings = settings
        self.oauth = GhlOAuth(settings)
        self.agency = GhlAgency(connections, self.oauth, settings)
        self.contacts = GhlContacts(self)
        self.campaigns = GhlCampaigns(self)
        self.workflows = GhlWorkflows(self)
        self.templates = GhlTemplates(self)
        self.media = GhlMedia(self)
        self.custom_values = GhlCustomValues(self)
        self.account_details_sync = GhlAccountDetails(self)
        self.validation = GhlValidation()
        self.webhook = GhlWebhook(settings.ghl_webhook_public_key, settings.ghl_webhook_signature_mode)
        if settings.ghl_webhook_signature_mode == "permissive_dev" and not settings.ghl_webhook_public_key:
            log_event("ghl_webhook_permissive_dev", level=logging.WARNING)
