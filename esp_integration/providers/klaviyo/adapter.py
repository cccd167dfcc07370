from __future__ import annotations

import base64
import binascii
from typing import Any

from esp_integration.config import Settings
from esp_integration.domain.capabilities import ProviderCapabilities
from esp_integration.domain.normalization import safe_count
from esp_integration.models.account_features import (
    EspMedia,
    EspTemplate,
    MediaUploadInput,
    TemplateInput,
    ValidationInput,
    ValidationResult,
)
from esp_integration.models.campaigns import CampaignAnalytics, EspCampaign, EspWorkflow
from esp_integration.models.credentials import Credentials
from esp_integration.providers.base import ProviderAdapter, resolve_connection_credentials
from esp_integration.providers.klaviyo import client as klaviyo_client
from esp_integration.providers.klaviyo.client import KlaviyoProviderError
from esp_integration.providers.klaviyo.webhook import EMAIL_STATS_FAMILY, KlaviyoWebhook
from esp_integration.stores.campaign_cache import CampaignListCache
from esp_integration.stores.connections import ConnectionStore


PROVIDER = "klaviyo"

_CAMPAIGN_STATUS_MAP = {
    "draft": "draft",
    "scheduled": "scheduled",
    "sending": "sending",
    "sent": "sent",
    "cancelled": "canceled",
}
_FLOW_STATUS_MAP = {"draft": "draft", "manual": "manual", "live": "active"}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def map_campaign(item: dict[str, Any], account_id: str) -> EspCampaign:
    attrs = item.get("attributes") or {}
    send_strategy = attrs.get("send_strategy") or {}
    static_options = send_strategy.get("options_static") or {}
    status = str(attrs.get("status") or "").lower()
    return EspCampaign(
        id=str(item.get("id") or ""),
        campaign_id=_text(item.get("id")),
        name=_text(attrs.get("name")) or "Untitled",
        status=_CAMPAIGN_STATUS_MAP.get(status, status or "unknown"),
        created_at=_text(attrs.get("created_at")),
        updated_at=_text(attrs.get("updated_at")),
        scheduled_at=_text(static_options.get("datetime")),
        sent_at=_text(attrs.get("send_time")),
        location_id=account_id,
    )


def map_flow(item: dict[str, Any], account_id: str) -> EspWorkflow:
    attrs = item.get("attributes") or {}
    status = str(attrs.get("status") or "").lower()
    return EspWorkflow(
        id=str(item.get("id") or ""),
        name=_text(attrs.get("name")) or "Untitled Flow",
        status=_FLOW_STATUS_MAP.get(status, status or "unknown"),
        created_at=_text(attrs.get("created")),
        updated_at=_text(attrs.get("updated")),
        location_id=account_id,
    )


def _optional_count(statistics: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        if statistics.get(key) is not None:
            return safe_count(statistics[key])
    return None


def _decode_upload(upload: MediaUploadInput) -> bytes:
    try:
        return base64.b64decode(upload.content_base64, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise KlaviyoProviderError("Media content is not valid base64", status_code=400) from exc


class KlaviyoContacts:
    def __init__(self, adapter: "KlaviyoAdapter"):
        self._adapter = adapter

    async def resolve_credentials(self, account_key: str) -> Credentials | None:
        return await resolve_connection_credentials(
            self._adapter.connections,
            account_key,
            PROVIDER,
            refresh_buffer_seconds=self._adapter.settings.oauth_refresh_buffer_seconds,
        )

    async def fetch_contact_count(self, credentials: Credentials) -> int:
        return await klaviyo_client.count_profiles(
            credentials.token, timeout_seconds=self._adapter.settings.esp_http_timeout_seconds
        )


class KlaviyoCampaigns:
    def __init__(self, adapter: "KlaviyoAdapter"):
        self._adapter = adapter

    async def fetch_campaigns(self, credentials: Credentials, force_refresh: bool = False) -> list[EspCampaign]:
        cache = self._adapter.cache
        if not force_refresh:
            cached = cache.get(PROVIDER, credentials.account_id)
            if cached is not None:
                return cached
        items = await klaviyo_client.list_email_campaigns(
            credentials.token, timeout_seconds=self._adapter.settings.esp_http_timeout_seconds
        )
        campaigns = [map_campaign(item, credentials.account_id) for item in items]
        cache.put(PROVIDER, credentials.account_id, campaigns)
        return campaigns

    async def fetch_analytics(self, credentials: Credentials, campaign: EspCampaign) -> CampaignAnalytics:
        campaign_id = campaign.campaign_id or campaign.schedule_id or campaign.id
        if not campaign_id:
            return CampaignAnalytics(source=PROVIDER)
        statistics = await klaviyo_client.get_campaign_values_report(
            credentials.token,
            campaign_id,
            timeout_seconds=self._adapter.settings.esp_http_timeout_seconds,
        )
        return CampaignAnalytics(
            sent_count=_optional_count(statistics, "recipients"),
            delivered_count=_optional_count(statistics, "delivered"),
            opened_count=_optional_count(statistics, "opens_unique", "opens"),
            clicked_count=_optional_count(statistics, "clicks_unique", "clicks"),
            bounced_count=_optional_count(statistics, "bounced"),
            unsubscribed_count=_optional_count(statistics, "unsubscribes"),
            source=PROVIDER,
        )


class KlaviyoWorkflows:
    def __init__(self, adapter: "KlaviyoAdapter"):
        self._adapter = adapter

    async def fetch_workflows(self, credentials: Credentials) -> list[EspWorkflow]:
        items = await klaviyo_client.list_flows(
            credentials.token, timeout_seconds=self._adapter.settings.esp_http_timeout_seconds
        )
        return [map_flow(item, credentials.account_id) for item in items]


class KlaviyoTemplates:
    def __init__(self, adapter: "KlaviyoAdapter"):
        self._adapter = adapter

    async def create_template(self, credentials: Credentials, template: TemplateInput) -> EspTemplate:
        data = await klaviyo_client.create_template(
            credentials.token,
            name=template.name,
            html=template.html,
            editor_type="CODE",
            timeout_seconds=self._adapter.settings.esp_http_timeout_seconds,
        )
        attrs = data.get("attributes") or {}
        return EspTemplate(
            id=str(data["id"]),
            name=_text(attrs.get("name")) or template.name,
            provider=PROVIDER,
            created_at=_text(attrs.get("created")),
        )


class KlaviyoMedia:
    async def upload_media(self, credentials: Credentials, upload: MediaUploadInput) -> EspMedia:
        data = await klaviyo_client.upload_image(
            credentials.token,
            file_name=upload.file_name,
            content=_decode_upload(upload),
            content_type=upload.content_type,
        )
        attrs = data.get("attributes") or {}
        return EspMedia(
            id=str(data["id"]),
            url=str(attrs.get("image_url") or ""),
            name=_text(attrs.get("name")) or upload.file_name,
            provider=PROVIDER,
            content_type=_text(attrs.get("format")) or upload.content_type,
        )


class KlaviyoValidation:
    async def validate(self, request: ValidationInput) -> ValidationResult:
        if not request.api_key:
            raise KlaviyoProviderError("Klaviyo validation requires api_key", status_code=400)
        account = await klaviyo_client.get_account(request.api_key)
        contact = (account.get("attributes") or {}).get("contact_information") or {}
        return ValidationResult(
            provider=PROVIDER,
            account_id=str(account.get("id") or ""),
            account_name=_text(contact.get("default_sender_name"))
            or _text(contact.get("organization_name"))
            or "Klaviyo Account",
        )


class KlaviyoAdapter(ProviderAdapter):
    provider = PROVIDER
    capabilities = ProviderCapabilities(
        auth="api_key",
        contacts=True,
        campaigns=True,
        workflows=True,
        templates=True,
        media=True,
        custom_values=False,
        account_details_sync=False,
        webhook=True,
        validation=True,
    )
    webhook_families = (EMAIL_STATS_FAMILY,)

    def __init__(self, connections: ConnectionStore, cache: CampaignListCache, settings: Settings):
        self.connections = connections
        self.cache = cache
        self.settings = settings
        self.contacts = KlaviyoContacts(self)
        self.campaigns = KlaviyoCampaigns(self)
        self.workflows = KlaviyoWorkflows(self)
        self.templates = KlaviyoTemplates(self)
        self.media = KlaviyoMedia()
        self.validation = KlaviyoValidation()
        self.webhook = KlaviyoWebhook(settings.klaviyo_webhook_secret)
