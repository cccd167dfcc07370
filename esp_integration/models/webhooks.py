from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel

from esp_integration.domain.normalization import StatsColumn


@dataclass(frozen=True)
class CanonicalWebhookEvent:
    """One counter increment derived from a provider payload. Never persisted."""
    provider: str
    account_id: str
    campaign_id: str
    column: StatsColumn
    occurred_at: datetime
    raw_event_name: str
    event_id: str | None = None

    def dedup_key(self) -> str | None:
        if not self.event_id:
            return None
        return f"{self.event_id}:{self.campaign_id}:{self.column}"


@dataclass(frozen=True)
class SkippedEvent:
    reason: str  # unsupported-event | no-campaign-id | no-account-id
    raw_event_name: str = ""
    event_id: str | None = None


@dataclass
class ExtractionResult:
    events: list[CanonicalWebhookEvent] = field(default_factory=list)
    skipped: list[SkippedEvent] = field(default_factory=list)


class WebhookIngestResponse(BaseModel):
    ok: bool = True
    provider: str
    family: str
    updated: int
    failed: int
    skipped: int
    duplicates: int
    processed_events: int


class WebhookEndpointInfo(BaseModel):
    ok: bool = True
    provider: str
    family: str
    endpoint: str
    expects: str
    signature_headers: list[str]
