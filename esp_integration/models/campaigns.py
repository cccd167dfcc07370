from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class EspCampaign(BaseModel):
    id: str
    name: str
    status: str
    location_id: str
    campaign_id: str | None = None
    schedule_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    scheduled_at: str | None = None
    sent_at: str | None = None
    sent_count: int | None = None
    delivered_count: int | None = None
    opened_count: int | None = None
    clicked_count: int | None = None
    bounced_count: int | None = None
    unsubscribed_count: int | None = None
    account_key: str | None = None

    def store_ids(self) -> list[str]:
        """Identifiers webhook stats may be keyed under, most specific first."""
        ids: list[str] = []
        for value in (self.schedule_id, self.campaign_id, self.id):
            text = (value or "").strip()
            if text and text not in ids:
                ids.append(text)
        return ids


class CampaignAnalytics(BaseModel):
    sent_count: int | None = None
    delivered_count: int | None = None
    opened_count: int | None = None
    clicked_count: int | None = None
    bounced_count: int | None = None
    unsubscribed_count: int | None = None
    source: str | None = None

    def has_engagement(self) -> bool:
        return any(
            (value or 0) > 0
            for value in (
                self.sent_count,
                self.delivered_count,
                self.opened_count,
                self.clicked_count,
                self.bounced_count,
                self.unsubscribed_count,
            )
        )


class EspWorkflow(BaseModel):
    id: str
    name: str
    status: str
    location_id: str
    created_at: str | None = None
    updated_at: str | None = None


class CampaignStatsAggregate(BaseModel):
    provider: str
    account_id: str
    campaign_id: str
    delivered_count: int = 0
    opened_count: int = 0
    clicked_count: int = 0
    bounced_count: int = 0
    complained_count: int = 0
    unsubscribed_count: int = 0
    first_delivered_at: datetime | None = None
    last_event_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CampaignStatsAggregate":
        return cls(
            provider=row["provider"],
            account_id=row["account_id"],
            campaign_id=row["campaign_id"],
            delivered_count=row.get("delivered_count") or 0,
            opened_count=row.get("opened_count") or 0,
            clicked_count=row.get("clicked_count") or 0,
            bounced_count=row.get("bounced_count") or 0,
            complained_count=row.get("complained_count") or 0,
            unsubscribed_count=row.get("unsubscribed_count") or 0,
            first_delivered_at=row.get("first_delivered_at"),
            last_event_at=row.get("last_event_at"),
        )


class CampaignListResponse(BaseModel):
    account_key: str
    provider: str
    location_id: str
    campaigns: list[dict[str, Any]] = Field(default_factory=list)


class CampaignStatsResponse(BaseModel):
    account_key: str
    provider: str
    account_id: str
    stats: list[CampaignStatsAggregate] = Field(default_factory=list)
