from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ProviderDescription(BaseModel):
    provider: str
    capabilities: dict[str, Any]
    webhook_families: list[str] = Field(default_factory=list)
    webhook_endpoints: list[str] = Field(default_factory=list)


class ProviderListResponse(BaseModel):
    providers: list[ProviderDescription]
    default_provider: str | None = None
