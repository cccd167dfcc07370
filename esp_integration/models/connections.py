from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ApiKeyConnectRequest(BaseModel):
    provider: str = Field(min_length=1)
    api_key: str = Field(min_length=1)


class ValidateCredentialsRequest(BaseModel):
    provider: str = Field(min_length=1)
    api_key: str | None = None
    access_token: str | None = None
    location_id: str | None = None


class ConnectionSummary(BaseModel):
    provider: str
    auth_mode: str
    account_id: str
    account_name: str | None = None
    scopes: list[str] = Field(default_factory=list)
    token_expires_at: datetime | None = None
    installed_at: datetime | None = None
    updated_at: datetime | None = None


class ConnectionStatusResponse(BaseModel):
    account_key: str
    provider: str | None
    connected: bool
    connections: list[ConnectionSummary] = Field(default_factory=list)


class AuthorizeResponse(BaseModel):
    provider: str
    account_key: str
    authorization_url: str


class DisconnectResponse(BaseModel):
    account_key: str
    provider: str
    oauth_deleted: bool
    api_key_deleted: bool


class RequiredScopesResponse(BaseModel):
    provider: str
    scopes: list[str]


class AgencyStatusResponse(BaseModel):
    provider: str
    connected: bool
    source: str  # oauth | env | none
    mode: str
    subject_type: str | None = None
    subject_id: str | None = None
    scopes: list[str] = Field(default_factory=list)
    token_expires_at: datetime | None = None
    installed_at: datetime | None = None
    authorization_url: str | None = None


class AgencyDisconnectResponse(BaseModel):
    success: bool
    removed: bool
    env_token_configured: bool
    warning: str | None = None


class LocationSummary(BaseModel):
    id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    website: str = ""
    timezone: str = ""


class LocationListResponse(BaseModel):
    provider: str
    total: int
    locations: list[LocationSummary]


class LocationLinkRequest(BaseModel):
    account_key: str = Field(min_length=1)
    location_id: str = Field(min_length=1)
    location_name: str | None = None


class LocationUnlinkRequest(BaseModel):
    account_key: str = Field(min_length=1)


class LocationLinkView(BaseModel):
    location_id: str
    location_name: str | None = None
    linked_at: datetime | None = None
    updated_at: datetime | None = None


class LocationLinkStatusResponse(BaseModel):
    account_key: str
    provider: str
    linked: bool
    link: LocationLinkView | None = None


class LocationLinkResponse(BaseModel):
    success: bool
    provider: str
    account_key: str
    location_id: str
    location_name: str | None = None


class LocationUnlinkResponse(BaseModel):
    success: bool
    provider: str
    removed: bool


class BulkLocationLinkMapping(BaseModel):
    line: int | None = None
    account_key: str = ""
    location_id: str = ""
    location_name: str | None = None


class BulkLocationLinkRequest(BaseModel):
    mappings: list[BulkLocationLinkMapping] = Field(min_length=1, max_length=500)


class BulkLocationLinkResult(BaseModel):
    line: int
    account_key: str
    location_id: str
    location_name: str | None = None
    success: bool
    error: str | None = None


class BulkLocationLinkResponse(BaseModel):
    success: bool
    total: int
    linked: int
    failed: int
    results: list[BulkLocationLinkResult]
