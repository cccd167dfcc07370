from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class TemplateInput(BaseModel):
    name: str = Field(min_length=1)
    html: str = Field(min_length=1)
    subject: str | None = None
    preview_text: str | None = None
    editor_type: Literal["html", "code"] = "html"


class EspTemplate(BaseModel):
    id: str
    name: str
    provider: str
    created_at: str | None = None
    edit_url: str | None = None


class MediaUploadInput(BaseModel):
    file_name: str = Field(min_length=1)
    content_type: str = "application/octet-stream"
    content_base64: str = Field(min_length=1)
    folder: str | None = None


class EspMedia(BaseModel):
    id: str
    url: str
    name: str
    provider: str
    content_type: str | None = None


class CustomValueInput(BaseModel):
    name: str = Field(min_length=1)
    value: str


class EspCustomValue(BaseModel):
    id: str
    name: str
    value: str
    field_key: str | None = None


class CustomValueSyncRequest(BaseModel):
    values: list[CustomValueInput]
    managed_names: list[str] | None = None


class CustomValueSyncResult(BaseModel):
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    errors: list[dict[str, str]] = Field(default_factory=list)


class BusinessDetails(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    timezone: str | None = None
    logo_url: str | None = None

    def provided_fields(self) -> dict[str, Any]:
        return {key: value for key, value in self.model_dump().items() if value not in (None, "")}


class BusinessDetailsSyncResult(BaseModel):
    provider: str
    location_id: str
    updated_fields: list[str] = Field(default_factory=list)


class ValidationInput(BaseModel):
    api_key: str | None = None
    access_token: str | None = None
    location_id: str | None = None


class ValidationResult(BaseModel):
    provider: str
    account_id: str
    account_name: str | None = None
    metadata: dict[str, Any] | None = None
