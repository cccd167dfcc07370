from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


CredentialAuthMode = Literal["oauth", "api_key"]


@dataclass(frozen=True)
class Credentials:
    """Decrypted, ready-to-use provider credentials. Never persisted."""
    provider: str
    token: str
    location_id: str
    auth_mode: CredentialAuthMode
    scopes: tuple[str, ...] = ()
    expires_at: datetime | None = None

    @property
    def account_id(self) -> str:
        return self.location_id

    def __repr__(self) -> str:
        return (
            f"Credentials(provider={self.provider!r}, location_id={self.location_id!r}, "
            f"auth_mode={self.auth_mode!r}, token='***')"
        )


@dataclass
class OAuthConnection:
    account_key: str
    provider: str
    location_id: str
    access_token: str
    refresh_token: str
    token_expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    location_name: str | None = None
    installed_at: datetime | None = None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"OAuthConnection(account_key={self.account_key!r}, provider={self.provider!r}, "
            f"location_id={self.location_id!r}, tokens='***')"
        )


@dataclass
class ApiKeyConnection:
    account_key: str
    provider: str
    api_key: str
    account_id: str
    account_name: str | None = None
    metadata: dict[str, Any] | None = None
    installed_at: datetime | None = None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"ApiKeyConnection(account_key={self.account_key!r}, provider={self.provider!r}, "
            f"account_id={self.account_id!r}, api_key='***')"
        )


@dataclass
class ProviderOAuthCredential:
    """Provider-wide credential, e.g. a GHL agency (company) install."""
    provider: str
    access_token: str
    refresh_token: str
    subject_type: str = "agency"
    subject_id: str | None = None
    token_expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)
    installed_at: datetime | None = None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"ProviderOAuthCredential(provider={self.provider!r}, subject_type={self.subject_type!r}, "
            f"subject_id={self.subject_id!r}, tokens='***')"
        )


@dataclass
class AccountProviderLink:
    account_key: str
    provider: str
    location_id: str
    location_name: str | None = None
    metadata: dict[str, Any] | None = None
    linked_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: datetime | None
    location_id: str | None = None
    scopes: tuple[str, ...] = ()
    company_id: str | None = None


@dataclass
class ReencryptionStats:
    oauth_rows: int = 0
    oauth_updated: int = 0
    api_key_rows: int = 0
    api_key_updated: int = 0
    provider_credential_rows: int = 0
    provider_credential_updated: int = 0
    failures: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    def as_dict(self) -> dict[str, Any]:
        return {
            "oauth_rows": self.oauth_rows,
            "oauth_updated": self.oauth_updated,
            "api_key_rows": self.api_key_rows,
            "api_key_updated": self.api_key_updated,
            "provider_credential_rows": self.provider_credential_rows,
            "provider_credential_updated": self.provider_credential_updated,
            "failed": self.failed,
            "failures": list(self.failures),
            "dry_run": self.dry_run,
        }
