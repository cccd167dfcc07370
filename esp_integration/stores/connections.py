from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from esp_integration.domain.errors import DecryptionFailed, VaultMisconfigured
from esp_integration.domain.normalization import parse_optional_ts
from esp_integration.models.connections import ConnectionSummary
from esp_integration.models.credentials import (
    AccountProviderLink,
    ApiKeyConnection,
    OAuthConnection,
    ProviderOAuthCredential,
    ReencryptionStats,
)
from esp_integration.observability import incr_metric, log_event
from esp_integration.vault import CredentialVault


OAUTH_TABLE = "esp_oauth_connections"
API_KEY_TABLE = "esp_api_key_connections"
PROVIDER_CREDENTIAL_TABLE = "esp_provider_oauth_credentials"
LINK_TABLE = "esp_account_provider_links"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_scopes(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    text = str(value).strip()
    try:
        parsed = json.loads(text)
    except ValueError:
        return [part for part in text.replace(",", " ").split() if part]
    if isinstance(parsed, list):
        return [str(v) for v in parsed if str(v).strip()]
    return []


def _parse_metadata(value: Any) -> dict[str, Any] | None:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(str(value))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class ConnectionStore:
    """Durable OAuth and API-key connections, encrypted at rest.

    Every secret column goes through the vault; callers only ever see
    plaintext connection objects.
    """

    def __init__(self, client: Any, vault: CredentialVault):
        self._client = client
        self._vault = vault

    # -- OAuth ---------------------------------------------------------

    def _oauth_from_row(self, row: dict[str, Any]) -> OAuthConnection:
        return OAuthConnection(
            account_key=row["account_key"],
            provider=row["provider"],
            location_id=str(row.get("location_id") or ""),
            access_token=self._vault.decrypt(row["access_token"]),
            refresh_token=self._vault.decrypt(row["refresh_token"]),
            token_expires_at=parse_optional_ts(row.get("token_expires_at")),
            scopes=_parse_scopes(row.get("scopes")),
            location_name=row.get("location_name"),
            installed_at=parse_optional_ts(row.get("installed_at")),
            updated_at=parse_optional_ts(row.get("updated_at")),
        )

    def get_oauth_connection(self, account_key: str, provider: str) -> OAuthConnection | None:
        result = (
            self._client.table(OAUTH_TABLE)
            .select("*")
            .eq("account_key", account_key)
            .eq("provider", provider)
            .execute()
        )
        if not result.data:
            return None
        return self._oauth_from_row(result.data[0])

    def _existing_installed_at(self, table: str, account_key: str, provider: str) -> str | None:
        result = (
            self._client.table(table)
            .select("installed_at")
            .eq("account_key", account_key)
            .eq("provider", provider)
            .execute()
        )
        if not result.data:
            return None
        return result.data[0].get("installed_at")

    def upsert_oauth_connection(
        self,
        account_key: str,
        provider: str,
        *,
        location_id: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime | None,
        scopes: list[str] | tuple[str, ...] = (),
        location_name: str | None = None,
    ) -> OAuthConnection:
        now = _now_iso()
        installed_at = self._existing_installed_at(OAUTH_TABLE, account_key, provider) or now
        payload = {
            "account_key": account_key,
            "provider": provider,
            "location_id": location_id,
            "location_name": location_name,
            "access_token": self._vault.encrypt(access_token),
            "refresh_token": self._vault.encrypt(refresh_token),
            "token_expires_at": _iso(token_expires_at),
            "scopes": json.dumps(list(scopes)),
            "installed_at": installed_at,
            "updated_at": now,
        }
        self._client.table(OAUTH_TABLE).upsert(payload, on_conflict="account_key,provider").execute()
        log_event("esp_oauth_connection_saved", account_key=account_key, provider=provider, location_id=location_id)
        return OAuthConnection(
            account_key=account_key,
            provider=provider,
            location_id=location_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            scopes=list(scopes),
            location_name=location_name,
            installed_at=parse_optional_ts(installed_at),
            updated_at=parse_optional_ts(now),
        )

    def delete_oauth_connection(self, account_key: str, provider: str) -> bool:
        result = (
            self._client.table(OAUTH_TABLE)
            .delete()
            .eq("account_key", account_key)
            .eq("provider", provider)
            .execute()
        )
        return bool(result.data)

    def list_oauth_connections(
        self,
        account_keys: list[str] | None = None,
        provider: str | None = None,
    ) -> list[OAuthConnection]:
        rows = self._select_rows(OAUTH_TABLE, account_keys, provider)
        connections: list[OAuthConnection] = []
        for row in rows:
            try:
                connections.append(self._oauth_from_row(row))
            except (DecryptionFailed, VaultMisconfigured) as exc:
                self._log_undecryptable(OAUTH_TABLE, row, exc)
        return connections

    # -- API keys ------------------------------------------------------

    def _api_key_from_row(self, row: dict[str, Any]) -> ApiKeyConnection:
        return ApiKeyConnection(
            account_key=row["account_key"],
            provider=row["provider"],
            api_key=self._vault.decrypt(row["api_key"]),
            account_id=str(row.get("account_id") or ""),
            account_name=row.get("account_name"),
            metadata=_parse_metadata(row.get("metadata")),
            installed_at=parse_optional_ts(row.get("installed_at")),
            updated_at=parse_optional_ts(row.get("updated_at")),
        )

    def get_api_key_connection(self, account_key: str, provider: str) -> ApiKeyConnection | None:
        result = (
            self._client.table(API_KEY_TABLE)
            .select("*")
            .eq("account_key", account_key)
            .eq("provider", provider)
            .execute()
        )
        if not result.data:
            return None
        return self._api_key_from_row(result.data[0])

    def upsert_api_key_connection(
        self,
        account_key: str,
        provider: str,
        *,
        api_key: str,
        account_id: str,
        account_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ApiKeyConnection:
        now = _now_iso()
        installed_at = self._existing_installed_at(API_KEY_TABLE, account_key, provider) or now
        payload = {
            "account_key": account_key,
            "provider": provider,
            "api_key": self._vault.encrypt(api_key),
            "account_id": account_id,
            "account_name": account_name,
            "metadata": json.dumps(metadata) if metadata is not None else None,
            "installed_at": installed_at,
            "updated_at": now,
        }
        self._client.table(API_KEY_TABLE).upsert(payload, on_conflict="account_key,provider").execute()
        log_event("esp_api_key_connection_saved", account_key=account_key, provider=provider, account_id=account_id)
        return ApiKeyConnection(
            account_key=account_key,
            provider=provider,
            api_key=api_key,
            account_id=account_id,
            account_name=account_name,
            metadata=metadata,
            installed_at=parse_optional_ts(installed_at),
            updated_at=parse_optional_ts(now),
        )

    def delete_api_key_connection(self, account_key: str, provider: str) -> bool:
        result = (
            self._client.table(API_KEY_TABLE)
            .delete()
            .eq("account_key", account_key)
            .eq("provider", provider)
            .execute()
        )
        return bool(result.data)

    def list_api_key_connections(
        self,
        account_keys: list[str] | None = None,
        provider: str | None = None,
    ) -> list[ApiKeyConnection]:
        rows = self._select_rows(API_KEY_TABLE, account_keys, provider)
        connections: list[ApiKeyConnection] = []
        for row in rows:
            try:
                connections.append(self._api_key_from_row(row))
            except (DecryptionFailed, VaultMisconfigured) as exc:
                self._log_undecryptable(API_KEY_TABLE, row, exc)
        return connections

    # -- provider-wide credentials and account links --------------------

    def _provider_credential_from_row(self, row: dict[str, Any]) -> ProviderOAuthCredential:
        return ProviderOAuthCredential(
            provider=row["provider"],
            access_token=self._vault.decrypt(row["access_token"]),
            refresh_token=self._vault.decrypt(row["refresh_token"]),
            subject_type=row.get("subject_type") or "agency",
            subject_id=row.get("subject_id"),
            token_expires_at=parse_optional_ts(row.get("token_expires_at")),
            scopes=_parse_scopes(row.get("scopes")),
            installed_at=parse_optional_ts(row.get("installed_at")),
            updated_at=parse_optional_ts(row.get("updated_at")),
        )

    def get_provider_credential(self, provider: str) -> ProviderOAuthCredential | None:
        result = self._client.table(PROVIDER_CREDENTIAL_TABLE).select("*").eq("provider", provider).execute()
        if not result.data:
            return None
        return self._provider_credential_from_row(result.data[0])

    def upsert_provider_credential(
        self,
        provider: str,
        *,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime | None,
        scopes: list[str] | tuple[str, ...] = (),
        subject_type: str = "agency",
        subject_id: str | None = None,
    ) -> ProviderOAuthCredential:
        now = _now_iso()
        existing = (
            self._client.table(PROVIDER_CREDENTIAL_TABLE).select("installed_at").eq("provider", provider).execute()
        )
        installed_at = (existing.data[0].get("installed_at") if existing.data else None) or now
        payload = {
            "provider": provider,
            "subject_type": subject_type,
            "subject_id": subject_id,
            "access_token": self._vault.encrypt(access_token),
            "refresh_token": self._vault.encrypt(refresh_token),
            "token_expires_at": _iso(token_expires_at),
            "scopes": json.dumps(list(scopes)),
            "installed_at": installed_at,
            "updated_at": now,
        }
        self._client.table(PROVIDER_CREDENTIAL_TABLE).upsert(payload, on_conflict="provider").execute()
        log_event("esp_provider_credential_saved", provider=provider, subject_type=subject_type, subject_id=subject_id)
        return ProviderOAuthCredential(
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            subject_type=subject_type,
            subject_id=subject_id,
            token_expires_at=token_expires_at,
            scopes=list(scopes),
            installed_at=parse_optional_ts(installed_at),
            updated_at=parse_optional_ts(now),
        )

    def delete_provider_credential(self, provider: str) -> bool:
        result = self._client.table(PROVIDER_CREDENTIAL_TABLE).delete().eq("provider", provider).execute()
        return bool(result.data)

    @staticmethod
    def _link_from_row(row: dict[str, Any]) -> AccountProviderLink:
        return AccountProviderLink(
            account_key=row["account_key"],
            provider=row["provider"],
            location_id=str(row.get("location_id") or ""),
            location_name=row.get("location_name"),
            metadata=_parse_metadata(row.get("metadata")),
            linked_at=parse_optional_ts(row.get("linked_at")),
            updated_at=parse_optional_ts(row.get("updated_at")),
        )

    def get_account_link(self, account_key: str, provider: str) -> AccountProviderLink | None:
        result = (
            self._client.table(LINK_TABLE)
            .select("*")
            .eq("account_key", account_key)
            .eq("provider", provider)
            .execute()
        )
        if not result.data:
            return None
        return self._link_from_row(result.data[0])

    def upsert_account_link(
        self,
        account_key: str,
        provider: str,
        *,
        location_id: str,
        location_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AccountProviderLink:
        now = _now_iso()
        existing = (
            self._client.table(LINK_TABLE)
            .select("linked_at")
            .eq("account_key", account_key)
            .eq("provider", provider)
            .execute()
        )
        linked_at = (existing.data[0].get("linked_at") if existing.data else None) or now
        payload = {
            "account_key": account_key,
            "provider": provider,
            "location_id": location_id,
            "location_name": location_name,
            "metadata": json.dumps(metadata) if metadata is not None else None,
            "linked_at": linked_at,
            "updated_at": now,
        }
        self._client.table(LINK_TABLE).upsert(payload, on_conflict="account_key,provider").execute()
        log_event("esp_account_link_saved", account_key=account_key, provider=provider, location_id=location_id)
        return AccountProviderLink(
            account_key=account_key,
            provider=provider,
            location_id=location_id,
            location_name=location_name,
            metadata=metadata,
            linked_at=parse_optional_ts(linked_at),
            updated_at=parse_optional_ts(now),
        )

    def delete_account_link(self, account_key: str, provider: str) -> bool:
        result = (
            self._client.table(LINK_TABLE)
            .delete()
            .eq("account_key", account_key)
            .eq("provider", provider)
            .execute()
        )
        return bool(result.data)

    # -- shared --------------------------------------------------------

    def _select_rows(
        self,
        table: str,
        account_keys: list[str] | None,
        provider: str | None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        if account_keys is not None and not account_keys:
            return []
        query = self._client.table(table).select(columns)
        if account_keys is not None:
            query = query.in_("account_key", account_keys)
        if provider:
            query = query.eq("provider", provider)
        return query.execute().data or []

    @staticmethod
    def _log_undecryptable(table: str, row: dict[str, Any], exc: Exception) -> None:
        incr_metric("esp.connections.decrypt_failed", table=table)
        log_event(
            "esp_connection_decrypt_failed",
            level=logging.WARNING,
            table=table,
            account_key=row.get("account_key"),
            provider=row.get("provider"),
            error=str(exc),
        )

    def latest_connected_provider(self, account_key: str) -> str | None:
        candidates: list[tuple[datetime, str]] = []
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        for table in (OAUTH_TABLE, API_KEY_TABLE):
            for row in self._select_rows(table, [account_key], None, "provider, installed_at"):
                if row.get("provider"):
                    candidates.append((parse_optional_ts(row.get("installed_at")) or epoch, row["provider"]))
        if not candidates:
            return None
        return max(candidates, key=lambda item: item[0])[1]

    def list_connection_summaries(self, account_key: str) -> list[ConnectionSummary]:
        summaries: list[ConnectionSummary] = []
        oauth_rows = self._select_rows(
            OAUTH_TABLE,
            [account_key],
            None,
            "provider, location_id, location_name, scopes, token_expires_at, installed_at, updated_at",
        )
        for row in oauth_rows:
            summaries.append(
                ConnectionSummary(
                    provider=row["provider"],
                    auth_mode="oauth",
                    account_id=str(row.get("location_id") or ""),
                    account_name=row.get("location_name"),
                    scopes=_parse_scopes(row.get("scopes")),
                    token_expires_at=parse_optional_ts(row.get("token_expires_at")),
                    installed_at=parse_optional_ts(row.get("installed_at")),
                    updated_at=parse_optional_ts(row.get("updated_at")),
                )
            )
        api_rows = self._select_rows(
            API_KEY_TABLE,
            [account_key],
            None,
            "provider, account_id, account_name, installed_at, updated_at",
        )
        for row in api_rows:
            summaries.append(
                ConnectionSummary(
                    provider=row["provider"],
                    auth_mode="api_key",
                    account_id=str(row.get("account_id") or ""),
                    account_name=row.get("account_name"),
                    installed_at=parse_optional_ts(row.get("installed_at")),
                    updated_at=parse_optional_ts(row.get("updated_at")),
                )
            )
        return summaries

    def reencrypt_all(self, *, dry_run: bool = False) -> ReencryptionStats:
        """Re-encrypt every stored secret with the vault's primary secret."""
        self._vault.require_configured()
        stats = ReencryptionStats(dry_run=dry_run)

        for row in self._client.table(OAUTH_TABLE).select("account_key, provider, access_token, refresh_token").execute().data or []:
            stats.oauth_rows += 1
            label = f"{OAUTH_TABLE}:{row.get('account_key')}:{row.get('provider')}"
            try:
                update = {
                    "access_token": self._vault.reencrypt(row["access_token"]),
                    "refresh_token": self._vault.reencrypt(row["refresh_token"]),
                    "updated_at": _now_iso(),
                }
            except DecryptionFailed as exc:
                stats.failures.append(f"{label}: {exc}")
                continue
            if not dry_run:
                (
                    self._client.table(OAUTH_TABLE)
                    .update(update)
                    .eq("account_key", row["account_key"])
                    .eq("provider", row["provider"])
                    .execute()
                )
            stats.oauth_updated += 1

        for row in self._client.table(API_KEY_TABLE).select("account_key, provider, api_key").execute().data or []:
            stats.api_key_rows += 1
            label = f"{API_KEY_TABLE}:{row.get('account_key')}:{row.get('provider')}"
            try:
                update = {"api_key": self._vault.reencrypt(row["api_key"]), "updated_at": _now_iso()}
            except DecryptionFailed as exc:
                stats.failures.append(f"{label}: {exc}")
                continue
            if not dry_run:
                (
                    self._client.table(API_KEY_TABLE)
                    .update(update)
                    .eq("account_key", row["account_key"])
                    .eq("provider", row["provider"])
                    .execute()
                )
            stats.api_key_updated += 1

        rows = self._client.table(PROVIDER_CREDENTIAL_TABLE).select("provider, access_token, refresh_token").execute().data
        for row in rows or []:
            stats.provider_credential_rows += 1
            label = f"{PROVIDER_CREDENTIAL_TABLE}:{row.get('provider')}"
            try:
                update = {
                    "access_token": self._vault.reencrypt(row["access_token"]),
                    "refresh_token": self._vault.reencrypt(row["refresh_token"]),
                    "updated_at": _now_iso(),
                }
            except DecryptionFailed as exc:
                stats.failures.append(f"{label}: {exc}")
                continue
            if not dry_run:
                self._client.table(PROVIDER_CREDENTIAL_TABLE).update(update).eq("provider", row["provider"]).execute()
            stats.provider_credential_updated += 1

        log_event("esp_credentials_reencrypted", **stats.as_dict())
        return stats
