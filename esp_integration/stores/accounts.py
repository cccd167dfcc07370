from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from esp_integration.domain.normalization import normalize_provider_id


ACCOUNTS_TABLE = "accounts"


@dataclass(frozen=True)
class AccountRecord:
    key: str
    dealer: str
    esp_provider: str | None = None

    @property
    def internal(self) -> bool:
        return self.key.startswith("_")


def _to_record(row: dict[str, Any]) -> AccountRecord:
    key = str(row.get("key") or "")
    return AccountRecord(
        key=key,
        dealer=str(row.get("dealer") or key),
        esp_provider=normalize_provider_id(row.get("esp_provider")) or None,
    )


class AccountDirectory:
    """Read-only view over the platform's account table."""

    def __init__(self, client: Any):
        self._client = client

    def get_account(self, account_key: str) -> AccountRecord | None:
        result = (
            self._client.table(ACCOUNTS_TABLE)
            .select("key, dealer, esp_provider")
            .eq("key", account_key)
            .execute()
        )
        if not result.data:
            return None
        return _to_record(result.data[0])

    def list_accounts(self, account_keys: list[str] | None = None) -> list[AccountRecord]:
        """Fan-out targets. Internal keys (leading underscore) are never returned."""
        if account_keys is not None and not account_keys:
            return []
        query = self._client.table(ACCOUNTS_TABLE).select("key, dealer, esp_provider")
        if account_keys is not None:
            query = query.in_("key", account_keys)
        rows = query.execute().data or []
        records = [_to_record(row) for row in rows if row.get("key")]
        return sorted((r for r in records if not r.internal), key=lambda r: r.key)
