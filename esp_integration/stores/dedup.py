from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any


WEBHOOK_LEDGER_TABLE = "esp_webhook_event_ledger"


def _is_unique_violation(exc: Exception) -> bool:
    message = str(exc).lower()
    return "duplicate" in message or "unique" in message or "23505" in message


class WebhookEventLedger:
    """Remembers delivered webhook event keys for a bounded time."""

    def __init__(self, client: Any, ttl_seconds: int = 86400):
        self._client = client
        self._ttl_seconds = ttl_seconds

    def record(self, provider: str, event_key: str, *, now: datetime | None = None) -> bool:
        """Claim an event key. False when it was already claimed and not expired."""
        current = now or datetime.now(timezone.utc)
        expires_at = (current + timedelta(seconds=self._ttl_seconds)).isoformat()
        try:
            self._client.table(WEBHOOK_LEDGER_TABLE).insert(
                {
                    "provider": provider,
                    "event_key": event_key,
                    "expires_at": expires_at,
                    "created_at": current.isoformat(),
                }
            ).execute()
            return True
        except Exception as exc:
            if not _is_unique_violation(exc):
                raise

        # Conditional on expiry; no matched row means a live claim exists.
        reclaimed = (
            self._client.table(WEBHOOK_LEDGER_TABLE)
            .update({"expires_at": expires_at, "created_at": current.isoformat()})
            .eq("provider", provider)
            .eq("event_key", event_key)
            .lt("expires_at", current.isoformat())
            .execute()
        )
        return bool(reclaimed.data)

    def release(self, provider: str, event_key: str) -> None:
        (
            self._client.table(WEBHOOK_LEDGER_TABLE)
            .delete()
            .eq("provider", provider)
            .eq("event_key", event_key)
            .execute()
        )

    def purge_expired(self, *, now: datetime | None = None) -> int:
        current = now or datetime.now(timezone.utc)
        result = (
            self._client.table(WEBHOOK_LEDGER_TABLE)
            .delete()
            .lt("expires_at", current.isoformat())
            .execute()
        )
        return len(result.data or [])
