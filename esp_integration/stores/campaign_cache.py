from __future__ import annotations

import time
from collections.abc import Callable
from threading import Lock

from esp_integration.models.campaigns import EspCampaign


class CampaignListCache:
    """Process-local TTL cache of provider campaign lists.

    Keyed by (provider, provider-scoped account id), the same key the webhook
    pipeline invalidates after applying stats.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[tuple[str, str], tuple[float, list[EspCampaign]]] = {}

    def get(self, provider: str, account_id: str) -> list[EspCampaign] | None:
        key = (provider, account_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, campaigns = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return list(campaigns)

    def put(self, provider: str, account_id: str, campaigns: list[EspCampaign]) -> None:
        if self._ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[(provider, account_id)] = (self._clock() + self._ttl_seconds, list(campaigns))

    def invalidate(self, provider: str, account_id: str) -> bool:
        with self._lock:
            return self._entries.pop((provider, account_id), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
