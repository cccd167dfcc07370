from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal


StatsColumn = Literal[
    "delivered_count",
    "opened_count",
    "clicked_count",
    "bounced_count",
    "complained_count",
    "unsubscribed_count",
]

STATS_COLUMNS: tuple[StatsColumn, ...] = (
    "delivered_count",
    "opened_count",
    "clicked_count",
    "bounced_count",
    "complained_count",
    "unsubscribed_count",
)

# First match wins: "unsubscribed after bounce" is an unsubscribe, not a bounce.
_EVENT_COLUMN_PRIORITY: tuple[tuple[tuple[str, ...], StatsColumn], ...] = (
    (("unsubscribe",), "unsubscribed_count"),
    (("complain", "spam"), "complained_count"),
    (("bounce",), "bounced_count"),
    (("click",), "clicked_count"),
    (("open",), "opened_count"),
    (("deliver",), "delivered_count"),
)

_SENT_STATUS_MARKERS = ("complete", "deliver", "finish", "sent")


def normalize_event_column(event_name: str | None) -> StatsColumn | None:
    if not event_name:
        return None
    key = re.sub(r"[^a-z0-9]+", " ", str(event_name).lower()).strip()
    if not key:
        return None
    for needles, column in _EVENT_COLUMN_PRIORITY:
        if any(needle in key for needle in needles):
            return column
    return None


def _from_epoch(value: float) -> datetime | None:
    seconds = value if value < 1e11 else value / 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_event_time(value: Any, *, default: datetime | None = None) -> datetime:
    """Parse a provider timestamp.

    Numbers below 1e11 are epoch seconds, larger ones epoch milliseconds.
    Unparseable input falls back to `default` (or now, UTC).
    """
    if isinstance(value, bool):
        value = None
    if isinstance(value, (int, float)) and value > 0:
        parsed = _from_epoch(float(value))
        if parsed:
            return parsed
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            numeric = float(text)
        except ValueError:
            numeric = None
        if numeric is not None and numeric > 0:
            parsed = _from_epoch(numeric)
            if parsed:
                return parsed
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return default or datetime.now(timezone.utc)


def parse_optional_ts(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_sent_campaign_status(status: str | None) -> bool:
    if not status:
        return False
    key = str(status).strip().lower()
    return any(marker in key for marker in _SENT_STATUS_MARKERS)


def safe_count(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number != number or number < 0 or number == float("inf"):
        return 0
    return int(round(number))


def normalize_provider_id(value: str | None) -> str:
    return (value or "").strip().lower()
