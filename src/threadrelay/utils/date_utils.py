"""Timestamp helpers shared by persistence and the outbound event stream."""

from __future__ import annotations

import time

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

#: Human-readable message timestamp, e.g. "07/03/2025 02:15 PM".
DISPLAY_FORMAT = "%d/%m/%Y %I:%M %p"

#: Server time reported in the meta event.
SERVER_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_ms() -> int:
    """Current epoch time in milliseconds."""
    return time.time_ns() // 1_000_000


def format_timestamp(epoch_ms: int, tz_name: str) -> str:
    """Render an epoch-millisecond timestamp in the display time zone."""
    moment = datetime.fromtimestamp(epoch_ms / 1000, tz=UTC).astimezone(ZoneInfo(tz_name))
    return moment.strftime(DISPLAY_FORMAT)


def server_time(tz_name: str, at: datetime | None = None) -> tuple[str, str]:
    """Return (server time, microsecond-precision date) in the given zone."""
    moment = (at or datetime.now(UTC)).astimezone(ZoneInfo(tz_name))
    return moment.strftime(SERVER_TIME_FORMAT), moment.strftime("%Y-%m-%d %H:%M:%S.%f")
