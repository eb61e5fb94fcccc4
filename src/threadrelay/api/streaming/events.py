"""
Outbound stream events.

Every stream opens with ``start`` and the ``json`` meta event, carries one
unnamed ``data`` event per text delta, and closes with exactly one of
``end`` or ``error``.
"""

from __future__ import annotations

import json

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from threadrelay.core.constants import (
    SSE_END_PAYLOAD,
    SSE_EVENT_END,
    SSE_EVENT_ERROR,
    SSE_EVENT_META,
    SSE_EVENT_START,
    SSE_TIMEZONE_TYPE,
)
from threadrelay.models.error_models import StreamErrorPayload
from threadrelay.utils.date_utils import server_time


@dataclass(frozen=True)
class SseEvent:
    """One server-sent event. ``name`` None means an unnamed ``data`` event."""

    data: Any
    name: str | None = None

    def encode(self) -> str:
        payload = self.data if isinstance(self.data, str) else json.dumps(self.data, ensure_ascii=False)
        lines = []
        if self.name:
            lines.append(f"event: {self.name}")
        lines.extend(f"data: {line}" for line in payload.split("\n"))
        return "\n".join(lines) + "\n\n"


def start_event(conversation_id: str, request_id: str | None) -> SseEvent:
    return SseEvent({"conversationId": conversation_id, "requestId": request_id}, SSE_EVENT_START)


def meta_event(
    conversation_id: str,
    user_id: str,
    timezone: str,
    is_guest: bool | None = None,
    at: datetime | None = None,
) -> SseEvent:
    """The ``json`` event: server time plus the conversation the stream belongs to."""
    now, precise = server_time(timezone, at)
    entry: dict[str, Any] = {"conversationId": conversation_id, "userId": user_id}
    if is_guest is not None:
        entry["isGuest"] = is_guest
    return SseEvent(
        {
            "response": {
                "status": 200,
                "serverTime": now,
                "serverTimeZone": {"date": precise, "timezone_type": SSE_TIMEZONE_TYPE, "timezone": timezone},
            },
            "data": {"all": [entry]},
        },
        SSE_EVENT_META,
    )


def token_event(text: str) -> SseEvent:
    return SseEvent({"token": text})


def end_event() -> SseEvent:
    return SseEvent(SSE_END_PAYLOAD, SSE_EVENT_END)


def error_event(payload: StreamErrorPayload) -> SseEvent:
    return SseEvent(payload.to_dict(), SSE_EVENT_ERROR)
