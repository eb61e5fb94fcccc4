"""Wires a reply stream session to an HTTP streaming response."""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import HTTPException
from fastapi.responses import StreamingResponse

from threadrelay.api.services.batcher import ResilientBatcher
from threadrelay.api.services.conversation_service import ConversationService
from threadrelay.api.services.stream_session import StreamSession
from threadrelay.api.streaming.channel import SseChannel
from threadrelay.api.streaming.events import meta_event
from threadrelay.api.streaming.registry import StreamSessionRegistry
from threadrelay.core.constants import SSE_HEADERS, Settings
from threadrelay.integrations.thread_provider import ThreadProvider
from threadrelay.models.api_models import ConversationHandle


def open_reply_stream(
    handle: ConversationHandle,
    message: str,
    image_url: str | None,
    *,
    request_id: str | None,
    conversations: ConversationService,
    provider: ThreadProvider,
    batcher: ResilientBatcher,
    registry: StreamSessionRegistry,
    settings: Settings,
    status_code: int = 200,
    include_guest_flag: bool = False,
) -> StreamingResponse:
    """Submit ``message`` and stream the assistant's reply to the caller.

    The user message is submitted inside the session, after the stream has
    opened, so submission failures arrive as an in-band ``error`` event.
    """
    if not registry.accepting():
        raise HTTPException(status_code=503, detail="Server is not accepting new streams")

    conversation_id = handle.conversation_id

    async def submit() -> None:
        await conversations.submit_message(conversation_id, message, image_url, request_id=request_id)

    def forget_conversation(failed_id: str) -> None:
        registry.dissociate(handle.user_id, failed_id)

    session = StreamSession(
        conversation_id,
        provider,
        batcher,
        SseChannel(),
        request_id=request_id,
        meta=meta_event(
            conversation_id,
            handle.user_id,
            settings.display_timezone,
            is_guest=handle.is_guest if include_guest_flag else None,
        ),
        prelude=submit,
        on_error=forget_conversation,
        drain_timeout=settings.drain_timeout,
    )
    registry.associate(handle.user_id, conversation_id)
    registry.launch(session)

    async def body() -> AsyncIterator[str]:
        try:
            async for frame in session.channel.frames():
                yield frame
        finally:
            # Reached early only when the client stopped reading
            if not session.finished:
                session.notify_disconnect()

    return StreamingResponse(
        body(),
        status_code=status_code,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
