"""
Conversation creation endpoint.

Creates the provider thread and the durable conversation, then streams the
assistant's reply to the initial message.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from threadrelay.api.dependencies import AppSettings, Batcher, Conversations, Provider, Registry
from threadrelay.api.middleware.request_context import get_request_id, resolve_locale, update_request_context
from threadrelay.api.streaming.response import open_reply_stream
from threadrelay.models.api_models import CreateThreadRequest
from threadrelay.utils.logger import logger

router = APIRouter()


@router.post(
    "/create-threads",
    status_code=201,
    response_class=StreamingResponse,
    summary="Create a conversation",
    description=(
        "Create a conversation (a guest one when no user id is given), submit the "
        "initial message and stream the reply as server-sent events."
    ),
    responses={
        201: {"description": "Event stream: start, json, data..., end | error", "content": {"text/event-stream": {}}},
        400: {"description": "Invalid user id or message"},
        502: {"description": "Thread provider unavailable"},
        504: {"description": "Thread provider timed out"},
    },
)
async def create_thread(
    body: CreateThreadRequest,
    conversations: Conversations,
    provider: Provider,
    batcher: Batcher,
    registry: Registry,
    settings: AppSettings,
) -> StreamingResponse:
    if body.language:
        update_request_context(locale=resolve_locale(body.language))
    request_id = get_request_id()

    handle = await conversations.create_conversation(body.user_id, request_id)
    update_request_context(user_id=handle.user_id, conversation_id=handle.conversation_id)
    logger.info(f"Conversation {handle.conversation_id} ready, opening stream")

    return open_reply_stream(
        handle,
        body.message,
        body.image_url,
        request_id=request_id,
        conversations=conversations,
        provider=provider,
        batcher=batcher,
        registry=registry,
        settings=settings,
        status_code=201,
        include_guest_flag=True,
    )
