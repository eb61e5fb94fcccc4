"""
Message endpoints.

``create-messages`` submits a follow-up message and streams the reply;
``fetch-messages`` returns the stored conversation log.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from threadrelay.api.dependencies import AppSettings, Batcher, Conversations, Provider, Registry
from threadrelay.api.middleware.exception_handlers import ValidationException
from threadrelay.api.middleware.request_context import get_request_id, resolve_locale, update_request_context
from threadrelay.api.streaming.response import open_reply_stream
from threadrelay.models.api_models import (
    AddMessageRequest,
    FetchMessagesRequest,
    MessageListResponse,
    MessageView,
)
from threadrelay.models.error_models import ErrorCode

router = APIRouter()


@router.post(
    "/create-messages",
    response_class=StreamingResponse,
    summary="Send a message",
    description=(
        "Submit a user message to an existing conversation and stream the reply. "
        "Without a thread id the user's current conversation is used."
    ),
    responses={
        200: {"description": "Event stream: start, json, data..., end | error", "content": {"text/event-stream": {}}},
        400: {"description": "Invalid input or no conversation to continue"},
        403: {"description": "Conversation belongs to another user"},
        404: {"description": "Conversation not found"},
        429: {"description": "Conversation message limit reached"},
    },
)
async def create_message(
    body: AddMessageRequest,
    conversations: Conversations,
    provider: Provider,
    batcher: Batcher,
    registry: Registry,
    settings: AppSettings,
) -> StreamingResponse:
    if body.language:
        update_request_context(locale=resolve_locale(body.language))

    thread_id = body.thread_id or registry.conversation_for(body.user_id)
    if thread_id is None:
        raise ValidationException(ErrorCode.FIELD_REQUIRED, params={"field": "threadId"})
    update_request_context(user_id=body.user_id, conversation_id=thread_id)

    handle = await conversations.load_for_user(body.user_id, thread_id)
    return open_reply_stream(
        handle,
        body.message,
        body.image_url,
        request_id=get_request_id(),
        conversations=conversations,
        provider=provider,
        batcher=batcher,
        registry=registry,
        settings=settings,
    )


@router.post(
    "/fetch-messages",
    response_model=MessageListResponse,
    summary="Fetch conversation messages",
    description="Return every stored message of a conversation owned by the caller, ordered by sequence.",
    responses={
        403: {"description": "Conversation belongs to another user"},
        404: {"description": "Conversation not found"},
    },
)
async def fetch_messages(body: FetchMessagesRequest, conversations: Conversations) -> MessageListResponse:
    update_request_context(user_id=body.user_id, conversation_id=body.thread_id)
    records, degraded = await conversations.fetch_messages(body.user_id, body.thread_id)
    return MessageListResponse(
        messages=[MessageView.model_validate(r.to_wire()) for r in records],
        degraded=degraded,
    )
