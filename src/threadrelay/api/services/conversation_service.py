"""
Conversation lifecycle: identity, creation, ownership checks and message submission.

A conversation's id is the provider thread id, so the durable log and the
provider thread always share one key.
"""

from __future__ import annotations

import asyncio
import uuid

from typing import Any

from threadrelay.api.middleware.exception_handlers import (
    ConversationNotFoundError,
    ForbiddenError,
    MessageLimitError,
    ProviderError,
    ValidationException,
)
from threadrelay.api.services.message_store import MessageStore
from threadrelay.core.constants import AUTHOR_USER, USER_ID_PATTERN, Settings
from threadrelay.integrations.thread_provider import ThreadProvider, build_segments
from threadrelay.models.api_models import BufferedItem, ConversationHandle, MessageRecord
from threadrelay.models.error_models import ErrorCode
from threadrelay.utils.logger import logger
from threadrelay.utils.metrics import provider_errors_total


class ConversationService:
    def __init__(self, provider: ThreadProvider, store: MessageStore, settings: Settings):
        self.provider = provider
        self.store = store
        self.provider_timeout = settings.provider_timeout
        self.max_user_messages = settings.max_user_messages

    def resolve_identity(self, raw_user_id: str | None) -> tuple[str, bool]:
        """Return ``(user_id, is_guest)``. Callers without an id become guests.

        Raises:
            ValidationException: If the supplied id is malformed
        """
        if raw_user_id is None or not raw_user_id.strip():
            guest_id = str(uuid.uuid4())
            logger.debug(f"Generated guest user id {guest_id}")
            return guest_id, True

        user_id = raw_user_id.strip()
        if not USER_ID_PATTERN.fullmatch(user_id):
            raise ValidationException(ErrorCode.INVALID_ID_FORMAT, params={"field": "user_Id"})
        return user_id, False

    async def create_conversation(self, raw_user_id: str | None, request_id: str | None = None) -> ConversationHandle:
        """Create the provider thread and its durable record.

        Runs before any stream is opened, so every failure here becomes an
        ordinary HTTP error response.
        """
        user_id, is_guest = self.resolve_identity(raw_user_id)
        logger.info(f"Creating conversation for user {user_id} (guest={is_guest})", user_id=user_id)

        try:
            conversation_id = await asyncio.wait_for(self.provider.create_thread(), self.provider_timeout)
        except TimeoutError as e:
            provider_errors_total.labels(operation="create_thread", kind="timeout").inc()
            raise ProviderError(ErrorCode.OPENAI_TIMEOUT, cause=e) from e

        try:
            return await self.store.create_conversation(conversation_id, user_id, is_guest)
        except Exception:
            logger.warning(
                f"Provider thread {conversation_id} has no durable record",
                conversation_id=conversation_id,
                request_id=request_id,
            )
            raise

    async def load_for_user(self, user_id: str, conversation_id: str, check_limit: bool = True) -> ConversationHandle:
        """Fetch a conversation the user owns.

        Raises:
            ConversationNotFoundError: Unknown conversation (404)
            ForbiddenError: Owned by another user (403)
            MessageLimitError: ``check_limit`` and no user messages left (429)
        """
        handle = await self.store.get_conversation(conversation_id)
        if handle is None:
            raise ConversationNotFoundError(conversation_id)
        if handle.user_id != user_id:
            raise ForbiddenError(conversation_id)

        if check_limit and self.max_user_messages:
            counter = await self.store.get_counter(conversation_id)
            if counter is not None and counter[1] >= self.max_user_messages:
                raise MessageLimitError(self.max_user_messages)
        return handle

    async def submit_message(
        self,
        conversation_id: str,
        text: str,
        image_url: str | None = None,
        request_id: str | None = None,
    ) -> MessageRecord:
        """Store the user's message, then append it to the provider thread.

        The durable write commits first, so a rejected write (limit reached,
        storage failure) never reaches the provider. The write runs in its own
        task: cancelling the caller, e.g. on client disconnect, waits for the
        transaction to finish instead of rolling it back. The durable write
        stands even when the provider append fails or times out; the provider
        message carries the request id so a late success can be reconciled.

        Raises:
            MessageLimitError, StorageError: The durable write failed
            ProviderError: Append failed or exceeded ``provider_timeout``
        """
        write = asyncio.ensure_future(
            self.store.write_immediate(conversation_id, AUTHOR_USER, text, image_url=image_url)
        )
        try:
            record = await asyncio.shield(write)
        except asyncio.CancelledError:
            await asyncio.wait([write])
            if not write.cancelled() and write.exception() is not None:
                logger.error(
                    f"User message write for {conversation_id} failed after cancellation: {write.exception()}",
                    conversation_id=conversation_id,
                )
            raise

        logger.info(
            f"User message {record.seq_id} stored for {conversation_id} ({len(text)} chars): {logger.preview(text)}",
            conversation_id=conversation_id,
        )
        await self._append_to_provider(conversation_id, text, image_url, request_id)
        return record

    async def _append_to_provider(
        self,
        conversation_id: str,
        text: str,
        image_url: str | None,
        request_id: str | None,
    ) -> None:
        metadata = {"request_id": request_id} if request_id else None
        try:
            await asyncio.wait_for(
                self.provider.append_message(conversation_id, "user", build_segments(text, image_url), metadata),
                self.provider_timeout,
            )
        except TimeoutError as e:
            provider_errors_total.labels(operation="append_message", kind="timeout").inc()
            raise ProviderError(ErrorCode.OPENAI_TIMEOUT, cause=e) from e

    async def fetch_messages(self, user_id: str, conversation_id: str) -> tuple[list[MessageRecord], bool]:
        """The full ordered log of a conversation the user owns, plus its degraded flag."""
        handle = await self.load_for_user(user_id, conversation_id, check_limit=False)
        messages = await self.store.list_messages(conversation_id)
        return messages, handle.degraded

    async def mark_degraded(
        self,
        conversation_id: str,
        items: list[BufferedItem] | None = None,
        error: Any = None,
    ) -> None:
        """Record permanent loss of buffered messages. Matches the batcher's ``on_drop``."""
        await self.store.mark_degraded(conversation_id)
