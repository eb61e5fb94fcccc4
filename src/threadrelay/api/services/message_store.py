"""PostgreSQL message store.

Owns the durable conversation log: conversation records, the per-conversation
sequence counter and the messages themselves. Every write locks the counter
row, assigns consecutive sequence numbers in input order and commits the
messages together with the advanced counter, so ``seq_id`` values are
gap-free and never reused.
"""

from __future__ import annotations

import time

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import asyncpg

from threadrelay.api.middleware.exception_handlers import (
    ConversationNotFoundError,
    MessageLimitError,
    StorageError,
)
from threadrelay.core.constants import AUTHOR_USER
from threadrelay.models.api_models import BufferedItem, ConversationHandle, MessageRecord
from threadrelay.utils.date_utils import format_timestamp, now_ms
from threadrelay.utils.db_utils import TRANSIENT_DB_ERRORS, transaction, with_retry
from threadrelay.utils.logger import logger
from threadrelay.utils.metrics import db_query_duration_seconds


@contextmanager
def _storage_errors() -> Iterator[None]:
    """Surface driver and pool failures as StorageError."""
    try:
        yield
    except (*TRANSIENT_DB_ERRORS, asyncpg.PostgresError) as e:
        raise StorageError(cause=e) from e


@contextmanager
def _timed(query_type: str) -> Iterator[None]:
    start_time = time.perf_counter()
    try:
        yield
    finally:
        db_query_duration_seconds.labels(query_type=query_type).observe(time.perf_counter() - start_time)


class MessageStore:
    """Durable writer and sequence counter over an asyncpg pool."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        max_user_messages: int = 0,
        display_timezone: str = "Asia/Riyadh",
        acquire_timeout: float | None = None,
    ):
        self.pool = pool
        self.max_user_messages = max_user_messages
        self.display_timezone = display_timezone
        self.acquire_timeout = acquire_timeout

    # =========================================================================
    # Conversations
    # =========================================================================

    async def create_conversation(self, conversation_id: str, user_id: str, is_guest: bool) -> ConversationHandle:
        """Insert the conversation record and its zeroed counter in one transaction."""
        with _storage_errors(), _timed("create_conversation"):
            async with transaction(self.pool, timeout=self.acquire_timeout) as conn:
                await conn.execute(
                    """
                    INSERT INTO conversations (id, user_id, is_guest, degraded, created_at, updated_at)
                    VALUES ($1, $2, $3, FALSE, NOW(), NOW())
                    """,
                    conversation_id,
                    user_id,
                    is_guest,
                )
                await conn.execute(
                    """
                    INSERT INTO message_counters (conversation_id, last_seq_id, user_message_count)
                    VALUES ($1, 0, 0)
                    """,
                    conversation_id,
                )
        logger.info(f"Conversation {conversation_id} created", conversation_id=conversation_id)
        return ConversationHandle(conversation_id=conversation_id, user_id=user_id, is_guest=is_guest)

    async def get_conversation(self, conversation_id: str) -> ConversationHandle | None:
        with _storage_errors(), _timed("get_conversation"):
            row = await self._fetch_conversation(conversation_id)
        if row is None:
            return None
        return ConversationHandle(
            conversation_id=row["id"],
            user_id=row["user_id"],
            is_guest=row["is_guest"],
            degraded=row["degraded"],
        )

    @with_retry(max_attempts=3)
    async def _fetch_conversation(self, conversation_id: str) -> asyncpg.Record | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(
                "SELECT id, user_id, is_guest, degraded FROM conversations WHERE id = $1",
                conversation_id,
            )

    async def mark_degraded(self, conversation_id: str) -> None:
        """Flag a conversation whose log permanently lost messages."""
        with _storage_errors(), _timed("mark_degraded"):
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "UPDATE conversations SET degraded = TRUE, updated_at = NOW() WHERE id = $1",
                    conversation_id,
                )
        logger.warning(f"Conversation {conversation_id} marked degraded", conversation_id=conversation_id)

    # =========================================================================
    # Counter
    # =========================================================================

    async def get_counter(self, conversation_id: str) -> tuple[int, int] | None:
        """Return ``(last_seq_id, user_message_count)`` or None if unknown."""
        with _storage_errors(), _timed("get_counter"):
            row = await self._fetch_counter(conversation_id)
        if row is None:
            return None
        return row["last_seq_id"], row["user_message_count"]

    @with_retry(max_attempts=3)
    async def _fetch_counter(self, conversation_id: str) -> asyncpg.Record | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(
                "SELECT last_seq_id, user_message_count FROM message_counters WHERE conversation_id = $1",
                conversation_id,
            )

    # =========================================================================
    # Messages
    # =========================================================================

    async def write_immediate(
        self,
        conversation_id: str,
        author: str,
        content: str,
        image_url: str | None = None,
        received_at_ms: int | None = None,
    ) -> MessageRecord:
        """Persist a single message in its own transaction."""
        item = BufferedItem(author=author, content=content, image_url=image_url, received_at_ms=received_at_ms)
        records = await self.write_batch(conversation_id, [item])
        return records[0]

    async def write_batch(self, conversation_id: str, items: list[BufferedItem]) -> list[MessageRecord]:
        """Persist ``items`` in one transaction with consecutive sequence numbers.

        Raises:
            ConversationNotFoundError: No counter exists for the conversation
            MessageLimitError: The user-message limit would be exceeded
            StorageError: The database rejected or lost the write
        """
        if not items:
            return []

        with _storage_errors(), _timed("write_batch"):
            async with transaction(self.pool, timeout=self.acquire_timeout) as conn:
                counter = await conn.fetchrow(
                    """
                    SELECT last_seq_id, user_message_count
                    FROM message_counters
                    WHERE conversation_id = $1
                    FOR UPDATE
                    """,
                    conversation_id,
                )
                if counter is None:
                    raise ConversationNotFoundError(conversation_id)

                user_items = sum(1 for item in items if item.author == AUTHOR_USER)
                user_count = counter["user_message_count"] + user_items
                if user_items and self.max_user_messages and user_count > self.max_user_messages:
                    raise MessageLimitError(self.max_user_messages)

                records = self._assign(conversation_id, counter["last_seq_id"], items)
                await conn.executemany(
                    """
                    INSERT INTO messages
                        (conversation_id, seq_id, author, content, image_url, created_at, received_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    [
                        (r.conversation_id, r.seq_id, r.author, r.content, r.image_url, r.created_at, r.received_at)
                        for r in records
                    ],
                )
                await conn.execute(
                    """
                    UPDATE message_counters
                    SET last_seq_id = $2, user_message_count = $3
                    WHERE conversation_id = $1
                    """,
                    conversation_id,
                    records[-1].seq_id,
                    user_count,
                )
                await conn.execute("UPDATE conversations SET updated_at = NOW() WHERE id = $1", conversation_id)

        logger.debug(
            f"Stored {len(records)} messages for {conversation_id} (seq {records[0].seq_id}-{records[-1].seq_id})",
            conversation_id=conversation_id,
        )
        return records

    def _assign(self, conversation_id: str, last_seq_id: int, items: list[BufferedItem]) -> list[MessageRecord]:
        records = []
        for offset, item in enumerate(items, start=1):
            received_at = item.received_at_ms if item.received_at_ms is not None else now_ms()
            records.append(
                MessageRecord(
                    conversation_id=conversation_id,
                    seq_id=last_seq_id + offset,
                    author=item.author,
                    content=item.content,
                    image_url=item.image_url,
                    created_at=format_timestamp(received_at, self.display_timezone),
                    received_at=received_at,
                )
            )
        return records

    async def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        """All messages of a conversation in sequence order."""
        with _storage_errors(), _timed("list_messages"):
            rows = await self._fetch_messages(conversation_id)
        return [
            MessageRecord(
                conversation_id=conversation_id,
                seq_id=row["seq_id"],
                author=row["author"],
                content=row["content"],
                image_url=row["image_url"],
                created_at=row["created_at"],
                received_at=row["received_at"],
            )
            for row in rows
        ]

    @with_retry(max_attempts=3)
    async def _fetch_messages(self, conversation_id: str) -> list[Any]:
        async with self.pool.acquire() as conn:
            return list(
                await conn.fetch(
                    """
                    SELECT seq_id, author, content, image_url, created_at, received_at
                    FROM messages
                    WHERE conversation_id = $1
                    ORDER BY seq_id ASC
                    """,
                    conversation_id,
                )
            )
