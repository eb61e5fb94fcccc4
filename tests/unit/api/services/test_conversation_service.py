"""Tests for ConversationService identity, ownership and submission rules."""

from __future__ import annotations

import asyncio

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from threadrelay.api.middleware.exception_handlers import (
    ConversationNotFoundError,
    ForbiddenError,
    MessageLimitError,
    ProviderError,
    StorageError,
    ValidationException,
)
from threadrelay.api.services.conversation_service import ConversationService
from threadrelay.models.api_models import ConversationHandle, MessageRecord
from threadrelay.models.error_models import ErrorCode


def _record(seq_id: int = 1) -> MessageRecord:
    return MessageRecord(
        conversation_id="thread_abc123",
        seq_id=seq_id,
        author="user",
        content="hello",
        image_url=None,
        created_at="15/01/2025 01:30 PM",
        received_at=1,
    )


@pytest.fixture
def store() -> MagicMock:
    store = MagicMock()
    store.create_conversation = AsyncMock(
        side_effect=lambda cid, uid, guest: ConversationHandle(conversation_id=cid, user_id=uid, is_guest=guest)
    )
    store.get_conversation = AsyncMock(
        return_value=ConversationHandle(conversation_id="thread_abc123", user_id="user_12345")
    )
    store.get_counter = AsyncMock(return_value=(4, 1))
    store.write_immediate = AsyncMock(return_value=_record())
    store.list_messages = AsyncMock(return_value=[_record(1), _record(2)])
    store.mark_degraded = AsyncMock()
    return store


@pytest.fixture
def service(fake_provider: Any, store: MagicMock, settings: Any) -> ConversationService:
    return ConversationService(fake_provider, store, settings)


class TestIdentity:
    def test_missing_user_becomes_guest(self, service: ConversationService) -> None:
        user_id, is_guest = service.resolve_identity(None)

        assert is_guest is True
        assert len(user_id) == 36

    def test_blank_user_becomes_guest(self, service: ConversationService) -> None:
        _, is_guest = service.resolve_identity("   ")

        assert is_guest is True

    def test_valid_user(self, service: ConversationService) -> None:
        assert service.resolve_identity(" user_12345 ") == ("user_12345", False)

    @pytest.mark.parametrize("raw", ["abc", "user 12345", "x" * 31, "user@12345"])
    def test_invalid_user(self, service: ConversationService, raw: str) -> None:
        with pytest.raises(ValidationException) as exc_info:
            service.resolve_identity(raw)

        assert exc_info.value.code == ErrorCode.INVALID_ID_FORMAT


class TestCreateConversation:
    @pytest.mark.asyncio
    async def test_thread_id_becomes_conversation_id(
        self, service: ConversationService, fake_provider: Any, store: MagicMock
    ) -> None:
        handle = await service.create_conversation("user_12345", request_id="req_1")

        assert handle.conversation_id == fake_provider.thread_id
        store.create_conversation.assert_awaited_once_with(fake_provider.thread_id, "user_12345", False)

    @pytest.mark.asyncio
    async def test_provider_timeout(self, service: ConversationService, fake_provider: Any, store: MagicMock) -> None:
        async def slow() -> str:
            await asyncio.sleep(5)
            return "never"

        fake_provider.create_thread = slow

        with pytest.raises(ProviderError) as exc_info:
            await service.create_conversation(None)

        assert exc_info.value.code == ErrorCode.OPENAI_TIMEOUT
        store.create_conversation.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, service: ConversationService, store: MagicMock) -> None:
        store.create_conversation.side_effect = StorageError()

        with pytest.raises(StorageError):
            await service.create_conversation("user_12345")


class TestLoadForUser:
    @pytest.mark.asyncio
    async def test_owner_gets_handle(self, service: ConversationService) -> None:
        handle = await service.load_for_user("user_12345", "thread_abc123")

        assert handle.conversation_id == "thread_abc123"

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, service: ConversationService, store: MagicMock) -> None:
        store.get_conversation.return_value = None

        with pytest.raises(ConversationNotFoundError):
            await service.load_for_user("user_12345", "thread_missing")

    @pytest.mark.asyncio
    async def test_other_users_conversation(self, service: ConversationService) -> None:
        with pytest.raises(ForbiddenError) as exc_info:
            await service.load_for_user("user_99999", "thread_abc123")

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_limit_reached(self, service: ConversationService, store: MagicMock) -> None:
        store.get_counter.return_value = (10, 5)

        with pytest.raises(MessageLimitError):
            await service.load_for_user("user_12345", "thread_abc123")

    @pytest.mark.asyncio
    async def test_limit_skipped_for_reads(self, service: ConversationService, store: MagicMock) -> None:
        store.get_counter.return_value = (10, 5)

        messages, degraded = await service.fetch_messages("user_12345", "thread_abc123")

        assert [m.seq_id for m in messages] == [1, 2]
        assert degraded is False
        store.get_counter.assert_not_called()


class TestSubmitMessage:
    @pytest.mark.asyncio
    async def test_writes_and_appends(self, service: ConversationService, fake_provider: Any, store: MagicMock) -> None:
        record = await service.submit_message(
            "thread_abc123", "hello", image_url="https://img/x.png", request_id="req_1"
        )

        assert record.seq_id == 1
        store.write_immediate.assert_awaited_once_with(
            "thread_abc123", "user", "hello", image_url="https://img/x.png"
        )
        thread_id, role, segments, metadata = fake_provider.append_message.await_args.args
        assert (thread_id, role) == ("thread_abc123", "user")
        assert segments == [
            {"type": "text", "text": "hello"},
            {"type": "image_url", "image_url": {"url": "https://img/x.png"}},
        ]
        assert metadata == {"request_id": "req_1"}

    @pytest.mark.asyncio
    async def test_submission_log_hides_content_by_default(self, service: ConversationService) -> None:
        with patch("threadrelay.api.services.conversation_service.logger.info") as log_info:
            await service.submit_message("thread_abc123", "my secret message")

        message = log_info.call_args.args[0]
        assert "[HIDDEN]" in message
        assert "my secret message" not in message

    @pytest.mark.asyncio
    async def test_append_timeout_keeps_durable_message(
        self, service: ConversationService, fake_provider: Any, store: MagicMock
    ) -> None:
        async def slow(*args: Any) -> None:
            await asyncio.sleep(5)

        fake_provider.append_message = slow

        with pytest.raises(ProviderError) as exc_info:
            await service.submit_message("thread_abc123", "hello")

        assert exc_info.value.code == ErrorCode.OPENAI_TIMEOUT
        store.write_immediate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_limit_error_from_store(
        self, service: ConversationService, fake_provider: Any, store: MagicMock
    ) -> None:
        store.write_immediate.side_effect = MessageLimitError(5)

        with pytest.raises(MessageLimitError):
            await service.submit_message("thread_abc123", "hello")

        fake_provider.append_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_storage_error_is_not_appended(
        self, service: ConversationService, fake_provider: Any, store: MagicMock
    ) -> None:
        store.write_immediate.side_effect = StorageError()

        with pytest.raises(StorageError):
            await service.submit_message("thread_abc123", "hello")

        fake_provider.append_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_commits_before_append(
        self, service: ConversationService, fake_provider: Any, store: MagicMock
    ) -> None:
        order: list[str] = []

        async def write(*args: Any, **kwargs: Any) -> MessageRecord:
            await asyncio.sleep(0.01)
            order.append("store")
            return _record()

        async def append(*args: Any) -> None:
            order.append("provider")

        store.write_immediate = write
        fake_provider.append_message = append

        await service.submit_message("thread_abc123", "hello")

        assert order == ["store", "provider"]

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_write(self, service: ConversationService, store: MagicMock) -> None:
        committed: list[str] = []

        async def write(conversation_id: str, author: str, text: str, **kwargs: Any) -> MessageRecord:
            await asyncio.sleep(0.05)
            committed.append(text)
            return _record()

        store.write_immediate = write
        task = asyncio.create_task(service.submit_message("thread_abc123", "hello"))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert committed == ["hello"]


@pytest.mark.asyncio
async def test_mark_degraded_accepts_drop_callback_arguments(service: ConversationService, store: MagicMock) -> None:
    await service.mark_degraded("thread_abc123", [], StorageError())

    store.mark_degraded.assert_awaited_once_with("thread_abc123")
