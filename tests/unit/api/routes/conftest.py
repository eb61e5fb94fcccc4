"""App fixtures for route tests.

Routes run against the real middleware, exception handlers, services and
batcher; only the database pool, message store, thread provider and S3
client are doubles.
"""

from __future__ import annotations

import json

from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from threadrelay.api.middleware.exception_handlers import register_exception_handlers
from threadrelay.api.middleware.request_context import RequestContextMiddleware
from threadrelay.api.routes import router
from threadrelay.api.services.batcher import ResilientBatcher
from threadrelay.api.services.conversation_service import ConversationService
from threadrelay.api.services.object_store import ObjectStore
from threadrelay.api.streaming.registry import StreamSessionRegistry
from threadrelay.integrations.thread_provider import StreamEnd, TextDelta
from threadrelay.models.api_models import ConversationHandle, MessageRecord

OWNER = "user_12345"
THREAD = "thread_abc123"


def _parse_stream(body: str) -> list[tuple[str | None, Any]]:
    """Split an event-stream body into (event name, decoded data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        name = None
        data_lines = []
        for line in block.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: ") :]
            elif line.startswith("data: "):
                data_lines.append(line[len("data: ") :])
        data = "\n".join(data_lines)
        try:
            events.append((name, json.loads(data)))
        except ValueError:
            events.append((name, data))
    return events


@pytest.fixture
def store() -> MagicMock:
    conversations: dict[str, ConversationHandle] = {
        THREAD: ConversationHandle(conversation_id=THREAD, user_id=OWNER),
    }

    async def create_conversation(cid: str, uid: str, guest: bool) -> ConversationHandle:
        conversations[cid] = ConversationHandle(conversation_id=cid, user_id=uid, is_guest=guest)
        return conversations[cid]

    async def get_conversation(cid: str) -> ConversationHandle | None:
        return conversations.get(cid)

    store = MagicMock()
    store.create_conversation = AsyncMock(side_effect=create_conversation)
    store.get_conversation = AsyncMock(side_effect=get_conversation)
    store.get_counter = AsyncMock(return_value=(0, 0))
    store.write_immediate = AsyncMock(
        return_value=MessageRecord(
            conversation_id=THREAD,
            seq_id=1,
            author="user",
            content="Hello!",
            image_url=None,
            created_at="15/01/2025 01:30 PM",
            received_at=1_736_937_000_000,
        )
    )
    store.list_messages = AsyncMock(return_value=[])
    store.mark_degraded = AsyncMock()
    return store


@pytest.fixture
def s3_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def app(
    fake_provider: Any,
    store: MagicMock,
    writer: Any,
    settings: Any,
    mock_db_pool: MagicMock,
    s3_client: MagicMock,
) -> FastAPI:
    fake_provider.next_events = [TextDelta("Hi"), TextDelta(" there"), StreamEnd()]

    app = FastAPI()
    register_exception_handlers(app)
    app.add_middleware(RequestContextMiddleware)
    app.include_router(router, prefix="/api")

    object_store = ObjectStore(settings)
    object_store._client = s3_client

    app.state.db_pool = mock_db_pool
    app.state.provider = fake_provider
    app.state.message_store = store
    app.state.conversations = ConversationService(fake_provider, store, settings)
    app.state.batcher = ResilientBatcher(writer, batch_size=10, max_delay_ms=50, poll_interval_ms=5)
    app.state.stream_registry = StreamSessionRegistry()
    app.state.object_store = object_store
    return app


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    # One portal for every request so background tasks share an event loop
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


@pytest.fixture
def parse_stream() -> Any:
    return _parse_stream
