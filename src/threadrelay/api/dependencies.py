from __future__ import annotations

from typing import Annotated

import asyncpg

from fastapi import Depends, Request

from threadrelay.api.services.batcher import ResilientBatcher
from threadrelay.api.services.conversation_service import ConversationService
from threadrelay.api.services.object_store import ObjectStore
from threadrelay.api.streaming.registry import StreamSessionRegistry
from threadrelay.core.constants import Settings, get_settings
from threadrelay.integrations.thread_provider import ThreadProvider


def get_app_settings() -> Settings:
    """Provide application settings via dependency injection.

    Settings are validated at startup and cached; with CONFIG_HOT_RELOAD=true
    they are reloaded on each request.
    """
    return get_settings()


async def get_db(request: Request) -> asyncpg.Pool:
    """Get database connection pool from application state."""
    return request.app.state.db_pool


def get_conversations(request: Request) -> ConversationService:
    return request.app.state.conversations


def get_provider(request: Request) -> ThreadProvider:
    return request.app.state.provider


def get_batcher(request: Request) -> ResilientBatcher:
    return request.app.state.batcher


def get_registry(request: Request) -> StreamSessionRegistry:
    return request.app.state.stream_registry


def get_object_store(request: Request) -> ObjectStore:
    return request.app.state.object_store


# Type aliases for cleaner route signatures
DB = Annotated[asyncpg.Pool, Depends(get_db)]
Conversations = Annotated[ConversationService, Depends(get_conversations)]
Provider = Annotated[ThreadProvider, Depends(get_provider)]
Batcher = Annotated[ResilientBatcher, Depends(get_batcher)]
Registry = Annotated[StreamSessionRegistry, Depends(get_registry)]
Objects = Annotated[ObjectStore, Depends(get_object_store)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
