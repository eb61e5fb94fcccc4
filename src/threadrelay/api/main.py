from __future__ import annotations

import asyncio

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from threadrelay.api.middleware.exception_handlers import (
    ConversationNotFoundError,
    MessageLimitError,
    register_exception_handlers,
)
from threadrelay.api.middleware.request_context import RequestContextMiddleware
from threadrelay.api.routes import router as api_router
from threadrelay.api.services.batcher import ResilientBatcher
from threadrelay.api.services.conversation_service import ConversationService
from threadrelay.api.services.message_store import MessageStore
from threadrelay.api.services.object_store import ObjectStore
from threadrelay.api.streaming.registry import StreamSessionRegistry
from threadrelay.core.constants import get_settings
from threadrelay.integrations.thread_provider import OpenAIThreadProvider
from threadrelay.utils.client_factory import create_http_client, create_openai_client
from threadrelay.utils.db_utils import check_pool_health, create_database_pool, graceful_pool_close
from threadrelay.utils.logger import configure_uvicorn_logging, logger

# Settings are loaded via Pydantic Settings with environment-specific file support
# (.env, .env.{APP_ENV}, .env.local)
settings = get_settings()

if settings.debug:
    from threadrelay.core.constants import _get_env_files

    logger.info(f"Env files: {[f.name for f in _get_env_files()]}")
    logger.info(
        f"Settings: app_env={settings.app_env}, "
        f"db_pool=[{settings.db_pool_min_size},{settings.db_pool_max_size}], "
        f"batch=[size={settings.batch_size}, delay={settings.batch_max_delay_ms}ms]"
    )

# Configure uvicorn logging at module level to ensure workers use it
configure_uvicorn_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown with graceful handling."""
    shutdown_event = asyncio.Event()
    app.state.shutdown_event = shutdown_event

    app.state.db_pool = await create_database_pool(
        dsn=settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout,
        connection_timeout=settings.db_connection_timeout,
        statement_cache_size=settings.db_statement_cache_size,
        max_inactive_connection_lifetime=settings.db_max_inactive_connection_lifetime,
    )

    health = await check_pool_health(app.state.db_pool)
    if not health["healthy"]:
        logger.error("Database health check failed during startup")
        raise RuntimeError("Database connection failed")
    logger.info(f"Database pool healthy: {health}")

    if not settings.openai_assistant_id:
        logger.warning("OPENAI_ASSISTANT_ID is not set; reply streams will fail")
    client = create_openai_client(
        settings.openai_api_key,
        base_url=settings.openai_base_url,
        http_client=create_http_client(read_timeout=settings.http_read_timeout),
        max_retries=settings.provider_max_retries,
    )
    app.state.openai_client = client
    app.state.provider = OpenAIThreadProvider(client, settings.openai_assistant_id or "")

    store = MessageStore(
        app.state.db_pool,
        max_user_messages=settings.max_user_messages,
        display_timezone=settings.display_timezone,
        acquire_timeout=settings.db_connection_timeout,
    )
    app.state.message_store = store
    app.state.conversations = ConversationService(app.state.provider, store, settings)

    # Limit and ownership failures will not succeed on retry
    app.state.batcher = ResilientBatcher(
        store.write_batch,
        batch_size=settings.batch_size,
        max_delay_ms=settings.batch_max_delay_ms,
        max_retries=settings.batch_max_retries,
        retry_delay_ms=settings.batch_retry_delay_ms,
        poll_interval_ms=settings.batch_poll_interval_ms,
        on_drop=app.state.conversations.mark_degraded,
        non_retryable=(MessageLimitError, ConversationNotFoundError),
    )
    app.state.batcher.start()

    app.state.object_store = ObjectStore(settings)
    app.state.stream_registry = StreamSessionRegistry()

    try:
        yield
    finally:
        logger.info("Initiating graceful shutdown sequence")
        shutdown_event.set()

        # Phase 1: Stop accepting streams and disconnect the live ones
        await app.state.stream_registry.graceful_shutdown(timeout=settings.drain_timeout)

        # Phase 2: Persist whatever the sessions left buffered
        drained = await app.state.batcher.drain_all(timeout=settings.drain_timeout)
        if not drained:
            logger.critical(
                "Batcher drain timed out, buffered messages were not persisted",
                buffered=app.state.batcher.stats()["buffered_items"],
            )
        await app.state.batcher.close()

        # Phase 3: Release the provider transport
        await client.close()

        # Phase 4: Gracefully close database pool
        await graceful_pool_close(app.state.db_pool, timeout=settings.shutdown_timeout)


app = FastAPI(
    title="Thread Relay API",
    description="""
## Thread Relay API

Relays chat conversations to an assistant thread provider and streams the
replies back as server-sent events, persisting every message in PostgreSQL.

### Features
- **Conversations**: Create guest or user-owned conversations
- **Streaming**: `start`, `json`, token and `end`/`error` events per reply
- **Durable history**: Gap-free per-conversation sequence numbers
- **Images**: Upload attachments to S3-compatible storage
""",
    version=settings.app_version,
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Health",
            "description": "Health check endpoints for monitoring and orchestration",
        },
        {
            "name": "Conversations",
            "description": "Conversation creation with streamed first reply",
        },
        {
            "name": "Messages",
            "description": "Follow-up messages and stored history",
        },
        {
            "name": "Images",
            "description": "Image attachment upload",
        },
    ],
    openapi_url="/api/openapi.json",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

register_exception_handlers(app)

# Note: Middleware is executed in reverse order of registration
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)

app.include_router(api_router, prefix="/api")


def main() -> None:
    import uvicorn

    uvicorn.run(
        "threadrelay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        reload_dirs=["src"],
        log_config=None,
    )


if __name__ == "__main__":
    main()
