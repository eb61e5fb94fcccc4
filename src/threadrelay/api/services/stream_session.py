"""
Relays one assistant reply from the thread provider to one client.

A session forwards every text delta to the client as it arrives and hands
a copy to the batcher for durable storage. Whatever ends the session
(provider end, provider failure or client disconnect) the session makes
exactly one terminal transition and tries to drain the conversation's
buffer before it finishes.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from threadrelay.api.middleware.exception_handlers import to_stream_error
from threadrelay.api.services.batcher import ResilientBatcher
from threadrelay.api.streaming.channel import SseChannel
from threadrelay.api.streaming.events import SseEvent, end_event, error_event, start_event, token_event
from threadrelay.core.constants import AUTHOR_ASSISTANT
from threadrelay.integrations.thread_provider import (
    ReplySubscription,
    StreamEnd,
    StreamError,
    TextDelta,
    ThreadProvider,
)
from threadrelay.models.api_models import BufferedItem
from threadrelay.utils.logger import logger
from threadrelay.utils.metrics import stream_sessions_active, stream_sessions_total, stream_tokens_total


class SessionState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    ENDED = "ended"
    ERRORED = "errored"
    DISCONNECTED = "disconnected"


TERMINAL_STATES = frozenset({SessionState.ENDED, SessionState.ERRORED, SessionState.DISCONNECTED})


class StreamSession:
    """State machine for one streamed reply.

    Args:
        conversation_id: Conversation (provider thread) being answered
        provider: Source of the reply stream
        batcher: Receives every assistant delta for storage
        channel: Client event channel
        request_id: Echoed in the start and error events
        meta: The ``json`` meta event sent right after ``start``
        prelude: Awaited after the stream opens and before the reply is
            requested; failures are reported in-band
        on_error: Called with the conversation id when the session errors
        drain_timeout: Upper bound on the final buffer drain
    """

    def __init__(
        self,
        conversation_id: str,
        provider: ThreadProvider,
        batcher: ResilientBatcher,
        channel: SseChannel,
        *,
        request_id: str | None = None,
        meta: SseEvent | None = None,
        prelude: Callable[[], Awaitable[Any]] | None = None,
        on_error: Callable[[str], Any] | None = None,
        drain_timeout: float | None = None,
    ):
        self.session_id = uuid.uuid4().hex
        self.conversation_id = conversation_id
        self.request_id = request_id
        self.state = SessionState.STARTING
        self.tokens = 0
        self.error: BaseException | None = None

        self._provider = provider
        self._batcher = batcher
        self._channel = channel
        self._meta = meta
        self._prelude = prelude
        self._on_error = on_error
        self._drain_timeout = drain_timeout

        self._subscription: ReplySubscription | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._disconnect_requested = False

    @property
    def channel(self) -> SseChannel:
        return self._channel

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def start(self) -> asyncio.Task[None]:
        """Run the session in its own task and return it."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"stream-{self.conversation_id}")
        return self._task

    async def run(self) -> None:
        self._running = True
        if self._task is None:
            self._task = asyncio.current_task()
        stream_sessions_active.inc()
        logger.info(f"Stream session started for {self.conversation_id}", conversation_id=self.conversation_id)
        try:
            await self._relay()
        except asyncio.CancelledError:
            await self._handle_disconnect()
            if not self._disconnect_requested:
                raise
        except Exception as e:
            await self._fail(e)
        finally:
            stream_sessions_active.dec()

    def notify_disconnect(self) -> None:
        """The client went away: stop sending and stop relaying."""
        if self.finished or self._disconnect_requested:
            return
        self._disconnect_requested = True
        self._channel.close()
        if not self._running:
            # Never started, so there is nothing to drain or stop
            self._enter_terminal(SessionState.DISCONNECTED)
            if self._task is not None:
                self._task.cancel()
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # =========================================================================
    # Relay
    # =========================================================================

    async def _relay(self) -> None:
        self._channel.send(start_event(self.conversation_id, self.request_id))
        if self._meta is not None:
            self._channel.send(self._meta)

        if self._prelude is not None:
            await self._prelude()

        self.state = SessionState.STREAMING
        self._subscription = self._provider.stream_replies(self.conversation_id)
        events = aiter(self._subscription)
        try:
            async for event in events:
                if isinstance(event, TextDelta):
                    self._on_delta(event.text)
                elif isinstance(event, StreamEnd):
                    break
                elif isinstance(event, StreamError):
                    await self._fail(event.error)
                    return
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        # Exhausting the stream without an explicit end counts as an end
        await self._finish()

    def _on_delta(self, text: str) -> None:
        self.tokens += 1
        stream_tokens_total.inc()
        self._channel.send(token_event(text))
        try:
            self._batcher.add(self.conversation_id, BufferedItem(author=AUTHOR_ASSISTANT, content=text))
        except Exception as e:
            # The client already has the delta; storage loss is tracked by the batcher
            logger.error(
                f"Failed to buffer delta for {self.conversation_id}: {e}",
                exc_info=True,
                conversation_id=self.conversation_id,
            )

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def _enter_terminal(self, state: SessionState) -> bool:
        if self.finished:
            return False
        self.state = state
        stream_sessions_total.labels(state=state.value).inc()
        return True

    async def _drain(self) -> None:
        try:
            drained = await self._batcher.flush_all(self.conversation_id, timeout=self._drain_timeout)
        except Exception as e:
            logger.error(f"Drain failed for {self.conversation_id}: {e}", exc_info=True)
            return
        if not drained:
            logger.warning(
                f"Buffer for {self.conversation_id} not fully drained at session end",
                conversation_id=self.conversation_id,
            )

    async def _finish(self) -> None:
        if not self._enter_terminal(SessionState.ENDED):
            return
        await self._drain()
        self._channel.send(end_event())
        self._channel.close()
        logger.info(
            f"Stream session ended for {self.conversation_id} ({self.tokens} deltas)",
            conversation_id=self.conversation_id,
        )

    async def _fail(self, error: Exception) -> None:
        if not self._enter_terminal(SessionState.ERRORED):
            return
        self.error = error
        logger.error(
            f"Stream session failed for {self.conversation_id}: {error}",
            exc_info=error,
            conversation_id=self.conversation_id,
        )
        await self._drain()
        self._channel.send(error_event(to_stream_error(error, self.request_id)))
        if self._on_error is not None:
            try:
                result = self._on_error(self.conversation_id)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"on_error callback failed for {self.conversation_id}: {e}")
        self._channel.close()

    async def _handle_disconnect(self) -> None:
        if not self._enter_terminal(SessionState.DISCONNECTED):
            return
        self._channel.close()
        logger.info(
            f"Client disconnected from {self.conversation_id} after {self.tokens} deltas",
            conversation_id=self.conversation_id,
        )
        if self._subscription is not None and self._subscription.supports_cancel:
            try:
                await self._subscription.stop()
            except Exception as e:
                logger.warning(f"Failed to stop reply stream for {self.conversation_id}: {e}")
        await self._drain()
