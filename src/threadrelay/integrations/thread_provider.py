"""
AI thread provider adapter.

The relay only needs three things from the provider: create a thread,
append a message to it, and stream the assistant's reply. Replies arrive
as tagged events so the stream session can dispatch on type instead of
registering callbacks.
"""

from __future__ import annotations

import time

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from openai import APIError, APITimeoutError, AsyncOpenAI

from threadrelay.api.middleware.exception_handlers import ProviderError
from threadrelay.models.error_models import ErrorCode
from threadrelay.utils.logger import logger
from threadrelay.utils.metrics import provider_call_duration_seconds, provider_errors_total

# Run events that end a run without a reply
_RUN_FAILURE_EVENTS = frozenset({"thread.run.failed", "thread.run.expired", "thread.run.cancelled"})


# =============================================================================
# Reply events
# =============================================================================


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class StreamEnd:
    pass


@dataclass(frozen=True)
class StreamError:
    error: Exception


ReplyEvent = TextDelta | StreamEnd | StreamError


@runtime_checkable
class ReplySubscription(Protocol):
    """Async iterator of reply events for one assistant run."""

    supports_cancel: bool

    def __aiter__(self) -> AsyncIterator[ReplyEvent]: ...

    async def stop(self) -> None: ...


class ThreadProvider(Protocol):
    async def create_thread(self) -> str: ...

    async def append_message(
        self,
        thread_id: str,
        role: str,
        segments: list[dict[str, Any]],
        metadata: dict[str, str] | None = None,
    ) -> None: ...

    def stream_replies(self, thread_id: str) -> ReplySubscription: ...


def build_segments(text: str, image_url: str | None = None) -> list[dict[str, Any]]:
    """Content parts for a user message: the text, then the image if any."""
    segments: list[dict[str, Any]] = [{"type": "text", "text": text}]
    if image_url:
        segments.append({"type": "image_url", "image_url": {"url": image_url}})
    return segments


def _provider_error(operation: str, exc: APIError) -> ProviderError:
    if isinstance(exc, APITimeoutError):
        provider_errors_total.labels(operation=operation, kind="timeout").inc()
        return ProviderError(ErrorCode.OPENAI_TIMEOUT, cause=exc)
    provider_errors_total.labels(operation=operation, kind="api_error").inc()
    return ProviderError(ErrorCode.OPENAI_API_ERROR, cause=exc)


# =============================================================================
# OpenAI Assistants
# =============================================================================


class OpenAIReplySubscription:
    """Streams one assistant run and translates SDK events into reply events."""

    supports_cancel = True

    def __init__(self, client: AsyncOpenAI, thread_id: str, assistant_id: str):
        self._client = client
        self._thread_id = thread_id
        self._assistant_id = assistant_id
        self._stream: Any = None
        self._run_id: str | None = None
        self._run_finished = False
        self._stopped = False

    def __aiter__(self) -> AsyncIterator[ReplyEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[ReplyEvent]:
        try:
            async with self._client.beta.threads.runs.stream(
                thread_id=self._thread_id,
                assistant_id=self._assistant_id,
            ) as stream:
                self._stream = stream
                async for event in stream:
                    if self._stopped:
                        return
                    translated = self._translate(event)
                    if isinstance(translated, StreamError):
                        yield translated
                        return
                    for text in translated:
                        yield TextDelta(text)
        except APIError as e:
            logger.warning(f"Run stream failed for thread {self._thread_id}: {e}")
            yield StreamError(_provider_error("stream", e))
            return
        finally:
            self._stream = None

        if not self._stopped:
            yield StreamEnd()

    def _translate(self, event: Any) -> list[str] | StreamError:
        """Text parts carried by an SDK event, or the failure it reports."""
        name = getattr(event, "event", "")
        if name == "thread.run.created":
            self._run_id = event.data.id
        elif name == "thread.message.delta":
            return [
                part.text.value
                for part in event.data.delta.content or []
                if part.type == "text" and part.text is not None and part.text.value
            ]
        elif name == "thread.run.completed":
            self._run_finished = True
        elif name in _RUN_FAILURE_EVENTS:
            self._run_finished = True
            last_error = getattr(event.data, "last_error", None)
            detail = getattr(last_error, "message", None) or name
            return StreamError(ProviderError(ErrorCode.OPENAI_API_ERROR, cause=RuntimeError(detail)))
        elif name == "error":
            return StreamError(ProviderError(ErrorCode.OPENAI_API_ERROR, cause=RuntimeError(str(event.data))))
        return []

    async def stop(self) -> None:
        """Stop consuming and cancel the run so the provider stops generating."""
        self._stopped = True
        if self._stream is not None:
            await self._stream.close()
        if self._run_id and not self._run_finished:
            try:
                await self._client.beta.threads.runs.cancel(run_id=self._run_id, thread_id=self._thread_id)
            except APIError as e:
                # The run may already be terminal on the provider side
                logger.warning(f"Could not cancel run {self._run_id}: {e}")


class OpenAIThreadProvider:
    """ThreadProvider backed by the OpenAI Assistants threads API."""

    def __init__(self, client: AsyncOpenAI, assistant_id: str):
        self.client = client
        self.assistant_id = assistant_id

    async def create_thread(self) -> str:
        start = time.perf_counter()
        try:
            thread = await self.client.beta.threads.create()
        except APIError as e:
            raise _provider_error("create_thread", e) from e
        finally:
            provider_call_duration_seconds.labels(operation="create_thread").observe(time.perf_counter() - start)
        logger.debug(f"Thread created: {thread.id}")
        return str(thread.id)

    async def append_message(
        self,
        thread_id: str,
        role: str,
        segments: list[dict[str, Any]],
        metadata: dict[str, str] | None = None,
    ) -> None:
        start = time.perf_counter()
        try:
            await self.client.beta.threads.messages.create(
                thread_id=thread_id,
                role=role,  # type: ignore[arg-type]
                content=segments,  # type: ignore[arg-type]
                metadata=metadata,
            )
        except APIError as e:
            raise _provider_error("append_message", e) from e
        finally:
            provider_call_duration_seconds.labels(operation="append_message").observe(time.perf_counter() - start)

    def stream_replies(self, thread_id: str) -> OpenAIReplySubscription:
        return OpenAIReplySubscription(self.client, thread_id, self.assistant_id)
