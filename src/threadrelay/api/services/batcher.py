"""
Per-conversation write batching with bounded staleness and retries.

Items are buffered per key and written by a single writer callable. A key
is flushed when its buffer reaches ``batch_size`` or when its deadline
(armed by the first buffered item, never extended) passes. Writes for one
key are serialized, so storage sees each key's items in arrival order.

A failed write puts the drained items back at the head of the buffer and
retries with linear backoff. After ``max_retries`` attempts the batch is
dropped, logged at CRITICAL and reported through ``on_drop``.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from threadrelay.models.api_models import BufferedItem
from threadrelay.utils.date_utils import now_ms
from threadrelay.utils.logger import logger
from threadrelay.utils.metrics import (
    batch_buffered_items,
    batch_dropped_items_total,
    batch_flush_retries_total,
    batch_flushes_total,
    batch_size_items,
)

WriteFn = Callable[[str, list[BufferedItem]], Awaitable[Any]]
DropFn = Callable[[str, list[BufferedItem], Exception], Awaitable[None] | None]


@dataclass
class _KeyState:
    """Buffer and flush bookkeeping for one key."""

    buffer: list[BufferedItem] = field(default_factory=list)
    deadline: float | None = None
    flushing: bool = False
    rerun: bool = False
    pending: set[str] = field(default_factory=set)

    @property
    def idle(self) -> bool:
        return not self.buffer and not self.pending and self.deadline is None and not self.flushing


class ResilientBatcher:
    """Buffers items per key and writes them in batches.

    Args:
        write: ``async write(key, items)``; raising means the batch was not stored
        batch_size: Buffered items that trigger an immediate flush
        max_delay_ms: Longest an item waits in the buffer before a flush
        max_retries: Write attempts per batch before it is dropped
        retry_delay_ms: Backoff step; attempt ``n`` waits ``n * retry_delay``
        poll_interval_ms: Polling interval used while waiting for a drain
        on_drop: Called with ``(key, items, error)`` when a batch is dropped
        non_retryable: Writer errors that drop the batch without retrying
    """

    def __init__(
        self,
        write: WriteFn,
        *,
        batch_size: int = 10,
        max_delay_ms: int = 1000,
        max_retries: int = 3,
        retry_delay_ms: int = 500,
        poll_interval_ms: int = 50,
        on_drop: DropFn | None = None,
        non_retryable: tuple[type[Exception], ...] = (),
    ):
        if not callable(write):
            raise TypeError("write must be callable")
        if not isinstance(batch_size, int) or batch_size < 1:
            raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries!r}")

        self._write = write
        self.batch_size = batch_size
        self.max_delay = max_delay_ms / 1000
        self.max_retries = max_retries
        self.retry_delay = retry_delay_ms / 1000
        self.poll_interval = poll_interval_ms / 1000
        self._on_drop = on_drop
        self._non_retryable = non_retryable

        self._states: dict[str, _KeyState] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._wakeup = asyncio.Event()
        self._scheduler: asyncio.Task[None] | None = None
        self._closed = False

        self._flushes = 0
        self._retries = 0
        self._dropped_batches = 0
        self._dropped_items = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the deadline scheduler. Safe to call more than once."""
        if self._scheduler is None or self._scheduler.done():
            self._closed = False
            self._scheduler = asyncio.create_task(self._schedule_loop(), name="batcher-scheduler")

    async def close(self) -> None:
        """Stop the scheduler and wait for in-flight flushes.

        Buffered items are not written; call ``drain_all`` first.
        """
        self._closed = True
        self._wakeup.set()
        if self._scheduler is not None:
            self._scheduler.cancel()
            try:
                await self._scheduler
            except asyncio.CancelledError:
                pass
            self._scheduler = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # =========================================================================
    # Enqueue
    # =========================================================================

    def add(self, key: str, item: BufferedItem) -> None:
        """Buffer an item. Never waits on storage.

        Raises:
            RuntimeError: If the batcher has been closed
        """
        if self._closed:
            raise RuntimeError("Batcher is closed")
        self.start()

        if item.received_at_ms is None:
            item.received_at_ms = now_ms()

        state = self._states.get(key)
        if state is None:
            state = self._states[key] = _KeyState()
        state.buffer.append(item)
        batch_buffered_items.inc()

        if len(state.buffer) >= self.batch_size:
            state.deadline = None
            self._spawn_flush(key)
        elif state.deadline is None:
            state.deadline = asyncio.get_running_loop().time() + self.max_delay
            self._wakeup.set()

    # =========================================================================
    # Flushing
    # =========================================================================

    async def flush(self, key: str) -> None:
        """Write everything buffered for ``key`` now and wait for the write."""
        state = self._states.get(key)
        if state is None:
            return
        if state.flushing:
            state.rerun = True
            while state.flushing:
                await asyncio.sleep(self.poll_interval)
            return
        await self._run_flush(key)

    async def flush_all(self, key: str, timeout: float | None = None) -> bool:
        """Flush ``key`` and wait until its buffer and pending writes are empty.

        Returns:
            False if ``timeout`` expired first, True otherwise
        """
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + timeout if timeout is not None else None

        while True:
            state = self._states.get(key)
            if state is None or (not state.buffer and not state.pending and not state.flushing):
                return True
            if state.buffer and not state.flushing:
                state.deadline = None
                self._spawn_flush(key)
            if give_up_at is not None and loop.time() >= give_up_at:
                logger.warning(
                    f"Drain of {key} timed out with {len(state.buffer)} buffered "
                    f"and {len(state.pending)} pending",
                    conversation_id=key,
                )
                return False
            await asyncio.sleep(self.poll_interval)

    async def drain_all(self, timeout: float | None = None) -> bool:
        """Drain every known key concurrently. Used at shutdown."""
        keys = list(self._states)
        if not keys:
            return True
        results = await asyncio.gather(*(self.flush_all(key, timeout) for key in keys))
        drained = all(results)
        logger.info(f"Batcher drain finished for {len(keys)} keys (complete={drained})")
        return drained

    def _spawn_flush(self, key: str) -> None:
        task = asyncio.create_task(self._run_flush(key), name=f"batch-flush-{key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_flush(self, key: str) -> None:
        state = self._states.get(key)
        if state is None:
            return
        if state.flushing:
            # Re-checked when the in-flight flush completes
            state.rerun = True
            return

        state.flushing = True
        try:
            while True:
                state.rerun = False
                await self._flush_once(key, state)
                if state.buffer and (state.rerun or len(state.buffer) >= self.batch_size):
                    continue
                break
        finally:
            state.flushing = False
            if state.buffer and state.deadline is None and not self._closed:
                state.deadline = asyncio.get_running_loop().time() + self.max_delay
                self._wakeup.set()
            self._discard_if_idle(key)

    async def _flush_once(self, key: str, state: _KeyState) -> None:
        op_id = uuid.uuid4().hex
        state.pending.add(op_id)
        try:
            for attempt in range(1, self.max_retries + 1):
                batch = self._drain(state)
                if not batch:
                    return
                try:
                    await self._write(key, batch)
                except asyncio.CancelledError:
                    self._restore(state, batch)
                    raise
                except Exception as e:
                    if attempt >= self.max_retries or isinstance(e, self._non_retryable):
                        await self._drop(key, batch, e, attempt)
                        return
                    self._restore(state, batch)
                    self._retries += 1
                    batch_flush_retries_total.inc()
                    delay = self.retry_delay * attempt
                    logger.warning(
                        f"Batch write for {key} failed (attempt {attempt}/{self.max_retries}), "
                        f"retrying in {delay:.2f}s: {e}",
                        conversation_id=key,
                    )
                    await asyncio.sleep(delay)
                    continue

                self._flushes += 1
                batch_flushes_total.labels(outcome="success").inc()
                batch_size_items.observe(len(batch))
                logger.debug(f"Flushed {len(batch)} items for {key}", conversation_id=key)
                return
        finally:
            state.pending.discard(op_id)

    def _drain(self, state: _KeyState) -> list[BufferedItem]:
        batch = state.buffer[:]
        state.buffer.clear()
        state.deadline = None
        batch_buffered_items.dec(len(batch))
        return batch

    def _restore(self, state: _KeyState, batch: list[BufferedItem]) -> None:
        # Failed items go back ahead of anything buffered since the drain
        state.buffer[:0] = batch
        batch_buffered_items.inc(len(batch))

    async def _drop(self, key: str, batch: list[BufferedItem], error: Exception, attempts: int) -> None:
        self._dropped_batches += 1
        self._dropped_items += len(batch)
        batch_flushes_total.labels(outcome="dropped").inc()
        batch_dropped_items_total.inc(len(batch))
        logger.critical(
            f"Dropped batch of {len(batch)} items for {key} after {attempts} attempts: {error}",
            conversation_id=key,
            dropped_items=len(batch),
        )
        if self._on_drop is None:
            return
        try:
            result = self._on_drop(key, batch, error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"on_drop callback failed for {key}: {e}", exc_info=True, conversation_id=key)

    def _discard_if_idle(self, key: str) -> None:
        state = self._states.get(key)
        if state is not None and state.idle:
            del self._states[key]

    # =========================================================================
    # Deadline scheduler
    # =========================================================================

    async def _schedule_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closed:
            self._wakeup.clear()
            now = loop.time()
            for key, state in list(self._states.items()):
                if state.deadline is not None and state.deadline <= now:
                    state.deadline = None
                    self._spawn_flush(key)

            upcoming = [s.deadline for s in self._states.values() if s.deadline is not None]
            timeout = max(0.0, min(upcoming) - loop.time()) if upcoming else None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except TimeoutError:
                continue

    # =========================================================================
    # Introspection
    # =========================================================================

    def buffered(self, key: str) -> int:
        state = self._states.get(key)
        return len(state.buffer) if state else 0

    def pending(self, key: str) -> int:
        state = self._states.get(key)
        return len(state.pending) if state else 0

    def stats(self) -> dict[str, Any]:
        return {
            "keys": len(self._states),
            "buffered_items": sum(len(s.buffer) for s in self._states.values()),
            "pending_flushes": sum(len(s.pending) for s in self._states.values()),
            "flushes": self._flushes,
            "retries": self._retries,
            "dropped_batches": self._dropped_batches,
            "dropped_items": self._dropped_items,
            "running": self._scheduler is not None and not self._scheduler.done(),
        }
