"""Tests for ResilientBatcher flush triggers, retries and drop handling."""

from __future__ import annotations

import asyncio

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from threadrelay.api.middleware.exception_handlers import MessageLimitError, StorageError
from threadrelay.api.services.batcher import ResilientBatcher
from threadrelay.models.api_models import BufferedItem


def _item(text: str) -> BufferedItem:
    return BufferedItem(content=text)


def _batcher(write: Any, **kwargs: Any) -> ResilientBatcher:
    options: dict[str, Any] = {
        "batch_size": 10,
        "max_delay_ms": 10_000,
        "max_retries": 3,
        "retry_delay_ms": 1,
        "poll_interval_ms": 5,
    }
    options.update(kwargs)
    return ResilientBatcher(write, **options)


class GatedWriter:
    """Holds its first write until released and tracks concurrent entries per key."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.entered = asyncio.Event()
        self.active: dict[str, int] = {}
        self.max_active = 0
        self.calls: list[list[str]] = []

    async def __call__(self, key: str, items: list[Any]) -> None:
        self.active[key] = self.active.get(key, 0) + 1
        self.max_active = max(self.max_active, self.active[key])
        self.entered.set()
        self.calls.append([item.content for item in items])
        try:
            if len(self.calls) == 1:
                await self.release.wait()
            else:
                await asyncio.sleep(0.01)
        finally:
            self.active[key] -= 1


class TestConstruction:
    def test_rejects_non_callable_writer(self) -> None:
        with pytest.raises(TypeError):
            ResilientBatcher("not-callable")  # type: ignore[arg-type]

    @pytest.mark.parametrize("size", [0, -1])
    def test_rejects_non_positive_batch_size(self, size: int) -> None:
        with pytest.raises(ValueError, match="batch_size"):
            ResilientBatcher(AsyncMock(), batch_size=size)

    def test_rejects_zero_retries(self) -> None:
        with pytest.raises(ValueError, match="max_retries"):
            ResilientBatcher(AsyncMock(), max_retries=0)


class TestFlushTriggers:
    @pytest.mark.asyncio
    async def test_size_threshold_flushes_immediately(self, writer: Any) -> None:
        batcher = _batcher(writer, batch_size=3)
        try:
            for text in ("a", "b", "c"):
                batcher.add("conv_1", _item(text))
            await asyncio.sleep(0.05)

            assert writer.calls == [("conv_1", ["a", "b", "c"])]
            assert batcher.buffered("conv_1") == 0
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_below_threshold_waits_for_deadline(self, writer: Any) -> None:
        batcher = _batcher(writer, max_delay_ms=80)
        try:
            batcher.add("conv_1", _item("a"))
            batcher.add("conv_1", _item("b"))
            await asyncio.sleep(0.02)
            assert writer.calls == []

            await asyncio.sleep(0.2)
            assert writer.calls == [("conv_1", ["a", "b"])]
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_deadline_is_not_extended_by_later_items(self, writer: Any) -> None:
        batcher = _batcher(writer, max_delay_ms=200)
        try:
            batcher.add("conv_1", _item("a"))
            await asyncio.sleep(0.12)
            batcher.add("conv_1", _item("b"))
            await asyncio.sleep(0.15)

            # First item's deadline governs both
            assert writer.written.get("conv_1") == ["a", "b"]
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_add_stamps_received_time_and_starts_scheduler(self, writer: Any) -> None:
        batcher = _batcher(writer)
        try:
            assert batcher.stats()["running"] is False
            item = _item("a")
            batcher.add("conv_1", item)

            assert item.received_at_ms is not None
            assert batcher.stats()["running"] is True
            assert batcher.buffered("conv_1") == 1
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_add_after_close_raises(self, writer: Any) -> None:
        batcher = _batcher(writer)
        batcher.start()
        await batcher.close()

        with pytest.raises(RuntimeError, match="closed"):
            batcher.add("conv_1", _item("a"))


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_one_write_in_flight_per_key(self) -> None:
        write = GatedWriter()
        batcher = _batcher(write, batch_size=2)
        try:
            batcher.add("conv_1", _item("a"))
            batcher.add("conv_1", _item("b"))
            await asyncio.wait_for(write.entered.wait(), timeout=1.0)

            # Every trigger fires while the first write is still held
            batcher.add("conv_1", _item("c"))
            flush = asyncio.create_task(batcher.flush("conv_1"))
            drain = asyncio.create_task(batcher.flush_all("conv_1", timeout=2.0))
            batcher.add("conv_1", _item("d"))
            await asyncio.sleep(0.05)

            assert write.calls == [["a", "b"]]

            write.release.set()
            await asyncio.wait_for(flush, timeout=1.0)
            assert await drain is True
        finally:
            await batcher.close()

        assert write.max_active == 1
        assert write.calls[0] == ["a", "b"]
        assert [text for call in write.calls[1:] for text in call] == ["c", "d"]
        assert batcher.buffered("conv_1") == 0

    @pytest.mark.asyncio
    async def test_keys_flush_independently(self) -> None:
        write = GatedWriter()
        batcher = _batcher(write, batch_size=1)
        try:
            batcher.add("conv_1", _item("held"))
            await asyncio.wait_for(write.entered.wait(), timeout=1.0)

            batcher.add("conv_2", _item("free"))
            assert await batcher.flush_all("conv_2", timeout=1.0) is True

            write.release.set()
            assert await batcher.flush_all("conv_1", timeout=1.0) is True
        finally:
            await batcher.close()

        assert write.calls == [["held"], ["free"]]
        assert write.max_active == 1


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, make_writer: Any) -> None:
        writer = make_writer(failures=[StorageError(), StorageError()])
        batcher = _batcher(writer)
        try:
            batcher.add("conv_1", _item("a"))
            batcher.add("conv_1", _item("b"))

            assert await batcher.flush_all("conv_1", timeout=2.0) is True
            assert writer.written == {"conv_1": ["a", "b"]}
            assert writer.attempts == 3
            stats = batcher.stats()
            assert stats["retries"] == 2
            assert stats["dropped_batches"] == 0
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_batch_dropped_after_max_retries(self, make_writer: Any) -> None:
        error = StorageError()
        writer = make_writer(failures=[error, error, error])
        on_drop = AsyncMock()
        batcher = _batcher(writer, on_drop=on_drop)
        try:
            batcher.add("conv_1", _item("a"))
            batcher.add("conv_1", _item("b"))

            assert await batcher.flush_all("conv_1", timeout=2.0) is True
            assert writer.written == {}
            assert writer.attempts == 3

            on_drop.assert_awaited_once()
            key, items, raised = on_drop.await_args.args
            assert key == "conv_1"
            assert [i.content for i in items] == ["a", "b"]
            assert raised is error

            stats = batcher.stats()
            assert stats["dropped_batches"] == 1
            assert stats["dropped_items"] == 2
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_non_retryable_error_drops_on_first_attempt(self, make_writer: Any) -> None:
        writer = make_writer(failures=[MessageLimitError(5)])
        on_drop = MagicMock(return_value=None)
        batcher = _batcher(writer, on_drop=on_drop, non_retryable=(MessageLimitError,))
        try:
            batcher.add("conv_1", _item("a"))
            await batcher.flush_all("conv_1", timeout=1.0)

            assert writer.attempts == 1
            on_drop.assert_called_once()
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_failing_drop_callback_does_not_propagate(self, make_writer: Any) -> None:
        writer = make_writer(failures=[StorageError()])
        on_drop = AsyncMock(side_effect=RuntimeError("callback broke"))
        batcher = _batcher(writer, max_retries=1, on_drop=on_drop)
        try:
            batcher.add("conv_1", _item("a"))

            assert await batcher.flush_all("conv_1", timeout=1.0) is True
            on_drop.assert_awaited_once()
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_items_added_during_retry_keep_order(self, make_writer: Any) -> None:
        writer = make_writer(failures=[StorageError()])
        batcher = _batcher(writer, batch_size=2, retry_delay_ms=50)
        try:
            batcher.add("conv_1", _item("a"))
            batcher.add("conv_1", _item("b"))
            await asyncio.sleep(0.01)
            # First write failed and is backing off
            batcher.add("conv_1", _item("c"))

            assert await batcher.flush_all("conv_1", timeout=2.0) is True
            assert writer.written == {"conv_1": ["a", "b", "c"]}
        finally:
            await batcher.close()


class TestDraining:
    @pytest.mark.asyncio
    async def test_flush_all_unknown_key_returns_immediately(self, writer: Any) -> None:
        batcher = _batcher(writer)

        assert await batcher.flush_all("missing", timeout=0.1) is True
        assert writer.attempts == 0

    @pytest.mark.asyncio
    async def test_flush_all_times_out_on_slow_writer(self, make_writer: Any) -> None:
        writer = make_writer(delay=0.3)
        batcher = _batcher(writer)
        try:
            batcher.add("conv_1", _item("a"))

            assert await batcher.flush_all("conv_1", timeout=0.05) is False
        finally:
            await batcher.close()
        assert writer.written == {"conv_1": ["a"]}

    @pytest.mark.asyncio
    async def test_no_loss_or_duplication_across_keys(self, make_writer: Any) -> None:
        writer = make_writer(failures=[StorageError(), StorageError()])
        batcher = _batcher(writer, batch_size=4, max_retries=5)
        expected: dict[str, list[str]] = {"conv_1": [], "conv_2": []}
        try:
            for i in range(25):
                key = "conv_1" if i % 3 else "conv_2"
                expected[key].append(f"t{i}")
                batcher.add(key, _item(f"t{i}"))
                if i % 5 == 0:
                    await asyncio.sleep(0)

            assert await batcher.drain_all(timeout=2.0) is True
            assert writer.written == expected
            assert batcher.stats()["buffered_items"] == 0
        finally:
            await batcher.close()

    @pytest.mark.asyncio
    async def test_idle_keys_are_forgotten(self, writer: Any) -> None:
        batcher = _batcher(writer)
        try:
            batcher.add("conv_1", _item("a"))
            await batcher.flush("conv_1")

            assert batcher.stats()["keys"] == 0
            assert batcher.pending("conv_1") == 0
        finally:
            await batcher.close()
