"""Tests for file-backed exports."""

import asyncio
import json
from pathlib import Path

import pytest
from fakes import FakeCursor, settle
from mongodb_mcp_models import JSONExportFormat

from mongodb_mcp.errors import (
    ExportExistsError,
    ExportInProgressError,
    ExportNotFoundError,
    ExportsClosedError,
)
from mongodb_mcp.exports import (
    CLOSED,
    EXPORT_AVAILABLE,
    EXPORT_EXPIRED,
    ExportsManager,
    ExportStatus,
    decode_and_normalize,
    ensure_extension,
    export_uri,
    is_export_expired,
)


class Clock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _wait_ready(manager: ExportsManager, name: str) -> None:
    task = manager._export_tasks.get(name)
    if task is not None:
        await task


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_manager(settings, clock):
    def _make(**overrides):
        return ExportsManager.init(settings.model_copy(update=overrides), "session-1", clock=clock)

    return _make


class TestHelpers:
    def test_ensure_extension(self):
        assert ensure_extension("data", "json") == "data.json"
        assert ensure_extension("data.json", ".json") == "data.json"

    def test_decode_and_normalize(self):
        assert decode_and_normalize("caf%C3%A9") == "café"
        assert decode_and_normalize("ｆｏｏ") == "foo"

    def test_decode_and_normalize_is_idempotent(self):
        once = decode_and_normalize("r%C3%A9sum%C3%A9 ｆｉｌｅ")
        assert decode_and_normalize(once) == once

    def test_decode_and_normalize_unwraps_nested_encoding(self):
        once = decode_and_normalize("a%2541")
        assert once == "aA"
        assert decode_and_normalize(once) == once

    def test_export_uri_is_url_encoded(self):
        assert export_uri("my export.json") == "exported-data://my%20export.json"

    def test_is_export_expired_boundary(self):
        assert not is_export_expired(100.0, 1_000, now=101.0)
        assert is_export_expired(100.0, 1_000, now=101.001)


class TestCreateAndRead:
    @pytest.mark.asyncio
    async def test_export_round_trip(self, make_manager):
        manager = make_manager()
        available = []
        manager.events.on(EXPORT_AVAILABLE, available.append)
        cursor = FakeCursor([{"a": 1}, {"a": 2}])

        stored = await manager.create_export(cursor, "numbers", "Two numbers")
        assert stored.status == ExportStatus.IN_PROGRESS
        assert stored.export_name == "numbers.json"
        assert stored.export_uri == "exported-data://numbers.json"

        await _wait_ready(manager, "numbers.json")
        result = await manager.read_export("numbers")

        assert json.loads(result.content) == [{"a": 1}, {"a": 2}]
        assert result.docs_transformed == 2
        assert available == ["exported-data://numbers.json"]
        assert cursor.closed
        assert [e.export_name for e in manager.available_exports] == ["numbers.json"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_empty_cursor_exports_empty_array(self, make_manager):
        manager = make_manager()
        await manager.create_export(FakeCursor([]), "empty", "Nothing")
        await _wait_ready(manager, "empty.json")

        result = await manager.read_export("empty.json")

        assert result.content == "[]"
        assert result.docs_transformed == 0
        await manager.close()

    @pytest.mark.asyncio
    async def test_canonical_format(self, make_manager):
        manager = make_manager()
        await manager.create_export(
            FakeCursor([{"n": 1}]), "canonical", "Canonical", JSONExportFormat.CANONICAL
        )
        await _wait_ready(manager, "canonical.json")

        result = await manager.read_export("canonical")

        assert json.loads(result.content) == [{"n": {"$numberInt": "1"}}]
        await manager.close()

    @pytest.mark.asyncio
    async def test_duplicate_name_is_rejected(self, make_manager):
        manager = make_manager()
        gate = asyncio.get_running_loop().create_future()
        await manager.create_export(FakeCursor([{"a": 1}], gate=gate), "dup", "First")

        with pytest.raises(ExportExistsError):
            await manager.create_export(FakeCursor([]), "dup.json", "Second")

        gate.set_result(None)
        await _wait_ready(manager, "dup.json")
        with pytest.raises(ExportExistsError):
            await manager.create_export(FakeCursor([]), "dup", "Third")
        await manager.close()

    @pytest.mark.asyncio
    async def test_differently_encoded_names_collide(self, make_manager):
        manager = make_manager()
        await manager.create_export(FakeCursor([]), "caf%C3%A9", "Encoded")

        with pytest.raises(ExportExistsError):
            await manager.create_export(FakeCursor([]), "café", "Plain")
        await manager.close()

    @pytest.mark.asyncio
    async def test_stored_name_reads_back(self, make_manager):
        manager = make_manager()
        stored = await manager.create_export(FakeCursor([{"a": 1}]), "report%2541", "Nested")
        await _wait_ready(manager, stored.export_name)

        result = await manager.read_export(stored.export_name)

        assert stored.export_name == "reportA.json"
        assert json.loads(result.content) == [{"a": 1}]
        await manager.close()

    @pytest.mark.asyncio
    async def test_names_cannot_escape_the_directory(self, make_manager):
        manager = make_manager()

        with pytest.raises(ValueError):
            await manager.create_export(FakeCursor([]), "..%2F..%2Fescape", "Escape")
        await manager.close()

    @pytest.mark.asyncio
    async def test_read_in_progress_export(self, make_manager):
        manager = make_manager()
        gate = asyncio.get_running_loop().create_future()
        await manager.create_export(FakeCursor([{"a": 1}], gate=gate), "slow", "Slow")

        with pytest.raises(ExportInProgressError, match="still being generated"):
            await manager.read_export("slow")
        assert manager.available_exports == []

        gate.set_result(None)
        await manager.close()

    @pytest.mark.asyncio
    async def test_read_missing_export(self, make_manager):
        manager = make_manager()

        with pytest.raises(ExportNotFoundError, match="expired or does not exist"):
            await manager.read_export("missing")
        await manager.close()

    @pytest.mark.asyncio
    async def test_failed_export_is_removed(self, make_manager):
        manager = make_manager()
        cursor = FakeCursor([{"a": 1}, {"a": 2}], fail_after=1)

        stored = await manager.create_export(cursor, "broken", "Broken")
        await _wait_ready(manager, "broken.json")

        assert manager.get_export("broken") is None
        assert not Path(stored.export_path).exists()
        assert list(manager.exports_directory.iterdir()) == []
        assert cursor.closed
        with pytest.raises(ExportNotFoundError):
            await manager.read_export("broken")
        await manager.close()


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_exports_are_hidden_then_swept(self, make_manager, clock):
        manager = make_manager(export_timeout_ms=1_000)
        expired = []
        manager.events.on(EXPORT_EXPIRED, expired.append)
        stored = await manager.create_export(FakeCursor([{"a": 1}]), "old", "Old")
        await _wait_ready(manager, "old.json")

        clock.now += 1.0
        assert len(manager.available_exports) == 1

        clock.now += 0.5
        assert manager.available_exports == []
        with pytest.raises(ExportNotFoundError):
            await manager.read_export("old")

        removed = await manager.cleanup_expired_exports()

        assert removed == 1
        assert expired == ["old.json"]
        assert manager.get_export("old") is None
        assert not Path(stored.export_path).exists()
        await manager.close()

    @pytest.mark.asyncio
    async def test_sweep_keeps_fresh_and_in_progress_exports(self, make_manager, clock):
        manager = make_manager(export_timeout_ms=1_000)
        gate = asyncio.get_running_loop().create_future()
        await manager.create_export(FakeCursor([{"a": 1}], gate=gate), "running", "Running")
        await manager.create_export(FakeCursor([{"a": 1}]), "fresh", "Fresh")
        await _wait_ready(manager, "fresh.json")

        clock.now += 10
        await manager.create_export(FakeCursor([{"b": 1}]), "newer", "Newer")
        await _wait_ready(manager, "newer.json")

        removed = await manager.cleanup_expired_exports()

        assert removed == 1
        assert manager.get_export("running") is not None
        assert manager.get_export("newer") is not None
        gate.set_result(None)
        await manager.close()

    @pytest.mark.asyncio
    async def test_expired_name_can_be_reused(self, make_manager, clock):
        manager = make_manager(export_timeout_ms=1_000)
        await manager.create_export(FakeCursor([{"v": 1}]), "report", "v1")
        await _wait_ready(manager, "report.json")
        clock.now += 5

        await manager.create_export(FakeCursor([{"v": 2}]), "report", "v2")
        await _wait_ready(manager, "report.json")

        result = await manager.read_export("report")
        assert json.loads(result.content) == [{"v": 2}]
        await manager.close()

    @pytest.mark.asyncio
    async def test_cleanup_loop_runs_on_interval(self, settings, clock):
        manager = ExportsManager(
            Path(settings.exports_path) / "loop",
            settings.model_copy(update={"export_cleanup_interval_ms": 10}),
            clock=clock,
        )
        calls = []

        async def _fake_cleanup():
            calls.append(clock())
            return 0

        manager.cleanup_expired_exports = _fake_cleanup
        manager.start_cleanup_loop()
        await asyncio.sleep(0.05)
        await manager.stop_cleanup_loop()

        assert len(calls) >= 1
        assert manager._cleanup_task is None


class TestClose:
    @pytest.mark.asyncio
    async def test_close_removes_directory_and_rejects_operations(self, make_manager):
        manager = make_manager()
        closed = []
        manager.events.on(CLOSED, lambda: closed.append(True))
        await manager.create_export(FakeCursor([{"a": 1}]), "data", "Data")
        await _wait_ready(manager, "data.json")

        await manager.close()
        await manager.close()

        assert not manager.exports_directory.exists()
        assert closed == [True]
        with pytest.raises(ExportsClosedError, match="shutting down"):
            await manager.read_export("data")
        with pytest.raises(ExportsClosedError):
            await manager.create_export(FakeCursor([]), "more", "More")
        with pytest.raises(ExportsClosedError):
            manager.available_exports

    @pytest.mark.asyncio
    async def test_close_aborts_running_exports(self, make_manager):
        manager = make_manager()
        gate = asyncio.get_running_loop().create_future()
        cursor = FakeCursor([{"a": 1}], gate=gate)
        await manager.create_export(cursor, "pending", "Pending")
        await settle()

        await manager.close()

        assert cursor.closed
        assert manager._export_tasks == {}
