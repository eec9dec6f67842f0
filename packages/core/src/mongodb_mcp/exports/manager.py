"""Session-scoped, file-backed exports of query results.

Each export is registered as in-progress, streamed to
``<exports_path>/<session_id>/<name>`` in the background and flipped to
ready once the cursor is drained. Ready exports expire after
``export_timeout_ms`` and are swept on a fixed interval.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
import unicodedata
import urllib.parse
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from bson import ObjectId, json_util
from mongodb_mcp_models import AvailableExport, JSONExportFormat

from mongodb_mcp.config import Settings
from mongodb_mcp.driver import ExportCursor
from mongodb_mcp.errors import (
    ExportExistsError,
    ExportInProgressError,
    ExportNotFoundError,
    ExportsClosedError,
)
from mongodb_mcp.events import EventEmitter
from mongodb_mcp.logs import LogId, log_extra

logger = logging.getLogger(__name__)

EXPORT_URI_SCHEME = "exported-data"

CLOSED = "closed"
EXPORT_AVAILABLE = "export-available"
EXPORT_EXPIRED = "export-expired"

# Left unescaped in export URIs, as encodeURIComponent does
_URI_SAFE = "!*'()"

# Documents serialized per worker thread write
WRITE_BATCH_SIZE = 100

_JSON_OPTIONS = {
    JSONExportFormat.RELAXED: json_util.RELAXED_JSON_OPTIONS,
    JSONExportFormat.CANONICAL: json_util.CANONICAL_JSON_OPTIONS,
}


class ExportStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    READY = "ready"


@dataclass(frozen=True)
class StoredExport:
    """Registry record for one export."""

    export_name: str
    export_title: str
    export_uri: str
    export_path: str
    status: ExportStatus = ExportStatus.IN_PROGRESS
    created_at: float | None = None
    docs_transformed: int = 0

    @property
    def is_ready(self) -> bool:
        return self.status == ExportStatus.READY

    def to_available(self) -> AvailableExport:
        return AvailableExport(
            export_name=self.export_name,
            export_title=self.export_title,
            export_uri=self.export_uri,
            export_path=self.export_path,
        )


@dataclass(frozen=True)
class ReadExportResult:
    content: str
    docs_transformed: int


def decode_and_normalize(text: str) -> str:
    """URL-decode ``text`` and apply NFKC normalization until neither changes it.

    ``a%2541`` becomes ``aA``, so a stored export name always resolves to itself.
    """
    while True:
        decoded = unicodedata.normalize("NFKC", urllib.parse.unquote(text))
        if decoded == text:
            return decoded
        text = decoded


def ensure_extension(path_or_name: str, extension: str) -> str:
    ext = extension if extension.startswith(".") else f".{extension}"
    if path_or_name.endswith(ext):
        return path_or_name
    return f"{path_or_name}{ext}"


def is_export_expired(
    created_at: float, export_timeout_ms: int, now: float | None = None
) -> bool:
    """Whether an export created at ``created_at`` (epoch seconds) has outlived its timeout."""
    now = time.time() if now is None else now
    return (now - created_at) * 1000 > export_timeout_ms


def export_uri(export_name: str) -> str:
    return f"{EXPORT_URI_SCHEME}://{urllib.parse.quote(export_name, safe=_URI_SAFE)}"


def _export_key(export_name: str) -> str:
    key = decode_and_normalize(ensure_extension(export_name, "json"))
    if "/" in key or "\\" in key or "\x00" in key or key.strip(".") == "":
        raise ValueError(f"Invalid export name: {export_name!r}")
    return key


class ExportsManager:
    """Registry of named exports for one session.

    Only this class reads or writes under ``exports_directory``. Every public
    operation raises ``ExportsClosedError`` once ``close()`` has started.
    """

    def __init__(
        self,
        exports_directory: str | Path,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.exports_directory = Path(exports_directory)
        self.events = EventEmitter()
        self._settings = settings
        self._clock = clock
        self._exports: dict[str, StoredExport] = {}
        self._export_tasks: dict[str, asyncio.Task] = {}
        self._removing: set[str] = set()
        self._cleanup_in_progress = False
        self._cleanup_task: asyncio.Task | None = None
        self._shutting_down = False

    @classmethod
    def init(cls, settings: Settings, session_id: str | None = None, **kwargs) -> ExportsManager:
        """Create the manager for ``session_id`` and start its sweep loop.

        Must be called from a running event loop.
        """
        session_id = session_id or str(ObjectId())
        manager = cls(Path(settings.exports_path) / session_id, settings, **kwargs)
        manager.exports_directory.mkdir(parents=True, exist_ok=True)
        manager.start_cleanup_loop()
        return manager

    # =========================================================================
    # Registry
    # =========================================================================

    def _assert_not_shutting_down(self) -> None:
        if self._shutting_down:
            raise ExportsClosedError("ExportsManager is shutting down.")

    def _is_expired(self, stored: StoredExport) -> bool:
        return (
            stored.is_ready
            and stored.created_at is not None
            and is_export_expired(stored.created_at, self._settings.export_timeout_ms, self._clock())
        )

    @property
    def available_exports(self) -> list[AvailableExport]:
        """Ready, unexpired exports."""
        self._assert_not_shutting_down()
        return [
            stored.to_available()
            for stored in self._exports.values()
            if stored.is_ready and not self._is_expired(stored)
        ]

    def get_export(self, export_name: str) -> StoredExport | None:
        self._assert_not_shutting_down()
        return self._exports.get(_export_key(export_name))

    # =========================================================================
    # Create
    # =========================================================================

    async def create_export(
        self,
        input: ExportCursor,
        export_name: str,
        export_title: str,
        json_export_format: JSONExportFormat | str = JSONExportFormat.RELAXED,
    ) -> StoredExport:
        """Register an export and start streaming ``input`` into it.

        Returns the in-progress record without waiting for the data. Listen
        for ``export-available`` to learn when it can be read.

        Raises:
            ExportExistsError: An in-progress or unexpired export has this name.
        """
        try:
            self._assert_not_shutting_down()
            json_export_format = JSONExportFormat(json_export_format)
            name = _export_key(export_name)

            existing = self._exports.get(name)
            if (existing is not None and not self._is_expired(existing)) or name in self._removing:
                raise ExportExistsError(
                    "Export with same name is either already available or being generated."
                )

            stored = StoredExport(
                export_name=name,
                export_title=export_title,
                export_uri=export_uri(name),
                export_path=str(self.exports_directory / name),
            )
            self._exports[name] = stored
        except Exception as e:
            logger.error(
                f"Error when registering JSON export request: {e}",
                extra=log_extra(LogId.EXPORT_CREATION_ERROR, "ExportsManager"),
            )
            raise

        task = asyncio.create_task(self._run_export(input, stored, json_export_format))
        self._export_tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._forget_task(n, t))
        return stored

    def _forget_task(self, name: str, task: asyncio.Task) -> None:
        if self._export_tasks.get(name) is task:
            del self._export_tasks[name]

    async def _run_export(
        self,
        input: ExportCursor,
        stored: StoredExport,
        json_export_format: JSONExportFormat,
    ) -> None:
        partial_path = f"{stored.export_path}.{uuid.uuid4().hex}.part"
        try:
            docs_transformed = await self._write_export(input, partial_path, json_export_format)
            await asyncio.to_thread(os.replace, partial_path, stored.export_path)
        except asyncio.CancelledError:
            self._discard_failed(stored)
            await self._silently_remove(
                partial_path, LogId.EXPORT_CREATION_CLEANUP_ERROR, stored.export_name
            )
            raise
        except Exception as e:
            logger.error(
                f"Error when generating JSON export for {stored.export_name}: {e}",
                extra=log_extra(LogId.EXPORT_CREATION_ERROR, "ExportsManager"),
            )
            self._discard_failed(stored)
            for path in (partial_path, stored.export_path):
                await self._silently_remove(
                    path, LogId.EXPORT_CREATION_CLEANUP_ERROR, stored.export_name
                )
            return
        finally:
            await self._close_cursor(input)

        if self._exports.get(stored.export_name) is not stored:
            return
        self._exports[stored.export_name] = replace(
            stored,
            status=ExportStatus.READY,
            created_at=self._clock(),
            docs_transformed=docs_transformed,
        )
        logger.info(f"Export {stored.export_name} ready ({docs_transformed} documents)")
        self.events.emit(EXPORT_AVAILABLE, stored.export_uri)

    def _discard_failed(self, stored: StoredExport) -> None:
        if self._exports.get(stored.export_name) is stored:
            del self._exports[stored.export_name]

    async def _write_export(
        self, input: ExportCursor, path: str, json_export_format: JSONExportFormat
    ) -> int:
        json_options = _JSON_OPTIONS[json_export_format]
        await asyncio.to_thread(self.exports_directory.mkdir, parents=True, exist_ok=True)
        out = await asyncio.to_thread(open, path, "w", encoding="utf-8")
        try:
            docs_transformed = 0
            chunks: list[str] = []
            async for doc in input:
                self._assert_not_shutting_down()
                serialized = json_util.dumps(doc, json_options=json_options)
                chunks.append(("[" if docs_transformed == 0 else ",\n") + serialized)
                docs_transformed += 1
                if len(chunks) >= WRITE_BATCH_SIZE:
                    await asyncio.to_thread(out.write, "".join(chunks))
                    chunks = []
            chunks.append("[]" if docs_transformed == 0 else "]")
            await asyncio.to_thread(out.write, "".join(chunks))
            return docs_transformed
        finally:
            await asyncio.to_thread(out.close)

    async def _close_cursor(self, input: ExportCursor) -> None:
        try:
            await input.close()
        except Exception as e:
            logger.warning(
                f"Error closing export cursor: {e}",
                extra=log_extra(LogId.MONGODB_CURSOR_CLOSE_ERROR, "ExportsManager"),
            )

    # =========================================================================
    # Read
    # =========================================================================

    async def read_export(self, export_name: str) -> ReadExportResult:
        """Return the content of a ready export.

        Raises:
            ExportNotFoundError: No such export, or it expired.
            ExportInProgressError: The export is still being written.
        """
        try:
            self._assert_not_shutting_down()
            name = _export_key(export_name)
            stored = self._exports.get(name)
            if stored is None or self._is_expired(stored):
                raise ExportNotFoundError("Requested export has either expired or does not exist.")
            if not stored.is_ready:
                raise ExportInProgressError(
                    "Requested export is still being generated. Try again later."
                )
            content = await asyncio.to_thread(Path(stored.export_path).read_text, encoding="utf-8")
            self._assert_not_shutting_down()
            return ReadExportResult(content=content, docs_transformed=stored.docs_transformed)
        except Exception as e:
            logger.error(
                f"Error when reading export - {export_name}: {e}",
                extra=log_extra(LogId.EXPORT_READ_ERROR, "ExportsManager"),
            )
            raise

    # =========================================================================
    # Expiry sweep
    # =========================================================================

    async def cleanup_expired_exports(self) -> int:
        """Remove expired exports. Returns how many were unregistered."""
        if self._cleanup_in_progress or self._shutting_down:
            return 0

        self._cleanup_in_progress = True
        try:
            # Unregister first so no read can observe an export being deleted
            expired = [stored for stored in self._exports.values() if self._is_expired(stored)]
            for stored in expired:
                del self._exports[stored.export_name]
                self._removing.add(stored.export_name)

            try:
                await asyncio.gather(
                    *(
                        self._silently_remove(
                            stored.export_path, LogId.EXPORT_CLEANUP_ERROR, stored.export_name
                        )
                        for stored in expired
                    ),
                    return_exceptions=True,
                )
            finally:
                for stored in expired:
                    self._removing.discard(stored.export_name)

            for stored in expired:
                self.events.emit(EXPORT_EXPIRED, stored.export_name)
            if expired:
                logger.info(f"Cleaned up {len(expired)} expired exports")
            return len(expired)
        except Exception as e:
            logger.error(
                f"Error when cleaning up exports: {e}",
                extra=log_extra(LogId.EXPORT_CLEANUP_ERROR, "ExportsManager"),
            )
            return 0
        finally:
            self._cleanup_in_progress = False

    async def _silently_remove(self, path: str, log_id: LogId, export_name: str) -> None:
        try:
            await asyncio.to_thread(os.unlink, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(
                f"Considerable error when removing export {export_name}: {e}",
                extra=log_extra(log_id, "ExportsManager"),
            )

    def start_cleanup_loop(self) -> None:
        """Start the background sweep loop."""
        if self._cleanup_task is not None:
            return

        interval_seconds = self._settings.export_cleanup_interval_ms / 1000

        async def cleanup_loop():
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.cleanup_expired_exports()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.exception(f"Export cleanup loop error: {e}")

        self._cleanup_task = asyncio.create_task(cleanup_loop())
        logger.debug(f"Started export cleanup loop (interval: {interval_seconds}s)")

    async def stop_cleanup_loop(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def close(self) -> None:
        """Stop the sweep, abort running exports and delete the session directory."""
        if self._shutting_down:
            return
        self._shutting_down = True

        try:
            await self.stop_cleanup_loop()
            tasks = list(self._export_tasks.values())
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._exports.clear()
            await asyncio.to_thread(shutil.rmtree, self.exports_directory, ignore_errors=True)
            self.events.emit(CLOSED)
        except Exception as e:
            logger.error(
                f"Error while closing ExportsManager: {e}",
                extra=log_extra(LogId.EXPORT_CLOSE_ERROR, "ExportsManager"),
            )
