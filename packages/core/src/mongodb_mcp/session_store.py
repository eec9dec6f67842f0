"""Per-client sessions of the MCP server.

Each MCP session id gets its own ``Session``: its own keychain, connection,
exports folder and embeddings cache. Sessions idle for longer than
``idle_timeout_ms`` are closed by a background sweep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from mongodb_mcp.config import Settings
from mongodb_mcp.errors import MongoMCPError, NotConnectedError
from mongodb_mcp.keychain import Secret
from mongodb_mcp.logs import LogId, log_extra
from mongodb_mcp.session import Session
from mongodb_mcp.telemetry import ConnectionTelemetry

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass
class _Entry:
    session: Session
    telemetry: ConnectionTelemetry
    last_used: float


class SessionStore:
    """Sessions keyed by MCP session id.

    Args:
        settings: Server settings (idle timeout, configured connection string).
        session_factory: Builds a new session. Called from the event loop.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._session_factory = session_factory or (lambda: Session(settings))
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task | None = None
        self._closed = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    @property
    def all_secrets(self) -> list[Secret]:
        """Secrets of every open session, for the logging filter."""
        return [
            secret
            for entry in list(self._entries.values())
            for secret in entry.session.keychain.all_secrets
        ]

    async def get_session(self, session_id: str) -> Session:
        """The session of ``session_id``, created on first use.

        A new session connects to the configured connection string, if any.
        Connection failures are logged; the session is returned either way.
        """
        async with self._lock:
            if self._closed:
                raise NotConnectedError("The server is shutting down")
            entry = self._entries.get(session_id)
            if entry is not None:
                entry.last_used = self._clock()
                return entry.session
            session = self._session_factory()
            telemetry = ConnectionTelemetry(session.connection_manager, session.exports_manager)
            self._entries[session_id] = _Entry(session, telemetry, self._clock())

        logger.info(
            f"Session {session.session_id} started for client {session_id}",
            extra=log_extra(LogId.SERVER_INITIALIZED, "SessionStore"),
        )
        if self._settings.connection_string:
            try:
                await session.connect_to_configured_connection()
            except MongoMCPError as e:
                logger.error(
                    f"Failed to connect to the configured connection string: {e}",
                    extra=log_extra(LogId.MONGODB_CONNECT_FAILURE, "SessionStore"),
                )
        return session

    async def close_session(self, session_id: str) -> bool:
        """Close and forget ``session_id``. Returns False if it was unknown."""
        async with self._lock:
            entry = self._entries.pop(session_id, None)
        if entry is None:
            return False
        await self._close_entry(session_id, entry)
        return True

    async def _close_entry(self, session_id: str, entry: _Entry) -> None:
        entry.telemetry.close()
        try:
            await entry.session.close()
        except Exception as e:
            logger.error(
                f"Error closing session {session_id}: {e}",
                extra=log_extra(LogId.SESSION_CLOSE_FAILURE, "SessionStore"),
            )

    async def close_idle_sessions(self) -> int:
        """Close sessions unused for longer than the idle timeout.

        Returns:
            Number of sessions closed
        """
        timeout_s = self._settings.idle_timeout_ms / 1000
        now = self._clock()
        async with self._lock:
            idle = [
                (session_id, entry)
                for session_id, entry in self._entries.items()
                if now - entry.last_used > timeout_s
            ]
            for session_id, _ in idle:
                del self._entries[session_id]

        for session_id, entry in idle:
            logger.info(
                f"Session {session_id} closed due to inactivity",
                extra=log_extra(LogId.SESSION_IDLE_CLOSE, "SessionStore"),
            )
            await self._close_entry(session_id, entry)
        return len(idle)

    def start_cleanup_loop(self) -> None:
        """Start the background idle sweep."""
        if self._cleanup_task is not None:
            return

        interval_seconds = self._settings.session_cleanup_interval_ms / 1000

        async def cleanup_loop():
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.close_idle_sessions()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(
                        f"Idle session sweep failed: {e}",
                        extra=log_extra(LogId.SESSION_CLOSE_FAILURE, "SessionStore"),
                    )

        self._cleanup_task = asyncio.create_task(cleanup_loop())

    async def stop_cleanup_loop(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def close_all(self) -> None:
        """Stop the sweep and close every session. Later lookups are rejected."""
        await self.stop_cleanup_loop()
        async with self._lock:
            self._closed = True
            entries = list(self._entries.items())
            self._entries.clear()
        await asyncio.gather(*(self._close_entry(sid, entry) for sid, entry in entries))
