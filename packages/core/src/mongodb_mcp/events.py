"""Minimal synchronous event emitter used for cross-component invalidation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

from mongodb_mcp.logs import LogId, log_extra

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Observer registry keyed by event name.

    Listeners run synchronously, in registration order, inside ``emit``. A
    listener that raises is logged and skipped so subscribers can never abort
    the emitter's own state transition. Coroutine listeners are scheduled on
    the running loop instead of being awaited.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event; returns an unsubscribe handle."""
        self._listeners[event].append(listener)

        def _unsubscribe() -> None:
            self.off(event, listener)

        return _unsubscribe

    def once(self, event: str, listener: Listener) -> Callable[[], None]:
        unsubscribe: Callable[[], None]

        def _wrapper(*args: Any) -> Any:
            unsubscribe()
            return listener(*args)

        unsubscribe = self.on(event, _wrapper)
        return unsubscribe

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        """Notify listeners of ``event``. Returns whether any listener was registered."""
        listeners = tuple(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    self._schedule(event, result)
            except Exception as e:
                logger.warning(
                    f"Listener for '{event}' failed: {e}",
                    extra=log_extra(LogId.EVENT_LISTENER_FAILURE, "EventEmitter"),
                )
        return bool(listeners)

    def _schedule(self, event: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(
                    f"Async listener for '{event}' failed: {t.exception()}",
                    extra=log_extra(LogId.EVENT_LISTENER_FAILURE, "EventEmitter"),
                )

        task.add_done_callback(_done)
