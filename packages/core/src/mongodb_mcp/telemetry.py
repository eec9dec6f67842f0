"""OpenTelemetry spans for connection transitions, exports and tool calls.

Only the OpenTelemetry API is used, so everything here is a no-op unless the
host process configures an SDK tracer provider.
"""

import json
import logging
from typing import Any

from opentelemetry import trace

from mongodb_mcp.connection import (
    CONNECTION_CLOSE,
    CONNECTION_ERROR,
    CONNECTION_REQUEST,
    CONNECTION_SUCCESS,
    CONNECTION_TIME_OUT,
    ConnectionManager,
    ConnectionStateErrored,
)
from mongodb_mcp.exports import EXPORT_AVAILABLE, EXPORT_EXPIRED, ExportsManager
from mongodb_mcp.logs import LogId, log_extra

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("mongodb_mcp.connection")

CONNECTION_EVENTS = (
    CONNECTION_REQUEST,
    CONNECTION_SUCCESS,
    CONNECTION_TIME_OUT,
    CONNECTION_CLOSE,
    CONNECTION_ERROR,
)


def state_attributes(state: Any) -> dict[str, Any]:
    """Span attributes describing a connection state."""
    attrs: dict[str, Any] = {"connection.state": state.tag}
    info = getattr(state, "connection_string_info", None)
    if info is not None:
        attrs["connection.auth_type"] = info.auth_type
        attrs["connection.host_type"] = info.host_type
    atlas = getattr(state, "atlas", None)
    if atlas is not None:
        attrs["atlas.project_id"] = atlas.project_id
        attrs["atlas.cluster_name"] = atlas.cluster_name
    return attrs


class ConnectionTelemetry:
    """Record one span per connection transition and count exports."""

    def __init__(self, connection_manager: ConnectionManager, exports_manager: ExportsManager | None = None):
        self.exports_available = 0
        self.exports_expired = 0
        self._unsubscribe = []
        for event in CONNECTION_EVENTS:
            self._unsubscribe.append(
                connection_manager.events.on(event, lambda state, e=event: self._record(e, state))
            )
        if exports_manager is not None:
            self._unsubscribe.append(
                exports_manager.events.on(EXPORT_AVAILABLE, self._on_export_available)
            )
            self._unsubscribe.append(
                exports_manager.events.on(EXPORT_EXPIRED, self._on_export_expired)
            )

    def _record(self, event: str, state: Any) -> None:
        try:
            with tracer.start_as_current_span(event, attributes=state_attributes(state)) as span:
                if isinstance(state, ConnectionStateErrored):
                    span.set_status(trace.Status(trace.StatusCode.ERROR, state.error_reason))
        except Exception as e:
            logger.debug(
                f"Failed to record connection span: {e}",
                extra=log_extra(LogId.TELEMETRY_EMIT_FAILURE, "telemetry"),
            )

    def _on_export_available(self, uri: str) -> None:
        self.exports_available += 1
        span = trace.get_current_span()
        span.add_event("export-available", {"export.uri": uri})

    def _on_export_expired(self, name: str) -> None:
        self.exports_expired += 1

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []


def _detect_soft_failure(text: str, span) -> None:
    """Mark tool results shaped like ``{"status": "error"}`` as failures."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return
    if isinstance(data, dict) and str(data.get("status", "")).lower() == "error":
        span.set_attribute("tool.soft_failure", True)
        span.set_attribute("tool.failure_detail", str(data.get("error", ""))[:500])


def _key_args(args: dict | None) -> dict[str, str]:
    if not args:
        return {}
    return {
        f"db.{key}": str(args[key])
        for key in ("database", "collection", "export_name")
        if args.get(key)
    }


def create_tracing_middleware():
    """FastMCP middleware wrapping every tool call in a span."""
    from fastmcp.server.middleware import Middleware

    tool_tracer = trace.get_tracer("mongodb_mcp.mcp")

    class TracingMiddleware(Middleware):
        async def on_call_tool(self, context, call_next):
            msg = getattr(context, "message", None)
            tool_name = getattr(msg, "name", None) or "unknown"
            attrs = {"tool.name": tool_name, "mcp.method": "tools/call"}
            attrs.update(_key_args(getattr(msg, "arguments", None)))

            with tool_tracer.start_as_current_span(f"tools/call: {tool_name}", attributes=attrs) as span:
                try:
                    result = await call_next(context)
                except Exception as e:
                    span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                    span.set_attribute("tool.success", False)
                    raise
                span.set_attribute("tool.success", True)
                content = getattr(result, "content", None)
                if isinstance(content, list) and content and hasattr(content[0], "text"):
                    _detect_soft_failure(content[0].text, span)
                return result

    return TracingMiddleware()
