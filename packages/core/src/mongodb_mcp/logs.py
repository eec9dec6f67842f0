"""Logging setup: stable log ids and secret redaction."""

from __future__ import annotations

import logging
import re
import sys
from enum import IntEnum

from mongodb_mcp.keychain import SecretSource

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_CONNECTION_STRING_CREDENTIALS = re.compile(r"(mongodb(?:\+srv)?://)[^@/\s]+@", re.IGNORECASE)


class LogId(IntEnum):
    SERVER_INITIALIZED = 1_000_002
    SERVER_CLOSED = 1_000_004
    SESSION_IDLE_CLOSE = 1_000_005
    SESSION_CLOSE_FAILURE = 1_000_006
    ATLAS_DELETE_DATABASE_USER_FAILURE = 1_001_002
    ATLAS_CONNECT_FAILURE = 1_001_003
    TELEMETRY_EMIT_FAILURE = 1_002_002
    TOOL_EXECUTE_FAILURE = 1_003_002
    MONGODB_CONNECT_FAILURE = 1_004_001
    MONGODB_DISCONNECT_FAILURE = 1_004_002
    MONGODB_CONNECT_TRY = 1_004_003
    MONGODB_CURSOR_CLOSE_ERROR = 1_004_004
    EVENT_LISTENER_FAILURE = 1_005_001
    EXPORT_CLEANUP_ERROR = 1_007_001
    EXPORT_CREATION_ERROR = 1_007_002
    EXPORT_CREATION_CLEANUP_ERROR = 1_007_003
    EXPORT_READ_ERROR = 1_007_004
    EXPORT_CLOSE_ERROR = 1_007_005
    OIDC_FLOW = 1_008_001
    EMBEDDINGS_PROVIDER_FAILURE = 1_009_001


def log_extra(log_id: LogId, context: str, **attributes: object) -> dict[str, object]:
    """Build the ``extra`` mapping for a structured log call."""
    return {"log_id": int(log_id), "context": context, "attributes": attributes}


def redact(message: str, secrets: SecretSource | None) -> str:
    """Replace registered secrets and connection string credentials in a message."""
    message = _CONNECTION_STRING_CREDENTIALS.sub(r"\1<credentials>@", message)
    if secrets is None:
        return message
    # Longest first so a secret containing another one is replaced whole
    for secret in sorted(secrets.all_secrets, key=lambda s: len(s.value), reverse=True):
        message = message.replace(secret.value, f"<{secret.kind}>")
    return message


class RedactingFilter(logging.Filter):
    """Redact session secrets from every record passing through a handler.

    The message, the formatted traceback and the stack info are all redacted.
    Records logged with ``extra={"no_redaction": True}`` are left untouched.
    """

    _formatter = logging.Formatter()

    def __init__(self, secrets: SecretSource | None = None):
        super().__init__()
        self.secrets = secrets

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "no_redaction", False):
            return True
        record.msg = redact(record.getMessage(), self.secrets)
        record.args = None
        # Handlers reuse exc_text when it is set, so the traceback is formatted here once.
        if record.exc_info and not record.exc_text:
            record.exc_text = self._formatter.formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = redact(record.exc_text, self.secrets)
        if record.stack_info:
            record.stack_info = redact(record.stack_info, self.secrets)
        return True


def configure_logging(level: str = "INFO", secrets: SecretSource | None = None) -> RedactingFilter:
    """Configure root logging on stderr and install the redaction filter.

    stdout is left alone because the stdio transport owns it.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    root = logging.getLogger()
    redaction = RedactingFilter(secrets)
    for handler in root.handlers:
        for existing in [f for f in handler.filters if isinstance(f, RedactingFilter)]:
            handler.removeFilter(existing)
        handler.addFilter(redaction)
    return redaction
