"""Turn connection errors into guidance for the calling agent."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from mongodb_mcp.connection.state import ConnectionState, ConnectionStateConnecting
from mongodb_mcp.errors import (
    AuthFlowError,
    ConfigurationError,
    MongoMCPError,
    NotConnectedError,
)

NO_INVENTED_CONNECTION_STRINGS = (
    "Note to LLM: do not invent connection strings and explicitly ask the user to provide one. "
    "If they have previously connected to MongoDB using MCP, you can ask them if they want to "
    "reconnect using the same connection string."
)


def _connect_prompt(state: ConnectionState, connect_tools: Sequence[str]) -> str:
    if isinstance(state, ConnectionStateConnecting) and state.oidc_login_url:
        return (
            "The user needs to finish their OIDC connection by opening "
            f"'{state.oidc_login_url}' in the browser and use the following user code: "
            f"'{state.oidc_user_code}'"
        )
    if not connect_tools:
        return (
            "There are no tools available to connect. Please update the configuration "
            "to include a connection string and restart the server."
        )
    names = ", ".join(f'"{name}"' for name in connect_tools)
    return (
        f"Please use one of the following tools: {names} to connect to a MongoDB instance "
        "or update the MCP server configuration to include a connection string. "
        f"{NO_INVENTED_CONNECTION_STRINGS}"
    )


def connection_error_handler(
    error: BaseException,
    state: ConnectionState,
    connect_tools: Sequence[str] = ("connect",),
) -> dict[str, Any] | None:
    """Build a tool error payload for connection related failures.

    Returns ``None`` when ``error`` is not about connectivity, leaving it to
    the caller's generic error path.
    """
    if isinstance(error, (NotConnectedError, AuthFlowError)):
        messages = [
            "You need to connect to a MongoDB instance before you can access its data.",
            _connect_prompt(state, connect_tools),
        ]
    elif isinstance(error, ConfigurationError):
        if connect_tools:
            names = ", ".join(f'"{name}"' for name in connect_tools)
            alternative = (
                f"Alternatively, you can use one of the following tools: {names} to connect "
                f"to a MongoDB instance. {NO_INVENTED_CONNECTION_STRINGS}"
            )
        else:
            alternative = (
                "Please update the configuration to use a valid connection string "
                "and restart the server."
            )
        messages = [
            "The configured connection string is not valid. Please check the connection "
            "string and confirm it points to a valid MongoDB instance.",
            alternative,
        ]
    else:
        return None

    code = error.code if isinstance(error, MongoMCPError) else None
    return {
        "status": "error",
        "error": str(error),
        "code": int(code) if code is not None else None,
        "messages": messages,
    }
