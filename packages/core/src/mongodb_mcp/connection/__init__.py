"""Connection lifecycle: settings, states and the manager that drives them."""

from mongodb_mcp.connection.hints import connection_error_handler
from mongodb_mcp.connection.info import (
    ConnectionSettings,
    ConnectionStringInfo,
    connection_string_credentials,
    get_auth_type,
    get_connection_string_info,
    get_host_type,
    parse_connection_string,
    set_app_name_if_missing,
)
from mongodb_mcp.connection.manager import (
    CLOSE,
    CONNECTION_CLOSE,
    CONNECTION_ERROR,
    CONNECTION_REQUEST,
    CONNECTION_SUCCESS,
    CONNECTION_TIME_OUT,
    ConnectionManager,
)
from mongodb_mcp.connection.state import (
    MCP_TEST_DATABASE,
    ConnectionState,
    ConnectionStateConnected,
    ConnectionStateConnecting,
    ConnectionStateDisconnected,
    ConnectionStateErrored,
)

__all__ = [
    "CLOSE",
    "CONNECTION_CLOSE",
    "CONNECTION_ERROR",
    "CONNECTION_REQUEST",
    "CONNECTION_SUCCESS",
    "CONNECTION_TIME_OUT",
    "MCP_TEST_DATABASE",
    "ConnectionManager",
    "ConnectionSettings",
    "ConnectionState",
    "ConnectionStateConnected",
    "ConnectionStateConnecting",
    "ConnectionStateDisconnected",
    "ConnectionStateErrored",
    "ConnectionStringInfo",
    "connection_error_handler",
    "connection_string_credentials",
    "get_auth_type",
    "get_connection_string_info",
    "get_host_type",
    "parse_connection_string",
    "set_app_name_if_missing",
]
