"""MongoDB MCP server core: connection state machine and session-scoped managers."""

__version__ = "0.1.0"
