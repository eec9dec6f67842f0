"""Connection state variants.

Exactly one of these is current for a ``ConnectionManager``. Each variant only
carries the fields that are meaningful for it, so a connected state always
has a live handle and a disconnected one never does.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from typing import ClassVar, Literal, Union

from mongodb_mcp_models import AtlasClusterConnectionInfo

from mongodb_mcp.connection.info import AuthType, ConnectionStringInfo
from mongodb_mcp.driver import ServiceProvider

# Probing a database that cannot exist is enough to learn whether the search
# index management service is reachable.
MCP_TEST_DATABASE = "#mongodb-mcp"

ConnectionTag = Literal["disconnected", "connecting", "connected", "errored"]


@dataclass(frozen=True, slots=True)
class ConnectionStateDisconnected:
    tag: ClassVar[Literal["disconnected"]] = "disconnected"


@dataclass(frozen=True, slots=True)
class ConnectionStateConnecting:
    """Waiting on an out-of-band OIDC login before the handle resolves."""

    tag: ClassVar[Literal["connecting"]] = "connecting"

    pending: asyncio.Future[ServiceProvider]
    connection_string_info: ConnectionStringInfo
    oidc_connection_type: AuthType
    atlas: AtlasClusterConnectionInfo | None = None
    oidc_login_url: str | None = None
    oidc_user_code: str | None = None

    def with_device_flow(self, login_url: str, user_code: str) -> ConnectionStateConnecting:
        return dataclasses.replace(
            self,
            connection_string_info=dataclasses.replace(
                self.connection_string_info, auth_type="oidc-device-flow"
            ),
            oidc_connection_type="oidc-device-flow",
            oidc_login_url=login_url,
            oidc_user_code=user_code,
        )


@dataclass(slots=True, eq=False)
class ConnectionStateConnected:
    tag: ClassVar[Literal["connected"]] = "connected"

    service_provider: ServiceProvider
    connection_string_info: ConnectionStringInfo = field(default_factory=ConnectionStringInfo)
    atlas: AtlasClusterConnectionInfo | None = None
    _search_supported: bool | None = field(default=None, init=False, repr=False)

    async def is_search_supported(self) -> bool:
        """Whether the cluster supports search indexes; probed once per connection."""
        if self._search_supported is None:
            try:
                await self.service_provider.get_search_indexes(MCP_TEST_DATABASE, "test")
                self._search_supported = True
            except Exception:
                self._search_supported = False
        return self._search_supported


@dataclass(frozen=True, slots=True)
class ConnectionStateErrored:
    tag: ClassVar[Literal["errored"]] = "errored"

    error_reason: str
    connection_string_info: ConnectionStringInfo | None = None
    atlas: AtlasClusterConnectionInfo | None = None


ConnectionState = Union[
    ConnectionStateDisconnected,
    ConnectionStateConnecting,
    ConnectionStateConnected,
    ConnectionStateErrored,
]
