"""Per-client session tying the connection, exports and embeddings together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal, Protocol, runtime_checkable

from bson import ObjectId
from mongodb_mcp_models import AtlasClusterConnectionInfo

from mongodb_mcp.config import Settings
from mongodb_mcp.connection import (
    CONNECTION_CLOSE,
    CONNECTION_ERROR,
    CONNECTION_SUCCESS,
    CONNECTION_TIME_OUT,
    ConnectionManager,
    ConnectionSettings,
    ConnectionStateConnected,
    ConnectionStateConnecting,
    ConnectionStateErrored,
    ConnectionStringInfo,
    connection_string_credentials,
)
from mongodb_mcp.driver import ServiceProvider
from mongodb_mcp.errors import AuthFlowError, NotConnectedError, SearchNotSupportedError
from mongodb_mcp.events import EventEmitter
from mongodb_mcp.exports import ExportsManager
from mongodb_mcp.keychain import Keychain
from mongodb_mcp.logs import LogId, log_extra
from mongodb_mcp.search import VectorSearchEmbeddingsManager

logger = logging.getLogger(__name__)

ClusterConnection = Literal[
    "connected", "connecting", "disconnected", "connected-to-other-cluster", "unknown"
]


@runtime_checkable
class DatabaseUserAdmin(Protocol):
    """Deletes the temporary database users created for managed clusters."""

    async def delete_database_user(
        self, project_id: str, username: str, database_name: str = "admin"
    ) -> None: ...


class Session:
    """One MCP client's view of the server.

    Events: ``connect``, ``disconnect``, ``connection-error`` (with the
    errored state) and ``close``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        connection_manager: ConnectionManager | None = None,
        exports_manager: ExportsManager | None = None,
        embeddings_manager: VectorSearchEmbeddingsManager | None = None,
        keychain: Keychain | None = None,
        user_admin: DatabaseUserAdmin | None = None,
        session_id: str | None = None,
    ):
        self.session_id = session_id or str(ObjectId())
        self.settings = settings
        self.keychain = keychain or Keychain()
        self.keychain.register(settings.voyage_api_key, "secret")
        self.user_admin = user_admin
        self.connection_manager = connection_manager or ConnectionManager(
            settings, keychain=self.keychain
        )
        self.exports_manager = exports_manager or ExportsManager.init(settings, self.session_id)
        self.embeddings_manager = embeddings_manager or VectorSearchEmbeddingsManager(
            settings, self.connection_manager
        )
        self.events = EventEmitter()
        self.mcp_client: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()

        manager_events = self.connection_manager.events
        manager_events.on(CONNECTION_SUCCESS, lambda *_: self.events.emit("connect"))
        manager_events.on(CONNECTION_CLOSE, lambda *_: self.events.emit("disconnect"))
        manager_events.on(CONNECTION_ERROR, lambda state: self.events.emit("connection-error", state))
        manager_events.on(
            CONNECTION_TIME_OUT, lambda state: self.events.emit("connection-error", state)
        )

    def set_mcp_client(
        self, name: str | None = None, version: str | None = None, title: str | None = None
    ) -> None:
        self.mcp_client = {
            "name": name or "unknown",
            "version": version or "unknown",
            "title": title or "unknown",
        }
        self.connection_manager.set_client_name(self.mcp_client["name"])

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect_to_mongodb(self, settings: ConnectionSettings | str) -> None:
        if isinstance(settings, str):
            settings = ConnectionSettings(connection_string=settings)

        username, password = connection_string_credentials(settings.connection_string)
        self.keychain.register(password or "", "password")
        self.keychain.register(username or "", "user")
        if settings.atlas is not None:
            self.keychain.register(settings.atlas.username, "user")

        await self.connection_manager.connect(settings)

    async def connect_to_configured_connection(self) -> None:
        """Connect using the connection string from the settings."""
        if not self.settings.connection_string:
            raise NotConnectedError("No connection string is configured")
        await self.connect_to_mongodb(self.settings.connection_string)

    async def disconnect(self) -> None:
        atlas_cluster = self.connected_atlas_cluster
        await self.connection_manager.close()

        if atlas_cluster and atlas_cluster.username and self.user_admin is not None:
            task = asyncio.create_task(self._delete_temporary_user(atlas_cluster))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _delete_temporary_user(self, atlas_cluster: AtlasClusterConnectionInfo) -> None:
        try:
            await self.user_admin.delete_database_user(
                atlas_cluster.project_id, atlas_cluster.username, "admin"
            )
        except Exception as e:
            logger.error(
                f"Error deleting previous database user: {e}",
                extra=log_extra(LogId.ATLAS_DELETE_DATABASE_USER_FAILURE, "session"),
            )

    async def close(self) -> None:
        await self.disconnect()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.exports_manager.close()
        self.keychain.clear_all_secrets()
        self.events.emit("close")

    @property
    def is_connected(self) -> bool:
        return isinstance(self.connection_manager.current_connection_state, ConnectionStateConnected)

    @property
    def service_provider(self) -> ServiceProvider:
        """The live handle.

        Raises:
            AuthFlowError: An OIDC login is pending or failed.
            NotConnectedError: There is no connection.
        """
        state = self.connection_manager.current_connection_state
        if isinstance(state, ConnectionStateConnected):
            return state.service_provider
        if isinstance(state, ConnectionStateConnecting):
            raise AuthFlowError("The OIDC login for this connection has not been completed yet")
        if (
            isinstance(state, ConnectionStateErrored)
            and state.connection_string_info is not None
            and state.connection_string_info.is_oidc
        ):
            raise AuthFlowError(f"The OIDC login failed: {state.error_reason}")
        raise NotConnectedError("Not connected to MongoDB")

    @property
    def connected_atlas_cluster(self) -> AtlasClusterConnectionInfo | None:
        return getattr(self.connection_manager.current_connection_state, "atlas", None)

    @property
    def connection_string_info(self) -> ConnectionStringInfo | None:
        return getattr(
            self.connection_manager.current_connection_state, "connection_string_info", None
        )

    async def is_search_supported(self) -> bool:
        state = self.connection_manager.current_connection_state
        if isinstance(state, ConnectionStateConnected):
            return await state.is_search_supported()
        return False

    async def assert_search_supported(self) -> None:
        if not await self.is_search_supported():
            raise SearchNotSupportedError("Atlas Search is not supported in the current cluster.")

    def query_cluster_connection(self, project_id: str, cluster_name: str) -> ClusterConnection:
        """Relate the current connection to a managed cluster.

        Callers polling a cluster connect re-check this after every await
        before trusting the state they observe.
        """
        atlas = self.connected_atlas_cluster
        if atlas is None:
            return "connected-to-other-cluster" if self.is_connected else "disconnected"
        if atlas.project_id != project_id or atlas.cluster_name != cluster_name:
            return "connected-to-other-cluster"

        state = self.connection_manager.current_connection_state
        if isinstance(state, ConnectionStateConnected):
            return "connected"
        if isinstance(state, ConnectionStateErrored):
            logger.debug(
                f"error querying cluster: {state.error_reason}",
                extra=log_extra(LogId.ATLAS_CONNECT_FAILURE, "query_cluster_connection"),
            )
            return "unknown"
        return "connecting"

    def status(self) -> dict[str, Any]:
        """Snapshot of the connection for tools and diagnostics."""
        state = self.connection_manager.current_connection_state
        info = self.connection_string_info
        status: dict[str, Any] = {"session_id": self.session_id, "state": state.tag}
        if info is not None:
            status["auth_type"] = info.auth_type
            status["host_type"] = info.host_type
        if isinstance(state, ConnectionStateConnecting) and state.oidc_login_url:
            status["oidc_login_url"] = state.oidc_login_url
            status["oidc_user_code"] = state.oidc_user_code
        if isinstance(state, ConnectionStateErrored):
            status["error"] = state.error_reason
        atlas = self.connected_atlas_cluster
        if atlas is not None:
            status["atlas"] = {"project_id": atlas.project_id, "cluster_name": atlas.cluster_name}
        return status
