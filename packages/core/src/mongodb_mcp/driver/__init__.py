"""Database driver seam consumed by the connection state machine."""

from typing import Any, AsyncIterator, Protocol, runtime_checkable

from mongodb_mcp.driver.oidc import (
    OIDC_AUTH_FAILED,
    OIDC_AUTH_SUCCEEDED,
    OIDC_NOTIFY_DEVICE_FLOW,
    DeviceFlowCallback,
    DeviceFlowInfo,
)
from mongodb_mcp.driver.pymongo_provider import (
    DEFAULT_DRIVER_OPTIONS,
    PyMongoServiceProvider,
    ThreadedCursor,
)


@runtime_checkable
class ExportCursor(Protocol):
    """An open result cursor that can be streamed exactly once."""

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


@runtime_checkable
class ServiceProvider(Protocol):
    """Live database handle owned by a connected state."""

    async def close(self) -> None:
        """Release every resource held by the handle."""
        ...

    async def get_search_indexes(
        self, database: str, collection: str, index_name: str | None = None
    ) -> list[dict[str, Any]]:
        """List search index definitions; raises if search is unsupported."""
        ...

    def find(
        self,
        database: str,
        collection: str,
        filter: dict[str, Any] | None = None,
        *,
        projection: dict[str, Any] | None = None,
        sort: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> ExportCursor: ...

    def aggregate(
        self, database: str, collection: str, pipeline: list[dict[str, Any]]
    ) -> ExportCursor: ...

    async def insert_many(
        self, database: str, collection: str, documents: list[dict[str, Any]]
    ) -> list[Any]: ...


__all__ = [
    "DEFAULT_DRIVER_OPTIONS",
    "DeviceFlowCallback",
    "DeviceFlowInfo",
    "ExportCursor",
    "OIDC_AUTH_FAILED",
    "OIDC_AUTH_SUCCEEDED",
    "OIDC_NOTIFY_DEVICE_FLOW",
    "PyMongoServiceProvider",
    "ServiceProvider",
    "ThreadedCursor",
]
