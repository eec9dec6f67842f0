"""Service provider backed by the synchronous PyMongo client.

Every blocking driver call runs through ``asyncio.to_thread`` so the MCP event
loop is never stalled, including while an OIDC login waits on the user.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pymongo import MongoClient

logger = logging.getLogger(__name__)

DEFAULT_DRIVER_OPTIONS: dict[str, Any] = {
    "readConcernLevel": "local",
    "readPreference": "secondaryPreferred",
    "w": "majority",
    "timeoutMS": 30_000,
}


class ThreadedCursor:
    """Async iterator over a PyMongo cursor, fetched in batches off the loop.

    The underlying cursor is created lazily by ``factory`` so commands that
    execute eagerly (``aggregate``) also run in a worker thread.
    """

    def __init__(self, factory: Callable[[], Any], batch_size: int = 100):
        self._factory = factory
        self._batch_size = batch_size
        self._cursor: Any = None
        self._buffer: list[dict[str, Any]] = []
        self._exhausted = False
        self._closed = False

    def __aiter__(self) -> ThreadedCursor:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if not self._buffer and not self._exhausted:
            self._buffer = await asyncio.to_thread(self._next_batch)
            self._buffer.reverse()
        if not self._buffer:
            raise StopAsyncIteration
        return self._buffer.pop()

    def _next_batch(self) -> list[dict[str, Any]]:
        if self._closed:
            self._exhausted = True
            return []
        if self._cursor is None:
            self._cursor = self._factory()
        batch: list[dict[str, Any]] = []
        for doc in self._cursor:
            batch.append(doc)
            if len(batch) >= self._batch_size:
                return batch
        self._exhausted = True
        return batch

    async def close(self) -> None:
        self._closed = True
        if self._cursor is not None:
            await asyncio.to_thread(self._cursor.close)


class PyMongoServiceProvider:
    """Live handle over a ``MongoClient``."""

    def __init__(self, client: MongoClient):
        self._client = client

    @property
    def client(self) -> MongoClient:
        return self._client

    @classmethod
    def connect(
        cls,
        connection_string: str,
        driver_options: dict[str, Any] | None = None,
    ) -> Awaitable[PyMongoServiceProvider]:
        """Build a client and return an awaitable that resolves once the server answers.

        Malformed connection strings raise here, synchronously. Network and
        authentication failures surface when the returned awaitable is awaited.
        """
        client: MongoClient = MongoClient(connection_string, connect=False, **(driver_options or {}))
        provider = cls(client)

        async def _establish() -> PyMongoServiceProvider:
            try:
                await asyncio.to_thread(client.admin.command, "ping")
            except BaseException:
                await asyncio.to_thread(client.close)
                raise
            return provider

        return _establish()

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)

    async def get_search_indexes(
        self, database: str, collection: str, index_name: str | None = None
    ) -> list[dict[str, Any]]:
        def _list() -> list[dict[str, Any]]:
            return list(self._client[database][collection].list_search_indexes(index_name))

        return await asyncio.to_thread(_list)

    def find(
        self,
        database: str,
        collection: str,
        filter: dict[str, Any] | None = None,
        *,
        projection: dict[str, Any] | None = None,
        sort: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> ThreadedCursor:
        def _factory() -> Any:
            cursor = self._client[database][collection].find(filter or {}, projection)
            if sort:
                cursor = cursor.sort(list(sort.items()))
            if limit:
                cursor = cursor.limit(limit)
            return cursor

        return ThreadedCursor(_factory)

    def aggregate(
        self, database: str, collection: str, pipeline: list[dict[str, Any]]
    ) -> ThreadedCursor:
        return ThreadedCursor(lambda: self._client[database][collection].aggregate(pipeline))

    async def insert_many(
        self, database: str, collection: str, documents: list[dict[str, Any]]
    ) -> list[Any]:
        def _insert() -> list[Any]:
            result = self._client[database][collection].insert_many(documents)
            return list(result.inserted_ids)

        return await asyncio.to_thread(_insert)
