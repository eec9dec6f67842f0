"""Tests for the MCP server tools."""

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakes import VECTOR_INDEX, FakeProviderFactory

from mongodb_mcp import server as server_module
from mongodb_mcp.connection import ConnectionManager
from mongodb_mcp.errors import ErrorCode, ExportNotFoundError
from mongodb_mcp.search import VectorSearchEmbeddingsManager
from mongodb_mcp.server import _create_server
from mongodb_mcp.session import Session
from mongodb_mcp.session_store import SessionStore


def _get_tool_names(server):
    """Extract registered tool names from a FastMCP server."""
    return set(server._tool_manager._tools.keys())


def _context(sessions: SessionStore, session_id: str = "client-a"):
    ctx = MagicMock()
    ctx.session_id = session_id
    ctx.request_context.lifespan_context = {"sessions": sessions}
    return ctx


@pytest.fixture
def factory():
    return FakeProviderFactory(search_indexes=[VECTOR_INDEX], docs=[{"a": 1}, {"a": 2}])


@pytest.fixture
def serve(settings, factory):
    """Run a session store backed by the fake driver for the duration of a test."""

    @asynccontextmanager
    async def _serve(embeddings_provider=None):
        def _new_session():
            connection_manager = ConnectionManager(settings, provider_factory=factory)
            return Session(
                settings,
                connection_manager=connection_manager,
                embeddings_manager=VectorSearchEmbeddingsManager(
                    settings, connection_manager, embeddings_provider=embeddings_provider
                ),
            )

        sessions = SessionStore(settings, session_factory=_new_session)
        try:
            yield sessions
        finally:
            await sessions.close_all()

    return _serve


def test_mcp_server_created():
    server = _create_server()
    assert server.name == "mongodb-mcp"


def test_tools_registered():
    tools = _get_tool_names(_create_server())
    assert {
        "connect",
        "disconnect",
        "connection_status",
        "export",
        "insert_many",
        "generate_embeddings",
    } <= tools


class TestClientSessions:
    @pytest.mark.asyncio
    async def test_each_client_gets_its_own_connection(self, serve):
        async with serve() as sessions:
            first, second = _context(sessions, "client-a"), _context(sessions, "client-b")

            await server_module._connect("mongodb://localhost:27017", first)

            assert (await server_module._connection_status(first))["state"] == "connected"
            assert (await server_module._connection_status(second))["state"] == "disconnected"
            assert len(sessions) == 2

    @pytest.mark.asyncio
    async def test_exports_are_scoped_to_their_client(self, serve):
        async with serve() as sessions:
            owner, other = _context(sessions, "client-a"), _context(sessions, "client-b")
            await server_module._connect("mongodb://localhost:27017", owner)
            await server_module._export("db", "coll", "Mine", owner, export_name="mine")
            session = await sessions.get_session("client-a")
            await session.exports_manager._export_tasks["mine.json"]

            content = await server_module._read_export("mine.json", owner)
            assert json.loads(content) == [{"a": 1}, {"a": 2}]
            with pytest.raises(ExportNotFoundError):
                await server_module._read_export("mine.json", other)

    @pytest.mark.asyncio
    async def test_configured_connection_is_opened_per_client(self, settings, factory):
        configured = settings.model_copy(update={"connection_string": "mongodb://localhost:27017"})
        sessions = SessionStore(
            configured,
            session_factory=lambda: Session(
                configured,
                connection_manager=ConnectionManager(configured, provider_factory=factory),
            ),
        )
        try:
            status = await server_module._connection_status(_context(sessions, "client-a"))
            await server_module._connection_status(_context(sessions, "client-b"))

            assert status["state"] == "connected"
            assert len(factory.calls) == 2
        finally:
            await sessions.close_all()


class TestConnectTools:
    @pytest.mark.asyncio
    async def test_connect_and_status(self, serve):
        async with serve() as sessions:
            ctx = _context(sessions)
            result = await server_module._connect("mongodb://localhost:27017", ctx)

            assert result["status"] == "ok"
            assert result["state"] == "connected"
            status = await server_module._connection_status(ctx)
            assert status["search_supported"] is True

            result = await server_module._disconnect(ctx)
            assert result["state"] == "disconnected"

    @pytest.mark.asyncio
    async def test_invalid_connection_string_returns_guidance(self, serve):
        async with serve() as sessions:
            result = await server_module._connect("mongodb://localhost:xxxxx", _context(sessions))

            assert result["status"] == "error"
            assert result["code"] == ErrorCode.MISCONFIGURED_CONNECTION_STRING
            assert result["messages"][0].startswith("The configured connection string is not valid.")


class TestExportTool:
    @pytest.mark.asyncio
    async def test_requires_connection(self, serve):
        async with serve() as sessions:
            result = await server_module._export("db", "coll", "All documents", _context(sessions))

            assert result["status"] == "error"
            assert result["code"] == ErrorCode.NOT_CONNECTED
            assert 'following tools: "connect"' in result["messages"][1]

    @pytest.mark.asyncio
    async def test_export_becomes_readable(self, serve):
        async with serve() as sessions:
            ctx = _context(sessions)
            await server_module._connect("mongodb://localhost:27017", ctx)

            result = await server_module._export(
                "db", "coll", "All documents", ctx, export_name="everything"
            )

            assert result["export_uri"] == "exported-data://everything.json"
            session = await sessions.get_session("client-a")
            await session.exports_manager._export_tasks["everything.json"]
            read = await session.exports_manager.read_export("everything.json")
            assert read.docs_transformed == 2

    @pytest.mark.asyncio
    async def test_default_export_name(self, serve):
        async with serve() as sessions:
            ctx = _context(sessions)
            await server_module._connect("mongodb://localhost:27017", ctx)

            result = await server_module._export(
                "db", "coll", "Pipeline", ctx, pipeline=[{"$match": {}}]
            )

            assert result["export_name"].startswith("db.coll.")
            assert result["export_name"].endswith(".json")

    @pytest.mark.asyncio
    async def test_unknown_format_is_reported(self, serve):
        async with serve() as sessions:
            ctx = _context(sessions)
            await server_module._connect("mongodb://localhost:27017", ctx)

            result = await server_module._export("db", "coll", "Bad", ctx, json_export_format="yaml")

            assert result["status"] == "error"
            assert "export failed" in result["error"]


class TestInsertManyTool:
    @pytest.mark.asyncio
    async def test_valid_documents_are_inserted(self, serve, factory):
        async with serve() as sessions:
            ctx = _context(sessions)
            await server_module._connect("mongodb://localhost:27017", ctx)

            result = await server_module._insert_many(
                "db", "movies", [{"title": "a", "embedding": [0.1, 0.2, 0.3]}], ctx
            )

            assert result == {"status": "ok", "inserted_count": 1, "inserted_ids": ["0"]}
            assert factory.providers[0].inserted[0]["title"] == "a"

    @pytest.mark.asyncio
    async def test_wrong_embeddings_are_rejected(self, serve, factory):
        async with serve() as sessions:
            ctx = _context(sessions)
            await server_module._connect("mongodb://localhost:27017", ctx)

            result = await server_module._insert_many("db", "movies", [{"embedding": [1, 2]}], ctx)

            assert result["status"] == "error"
            assert result["code"] == ErrorCode.VECTOR_SEARCH_INVALID_QUERY
            assert "Error: dimension-mismatch" in result["error"]
            assert factory.providers[0].inserted == []

    @pytest.mark.asyncio
    async def test_extended_json_is_parsed(self, serve, factory):
        async with serve() as sessions:
            ctx = _context(sessions)
            await server_module._connect("mongodb://localhost:27017", ctx)

            await server_module._insert_many(
                "db",
                "movies",
                [{"_id": {"$oid": "65a1b2c3d4e5f60718293a4b"}, "n": {"$numberLong": "5"}}],
                ctx,
            )

            inserted = factory.providers[0].inserted[0]
            assert str(inserted["_id"]) == "65a1b2c3d4e5f60718293a4b"
            assert inserted["n"] == 5


class TestGenerateEmbeddingsTool:
    @pytest.mark.asyncio
    async def test_without_provider_reports_error(self, serve):
        async with serve() as sessions:
            ctx = _context(sessions)
            await server_module._connect("mongodb://localhost:27017", ctx)

            result = await server_module._generate_embeddings(["hello"], ctx)

            assert result["status"] == "error"
            assert result["code"] == ErrorCode.NO_EMBEDDINGS_PROVIDER_CONFIGURED

    @pytest.mark.asyncio
    async def test_embeddings_come_from_provider(self, serve):
        provider = MagicMock()
        provider.embed = AsyncMock(return_value=[[0.1, 0.2, 0.3]])
        async with serve(embeddings_provider=provider) as sessions:
            ctx = _context(sessions)
            await server_module._connect("mongodb://localhost:27017", ctx)

            result = await server_module._generate_embeddings(
                ["hello"], ctx, model="voyage-3-lite", output_dimension=3
            )

            assert result == {"status": "ok", "embeddings": [[0.1, 0.2, 0.3]]}
            model, values, parameters = provider.embed.call_args.args
            assert model == "voyage-3-lite"
            assert values == ["hello"]
            assert parameters["output_dimension"] == 3
            assert parameters["input_type"] == "query"
