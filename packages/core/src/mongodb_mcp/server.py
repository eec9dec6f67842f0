"""FastMCP server for mongodb-mcp."""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from bson import json_util
from fastmcp import Context, FastMCP
from mongodb_mcp_models import JSONExportFormat

from mongodb_mcp.config import get_settings
from mongodb_mcp.connection import connection_error_handler
from mongodb_mcp.errors import MongoMCPError
from mongodb_mcp.logs import LogId, configure_logging, log_extra
from mongodb_mcp.session import Session
from mongodb_mcp.session_store import SessionStore
from mongodb_mcp.telemetry import create_tracing_middleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def server_lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Own the per-client session store for the lifetime of the server."""
    settings = get_settings()
    sessions = SessionStore(settings)
    # Secrets of every open session are redacted from the logs
    configure_logging(settings.log_level, sessions)
    sessions.start_cleanup_loop()
    logger.info("Server started", extra=log_extra(LogId.SERVER_INITIALIZED, "server"))

    try:
        yield {"sessions": sessions}
    finally:
        await sessions.close_all()
        logger.info("Sessions closed", extra=log_extra(LogId.SERVER_CLOSED, "server"))


async def get_session(ctx: Context) -> Session:
    """The session of the MCP client behind ``ctx``."""
    sessions: SessionStore = ctx.request_context.lifespan_context["sessions"]
    return await sessions.get_session(ctx.session_id)


def _error_result(session: Session, tool_name: str, error: Exception) -> dict:
    handled = connection_error_handler(error, session.connection_manager.current_connection_state)
    if handled is not None:
        return handled
    if isinstance(error, MongoMCPError):
        return {"status": "error", "error": str(error), "code": int(error.code)}
    logger.error(
        f"Tool {tool_name} failed: {error}",
        extra=log_extra(LogId.TOOL_EXECUTE_FAILURE, tool_name),
    )
    return {"status": "error", "error": f"{tool_name} failed: {error}"}


def _parse_ejson(value: Any) -> Any:
    """Turn relaxed or canonical Extended JSON sent by the client into BSON types."""
    if value is None:
        return None
    return json_util.loads(json.dumps(value))


# =============================================================================
# Tools
# =============================================================================


async def _connect(connection_string: str, ctx: Context) -> dict:
    """Connect to a MongoDB instance.

    Args:
        connection_string: mongodb:// or mongodb+srv:// connection string

    Returns:
        Connection status. OIDC logins return a pending status with the
        login URL and user code once the identity provider supplies them.
    """
    session = await get_session(ctx)
    try:
        await session.connect_to_mongodb(connection_string)
    except Exception as e:
        return _error_result(session, "connect", e)
    return {"status": "ok", **session.status()}


async def _disconnect(ctx: Context) -> dict:
    """Close the current MongoDB connection."""
    session = await get_session(ctx)
    await session.disconnect()
    return {"status": "ok", **session.status()}


async def _connection_status(ctx: Context) -> dict:
    """Describe the current connection, including a pending OIDC login."""
    session = await get_session(ctx)
    status = session.status()
    status["search_supported"] = await session.is_search_supported()
    return status


async def _export(
    database: str,
    collection: str,
    export_title: str,
    ctx: Context,
    export_name: str | None = None,
    filter: dict | None = None,
    projection: dict | None = None,
    sort: dict | None = None,
    limit: int | None = None,
    pipeline: list[dict] | None = None,
    json_export_format: str = "relaxed",
) -> dict:
    """Export the result of a find or aggregate to a readable resource.

    Args:
        database: Database name
        collection: Collection name
        export_title: Human readable description of the export
        export_name: Name of the export; defaults to the collection and a timestamp
        filter: find filter (ignored when pipeline is given)
        projection: find projection
        sort: find sort
        limit: find limit
        pipeline: Aggregation pipeline; when given, runs an aggregate instead of find
        json_export_format: 'relaxed' (default) or 'canonical' Extended JSON

    Returns:
        The export URI. The resource becomes readable once the export is ready.
    """
    session = await get_session(ctx)
    try:
        provider = session.service_provider
        if pipeline is not None:
            cursor = provider.aggregate(database, collection, _parse_ejson(pipeline))
        else:
            cursor = provider.find(
                database,
                collection,
                _parse_ejson(filter),
                projection=projection,
                sort=sort,
                limit=limit,
            )
        if not export_name:
            export_name = f"{database}.{collection}.{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        stored = await session.exports_manager.create_export(
            cursor, export_name, export_title, JSONExportFormat(json_export_format)
        )
    except Exception as e:
        return _error_result(session, "export", e)

    return {
        "status": stored.status.value,
        "export_name": stored.export_name,
        "export_uri": stored.export_uri,
        "export_path": stored.export_path,
    }


async def _insert_many(
    database: str, collection: str, documents: list[dict], ctx: Context
) -> dict:
    """Insert documents after checking embeddings against vector search indexes.

    Args:
        database: Database name
        collection: Collection name
        documents: Documents in Extended JSON

    Returns:
        Inserted ids, or the list of fields whose embeddings do not match.
    """
    session = await get_session(ctx)
    try:
        provider = session.service_provider
        docs = _parse_ejson(documents)
        await session.embeddings_manager.assert_fields_have_correct_embeddings(
            database, collection, docs
        )
        inserted_ids = await provider.insert_many(database, collection, docs)
    except Exception as e:
        return _error_result(session, "insert_many", e)

    return {
        "status": "ok",
        "inserted_count": len(inserted_ids),
        "inserted_ids": [str(i) for i in inserted_ids],
    }


async def _generate_embeddings(
    values: list[str],
    ctx: Context,
    model: str | None = None,
    input_type: str = "query",
    output_dimension: int | None = None,
) -> dict:
    """Turn text into embeddings with the configured embeddings provider.

    Args:
        values: Texts to embed
        model: Provider model; defaults to voyage-3-large
        input_type: 'query' for search input, 'document' for stored content
        output_dimension: Vector size; defaults to the configured dimensions

    Returns:
        One embedding per input value, in input order.
    """
    session = await get_session(ctx)
    parameters: dict[str, Any] = {"model": model}
    if output_dimension is not None:
        parameters["output_dimension"] = output_dimension
    try:
        embeddings = await session.embeddings_manager.generate_embeddings(
            values, parameters, input_type=input_type
        )
    except Exception as e:
        return _error_result(session, "generate_embeddings", e)
    return {"status": "ok", "embeddings": embeddings}


async def _read_export(export_name: str, ctx: Context) -> str:
    """Content of a ready export of the calling client."""
    session = await get_session(ctx)
    result = await session.exports_manager.read_export(export_name)
    return result.content


# =============================================================================
# Server Creation
# =============================================================================


def _create_server() -> FastMCP:
    server = FastMCP(
        name="mongodb-mcp",
        lifespan=server_lifespan,
        instructions=(
            "MongoDB server. Use `connect` with a connection string the user gave you, "
            "then `export` or `insert_many`. Read exports through their exported-data:// URI. "
            "`generate_embeddings` turns text into vectors when an embeddings provider is configured."
        ),
    )

    @server.resource("config://config", mime_type="application/json")
    def get_config() -> str:
        """Server configuration with credentials redacted."""
        return json.dumps(get_settings().redacted(), default=str, indent=2)

    server.resource("exported-data://{export_name}", mime_type="application/json")(_read_export)

    server.tool(name="connect")(_connect)
    server.tool(name="disconnect")(_disconnect)
    server.tool(name="connection_status")(_connection_status)
    server.tool(name="export")(_export)
    server.tool(name="insert_many")(_insert_many)
    server.tool(name="generate_embeddings")(_generate_embeddings)

    return server


# Create the server instance
mcp = _create_server()


def main():
    """Run the MCP server."""
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        mcp.add_middleware(create_tracing_middleware())
    except Exception as e:
        logger.debug(f"Tool instrumentation not available: {e}")

    logger.info(f"Starting mongodb-mcp ({settings.transport} transport)")

    if settings.transport == "http":
        mcp.run(
            transport="http",
            host=settings.http_host,
            port=settings.http_port,
            path=settings.http_path,
        )
    else:
        # Default: stdio for local clients
        mcp.run()


if __name__ == "__main__":
    main()
