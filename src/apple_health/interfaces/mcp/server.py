"""
MCP server exposing SQL access to Apple Health CSV exports.

Tools:
 - health_query
 - health_schema
 - describe_table
 - analyze_query
 - memory_status
 - evict_tables
 - clear_cache
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sys
from typing import Any, Dict, Optional, Union

try:
    from mcp.server.fastmcp import FastMCP
except Exception as exc:
    raise RuntimeError(
        "The 'mcp' package is required for the MCP server. Install with: pip install mcp"
    ) from exc

from apple_health.config import Settings, load_settings
from apple_health.core.enums import OutputFormat
from apple_health.core.query.formatting import format_result
from apple_health.errors import HealthDataError
from apple_health.service import HealthDataService


_SERVICE: HealthDataService | None = None
_SERVER = FastMCP("apple-health-tools")

# Configure logging for MCP server
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr)  # MCP uses stdout for protocol
    ],
)
logger = logging.getLogger(__name__)

_FORBIDDEN_RE = re.compile(
    r"\b(drop|delete|truncate|insert|update|alter|create|replace|attach|copy)\b",
    re.IGNORECASE,
)
_SELECT_RE = re.compile(r"\b(select|with)\b", re.IGNORECASE)


def validate_read_only_query(query: str) -> None:
    """Reject anything that is not a plain read query.

    The query layer itself does not enforce this; it is the tool layer's job.

    Raises:
        ValueError: If the query is empty, contains a write keyword, or does
            not select anything.
    """
    if not query or not query.strip():
        raise ValueError("Query is empty")
    match = _FORBIDDEN_RE.search(query)
    if match:
        raise ValueError(f"Query contains forbidden keyword: {match.group(1).lower()}")
    if not _SELECT_RE.search(query):
        raise ValueError("Only SELECT queries are allowed")


def _service() -> HealthDataService:
    if _SERVICE is None:
        raise RuntimeError("Health data service is not running")
    return _SERVICE


def _jsonable(payload: Any) -> Any:
    """Round-trip through JSON so timestamps and dates become strings."""
    return json.loads(json.dumps(payload, default=str))


# -------------------------
# MARK: Query Tools
# -------------------------


@_SERVER.tool(
    "health_query",
    title="Query health data",
    description=(
        "Execute a read-only SQL SELECT over Apple Health tables. Tables load on first use. "
        "Parameters: query (str), format ('json'|'csv'|'summary')."
    ),
)
async def health_query(query: str, format: str = "json") -> Union[Dict[str, Any], str]:
    """Run a query through the rewrite → cache → execute pipeline."""
    try:
        validate_read_only_query(query)
        fmt = OutputFormat(format.lower())
        result = await _service().query(query)
        shaped = format_result(result, fmt)
        return shaped if isinstance(shaped, str) else _jsonable(shaped)
    except (ValueError, HealthDataError) as e:
        return {"error": str(e), "query": query}
    except Exception as e:  # pragma: no cover
        logger.error("Error in health_query: %s", e)
        return {"error": str(e)}


@_SERVER.tool(
    "analyze_query",
    title="Analyze query",
    description=(
        "Report tables and views a query references, an estimated row count, and "
        "suggestions for common performance problems. Does not execute the query."
    ),
)
async def analyze_query(query: str) -> Dict[str, Any]:
    try:
        return _service().analyze(query).to_dict()
    except Exception as e:  # pragma: no cover
        logger.error("Error in analyze_query: %s", e)
        return {"error": str(e)}


# -------------------------
# MARK: Schema Tools
# -------------------------


@_SERVER.tool(
    "health_schema",
    title="List health tables",
    description="List available tables, views, table groups and query tips.",
)
async def health_schema() -> Dict[str, Any]:
    try:
        return _jsonable(_service().schema_overview())
    except Exception as e:  # pragma: no cover
        logger.error("Error in health_schema: %s", e)
        return {"error": str(e)}


@_SERVER.tool(
    "describe_table",
    title="Describe table",
    description="Load a table and return its columns, row count and date range. Parameters: table (str).",
)
async def describe_table(table: str) -> Dict[str, Any]:
    try:
        return _jsonable(await _service().describe_table(table))
    except HealthDataError as e:
        return {"error": str(e), "table": table}
    except Exception as e:  # pragma: no cover
        logger.error("Error in describe_table: %s", e)
        return {"error": str(e)}


# -------------------------
# MARK: Operations Tools
# -------------------------


@_SERVER.tool(
    "memory_status",
    title="Memory and cache status",
    description="Estimated memory use, loaded tables and query cache statistics.",
)
async def memory_status() -> Dict[str, Any]:
    service = _service()
    return {
        "memory": service.memory_stats().to_dict(),
        "engine_frame_bytes": service.engine.estimated_size_bytes(),
        "cache": service.cache_stats(),
        "loaded_tables": service.catalog.tables_by_last_access(),
    }


@_SERVER.tool(
    "evict_tables",
    title="Evict tables",
    description="Unload the N least recently used tables. Parameters: count (int).",
)
async def evict_tables(count: int = 1) -> Dict[str, Any]:
    evicted = await _service().force_evict(int(count))
    return {"evicted": evicted, "count": len(evicted)}


@_SERVER.tool("clear_cache", title="Clear query cache")
async def clear_cache() -> Dict[str, Any]:
    _service().clear_cache()
    return {"cleared": True}


# Transport functions
async def _serve(settings: Settings, transport) -> None:
    global _SERVICE
    _SERVICE = HealthDataService.from_settings(settings)
    await _SERVICE.start()
    try:
        await transport()
    finally:
        await _SERVICE.close()
        _SERVICE = None


def run(settings: Optional[Settings] = None) -> None:
    """Run MCP server over stdio."""
    settings = settings or load_settings()
    logger.info("Starting MCP server with data dir: %s", settings.data_dir)
    logger.info("Memory ceiling: %sMB, cache size: %d", settings.max_memory_mb, settings.cache_size)
    asyncio.run(_serve(settings, _SERVER.run_stdio_async))


async def _run_http(host: str, port: int) -> None:
    """Start HTTP server with explicit uvicorn configuration."""
    try:
        import uvicorn
    except ImportError:
        raise RuntimeError("uvicorn is required for HTTP mode: pip install uvicorn")

    app = _SERVER.streamable_http_app()
    config = uvicorn.Config(
        app,
        host=host,
        port=int(port),
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()


def run_http(
    settings: Optional[Settings] = None, *, host: str = "127.0.0.1", port: int = 8765
) -> None:
    """Run MCP server over HTTP."""
    settings = settings or load_settings()
    logger.info("Starting HTTP MCP server on %s:%d", host, port)
    logger.info("Data dir: %s", settings.data_dir)
    asyncio.run(_serve(settings, lambda: _run_http(host, port)))
