import argparse
import asyncio
import importlib
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import colorlog

from apple_health import __version__ as _PACKAGE_VERSION
from apple_health.config import Settings, load_settings
from apple_health.core.enums import OutputFormat
from apple_health.core.query.formatting import format_result
from apple_health.errors import HealthDataError
from apple_health.service import HealthDataService

OUTPUT_FORMAT_CHOICES = [f.value for f in OutputFormat]


def setup_logging(
    verbose: bool = False, warnings_only: bool = False, errors_only: bool = False
) -> None:
    logger = logging.getLogger()
    for h in list(logger.handlers):
        logger.removeHandler(h)
    log_format = (
        "%(asctime)s:%(levelname)s:%(name)s in %(filename)s:%(funcName)s:%(lineno)d: %(message)s"
    )
    log_colors = {
        "DEBUG": "cyan",
        "INFO": "green",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "bold_red",
    }
    # stdout carries command output
    stream_handler = colorlog.StreamHandler(sys.stderr)
    formatter = colorlog.ColoredFormatter(f"%(log_color)s{log_format}", log_colors=log_colors)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if errors_only:
        logger.setLevel(logging.ERROR)
    elif warnings_only:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    """Resolve settings from --config, the environment and global flags.

    Raises:
        FileNotFoundError / ValueError: On an unreadable or invalid config.
    """
    return load_settings(
        getattr(args, "config", None),
        data_dir=getattr(args, "data_dir", None),
        max_memory_mb=getattr(args, "max_memory_mb", None),
        cache_size=getattr(args, "cache_size", None),
        rolling_window_days=getattr(args, "window_days", None),
        views_file=getattr(args, "views_file", None),
    )


def _parse_params(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """Parse repeated ``key=value`` flags; values that look numeric become numbers."""
    params: Dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --param '{pair}', expected key=value")
        value: Any = raw
        try:
            value = int(raw)
        except ValueError:
            try:
                value = float(raw)
            except ValueError:
                pass
        params[key.strip()] = value
    return params


def _print_payload(payload: Any) -> None:
    if isinstance(payload, str):
        sys.stdout.write(payload if payload.endswith("\n") else payload + "\n")
    else:
        print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _with_service(settings: Settings, action):
    service = HealthDataService.from_settings(settings)
    await service.start(monitor=False)
    try:
        return await action(service)
    finally:
        await service.close()


def cmd_catalog(args: argparse.Namespace) -> int:
    """List discovered datasets, without loading them."""
    try:
        settings = _settings_from_args(args)
    except (FileNotFoundError, ValueError) as e:
        logging.error("%s", e)
        return 2

    async def _list(service: HealthDataService) -> List[Dict[str, Any]]:
        return [
            service.catalog.get_entry(name).to_dict() for name in service.catalog.all_tables()
        ]

    try:
        entries = asyncio.run(_with_service(settings, _list))
    except HealthDataError as e:
        logging.error("%s", e)
        return 2
    if not entries:
        logging.warning("No datasets found in %s", settings.data_dir)
        return 1
    if args.json:
        _print_payload(entries)
    else:
        for entry in entries:
            print(f"{entry['name']}\t{entry['source_path']}")
    logging.info("Found %d datasets in %s", len(entries), settings.data_dir)
    return 0


def cmd_query(args: argparse.Namespace) -> int:
    """Run one SQL query and print the result."""
    try:
        settings = _settings_from_args(args)
        params = _parse_params(args.param)
    except (FileNotFoundError, ValueError) as e:
        logging.error("%s", e)
        return 2

    async def _run(service: HealthDataService):
        return await service.query(args.sql, params or None)

    try:
        result = asyncio.run(_with_service(settings, _run))
    except HealthDataError as e:
        logging.error("%s", e)
        return 2
    _print_payload(format_result(result, OutputFormat(args.format)))
    logging.info("%d rows in %dms", result.row_count, result.execution_time_ms)
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    """Report what a query touches, without executing it."""
    try:
        settings = _settings_from_args(args)
    except (FileNotFoundError, ValueError) as e:
        logging.error("%s", e)
        return 2

    async def _run(service: HealthDataService):
        return service.analyze(args.sql)

    try:
        analysis = asyncio.run(_with_service(settings, _run))
    except HealthDataError as e:
        logging.error("%s", e)
        return 2
    _print_payload(analysis.to_dict())
    return 0


def cmd_describe(args: argparse.Namespace) -> int:
    try:
        settings = _settings_from_args(args)
    except (FileNotFoundError, ValueError) as e:
        logging.error("%s", e)
        return 2

    async def _run(service: HealthDataService):
        return await service.describe_table(args.table)

    try:
        info = asyncio.run(_with_service(settings, _run))
    except HealthDataError as e:
        logging.error("%s", e)
        return 2
    _print_payload(info)
    return 0


def cmd_mcp_server(args: argparse.Namespace) -> int:
    """Start the MCP server.

    Default: stdio. If --port is set, run HTTP transport at host:port.
    """
    try:
        mcp_server = importlib.import_module("apple_health.interfaces.mcp.server")
    except (ModuleNotFoundError, AttributeError, ImportError, RuntimeError) as e:
        logging.error(
            "Failed to import MCP server. Ensure 'mcp' is installed. Error: %s",
            e,
        )
        return 3
    try:
        settings = _settings_from_args(args)
    except (FileNotFoundError, ValueError) as e:
        logging.error("%s", e)
        return 2
    port = getattr(args, "port", None)
    host = getattr(args, "host", None) or "127.0.0.1"
    try:
        if port:
            mcp_server.run_http(settings, host=host, port=int(port))
        else:
            mcp_server.run(settings)
    except KeyboardInterrupt:
        pass
    except HealthDataError as e:
        logging.error("%s", e)
        return 2
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="apple-health",
        description=f"Apple Health Tools (v{_PACKAGE_VERSION})",
    )
    p.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    p.add_argument(
        "--warnings-only",
        action="store_true",
        help="Show only warnings and errors (overrides --verbose)",
    )
    p.add_argument(
        "--errors-only",
        action="store_true",
        help="Show only errors (overrides --warnings-only and --verbose)",
    )
    p.add_argument("--config", default=None, help="Path to a YAML settings file")
    p.add_argument(
        "--data-dir",
        default=None,
        help="Directory of CSV exports (defaults to ./data/health or HEALTH_DATA_DIR)",
    )
    p.add_argument("--max-memory-mb", type=float, default=None, help="Memory ceiling in MB")
    p.add_argument("--cache-size", type=int, default=None, help="Maximum cached query results")
    p.add_argument(
        "--window-days",
        type=int,
        default=None,
        help="Rolling window of days loaded per table (default 90)",
    )
    p.add_argument("--views-file", default=None, help="YAML file with extra view definitions")

    sub = p.add_subparsers(dest="command", required=True)

    p_catalog = sub.add_parser("catalog", help="List datasets found in the data directory")
    p_catalog.add_argument("--json", action="store_true", help="Print entries as JSON")
    p_catalog.set_defaults(func=cmd_catalog)

    p_query = sub.add_parser("query", help="Run a SQL query against the datasets")
    p_query.add_argument("sql", help="SQL SELECT statement")
    p_query.add_argument(
        "--format",
        choices=OUTPUT_FORMAT_CHOICES,
        default=OutputFormat.JSON.value,
        help="Output format (default json)",
    )
    p_query.add_argument(
        "--param",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Bind a :KEY placeholder (repeatable)",
    )
    p_query.set_defaults(func=cmd_query)

    p_analyze = sub.add_parser("analyze", help="Show tables, estimates and hints for a query")
    p_analyze.add_argument("sql", help="SQL SELECT statement")
    p_analyze.set_defaults(func=cmd_analyze)

    p_describe = sub.add_parser("describe", help="Load a table and show its columns")
    p_describe.add_argument("table", help="Table name")
    p_describe.set_defaults(func=cmd_describe)

    p_mcp = sub.add_parser("mcp-server", help="Run the MCP server (stdio or HTTP)")
    p_mcp.add_argument(
        "--port",
        default=None,
        help="If set, run HTTP transport on the given port",
    )
    p_mcp.add_argument(
        "--host",
        default=None,
        help="Host to bind for HTTP transport (default 127.0.0.1)",
    )
    p_mcp.set_defaults(func=cmd_mcp_server)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        verbose=bool(args.verbose),
        warnings_only=bool(getattr(args, "warnings_only", False)),
        errors_only=bool(getattr(args, "errors_only", False)),
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
