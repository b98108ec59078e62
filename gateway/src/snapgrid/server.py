"""Command line entry point for the messaging gateway."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from typing import TextIO

from aiohttp import web

from .app import create_app
from .config import BROADCAST_GLOBAL, BROADCAST_PARTICIPANTS, GatewayConfig, load_config_from_env
from .sessions import SQLiteSessionStore
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _apply_overrides(config: GatewayConfig, args: argparse.Namespace) -> GatewayConfig:
    overrides = {
        name: getattr(args, name)
        for name in ("host", "port", "db_path", "ping_interval_s", "change_broadcast", "log_level")
        if getattr(args, name, None) is not None
    }
    return dataclasses.replace(config, **overrides)


def _run_serve(config: GatewayConfig) -> int:
    _configure_logging(config.log_level)
    logger.info(
        "starting gateway on %s:%s (store=%s, change broadcast=%s)",
        config.host,
        config.port,
        config.db_path or "memory",
        config.change_broadcast,
    )
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def _run_session(config: GatewayConfig, user_id: str, output: TextIO) -> int:
    if config.db_path is None:
        print("session requires --db (or SNAPGRID_DB_PATH)", file=sys.stderr)
        return 2
    backend = SQLiteBackend(config.db_path)
    try:
        session = SQLiteSessionStore(backend, ttl_ms=config.session_ttl_ms).create(user_id)
    finally:
        backend.close()
    output.write(session.session_token + "\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Direct-messaging gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        dest="ping_interval_s",
        type=int,
        default=None,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument(
        "--change-broadcast",
        choices=[BROADCAST_PARTICIPANTS, BROADCAST_GLOBAL],
        default=None,
        help="Who receives conversationsChanged after a send",
    )
    serve_parser.add_argument("--log-level", default=None, type=str.upper, help="Logging level")
    serve_parser.add_argument("--db", dest="db_path", type=str, default=None, help="Path to SQLite database")

    session_parser = subparsers.add_parser("session", help="Issue a session token for a user")
    session_parser.add_argument("user_id", help="User identity the token resolves to")
    session_parser.add_argument("--db", dest="db_path", type=str, default=None, help="Path to SQLite database")

    args = parser.parse_args(argv)
    config = _apply_overrides(load_config_from_env(), args)

    if args.command == "serve":
        return _run_serve(config)
    return _run_session(config, args.user_id, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
