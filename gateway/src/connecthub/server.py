"""Command line entry point for the ConnectHub gateway."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .config import GatewayConfig
from .logging_config import configure_logging
from .ws_transport import create_app

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="connecthub", description="ConnectHub messaging and call signaling gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--db", dest="db_path", default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument(
        "--ping-interval",
        dest="ping_interval_s",
        type=int,
        default=None,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument(
        "--ring-timeout",
        dest="ring_timeout_s",
        type=float,
        default=None,
        help="Seconds an unanswered call rings before it is missed (0 disables)",
    )
    serve_parser.add_argument(
        "--tokens-file",
        default=None,
        help="JSON object mapping bearer tokens to identities; without it declared identities are trusted",
    )
    serve_parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, ...)")
    serve_parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    return parser


def config_from_args(args: argparse.Namespace, base: GatewayConfig | None = None) -> GatewayConfig:
    base = base or GatewayConfig.from_env()
    return base.with_overrides(
        host=args.host,
        port=args.port,
        db_path=args.db_path,
        ping_interval_s=args.ping_interval_s,
        ring_timeout_s=args.ring_timeout_s,
        tokens_file=args.tokens_file,
        log_level=args.log_level,
        log_file=args.log_file,
    )


def _run_serve(config: GatewayConfig) -> int:
    configure_logging(config.log_level, log_file=config.log_file, log_format=config.log_format)
    app = create_app(config)
    logger.info(
        "serving on %s:%s (db=%s, ring timeout %ss)",
        config.host,
        config.port,
        config.db_path or "memory",
        config.ring_timeout_s,
    )
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _run_serve(config_from_args(args))
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
