"""Command line entry point for the reference chat gateway."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .directory import User, load_users
from .logging_utils import setup_logging
from .ws_transport import create_app

logger = logging.getLogger(__name__)

DEMO_USERS = (
    User(id="u-alice", name="Alice", email="alice@example.com", role="ADMIN"),
    User(id="u-bob", name="Bob", email="bob@example.com"),
    User(id="u-carol", name="Carol", email="carol@example.com"),
)


def _run_serve(args: argparse.Namespace) -> int:
    setup_logging(args.log_level)
    users = load_users(args.users) if args.users else list(DEMO_USERS)
    logger.info("starting gateway", extra={"host": args.host, "port": args.port, "user_count": len(users)})
    app = create_app(
        users=users,
        ping_interval_s=args.ping_interval,
        ping_miss_limit=args.ping_miss_limit,
    )
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat gateway CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--users",
        type=str,
        default=None,
        help="Path to a JSON array of users; defaults to a small demo directory",
    )
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument(
        "--ping-miss-limit",
        type=int,
        default=2,
        help="Unanswered pings before a push session is closed",
    )
    serve_parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _run_serve(args)
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
