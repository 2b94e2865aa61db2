from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import uuid

import uvicorn

from pgsub.api.http_app import build_app
from pgsub.domain.errors import PubSubError
from pgsub.logging_setup import configure_logging
from pgsub.repositories.migrations import run_migrations
from pgsub.repositories.postgres import AsyncpgPoolManager, PostgresMessageRepository
from pgsub.services.bootstrap import build_runtime_container

DEFAULT_PORT = 8000


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pgsub", description="Postgres-backed publish/subscribe")
    parser.add_argument(
        "--dsn",
        default=None,
        help="Postgres connection string (defaults to DATABASE_URL)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("migrate", help="Apply pending schema migrations")

    add_topic = commands.add_parser("add-topic", help="Register a topic")
    add_topic.add_argument("name")

    remove_topic = commands.add_parser("remove-topic", help="Remove a topic without messages")
    remove_topic.add_argument("name")

    serve = commands.add_parser("serve", help="Run the HTTP runtime")
    serve.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate startup and exit",
    )
    return parser.parse_args(argv)


async def _add_topic(dsn: str, name: str) -> None:
    pool_manager = AsyncpgPoolManager(dsn=dsn, max_size=1)
    await pool_manager.startup()
    try:
        await PostgresMessageRepository(pool_manager=pool_manager).add_topic(name=name)
    finally:
        await pool_manager.shutdown()


async def _remove_topic(dsn: str, name: str) -> None:
    pool_manager = AsyncpgPoolManager(dsn=dsn, max_size=1)
    await pool_manager.startup()
    try:
        await PostgresMessageRepository(pool_manager=pool_manager).remove_topic(name=name)
    finally:
        await pool_manager.shutdown()


def _serve(args: argparse.Namespace, run_id: str, logger: logging.Logger) -> int:
    container = build_runtime_container(run_id=run_id, database_url=args.dsn)
    logger.info("runtime initialized", extra={"run_id": run_id, "mode": container.mode})

    if args.dry_run_startup:
        logger.info("dry-run startup complete", extra={"run_id": run_id, "mode": container.mode})
        return 0

    app = build_app(run_id=run_id, api_deps=container.api_deps)
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
    return 0


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("pgsub.runtime")

    if args.command == "serve":
        return _serve(args, run_id, logger)

    dsn = args.dsn or os.getenv("DATABASE_URL")
    if not dsn:
        sys.stderr.write("ERROR: DATABASE_URL is not set\n")
        sys.stderr.write("Pass --dsn or export DATABASE_URL\n")
        return 2

    try:
        if args.command == "migrate":
            applied = asyncio.run(run_migrations(dsn=dsn))
            logger.info("migrations complete", extra={"run_id": run_id, "migration": ",".join(applied) or None})
        elif args.command == "add-topic":
            asyncio.run(_add_topic(dsn, args.name))
            logger.info("topic added", extra={"run_id": run_id, "topic": args.name})
        elif args.command == "remove-topic":
            asyncio.run(_remove_topic(dsn, args.name))
            logger.info("topic removed", extra={"run_id": run_id, "topic": args.name})
    except PubSubError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        return 1
    return 0


def cli() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    cli()
