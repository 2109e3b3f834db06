"""
Membership maintenance CLI.

Loads configuration, configures logging, and runs one maintenance command
against the configured document store:

- ``reconcile``: bring legacy user records to the multi-organization shape
- ``topics <user_id>``: print the push topics a user's devices belong to
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .config import MembershipConfig, load_config
from .membership import load_user_record, reconcile_all
from .push import push_topics
from .store import SqliteDocumentStore


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


async def _reconcile(config: MembershipConfig) -> int:
    async with SqliteDocumentStore(config.store.db_path) as store:
        return await reconcile_all(store)


async def _topics(config: MembershipConfig, user_id: str) -> list[str]:
    async with SqliteDocumentStore(config.store.db_path) as store:
        record = await load_user_record(store, user_id)
        return push_topics(record, config.push.global_topic)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="EduHub membership maintenance")
    parser.add_argument(
        "-c", "--config",
        default="eduhub-membership.yaml",
        help="Path to configuration file (default: eduhub-membership.yaml)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("reconcile", help="Migrate legacy user records")
    topics = commands.add_parser("topics", help="Print a user's push topics")
    topics.add_argument("user_id")
    return parser


def run(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("cli.config_loaded", config_path=args.config, command=args.command)

    if args.command == "reconcile":
        updated = asyncio.run(_reconcile(config))
        print(f"Reconciled {updated} user record(s)")
    elif args.command == "topics":
        for topic in asyncio.run(_topics(config, args.user_id)):
            print(topic)


if __name__ == "__main__":
    run()
