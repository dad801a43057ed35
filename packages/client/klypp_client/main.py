"""
``klypp`` command line entry point.

Loads configuration, configures logging, and runs one membership operation
as the configured user.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from typing import Any, Optional

import structlog

from klypp_shared.schemas.common import MembershipDecision

from .client import KlyppClient
from .config import ClientConfig, load_config
from .result import Result


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="klypp", description="Shared subscription membership tool")
    parser.add_argument(
        "-c", "--config",
        default="klypp.yaml",
        help="Path to configuration file (default: klypp.yaml)",
    )
    parser.add_argument("--user", type=uuid.UUID, help="Act as this user id (overrides auth.user_id)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("invite", help="Invite a user to a shared subscription")
    p.add_argument("subscription_id", type=uuid.UUID)
    p.add_argument("username")

    p = sub.add_parser("respond", help="Accept or reject an invitation")
    p.add_argument("subscription_id", type=uuid.UUID)
    p.add_argument("decision", choices=[d.value for d in MembershipDecision])

    p = sub.add_parser("leave", help="Leave a shared subscription")
    p.add_argument("subscription_id", type=uuid.UUID)

    p = sub.add_parser("delete", help="Delete a subscription with its members and notifications")
    p.add_argument("subscription_id", type=uuid.UUID)

    p = sub.add_parser("members", help="List the members of a subscription")
    p.add_argument("subscription_id", type=uuid.UUID)

    p = sub.add_parser("notifications", help="List your notifications")
    p.add_argument("--unread", action="store_true")

    sub.add_parser("watch", help="Print a line whenever your notifications change")
    return parser


def _report(result: Result[Any], success: str) -> int:
    if result.ok:
        print(success)
        return 0
    error = result.error
    hint = " (you can retry)" if error.retriable else ""
    print(f"Error: {error.user_message}{hint}", file=sys.stderr)
    return 1


async def _watch(client: KlyppClient) -> int:
    changes = 0

    async def on_change() -> None:
        nonlocal changes
        changes += 1
        result = await client.my_notifications(unread_only=True)
        unread = len(result.value) if result.ok else "?"
        print(f"notifications changed ({unread} unread)", flush=True)

    async with await client.watch_notifications(on_change):
        print("Watching notifications, Ctrl-C to stop", flush=True)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
    return 0


async def run_command(client: KlyppClient, args: argparse.Namespace) -> int:
    command = args.command
    if command == "invite":
        result = await client.invite(args.subscription_id, args.username)
        return _report(result, f"Invited {args.username}")
    if command == "respond":
        result = await client.respond(args.subscription_id, MembershipDecision(args.decision))
        return _report(result, f"Invitation {args.decision}")
    if command == "leave":
        return _report(await client.leave(args.subscription_id), "Left subscription")
    if command == "delete":
        result = await client.delete_subscription(args.subscription_id)
        mode = result.value.mode if result.ok else None
        return _report(result, f"Subscription deleted ({mode})")
    if command == "members":
        result = await client.members(args.subscription_id)
        if result.ok:
            for member in result.value:
                print(f"{member.username or member.user_id}\t{member.status.value}")
        return _report(result, f"{len(result.value or [])} member(s)")
    if command == "notifications":
        result = await client.my_notifications(unread_only=args.unread)
        if result.ok:
            for note in result.value:
                print(f"[{note.status.value}] {note.message}")
        return _report(result, f"{len(result.value or [])} notification(s)")
    if command == "watch":
        return await _watch(client)
    raise ValueError(f"unknown command {command}")


async def _main(config: ClientConfig, args: argparse.Namespace) -> int:
    async with KlyppClient.from_config(config, args.user) as client:
        return await run_command(client, args)


def run(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        config = ClientConfig()
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.debug("klypp.config_loaded", config_path=args.config, backend=config.backend.url)

    try:
        code = asyncio.run(_main(config, args))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = 2
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
