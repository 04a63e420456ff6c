from __future__ import annotations

import argparse
import asyncio
import json
import sys

import uvicorn
from pydantic import ValidationError

from notify_digest.core.errors import sanitize_error
from notify_digest.core.logging import configure_logging, get_logger
from notify_digest.core.settings import Settings, get_settings
from notify_digest.worker.digest_runner import DigestRunner
from notify_digest.worker.maintenance import purge_revocations

logger = get_logger("cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notify-digest", description="Notification digest delivery.")
    subcommands = parser.add_subparsers(dest="command", required=True)

    run_parser = subcommands.add_parser("run", help="Send due daily and/or weekly digests.")
    run_parser.add_argument("cadence", nargs="?", default="all", choices=["daily", "weekly", "all"])

    subcommands.add_parser("purge-revocations", help="Delete revocation records for expired tokens.")
    subcommands.add_parser("serve", help="Serve the unsubscribe API.")
    return parser


async def _run_digests(cadence: str, settings: Settings) -> dict[str, object]:
    runner = DigestRunner.from_settings(settings)
    summary = await runner.run_digests(cadence)
    return summary.as_dict()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as exc:
        configure_logging("INFO")
        logger.error(
            "cli.config_invalid",
            extra={"component": "cli", "error": sanitize_error(exc, default_message="invalid configuration")},
        )
        return 1
    configure_logging(settings.LOG_LEVEL)

    if args.command == "serve":
        uvicorn.run("notify_digest.main:app", host=settings.API_HOST, port=settings.API_PORT)
        return 0

    try:
        if args.command == "purge-revocations":
            payload = asyncio.run(purge_revocations(settings))
        else:
            payload = asyncio.run(_run_digests(args.cadence, settings))
    except Exception as exc:
        logger.error(
            "cli.command_failed",
            extra={
                "component": "cli",
                "command": args.command,
                "error": sanitize_error(exc, default_message=f"{args.command} failed"),
            },
        )
        return 1

    print(json.dumps(payload, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
