"""Command-line driver for the renewal scheduler.

Meant for a system timer, e.g.:

    signalsubs sweep expiry        # daily
    signalsubs sweep reminders     # daily
    signalsubs sweep suspended     # every 6 hours

Exits with status 1 when any item in any sweep failed.
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone

from .config import get_settings
from .logging_config import setup_logging

SWEEP_CHOICES = ("expiry", "reminders", "suspended", "all")


def _parse_now(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signalsubs", description="signalsubs maintenance")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep = subparsers.add_parser("sweep", help="Run a renewal scheduler sweep")
    sweep.add_argument("job", choices=SWEEP_CHOICES)
    sweep.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="ISO-8601 timestamp to use as the sweep clock (default: current UTC time)",
    )
    sweep.add_argument("--json", action="store_true", help="Print reports as JSON")
    return parser


async def run_sweep(scheduler, job: str, now: datetime) -> list:
    if job == "expiry":
        return [await scheduler.run_expiry_sweep(now)]
    if job == "reminders":
        return [await scheduler.run_reminder_sweep(now)]
    if job == "suspended":
        return [await scheduler.run_suspended_sweep(now)]
    return await scheduler.run_all(now)


def main(argv: list[str] | None = None, services=None) -> int:
    args = build_parser().parse_args(argv)

    if services is None:
        settings = get_settings()
        setup_logging(args.log_level or settings.log_level)
        from .dependencies import get_services

        services = get_services()
    elif args.log_level:
        setup_logging(args.log_level)

    now = args.now or datetime.now(timezone.utc)
    reports = asyncio.run(run_sweep(services.scheduler, args.job, now))

    for report in reports:
        if args.json:
            print(json.dumps(report.to_dict()))
        else:
            print(
                f"{report.job}: examined={report.examined} processed={report.processed} "
                f"skipped={report.skipped} failed={len(report.failed)}"
            )

    return 0 if all(r.ok for r in reports) else 1


if __name__ == "__main__":
    sys.exit(main())
