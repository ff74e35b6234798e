"""
Admin CLI for the zip archiver.

Commands:
- split: Start a run for everything under the source prefix
- status: Show a run's counter record
- finalize: Publish the ZipArchiveRequest of a run by hand (recovery for a
  lost completion signal)

Usage:
    zip-archiver split [--event-id ID] [--job-id ID] [--batch-size N]
    zip-archiver status --event-id ID --job-id ID
    zip-archiver finalize --event-id ID --job-id ID [--total N]

Configuration comes from the same environment variables as the functions.

Invariants:
    - Exit code 0 on success, 1 on failure, 2 on usage errors
    - Output of status --json is stable for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from ..config import ServiceConfig
from ..errors import ArchiverError
from ..models import ZipArchiveRequest
from ..runtime import ArchiveRuntime

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="zip-archiver", description="Zip archiver admin tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    split_parser = subparsers.add_parser("split", help="Start an archival run")
    split_parser.add_argument("--event-id", help="Run identifier (default: random UUID)")
    split_parser.add_argument("--job-id", help="Job identifier (default: random UUID)")
    split_parser.add_argument("--batch-size", type=int, help="Objects per batch")

    status_parser = subparsers.add_parser("status", help="Show a run's counter record")
    status_parser.add_argument("--event-id", required=True)
    status_parser.add_argument("--job-id", required=True)
    status_parser.add_argument("--json", action="store_true", help="Print JSON")

    finalize_parser = subparsers.add_parser(
        "finalize", help="Publish the final archive request for a run"
    )
    finalize_parser.add_argument("--event-id", required=True)
    finalize_parser.add_argument("--job-id", required=True)
    finalize_parser.add_argument(
        "--total", type=int, help="Number of interim archives (default: from the run record)"
    )

    return parser


async def run_command(args: argparse.Namespace, runtime: ArchiveRuntime) -> int:
    """Execute a parsed command against a connected runtime."""
    if args.command == "split":
        if args.batch_size is not None and args.batch_size < 1:
            print("--batch-size must be >= 1", file=sys.stderr)
            return 2
        result = await runtime.splitter(batch_size=args.batch_size).split(
            event_id=args.event_id, job_id=args.job_id
        )
        print("Run started" if result.batch_count else "Nothing to archive")
        print(f"  Event ID: {result.event_id}")
        print(f"  Job ID: {result.job_id}")
        print(f"  Objects: {result.object_count}")
        print(f"  Batches: {result.batch_count}")
        return 0

    if args.command == "status":
        record = await runtime.counter.get_record(args.event_id, args.job_id)
        if record is None:
            print(f"No run record for event {args.event_id}, job {args.job_id}", file=sys.stderr)
            return 1
        if args.json:
            print(
                json.dumps(
                    {
                        "eventId": record.event_id,
                        "jobId": record.job_id,
                        "total": record.total,
                        "remaining": record.remaining,
                        "expiresAt": record.expires_at,
                        "processedTasks": sorted(record.processed_tasks),
                    }
                )
            )
        else:
            print(f"Run {record.event_id} / {record.job_id}")
            print(f"  Completed: {record.completed} of {record.total}")
            print(f"  Remaining: {record.remaining}")
            print(f"  Expires at: {record.expires_at}")
        return 0

    if args.command == "finalize":
        total = args.total
        if total is None:
            record = await runtime.counter.get_record(args.event_id, args.job_id)
            if record is None:
                print("Run record not found, pass --total", file=sys.stderr)
                return 1
            if record.remaining:
                print(f"Run still has {record.remaining} batches outstanding", file=sys.stderr)
                return 1
            total = record.total
        request = ZipArchiveRequest(args.event_id, args.job_id, total)
        message_id = await runtime.channel.publish(
            runtime.config.finished_topic, request.to_dict(), key=args.event_id
        )
        print(f"Published final archive request {message_id}")
        return 0

    print(f"Unknown command {args.command}", file=sys.stderr)
    return 2


async def _main_async(args: argparse.Namespace, config: ServiceConfig) -> int:
    async with ArchiveRuntime.from_config(config) as runtime:
        return await run_command(args, runtime)


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        code = asyncio.run(_main_async(args, config))
    except ArchiverError as e:
        print(f"{e.code}: {e.message}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
