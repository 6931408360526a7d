"""
Fine-tune CLI - snapshot creation and preview, retries, lock recovery and polling.

Each command runs one handler from finetune.api and prints its JSON body.
The exit code is 0 for success and 1 for any error response.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..api.handlers import ApiResponse, FineTuneApi, error_response
from ..config.settings import load_config
from ..core.exceptions import ConfigError, FineTuneError, ValidationError
from ..core.logging import configure_logging
from ..export.jsonl import PREVIEW_LIMIT
from ..service import FineTuneService


logger = logging.getLogger(__name__)


def _load_filters(args: argparse.Namespace) -> Dict[str, Any]:
    if args.filters_file:
        text = Path(args.filters_file).read_text(encoding="utf-8")
    else:
        text = args.filters or "{}"
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Filters are not valid JSON: {e}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="finetune",
        description="Fine-tune job lifecycle CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create a snapshot from filters and submit its training job
  finetune create --name joy-only --user admin --filters '{"emotions": ["joy"]}'

  # Show what a filter selects before exporting it
  finetune preview --filters '{"emotions": ["joy"]}' --limit 5

  # Check whether the same filters were already exported
  finetune check --filters-file filters.json

  # Retry a failed job
  finetune retry --snapshot-id 3f0c... --reason "provider outage"

  # Clear a stuck lock
  finetune override-lock 3f0c...

  # Run one reconciliation pass (schedule this from cron)
  finetune poll
        """,
    )
    parser.add_argument("--config", type=str, default=None, help="Path to YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--structured-logs", action="store_true", help="Emit JSON log lines")
    
    subparsers = parser.add_subparsers(dest="command", help="Command")
    
    for name, help_text in (("create", "Create a snapshot and submit it"),
                            ("check", "Check filters for an existing snapshot"),
                            ("preview", "Show the rows filters select")):
        sub = subparsers.add_parser(name, help=help_text)
        group = sub.add_mutually_exclusive_group()
        group.add_argument("--filters", type=str, default=None, help="Filter JSON")
        group.add_argument("--filters-file", type=str, default=None, help="File containing filter JSON")
        if name == "create":
            sub.add_argument("--name", type=str, required=True, help="Snapshot display name")
            sub.add_argument("--user", type=str, required=True, help="Requester identity")
            sub.add_argument("--model", type=str, default=None, help="Base model override")
        if name == "preview":
            sub.add_argument("--limit", type=int, default=PREVIEW_LIMIT,
                             help=f"Rows to show (default: {PREVIEW_LIMIT})")
    
    retry_parser = subparsers.add_parser("retry", help="Retry a failed training job")
    target = retry_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--snapshot-id", type=str, default=None, help="Snapshot to retry")
    target.add_argument("--job-id", type=str, default=None, help="Job whose snapshot to retry")
    retry_parser.add_argument("--reason", type=str, default=None, help="Retry reason")
    retry_parser.add_argument(
        "--origin",
        choices=["manual", "scheduled", "webhook"],
        default="manual",
        help="Retry origin (default: manual)",
    )
    retry_parser.add_argument("--user", type=str, default=None, help="Requester identity")
    
    override_parser = subparsers.add_parser("override-lock", help="Delete a snapshot's lock")
    override_parser.add_argument("snapshot_id", type=str, help="Snapshot whose lock to delete")
    
    subparsers.add_parser("poll", help="Run one status reconciliation pass")
    
    show_parser = subparsers.add_parser("show", help="Show a snapshot with its lock and events")
    show_parser.add_argument("snapshot_id", type=str, help="Snapshot to show")
    show_parser.add_argument("--events", type=int, default=20, help="Number of events (default: 20)")
    
    subparsers.add_parser("stats", help="Snapshot counts per status")
    
    return parser


def run_command(args: argparse.Namespace, service: FineTuneService) -> ApiResponse:
    """Dispatch a parsed command to its handler."""
    api = FineTuneApi(service)
    try:
        if args.command == "create":
            return api.create_snapshot(
                {"filters": _load_filters(args), "name": args.name, "model_hint": args.model},
                user_id=args.user,
            )
        if args.command == "check":
            return api.check_duplicate({"filters": _load_filters(args)})
        if args.command == "preview":
            return api.preview_export({"filters": _load_filters(args), "limit": args.limit})
        if args.command == "retry":
            return api.retry_job(
                {
                    "snapshot_id": args.snapshot_id,
                    "job_id": args.job_id,
                    "retry_reason": args.reason,
                    "retry_origin": args.origin,
                },
                user_id=args.user,
            )
        if args.command == "override-lock":
            return api.override_lock({"snapshot_id": args.snapshot_id})
        if args.command == "poll":
            return api.trigger_poll()
        if args.command == "show":
            return ApiResponse(200, service.describe_snapshot(args.snapshot_id, event_limit=args.events))
        if args.command == "stats":
            return ApiResponse(200, service.queue_stats())
    except FineTuneError as e:
        return error_response(e)
    return error_response(ValidationError(f"Unknown command: {args.command}"))


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    
    configure_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        structured=args.structured_logs,
    )
    
    if not args.command:
        parser.print_help()
        return 1
    
    try:
        config = load_config(Path(args.config) if args.config else None)
        service = FineTuneService.from_config(config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    
    try:
        response = run_command(args, service)
    finally:
        service.close()
    
    print(json.dumps(response.body, indent=2, default=str))
    return 0 if response.ok else 1


if __name__ == "__main__":
    sys.exit(main())
