"""Command-line entry point.

Usage:
    # Run the worker (consumes the bloodhound queue until Ctrl+C):
    adminer-worker worker

    # Submit an analysis:
    adminer-worker submit --simulation-id SIM-1 --org-name acme

    # Poll a status record:
    adminer-worker status 1

    # List records of an organization or in a status:
    adminer-worker list --org-name acme
    adminer-worker list --status failed
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Sequence

from pydantic import ValidationError as SettingsValidationError

from src.database.db import DatabaseError, close_db, create_tables, health_check, init_db
from src.database.models import ResultStatus
from src.services.submission import (
    ResultNotFoundError,
    ValidationError,
    get_result,
    list_results,
    submit_analysis,
)
from src.services.worker import build_dispatcher, run_worker
from src.tasks.broker import BrokerUnavailable
from src.utils.config import get_settings, load_settings
from src.utils.logging_config import setup_logging
from src.utils.version import get_version

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adminer-worker",
        description="BloodHound / AD-miner analysis queue and worker",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument("--env-file", help="Load settings from this file instead of .env")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("worker", help="Consume analysis tasks until interrupted")

    submit = commands.add_parser("submit", help="Create a status record and enqueue its analysis")
    submit.add_argument("--simulation-id", required=True, help="Unique simulation identifier")
    submit.add_argument("--org-name", required=True, help="Organization to analyze")

    status = commands.add_parser("status", help="Show a status record")
    status.add_argument("result_id", type=int, help="Status record ID")

    listing = commands.add_parser("list", help="List status records, newest first")
    listing.add_argument("--org-name", help="Only records of this organization")
    listing.add_argument(
        "--status", choices=[s.value for s in ResultStatus], help="Only records in this status"
    )
    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2))


def _cmd_worker(args: argparse.Namespace) -> int:
    health_check()
    asyncio.run(run_worker(build_dispatcher()))
    return EXIT_OK


def _cmd_submit(args: argparse.Namespace) -> int:
    try:
        _print_json(submit_analysis(args.simulation_id, args.org_name))
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except BrokerUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


def _cmd_status(args: argparse.Namespace) -> int:
    try:
        _print_json(get_result(args.result_id))
    except ResultNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


def _cmd_list(args: argparse.Namespace) -> int:
    status = ResultStatus(args.status) if args.status else None
    try:
        _print_json(list_results(org_name=args.org_name, status=status))
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    return EXIT_OK


COMMANDS = {
    "worker": _cmd_worker,
    "submit": _cmd_submit,
    "status": _cmd_status,
    "list": _cmd_list,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.env_file) if args.env_file else get_settings()
    except (FileNotFoundError, SettingsValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(use_json=True if args.json_logs else None)
    logger.debug("Starting %s %s (%s)", settings.APP_NAME, get_version(), settings.ENVIRONMENT)

    try:
        init_db()
        if settings.DB_AUTOMIGRATE:
            create_tables()
        return COMMANDS[args.command](args)
    except DatabaseError as e:
        logger.error("Database unavailable: %s", e)
        return EXIT_FAILURE
    finally:
        close_db()


if __name__ == "__main__":
    sys.exit(main())
