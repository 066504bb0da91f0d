"""Run one tenant hierarchy export. Use --help for usage."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from config import load_config
from core.errors.exceptions import AuthError
from core.logging.setup import setup_logging
from tenant_export.metrics import start_metrics_server
from tenant_export.orchestrator import run_export
from tenant_export.signals import install_cancel_handlers

# __main__.py is at src/tenant_export/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_AUTH = 2

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m tenant_export",
        description="Export the subscription / resource group / resource / role assignment hierarchy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Export to the Event Hub configured in config.yaml / .env
    python -m tenant_export

    # Write events to a local file instead of Event Hub
    python -m tenant_export --dry-run exports/events.jsonl

    # Stop starting new work after 30 minutes
    python -m tenant_export --timeout 1800
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config YAML (default: TENANT_EXPORT_CONFIG or src/config/config.yaml)",
    )
    parser.add_argument(
        "--dry-run",
        metavar="OUTPUT",
        default=None,
        help="Write newline-delimited JSON events to OUTPUT instead of Event Hub",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Run deadline in seconds; cancels cooperatively when reached",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: from config)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port (default: disabled)",
    )
    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Useful for containerized deployments where logs are captured from stdout.",
    )
    return parser.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.dry_run:
        overrides["sink_type"] = "file"
        overrides["output_path"] = args.dry_run
    if args.timeout is not None:
        overrides["run_timeout_seconds"] = args.timeout
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_to_stdout:
        overrides["log_to_stdout"] = True
    return overrides


async def _run(config) -> int:
    cancel_event = asyncio.Event()
    restore_signals = install_cancel_handlers(cancel_event)
    try:
        result = await run_export(config, cancel_event=cancel_event)
    except AuthError as e:
        logger.error(
            "Run aborted: credentials unavailable",
            extra={"error_type": type(e).__name__, "error_message": e.message[:200]},
        )
        return EXIT_AUTH
    finally:
        restore_signals()

    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_ERRORS if result.errors else EXIT_OK


def main(argv: list[str] | None = None) -> int:
    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)

    try:
        config = load_config(args.config, overrides=build_overrides(args))
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERRORS

    setup_logging(
        name="tenant_export",
        stage="export",
        log_dir=Path(config.log_dir),
        json_format=config.log_json,
        console_level=getattr(logging, config.log_level.upper()),
        log_to_stdout=config.log_to_stdout,
    )

    if args.metrics_port is not None:
        port = start_metrics_server(args.metrics_port)
        logger.info("Metrics server started", extra={"port": port})

    try:
        return asyncio.run(_run(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted before the run could finish")
        return EXIT_ERRORS


if __name__ == "__main__":
    sys.exit(main())
