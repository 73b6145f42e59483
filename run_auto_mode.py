"""
Headless Auto Mode
==================

Runs the admission loop for one project without the web server, logging
lifecycle events to the console. Ctrl+C stops the loop, aborts running
features and waits for them to unwind.

Usage:
    python run_auto_mode.py --project-dir /path/to/project
    python run_auto_mode.py --project-dir ./app --max-concurrency 2 --interval 10
"""

import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from automode.auto_mode import AutoModeService
from automode.config import AutoModeSettings
from automode.context_log import FileContextLog
from automode.events import EVENT_PROGRESS
from automode.feature_store import SQLiteFeatureStore
from automode.sdk_feature_executor import create_executor

_logger = logging.getLogger("automode.cli")

# Seconds to wait for in-flight runs after Ctrl+C
SHUTDOWN_TIMEOUT_SECONDS = 30.0


def log_event(message: dict[str, Any]) -> None:
    """Event sink for headless runs."""
    event_type = message.get("type")
    feature_id = message.get("feature_id")
    if event_type == EVENT_PROGRESS:
        _logger.debug("[%s] %s", feature_id, message.get("content", "").strip())
        return
    details = {k: v for k, v in message.items() if k not in ("type", "feature_id", "timestamp", "feature")}
    _logger.info("%s [%s] %s", event_type, feature_id, details)


async def run_auto_mode(project_dir: Path, settings: AutoModeSettings) -> None:
    """Run the admission loop until cancelled."""
    store = SQLiteFeatureStore()
    context_log = FileContextLog()
    service = AutoModeService(
        store=store,
        executor=create_executor(settings, context_log),
        context_log=context_log,
        sink=log_event,
        check_interval=settings.check_interval_seconds,
        max_retry_attempts=settings.max_retry_attempts,
        max_concurrency=settings.max_concurrency,
    )

    await service.start_loop(project_dir)
    try:
        await asyncio.Event().wait()
    finally:
        _logger.info("Stopping auto mode...")
        await service.shutdown(timeout=SHUTDOWN_TIMEOUT_SECONDS)
        store.dispose()


def main():
    """Main entry point for headless auto mode."""
    import argparse

    from dotenv import load_dotenv

    load_dotenv()
    settings = AutoModeSettings.from_env()

    parser = argparse.ArgumentParser(
        description="Auto Mode - run ready backlog features through the coding agent",
    )
    parser.add_argument(
        "--project-dir",
        type=str,
        required=True,
        help="Project directory containing features.db",
    )
    parser.add_argument(
        "--max-concurrency",
        "-p",
        type=int,
        default=settings.max_concurrency,
        help=f"Maximum features running at once (default: {settings.max_concurrency})",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.check_interval_seconds,
        help=f"Seconds between admission checks (default: {settings.check_interval_seconds})",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (default: INFO)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.max_concurrency < 1:
        parser.error("--max-concurrency must be at least 1")
    if args.interval <= 0:
        parser.error("--interval must be positive")

    project_dir = Path(args.project_dir).expanduser().resolve()
    if not project_dir.is_dir():
        print(f"Error: Project directory does not exist: {project_dir}", flush=True)
        sys.exit(1)

    settings = replace(
        settings,
        max_concurrency=args.max_concurrency,
        check_interval_seconds=args.interval,
    )

    try:
        asyncio.run(run_auto_mode(project_dir, settings))
    except KeyboardInterrupt:
        print("\n\nInterrupted by user", flush=True)


if __name__ == "__main__":
    main()
