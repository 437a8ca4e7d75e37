#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from lost_workers.config import ReconcilerSettings
from lost_workers.errors import ConfigError
from lost_workers.registry import YamlOrchestrator
from lost_workers.scheduler import ReconciliationScheduler
from lost_workers.utils import save_json


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Find and terminate build-worker VMs no controller is using anymore."
    )
    parser.add_argument(
        "--config",
        type=str,
        default="configs/reconciler.yaml",
        help="Path to YAML config file.",
    )
    parser.add_argument(
        "--registry",
        type=str,
        default="",
        help="Optional node registry path. Overrides registry_path from the config.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass and exit instead of looping every recurrence period.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Stamp heartbeats and classify instances, but do not terminate anything.",
    )
    parser.add_argument(
        "--summary-json",
        type=str,
        default="",
        help="With --once, write the per-cloud summary to this path.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="",
        help="Log level (DEBUG shows every orphan classification).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    try:
        settings = ReconcilerSettings.from_yaml(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.registry:
        settings.registry_path = args.registry
    if args.dry_run:
        settings.dry_run = True
    if args.log_level:
        settings.log_level = args.log_level.upper()

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(message)s")
    settings.log_config()

    orchestrator = YamlOrchestrator(settings.clouds, settings.registry_path)
    scheduler = ReconciliationScheduler(orchestrator, settings)

    if args.once:
        summaries = scheduler.run_once()
        payload = {name: summary.to_dict() for name, summary in summaries.items()}
        if args.summary_json:
            save_json(args.summary_json, payload)
            print(f"Wrote summary: {args.summary_json}")
        failed = [name for name, summary in summaries.items() if summary.error]
        sys.exit(1 if failed else 0)

    stop_event = threading.Event()

    def _stop(signum, _frame):
        logging.getLogger(__name__).info(f"Signal {signum} received, stopping after current tick")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    scheduler.run_forever(stop_event)


if __name__ == "__main__":
    main()
