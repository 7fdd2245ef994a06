"""Run a single change-log to search index sync cycle.

The poller does not schedule itself: run it from cron, a queue consumer or by
hand. Exit codes: 0 when the cycle completed (failures of individual configs
are logged), 1 with ``--strict`` when any config failed, 2 when connection
discovery failed.
"""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

from searchsync.app_logging import init_logging, scrub
from searchsync.core.config import get_settings
from searchsync.core.errors import DiscoveryError
from searchsync.sync.orchestrator import run_once


def _echo(message: str) -> None:
    sys.stdout.write(f"{message}\n")


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments, run one cycle and return the exit code."""

    load_dotenv()
    parser = argparse.ArgumentParser(
        description="Push rows changed since the last sync to the search index"
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 1 when any connection or config failed",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Also log to stderr",
    )
    args = parser.parse_args(argv)

    log = init_logging(console=args.verbose)
    settings = get_settings()
    log.debug("settings: %s", scrub(settings.redacted()))

    try:
        report = run_once(settings)
    except DiscoveryError as exc:
        log.error("error during periodic indexing: %s", exc)
        _echo(f"discovery failed: {exc}")
        return 2

    counts = report.counts()
    _echo(
        "connections={connections} configs={configs} synced={synced} "
        "unchanged={unchanged} failed={failed} documents={documents}".format(**counts)
    )
    if args.strict and not report.ok:
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI execution
    logging.captureWarnings(True)
    sys.exit(main())
