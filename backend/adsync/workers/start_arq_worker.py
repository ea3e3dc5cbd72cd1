#!/usr/bin/env python3
"""Start the ARQ worker for Meta refresh jobs.

USAGE:
    adsync-worker                 # long-running worker with the refresh cron
    adsync-worker --burst         # drain queued refreshes, then exit
    adsync-worker --log-level DEBUG

    Or directly:
    arq adsync.workers.arq_worker.WorkerSettings
"""

import argparse
import logging
import sys
from typing import List, Optional

from arq import run_worker

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Meta refresh worker")
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Process the queued refresh jobs and exit instead of waiting for cron ticks",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Root log level (default: INFO)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Configure logging and hand WorkerSettings to ARQ."""
    args = _parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    from adsync.workers.arq_worker import WorkerSettings

    logger.info("[ARQ] Starting Meta refresh worker (burst=%s)", args.burst)
    run_worker(WorkerSettings, burst=args.burst)


if __name__ == "__main__":
    main()
