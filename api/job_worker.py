from __future__ import annotations

import argparse
import logging
import os
import threading

from api.db import initialize_database
from api.worker.job_processing import process_insight_dedupe, process_insight_refresh
from api.worker.scheduler import DEFAULT_QUIET_PERIOD_SECONDS, CoalescingScheduler

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = float(os.getenv("INSIGHT_WORKER_INTERVAL_SECONDS", "300"))


def run_once() -> dict:
    return process_insight_refresh()


def run_dedupe() -> dict:
    return process_insight_dedupe()


def run_forever(
    *,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    quiet_period_seconds: float = DEFAULT_QUIET_PERIOD_SECONDS,
    stop_event: threading.Event | None = None,
) -> None:
    # periodic safety net for evidence written by processes that never trigger
    stop = stop_event or threading.Event()
    scheduler = CoalescingScheduler(run=process_insight_refresh, quiet_period_seconds=quiet_period_seconds)
    scheduler.trigger("worker_start")
    try:
        while not stop.wait(interval_seconds):
            scheduler.trigger("worker_interval")
    except KeyboardInterrupt:
        logger.info("Insight worker interrupted")
    finally:
        scheduler.shutdown(wait=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the insight reconcile worker.")
    parser.add_argument("--once", action="store_true", help="Run one reconcile pass and exit")
    parser.add_argument("--dedupe", action="store_true", help="Merge duplicate insights and exit")
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=DEFAULT_INTERVAL_SECONDS,
        help="Seconds between periodic refresh triggers",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    initialize_database()

    if args.dedupe:
        print(run_dedupe())
        return
    if args.once:
        print(run_once())
        return

    run_forever(interval_seconds=args.interval_seconds)


if __name__ == "__main__":
    main()
