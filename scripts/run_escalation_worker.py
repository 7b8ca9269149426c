"""
Standalone background worker — escalation scan and idempotency cleanup.

Runs every registered job once immediately, then on its interval until
SIGTERM / SIGINT. Use this instead of the in-process scheduler thread when
the API runs under several gunicorn workers.

Usage:
    python scripts/run_escalation_worker.py               # development DB, loop forever
    python scripts/run_escalation_worker.py --env production
    python scripts/run_escalation_worker.py --once        # single escalation scan, then exit
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# The worker drives the jobs itself; never start the in-process thread as well
os.environ["SCHEDULER_ENABLED"] = "false"

from app import create_app
from app.services.scheduler_service import SchedulerService, TICK_SECONDS

logger = logging.getLogger("escalation_worker")


def main():
    parser = argparse.ArgumentParser(description="Run approval background jobs")
    parser.add_argument("--env", default=os.getenv("APP_ENV", "development"), help="App environment")
    parser.add_argument("--once", action="store_true", help="Run one escalation scan and exit")
    args = parser.parse_args()

    app = create_app(args.env)

    if args.once:
        result = SchedulerService.run_job("approval_escalation")
        print(json.dumps(result, indent=2, default=str))
        return 0 if result["status"] == "success" else 1

    SchedulerService.ensure_jobs_registered()

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        logger.info("Received signal %s, stopping after the current job", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    app.logger.info("Escalation worker started (env=%s)", args.env)
    next_runs: dict[str, float] = {}
    while not stop_event.is_set():
        try:
            SchedulerService.run_pending(next_runs, time.monotonic())
        except Exception:
            # A failed tick is retried on the next one
            logger.exception("Worker tick failed")
        stop_event.wait(TICK_SECONDS)

    app.logger.info("Escalation worker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
