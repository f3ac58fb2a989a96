#!/usr/bin/env python3
"""
Refill Sweep Script

Runs the monthly refill sweep for yearly subscribers outside the web process,
for cron-driven deployments (set REFILL_SCHEDULER_ENABLED=false on the API)
and for manual catch-up after an outage.
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subscription_billing.config import settings
from subscription_billing.db.session import close_engines
from subscription_billing.observability import get_logger, setup_logging
from subscription_billing.services.refill_scheduler import RefillScheduler

setup_logging()
logger = get_logger("run_refill_sweep")


async def run_once() -> bool:
    """Run one sweep. Returns False if any record errored."""
    scheduler = RefillScheduler(settings)
    try:
        result = await scheduler.trigger_manual_refill()
    finally:
        await close_engines()

    logger.info(
        "refill_sweep_script_finished",
        candidates=result.candidates,
        granted=result.granted,
        skipped=result.skipped,
        disabled=result.disabled,
        errored=result.errored,
    )
    return result.errored == 0


async def run_loop() -> None:
    """Sweep daily at REFILL_RUN_HOUR_UTC until interrupted."""
    scheduler = RefillScheduler(settings)
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await close_engines()


def main():
    parser = argparse.ArgumentParser(
        description="Grant monthly token refills to yearly subscribers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One sweep now (cron)
  python3 run_refill_sweep.py

  # Stay running and sweep daily
  python3 run_refill_sweep.py --loop
        """,
    )
    parser.add_argument(
        "--loop", action="store_true", help="Keep running and sweep once a day"
    )
    args = parser.parse_args()

    if args.loop:
        try:
            asyncio.run(run_loop())
        except KeyboardInterrupt:
            logger.info("refill_sweep_loop_stopped")
        sys.exit(0)

    success = asyncio.run(run_once())
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
