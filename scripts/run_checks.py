#!/usr/bin/env python3
"""
Run one check cycle (and optionally an email cycle) from the command line.

Uses the same code path and lock as the scheduled job, so running it while
a cycle is in progress records a skipped run.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from restocked.logging_config import setup_logging
from restocked.worker.tasks import task_runner


async def run(with_email: bool) -> int:
    await task_runner.initialize()
    try:
        check_run = await task_runner.run_checks(trigger="manual")
        print(f"Check run {check_run.run_id[:16]}: {check_run.status}")
        if check_run.skip_reason:
            print(f"  skipped: {check_run.skip_reason}")
        else:
            print(f"  selected: {check_run.products_selected}")
            print(f"  checked: {check_run.products_checked}")
            print(f"  failed: {check_run.products_failed}")
            print(f"  changes: {check_run.changes_detected}")
            print(f"  notifications: {check_run.notifications_created}")
            for error in check_run.errors or []:
                print(f"  ! product {error.get('product_id')}: {error.get('error')}")

        if with_email:
            summary = await task_runner.deliver_emails()
            if summary.skipped:
                print(f"Email cycle skipped: {summary.skip_reason}")
            else:
                print(
                    f"Email cycle: {summary.sent} sent, {summary.suppressed} suppressed, "
                    f"{summary.failed} failed ({summary.permanently_failed} permanently)"
                )
    finally:
        await task_runner.close()

    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a product check cycle now")
    parser.add_argument("--email", action="store_true", help="also run an email delivery cycle")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run(args.email)))
