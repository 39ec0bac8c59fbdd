#!/usr/bin/env python3
"""
Diagnose scheduler lock state and provide recovery recommendations.

    python scripts/diagnose_locks.py              # show state
    python scripts/diagnose_locks.py --force NAME # drop a stuck lock
"""

import argparse
import asyncio
from datetime import datetime
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from restocked.config import settings
from restocked.db.models import CheckRun, CheckRunStatus
from restocked.db.session import AsyncSessionLocal
from restocked.worker.lease_lock import (
    CHECK_SCHEDULER_LOCK,
    EMAIL_DELIVERY_LOCK,
    build_lock_manager,
)


async def diagnose(force: str | None) -> None:
    lock_manager = build_lock_manager(AsyncSessionLocal)

    try:
        if force:
            await lock_manager.force_release(force)
            print(f"Force-released lock '{force}'")
            return

        print("Scheduler Lock Diagnosis")
        print("========================")
        print(f"Backend: {settings.lock_backend}")
        print("")

        held = {}
        for name in (CHECK_SCHEDULER_LOCK, EMAIL_DELIVERY_LOCK):
            info = await lock_manager.get_lock_info(name)
            held[name] = info
            if not info:
                print(f"{name}: free")
                continue
            print(f"{name}: {'EXPIRED' if info.get('expired') else 'held'}")
            print(f"  holder: {info.get('holder')}")
            print(f"  acquired_at: {info.get('acquired_at')}")
            print(f"  ttl_seconds: {info.get('ttl_seconds')}")
        print("")

        async with AsyncSessionLocal() as db:
            result = await db.execute(
                select(CheckRun)
                .where(CheckRun.status == CheckRunStatus.RUNNING.value)
                .order_by(CheckRun.started_at.desc())
            )
            running_runs = result.scalars().all()

        if not running_runs:
            print("Running CheckRuns: none")
        else:
            print(f"Running CheckRuns: {len(running_runs)}")
            for run in running_runs:
                age_s = (datetime.utcnow() - run.started_at).total_seconds()
                print(
                    f"  - id={run.id} run_id={run.run_id} started_at={run.started_at} "
                    f"age_s={age_s:.0f} trigger={run.trigger}"
                )

        check_lock = held[CHECK_SCHEDULER_LOCK]
        print("")
        print("Recommendations")
        print("----------------")
        if check_lock and check_lock.get("expired"):
            print("- Check lock lease expired; the next cycle will take it over.")
        if check_lock and not check_lock.get("expired") and not running_runs:
            print("- Check lock held but no CheckRun is running. Consider --force check-scheduler.")
        if not check_lock and running_runs:
            print("- Running CheckRun without a lock (process died mid-run). Safe to ignore.")
        if not check_lock and not running_runs:
            print("- No issues detected.")
    finally:
        await lock_manager.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect or clear scheduler locks")
    parser.add_argument("--force", metavar="NAME", help="force-release the named lock")
    args = parser.parse_args()
    asyncio.run(diagnose(args.force))
