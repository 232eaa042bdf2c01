"""
Manual maintenance trigger — runs one maintenance pass from the command line.

Usage:
    python scripts/run_maintenance.py

Useful for diagnosing a stuck queue without waiting for the Celery beat
schedule.  Prints the run report and the queue depth afterwards.
"""

import asyncio
import json
import logging

from app.database import engine
from app.matching_engine.maintenance import maintenance_scheduler
from app.matching_engine.task_queue import task_queue
from app.redis_client import redis


async def main():
    """Run maintenance once and print the report."""
    print("Starting manual maintenance run...")
    try:
        report = await maintenance_scheduler.trigger_manual_maintenance()
        stats = await task_queue.get_queue_stats()
    finally:
        await engine.dispose()
        await redis.aclose()

    print("\n=== Maintenance Report ===")
    print(json.dumps(report, indent=2, default=str))
    if report and not report.get("skipped"):
        print(f"\nStatus: {report['status']}")
        if report["failed_steps"]:
            print(f"Failed steps: {', '.join(report['failed_steps'])}")

    print("\n=== Queue ===")
    print(
        f"pending={stats['pending']} running={stats['running']} "
        f"done={stats['done']} failed={stats['failed']} avg_wait_ms={stats['avg_wait_ms']}"
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
