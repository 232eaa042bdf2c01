"""
Matching worker process — runs the worker pool and the outbox sender.

Usage:
    python scripts/run_worker.py

Start as many of these as needed, on as many machines as needed: they
coordinate through PostgreSQL row locks only.  SIGINT / SIGTERM stop
claiming new work and wait for in-flight tasks before exiting.
"""

import asyncio
import logging
import signal

from app.config import settings
from app.database import engine
from app.matching_engine.config import matching_config
from app.matching_engine.outbox import outbox_sender
from app.matching_engine.worker_pool import WorkerPool

logger = logging.getLogger("swapflow.worker")


async def main() -> None:
    """Run until a termination signal arrives."""
    logger.info("Matching config: %s", matching_config.summary())

    pool = WorkerPool(config=matching_config)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pool.start()
    sender = asyncio.create_task(outbox_sender.run_forever(), name="outbox-sender")

    await stop.wait()
    logger.info("Shutdown requested")

    outbox_sender.stop()
    await pool.shutdown()
    await sender
    await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.DEBUG if settings.MATCHING_DEBUG else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    asyncio.run(main())
