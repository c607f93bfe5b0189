"""Settlement Jobs - Background service running refund settlement and queue sweeps."""

import asyncio
import logging

from shared.config import LOG_FORMAT, LOG_LEVEL, SETTLEMENT_INTERVAL_SECONDS, ensure_data_dirs
from settlement_jobs.queue_sweeper import QueueSweeper
from settlement_jobs.settlement_worker import SettlementWorker

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("settlement-jobs")


async def main():
    logger.info("Settlement Jobs service starting...")
    ensure_data_dirs()

    worker = SettlementWorker()
    sweeper = QueueSweeper()

    await asyncio.gather(
        worker.run_loop(interval=SETTLEMENT_INTERVAL_SECONDS),
        sweeper.run_loop(interval=15),
    )


if __name__ == "__main__":
    asyncio.run(main())
