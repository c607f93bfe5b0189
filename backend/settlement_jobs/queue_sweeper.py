"""Queue sweeper - applies heartbeat timeouts to idle waiting-room sessions."""

import asyncio
import logging
from typing import Optional

from control_api.services.surge_control import SurgeControlService

logger = logging.getLogger("settlement-jobs.sweeper")


class QueueSweeper:

    def __init__(self, surge: Optional[SurgeControlService] = None):
        self.surge = surge or SurgeControlService()

    async def run_loop(self, interval: int = 15):
        logger.info(f"Queue sweeper started (interval={interval}s)")
        while True:
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Queue sweeper error: {e}")
            await asyncio.sleep(interval)

    def sweep(self) -> int:
        return sum(self.surge.sweep_inactive(event_id) for event_id in self.surge.list_event_ids())
