"""Settlement worker - drives approved refunds through the payment gateway.

The ``approved`` status is the queue. Each refund is claimed by moving it to
``processing`` before the gateway call, so a second worker polling the same
store skips it. A gateway failure ends in ``failed``; there is no retry.
"""

import asyncio
import logging
from typing import Optional

from shared.errors import InvalidStateError
from control_api.services.refund_approval import RefundApprovalService
from settlement_jobs.payment_gateway import GatewayError, PaymentGatewayClient

logger = logging.getLogger("settlement-jobs.worker")


class SettlementWorker:

    def __init__(
        self,
        refunds: Optional[RefundApprovalService] = None,
        gateway: Optional[PaymentGatewayClient] = None,
    ):
        self.refunds = refunds or RefundApprovalService()
        self.gateway = gateway or PaymentGatewayClient()

    async def run_loop(self, interval: int = 5):
        logger.info(f"Settlement worker started (interval={interval}s)")
        while True:
            try:
                await self.process_pending()
            except Exception as e:
                logger.error(f"Settlement worker error: {e}")
            await asyncio.sleep(interval)

    async def process_pending(self) -> dict:
        results = {"completed": 0, "failed": 0, "skipped": 0}
        pending = self.refunds.approved_awaiting_settlement()
        if not pending:
            return results

        logger.info(f"Settling {len(pending)} approved refunds")
        for refund in pending:
            outcome = await self.settle(refund["id"])
            results[outcome] += 1
        return results

    async def settle(self, refund_id: str) -> str:
        try:
            refund = self.refunds.begin_processing(refund_id)
        except InvalidStateError as e:
            logger.info(f"Refund {refund_id} already claimed: {e}")
            return "skipped"

        try:
            gateway_refund_id = await self.gateway.refund(refund)
        except GatewayError as e:
            self.refunds.fail_settlement(refund_id, str(e))
            logger.warning(f"Refund {refund_id} failed at gateway: {e}")
            return "failed"
        except Exception as e:
            # A claimed refund must never be left in processing.
            self.refunds.fail_settlement(refund_id, f"Unexpected settlement error: {e}")
            logger.exception(f"Refund {refund_id} failed unexpectedly")
            return "failed"

        self.refunds.complete_settlement(refund_id, gateway_refund_id)
        logger.info(f"Refund {refund_id} completed ({gateway_refund_id})")
        return "completed"
