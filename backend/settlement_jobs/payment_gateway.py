"""HTTP client for the payment gateway's refund endpoint."""

import uuid
import logging
from typing import Optional

import httpx

from shared.config import GATEWAY_TIMEOUT_SECONDS, payment_gateway_url
from shared.correlation import get_correlation_id

logger = logging.getLogger("settlement-jobs.gateway")


class GatewayError(Exception):
    def __init__(self, detail: str, status_code: Optional[int] = None):
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"Payment gateway error: {detail}")


class GatewayTimeoutError(GatewayError):
    def __init__(self):
        super().__init__("Request timed out")


class PaymentGatewayClient:

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (payment_gateway_url() if base_url is None else base_url).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def refund(self, refund: dict) -> str:
        """Submit one refund and return the gateway's refund id. Never retries."""
        if not self.base_url:
            gateway_id = f"rfnd_mock_{uuid.uuid4().hex[:12]}"
            logger.info(f"No gateway configured, mock refund {gateway_id} for {refund['id']}")
            return gateway_id

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/refunds",
                    json={
                        "payment_id": refund.get("payment_id"),
                        "amount": refund["amount"],
                        "currency": refund["currency"],
                        "refund_request_id": refund["id"],
                        "reason": refund.get("reason") or None,
                    },
                    headers={
                        "X-Correlation-Id": refund.get("correlation_id") or get_correlation_id(),
                        "Idempotency-Key": refund["id"],
                    },
                )
        except httpx.TimeoutException:
            raise GatewayTimeoutError()
        except httpx.TransportError as e:
            raise GatewayError(str(e))

        if resp.status_code not in (200, 201):
            raise GatewayError(resp.text or f"HTTP {resp.status_code}", resp.status_code)

        try:
            data = resp.json()
        except ValueError:
            raise GatewayError("Response body is not JSON", resp.status_code)
        if not isinstance(data, dict):
            raise GatewayError("Response body is not a JSON object", resp.status_code)

        gateway_id = data.get("id") or data.get("refund_id")
        if not gateway_id:
            raise GatewayError("Response did not include a refund id", resp.status_code)
        return gateway_id
