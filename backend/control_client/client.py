"""Async client for UI tiers talking to the control API.

Reads go through a per-entity cache with a staleness bound. Mutations are
guarded so the same action on the same entity cannot be in flight twice, and
governance submissions run the server's own validators before leaving the
process. Error bodies ``{"error", "code"}`` become typed exceptions; nothing is
retried.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from shared.config import SURGE_POLL_INTERVAL_SECONDS
from shared.validation import validate_action_submission, validate_reason_token
from control_client.cache import EntityCache

logger = logging.getLogger("gatehouse.client")

REFUND_LIST_MAX_AGE_SECONDS = 10


class ControlPlaneError(Exception):
    def __init__(self, message: str, code: str = "error", status_code: Optional[int] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class DuplicateApproverError(ControlPlaneError):
    pass


class ActionInFlightError(Exception):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"An action on {key} is already in progress")


ERROR_TYPES = {
    "duplicate_approver": DuplicateApproverError,
}


class ControlPlaneClient:

    def __init__(
        self,
        base_url: str,
        admin_id: Optional[str] = None,
        admin_name: Optional[str] = None,
        admin_role: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {}
        if admin_id:
            self.headers["X-Admin-Id"] = admin_id
        if admin_name:
            self.headers["X-Admin-Name"] = admin_name
        if admin_role:
            self.headers["X-Admin-Role"] = admin_role
        self._in_flight: set[str] = set()

    async def request(self, method: str, path: str, json: Optional[dict] = None,
                      params: Optional[dict] = None) -> Any:
        async with httpx.AsyncClient(base_url=self.base_url, transport=self.transport,
                                     timeout=self.timeout, headers=self.headers) as client:
            resp = await client.request(method, path, json=json, params=params)

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {"error": resp.text}
            code = body.get("code", "error")
            error_type = ERROR_TYPES.get(code, ControlPlaneError)
            raise error_type(body.get("error", f"HTTP {resp.status_code}"), code, resp.status_code)
        return resp.json()

    @asynccontextmanager
    async def guard(self, key: str) -> AsyncIterator[None]:
        """Refuse a second mutation on ``key`` until the first one settles."""
        if key in self._in_flight:
            raise ActionInFlightError(key)
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight


class SurgeMonitor:
    """Polled view of one event's surge state. The poll interval is the staleness bound."""

    def __init__(self, client: ControlPlaneClient, event_id: str,
                 max_age_seconds: float = SURGE_POLL_INTERVAL_SECONDS,
                 cache: Optional[EntityCache] = None):
        self.client = client
        self.event_id = event_id
        self.cache = cache or EntityCache(max_age_seconds)
        self.key = f"surge:{event_id}"

    async def state(self) -> dict:
        cached = self.cache.get(self.key)
        if cached is not None:
            return cached
        return await self.refresh()

    async def refresh(self) -> dict:
        state = await self.client.request("GET", f"/api/events/{self.event_id}/surge")
        self.cache.put(self.key, state)
        return state

    def subscribe(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self.cache.subscribe(self.key, callback)

    async def toggle(self, enabled: bool, reason: Optional[str] = None) -> dict:
        reason = validate_reason_token(reason)
        async with self.client.guard(self.key):
            await self.client.request("POST", f"/api/events/{self.event_id}/surge",
                                      json={"action": "toggle", "enabled": enabled, "reason": reason})
        return await self.refresh()

    async def admit(self, count: int) -> dict:
        async with self.client.guard(self.key):
            result = await self.client.request("POST", f"/api/events/{self.event_id}/surge",
                                               json={"action": "admit", "count": count})
        await self.refresh()
        return result


class RefundReviewClient:

    LIST_KEY = "refunds:pending"

    def __init__(self, client: ControlPlaneClient,
                 max_age_seconds: float = REFUND_LIST_MAX_AGE_SECONDS,
                 cache: Optional[EntityCache] = None):
        self.client = client
        self.cache = cache or EntityCache(max_age_seconds)

    async def pending(self) -> list[dict]:
        cached = self.cache.get(self.LIST_KEY)
        if cached is not None:
            return cached
        return await self.refresh()

    async def refresh(self) -> list[dict]:
        body = await self.client.request("GET", "/api/admin/refunds", params={"status": "pending"})
        self.cache.put(self.LIST_KEY, body["refunds"])
        return body["refunds"]

    def subscribe(self, callback: Callable[[list[dict]], None]) -> Callable[[], None]:
        return self.cache.subscribe(self.LIST_KEY, callback)

    async def approve(self, refund_id: str) -> dict:
        async with self.client.guard(f"refund:{refund_id}"):
            result = await self.client.request("POST", f"/api/admin/refunds/{refund_id}/approve")
        self.cache.invalidate(self.LIST_KEY)
        return result

    async def reject(self, refund_id: str, reason: Optional[str] = None) -> dict:
        async with self.client.guard(f"refund:{refund_id}"):
            result = await self.client.request("POST", f"/api/admin/refunds/{refund_id}/reject",
                                               json={"reason": reason})
        self.cache.invalidate(self.LIST_KEY)
        return result


class GovernanceClient:

    def __init__(self, client: ControlPlaneClient):
        self.client = client

    async def submit(self, action: str, target_id: str, reason: Optional[str],
                     evidence: Optional[str] = None, params: Optional[dict] = None) -> dict:
        reason, evidence = validate_action_submission(action, reason, evidence)
        async with self.client.guard(f"action:{action}:{target_id}"):
            return await self.client.request("POST", "/api/admin/actions", json={
                "action": action,
                "target_id": target_id,
                "reason": reason,
                "evidence": evidence,
                "params": params or {},
            })

    async def approve_proposal(self, proposal_id: str, reason: str) -> dict:
        return await self.submit("ACTION_APPROVE", proposal_id, reason)

    async def reject_proposal(self, proposal_id: str, reason: str) -> dict:
        return await self.submit("ACTION_REJECT", proposal_id, reason)

    async def proposals(self, status: Optional[str] = None) -> list[dict]:
        params = {"status": status} if status else None
        body = await self.client.request("GET", "/api/admin/actions/proposals", params=params)
        return body["proposals"]
