"""Per-request service wiring and acting-admin identity."""

from typing import Optional

from fastapi import Header

from shared.correlation import Actor
from control_api.services.audit_trail import AuditTrail
from control_api.services.event_codes import EventCodeService
from control_api.services.governance import GovernanceService
from control_api.services.idempotency import IdempotencyService
from control_api.services.refund_approval import RefundApprovalService
from control_api.services.surge_control import SurgeControlService


def get_actor(
    x_admin_id: Optional[str] = Header(None, alias="X-Admin-Id"),
    x_admin_name: Optional[str] = Header(None, alias="X-Admin-Name"),
    x_admin_role: str = Header("admin", alias="X-Admin-Role"),
) -> Actor:
    # AdminAuthMiddleware has already refused admin mutations without an id.
    return Actor(actor_id=x_admin_id or "anonymous", name=x_admin_name, role=x_admin_role)


def get_audit() -> AuditTrail:
    return AuditTrail()


def get_refunds() -> RefundApprovalService:
    return RefundApprovalService()


def get_surge() -> SurgeControlService:
    return SurgeControlService()


def get_event_codes() -> EventCodeService:
    return EventCodeService()


def get_governance() -> GovernanceService:
    return GovernanceService()


def get_idempotency() -> IdempotencyService:
    return IdempotencyService()
