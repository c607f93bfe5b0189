"""Refund approval - policy, single/dual sign-off, rejection, and settlement transitions.

Every mutation runs inside one FileStore transaction on the refund store, so
the approver list append and the "enough signatures?" check are evaluated
together after serialization. Two admins approving at the same moment are
both recorded, in lock order, and only the second one flips the status.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from shared.config import (
    REFUND_AUTO_APPROVE_BELOW, REFUND_DUAL_APPROVAL_FROM, REFUND_CURRENCY, data_path,
)
from shared.correlation import Actor, SYSTEM_ACTOR, get_correlation_id
from shared.errors import (
    AuthorityError, DuplicateApproverError, InvalidStateError, NotFoundError, ValidationError,
)
from shared.file_store import FileStore
from shared.models import (
    APPROVERS_REQUIRED, OPEN_REFUND_STATUSES,
    ApprovalType, Approver, OrderSnapshot, RefundDisplayStatus, RefundRequest,
    RefundSource, RefundStatus, utc_now_iso,
)
from shared.validation import require_text
from control_api.services.audit_trail import AuditTrail
from control_api.services.state_machine import is_terminal_refund_status, validate_refund_transition

logger = logging.getLogger("gatehouse.refunds")

REFUNDABLE_ORDER_STATUSES = ("confirmed", "checked_in")
APPROVER_ROLES = ("admin", "ops", "super", "super_admin")
DEFAULT_REJECTION_REASON = "Rejected by approver"


@dataclass(frozen=True)
class RefundPolicy:
    auto_approve_below: int = REFUND_AUTO_APPROVE_BELOW
    dual_approval_from: int = REFUND_DUAL_APPROVAL_FROM

    def approval_requirement(self, amount: int, requires_admin: bool = False) -> tuple[ApprovalType, int]:
        if amount < self.auto_approve_below:
            approval_type = ApprovalType.SINGLE if requires_admin else ApprovalType.AUTO
        elif amount < self.dual_approval_from:
            approval_type = ApprovalType.SINGLE
        else:
            approval_type = ApprovalType.DUAL
        return approval_type, APPROVERS_REQUIRED[approval_type]


def can_refund(order: OrderSnapshot) -> tuple[bool, bool, Optional[str]]:
    """Return (allowed, requires_admin, reason) for an order's current status."""
    if order.status not in REFUNDABLE_ORDER_STATUSES:
        return False, False, f"Order is not in a refundable state ({order.status})"
    if order.status == "checked_in":
        return True, True, "Post-entry refund requires admin approval"
    return True, False, None


def derive_display_status(refund: dict) -> RefundDisplayStatus:
    if refund["status"] == RefundStatus.PENDING.value and refund.get("approvers"):
        return RefundDisplayStatus.PARTIALLY_APPROVED
    return RefundDisplayStatus(refund["status"])


def pending_approvals(refund: dict) -> int:
    if refund["status"] != RefundStatus.PENDING.value:
        return 0
    return max(0, refund["approvers_required"] - len(refund.get("approvers", [])))


def present(refund: dict) -> dict:
    """Refund record plus the derived fields the admin surfaces render."""
    return {
        **refund,
        "display_status": derive_display_status(refund).value,
        "pending_approvals": pending_approvals(refund),
        "is_terminal": is_terminal_refund_status(refund["status"]),
    }


class RefundApprovalService:

    def __init__(
        self,
        data_dir: Optional[str] = None,
        policy: Optional[RefundPolicy] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.store_path = (
            os.path.join(data_dir, "refunds", "refund_requests.json") if data_dir
            else data_path("refunds", "refund_requests.json")
        )
        self.policy = policy or RefundPolicy()
        self.audit = audit or AuditTrail(data_dir)

    # --- reads ---

    def get(self, request_id: str) -> dict:
        refunds = FileStore.read_json(self.store_path, default={})
        if request_id not in refunds:
            raise NotFoundError("refund", request_id)
        return refunds[request_id]

    def list_refunds(
        self,
        status: str = "pending",
        event_id: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict], int]:
        items = list(FileStore.read_json(self.store_path, default={}).values())

        if status and status != "all":
            if status not in {s.value for s in RefundStatus}:
                raise ValidationError(f"Unknown refund status filter: {status}")
            items = [r for r in items if r["status"] == status]
        if event_id:
            items = [r for r in items if r["event_id"] == event_id]
        if order_id:
            items = [r for r in items if r["order_id"] == order_id]

        items.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return items[offset:offset + limit], len(items)

    def approved_awaiting_settlement(self) -> list[dict]:
        items, _ = self.list_refunds(status=RefundStatus.APPROVED.value, limit=10_000)
        return sorted(items, key=lambda r: r.get("approved_at") or r["created_at"])

    # --- creation ---

    def create_refund_request(
        self,
        order: OrderSnapshot,
        requested_by: Actor,
        amount: Optional[int] = None,
        reason: str = "",
        source: RefundSource = RefundSource.USER,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        allowed, requires_admin, why = can_refund(order)
        if not allowed:
            raise InvalidStateError(why)

        refund_amount = order.total_amount if amount is None else amount
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if refund_amount > order.total_amount:
            raise ValidationError("Refund amount exceeds order total")

        approval_type, approvers_required = self.policy.approval_requirement(refund_amount, requires_admin)
        auto_approved = approval_type == ApprovalType.AUTO
        now = utc_now_iso()

        refund = RefundRequest(
            order_id=order.order_id,
            event_id=order.event_id,
            customer_id=order.customer_id,
            amount=refund_amount,
            currency=order.currency or REFUND_CURRENCY,
            reason=reason,
            is_partial=refund_amount < order.total_amount,
            source=source,
            requested_by=requested_by.actor_id,
            payment_id=order.payment_id,
            approval_type=approval_type,
            approvers_required=approvers_required,
            status=RefundStatus.APPROVED if auto_approved else RefundStatus.PENDING,
            approved_at=now if auto_approved else None,
            idempotency_key=idempotency_key,
            correlation_id=get_correlation_id(),
            created_at=now,
            updated_at=now,
        )
        data = refund.model_dump(mode="json")

        with FileStore.transaction(self.store_path, default={}) as refunds:
            for existing in refunds.values():
                if existing["order_id"] == order.order_id and RefundStatus(existing["status"]) in OPEN_REFUND_STATUSES:
                    raise InvalidStateError(
                        f"Order {order.order_id} already has an open refund {existing['id']}"
                    )
            refunds[refund.id] = data

        self.audit.record("refund", refund.id, "refund.created", requested_by,
                          reason=reason or None, after=data)
        if auto_approved:
            self.audit.record("refund", refund.id, "refund.approved", SYSTEM_ACTOR,
                              reason="Auto-approved (under threshold)")
            self._enqueue_settlement(data)

        logger.info(f"Refund {refund.id} created for order {order.order_id} "
                    f"({approval_type.value}, {data['status']})")
        return data

    # --- approval protocol ---

    def record_approval(self, request_id: str, approver: Actor) -> dict:
        if approver.role not in APPROVER_ROLES:
            raise AuthorityError("Only admins can approve refunds")

        with FileStore.transaction(self.store_path, default={}) as refunds:
            refund = refunds.get(request_id)
            if refund is None:
                raise NotFoundError("refund", request_id)
            if refund["status"] != RefundStatus.PENDING.value:
                raise InvalidStateError(f"Refund is already {refund['status']}")
            if any(a["approver_id"] == approver.actor_id for a in refund["approvers"]):
                raise DuplicateApproverError(request_id, approver.actor_id)

            now = utc_now_iso()
            refund["approvers"].append(
                Approver(approver_id=approver.actor_id, approver_name=approver.name, timestamp=now)
                .model_dump(mode="json")
            )
            fully_approved = len(refund["approvers"]) >= refund["approvers_required"]
            if fully_approved:
                validate_refund_transition(refund["status"], RefundStatus.APPROVED.value)
                refund["status"] = RefundStatus.APPROVED.value
                refund["approved_at"] = now
            refund["updated_at"] = now
            refunds[request_id] = refund

        self.audit.record("refund", request_id,
                          "refund.approved" if fully_approved else "refund.approval_recorded",
                          approver, after={"approvers": refund["approvers"], "status": refund["status"]})

        remaining = pending_approvals(refund)
        if fully_approved:
            self._enqueue_settlement(refund)
            message = "Refund approved and queued for settlement"
        else:
            message = f"Approval recorded. {remaining} more approval(s) required."

        logger.info(f"Refund {request_id} approval by {approver.actor_id}: {message}")
        return {
            "refund": present(refund),
            "approved": fully_approved,
            "pending_approvals": remaining,
            "message": message,
        }

    def record_rejection(self, request_id: str, approver: Actor, reason: Optional[str]) -> dict:
        if approver.role not in APPROVER_ROLES:
            raise AuthorityError("Only admins can reject refunds")

        with FileStore.transaction(self.store_path, default={}) as refunds:
            refund = refunds.get(request_id)
            if refund is None:
                raise NotFoundError("refund", request_id)
            if refund["status"] != RefundStatus.PENDING.value:
                raise InvalidStateError(f"Refund is already {refund['status']}")
            validate_refund_transition(refund["status"], RefundStatus.REJECTED.value)
            reason = require_text(reason, "Rejection reason")

            now = utc_now_iso()
            refund["status"] = RefundStatus.REJECTED.value
            refund["rejected_by"] = approver.actor_id
            refund["rejection_reason"] = reason
            refund["rejected_at"] = now
            refund["updated_at"] = now
            refunds[request_id] = refund

        self.audit.record("refund", request_id, "refund.rejected", approver, reason=reason,
                          after={"status": refund["status"], "approvers": refund["approvers"]})
        self.audit.emit_outbox_event("refund.rejected", refund)

        logger.info(f"Refund {request_id} rejected by {approver.actor_id}")
        return present(refund)

    # --- settlement transitions ---

    def begin_processing(self, request_id: str) -> dict:
        return self._transition(request_id, RefundStatus.PROCESSING, processing_started_at=utc_now_iso())

    def complete_settlement(self, request_id: str, gateway_refund_id: str) -> dict:
        return self._transition(request_id, RefundStatus.COMPLETED,
                                gateway_refund_id=gateway_refund_id, processed_at=utc_now_iso())

    def fail_settlement(self, request_id: str, failure_reason: str) -> dict:
        return self._transition(request_id, RefundStatus.FAILED,
                                failure_reason=failure_reason, processed_at=utc_now_iso())

    def _transition(self, request_id: str, target: RefundStatus, **fields) -> dict:
        with FileStore.transaction(self.store_path, default={}) as refunds:
            refund = refunds.get(request_id)
            if refund is None:
                raise NotFoundError("refund", request_id)
            validate_refund_transition(refund["status"], target.value)
            before = refund["status"]
            refund["status"] = target.value
            refund.update(fields)
            refund["updated_at"] = utc_now_iso()
            refunds[request_id] = refund

        self.audit.record("refund", request_id, f"refund.{target.value}", SYSTEM_ACTOR,
                          reason=fields.get("failure_reason"),
                          before={"status": before}, after={"status": target.value})
        self.audit.emit_outbox_event(f"refund.{target.value}", refund)
        return refund

    def _enqueue_settlement(self, refund: dict) -> None:
        # The approved status is the durable queue the settlement worker polls;
        # the outbox event only notifies downstream consumers.
        try:
            self.audit.emit_outbox_event("refund.approved", refund)
        except OSError as e:
            logger.error(f"Settlement notification for refund {refund['id']} not emitted: {e}")
