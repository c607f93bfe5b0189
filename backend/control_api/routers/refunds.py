"""Refunds router - admin review queue with single and dual approval."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse

from shared.correlation import Actor
from shared.models import OrderSnapshot
from control_api.deps import get_actor, get_audit, get_idempotency, get_refunds
from control_api.models.requests import CreateRefundRequest, RejectRefundRequest
from control_api.services.audit_trail import AuditTrail
from control_api.services.idempotency import IdempotencyService
from control_api.services.refund_approval import (
    DEFAULT_REJECTION_REASON, RefundApprovalService, present,
)

logger = logging.getLogger("gatehouse.refunds")
router = APIRouter()


@router.get("")
async def list_refunds(
    status: str = Query("pending"),
    event_id: Optional[str] = Query(None),
    order_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    refunds: RefundApprovalService = Depends(get_refunds),
):
    items, total = refunds.list_refunds(status, event_id, order_id, limit, offset)
    return {"refunds": [present(r) for r in items], "total": total, "limit": limit, "offset": offset}


@router.post("", status_code=201)
async def create_refund(
    req: CreateRefundRequest,
    actor: Actor = Depends(get_actor),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    refunds: RefundApprovalService = Depends(get_refunds),
    idempotency: IdempotencyService = Depends(get_idempotency),
):
    if idempotency_key:
        request_hash = idempotency.compute_hash({"action": "create_refund", **req.model_dump(mode="json")})
        cached = idempotency.check(idempotency_key, request_hash)
        if cached:
            return JSONResponse(cached.response, status_code=cached.status_code)

    order = OrderSnapshot(
        order_id=req.order_id,
        event_id=req.event_id,
        customer_id=req.customer_id,
        total_amount=req.order_total,
        status=req.order_status,
        payment_id=req.payment_id,
        currency=req.currency,
    )
    refund = present(refunds.create_refund_request(
        order, requested_by=actor, amount=req.amount, reason=req.reason,
        source=req.source, idempotency_key=idempotency_key,
    ))

    if idempotency_key:
        idempotency.store(idempotency_key, request_hash, refund, 201)
    return refund


@router.get("/{refund_id}")
async def get_refund(
    refund_id: str,
    refunds: RefundApprovalService = Depends(get_refunds),
    audit: AuditTrail = Depends(get_audit),
):
    refund = refunds.get(refund_id)
    return {**present(refund), "audit_entries": audit.entries_for(refund_id, "refund")}


@router.post("/{refund_id}/approve")
async def approve_refund(
    refund_id: str,
    actor: Actor = Depends(get_actor),
    refunds: RefundApprovalService = Depends(get_refunds),
):
    return refunds.record_approval(refund_id, actor)


@router.post("/{refund_id}/reject")
async def reject_refund(
    refund_id: str,
    req: Optional[RejectRefundRequest] = None,
    actor: Actor = Depends(get_actor),
    refunds: RefundApprovalService = Depends(get_refunds),
):
    reason = (req.reason if req else None) or DEFAULT_REJECTION_REASON
    return refunds.record_rejection(refund_id, actor, reason)
