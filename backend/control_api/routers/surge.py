"""Surge router - admin surge controls plus the guest-facing waiting room."""

import logging

from fastapi import APIRouter, Body, Depends

from shared.correlation import Actor
from control_api.deps import get_actor, get_surge
from control_api.models.requests import (
    FunnelEventRequest, JoinQueueRequest, MetricEventRequest, SurgeAdmitRequest, SurgeCommand,
    ValidateAdmissionRequest,
)
from control_api.services.surge_control import SurgeControlService

logger = logging.getLogger("gatehouse.surge")
router = APIRouter()


@router.get("/{event_id}/surge")
async def get_surge_state(event_id: str, surge: SurgeControlService = Depends(get_surge)):
    return surge.get_surge_view(event_id)


@router.post("/{event_id}/surge")
async def control_surge(
    event_id: str,
    command: SurgeCommand = Body(...),
    actor: Actor = Depends(get_actor),
    surge: SurgeControlService = Depends(get_surge),
):
    if isinstance(command, SurgeAdmitRequest):
        return surge.admit(event_id, command.count, actor)
    return surge.toggle_surge(event_id, command.enabled, actor, command.reason)


@router.post("/{event_id}/funnel")
async def record_funnel_event(
    event_id: str,
    req: FunnelEventRequest,
    surge: SurgeControlService = Depends(get_surge),
):
    return {"conversion_stats": surge.record_funnel_event(event_id, req.kind)}


@router.post("/{event_id}/metrics")
async def record_metric(
    event_id: str,
    req: MetricEventRequest,
    surge: SurgeControlService = Depends(get_surge),
):
    return {"surge_active": surge.record_metric(event_id, req.type)}


@router.post("/{event_id}/queue", status_code=201)
async def join_queue(
    event_id: str,
    req: JoinQueueRequest,
    surge: SurgeControlService = Depends(get_surge),
):
    return surge.join_queue(event_id, req.user_id, req.device_id, req.tier, req.score)


@router.get("/{event_id}/queue/{queue_id}")
async def get_queue_status(
    event_id: str,
    queue_id: str,
    surge: SurgeControlService = Depends(get_surge),
):
    return surge.get_queue_status(event_id, queue_id)


@router.post("/{event_id}/queue/{queue_id}/consume")
async def consume_admission(
    event_id: str,
    queue_id: str,
    surge: SurgeControlService = Depends(get_surge),
):
    return surge.consume_admission(event_id, queue_id)


@router.post("/{event_id}/queue/{queue_id}/payment-failed")
async def flag_payment_failure(
    event_id: str,
    queue_id: str,
    surge: SurgeControlService = Depends(get_surge),
):
    return surge.flag_payment_failure(event_id, queue_id)


@router.post("/{event_id}/admission/validate")
async def validate_admission(
    event_id: str,
    req: ValidateAdmissionRequest,
    surge: SurgeControlService = Depends(get_surge),
):
    return {"valid": surge.validate_admission(event_id, req.token, req.user_id)}
