"""Event codes router - gate access codes, soft revocation."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from shared.correlation import Actor
from control_api.deps import get_actor, get_event_codes
from control_api.models.requests import CreateEventCodeRequest
from control_api.services.event_codes import EventCodeService

router = APIRouter()


@router.get("")
async def list_event_codes(
    event_id: Optional[str] = Query(None, alias="eventId"),
    codes: EventCodeService = Depends(get_event_codes),
):
    return {"codes": codes.list_codes(event_id)}


@router.post("", status_code=201)
async def create_event_code(
    req: CreateEventCodeRequest,
    actor: Actor = Depends(get_actor),
    codes: EventCodeService = Depends(get_event_codes),
):
    return codes.create(req.event_id, actor, req.type, req.gate, req.expires_at)


@router.delete("")
async def revoke_event_code(
    code_id: Optional[str] = Query(None, alias="id"),
    code: Optional[str] = Query(None),
    actor: Actor = Depends(get_actor),
    codes: EventCodeService = Depends(get_event_codes),
):
    return codes.revoke(actor, code_id=code_id, code=code)


@router.get("/{code_id}")
async def get_event_code(code_id: str, codes: EventCodeService = Depends(get_event_codes)):
    return codes.get(code_id)
