"""Governance actions router - tiered admin actions and dual-control proposals."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from shared.correlation import Actor
from control_api.deps import get_actor, get_governance
from control_api.models.requests import AdminAction
from control_api.services.governance import GovernanceService

router = APIRouter()


@router.post("/admin/actions")
@router.post("/actions")
async def submit_action(
    command: AdminAction = Body(...),
    actor: Actor = Depends(get_actor),
    governance: GovernanceService = Depends(get_governance),
):
    return governance.submit(command, actor)


@router.get("/admin/actions/proposals")
async def list_proposals(
    status: Optional[str] = Query(None),
    governance: GovernanceService = Depends(get_governance),
):
    proposals = governance.list_proposals(status)
    return {"proposals": proposals, "total": len(proposals)}
