"""Audit router - evidence trails and export."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from shared.errors import ValidationError
from control_api.deps import get_audit
from control_api.services.audit_trail import ENTITY_TYPES, AuditTrail

router = APIRouter()


def _entity_type(entity_type: Optional[str]) -> Optional[str]:
    if entity_type is not None and entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown entity type: {entity_type}")
    return entity_type


@router.get("")
async def audit_entries(
    entity_type: Optional[str] = Query(None),
    ref_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    audit: AuditTrail = Depends(get_audit),
):
    entity_type = _entity_type(entity_type)
    if ref_id:
        entries = audit.entries_for(ref_id, entity_type)
        return {"entries": entries, "total": len(entries)}

    entries, total = audit.entries(entity_type or "refund", limit, offset)
    return {"entries": entries, "total": total, "limit": limit, "offset": offset}


@router.get("/export")
async def export_audit(
    entity_type: str = Query("refund"),
    audit: AuditTrail = Depends(get_audit),
):
    return audit.export(_entity_type(entity_type))
