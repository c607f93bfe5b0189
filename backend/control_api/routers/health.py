"""Health and request metrics endpoints."""

from fastapi import APIRouter, Query

from shared.config import data_path
from shared.file_store import FileStore

router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "healthy", "service": "control-api"}


@router.get("/metrics")
async def get_metrics(limit: int = Query(100, ge=1, le=1000)):
    entries = FileStore.read_jsonl(data_path("metrics", "service_metrics.jsonl"))
    entries.reverse()
    return {"entries": entries[:limit], "total": len(entries)}
