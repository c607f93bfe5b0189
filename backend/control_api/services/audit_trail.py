"""Audit trail - append-only evidence log and outbox emitter shared by every protocol."""

import os
import logging
from typing import Optional

from shared.config import data_path
from shared.correlation import Actor, get_correlation_id
from shared.file_store import FileStore
from shared.models import AuditEntry, OutboxEvent, utc_now_iso

logger = logging.getLogger("gatehouse.audit")

ENTITY_TYPES = ("refund", "surge", "event_code", "governance")


class AuditTrail:

    def __init__(self, data_dir: Optional[str] = None):
        self.audit_dir = os.path.join(data_dir, "audit") if data_dir else data_path("audit")
        self.outbox_path = (
            os.path.join(data_dir, "outbox", "events.jsonl") if data_dir
            else data_path("outbox", "events.jsonl")
        )

    def _path_for_type(self, entity_type: str) -> str:
        return os.path.join(self.audit_dir, f"{entity_type}.jsonl")

    def record(
        self,
        entity_type: str,
        ref: str,
        action: str,
        actor: Actor,
        reason: Optional[str] = None,
        evidence: Optional[str] = None,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
    ) -> dict:
        entry = AuditEntry(
            entity_type=entity_type,
            ref=ref,
            action=action,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            reason=reason,
            evidence=evidence,
            before=before,
            after=after,
            correlation_id=get_correlation_id(),
        )
        data = entry.model_dump(mode="json")
        FileStore.append_jsonl(self._path_for_type(entity_type), data)
        return data

    def entries_for(self, ref: str, entity_type: Optional[str] = None) -> list[dict]:
        types = [entity_type] if entity_type else ENTITY_TYPES
        found = []
        for t in types:
            found.extend(e for e in FileStore.read_jsonl(self._path_for_type(t)) if e.get("ref") == ref)
        return sorted(found, key=lambda e: e.get("timestamp", ""))

    def entries(self, entity_type: str, limit: int = 100, offset: int = 0) -> tuple[list[dict], int]:
        entries = FileStore.read_jsonl(self._path_for_type(entity_type))
        total = len(entries)
        entries.reverse()  # newest first
        return entries[offset:offset + limit], total

    def export(self, entity_type: str) -> dict:
        entries = FileStore.read_jsonl(self._path_for_type(entity_type))
        return {
            "entity_type": entity_type,
            "entries": entries,
            "total": len(entries),
            "exported_at": utc_now_iso(),
        }

    def emit_outbox_event(self, event_type: str, payload: dict) -> dict:
        event = OutboxEvent(
            type=event_type,
            payload=payload,
            correlation_id=get_correlation_id(),
        )
        data = event.model_dump(mode="json")
        FileStore.append_jsonl(self.outbox_path, data)
        return data

    def outbox_events(self, event_type: Optional[str] = None) -> list[dict]:
        events = FileStore.read_jsonl(self.outbox_path)
        if event_type:
            events = [e for e in events if e.get("type") == event_type]
        return events
