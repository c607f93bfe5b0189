"""Event access codes handed to gate staff. Revocation is soft and one-way."""

import os
import secrets
import string
import logging
from typing import Optional

from shared.config import EVENT_CODE_LENGTH, data_path
from shared.correlation import Actor
from shared.errors import InvalidStateError, NotFoundError, ValidationError
from shared.file_store import FileStore
from shared.models import EventCode, EventCodeType, utc_now_iso
from control_api.services.audit_trail import AuditTrail

logger = logging.getLogger("gatehouse.event_codes")

CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 20


def generate_code(length: int = EVENT_CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class EventCodeService:

    def __init__(self, data_dir: Optional[str] = None, audit: Optional[AuditTrail] = None):
        self.store_path = (
            os.path.join(data_dir, "event_codes", "event_codes.json") if data_dir
            else data_path("event_codes", "event_codes.json")
        )
        self.audit = audit or AuditTrail(data_dir)

    def list_codes(self, event_id: Optional[str] = None) -> list[dict]:
        # Insertion order breaks created_at ties
        codes = list(reversed(FileStore.read_json(self.store_path, default={}).values()))
        if event_id:
            codes = [c for c in codes if c["event_id"] == event_id]
        codes.sort(key=lambda c: c["created_at"], reverse=True)
        return codes

    def get(self, code_id: str) -> dict:
        codes = FileStore.read_json(self.store_path, default={})
        if code_id not in codes:
            raise NotFoundError("event code", code_id)
        return codes[code_id]

    def create(
        self,
        event_id: str,
        created_by: Actor,
        code_type: EventCodeType = EventCodeType.FULL,
        gate: Optional[str] = None,
        expires_at: Optional[str] = None,
    ) -> dict:
        if not event_id:
            raise ValidationError("event_id is required")

        with FileStore.transaction(self.store_path, default={}) as codes:
            taken = {c["code"] for c in codes.values()}
            for _ in range(MAX_CODE_ATTEMPTS):
                code = generate_code()
                if code not in taken:
                    break
            else:
                raise InvalidStateError("Could not allocate a unique event code")

            record = EventCode(
                code=code,
                event_id=event_id,
                type=code_type,
                gate=gate,
                expires_at=expires_at,
                created_by={"id": created_by.actor_id, "name": created_by.name},
            ).model_dump(mode="json")
            codes[record["id"]] = record

        self.audit.record("event_code", record["id"], "event_code.created", created_by,
                          after={"code": code, "event_id": event_id, "type": record["type"], "gate": gate})
        logger.info(f"Event code {record['id']} created for event {event_id}")
        return record

    def revoke(self, revoked_by: Actor, code_id: Optional[str] = None, code: Optional[str] = None) -> dict:
        """Soft-revoke by id or by code value. Revoking twice returns the record unchanged."""
        if not code_id and not code:
            raise ValidationError("Either id or code is required")

        with FileStore.transaction(self.store_path, default={}) as codes:
            if code_id:
                record = codes.get(code_id)
            else:
                record = next((c for c in codes.values() if c["code"] == code.upper()), None)
            if record is None:
                raise NotFoundError("event code", code_id or code)

            changed = not record["is_revoked"]
            if changed:
                record["is_revoked"] = True
                record["revoked_at"] = utc_now_iso()
                record["revoked_by"] = {"id": revoked_by.actor_id, "name": revoked_by.name}

        if changed:
            self.audit.record("event_code", record["id"], "event_code.revoked", revoked_by,
                              before={"is_revoked": False}, after={"is_revoked": True})
            logger.info(f"Event code {record['id']} revoked by {revoked_by.actor_id}")
        return record
