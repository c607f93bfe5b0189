"""Idempotency keys for create endpoints - replaying a key returns the first response."""

import os
import hashlib
import json
from datetime import timedelta
from typing import Optional

from shared.config import IDEMPOTENCY_TTL_HOURS, data_path
from shared.errors import IdempotencyConflictError
from shared.file_store import FileStore
from shared.models import parse_ts, utc_now, utc_now_iso


class CachedResponse:
    def __init__(self, response: dict, status_code: int):
        self.response = response
        self.status_code = status_code


class IdempotencyService:

    def __init__(self, data_dir: Optional[str] = None, ttl_hours: int = IDEMPOTENCY_TTL_HOURS):
        self.keys_path = (
            os.path.join(data_dir, "idempotency", "idempotency_keys.json") if data_dir
            else data_path("idempotency", "idempotency_keys.json")
        )
        self.ttl = timedelta(hours=ttl_hours)

    @staticmethod
    def compute_hash(body: dict) -> str:
        serialized = json.dumps(body, sort_keys=True, default=str)
        return hashlib.sha256(serialized.encode()).hexdigest()

    def check(self, key: str, request_hash: str) -> Optional[CachedResponse]:
        keys = FileStore.read_json(self.keys_path, default={})
        stored = keys.get(key)
        if stored is None:
            return None

        if utc_now() - parse_ts(stored["created_at"]) > self.ttl:
            return None

        if stored["request_hash"] != request_hash:
            raise IdempotencyConflictError(
                f"Idempotency key '{key}' already used with a different request body"
            )

        return CachedResponse(
            response=stored["response"],
            status_code=stored["status_code"],
        )

    def store(self, key: str, request_hash: str, response: dict, status_code: int) -> None:
        with FileStore.transaction(self.keys_path, default={}) as keys:
            keys[key] = {
                "request_hash": request_hash,
                "response": response,
                "status_code": status_code,
                "created_at": utc_now_iso(),
            }
