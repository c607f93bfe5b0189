"""HMAC-signed admission tokens handed to sessions leaving the waiting room."""

import hashlib
import hmac
from typing import NamedTuple, Optional

from shared.config import queue_secret_key


class AdmissionClaims(NamedTuple):
    event_id: str
    user_id: str
    queue_id: str


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def generate_admission_token(event_id: str, user_id: str, queue_id: str,
                             secret: Optional[str] = None) -> str:
    payload = f"{event_id}:{user_id}:{queue_id}"
    return f"{payload}:{_sign(payload, secret or queue_secret_key())}"


def verify_admission_token(token: Optional[str], secret: Optional[str] = None) -> Optional[AdmissionClaims]:
    """Return the token's claims if the signature checks out, else None."""
    if not token:
        return None
    parts = token.split(":")
    if len(parts) != 4:
        return None
    event_id, user_id, queue_id, signature = parts
    expected = _sign(f"{event_id}:{user_id}:{queue_id}", secret or queue_secret_key())
    if not hmac.compare_digest(signature.encode(), expected.encode()):
        return None
    return AdmissionClaims(event_id, user_id, queue_id)
