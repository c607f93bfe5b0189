"""Request-scoped correlation ids and acting-admin identity."""

import uuid
from contextvars import ContextVar
from typing import Optional

from pydantic import BaseModel

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


class Actor(BaseModel):
    """Whoever is performing a mutation: an admin, a partner user or the system."""

    actor_id: str
    name: Optional[str] = None
    role: str = "system"


SYSTEM_ACTOR = Actor(actor_id="system", name="System", role="system")


def generate_correlation_id() -> str:
    return f"corr_{uuid.uuid4().hex[:16]}"


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    correlation_id_var.set(cid)
