"""Domain models, state machines, and enums shared across all services."""

from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Optional
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# === Enums ===

class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class RefundDisplayStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_APPROVED = "partially_approved"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class ApprovalType(str, Enum):
    AUTO = "auto"
    SINGLE = "single"
    DUAL = "dual"


class RefundSource(str, Enum):
    USER = "user"
    HOST = "host"
    ADMIN = "admin"


class EventCodeType(str, Enum):
    FULL = "full"
    SCAN_ONLY = "scan_only"


class SurgeStatus(str, Enum):
    NORMAL = "normal"
    SURGE = "surge"


class FunnelKind(str, Enum):
    ADMITTED = "admitted"
    CONSUMED = "consumed"
    ABANDONED_PRE_RESERVE = "abandoned_pre_reserve"
    PAYMENT_FAILED = "payment_failed"


class SurgeMetric(str, Enum):
    VIEWS = "views"
    QUEUE_JOIN = "queue_join"
    CHECKOUT_INITIATE = "checkout_initiate"


class QueueTier(str, Enum):
    LOYAL = "loyal"
    AUTHENTICATED = "auth"
    ANONYMOUS = "guest"


class QueueEntryStatus(str, Enum):
    WAITING = "waiting"
    ADMITTED = "admitted"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    ABANDONED = "abandoned"
    PAYMENT_FAILED = "payment_failed"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# === State Machine Transitions ===

REFUND_TRANSITIONS: dict[RefundStatus, list[RefundStatus]] = {
    RefundStatus.PENDING: [RefundStatus.APPROVED, RefundStatus.REJECTED],
    RefundStatus.APPROVED: [RefundStatus.PROCESSING],
    RefundStatus.PROCESSING: [RefundStatus.COMPLETED, RefundStatus.FAILED],
    RefundStatus.COMPLETED: [],
    RefundStatus.FAILED: [],
    RefundStatus.REJECTED: [],
}

SURGE_TRANSITIONS: dict[SurgeStatus, list[SurgeStatus]] = {
    SurgeStatus.NORMAL: [SurgeStatus.SURGE],
    SurgeStatus.SURGE: [SurgeStatus.NORMAL],
}

APPROVERS_REQUIRED: dict[ApprovalType, int] = {
    ApprovalType.AUTO: 0,
    ApprovalType.SINGLE: 1,
    ApprovalType.DUAL: 2,
}

OPEN_REFUND_STATUSES = {RefundStatus.PENDING, RefundStatus.APPROVED, RefundStatus.PROCESSING}


# === Domain Models ===

class Approver(BaseModel):
    approver_id: str
    approver_name: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class RefundRequest(BaseModel):
    id: str = Field(default_factory=lambda: f"rfq_{uuid.uuid4().hex[:12]}")
    order_id: str
    event_id: str
    customer_id: str
    amount: int = Field(gt=0)
    currency: str = "INR"
    reason: str = ""
    is_partial: bool = False
    source: RefundSource = RefundSource.USER
    requested_by: Optional[str] = None
    payment_id: Optional[str] = None
    approval_type: ApprovalType
    approvers_required: int
    approvers: list[Approver] = Field(default_factory=list)
    status: RefundStatus = RefundStatus.PENDING
    approved_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[str] = None
    processing_started_at: Optional[str] = None
    processed_at: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class OrderSnapshot(BaseModel):
    """The slice of an externally owned order that refund policy needs."""

    order_id: str
    event_id: str
    customer_id: str
    total_amount: int = Field(gt=0)
    status: str = "confirmed"
    payment_id: Optional[str] = None
    currency: Optional[str] = None


class EventCode(BaseModel):
    id: str = Field(default_factory=lambda: f"ecd_{uuid.uuid4().hex[:12]}")
    code: str
    event_id: str
    type: EventCodeType = EventCodeType.FULL
    gate: Optional[str] = None
    is_revoked: bool = False
    usage_count: int = 0
    last_used_at: Optional[str] = None
    created_by: Optional[dict] = None
    created_at: str = Field(default_factory=utc_now_iso)
    expires_at: Optional[str] = None
    revoked_at: Optional[str] = None
    revoked_by: Optional[dict] = None


class SurgeStats(BaseModel):
    waiting: int = Field(default=0, ge=0)
    admitted: int = Field(default=0, ge=0)


class ConversionStats(BaseModel):
    admitted: int = Field(default=0, ge=0)
    consumed: int = Field(default=0, ge=0)
    abandoned_pre_reserve: int = Field(default=0, ge=0)
    payment_failed: int = Field(default=0, ge=0)


class SurgeState(BaseModel):
    event_id: str
    status: SurgeStatus = SurgeStatus.NORMAL
    reason: Optional[str] = None
    triggered_by: Optional[str] = None
    triggered_at: Optional[str] = None
    admit_rate: int = 10
    stats: SurgeStats = Field(default_factory=SurgeStats)
    conversion_stats: ConversionStats = Field(default_factory=ConversionStats)
    updated_at: str = Field(default_factory=utc_now_iso)


class QueueEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event_id: str
    user_id: str
    device_id: Optional[str] = None
    tier: QueueTier = QueueTier.ANONYMOUS
    score: int = 0
    status: QueueEntryStatus = QueueEntryStatus.WAITING
    joined_at: str = Field(default_factory=utc_now_iso)
    last_active: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    admitted_at: Optional[str] = None
    expires_at: Optional[str] = None
    token: Optional[str] = None
    consumed_at: Optional[str] = None
    retry_until: Optional[str] = None
    heartbeat_count: int = 0


class AuditEntry(BaseModel):
    entry_id: str = Field(default_factory=lambda: f"aud_{uuid.uuid4().hex[:12]}")
    entity_type: str
    ref: str
    action: str
    actor_id: str
    actor_role: Optional[str] = None
    reason: Optional[str] = None
    evidence: Optional[str] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    correlation_id: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class OutboxEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: f"oevt_{uuid.uuid4().hex[:12]}")
    type: str
    payload: dict
    correlation_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)


class Proposal(BaseModel):
    id: str = Field(default_factory=lambda: f"prop_{uuid.uuid4().hex[:12]}")
    action: str
    target_id: str
    reason: str = ""
    evidence: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)
    proposer_id: str
    proposer_role: str
    status: ProposalStatus = ProposalStatus.PENDING
    risk_score: int = 60
    created_at: str = Field(default_factory=utc_now_iso)
    expires_at: str
    resolver_id: Optional[str] = None
    resolver_role: Optional[str] = None
    resolution_reason: Optional[str] = None
    resolved_at: Optional[str] = None
