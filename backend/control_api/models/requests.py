"""API request models."""

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from typing import Annotated, Literal, Optional, Union

from shared.errors import ValidationError
from shared.models import EventCodeType, QueueTier, RefundSource


class CreateRefundRequest(BaseModel):
    order_id: str
    event_id: str
    customer_id: str
    order_total: int = Field(gt=0)
    order_status: str = "confirmed"
    amount: Optional[int] = None
    reason: str = ""
    source: RefundSource = RefundSource.USER
    payment_id: Optional[str] = None
    currency: Optional[str] = None


class RejectRefundRequest(BaseModel):
    reason: Optional[str] = None


class SurgeToggleRequest(BaseModel):
    action: Literal["toggle"]
    enabled: bool
    reason: Optional[str] = None


class SurgeAdmitRequest(BaseModel):
    action: Literal["admit"]
    count: int


SurgeCommand = Annotated[Union[SurgeToggleRequest, SurgeAdmitRequest], Field(discriminator="action")]


class FunnelEventRequest(BaseModel):
    kind: str


class MetricEventRequest(BaseModel):
    type: str


class JoinQueueRequest(BaseModel):
    user_id: str
    device_id: Optional[str] = None
    tier: QueueTier = QueueTier.ANONYMOUS
    score: int = 0


class ValidateAdmissionRequest(BaseModel):
    token: str
    user_id: Optional[str] = None


class CreateEventCodeRequest(BaseModel):
    event_id: str
    type: EventCodeType = EventCodeType.FULL
    gate: Optional[str] = None
    expires_at: Optional[str] = None


# --- governance actions ---

EntityKind = Literal["event", "venue", "host", "user"]


class NoParams(BaseModel):
    pass


class DiscoveryWeightParams(BaseModel):
    type: EntityKind = "event"
    weight: float = Field(ge=-10, le=50)


class WarningParams(BaseModel):
    type: Literal["event", "venue", "user"] = "user"
    message: str = Field(min_length=1)


class CommissionParams(BaseModel):
    type: Literal["venue", "user"] = "venue"
    rate: float = Field(ge=0, le=100)


class PayoutFreezeParams(BaseModel):
    type: Literal["host", "venue"] = "host"


class FinancialRefundParams(BaseModel):
    event_id: str
    customer_id: str
    total_amount: int = Field(gt=0)
    amount: Optional[int] = None
    order_status: str = "confirmed"
    payment_id: Optional[str] = None


class _AdminAction(BaseModel):
    target_id: str = Field(min_length=1)
    reason: Optional[str] = None
    evidence: Optional[str] = None


class DiscoveryWeightAdjust(_AdminAction):
    action: Literal["DISCOVERY_WEIGHT_ADJUST"]
    params: DiscoveryWeightParams


class WarningIssue(_AdminAction):
    action: Literal["WARNING_ISSUE"]
    params: WarningParams


class EventPause(_AdminAction):
    action: Literal["EVENT_PAUSE"]
    params: NoParams = Field(default_factory=NoParams)


class EventResume(_AdminAction):
    action: Literal["EVENT_RESUME"]
    params: NoParams = Field(default_factory=NoParams)


class UserBan(_AdminAction):
    action: Literal["USER_BAN"]
    params: NoParams = Field(default_factory=NoParams)


class UserUnban(_AdminAction):
    action: Literal["USER_UNBAN"]
    params: NoParams = Field(default_factory=NoParams)


class VenueSuspend(_AdminAction):
    action: Literal["VENUE_SUSPEND"]
    params: NoParams = Field(default_factory=NoParams)


class VenueReinstate(_AdminAction):
    action: Literal["VENUE_REINSTATE"]
    params: NoParams = Field(default_factory=NoParams)


class FinancialRefund(_AdminAction):
    action: Literal["FINANCIAL_REFUND"]
    params: FinancialRefundParams


class CommissionAdjust(_AdminAction):
    action: Literal["COMMISSION_ADJUST"]
    params: CommissionParams


class PayoutFreeze(_AdminAction):
    action: Literal["PAYOUT_FREEZE"]
    params: PayoutFreezeParams = Field(default_factory=PayoutFreezeParams)


class ActionApprove(_AdminAction):
    action: Literal["ACTION_APPROVE"]
    params: NoParams = Field(default_factory=NoParams)


class ActionReject(_AdminAction):
    action: Literal["ACTION_REJECT"]
    params: NoParams = Field(default_factory=NoParams)


AdminAction = Annotated[
    Union[
        DiscoveryWeightAdjust, WarningIssue, EventPause, EventResume, UserBan, UserUnban,
        VenueSuspend, VenueReinstate, FinancialRefund, CommissionAdjust, PayoutFreeze,
        ActionApprove, ActionReject,
    ],
    Field(discriminator="action"),
]

_admin_action_adapter = TypeAdapter(AdminAction)


def parse_admin_action(payload: dict) -> AdminAction:
    """Build a typed action command from a raw payload (stored proposals, the client)."""
    try:
        return _admin_action_adapter.validate_python(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"Invalid action payload at {location}: {first.get('msg')}")
