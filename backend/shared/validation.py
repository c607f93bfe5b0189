"""Input rules shared by the API and the control client.

The server applies these authoritatively; the client runs the same functions
before submitting so obviously bad input never leaves the browser tier.
"""

import re
from typing import Optional

from shared.errors import ValidationError

REASON_MIN_LENGTH = 5
ELEVATED_REASON_MIN_LENGTH = 20
EVIDENCE_MIN_LENGTH = 6

REASON_TOKEN_PATTERN = re.compile(r"^[a-z][a-z0-9]*(_[a-z0-9]+)*$")


def min_reason_length(elevated: bool) -> int:
    return ELEVATED_REASON_MIN_LENGTH if elevated else REASON_MIN_LENGTH


def validate_reason(reason: Optional[str], elevated: bool = False) -> str:
    cleaned = (reason or "").strip()
    minimum = min_reason_length(elevated)
    if len(cleaned) < minimum:
        raise ValidationError(f"Reason must be at least {minimum} characters")
    return cleaned


def validate_evidence(evidence: Optional[str], required: bool) -> Optional[str]:
    cleaned = (evidence or "").strip()
    if not cleaned:
        if required:
            raise ValidationError("Evidence URL is mandatory for tier 2 and tier 3 actions")
        return None
    if len(cleaned) < EVIDENCE_MIN_LENGTH or not cleaned.startswith("http"):
        raise ValidationError("Evidence must be an http(s) URL")
    return cleaned


def validate_reason_token(reason: Optional[str], required: bool = False) -> Optional[str]:
    """Surge reasons are snake_case category tokens such as ``queue_depth``."""
    if reason is None or reason == "":
        if required:
            raise ValidationError("A reason token is required")
        return None
    if not REASON_TOKEN_PATTERN.match(reason):
        raise ValidationError(f"Reason '{reason}' must be a snake_case token")
    return reason


def display_reason(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    return reason.replace("_", " ")


def require_text(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} must not be empty")
    return cleaned


# --- governance action tiers ---

TIER1_ACTIONS = frozenset({
    "DISCOVERY_WEIGHT_ADJUST", "WARNING_ISSUE", "EVENT_PAUSE", "EVENT_RESUME", "USER_UNBAN",
})
TIER2_ACTIONS = frozenset({"VENUE_SUSPEND", "VENUE_REINSTATE", "USER_BAN", "FINANCIAL_REFUND"})
TIER3_ACTIONS = frozenset({"COMMISSION_ADJUST", "PAYOUT_FREEZE"})
RESOLUTION_ACTIONS = frozenset({"ACTION_APPROVE", "ACTION_REJECT"})
KNOWN_ACTIONS = TIER1_ACTIONS | TIER2_ACTIONS | TIER3_ACTIONS | RESOLUTION_ACTIONS


def action_tier(action: str) -> int:
    if action in TIER3_ACTIONS:
        return 3
    if action in TIER2_ACTIONS:
        return 2
    return 1


def validate_action_submission(action: str, reason: Optional[str],
                               evidence: Optional[str]) -> tuple[str, Optional[str]]:
    """Reason and evidence rules for an admin action; tier 2 and 3 are held to the stricter ones."""
    if action not in KNOWN_ACTIONS:
        raise ValidationError(f"Unknown action: {action}")
    elevated = action_tier(action) >= 2
    return validate_reason(reason, elevated), validate_evidence(evidence, required=elevated)
