"""Admin governance - tiered authority, dual-control proposals, and action execution.

Tier-3 actions and venue suspension/reinstatement never execute on submission.
They become proposals that a second admin approves (which executes them) or
rejects. Everything else executes immediately once authority and the shared
reason/evidence rules pass.
"""

import os
import logging
from datetime import timedelta
from typing import Callable, Optional, Union

from shared.config import data_path
from shared.correlation import Actor, get_correlation_id
from shared.errors import AuthorityError, InvalidStateError, NotFoundError, ValidationError
from shared.file_store import FileStore
from shared.models import OrderSnapshot, Proposal, ProposalStatus, RefundSource, parse_ts, utc_now
from shared.validation import (
    RESOLUTION_ACTIONS, TIER3_ACTIONS, action_tier, validate_action_submission,
)
from control_api.models.requests import AdminAction, parse_admin_action
from control_api.services.audit_trail import AuditTrail
from control_api.services.refund_approval import RefundApprovalService

logger = logging.getLogger("gatehouse.governance")

DUAL_CONTROL_ACTIONS = TIER3_ACTIONS | {"VENUE_SUSPEND", "VENUE_REINSTATE"}

ROLE_RANK = {"moderator": 1, "ops": 2, "super": 3}

PROPOSAL_TTL_HOURS = 24
TIER3_RISK_SCORE = 90
DEFAULT_RISK_SCORE = 60

FINISHED_EVENT_STATUSES = ("completed", "past")


def requires_dual_control(action: str) -> bool:
    return action in DUAL_CONTROL_ACTIONS


def check_authority(role: Optional[str], action: str) -> None:
    if role not in ROLE_RANK:
        raise AuthorityError(f"Role '{role}' has no governance authority")
    tier = action_tier(action)
    if tier == 3 and role != "super":
        raise AuthorityError(f"{action} requires Tier 3 (super admin) clearance")
    if tier == 2 and role == "moderator":
        raise AuthorityError(f"{action} requires Tier 2 (ops) clearance")


class GovernanceService:

    def __init__(
        self,
        data_dir: Optional[str] = None,
        audit: Optional[AuditTrail] = None,
        refunds: Optional[RefundApprovalService] = None,
    ):
        base = (lambda *p: os.path.join(data_dir, *p)) if data_dir else data_path
        self.proposals_path = base("governance", "proposals.json")
        self.entities_path = base("governance", "entity_status.json")
        self.audit = audit or AuditTrail(data_dir)
        self.refunds = refunds or RefundApprovalService(data_dir, audit=self.audit)

        self._handlers: dict[str, Callable[[AdminAction, Actor, str, Optional[str]], dict]] = {
            "DISCOVERY_WEIGHT_ADJUST": self._adjust_discovery_weight,
            "WARNING_ISSUE": self._issue_warning,
            "EVENT_PAUSE": self._set_event_status,
            "EVENT_RESUME": self._set_event_status,
            "USER_BAN": self._set_user_ban,
            "USER_UNBAN": self._set_user_ban,
            "VENUE_SUSPEND": self._set_venue_status,
            "VENUE_REINSTATE": self._set_venue_status,
            "FINANCIAL_REFUND": self._financial_refund,
            "COMMISSION_ADJUST": self._adjust_commission,
            "PAYOUT_FREEZE": self._freeze_payouts,
        }

    # --- entry point ---

    def submit(self, command: AdminAction, actor: Actor) -> dict:
        check_authority(actor.role, command.action)
        reason, evidence = validate_action_submission(command.action, command.reason, command.evidence)

        if command.action in RESOLUTION_ACTIONS:
            return self.resolve_proposal(
                command.target_id, actor, approve=command.action == "ACTION_APPROVE", reason=reason,
            )

        if requires_dual_control(command.action):
            proposal = self.propose(command, actor, reason, evidence)
            message = (
                "Tier 3 actions require dual sign-off."
                if action_tier(command.action) == 3
                else "This action requires dual sign-off."
            )
            return {"success": True, "status": "proposed", "proposal": proposal, "message": message}

        result = self.execute(command, actor, reason, evidence)
        return {
            "success": True,
            "status": "executed",
            "result": result,
            "correlation_id": get_correlation_id(),
        }

    # --- proposals ---

    def propose(self, command: AdminAction, actor: Actor, reason: str, evidence: Optional[str]) -> dict:
        now = utc_now()
        proposal = Proposal(
            action=command.action,
            target_id=command.target_id,
            reason=reason,
            evidence=evidence,
            params=command.params.model_dump(mode="json"),
            proposer_id=actor.actor_id,
            proposer_role=actor.role,
            risk_score=TIER3_RISK_SCORE if action_tier(command.action) == 3 else DEFAULT_RISK_SCORE,
            created_at=now.isoformat(),
            expires_at=(now + timedelta(hours=PROPOSAL_TTL_HOURS)).isoformat(),
        ).model_dump(mode="json")

        with FileStore.transaction(self.proposals_path, default={}) as proposals:
            proposals[proposal["id"]] = proposal

        self.audit.record("governance", proposal["id"], "proposal.created", actor,
                          reason=f"Proposed {command.action} for {command.target_id}: {reason}",
                          evidence=evidence, after=proposal)
        logger.info(f"Proposal {proposal['id']} ({command.action} on {command.target_id}) "
                    f"opened by {actor.actor_id}")
        return proposal

    def resolve_proposal(self, proposal_id: str, resolver: Actor, approve: bool,
                         reason: Optional[str] = None) -> dict:
        with FileStore.transaction(self.proposals_path, default={}) as proposals:
            proposal = proposals.get(proposal_id)
            if proposal is None:
                raise NotFoundError("proposal", proposal_id)
            if proposal["status"] != ProposalStatus.PENDING.value:
                return {"success": True, "already_processed": True, "status": proposal["status"]}
            if proposal["proposer_id"] == resolver.actor_id:
                raise AuthorityError("Proposer cannot resolve their own proposal (dual control)")
            check_authority(resolver.role, proposal["action"])

            now = utc_now()
            if approve and now > parse_ts(proposal["expires_at"]):
                raise InvalidStateError(f"Proposal {proposal_id} has expired")

            result = None
            if approve:
                command = parse_admin_action({
                    "action": proposal["action"],
                    "target_id": proposal["target_id"],
                    "reason": proposal["reason"],
                    "evidence": proposal["evidence"],
                    "params": proposal["params"],
                })
                result = self.execute(command, resolver, proposal["reason"], proposal["evidence"])

            proposal.update({
                "status": (ProposalStatus.APPROVED if approve else ProposalStatus.REJECTED).value,
                "resolver_id": resolver.actor_id,
                "resolver_role": resolver.role,
                "resolution_reason": reason,
                "resolved_at": now.isoformat(),
            })

        self.audit.record("governance", proposal_id,
                          "proposal.approved" if approve else "proposal.rejected", resolver,
                          reason=reason or f"Proposal {proposal['status']}",
                          before={"status": ProposalStatus.PENDING.value},
                          after={"status": proposal["status"]})
        logger.info(f"Proposal {proposal_id} {proposal['status']} by {resolver.actor_id}")
        return {"success": True, "status": proposal["status"], "proposal": proposal, "result": result}

    def list_proposals(self, status: Optional[str] = None) -> list[dict]:
        proposals = list(FileStore.read_json(self.proposals_path, default={}).values())
        if status:
            try:
                ProposalStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown proposal status filter: {status}")
            proposals = [p for p in proposals if p["status"] == status]
        proposals.sort(key=lambda p: p["created_at"], reverse=True)
        return proposals

    # --- execution ---

    def execute(self, command: AdminAction, actor: Actor, reason: str, evidence: Optional[str]) -> dict:
        handler = self._handlers.get(command.action)
        if handler is None:
            raise ValidationError(f"Unknown action: {command.action}")
        return handler(command, actor, reason, evidence)

    def get_entity_status(self, entity_type: str, entity_id: str) -> dict:
        entities = FileStore.read_json(self.entities_path, default={})
        return entities.get(f"{entity_type}:{entity_id}", {})

    def _update_entity(
        self,
        entity_type: str,
        entity_id: str,
        changes: Union[dict, Callable[[dict], dict]],
        guard: Optional[Callable[[dict], None]] = None,
    ) -> tuple[dict, dict]:
        with FileStore.transaction(self.entities_path, default={}) as entities:
            record = entities.setdefault(
                f"{entity_type}:{entity_id}", {"entity_type": entity_type, "entity_id": entity_id},
            )
            if guard:
                guard(record)
            if callable(changes):
                changes = changes(record)
            before = {k: record.get(k) for k in changes}
            record.update(changes)
            record["updated_at"] = utc_now().isoformat()
        return before, dict(changes)

    def _audit_execution(self, command: AdminAction, actor: Actor, reason: str,
                         evidence: Optional[str], before: dict, after: dict) -> dict:
        self.audit.record("governance", command.target_id, command.action, actor,
                          reason=reason, evidence=evidence, before=before, after=after)
        logger.info(f"{command.action} executed on {command.target_id} by {actor.actor_id}")
        return {"action": command.action, "target_id": command.target_id, "before": before, "after": after}

    def _adjust_discovery_weight(self, command, actor, reason, evidence):
        before, after = self._update_entity(command.params.type, command.target_id,
                                            {"discovery_weight": command.params.weight})
        return self._audit_execution(command, actor, reason, evidence, before, after)

    def _issue_warning(self, command, actor, reason, evidence):
        warning = {
            "message": command.params.message,
            "admin_id": actor.actor_id,
            "timestamp": utc_now().isoformat(),
            "audit_reason": reason,
        }
        before, after = self._update_entity(command.params.type, command.target_id,
                                            lambda record: {"warnings": record.get("warnings", []) + [warning]})
        return self._audit_execution(command, actor, reason, evidence,
                                     {"warning_count": len(before["warnings"] or [])},
                                     {"warning_message": command.params.message,
                                      "warning_count": len(after["warnings"])})

    def _set_event_status(self, command, actor, reason, evidence):
        target = "paused" if command.action == "EVENT_PAUSE" else "live"

        def refuse_finished(record: dict) -> None:
            if record.get("status") in FINISHED_EVENT_STATUSES:
                raise InvalidStateError("Cannot pause or resume a completed or past event")

        before, after = self._update_entity("event", command.target_id,
                                            {"status": target, "admin_override": target == "paused"},
                                            guard=refuse_finished)
        return self._audit_execution(command, actor, reason, evidence, before, after)

    def _set_user_ban(self, command, actor, reason, evidence):
        banned = command.action == "USER_BAN"
        before, after = self._update_entity("user", command.target_id, {
            "is_banned": banned,
            "banned_at": utc_now().isoformat() if banned else None,
            "ban_reason": reason if banned else None,
        })
        return self._audit_execution(command, actor, reason, evidence,
                                     {"is_banned": bool(before["is_banned"])}, {"is_banned": banned})

    def _set_venue_status(self, command, actor, reason, evidence):
        status = "suspended" if command.action == "VENUE_SUSPEND" else "reinstated"
        before, after = self._update_entity("venue", command.target_id, {"status": status})
        return self._audit_execution(command, actor, reason, evidence, before, after)

    def _adjust_commission(self, command, actor, reason, evidence):
        before, after = self._update_entity(command.params.type, command.target_id,
                                            {"platform_fee_rate": command.params.rate})
        return self._audit_execution(command, actor, reason, evidence, before, after)

    def _freeze_payouts(self, command, actor, reason, evidence):
        before, after = self._update_entity(command.params.type, command.target_id,
                                            {"payouts_frozen": True})
        return self._audit_execution(command, actor, reason, evidence, before, after)

    def _financial_refund(self, command, actor, reason, evidence):
        params = command.params
        order = OrderSnapshot(
            order_id=command.target_id,
            event_id=params.event_id,
            customer_id=params.customer_id,
            total_amount=params.total_amount,
            status=params.order_status,
            payment_id=params.payment_id,
        )
        refund = self.refunds.create_refund_request(
            order, requested_by=actor, amount=params.amount, reason=reason, source=RefundSource.ADMIN,
        )
        return self._audit_execution(command, actor, reason, evidence, {},
                                     {"refund_id": refund["id"], "refund_status": refund["status"]})
