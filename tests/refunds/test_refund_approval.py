"""Tests for the refund approval protocol and policy."""

import threading

import pytest

from shared.correlation import Actor
from shared.errors import (
    AuthorityError, DuplicateApproverError, InvalidStateError, NotFoundError, ValidationError,
)
from shared.models import ApprovalType, OrderSnapshot
from control_api.services.refund_approval import (
    RefundPolicy, can_refund, derive_display_status, pending_approvals,
)


class TestRefundPolicy:
    @pytest.mark.parametrize("amount,expected", [
        (100, ApprovalType.AUTO),
        (49_999, ApprovalType.AUTO),
        (50_000, ApprovalType.SINGLE),
        (499_999, ApprovalType.SINGLE),
        (500_000, ApprovalType.DUAL),
        (2_000_000, ApprovalType.DUAL),
    ])
    def test_thresholds(self, amount, expected):
        approval_type, _ = RefundPolicy().approval_requirement(amount)
        assert approval_type == expected

    def test_approvers_required_follows_type(self):
        policy = RefundPolicy()
        assert policy.approval_requirement(100)[1] == 0
        assert policy.approval_requirement(60_000)[1] == 1
        assert policy.approval_requirement(600_000)[1] == 2

    def test_post_entry_refund_never_auto_approves(self):
        approval_type, required = RefundPolicy().approval_requirement(100, requires_admin=True)
        assert approval_type == ApprovalType.SINGLE
        assert required == 1

    def test_custom_thresholds(self):
        policy = RefundPolicy(auto_approve_below=1_000, dual_approval_from=5_000)
        assert policy.approval_requirement(999)[0] == ApprovalType.AUTO
        assert policy.approval_requirement(5_000)[0] == ApprovalType.DUAL


class TestCanRefund:
    def _order(self, status):
        return OrderSnapshot(order_id="o", event_id="e", customer_id="c", total_amount=100, status=status)

    def test_confirmed_order_is_refundable(self):
        assert can_refund(self._order("confirmed")) == (True, False, None)

    def test_checked_in_order_requires_admin(self):
        allowed, requires_admin, _ = can_refund(self._order("checked_in"))
        assert allowed and requires_admin

    @pytest.mark.parametrize("status", ["pending", "cancelled", "refunded"])
    def test_other_statuses_are_refused(self, status):
        allowed, _, reason = can_refund(self._order(status))
        assert not allowed
        assert status in reason


class TestCreateRefundRequest:
    def test_auto_approved_refund_has_no_approvers(self, refunds, customer, order_factory, audit):
        refund = refunds.create_refund_request(order_factory(total=20_000), customer)
        assert refund["status"] == "approved"
        assert refund["approval_type"] == "auto"
        assert refund["approvers"] == []
        assert refund["approved_at"] is not None
        assert len(audit.outbox_events("refund.approved")) == 1

    def test_dual_refund_starts_pending(self, refunds, customer, order_factory):
        refund = refunds.create_refund_request(order_factory(total=850_000), customer, reason="Rescheduled")
        assert refund["status"] == "pending"
        assert refund["approval_type"] == "dual"
        assert refund["approvers_required"] == 2
        assert refund["id"].startswith("rfq_")

    def test_amount_defaults_to_order_total(self, refunds, customer, order_factory):
        refund = refunds.create_refund_request(order_factory(total=120_000), customer)
        assert refund["amount"] == 120_000
        assert refund["is_partial"] is False

    def test_partial_refund(self, refunds, customer, order_factory):
        refund = refunds.create_refund_request(order_factory(total=120_000), customer, amount=60_000)
        assert refund["is_partial"] is True
        assert refund["approval_type"] == "single"

    def test_amount_above_total_is_rejected(self, refunds, customer, order_factory):
        with pytest.raises(ValidationError):
            refunds.create_refund_request(order_factory(total=10_000), customer, amount=10_001)

    def test_non_positive_amount_is_rejected(self, refunds, customer, order_factory):
        with pytest.raises(ValidationError):
            refunds.create_refund_request(order_factory(total=10_000), customer, amount=0)

    def test_unrefundable_order_is_refused(self, refunds, customer, order_factory):
        with pytest.raises(InvalidStateError):
            refunds.create_refund_request(order_factory(status="cancelled"), customer)

    def test_second_open_refund_for_order_is_refused(self, refunds, customer, order_factory):
        refunds.create_refund_request(order_factory(), customer)
        with pytest.raises(InvalidStateError):
            refunds.create_refund_request(order_factory(), customer)

    def test_new_refund_allowed_after_rejection(self, refunds, customer, order_factory, admin_a):
        first = refunds.create_refund_request(order_factory(), customer)
        refunds.record_rejection(first["id"], admin_a, "Outside refund window")
        second = refunds.create_refund_request(order_factory(), customer)
        assert second["id"] != first["id"]

    def test_creation_is_audited(self, refunds, customer, order_factory, audit):
        refund = refunds.create_refund_request(order_factory(), customer, reason="Duplicate booking")
        actions = [e["action"] for e in audit.entries_for(refund["id"], "refund")]
        assert actions == ["refund.created"]


class TestRecordApproval:
    def test_dual_refund_needs_two_distinct_approvers(self, refunds, customer, order_factory, admin_a, admin_b):
        # 8500 rupees in paise
        refund = refunds.create_refund_request(order_factory(total=850_000), customer)

        first = refunds.record_approval(refund["id"], admin_a)
        assert first["approved"] is False
        assert first["pending_approvals"] == 1
        assert first["refund"]["status"] == "pending"
        assert first["refund"]["display_status"] == "partially_approved"

        second = refunds.record_approval(refund["id"], admin_b)
        assert second["approved"] is True
        assert second["pending_approvals"] == 0
        assert second["refund"]["status"] == "approved"
        assert [a["approver_id"] for a in second["refund"]["approvers"]] == ["adm_alice", "adm_bob"]

    def test_single_refund_approves_on_first_signature(self, refunds, customer, order_factory, admin_a):
        refund = refunds.create_refund_request(order_factory(total=120_000), customer)
        result = refunds.record_approval(refund["id"], admin_a)
        assert result["approved"] is True
        assert refunds.get(refund["id"])["status"] == "approved"

    def test_duplicate_approver_does_not_change_count(self, refunds, customer, order_factory, admin_a):
        refund = refunds.create_refund_request(order_factory(), customer)
        refunds.record_approval(refund["id"], admin_a)

        with pytest.raises(DuplicateApproverError):
            refunds.record_approval(refund["id"], admin_a)

        stored = refunds.get(refund["id"])
        assert len(stored["approvers"]) == 1
        assert stored["status"] == "pending"

    def test_approving_a_non_pending_refund_fails(self, refunds, customer, order_factory, admin_a, admin_b):
        refund = refunds.create_refund_request(order_factory(total=120_000), customer)
        refunds.record_approval(refund["id"], admin_a)
        with pytest.raises(InvalidStateError):
            refunds.record_approval(refund["id"], admin_b)

    def test_unknown_refund(self, refunds, admin_a):
        with pytest.raises(NotFoundError):
            refunds.record_approval("rfq_missing", admin_a)

    def test_non_admin_role_cannot_approve(self, refunds, customer, order_factory):
        refund = refunds.create_refund_request(order_factory(), customer)
        with pytest.raises(AuthorityError):
            refunds.record_approval(refund["id"], Actor(actor_id="mod_1", role="moderator"))

    def test_full_approval_enqueues_settlement(self, refunds, customer, order_factory, admin_a, admin_b, audit):
        refund = refunds.create_refund_request(order_factory(), customer)
        refunds.record_approval(refund["id"], admin_a)
        assert audit.outbox_events("refund.approved") == []
        refunds.record_approval(refund["id"], admin_b)
        events = audit.outbox_events("refund.approved")
        assert [e["payload"]["id"] for e in events] == [refund["id"]]
        assert refunds.approved_awaiting_settlement()[0]["id"] == refund["id"]


class TestRecordRejection:
    def test_one_rejection_rejects_partially_approved_refund(self, refunds, customer, order_factory, admin_a, admin_b):
        refund = refunds.create_refund_request(order_factory(), customer)
        refunds.record_approval(refund["id"], admin_a)

        rejected = refunds.record_rejection(refund["id"], admin_b, "Ticket already resold")
        assert rejected["status"] == "rejected"
        assert rejected["rejected_by"] == "adm_bob"
        assert rejected["rejection_reason"] == "Ticket already resold"
        assert [a["approver_id"] for a in rejected["approvers"]] == ["adm_alice"]

    def test_no_approval_after_rejection(self, refunds, customer, order_factory, admin_a, admin_b):
        refund = refunds.create_refund_request(order_factory(), customer)
        refunds.record_rejection(refund["id"], admin_a, "Fraud suspected")
        with pytest.raises(InvalidStateError):
            refunds.record_approval(refund["id"], admin_b)
        assert refunds.get(refund["id"])["approvers"] == []

    def test_blank_reason_is_refused(self, refunds, customer, order_factory, admin_a):
        refund = refunds.create_refund_request(order_factory(), customer)
        with pytest.raises(ValidationError):
            refunds.record_rejection(refund["id"], admin_a, "   ")
        assert refunds.get(refund["id"])["status"] == "pending"

    def test_unknown_refund_wins_over_blank_reason(self, refunds, admin_a):
        with pytest.raises(NotFoundError):
            refunds.record_rejection("rfq_missing", admin_a, "")

    def test_finished_refund_wins_over_blank_reason(self, refunds, customer, order_factory, admin_a):
        refund = refunds.create_refund_request(order_factory(), customer)
        refunds.record_rejection(refund["id"], admin_a, "Fraud suspected")
        with pytest.raises(InvalidStateError):
            refunds.record_rejection(refund["id"], admin_a, "")

    def test_rejecting_twice_fails(self, refunds, customer, order_factory, admin_a):
        refund = refunds.create_refund_request(order_factory(), customer)
        refunds.record_rejection(refund["id"], admin_a, "Fraud suspected")
        with pytest.raises(InvalidStateError):
            refunds.record_rejection(refund["id"], admin_a, "Fraud suspected")


class TestDisplayStatus:
    def test_pending_without_approvers(self):
        refund = {"status": "pending", "approvers": [], "approvers_required": 2}
        assert derive_display_status(refund).value == "pending"
        assert pending_approvals(refund) == 2

    def test_pending_with_an_approver_is_partially_approved(self):
        refund = {"status": "pending", "approvers": [{"approver_id": "a"}], "approvers_required": 2}
        assert derive_display_status(refund).value == "partially_approved"
        assert pending_approvals(refund) == 1

    def test_terminal_statuses_pass_through(self):
        refund = {"status": "rejected", "approvers": [{"approver_id": "a"}], "approvers_required": 2}
        assert derive_display_status(refund).value == "rejected"
        assert pending_approvals(refund) == 0


class TestConcurrentApprovals:
    def _run_parallel(self, *calls):
        barrier = threading.Barrier(len(calls))
        outcomes = [None] * len(calls)

        def run(i, fn):
            barrier.wait()
            try:
                outcomes[i] = fn()
            except Exception as e:
                outcomes[i] = e

        threads = [threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(calls)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return outcomes

    def test_two_admins_at_once_both_recorded(self, refunds, customer, order_factory, admin_a, admin_b):
        refund = refunds.create_refund_request(order_factory(), customer)
        outcomes = self._run_parallel(
            lambda: refunds.record_approval(refund["id"], admin_a),
            lambda: refunds.record_approval(refund["id"], admin_b),
        )
        assert all(isinstance(o, dict) for o in outcomes)
        assert sorted(o["approved"] for o in outcomes) == [False, True]

        stored = refunds.get(refund["id"])
        assert stored["status"] == "approved"
        assert len(stored["approvers"]) == 2

    def test_same_admin_twice_at_once_counts_once(self, refunds, customer, order_factory, admin_a):
        refund = refunds.create_refund_request(order_factory(), customer)
        outcomes = self._run_parallel(
            lambda: refunds.record_approval(refund["id"], admin_a),
            lambda: refunds.record_approval(refund["id"], admin_a),
        )
        assert sum(isinstance(o, DuplicateApproverError) for o in outcomes) == 1
        assert len(refunds.get(refund["id"])["approvers"]) == 1


class TestSettlementTransitions:
    def test_pending_refund_cannot_start_processing(self, refunds, customer, order_factory):
        refund = refunds.create_refund_request(order_factory(), customer)
        with pytest.raises(InvalidStateError):
            refunds.begin_processing(refund["id"])

    def test_processing_to_completed(self, refunds, customer, order_factory):
        refund = refunds.create_refund_request(order_factory(total=10_000), customer)
        refunds.begin_processing(refund["id"])
        done = refunds.complete_settlement(refund["id"], "rfnd_gw_1")
        assert done["status"] == "completed"
        assert done["gateway_refund_id"] == "rfnd_gw_1"

    def test_failed_is_terminal(self, refunds, customer, order_factory):
        refund = refunds.create_refund_request(order_factory(total=10_000), customer)
        refunds.begin_processing(refund["id"])
        refunds.fail_settlement(refund["id"], "Gateway declined")
        with pytest.raises(InvalidStateError):
            refunds.begin_processing(refund["id"])


class TestListRefunds:
    def test_defaults_to_pending(self, refunds, customer, order_factory):
        refunds.create_refund_request(order_factory("ord_a", total=10_000), customer)
        pending = refunds.create_refund_request(order_factory("ord_b"), customer)
        items, total = refunds.list_refunds()
        assert total == 1
        assert items[0]["id"] == pending["id"]

    def test_all_includes_every_status(self, refunds, customer, order_factory):
        refunds.create_refund_request(order_factory("ord_a", total=10_000), customer)
        refunds.create_refund_request(order_factory("ord_b"), customer)
        _, total = refunds.list_refunds(status="all")
        assert total == 2

    def test_unknown_status_filter(self, refunds):
        with pytest.raises(ValidationError):
            refunds.list_refunds(status="bogus")
