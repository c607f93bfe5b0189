"""Tests for surge state, admission batches and the conversion funnel."""

import threading

import pytest

from shared.file_store import FileStore
from shared.errors import InvalidStateError, ValidationError
from shared.models import QueueTier
from control_api.services.surge_control import lane_quotas, select_for_admission

EVENT = "evt_lolla"


def _fill_queue(surge, count, tier=QueueTier.ANONYMOUS, prefix="user"):
    return [surge.join_queue(EVENT, f"{prefix}_{i:03d}", tier=tier) for i in range(count)]


class TestToggleSurge:
    def test_new_event_starts_normal(self, surge):
        state = surge.get_state(EVENT)
        assert state["status"] == "normal"
        assert state["stats"] == {"waiting": 0, "admitted": 0}
        assert state["admit_rate"] == 10

    def test_enable_with_reason(self, surge, admin_a):
        state = surge.toggle_surge(EVENT, True, admin_a, "queue_depth")
        assert state["status"] == "surge"
        assert state["reason"] == "queue_depth"
        assert state["triggered_by"] == "adm_alice"

    def test_enable_without_reason(self, surge, admin_a):
        state = surge.toggle_surge(EVENT, True, admin_a)
        assert state["status"] == "surge"
        assert state["reason"] is None

    def test_enabling_twice_has_no_duplicate_side_effects(self, surge, admin_a, audit):
        surge.toggle_surge(EVENT, True, admin_a, "queue_depth")
        before = surge.get_state(EVENT)
        again = surge.toggle_surge(EVENT, True, admin_a, "payment_latency")

        assert again["status"] == "surge"
        assert again["reason"] == "queue_depth"
        assert again["stats"] == before["stats"]
        assert len(audit.entries_for(EVENT, "surge")) == 1
        assert len(audit.outbox_events("surge.enabled")) == 1

    def test_disable_clears_reason(self, surge, admin_a):
        surge.toggle_surge(EVENT, True, admin_a, "queue_depth")
        state = surge.toggle_surge(EVENT, False, admin_a)
        assert state["status"] == "normal"
        assert state["reason"] is None
        assert state["triggered_by"] is None

    def test_reason_must_be_snake_case(self, surge, admin_a):
        with pytest.raises(ValidationError):
            surge.toggle_surge(EVENT, True, admin_a, "Queue Depth!")

    def test_system_trigger_requires_reason(self, surge):
        with pytest.raises(ValidationError):
            surge.trigger_surge(EVENT, "")

    def test_system_trigger(self, surge):
        assert surge.trigger_surge(EVENT, "high_traffic") is True
        state = surge.get_state(EVENT)
        assert state["triggered_by"] == "system"
        assert surge.trigger_surge(EVENT, "high_traffic") is False

    def test_view_renders_reason_and_poll_interval(self, surge, admin_a):
        surge.toggle_surge(EVENT, True, admin_a, "payment_gateway_latency")
        view = surge.get_surge_view(EVENT)
        assert view["reason_display"] == "payment gateway latency"
        assert view["poll_interval_seconds"] == 10
        assert "conversion_stats" in view["analytics"]

    def test_invalid_event_id(self, surge):
        with pytest.raises(ValidationError):
            surge.get_state("../etc/passwd")


class TestAdmit:
    def test_admit_more_than_waiting_moves_everyone(self, surge, admin_a):
        _fill_queue(surge, 30)
        surge.toggle_surge(EVENT, True, admin_a, "queue_depth")

        result = surge.admit(EVENT, 50, admin_a)
        assert result["admitted_count"] == 30
        assert result["stats"] == {"waiting": 0, "admitted": 30}
        assert result["conversion_stats"]["admitted"] == 30

    def test_admit_fewer_than_waiting(self, surge, admin_a):
        _fill_queue(surge, 12)
        surge.toggle_surge(EVENT, True, admin_a)
        result = surge.admit(EVENT, 5)
        assert result["admitted_count"] == 5
        assert result["stats"] == {"waiting": 7, "admitted": 5}

    def test_admit_with_empty_queue(self, surge, admin_a):
        surge.toggle_surge(EVENT, True, admin_a)
        result = surge.admit(EVENT, 10)
        assert result["admitted_count"] == 0
        assert result["stats"]["waiting"] == 0

    def test_admit_requires_surge(self, surge):
        _fill_queue(surge, 3)
        with pytest.raises(InvalidStateError):
            surge.admit(EVENT, 1)

    @pytest.mark.parametrize("count", [0, -5])
    def test_admit_requires_positive_count(self, surge, admin_a, count):
        surge.toggle_surge(EVENT, True, admin_a)
        with pytest.raises(ValidationError):
            surge.admit(EVENT, count)

    def test_admitted_counter_is_cumulative(self, surge, admin_a):
        _fill_queue(surge, 10)
        surge.toggle_surge(EVENT, True, admin_a)
        surge.admit(EVENT, 4)
        result = surge.admit(EVENT, 4)
        assert result["stats"] == {"waiting": 2, "admitted": 8}

    def test_admitted_entries_get_tokens_and_expiry(self, surge, admin_a):
        joined = _fill_queue(surge, 2)
        surge.toggle_surge(EVENT, True, admin_a)
        surge.admit(EVENT, 2)
        status = surge.get_queue_status(EVENT, joined[0]["id"])
        assert status["status"] == "admitted"
        assert status["token"].startswith(f"{EVENT}:user_000:{joined[0]['id']}:")
        assert status["expires_at"] > status["admitted_at"]

    def test_manual_admit_is_audited(self, surge, admin_a, audit):
        _fill_queue(surge, 3)
        surge.toggle_surge(EVENT, True, admin_a)
        surge.admit(EVENT, 2, admin_a)
        manual = [e for e in audit.entries_for(EVENT, "surge") if e["action"] == "manual_admit"]
        assert len(manual) == 1
        assert manual[0]["after"]["count"] == 2

    def test_system_admit_is_not_audited_as_manual(self, surge, admin_a, audit):
        _fill_queue(surge, 3)
        surge.toggle_surge(EVENT, True, admin_a)
        surge.admit(EVENT, 2)
        assert not [e for e in audit.entries_for(EVENT, "surge") if e["action"] == "manual_admit"]

    def test_concurrent_admits_never_double_admit(self, surge, admin_a):
        _fill_queue(surge, 30)
        surge.toggle_surge(EVENT, True, admin_a)

        barrier = threading.Barrier(5)
        results = []

        def run():
            barrier.wait()
            results.append(surge.admit(EVENT, 10)["admitted_count"])

        threads = [threading.Thread(target=run) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(results) == 30
        state = surge.get_state(EVENT)
        assert state["stats"] == {"waiting": 0, "admitted": 30}


class TestLaneSelection:
    def _entries(self, tier, count, start=0):
        return [
            {"id": f"{tier}-{i}", "tier": tier, "joined_at": f"2026-03-14T18:00:{start + i:02d}+00:00", "score": 0}
            for i in range(count)
        ]

    def test_quotas(self):
        assert lane_quotas(10) == {QueueTier.LOYAL: 6, QueueTier.AUTHENTICATED: 3, QueueTier.ANONYMOUS: 1}

    def test_small_batches_keep_minimums(self):
        quotas = lane_quotas(1)
        assert quotas[QueueTier.LOYAL] == 1
        assert quotas[QueueTier.AUTHENTICATED] == 1
        assert quotas[QueueTier.ANONYMOUS] == 0

    def test_batch_respects_lane_quotas(self):
        waiting = self._entries("loyal", 10) + self._entries("auth", 10, 10) + self._entries("guest", 10, 20)
        selected = select_for_admission(waiting, 10)
        tiers = [e["tier"] for e in selected]
        assert tiers.count("loyal") == 6
        assert tiers.count("auth") == 3
        assert tiers.count("guest") == 1

    def test_unused_quota_is_filled_fifo(self):
        waiting = self._entries("guest", 8)
        selected = select_for_admission(waiting, 5)
        assert [e["id"] for e in selected] == [f"guest-{i}" for i in range(5)]

    def test_single_admit_prefers_loyal(self):
        waiting = self._entries("guest", 3) + self._entries("loyal", 1, 10)
        selected = select_for_admission(waiting, 1)
        assert [e["id"] for e in selected] == ["loyal-0"]

    def test_never_selects_more_than_requested(self):
        waiting = self._entries("loyal", 2) + self._entries("auth", 2, 5)
        assert len(select_for_admission(waiting, 1)) == 1


class TestFunnel:
    def test_increments_kind(self, surge):
        surge.record_funnel_event(EVENT, "admitted")
        stats = surge.record_funnel_event(EVENT, "payment_failed")
        assert stats == {"admitted": 1, "consumed": 0, "abandoned_pre_reserve": 0, "payment_failed": 1}

    def test_consumed_cannot_exceed_admitted(self, surge):
        surge.record_funnel_event(EVENT, "admitted")
        surge.record_funnel_event(EVENT, "consumed")
        with pytest.raises(InvalidStateError):
            surge.record_funnel_event(EVENT, "consumed")
        assert surge.get_state(EVENT)["conversion_stats"]["consumed"] == 1

    def test_unknown_kind(self, surge):
        with pytest.raises(ValidationError):
            surge.record_funnel_event(EVENT, "teleported")

    def test_natural_sequence_keeps_consumed_within_admitted(self, surge, admin_a):
        joined = _fill_queue(surge, 6)
        surge.toggle_surge(EVENT, True, admin_a)
        surge.admit(EVENT, 6)
        for entry in joined[:4]:
            surge.consume_admission(EVENT, entry["id"])
        surge.flag_payment_failure(EVENT, joined[4]["id"])
        surge.consume_admission(EVENT, joined[4]["id"])

        stats = surge.get_state(EVENT)["conversion_stats"]
        assert stats["consumed"] == 5
        assert stats["consumed"] <= stats["admitted"] == 6
        assert stats["payment_failed"] == 1


class TestDemandMetrics:
    def test_views_over_threshold_trigger_surge(self, surge):
        for _ in range(300):
            assert surge.record_metric(EVENT, "views") is False
        assert surge.record_metric(EVENT, "views") is True
        state = surge.get_state(EVENT)
        assert state["reason"] == "high_traffic"
        assert state["triggered_by"] == "system"

    def test_checkout_rate_triggers_surge(self, surge):
        for _ in range(21):
            surge.record_metric(EVENT, "checkout_initiate")
        assert surge.get_state(EVENT)["reason"] == "high_checkout_rate"

    def test_buckets_are_per_minute(self, surge, clock):
        for _ in range(200):
            surge.record_metric(EVENT, "views")
        clock.advance(minutes=1)
        for _ in range(200):
            surge.record_metric(EVENT, "views")
        assert surge.get_state(EVENT)["status"] == "normal"

    def test_metrics_document_keeps_only_the_current_minute(self, surge, clock):
        for _ in range(5):
            surge.record_metric(EVENT, "views")
            surge.record_metric(EVENT, "queue_join")
            clock.advance(minutes=1)
        surge.record_metric(EVENT, "views")

        doc = FileStore.read_json(surge._metrics_path(EVENT), default={})
        assert doc["minute"] == clock().strftime("%Y-%m-%dT%H:%M")
        assert doc["current"] == {"views": 1}
        assert doc["totals"] == {"views": 6, "queue_join": 5}

        analytics = surge.get_analytics(EVENT)
        assert analytics["views"] == 6
        assert analytics["total_demand"] == 5

    def test_unknown_metric(self, surge):
        with pytest.raises(ValidationError):
            surge.record_metric(EVENT, "clicks")

    def test_analytics(self, surge):
        surge.record_metric(EVENT, "views")
        surge.record_metric(EVENT, "queue_join")
        surge.record_metric(EVENT, "checkout_initiate")
        surge.join_queue(EVENT, "user_1")
        analytics = surge.get_analytics(EVENT)
        assert analytics["total_demand"] == 2
        assert analytics["views"] == 1
        assert analytics["stalled"] == 1
