"""Surge admission - per-event throttle state, waiting room, and funnel analytics.

Each event lives in one document (``surge/<event_id>.json``) holding the surge
state and its waiting-room entries. Every mutation is a single FileStore
transaction on that document, so ``admit`` and the heartbeat timeouts never
race each other and ``stats.waiting`` is always recounted from the entries it
describes.
"""

import os
import re
import glob
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.config import SURGE_POLL_INTERVAL_SECONDS, data_path
from shared.correlation import Actor, SYSTEM_ACTOR
from shared.errors import CooldownError, InvalidStateError, NotFoundError, ValidationError
from shared.file_store import FileStore
from shared.models import (
    ConversionStats, FunnelKind, QueueEntry, QueueEntryStatus, QueueTier,
    SurgeMetric, SurgeState, SurgeStatus, parse_ts, utc_now,
)
from shared.validation import display_reason, validate_reason_token
from control_api.services.admission_tokens import generate_admission_token, verify_admission_token
from control_api.services.audit_trail import AuditTrail
from control_api.services.state_machine import validate_surge_transition

logger = logging.getLogger("gatehouse.surge")

ADMISSION_TTL_MINUTES = 10
ADMISSION_GRACE_PERIOD_SECONDS = 90
RETRY_WINDOW_SECONDS = 180
INACTIVITY_TIMEOUT_SECONDS = 60
JOIN_COOLDOWN_SECONDS = 30

VIEWS_PER_MINUTE_THRESHOLD = 300
CHECKOUTS_PER_MINUTE_THRESHOLD = 20

# Share of each admission batch reserved for a lane
ADMISSION_RATIO = {
    QueueTier.LOYAL: 0.6,
    QueueTier.AUTHENTICATED: 0.3,
    QueueTier.ANONYMOUS: 0.1,
}

EVENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,127}$")

ACTIVE_ENTRY_STATUSES = (
    QueueEntryStatus.WAITING.value,
    QueueEntryStatus.ADMITTED.value,
    QueueEntryStatus.PAYMENT_FAILED.value,
)


def lane_quotas(total: int) -> dict[QueueTier, int]:
    loyal = max(1, int(total * ADMISSION_RATIO[QueueTier.LOYAL]))
    auth = max(1, int(total * ADMISSION_RATIO[QueueTier.AUTHENTICATED]))
    return {
        QueueTier.LOYAL: loyal,
        QueueTier.AUTHENTICATED: auth,
        QueueTier.ANONYMOUS: max(0, total - loyal - auth),
    }


def select_for_admission(waiting: list[dict], count: int) -> list[dict]:
    """Pick exactly ``min(count, len(waiting))`` entries, lane quotas first.

    Quota left unused by a short lane is handed to whoever has waited longest
    in any lane, so a thin loyal lane never stalls the batch.
    """
    ordered = sorted(waiting, key=lambda e: (e["joined_at"], -e.get("score", 0)))
    selected: list[dict] = []
    for tier, quota in lane_quotas(count).items():
        lane = [e for e in ordered if e["tier"] == tier.value]
        selected.extend(lane[:quota])
    selected = selected[:count]

    chosen = {e["id"] for e in selected}
    for entry in ordered:
        if len(selected) >= count:
            break
        if entry["id"] not in chosen:
            selected.append(entry)
            chosen.add(entry["id"])
    return selected


class SurgeControlService:

    def __init__(
        self,
        data_dir: Optional[str] = None,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.surge_dir = os.path.join(data_dir, "surge") if data_dir else data_path("surge")
        self.audit = audit or AuditTrail(data_dir)
        self.now = clock or utc_now

    # --- storage helpers ---

    def _doc_path(self, event_id: str) -> str:
        if not EVENT_ID_PATTERN.match(event_id or ""):
            raise ValidationError(f"Invalid event id: {event_id!r}")
        return os.path.join(self.surge_dir, f"{event_id}.json")

    def _metrics_path(self, event_id: str) -> str:
        self._doc_path(event_id)
        return os.path.join(self.surge_dir, "metrics", f"{event_id}.json")

    @staticmethod
    def _hydrate(doc: dict, event_id: str) -> tuple[dict, dict]:
        if "state" not in doc:
            doc["state"] = SurgeState(event_id=event_id).model_dump(mode="json")
            doc["queue"] = {}
        return doc["state"], doc["queue"]

    @staticmethod
    def _recount_waiting(state: dict, queue: dict) -> None:
        state["stats"]["waiting"] = sum(
            1 for e in queue.values() if e["status"] == QueueEntryStatus.WAITING.value
        )

    def _read(self, event_id: str) -> tuple[dict, dict]:
        doc = FileStore.read_json(self._doc_path(event_id), default={})
        return self._hydrate(doc, event_id)

    def list_event_ids(self) -> list[str]:
        paths = glob.glob(os.path.join(self.surge_dir, "*.json"))
        return sorted(os.path.splitext(os.path.basename(p))[0] for p in paths)

    # --- surge state ---

    def get_state(self, event_id: str) -> dict:
        state, _ = self._read(event_id)
        return state

    def get_surge_view(self, event_id: str) -> dict:
        state = self.get_state(event_id)
        return {
            **state,
            "reason_display": display_reason(state.get("reason")),
            "analytics": self.get_analytics(event_id),
            "poll_interval_seconds": SURGE_POLL_INTERVAL_SECONDS,
        }

    def toggle_surge(self, event_id: str, enabled: bool, actor: Actor, reason: Optional[str] = None) -> dict:
        reason = validate_reason_token(reason)
        state, _ = self._set_status(event_id, enabled, actor, reason)
        return state

    def trigger_surge(self, event_id: str, reason: str) -> bool:
        """System-initiated surge. Unlike a manual toggle the reason is mandatory."""
        reason = validate_reason_token(reason, required=True)
        _, changed = self._set_status(event_id, True, SYSTEM_ACTOR, reason)
        return changed

    def _set_status(self, event_id: str, enabled: bool, actor: Actor,
                    reason: Optional[str]) -> tuple[dict, bool]:
        target = SurgeStatus.SURGE if enabled else SurgeStatus.NORMAL
        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            state, _ = self._hydrate(doc, event_id)
            before = {"status": state["status"], "reason": state.get("reason")}
            changed = state["status"] != target.value
            if changed:
                validate_surge_transition(state["status"], target.value)
                now = self.now().isoformat()
                state["status"] = target.value
                state["reason"] = reason if enabled else None
                state["triggered_by"] = actor.actor_id if enabled else None
                state["triggered_at"] = now if enabled else None
                state["updated_at"] = now

        if changed:
            action = "surge.enabled" if enabled else "surge.disabled"
            self.audit.record("surge", event_id, action, actor, reason=reason,
                              before=before, after={"status": state["status"], "reason": state["reason"]})
            self.audit.emit_outbox_event(action, {"event_id": event_id, **state})
            logger.info(f"Event {event_id} surge -> {state['status']} "
                        f"(by {actor.actor_id}, reason={state['reason']})")
        return state, changed

    # --- admission ---

    def admit(self, event_id: str, count: int, actor: Actor = SYSTEM_ACTOR) -> dict:
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise ValidationError("Admission count must be a positive integer")

        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            state, queue = self._hydrate(doc, event_id)
            if state["status"] != SurgeStatus.SURGE.value:
                raise InvalidStateError("Admission batches are only available while surge is active")

            waiting = [e for e in queue.values() if e["status"] == QueueEntryStatus.WAITING.value]
            selected = select_for_admission(waiting, count)

            now = self.now()
            expires_at = (now + timedelta(minutes=ADMISSION_TTL_MINUTES)).isoformat()
            for entry in selected:
                entry.update({
                    "status": QueueEntryStatus.ADMITTED.value,
                    "admitted_at": now.isoformat(),
                    "last_active": now.isoformat(),
                    "updated_at": now.isoformat(),
                    "expires_at": expires_at,
                    "token": generate_admission_token(event_id, entry["user_id"], entry["id"]),
                })

            admitted = len(selected)
            self._recount_waiting(state, queue)
            state["stats"]["admitted"] += admitted
            state["conversion_stats"][FunnelKind.ADMITTED.value] += admitted
            state["updated_at"] = now.isoformat()

        if admitted and actor.actor_id != SYSTEM_ACTOR.actor_id:
            self.audit.record("surge", event_id, "manual_admit", actor,
                              after={"count": admitted, "requested": count})
        logger.info(f"Event {event_id}: admitted {admitted} of {count} requested")
        return {
            **state,
            "admitted_count": admitted,
            "admitted_ids": [e["id"] for e in selected],
        }

    def record_funnel_event(self, event_id: str, kind: str) -> dict:
        try:
            kind = FunnelKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown funnel event kind: {kind}")

        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            state, _ = self._hydrate(doc, event_id)
            stats = state["conversion_stats"]
            if kind == FunnelKind.CONSUMED and stats["consumed"] + 1 > stats["admitted"]:
                raise InvalidStateError("Cannot record a consumed session that was never admitted")
            stats[kind.value] += 1
            state["updated_at"] = self.now().isoformat()

        return ConversionStats(**stats).model_dump()

    # --- waiting room ---

    def join_queue(
        self,
        event_id: str,
        user_id: str,
        device_id: Optional[str] = None,
        tier: QueueTier = QueueTier.ANONYMOUS,
        score: int = 0,
    ) -> dict:
        if not user_id or ":" in user_id:
            raise ValidationError("user_id must be non-empty and may not contain ':'")

        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            state, queue = self._hydrate(doc, event_id)
            now = self.now()
            mine = sorted(
                (e for e in queue.values() if e["user_id"] == user_id),
                key=lambda e: e["updated_at"], reverse=True,
            )
            for entry in mine:
                self._apply_timeouts(entry, state, now)
            self._recount_waiting(state, queue)

            active = next((e for e in mine if e["status"] in ACTIVE_ENTRY_STATUSES), None)
            if active is not None:
                return active

            latest = mine[0] if mine else None
            if (latest and latest["status"] == QueueEntryStatus.EXPIRED.value
                    and now - parse_ts(latest["updated_at"]) < timedelta(seconds=JOIN_COOLDOWN_SECONDS)):
                raise CooldownError(f"Please wait {JOIN_COOLDOWN_SECONDS}s before re-joining.")

            entry = QueueEntry(
                event_id=event_id,
                user_id=user_id,
                device_id=device_id,
                tier=tier,
                score=score,
                joined_at=now.isoformat(),
                last_active=now.isoformat(),
                updated_at=now.isoformat(),
            ).model_dump(mode="json")
            queue[entry["id"]] = entry
            self._recount_waiting(state, queue)

        return entry

    def get_queue_status(self, event_id: str, queue_id: str) -> dict:
        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            state, queue = self._hydrate(doc, event_id)
            entry = queue.get(queue_id)
            if entry is None:
                raise NotFoundError("queue entry", queue_id)

            now = self.now()
            if self._apply_timeouts(entry, state, now):
                self._recount_waiting(state, queue)
                return dict(entry)

            if entry["status"] != QueueEntryStatus.WAITING.value:
                return dict(entry)

            ahead = sum(
                1 for e in queue.values()
                if e["status"] == QueueEntryStatus.WAITING.value
                and e["tier"] == entry["tier"]
                and e["joined_at"] < entry["joined_at"]
            )
            entry["last_active"] = now.isoformat()
            entry["heartbeat_count"] = entry.get("heartbeat_count", 0) + 1
            return {**entry, "lane_position": ahead + 1}

    def validate_admission(self, event_id: str, token: str, user_id: Optional[str] = None) -> bool:
        claims = verify_admission_token(token)
        if claims is None:
            return False
        if claims.event_id != event_id or (user_id and claims.user_id != user_id):
            return False

        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            _, queue = self._hydrate(doc, event_id)
            entry = queue.get(claims.queue_id)
            if entry is None or entry.get("token") != token:
                return False

            now = self.now()
            if entry["status"] == QueueEntryStatus.ADMITTED.value:
                if now > parse_ts(entry["expires_at"]):
                    return False
            elif entry["status"] == QueueEntryStatus.PAYMENT_FAILED.value:
                if entry.get("retry_until") and now > parse_ts(entry["retry_until"]):
                    return False
            else:
                return False

            entry["last_active"] = now.isoformat()
        return True

    def consume_admission(self, event_id: str, queue_id: str) -> dict:
        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            state, queue = self._hydrate(doc, event_id)
            entry = self._entry(queue, queue_id)
            if entry["status"] not in (QueueEntryStatus.ADMITTED.value, QueueEntryStatus.PAYMENT_FAILED.value):
                raise InvalidStateError(f"Queue entry {queue_id} is {entry['status']}, not admitted")

            now = self.now().isoformat()
            entry.update({
                "status": QueueEntryStatus.CONSUMED.value,
                "consumed_at": now,
                "last_active": now,
                "updated_at": now,
            })
            state["conversion_stats"][FunnelKind.CONSUMED.value] += 1
            state["updated_at"] = now
        return entry

    def flag_payment_failure(self, event_id: str, queue_id: str) -> dict:
        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            state, queue = self._hydrate(doc, event_id)
            entry = self._entry(queue, queue_id)
            if entry["status"] != QueueEntryStatus.ADMITTED.value:
                raise InvalidStateError(f"Queue entry {queue_id} is {entry['status']}, not admitted")

            now = self.now()
            entry.update({
                "status": QueueEntryStatus.PAYMENT_FAILED.value,
                "retry_until": (now + timedelta(seconds=RETRY_WINDOW_SECONDS)).isoformat(),
                "updated_at": now.isoformat(),
            })
            state["conversion_stats"][FunnelKind.PAYMENT_FAILED.value] += 1
            state["updated_at"] = now.isoformat()
        return entry

    def sweep_inactive(self, event_id: str) -> int:
        with FileStore.transaction(self._doc_path(event_id), default={}) as doc:
            state, queue = self._hydrate(doc, event_id)
            now = self.now()
            changed = sum(1 for e in queue.values() if self._apply_timeouts(e, state, now))
            self._recount_waiting(state, queue)
        if changed:
            logger.info(f"Event {event_id}: timed out {changed} inactive queue entries")
        return changed

    @staticmethod
    def _entry(queue: dict, queue_id: str) -> dict:
        entry = queue.get(queue_id)
        if entry is None:
            raise NotFoundError("queue entry", queue_id)
        return entry

    @staticmethod
    def _apply_timeouts(entry: dict, state: dict, now: datetime) -> bool:
        if entry.get("consumed_at"):
            return False
        idle = now - parse_ts(entry["last_active"])

        if entry["status"] == QueueEntryStatus.WAITING.value:
            if idle > timedelta(seconds=INACTIVITY_TIMEOUT_SECONDS):
                entry["status"] = QueueEntryStatus.EXPIRED.value
                entry["updated_at"] = now.isoformat()
                return True
            return False

        if entry["status"] == QueueEntryStatus.ADMITTED.value:
            lapsed = entry.get("expires_at") and now > parse_ts(entry["expires_at"])
            if idle > timedelta(seconds=ADMISSION_GRACE_PERIOD_SECONDS) or lapsed:
                entry["status"] = QueueEntryStatus.ABANDONED.value
                entry["updated_at"] = now.isoformat()
                state["conversion_stats"][FunnelKind.ABANDONED_PRE_RESERVE.value] += 1
                return True
            return False

        # Counted when flagged; only the status changes once the retry window closes.
        if entry["status"] == QueueEntryStatus.PAYMENT_FAILED.value:
            if entry.get("retry_until") and now > parse_ts(entry["retry_until"]):
                entry["status"] = QueueEntryStatus.ABANDONED.value
                entry["updated_at"] = now.isoformat()
                return True
        return False

    # --- demand metrics ---

    def record_metric(self, event_id: str, metric: str) -> bool:
        """Count one demand signal; system-trigger surge when this minute runs hot."""
        try:
            metric = SurgeMetric(metric)
        except ValueError:
            raise ValidationError(f"Unknown surge metric: {metric}")

        minute_key = self.now().strftime("%Y-%m-%dT%H:%M")
        with FileStore.transaction(self._metrics_path(event_id), default={}) as doc:
            # Running totals plus the current minute only; older minutes are dropped.
            totals = doc.setdefault("totals", {})
            totals[metric.value] = totals.get(metric.value, 0) + 1
            if doc.get("minute") != minute_key:
                doc["minute"] = minute_key
                doc["current"] = {}
            current = doc["current"]
            current[metric.value] = current.get(metric.value, 0) + 1
            current = dict(current)

        reason = None
        if current.get(SurgeMetric.VIEWS.value, 0) > VIEWS_PER_MINUTE_THRESHOLD:
            reason = "high_traffic"
        elif current.get(SurgeMetric.CHECKOUT_INITIATE.value, 0) > CHECKOUTS_PER_MINUTE_THRESHOLD:
            reason = "high_checkout_rate"
        if reason:
            self.trigger_surge(event_id, reason)

        return self.get_state(event_id)["status"] == SurgeStatus.SURGE.value

    def get_analytics(self, event_id: str) -> dict:
        doc = FileStore.read_json(self._metrics_path(event_id), default={})
        totals = {m.value: 0 for m in SurgeMetric}
        totals.update(doc.get("totals", {}))

        state, _ = self._read(event_id)
        return {
            "total_demand": totals[SurgeMetric.QUEUE_JOIN.value] + totals[SurgeMetric.CHECKOUT_INITIATE.value],
            "views": totals[SurgeMetric.VIEWS.value],
            "stalled": state["stats"]["waiting"],
            "conversion_stats": state["conversion_stats"],
        }
