"""
Deterministic demo data for Gatehouse.
Drives the real services so refunds, queue sessions, event codes and
proposals all carry consistent audit trails.
"""

import os
import sys
import random

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "backend"))

from shared.config import data_dir, ensure_data_dirs
from shared.correlation import Actor, set_correlation_id
from shared.models import EventCodeType, OrderSnapshot, QueueTier
from control_api.models.requests import parse_admin_action
from control_api.services.event_codes import EventCodeService
from control_api.services.governance import GovernanceService
from control_api.services.refund_approval import RefundApprovalService
from control_api.services.surge_control import SurgeControlService

SEED = int(os.environ.get("SEED", 42))
rng = random.Random(SEED)

EVENTS = ["evt_sunburn_goa", "evt_lollapalooza_mumbai", "evt_standup_blr"]
AMOUNTS = [25_000, 45_000, 120_000, 350_000, 650_000, 850_000, 1_200_000]
REASONS = ["Event rescheduled", "Duplicate booking", "Medical emergency", "Venue changed", "Travel cancelled"]
GATES = ["North Gate", "VIP Entrance", "Gate 3", None]

ADMINS = [
    Actor(actor_id="adm_priya", name="Priya", role="super"),
    Actor(actor_id="adm_rahul", name="Rahul", role="ops"),
    Actor(actor_id="adm_meera", name="Meera", role="super"),
]


def seed_all():
    print("Generating demo data with seed:", SEED)
    ensure_data_dirs()
    set_correlation_id(f"corr_seed_{SEED}")

    refunds = RefundApprovalService()
    surge = SurgeControlService()
    codes = EventCodeService()
    governance = GovernanceService()

    # === Refunds ===
    created = []
    for i in range(12):
        total = rng.choice(AMOUNTS)
        order = OrderSnapshot(
            order_id=f"ord_{i:04d}",
            event_id=rng.choice(EVENTS),
            customer_id=f"cust_{rng.randint(1, 40):03d}",
            total_amount=total,
            status=rng.choice(["confirmed", "confirmed", "checked_in"]),
            payment_id=f"pay_{i:04d}",
        )
        amount = total if rng.random() > 0.3 else rng.randint(1, total // 100) * 100
        created.append(refunds.create_refund_request(
            order, requested_by=Actor(actor_id=order.customer_id, role="user"),
            amount=amount, reason=rng.choice(REASONS),
        ))

    for refund in created:
        if refund["status"] != "pending":
            continue
        roll = rng.random()
        if roll < 0.4:
            refunds.record_approval(refund["id"], ADMINS[0])
        elif roll < 0.55:
            refunds.record_rejection(refund["id"], ADMINS[1], "Outside the refund window")
    print(f"  Refunds: {len(created)}")

    # === Surge and waiting room ===
    hot_event = EVENTS[1]
    surge.toggle_surge(hot_event, True, ADMINS[1], "queue_depth")
    tiers = [QueueTier.LOYAL, QueueTier.AUTHENTICATED, QueueTier.ANONYMOUS]
    for i in range(40):
        surge.join_queue(hot_event, f"user_{i:03d}", device_id=f"dev_{i:03d}",
                         tier=rng.choice(tiers), score=rng.randint(0, 100))
    batch = surge.admit(hot_event, 15, ADMINS[1])
    for queue_id in batch["admitted_ids"][:6]:
        surge.consume_admission(hot_event, queue_id)
    print(f"  Surge: {hot_event} admitted {batch['admitted_count']} of 40 waiting")

    # === Event codes ===
    issued = []
    for event_id in EVENTS:
        for _ in range(3):
            issued.append(codes.create(event_id, ADMINS[1], rng.choice(list(EventCodeType)), rng.choice(GATES)))
    codes.revoke(ADMINS[0], code_id=issued[0]["id"])
    print(f"  Event codes: {len(issued)} (1 revoked)")

    # === Governance ===
    governance.submit(parse_admin_action({
        "action": "EVENT_PAUSE",
        "target_id": EVENTS[2],
        "reason": "Venue safety inspection pending",
    }), ADMINS[1])
    governance.submit(parse_admin_action({
        "action": "COMMISSION_ADJUST",
        "target_id": "venue_blue_frog",
        "reason": "Negotiated partner rate for the 2026 season",
        "evidence": "https://contracts.example.com/blue-frog-2026",
        "params": {"type": "venue", "rate": 8.5},
    }), ADMINS[0])
    print(f"  Proposals: {len(governance.list_proposals('pending'))} pending")

    print("\nSeed data generation complete!")
    print(f"Data directory: {data_dir()}")


if __name__ == "__main__":
    seed_all()
