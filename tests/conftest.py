from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from shared.correlation import Actor
from shared.models import OrderSnapshot


class FakeClock:
    """Controllable UTC clock for timeout and expiry tests."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, minutes: float = 0) -> None:
        self.current += timedelta(seconds=seconds, minutes=minutes)


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("QUEUE_SECRET_KEY", "test-queue-secret")
    monkeypatch.delenv("PAYMENT_GATEWAY_URL", raising=False)
    return tmp_path


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def audit(data_dir):
    from control_api.services.audit_trail import AuditTrail

    return AuditTrail()


@pytest.fixture()
def refunds(audit):
    from control_api.services.refund_approval import RefundApprovalService

    return RefundApprovalService(audit=audit)


@pytest.fixture()
def surge(audit, clock):
    from control_api.services.surge_control import SurgeControlService

    return SurgeControlService(audit=audit, clock=clock)


@pytest.fixture()
def event_codes(audit):
    from control_api.services.event_codes import EventCodeService

    return EventCodeService(audit=audit)


@pytest.fixture()
def governance(audit, refunds):
    from control_api.services.governance import GovernanceService

    return GovernanceService(audit=audit, refunds=refunds)


@pytest.fixture()
def admin_a():
    return Actor(actor_id="adm_alice", name="Alice", role="ops")


@pytest.fixture()
def admin_b():
    return Actor(actor_id="adm_bob", name="Bob", role="ops")


@pytest.fixture()
def super_a():
    return Actor(actor_id="adm_sara", name="Sara", role="super")


@pytest.fixture()
def super_b():
    return Actor(actor_id="adm_sam", name="Sam", role="super")


@pytest.fixture()
def customer():
    return Actor(actor_id="cust_001", role="user")


def make_order(order_id="ord_001", total=850_000, status="confirmed", event_id="evt_001"):
    return OrderSnapshot(
        order_id=order_id,
        event_id=event_id,
        customer_id="cust_001",
        total_amount=total,
        status=status,
        payment_id=f"pay_{order_id}",
    )


@pytest.fixture()
def order_factory():
    return make_order


@pytest.fixture()
def client(data_dir):
    from control_api.main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client


def admin_headers(admin_id="adm_alice", name="Alice", role="ops"):
    return {"X-Admin-Id": admin_id, "X-Admin-Name": name, "X-Admin-Role": role}


@pytest.fixture()
def headers_factory():
    return admin_headers
