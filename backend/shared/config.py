"""Environment-driven settings shared by the API and the background jobs."""

import os

DEFAULT_DATA_DIR = "/app/data"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

# Refund approval thresholds, integer minor units
REFUND_AUTO_APPROVE_BELOW = int(os.environ.get("REFUND_AUTO_APPROVE_BELOW", 50_000))
REFUND_DUAL_APPROVAL_FROM = int(os.environ.get("REFUND_DUAL_APPROVAL_FROM", 500_000))
REFUND_CURRENCY = os.environ.get("REFUND_CURRENCY", "INR")

SURGE_POLL_INTERVAL_SECONDS = int(os.environ.get("SURGE_POLL_INTERVAL_SECONDS", 10))
IDEMPOTENCY_TTL_HOURS = int(os.environ.get("IDEMPOTENCY_TTL_HOURS", 24))
EVENT_CODE_LENGTH = int(os.environ.get("EVENT_CODE_LENGTH", 6))
GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", 10.0))
SETTLEMENT_INTERVAL_SECONDS = int(os.environ.get("SETTLEMENT_INTERVAL_SECONDS", 5))

API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", 8000))

DATA_SUBDIRS = [
    "refunds", "surge", "surge/metrics", "event_codes", "governance",
    "idempotency", "audit", "outbox", "metrics",
]


def data_dir() -> str:
    # Read per call so tests and workers can repoint storage without re-importing.
    return os.environ.get("DATA_DIR", DEFAULT_DATA_DIR)


def data_path(*parts: str) -> str:
    return os.path.join(data_dir(), *parts)


def queue_secret_key() -> str:
    return os.environ.get("QUEUE_SECRET_KEY", "gatehouse-surge-admission")


def payment_gateway_url() -> str:
    return os.environ.get("PAYMENT_GATEWAY_URL", "")


def ensure_data_dirs() -> None:
    for d in DATA_SUBDIRS:
        os.makedirs(data_path(d), exist_ok=True)
