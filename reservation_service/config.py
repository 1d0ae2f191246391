import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


RESERVATION_DB = os.getenv("RESERVATION_DB")  # unset => in-memory store (dev)
REDIS_URL = os.getenv("REDIS_URL") or "redis://localhost:6379/0"
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events
PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL") or "http://payment-gateway:8000"

PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS") or "3.0")
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS") or "2.0")


@dataclass(frozen=True)
class EngineSettings:
    """
    Policy knobs of the reservation engine.

    conflict_bounds:
      - "half_open": [start, end) intervals, touching bookings do not conflict
      - "closed": inclusive on both ends (legacy behaviour)
    pending_holds_interval: a pending request blocks overlapping requests
    """

    approval_timeout_hours: float = 48.0
    sweep_interval_seconds: float = 60.0
    conflict_bounds: str = "half_open"
    pending_holds_interval: bool = True
    service_fee_rate: str = "0.10"
    tax_rate: str = "0"

    def __post_init__(self):
        if self.conflict_bounds not in ("half_open", "closed"):
            raise ValueError(f"Invalid conflict_bounds: {self.conflict_bounds}. Allowed: half_open, closed")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")

    @property
    def inclusive_bounds(self) -> bool:
        return self.conflict_bounds == "closed"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            approval_timeout_hours=float(os.getenv("APPROVAL_TIMEOUT_HOURS") or "48"),
            sweep_interval_seconds=float(os.getenv("SWEEP_INTERVAL_SECONDS") or "60"),
            conflict_bounds=(os.getenv("CONFLICT_BOUNDS") or "half_open").strip().lower(),
            pending_holds_interval=_env_bool("PENDING_HOLDS_INTERVAL", True),
            service_fee_rate=os.getenv("SERVICE_FEE_RATE") or "0.10",
            tax_rate=os.getenv("TAX_RATE") or "0",
        )
