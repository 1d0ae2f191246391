import asyncio
import logging

from .config import NOTIFY_TIMEOUT_SECONDS
from .domain import Reservation
from .events import build_event, to_json

logger = logging.getLogger(__name__)

RESERVATION_REQUESTED = "reservation_requested"
RESERVATION_CONFIRMED = "reservation_confirmed"
RESERVATION_CANCELLED = "reservation_cancelled"
RESERVATION_COMPLETED = "reservation_completed"
RESERVATION_EXPIRED = "reservation_expired"
RESERVATION_DISPUTED = "reservation_disputed"


def reservation_event_data(reservation: Reservation) -> dict:
    data = {
        "reservation_id": reservation.reservation_id,
        "reference_code": reservation.reference_code,
        "resource_id": reservation.resource_id,
        "renter_id": reservation.renter_id,
        "owner_id": reservation.owner_id,
        "start": reservation.start.isoformat(),
        "end": reservation.end.isoformat(),
        "status": reservation.status.value,
        "total_amount": str(reservation.pricing.total_amount),
        "currency": reservation.pricing.currency,
    }
    if reservation.cancelled_by:
        data["cancelled_by"] = reservation.cancelled_by.value
    if reservation.refund:
        data["refund_amount"] = str(reservation.refund.amount)
    return data


class EventNotifier:
    """
    Fire-and-forget lifecycle events. A failed or slow publish is logged and
    dropped; it never propagates into the state transition that emitted it.
    """

    def __init__(self, publisher, timeout: float = NOTIFY_TIMEOUT_SECONDS):
        self.publisher = publisher
        self.timeout = timeout

    async def notify(self, event_type: str, reservation: Reservation) -> None:
        event = build_event(event_type, reservation_event_data(reservation))
        try:
            await asyncio.wait_for(self.publisher.publish(event_type, to_json(event)), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("notification %s for %s timed out", event_type, reservation.reservation_id)
        except Exception:
            logger.exception("notification %s for %s failed", event_type, reservation.reservation_id)
