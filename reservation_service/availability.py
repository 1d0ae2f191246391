import logging
from datetime import datetime

from .domain import HOLDING_STATUSES, Reservation, ReservationStatus
from .errors import ValidationError

logger = logging.getLogger(__name__)


def overlaps(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
    inclusive: bool = False,
) -> bool:
    # half-open by default: [09:00, 17:00) and [17:00, 20:00) do not overlap
    if inclusive:
        return a_start <= b_end and a_end >= b_start
    return a_start < b_end and a_end > b_start


class AvailabilityChecker:
    """
    Finds reservations on a resource that collide with a candidate interval.

    Only reservations in a blocking status count; by default that is the
    confirmed/active hold set. Read-only.
    """

    def __init__(self, store, inclusive_bounds: bool = False):
        self.store = store
        self.inclusive_bounds = inclusive_bounds

    async def find_conflicts(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
        statuses: frozenset[ReservationStatus] = HOLDING_STATUSES,
    ) -> list[Reservation]:
        if end <= start:
            raise ValidationError("end must be after start")

        # raises NotFoundError for unknown ids
        await self.store.get_resource(resource_id)

        conflicts = await self.store.find_overlapping(
            resource_id,
            start,
            end,
            statuses=statuses,
            exclude_reservation_id=exclude_reservation_id,
            inclusive=self.inclusive_bounds,
        )
        if conflicts:
            logger.info(
                "found %d conflicting reservation(s) on resource %s for %s..%s",
                len(conflicts),
                resource_id,
                start.isoformat(),
                end.isoformat(),
            )
        return conflicts

    async def is_available(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
    ) -> bool:
        conflicts = await self.find_conflicts(resource_id, start, end, exclude_reservation_id)
        return not conflicts
