import asyncio
import dataclasses
from abc import ABC, abstractmethod
from datetime import datetime

from .availability import overlaps
from .domain import Reservation, ReservationStatus, Resource
from .errors import ConflictError, NotFoundError, StaleStateError


class ReservationStore(ABC):
    """
    Persistence boundary of the engine.

    insert_if_available / update_if_available are the atomic check-and-write
    operations: the overlap check and the write happen under one per-resource
    guard, so two overlapping requests can never both pass.
    update / update_if_available are compare-and-set on `version`.
    """

    @abstractmethod
    async def get_resource(self, resource_id: str) -> Resource: ...

    @abstractmethod
    async def save_resource(self, resource: Resource) -> Resource: ...

    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> Reservation: ...

    @abstractmethod
    async def list_reservations(
        self,
        resource_id: str,
        statuses: frozenset[ReservationStatus] | None = None,
    ) -> list[Reservation]: ...

    @abstractmethod
    async def find_overlapping(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        statuses: frozenset[ReservationStatus],
        exclude_reservation_id: str | None = None,
        inclusive: bool = False,
    ) -> list[Reservation]: ...

    @abstractmethod
    async def insert_if_available(
        self,
        reservation: Reservation,
        statuses: frozenset[ReservationStatus],
        inclusive: bool = False,
    ) -> Reservation: ...

    @abstractmethod
    async def update(self, reservation: Reservation, expected_version: int) -> Reservation: ...

    @abstractmethod
    async def update_if_available(
        self,
        reservation: Reservation,
        expected_version: int,
        statuses: frozenset[ReservationStatus],
        inclusive: bool = False,
    ) -> Reservation: ...

    @abstractmethod
    async def list_due(self, now: datetime, requested_before: datetime) -> list[Reservation]:
        """
        Reservations with a time-driven transition due at `now`:
          - pending requested at or before `requested_before`, or whose start passed
          - confirmed whose start passed
          - active whose end passed
        """


def is_due(r: Reservation, now: datetime, requested_before: datetime) -> bool:
    if r.status == ReservationStatus.PENDING:
        return r.requested_at <= requested_before or r.start <= now
    if r.status == ReservationStatus.CONFIRMED:
        return r.start <= now
    if r.status == ReservationStatus.ACTIVE:
        return r.end <= now
    return False


class InMemoryReservationStore(ReservationStore):
    """Process-local store; one asyncio.Lock per resource guards check-and-write."""

    def __init__(self):
        self._resources: dict[str, Resource] = {}
        self._reservations: dict[str, Reservation] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, resource_id: str) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[resource_id] = lock
        return lock

    async def get_resource(self, resource_id: str) -> Resource:
        resource = self._resources.get(resource_id)
        if resource is None:
            raise NotFoundError(f"Resource {resource_id} not found")
        return resource

    async def save_resource(self, resource: Resource) -> Resource:
        self._resources[resource.resource_id] = resource
        return resource

    async def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    async def list_reservations(self, resource_id, statuses=None):
        items = [
            r
            for r in self._reservations.values()
            if r.resource_id == resource_id and (statuses is None or r.status in statuses)
        ]
        items.sort(key=lambda r: r.start)
        return items

    def _overlapping(self, resource_id, start, end, statuses, exclude_reservation_id, inclusive):
        found = []
        for r in self._reservations.values():
            if r.resource_id != resource_id or r.status not in statuses:
                continue
            if exclude_reservation_id and r.reservation_id == exclude_reservation_id:
                continue
            if overlaps(r.start, r.end, start, end, inclusive=inclusive):
                found.append(r)
        found.sort(key=lambda r: r.start)
        return found

    async def find_overlapping(
        self,
        resource_id,
        start,
        end,
        statuses,
        exclude_reservation_id=None,
        inclusive=False,
    ):
        return self._overlapping(resource_id, start, end, statuses, exclude_reservation_id, inclusive)

    async def insert_if_available(self, reservation, statuses, inclusive=False):
        async with self._lock(reservation.resource_id):
            if reservation.reservation_id in self._reservations:
                raise ConflictError(f"Reservation {reservation.reservation_id} already exists")
            conflicts = self._overlapping(
                reservation.resource_id, reservation.start, reservation.end, statuses, None, inclusive
            )
            if conflicts:
                raise ConflictError("Resource is not available for the requested interval", conflicts)
            self._reservations[reservation.reservation_id] = reservation
            return reservation

    def _compare_and_set(self, reservation: Reservation, expected_version: int) -> Reservation:
        current = self._reservations.get(reservation.reservation_id)
        if current is None:
            raise NotFoundError(f"Reservation {reservation.reservation_id} not found")
        if current.version != expected_version:
            raise StaleStateError(
                f"Reservation {reservation.reservation_id} changed concurrently "
                f"(expected version {expected_version}, found {current.version})"
            )
        stored = dataclasses.replace(reservation, version=expected_version + 1)
        self._reservations[stored.reservation_id] = stored
        return stored

    async def update(self, reservation, expected_version):
        async with self._lock(reservation.resource_id):
            return self._compare_and_set(reservation, expected_version)

    async def update_if_available(self, reservation, expected_version, statuses, inclusive=False):
        async with self._lock(reservation.resource_id):
            conflicts = self._overlapping(
                reservation.resource_id,
                reservation.start,
                reservation.end,
                statuses,
                reservation.reservation_id,
                inclusive,
            )
            if conflicts:
                raise ConflictError("Resource is not available for the requested interval", conflicts)
            return self._compare_and_set(reservation, expected_version)

    async def list_due(self, now, requested_before):
        due = [r for r in self._reservations.values() if is_due(r, now, requested_before)]
        due.sort(key=lambda r: (r.start, r.reservation_id))
        return due
