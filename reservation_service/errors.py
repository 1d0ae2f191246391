class ReservationError(Exception):
    """Base class for every error the engine raises."""

    kind = "reservation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReservationError):
    kind = "validation_error"


class NotFoundError(ReservationError):
    kind = "not_found"


class AuthorizationError(ReservationError):
    kind = "forbidden"


class PricingError(ReservationError):
    kind = "unpriceable_resource"


class PaymentError(ReservationError):
    kind = "payment_failed"


class ConflictError(ReservationError):
    kind = "conflict"

    def __init__(self, message: str, conflicts: list | None = None):
        super().__init__(message)
        self.conflicts = list(conflicts or [])


class StaleStateError(ConflictError):
    """Optimistic concurrency check lost: the reservation changed underneath us."""

    kind = "stale_state"


class StateTransitionError(ReservationError):
    kind = "invalid_transition"

    def __init__(self, current: str, requested: str, event: str | None = None):
        current = getattr(current, "value", current)
        requested = getattr(requested, "value", requested)
        if event:
            msg = f"Cannot {event}: reservation is {current}, cannot move to {requested}"
        else:
            msg = f"Cannot move reservation from {current} to {requested}"
        super().__init__(msg)
        self.current = current
        self.requested = requested
        self.event = event
