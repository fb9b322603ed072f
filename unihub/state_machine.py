from typing import Optional

from .errors import InvalidTransitionError
from .schemas import OrderStatus, RideStatus

RIDE_STATE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.SEARCHING: {RideStatus.ACCEPTING},
    # back to SEARCHING only when the customer cancels
    RideStatus.ACCEPTING: {RideStatus.ONGOING, RideStatus.SEARCHING},
    RideStatus.ONGOING: {RideStatus.COMPLETED, RideStatus.SEARCHING},
    RideStatus.COMPLETED: {RideStatus.SEARCHING},
}

BACKEND_TO_RIDE_STATUS: dict[OrderStatus, RideStatus] = {
    OrderStatus.PENDING: RideStatus.SEARCHING,
    OrderStatus.ACCEPTED: RideStatus.ACCEPTING,
    OrderStatus.IN_PROGRESS: RideStatus.ONGOING,
    OrderStatus.COMPLETED: RideStatus.COMPLETED,
}


def can_transition(current: RideStatus, next_status: RideStatus) -> bool:
    return next_status in RIDE_STATE_TRANSITIONS.get(current, set())


def ensure_valid_transition(current: RideStatus, next_status: RideStatus) -> None:
    if next_status == current:
        return
    if not can_transition(current, next_status):
        raise InvalidTransitionError(current.value, next_status.value)


def ride_status_for(status: OrderStatus) -> Optional[RideStatus]:
    """Local state for a backend status; None for cancelled orders."""
    return BACKEND_TO_RIDE_STATUS.get(status)
