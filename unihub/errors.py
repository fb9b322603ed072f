from dataclasses import dataclass


@dataclass
class BackendError(Exception):
    operation: str
    code: str
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.operation}:{self.code}:{self.message}"


class BackendUnavailableError(BackendError):
    def __init__(self, operation: str, message: str = "Backend unavailable") -> None:
        super().__init__(operation=operation, code="UNAVAILABLE", message=message, retryable=True)


class DuplicateKeyError(BackendError):
    def __init__(self, operation: str, message: str = "Duplicate key") -> None:
        super().__init__(operation=operation, code="DUPLICATE", message=message, retryable=False)


class AcceptConflictError(BackendError):
    """Another driver claimed the order first."""

    def __init__(self, order_id: str, message: str = "Order already claimed") -> None:
        super().__init__(operation="accept", code="CONFLICT", message=message, retryable=False)
        self.order_id = order_id


class OrderUnavailableError(BackendError):
    """The order is gone or already in a terminal status."""

    def __init__(self, operation: str, order_id: str, status: str | None = None) -> None:
        detail = f"Order {order_id} not found" if status is None else f"Order {order_id} is {status}"
        super().__init__(operation=operation, code="UNAVAILABLE_ORDER", message=detail, retryable=False)
        self.order_id = order_id
        self.status = status


class InvalidTransitionError(BackendError):
    def __init__(self, current: str, next_status: str) -> None:
        super().__init__(
            operation="transition",
            code="INVALID_TRANSITION",
            message=f"Invalid state transition: {current} -> {next_status}",
            retryable=False,
        )
        self.current = current
        self.next_status = next_status
