from typing import Optional

from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class AlreadyBilledError(ServiceError):
    """The child already has a ledger entry; payments must be appended to it."""

    def __init__(self, child_id: int, ledger_id: int) -> None:
        super().__init__(
            f"Child {child_id} already has ledger entry {ledger_id}; append a payment instead",
            status.HTTP_409_CONFLICT,
        )
        self.child_id = child_id
        self.ledger_id = ledger_id


class InvalidAmountError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class IdempotencyConflictError(ServiceError):
    def __init__(self, key: str) -> None:
        super().__init__(
            f"Idempotency key '{key}' was already used for a different request",
            status.HTTP_409_CONFLICT,
        )


class PermissionDeniedError(ServiceError):
    def __init__(self, message: str = "Access denied for this operation") -> None:
        super().__init__(message, status.HTTP_403_FORBIDDEN)


class SessionExpiredError(ServiceError):
    """Authorization rejected; the caller has to re-authenticate rather than retry."""

    def __init__(self, message: str = "Session expired. Please sign in again.") -> None:
        super().__init__(message, status.HTTP_401_UNAUTHORIZED)


class FeedUnavailableError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE)


class UpstreamRejectedError(ServiceError):
    """School API refused a request with a client error we cannot classify further."""

    def __init__(self, message: str, upstream_status: Optional[int] = None) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)
        self.upstream_status = upstream_status


class IdempotencyInProgressError(ServiceError):
    """Another request holding the same idempotency key has not finished yet."""

    def __init__(self, key: str) -> None:
        super().__init__(
            f"A request with idempotency key '{key}' is still in progress; retry later",
            status.HTTP_409_CONFLICT,
        )
