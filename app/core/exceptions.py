from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(ServiceError):
    """Bad input, rejected before any write."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class NotFoundError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class AlreadyVoidedError(ServiceError):
    def __init__(self, message: str = "Payment has already been voided") -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class AlreadyResolvedError(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class DuplicateConversionError(ServiceError):
    """A payment already references this slip."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class PersistenceError(ServiceError):
    """Storage failure inside a ledger transaction. The cause is kept on __cause__."""

    def __init__(self, message: str = "Could not save changes, nothing was recorded") -> None:
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)
