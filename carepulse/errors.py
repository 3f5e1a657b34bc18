from __future__ import annotations


class CarePulseError(Exception):
    """Base class for errors raised by the service layer."""


class ValidationError(CarePulseError, ValueError):
    pass


class AuthError(CarePulseError):
    pass


class NotFoundError(CarePulseError, LookupError):
    pass


class ConflictError(CarePulseError):
    pass


class ExternalServiceError(CarePulseError):
    """A vendor call (OpenAI, storage, SMTP) failed."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code
