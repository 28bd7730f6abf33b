"""Domain errors raised by services and rendered by the API error handlers."""

from __future__ import annotations

from typing import Optional


class ServiceError(RuntimeError):
    """Base class for failures that map onto a client-facing HTTP status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(ServiceError):
    """Missing or malformed request fields."""

    status_code = 400


class InvalidAmount(InvalidInput):
    """Credit amount is not a positive integer."""


class Unauthorized(ServiceError):
    """Missing, invalid or expired bearer token, or rejected credentials."""

    status_code = 401


class InsufficientCredit(ServiceError):
    """Balance is lower than the requested debit."""

    status_code = 402

    def __init__(self, message: str, *, balance: int = 0, required: int = 1) -> None:
        super().__init__(message)
        self.balance = balance
        self.required = required


class UpstreamGenerationFailed(ServiceError):
    """A mandatory provider call, or the final image fetch, failed."""

    status_code = 500

    def __init__(self, step: str, detail: str, *, provider_status: Optional[int] = None) -> None:
        status_part = f" (status {provider_status})" if provider_status is not None else ""
        super().__init__(f"Generation step '{step}' failed{status_part}: {detail}")
        self.step = step
        self.detail = detail
        self.provider_status = provider_status


class StorageFailure(ServiceError):
    """Blob upload or a required persistence read failed."""

    status_code = 500
