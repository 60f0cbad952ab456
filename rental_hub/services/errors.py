from __future__ import annotations

from typing import Any


class RentalHubError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, **extra: Any):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class Unauthorized(RentalHubError):
    status_code = 401
    default_message = "Authorization required."


class Forbidden(RentalHubError):
    status_code = 403
    default_message = "Not allowed."


class NotFound(RentalHubError):
    status_code = 404
    default_message = "Not found."


class ValidationError(RentalHubError):
    status_code = 400
    default_message = "Invalid request."


class InvalidTransition(ValidationError):
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Invalid status transition: {current} -> {target}",
            currentStatus=current,
            requestedStatus=target,
        )


class InsufficientStock(RentalHubError):
    status_code = 400
    default_message = "Insufficient stock."

    def __init__(self, available: int, requested: int):
        super().__init__(
            "Insufficient stock.",
            available=available,
            requested=requested,
        )
        self.available = available
        self.requested = requested


class InternalError(RentalHubError):
    status_code = 500
