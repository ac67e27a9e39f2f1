from __future__ import annotations

from typing import Any


class ApiError(RuntimeError):
    """Base for errors that map straight onto a JSON error response."""

    status = 500

    def __init__(self, message: str, *, status: int | None = None, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.extra = extra


class ValidationError(ApiError):
    status = 400


class AuthError(ApiError):
    status = 401


class NotFoundError(ApiError):
    status = 404


class ConflictError(ApiError):
    status = 409
