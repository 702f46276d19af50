"""
core/errors.py -- Typed application errors.

Route handlers and services raise these; api/main.py maps every AppError
subclass onto the shared JSON error envelope in one exception handler, so no
handler has to build an error response by hand.

Each class carries its HTTP status and a stable machine-readable code. The
message is safe to show to the client -- never put secrets or stack traces in
it.

Layer rule: core/ is the kernel. No imports from api/, auth/, or admin/.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base class for errors that map directly to an HTTP response."""

    status_code: int = 400
    code: str = "bad_request"
    default_message: str = "Bad request."

    def __init__(self, message: str | None = None, *, code: str | None = None, detail: Any = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(self.message)


class BadRequestError(AppError):
    status_code = 400
    code = "bad_request"
    default_message = "Bad request."


class UnauthorizedError(AppError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class ForbiddenError(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class ConflictError(AppError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict."


class ValidationError(AppError):
    status_code = 422
    code = "validation_error"
    default_message = "Validation failed."
