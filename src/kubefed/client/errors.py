"""API error hierarchy shared by every resource client.

Controllers only ever see these exceptions, whatever the backing client
is.  ``from_api_exception`` maps a ``kubernetes`` ``ApiException`` onto the
hierarchy by HTTP status (and, for 409, by the ``reason`` in the body,
because the apiserver reports both "already exists" and "conflict" as 409).
"""

from __future__ import annotations

import json
from typing import Any


class ApiError(Exception):
    """Raised when a remote API call fails."""

    status: int = 500

    def __init__(
        self,
        message: str = "",
        *,
        status: int | None = None,
        reason: str = "",
    ) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status
        self.reason = reason


class NotFoundError(ApiError):
    status = 404


class ForbiddenError(ApiError):
    status = 403


class ConflictError(ApiError):
    """The object was modified since it was read (resourceVersion mismatch)."""

    status = 409


class AlreadyExistsError(ApiError):
    status = 409


def from_api_exception(exc: Any) -> ApiError:
    """Translate a kubernetes ``ApiException`` into an :class:`ApiError`."""
    status = getattr(exc, "status", None) or 500
    reason = getattr(exc, "reason", "") or ""
    message = reason

    body = getattr(exc, "body", None)
    if body:
        try:
            details = json.loads(body)
        except (TypeError, ValueError):
            details = {}
        if isinstance(details, dict):
            reason = details.get("reason", reason) or reason
            message = details.get("message", message) or message

    if status == 404:
        return NotFoundError(message, reason=reason)
    if status == 403:
        return ForbiddenError(message, reason=reason)
    if status == 409:
        if reason == "AlreadyExists":
            return AlreadyExistsError(message, reason=reason)
        return ConflictError(message, reason=reason)
    return ApiError(message, status=status, reason=reason)
