"""
Error taxonomy for the delivery pipeline.

Producer-facing errors (raised synchronously to API callers, never retried):
  - BadRequestError / InvalidPayloadError  → HTTP 400
  - NotFoundError                          → HTTP 404
  - ConflictError                          → HTTP 409

Handler-facing errors (raised inside worker handlers):
  - PermanentJobError  — the queue item is failed immediately, no retry.
  - any other Exception is treated as transient and retried by the queue.
"""
from __future__ import annotations

from typing import Any, Optional


class AppError(Exception):
    """Base exception for all pipeline errors surfaced to callers."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class BadRequestError(AppError):
    status_code = 400


class InvalidPayloadError(BadRequestError):
    """Payload does not match the shape registered for its queue type."""


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    """Record is not in the state the requested transition requires."""

    status_code = 409


class PermanentJobError(Exception):
    """Raised by a worker handler when retrying the item cannot succeed."""
