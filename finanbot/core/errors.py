"""Error taxonomy shared by the core pipeline and the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict, Optional


class FinanBotError(Exception):
    """Base class for every error the backend raises on purpose."""

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FinanBotError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(FinanBotError):
    code = "RECORD_NOT_FOUND"
    status_code = 404


class InvalidState(FinanBotError):
    """Operation does not apply to the record's current lifecycle state."""

    code = "INVALID_STATE"
    status_code = 409


class UpstreamError(FinanBotError):
    """The aggregator (or LLM provider) failed or answered with malformed data."""

    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status: Optional[int] = None,
        reauth_required: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.provider = provider
        self.status = status
        self.reauth_required = reauth_required


class ConflictError(FinanBotError):
    """A uniqueness race was lost; the record already exists."""

    code = "DUPLICATE_ENTRY"
    status_code = 409


class AuthenticationError(FinanBotError):
    code = "UNAUTHORIZED"
    status_code = 401
