"""
Error types and the JSON error envelope.
"""

from __future__ import annotations

from typing import Dict, Optional

from fastapi.responses import JSONResponse


class AuthenticationError(Exception):
    """Raised when a bearer credential is missing or fails verification."""


class AuthorizationError(Exception):
    """Raised when an authenticated subject addresses another user's data."""


class InvalidRequestError(Exception):
    """Raised for malformed bodies and missing path parameters."""


class PreferenceLimitError(InvalidRequestError):
    """Raised when a write would grow a preference set past its size limit."""


class StoreError(Exception):
    """Base class for preference store failures."""

    kind = "store"


class StoreUnavailableError(StoreError):
    """Backend I/O failed (connection, timeout, throttling, write conflicts)."""

    kind = "unavailable"


class StoreDataError(StoreError):
    """A stored record does not have the expected shape."""

    kind = "malformed_data"


def error_response(
    status_code: int, message: str, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "code": status_code},
        headers=headers,
    )
