"""Domain error taxonomy.

Every error the core raises on purpose derives from ``PortalError`` and
carries a stable ``code`` plus the HTTP status the API renders it with.
Eligibility failures are not errors; they come back as a verdict.
"""

from __future__ import annotations

from typing import Optional


class PortalError(Exception):
    code = "portal_error"
    http_status = 400

    def __init__(self, message: str, *, code: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if http_status:
            self.http_status = http_status

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationFailed(PortalError):
    """Missing or malformed input, reported field by field."""

    code = "validation_failed"
    http_status = 422

    def __init__(self, fields: dict[str, str], message: str = "Invalid submission"):
        super().__init__(message)
        self.fields = dict(fields)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["fields"] = self.fields
        return data


class NotFound(PortalError):
    code = "not_found"
    http_status = 404


class TransitionError(PortalError):
    """A status change that would break the lifecycle invariants."""

    code = "invalid_transition"
    http_status = 409


class SyncError(PortalError):
    """Integration failure while starting or tracking a dashboard sync."""

    STATUS_BY_CODE = {
        "missing_credentials": 400,
        "unauthenticated": 401,
        "timeout": 504,
        "unknown": 502,
    }

    def __init__(self, code: str, message: str):
        if code not in self.STATUS_BY_CODE:
            raise ValueError(f"Unknown sync error code: {code}")
        super().__init__(message, code=code, http_status=self.STATUS_BY_CODE[code])
