"""
Exception hierarchy for Hack-Buddy.

Every error carries the HTTP status the API layer answers with, so the
same exception can end up as a notice on a live connection or as an
HTTPException on a REST call.
"""

from typing import Iterable, Optional

# Postgres error code for unique_violation
UNIQUE_VIOLATION = "23505"


class HackBuddyError(Exception):
    """Base exception for all Hack-Buddy errors."""
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class BackendError(HackBuddyError):
    """Query, insert, update, delete or subscribe failure (timeouts included)."""
    status_code = 502

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION


class ValidationError(HackBuddyError):
    """Rejected before any network call was issued."""
    status_code = 400


class ConflictError(HackBuddyError):
    status_code = 409


class NotFoundError(HackBuddyError):
    status_code = 404


class PermissionDenied(HackBuddyError):
    status_code = 403


class AuthenticationError(HackBuddyError):
    status_code = 401


class MalformedRowError(HackBuddyError):
    """A backend row is missing fields its typed record requires."""
    status_code = 502

    def __init__(self, model: str, missing: Iterable[str]):
        self.model = model
        self.missing = sorted(set(missing))
        super().__init__(f"{model} row is missing required fields: {', '.join(self.missing)}")
