"""Engine error taxonomy.

Validation and state-conflict errors are raised synchronously before any
state is mutated and carry a stable ``code`` the API layer returns
verbatim. ``RetryableConflict`` marks transient concurrency failures
(serialization failure, lock timeout) that the caller may simply retry.
"""

from typing import Any, Optional

from fastapi import status


class EngineError(Exception):
    http_status: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        payload.update(self.extra)
        return payload


class ValidationError(EngineError):
    http_status = status.HTTP_400_BAD_REQUEST


class NotFoundError(EngineError):
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, what: str, message: Optional[str] = None) -> None:
        super().__init__("NOT_FOUND", message or f"{what} not found")


class PermissionDenied(EngineError):
    http_status = status.HTTP_403_FORBIDDEN


class StateConflict(EngineError):
    """The target is in the wrong state for the requested transition.

    Seat and vote races answer 409, every other wrong-state code 400.
    """

    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str, message: str, **extra: Any) -> None:
        super().__init__(code, message, **extra)
        if code in RACE_CODES:
            self.http_status = status.HTTP_409_CONFLICT


class RetryableConflict(EngineError):
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "Busy, please retry") -> None:
        super().__init__("RETRY", message, retryable=True)


# Reason codes
CHANT_NOT_VOTING = "CHANT_NOT_VOTING"
ALREADY_VOTED = "ALREADY_VOTED"
ROUND_FULL = "ROUND_FULL"
CELL_NOT_VOTING = "CELL_NOT_VOTING"
DEADLINE_PASSED = "DEADLINE_PASSED"
IDEA_NOT_IN_CELL = "IDEA_NOT_IN_CELL"
NOT_A_PARTICIPANT = "NOT_A_PARTICIPANT"
BAD_ALLOCATION_SUM = "BAD_ALLOCATION_SUM"
BAD_ALLOCATION = "BAD_ALLOCATION"
DUPLICATE_IDEA = "DUPLICATE_IDEA"
WRONG_PHASE = "WRONG_PHASE"
BAD_ACTION = "BAD_ACTION"
NOT_CREATOR = "NOT_CREATOR"

RACE_CODES = frozenset({ALREADY_VOTED, ROUND_FULL})
