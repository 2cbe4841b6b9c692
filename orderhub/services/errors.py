"""
Order Hub - Error Types

Every step surfaces one of these typed failures so the case workflow can
decide whether to retry, escalate to a human, or halt.

- PermanentStepError: malformed / missing data, never retried
- TransientStepError: network, timeouts, 5xx, contention; retried with backoff
- anything else: unclassified, retried like a transient error until the
  budget runs out, then escalated to a human
"""

import asyncio
from typing import Dict, Optional


class OrderHubError(Exception):
    """Base exception for engine errors."""
    def __init__(self, message: str, details: Dict = None, status_code: int = None):
        self.message = message
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)


# =============================================================================
# STEP FAILURES
# =============================================================================

class StepError(OrderHubError):
    """Base class for classified step failures."""
    kind = "unclassified"


class PermanentStepError(StepError):
    """Failure that a retry cannot fix."""
    kind = "permanent"


class BusinessValidationError(PermanentStepError):
    """Malformed or missing business data (bad file, bad correction path, ...)."""
    pass


class TransientStepError(StepError):
    """Failure expected to clear on its own."""
    kind = "transient"


class CaseWriteContention(TransientStepError):
    """Case write kept conflicting after the local retry budget."""
    pass


# =============================================================================
# CASE STORE
# =============================================================================

class VersionConflict(OrderHubError):
    """Raised by a case backend when the version token is stale."""
    def __init__(self, case_id: str, expected_version: int, actual_version: Optional[int] = None):
        self.case_id = case_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on case {case_id}: expected {expected_version}, found {actual_version}",
            details={"expected_version": expected_version, "actual_version": actual_version},
        )


class CaseNotFoundError(OrderHubError):
    """Raised when a case id is unknown."""
    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case not found: {case_id}", status_code=404)


class InvalidTransitionError(PermanentStepError):
    """Raised when a status change is not in the allowed graph."""
    def __init__(self, current_status: str, event: str, reason: str):
        self.current_status = current_status
        self.event = event
        super().__init__(reason, details={"current_status": current_status, "event": event})


def classify_error(error: BaseException) -> str:
    """Return 'permanent', 'transient' or 'unclassified' for any exception."""
    if isinstance(error, StepError):
        return error.kind
    if isinstance(error, asyncio.TimeoutError):
        return "transient"
    return "unclassified"
