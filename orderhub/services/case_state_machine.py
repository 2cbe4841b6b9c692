"""
Order Hub - Case Status Graph

Deterministic status graph for order-intake cases. Pure business logic with
no HTTP or DB calls; the case workflow asks this module whether a status
change is allowed before a step writes it.

Pipeline:
    intake -> parsed -> mapping_review -> customer_resolution
           -> item_resolution -> awaiting_approval -> submitted -> finalized

Side states:
    blocked            unrecoverable parse failure, waits for a new file
    submission_queued  external order system unavailable, retry pending
    cancelled          escalation exhausted or approval rejected
    failed             halted, needs operator action
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, List, Tuple
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# STATUSES AND EVENTS
# =============================================================================

class CaseStatus(str, Enum):
    INTAKE = "intake"
    PARSED = "parsed"
    MAPPING_REVIEW = "mapping_review"
    CUSTOMER_RESOLUTION = "customer_resolution"
    ITEM_RESOLUTION = "item_resolution"
    AWAITING_APPROVAL = "awaiting_approval"
    SUBMITTED = "submitted"
    SUBMISSION_QUEUED = "submission_queued"
    FINALIZED = "finalized"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CaseEvent(str, Enum):
    ON_PARSE_SUCCESS = "on_parse_success"
    ON_PARSE_BLOCKED = "on_parse_blocked"
    ON_MAPPING_NEEDS_REVIEW = "on_mapping_needs_review"
    ON_MAPPING_ACCEPTED = "on_mapping_accepted"
    ON_CORRECTIONS_APPLIED = "on_corrections_applied"
    ON_CUSTOMER_RESOLVED = "on_customer_resolved"
    ON_ITEMS_RESOLVED = "on_items_resolved"
    ON_APPROVED = "on_approved"
    ON_REJECTED = "on_rejected"
    ON_ORDER_CREATED = "on_order_created"
    ON_SUBMISSION_QUEUED = "on_submission_queued"
    ON_SUBMISSION_RETRY = "on_submission_retry"
    ON_FILE_RESUBMITTED = "on_file_resubmitted"
    ON_TIMEOUT = "on_timeout"
    ON_STEP_FAILED = "on_step_failed"
    ON_STEP_BLOCKED = "on_step_blocked"


TERMINAL_STATUSES = [
    CaseStatus.FINALIZED.value,
    CaseStatus.CANCELLED.value,
    CaseStatus.FAILED.value,
]

# Statuses in which the case may sit waiting for a human signal
SUSPENSION_STATUSES = [
    CaseStatus.MAPPING_REVIEW.value,
    CaseStatus.CUSTOMER_RESOLUTION.value,
    CaseStatus.ITEM_RESOLUTION.value,
    CaseStatus.AWAITING_APPROVAL.value,
]

# Statuses in which submitted corrections are still applied; from submission on
# the order content is fixed
CORRECTABLE_STATUSES = [
    CaseStatus.INTAKE.value,
    CaseStatus.PARSED.value,
    CaseStatus.MAPPING_REVIEW.value,
    CaseStatus.CUSTOMER_RESOLUTION.value,
    CaseStatus.ITEM_RESOLUTION.value,
    CaseStatus.AWAITING_APPROVAL.value,
]


def _restartable(transitions: Dict[str, str]) -> Dict[str, str]:
    """Every non-terminal status can restart on a new file, block on bad data, or halt on a failed step."""
    merged = dict(transitions)
    merged[CaseEvent.ON_FILE_RESUBMITTED.value] = CaseStatus.INTAKE.value
    merged[CaseEvent.ON_STEP_BLOCKED.value] = CaseStatus.BLOCKED.value
    merged[CaseEvent.ON_STEP_FAILED.value] = CaseStatus.FAILED.value
    return merged


# {current_status: {event: next_status}}
CASE_TRANSITIONS: Dict[str, Dict[str, str]] = {
    CaseStatus.INTAKE.value: _restartable({
        CaseEvent.ON_PARSE_SUCCESS.value: CaseStatus.PARSED.value,
        CaseEvent.ON_PARSE_BLOCKED.value: CaseStatus.BLOCKED.value,
    }),
    CaseStatus.PARSED.value: _restartable({
        CaseEvent.ON_MAPPING_NEEDS_REVIEW.value: CaseStatus.MAPPING_REVIEW.value,
        CaseEvent.ON_MAPPING_ACCEPTED.value: CaseStatus.CUSTOMER_RESOLUTION.value,
    }),
    CaseStatus.MAPPING_REVIEW.value: _restartable({
        CaseEvent.ON_CORRECTIONS_APPLIED.value: CaseStatus.CUSTOMER_RESOLUTION.value,
        CaseEvent.ON_TIMEOUT.value: CaseStatus.CANCELLED.value,
    }),
    CaseStatus.CUSTOMER_RESOLUTION.value: _restartable({
        CaseEvent.ON_CUSTOMER_RESOLVED.value: CaseStatus.ITEM_RESOLUTION.value,
        CaseEvent.ON_TIMEOUT.value: CaseStatus.CANCELLED.value,
    }),
    CaseStatus.ITEM_RESOLUTION.value: _restartable({
        CaseEvent.ON_ITEMS_RESOLVED.value: CaseStatus.AWAITING_APPROVAL.value,
        # a corrected customer reopens customer resolution
        CaseEvent.ON_CORRECTIONS_APPLIED.value: CaseStatus.CUSTOMER_RESOLUTION.value,
        CaseEvent.ON_TIMEOUT.value: CaseStatus.CANCELLED.value,
    }),
    CaseStatus.AWAITING_APPROVAL.value: _restartable({
        CaseEvent.ON_APPROVED.value: CaseStatus.SUBMITTED.value,
        CaseEvent.ON_REJECTED.value: CaseStatus.CANCELLED.value,
        CaseEvent.ON_CORRECTIONS_APPLIED.value: CaseStatus.CUSTOMER_RESOLUTION.value,
        CaseEvent.ON_TIMEOUT.value: CaseStatus.CANCELLED.value,
    }),
    CaseStatus.SUBMITTED.value: _restartable({
        CaseEvent.ON_ORDER_CREATED.value: CaseStatus.FINALIZED.value,
        CaseEvent.ON_SUBMISSION_QUEUED.value: CaseStatus.SUBMISSION_QUEUED.value,
    }),
    CaseStatus.SUBMISSION_QUEUED.value: _restartable({
        CaseEvent.ON_SUBMISSION_RETRY.value: CaseStatus.SUBMITTED.value,
        CaseEvent.ON_ORDER_CREATED.value: CaseStatus.FINALIZED.value,
    }),
    CaseStatus.BLOCKED.value: {
        CaseEvent.ON_FILE_RESUBMITTED.value: CaseStatus.INTAKE.value,
    },
    # Terminal statuses: no transitions out
    CaseStatus.FINALIZED.value: {},
    CaseStatus.CANCELLED.value: {},
    CaseStatus.FAILED.value: {},
}


# =============================================================================
# STATUS HISTORY ENTRY
# =============================================================================

class StatusHistoryEntry:
    """Represents a single status change on a case."""

    def __init__(
        self,
        from_status: Optional[str],
        to_status: str,
        event: str,
        actor: str = "system",
        reason: Optional[str] = None,
        timestamp: Optional[str] = None,
    ):
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()
        self.from_status = from_status
        self.to_status = to_status
        self.event = event
        self.actor = actor
        self.reason = reason

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "event": self.event,
            "actor": self.actor,
            "reason": self.reason,
        }


# =============================================================================
# STATE MACHINE
# =============================================================================

class CaseStateMachine:
    """Status graph queries for order-intake cases."""

    @staticmethod
    def can_transition(current_status: Optional[str], event: str) -> Tuple[bool, Optional[str], str]:
        """
        Check if an event is valid from the current status.

        Returns:
            (can_transition, next_status, reason)
        """
        current_key = current_status.value if isinstance(current_status, CaseStatus) else current_status
        event_key = event.value if isinstance(event, CaseEvent) else event

        status_transitions = CASE_TRANSITIONS.get(current_key)
        if status_transitions is None:
            return (False, None, f"Unknown case status '{current_key}'")

        next_status = status_transitions.get(event_key)
        if next_status is None:
            valid_events = list(status_transitions.keys())
            return (False, None, f"Event '{event_key}' not valid for status '{current_key}'. Valid: {valid_events}")

        return (True, next_status, "Transition allowed")

    @staticmethod
    def is_terminal(status: str) -> bool:
        key = status.value if isinstance(status, CaseStatus) else status
        return key in TERMINAL_STATUSES

    @staticmethod
    def accepts_corrections(status: str) -> bool:
        key = status.value if isinstance(status, CaseStatus) else status
        return key in CORRECTABLE_STATUSES

    @staticmethod
    def get_terminal_statuses() -> List[str]:
        return list(TERMINAL_STATUSES)

    @staticmethod
    def get_suspension_statuses() -> List[str]:
        return list(SUSPENSION_STATUSES)

    @staticmethod
    def get_all_statuses() -> List[str]:
        return [s.value for s in CaseStatus]

    @staticmethod
    def calculate_time_in_status(status_history: List[Dict], status: str, now: datetime = None) -> Optional[float]:
        """
        Seconds spent in the most recent stay in `status`, or None if the
        case never entered it.
        """
        entered_at = None
        left_at = None
        for entry in status_history:
            if entry.get("to_status") == status:
                entered_at = datetime.fromisoformat(entry["timestamp"])
                left_at = None
            elif entered_at is not None and entry.get("from_status") == status and left_at is None:
                left_at = datetime.fromisoformat(entry["timestamp"])

        if entered_at is None:
            return None
        end = left_at or now or datetime.now(timezone.utc)
        return (end - entered_at).total_seconds()
