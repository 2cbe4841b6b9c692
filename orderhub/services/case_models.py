"""
Order Hub - Case Schema and Update Operations

Typed, versioned case document plus the closed set of update operations the
case store accepts. Steps never edit the document directly: they hand the
store a list of operations, the store applies them to a fresh copy and writes
it with the version token it read.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from orderhub.services.case_state_machine import (
    CaseEvent,
    CaseStateMachine,
    CaseStatus,
    StatusHistoryEntry,
)
from orderhub.services.errors import BusinessValidationError, InvalidTransitionError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# ENUMS
# =============================================================================

class MatchMethod(str, Enum):
    """How a customer or line item was matched to the external directory."""
    IDENTIFIER = "identifier"
    SECONDARY_IDENTIFIER = "secondary_identifier"
    EXACT_NAME = "exact_name"
    FUZZY = "fuzzy"
    USER_SELECTED = "user_selected"


class CustomerMatchStatus(str, Enum):
    RESOLVED = "resolved"
    AMBIGUOUS = "ambiguous"
    NEEDS_INPUT = "needs_input"
    NOT_FOUND = "not_found"


# =============================================================================
# CANONICAL ORDER
# =============================================================================

class MatchCandidate(BaseModel):
    id: str
    name: str = ""
    score: float = 0.0
    identifier: Optional[str] = None
    secondary_identifier: Optional[str] = None
    rate: Optional[float] = None
    reason: Optional[str] = None


def _check_match_pair(method, confidence, label: str):
    if (method is None) != (confidence is None):
        raise ValueError(f"{label}: match_method and confidence must be set together")


class CustomerInfo(BaseModel):
    raw_name: Optional[str] = None
    resolved_id: Optional[str] = None
    resolved_name: Optional[str] = None
    match_status: Optional[CustomerMatchStatus] = None
    match_method: Optional[MatchMethod] = None
    confidence: Optional[float] = None

    @model_validator(mode="after")
    def _match_pair(self):
        _check_match_pair(self.match_method, self.confidence, "customer")
        return self

    @property
    def is_resolved(self) -> bool:
        return self.resolved_id is not None


class LineItem(BaseModel):
    row: int
    sku: Optional[str] = None
    gtin: Optional[str] = None
    description: Optional[str] = None
    quantity: float = 0
    unit_price: Optional[float] = None
    resolved_item_id: Optional[str] = None
    resolved_name: Optional[str] = None
    match_method: Optional[MatchMethod] = None
    confidence: Optional[float] = None

    @model_validator(mode="after")
    def _match_pair(self):
        _check_match_pair(self.match_method, self.confidence, f"line {self.row}")
        return self

    @property
    def is_resolved(self) -> bool:
        return self.resolved_item_id is not None


class SourceColumn(BaseModel):
    """A spreadsheet column offered to the evaluator committee."""
    id: str
    header: str
    samples: List[str] = Field(default_factory=list)


class CanonicalOrder(BaseModel):
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    line_items: List[LineItem] = Field(default_factory=list)
    columns: List[SourceColumn] = Field(default_factory=list)
    # target field -> source column id (None = no column)
    column_mapping: Dict[str, Optional[str]] = Field(default_factory=dict)
    detected_language: str = "en"
    currency: Optional[str] = None

    def line(self, row: int) -> LineItem:
        for item in self.line_items:
            if item.row == row:
                return item
        raise BusinessValidationError(f"No line item for row {row}", details={"row": row})


# =============================================================================
# HUMAN INPUT
# =============================================================================

class Correction(BaseModel):
    """A human edit to one field. Immutable once recorded."""
    model_config = ConfigDict(frozen=True)

    correction_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    field_path: str
    original_value: Any = None
    corrected_value: Any = None
    note: Optional[str] = None
    submitted_by: str = "unknown"
    submitted_at: str = Field(default_factory=utc_now_iso)


class Selection(BaseModel):
    """A human choice among candidates for `customer` or `line_items[<row>]`."""
    model_config = ConfigDict(frozen=True)

    field: str
    candidate_id: str
    submitted_by: Optional[str] = None


# =============================================================================
# OUTCOMES
# =============================================================================

class CommitteeSummary(BaseModel):
    task_id: str
    evaluator_ids: List[str] = Field(default_factory=list)
    requires_human: bool = False
    reason: Optional[str] = None
    agreement_ratio: float = 0.0
    fields: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class ExternalOrderRef(BaseModel):
    order_id: str
    order_number: Optional[str] = None
    idempotency_key: str
    is_duplicate: bool = False
    created_at: str = Field(default_factory=utc_now_iso)


class AuditPointer(BaseModel):
    manifest_path: str
    artifact_count: int
    manifest_sha256: str
    finalized_at: str = Field(default_factory=utc_now_iso)


class CancellationInfo(BaseModel):
    reason: str
    cancelled_by: str = "system"
    cancelled_at: str = Field(default_factory=utc_now_iso)


# =============================================================================
# CASE DOCUMENT
# =============================================================================

class CaseDocument(BaseModel):
    id: str
    tenant_id: str
    user_id: Optional[str] = None
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    file_sha256: Optional[str] = None
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    language: str = "en"

    status: CaseStatus = CaseStatus.INTAKE
    status_history: List[Dict[str, Any]] = Field(default_factory=list)

    canonical: Optional[CanonicalOrder] = None
    parse_issues: List[Dict[str, Any]] = Field(default_factory=list)
    committee: Optional[CommitteeSummary] = None
    corrections: List[Correction] = Field(default_factory=list)
    applied_selections: Dict[str, str] = Field(default_factory=dict)
    # field key ("customer" / "line_items[<row>]") -> candidates for a human
    unresolved: Dict[str, List[MatchCandidate]] = Field(default_factory=dict)

    order: Optional[ExternalOrderRef] = None
    audit: Optional[AuditPointer] = None
    archived: bool = False

    block_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    cancellation: Optional[CancellationInfo] = None

    version: int = 0
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    @property
    def is_resolution_complete(self) -> bool:
        if self.canonical is None:
            return False
        if not self.canonical.customer.is_resolved:
            return False
        return all(item.is_resolved for item in self.canonical.line_items)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_storage(cls, data: Dict[str, Any]) -> "CaseDocument":
        data = {k: v for k, v in data.items() if k != "_id"}
        return cls.model_validate(data)


# =============================================================================
# FIELD PATHS
# =============================================================================

LINE_ITEM_EDITABLE_FIELDS = ("sku", "gtin", "description", "quantity", "unit_price")

_LINE_PATH = re.compile(r"^line_items\[(\d+)\]\.(\w+)$")
_MAPPING_PATH = re.compile(r"^mapping\.(\w+)$")


def parse_field_path(path: str) -> Tuple[str, Optional[int], Optional[str]]:
    """
    Validate a correction path.

    Returns (kind, row, attribute) where kind is 'customer', 'line_item'
    or 'mapping'.
    """
    if path == "customer.name":
        return ("customer", None, "raw_name")

    match = _LINE_PATH.match(path)
    if match:
        attribute = match.group(2)
        if attribute not in LINE_ITEM_EDITABLE_FIELDS:
            raise BusinessValidationError(f"Field '{attribute}' cannot be corrected", details={"path": path})
        return ("line_item", int(match.group(1)), attribute)

    match = _MAPPING_PATH.match(path)
    if match:
        return ("mapping", None, match.group(1))

    raise BusinessValidationError(f"Unsupported correction path: {path}", details={"path": path})


def correction_problem(canonical: Optional[CanonicalOrder], path: str) -> Optional[str]:
    """
    Why a well-formed correction path cannot apply to this order, or None
    if it can. Rows are only checked once the order has been parsed.
    """
    kind, row, _ = parse_field_path(path)
    if kind == "line_item" and canonical is not None and row not in {item.row for item in canonical.line_items}:
        return f"No line item for row {row}"
    return None


def line_item_field(row: int) -> str:
    return f"line_items[{row}]"


CUSTOMER_FIELD = "customer"


# =============================================================================
# UPDATE OPERATIONS
# =============================================================================

class CaseUpdate:
    """One explicit change to a case document. `apply` mutates the copy it is given."""

    description = "update"

    def apply(self, doc: CaseDocument, now: str) -> None:
        raise NotImplementedError


def _require_canonical(doc: CaseDocument) -> CanonicalOrder:
    if doc.canonical is None:
        raise BusinessValidationError(f"Case {doc.id} has no parsed order data")
    return doc.canonical


class SetCanonicalData(CaseUpdate):
    description = "set_canonical_data"

    def __init__(self, canonical: CanonicalOrder, issues: List[Dict[str, Any]] = None):
        self.canonical = canonical
        self.issues = issues or []

    def apply(self, doc: CaseDocument, now: str) -> None:
        doc.canonical = self.canonical.model_copy(deep=True)
        doc.parse_issues = list(self.issues)


class SetCommitteeResult(CaseUpdate):
    """Store the committee outcome and adopt the winning column for each field."""
    description = "set_committee_result"

    def __init__(self, summary: CommitteeSummary, winners: Dict[str, Optional[str]]):
        self.summary = summary
        self.winners = winners

    def apply(self, doc: CaseDocument, now: str) -> None:
        doc.committee = self.summary.model_copy(deep=True)
        if doc.canonical is not None:
            for field_name, column_id in self.winners.items():
                doc.canonical.column_mapping[field_name] = column_id


class ApplyFieldCorrection(CaseUpdate):
    description = "apply_field_correction"

    def __init__(self, correction: Correction):
        self.correction = correction

    def apply(self, doc: CaseDocument, now: str) -> None:
        if any(c.correction_id == self.correction.correction_id for c in doc.corrections):
            return

        canonical = _require_canonical(doc)
        kind, row, attribute = parse_field_path(self.correction.field_path)

        if kind == "customer":
            original = canonical.customer.raw_name
            canonical.customer = CustomerInfo(raw_name=self.correction.corrected_value)
        elif kind == "line_item":
            item = canonical.line(row)
            original = getattr(item, attribute)
            updated = item.model_dump()
            updated[attribute] = self.correction.corrected_value
            # a new identifier or description invalidates any earlier match
            if attribute in ("sku", "gtin", "description"):
                updated.update(resolved_item_id=None, resolved_name=None, match_method=None, confidence=None)
            index = canonical.line_items.index(item)
            canonical.line_items[index] = LineItem.model_validate(updated)
        else:
            original = canonical.column_mapping.get(attribute)
            canonical.column_mapping[attribute] = self.correction.corrected_value

        recorded = self.correction
        if recorded.original_value is None:
            recorded = recorded.model_copy(update={"original_value": original})
        doc.corrections.append(recorded)


class SetCustomerMatch(CaseUpdate):
    """Record the customer resolution. A human selection applies at most once."""
    description = "set_customer_match"

    def __init__(
        self,
        status: CustomerMatchStatus,
        customer_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        method: Optional[MatchMethod] = None,
        confidence: Optional[float] = None,
        candidates: List[MatchCandidate] = None,
    ):
        self.status = status
        self.customer_id = customer_id
        self.customer_name = customer_name
        self.method = method
        self.confidence = confidence
        self.candidates = candidates or []

    def apply(self, doc: CaseDocument, now: str) -> None:
        canonical = _require_canonical(doc)
        if self.method == MatchMethod.USER_SELECTED and CUSTOMER_FIELD in doc.applied_selections:
            return

        resolved = self.customer_id is not None
        canonical.customer = CustomerInfo(
            raw_name=canonical.customer.raw_name,
            resolved_id=self.customer_id,
            resolved_name=self.customer_name,
            match_status=self.status,
            match_method=self.method if resolved else None,
            confidence=self.confidence if resolved else None,
        )
        if resolved:
            doc.unresolved.pop(CUSTOMER_FIELD, None)
            if self.method == MatchMethod.USER_SELECTED:
                doc.applied_selections[CUSTOMER_FIELD] = self.customer_id
        else:
            doc.unresolved[CUSTOMER_FIELD] = list(self.candidates)


class SetLineItemMatch(CaseUpdate):
    """Record one line item's resolution. A human selection applies at most once."""
    description = "set_line_item_match"

    def __init__(
        self,
        row: int,
        item_id: Optional[str] = None,
        item_name: Optional[str] = None,
        method: Optional[MatchMethod] = None,
        confidence: Optional[float] = None,
        candidates: List[MatchCandidate] = None,
    ):
        self.row = row
        self.item_id = item_id
        self.item_name = item_name
        self.method = method
        self.confidence = confidence
        self.candidates = candidates or []

    def apply(self, doc: CaseDocument, now: str) -> None:
        canonical = _require_canonical(doc)
        key = line_item_field(self.row)
        if self.method == MatchMethod.USER_SELECTED and key in doc.applied_selections:
            return

        item = canonical.line(self.row)
        updated = item.model_dump()
        if self.item_id is not None:
            updated.update(
                resolved_item_id=self.item_id,
                resolved_name=self.item_name,
                match_method=self.method,
                confidence=self.confidence,
            )
            doc.unresolved.pop(key, None)
            if self.method == MatchMethod.USER_SELECTED:
                doc.applied_selections[key] = self.item_id
        else:
            updated.update(resolved_item_id=None, resolved_name=None, match_method=None, confidence=None)
            doc.unresolved[key] = list(self.candidates)
        canonical.line_items[canonical.line_items.index(item)] = LineItem.model_validate(updated)


class TransitionStatus(CaseUpdate):
    """Move the case along the status graph; rejects edges the graph does not allow."""
    description = "transition_status"

    def __init__(self, event: CaseEvent, actor: str = "system", reason: Optional[str] = None):
        self.event = event
        self.actor = actor
        self.reason = reason

    def apply(self, doc: CaseDocument, now: str) -> None:
        current = doc.status.value
        event_key = getattr(self.event, "value", self.event)
        # A re-executed step finds its own transition already applied
        if doc.status_history:
            last = doc.status_history[-1]
            if last.get("event") == event_key and last.get("to_status") == current:
                return

        allowed, next_status, reason = CaseStateMachine.can_transition(current, self.event)
        if not allowed:
            raise InvalidTransitionError(current, event_key, reason)

        entry = StatusHistoryEntry(
            from_status=current,
            to_status=next_status,
            event=event_key,
            actor=self.actor,
            reason=self.reason,
            timestamp=now,
        )
        doc.status = CaseStatus(next_status)
        doc.status_history.append(entry.to_dict())

        if next_status == CaseStatus.BLOCKED.value:
            doc.block_reason = self.reason
        elif next_status == CaseStatus.FAILED.value:
            doc.failure_reason = self.reason
        elif next_status == CaseStatus.CANCELLED.value:
            doc.cancellation = CancellationInfo(reason=self.reason or "cancelled", cancelled_by=self.actor, cancelled_at=now)

        if CaseStateMachine.is_terminal(next_status) and doc.completed_at is None:
            doc.completed_at = now


class SetUnresolved(CaseUpdate):
    description = "set_unresolved"

    def __init__(self, unresolved: Dict[str, List[MatchCandidate]]):
        self.unresolved = unresolved

    def apply(self, doc: CaseDocument, now: str) -> None:
        doc.unresolved = {k: list(v) for k, v in self.unresolved.items()}


class SetExternalOrder(CaseUpdate):
    description = "set_external_order"

    def __init__(self, order: ExternalOrderRef):
        self.order = order

    def apply(self, doc: CaseDocument, now: str) -> None:
        doc.order = self.order.model_copy()


class SetAuditPointer(CaseUpdate):
    """Attach the finalized audit bundle and archive the case."""
    description = "set_audit_pointer"

    def __init__(self, pointer: AuditPointer):
        self.pointer = pointer

    def apply(self, doc: CaseDocument, now: str) -> None:
        doc.audit = self.pointer.model_copy()
        doc.archived = True


class ResetForResubmission(CaseUpdate):
    """Discard pipeline output ahead of a fresh run on a new file."""
    description = "reset_for_resubmission"

    def __init__(self, file_url: str, file_name: Optional[str], correlation_id: str):
        self.file_url = file_url
        self.file_name = file_name
        self.correlation_id = correlation_id

    def apply(self, doc: CaseDocument, now: str) -> None:
        doc.file_url = self.file_url
        if self.file_name:
            doc.file_name = self.file_name
        doc.correlation_id = self.correlation_id
        doc.canonical = None
        doc.parse_issues = []
        doc.committee = None
        doc.applied_selections = {}
        doc.unresolved = {}
        doc.block_reason = None
