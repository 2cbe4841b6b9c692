"""
Order Hub - Case Steps

The side-effecting operations of the case pipeline. The case workflow runs
each of them through the durable runtime (retry, timeout, result recorded
in history); they are the only code that writes case documents.

Every step:
- reads the case fresh from the store,
- writes through CaseStore.update with explicit update operations,
- returns a JSON-safe dict (it is recorded in workflow history),
- is safe to run again after a crash between its write and its record.

Collaborators are injected; nothing here is a module-level singleton.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from orderhub.services.case_models import (
    CUSTOMER_FIELD,
    ApplyFieldCorrection,
    CaseDocument,
    Correction,
    CustomerMatchStatus,
    ExternalOrderRef,
    MatchMethod,
    ResetForResubmission,
    Selection,
    SetAuditPointer,
    SetCanonicalData,
    SetCommitteeResult,
    SetCustomerMatch,
    SetExternalOrder,
    SetLineItemMatch,
    TransitionStatus,
    correction_problem,
    parse_field_path,
)
from orderhub.services.case_state_machine import CaseEvent, CaseStatus
from orderhub.services.errors import BusinessValidationError
from orderhub.services.event_log import EventType
from orderhub.services.order_writer import OrderSubmissionStatus

logger = logging.getLogger(__name__)

_LINE_FIELD = re.compile(r"^line_items\[(\d+)\]$")


def _line_unresolved(doc: CaseDocument) -> Dict[str, List[Dict[str, Any]]]:
    return {
        key: [c.model_dump() for c in candidates]
        for key, candidates in doc.unresolved.items() if key != CUSTOMER_FIELD
    }


class CaseSteps:
    """Step implementations bound to their collaborators."""

    def __init__(self, case_store, parser, committee, resolver, order_writer, notifications, audit):
        self.case_store = case_store
        self.parser = parser
        self.committee = committee
        self.resolver = resolver
        self.order_writer = order_writer
        self.notifications = notifications
        self.audit = audit

    async def _load(self, case_id: str) -> CaseDocument:
        doc = await self.case_store.get(case_id)
        if doc.canonical is None and doc.status not in (CaseStatus.INTAKE, CaseStatus.BLOCKED):
            raise BusinessValidationError(f"Case {case_id} has no parsed order data")
        return doc

    # =========================================================================
    # INTAKE
    # =========================================================================

    async def parse_document(self, case_id: str, file_url: str) -> Dict[str, Any]:
        doc = await self._load(case_id)
        if doc.status == CaseStatus.BLOCKED:
            return {"status": "blocked", "reason": doc.block_reason, "case_status": doc.status.value}
        if doc.status != CaseStatus.INTAKE:
            return {
                "status": "ok",
                "line_count": len(doc.canonical.line_items),
                "issue_count": len(doc.parse_issues),
                "case_status": doc.status.value,
            }

        result = await self.parser.parse(case_id, file_url)
        if result.is_blocked:
            logger.warning("Case %s: parse blocked: %s", case_id, result.block_reason)
            doc = await self.case_store.update(
                case_id,
                [TransitionStatus(CaseEvent.ON_PARSE_BLOCKED, reason=result.block_reason)],
                EventType.CASE_BLOCKED,
                metadata={"reason": result.block_reason, "issues": result.issues},
            )
            return {"status": "blocked", "reason": result.block_reason, "case_status": doc.status.value}

        doc = await self.case_store.update(
            case_id,
            [SetCanonicalData(result.canonical, result.issues), TransitionStatus(CaseEvent.ON_PARSE_SUCCESS)],
            EventType.FILE_PARSED,
            metadata={"line_count": len(result.canonical.line_items), "issue_count": len(result.issues)},
        )
        logger.info("Case %s parsed: %d line(s)", case_id, len(result.canonical.line_items))
        return {
            "status": "ok",
            "line_count": len(result.canonical.line_items),
            "issue_count": len(result.issues),
            "case_status": doc.status.value,
        }

    # =========================================================================
    # MAPPING REVIEW
    # =========================================================================

    async def run_committee(self, case_id: str, task_id: str, evaluator_ids: List[str]) -> Dict[str, Any]:
        doc = await self._load(case_id)
        if doc.committee is not None and doc.committee.task_id == task_id and doc.status != CaseStatus.PARSED:
            return {
                "task_id": task_id,
                "requires_human": doc.committee.requires_human,
                "reason": doc.committee.reason,
                "agreement_ratio": doc.committee.agreement_ratio,
                "case_status": doc.status.value,
            }

        pack = self.committee.build_evidence_pack(case_id, doc.canonical)
        result = await self.committee.run(case_id, task_id, evaluator_ids, pack)
        winners = {name: column for name, column in result.winners.items() if column is not None}
        event = CaseEvent.ON_MAPPING_NEEDS_REVIEW if result.requires_human else CaseEvent.ON_MAPPING_ACCEPTED

        doc = await self.case_store.update(
            case_id,
            [SetCommitteeResult(result.to_summary(), winners), TransitionStatus(event, reason=result.reason)],
            EventType.COMMITTEE_COMPLETED,
            metadata={
                "task_id": task_id,
                "evaluator_ids": evaluator_ids,
                "consensus": result.consensus.value,
                "requires_human": result.requires_human,
            },
        )
        return {
            "task_id": task_id,
            "requires_human": result.requires_human,
            "reason": result.reason,
            "consensus": result.consensus.value,
            "agreement_ratio": round(result.agreement_ratio, 4),
            "disagreements": result.disagreements,
            "case_status": doc.status.value,
        }

    async def apply_corrections(self, case_id: str, corrections: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Apply the corrections that fit the current order; the rest are
        returned as rejected and the case stays where it is.

        Mapping review moves on once anything was applied (an empty batch
        confirms the mapping). A corrected customer during item resolution,
        or any applied correction during approval, reopens customer
        resolution so the changed order is resolved and approved again.
        """
        doc = await self._load(case_id)
        accepted = []
        rejected = []
        for raw in corrections:
            record = Correction.model_validate(raw)
            try:
                problem = correction_problem(doc.canonical, record.field_path)
            except BusinessValidationError as e:
                problem = e.message
            if problem:
                rejected.append({"correction_id": record.correction_id, "field_path": record.field_path,
                                 "reason": problem})
            else:
                accepted.append(record)

        if rejected:
            logger.warning("Case %s: %d correction(s) rejected: %s", case_id, len(rejected),
                           ", ".join(r["reason"] for r in rejected))

        actor = accepted[0].submitted_by if accepted else "user"
        operations = [ApplyFieldCorrection(r) for r in accepted]
        customer_changed = any(parse_field_path(r.field_path)[0] == "customer" for r in accepted)
        reopen = (
            (doc.status == CaseStatus.MAPPING_REVIEW and (accepted or not rejected))
            or (doc.status == CaseStatus.ITEM_RESOLUTION and customer_changed)
            or (doc.status == CaseStatus.AWAITING_APPROVAL and accepted)
        )
        if reopen:
            operations.append(TransitionStatus(CaseEvent.ON_CORRECTIONS_APPLIED, actor=actor))
        if not operations:
            return {"applied": 0, "rejected": rejected, "case_status": doc.status.value}

        doc = await self.case_store.update(
            case_id, operations, EventType.CORRECTIONS_APPLIED, actor=actor,
            metadata={"count": len(accepted), "paths": [r.field_path for r in accepted],
                      "rejected": len(rejected)},
        )
        return {"applied": len(accepted), "rejected": rejected, "case_status": doc.status.value}

    # =========================================================================
    # CUSTOMER RESOLUTION
    # =========================================================================

    async def resolve_customer(self, case_id: str) -> Dict[str, Any]:
        doc = await self._load(case_id)
        customer = doc.canonical.customer
        if customer.is_resolved:
            doc = await self.case_store.update(
                case_id, [TransitionStatus(CaseEvent.ON_CUSTOMER_RESOLVED)], EventType.CUSTOMER_RESOLVED,
                metadata={"status": CustomerMatchStatus.RESOLVED.value, "customer_id": customer.resolved_id},
            )
            return {"resolved": True, "status": CustomerMatchStatus.RESOLVED.value,
                    "customer_id": customer.resolved_id, "candidates": [], "case_status": doc.status.value}

        resolution = await self.resolver.resolve_customer(customer.raw_name)
        operations = [SetCustomerMatch(
            resolution.status,
            customer_id=resolution.customer_id,
            customer_name=resolution.customer_name,
            method=resolution.method,
            confidence=resolution.confidence,
            candidates=resolution.candidates,
        )]
        if resolution.is_resolved:
            operations.append(TransitionStatus(CaseEvent.ON_CUSTOMER_RESOLVED))

        doc = await self.case_store.update(
            case_id, operations, EventType.CUSTOMER_RESOLVED,
            metadata={
                "status": resolution.status.value,
                "customer_id": resolution.customer_id,
                "candidate_count": len(resolution.candidates),
            },
        )
        logger.info("Case %s customer %r -> %s", case_id, customer.raw_name, resolution.status.value)
        return dict(resolution.to_dict(), resolved=resolution.is_resolved, case_status=doc.status.value)

    async def apply_customer_selection(self, case_id: str, selection: Dict[str, Any]) -> Dict[str, Any]:
        chosen = Selection.model_validate(selection)
        doc = await self._load(case_id)
        offered = doc.unresolved.get(CUSTOMER_FIELD, [])
        candidate = next((c for c in offered if c.id == chosen.candidate_id), None)
        name = candidate.name if candidate else None
        if candidate is None:
            found = await self.resolver.catalog.get_customer(chosen.candidate_id)
            if not found:
                logger.warning("Case %s: selected customer %s does not exist", case_id, chosen.candidate_id)
                return {
                    "resolved": False,
                    "applied": False,
                    "reason": f"Unknown customer {chosen.candidate_id}",
                    "candidates": [c.model_dump() for c in offered],
                    "case_status": doc.status.value,
                }
            name = found.get("name")

        actor = chosen.submitted_by or "user"
        doc = await self.case_store.update(
            case_id,
            [
                SetCustomerMatch(CustomerMatchStatus.RESOLVED, chosen.candidate_id, name,
                                 MatchMethod.USER_SELECTED, 1.0),
                TransitionStatus(CaseEvent.ON_CUSTOMER_RESOLVED, actor=actor),
            ],
            EventType.CUSTOMER_SELECTED,
            actor=actor,
            metadata={"customer_id": chosen.candidate_id},
        )
        return {"resolved": True, "applied": True, "customer_id": chosen.candidate_id, "candidates": [],
                "case_status": doc.status.value}

    # =========================================================================
    # ITEM RESOLUTION
    # =========================================================================

    async def resolve_items(self, case_id: str) -> Dict[str, Any]:
        doc = await self._load(case_id)
        resolutions = await self.resolver.resolve_items(doc.canonical)
        operations = [
            SetLineItemMatch(r.row, r.item_id, r.item_name, r.method, r.confidence, r.candidates)
            for r in resolutions
        ]
        complete = doc.canonical.customer.is_resolved and all(r.is_resolved for r in resolutions)
        if complete:
            operations.append(TransitionStatus(CaseEvent.ON_ITEMS_RESOLVED))

        if operations:
            doc = await self.case_store.update(
                case_id, operations, EventType.ITEMS_RESOLVED,
                metadata={
                    "resolved": sum(1 for r in resolutions if r.is_resolved),
                    "unresolved": sum(1 for r in resolutions if not r.is_resolved),
                },
            )
        logger.info("Case %s items: %d matched, complete=%s", case_id,
                    sum(1 for r in resolutions if r.is_resolved), complete)
        return {"complete": complete, "unresolved": _line_unresolved(doc), "case_status": doc.status.value}

    async def apply_item_selections(self, case_id: str, selections: List[Dict[str, Any]]) -> Dict[str, Any]:
        doc = await self._load(case_id)
        rows = {item.row for item in doc.canonical.line_items}
        operations = []
        selected_rows = set()
        rejected = []
        actor = "user"

        for raw in selections:
            chosen = Selection.model_validate(raw)
            actor = chosen.submitted_by or actor
            match = _LINE_FIELD.match(chosen.field)
            if not match or int(match.group(1)) not in rows:
                rejected.append({"field": chosen.field, "reason": "Unknown line item"})
                continue
            row = int(match.group(1))
            candidate = next((c for c in doc.unresolved.get(chosen.field, []) if c.id == chosen.candidate_id), None)
            name = candidate.name if candidate else None
            if candidate is None:
                found = await self.resolver.catalog.get_item(chosen.candidate_id)
                if not found:
                    rejected.append({"field": chosen.field, "reason": f"Unknown item {chosen.candidate_id}"})
                    continue
                name = found.get("name")
            operations.append(SetLineItemMatch(row, chosen.candidate_id, name, MatchMethod.USER_SELECTED, 1.0))
            selected_rows.add(row)

        complete = doc.canonical.customer.is_resolved and all(
            item.is_resolved or item.row in selected_rows for item in doc.canonical.line_items
        )
        if operations and complete:
            operations.append(TransitionStatus(CaseEvent.ON_ITEMS_RESOLVED, actor=actor))
        if operations:
            doc = await self.case_store.update(
                case_id, operations, EventType.ITEMS_SELECTED, actor=actor,
                metadata={"rows": sorted(selected_rows), "rejected": rejected},
            )
        return {
            "complete": complete,
            "unresolved": _line_unresolved(doc),
            "rejected": rejected,
            "case_status": doc.status.value,
        }

    # =========================================================================
    # APPROVAL / SUBMISSION
    # =========================================================================

    async def record_approval(self, case_id: str, decision: Dict[str, Any]) -> Dict[str, Any]:
        approved = bool(decision.get("approved"))
        approver = decision.get("approver") or "unknown"
        reason = decision.get("reason")
        if approved:
            operations = [TransitionStatus(CaseEvent.ON_APPROVED, actor=approver, reason=reason)]
            event_type = EventType.APPROVAL_RECEIVED
        else:
            operations = [TransitionStatus(CaseEvent.ON_REJECTED, actor=approver,
                                           reason=reason or "Rejected by approver")]
            event_type = EventType.CASE_CANCELLED

        doc = await self.case_store.update(
            case_id, operations, event_type, actor=approver,
            metadata={"approved": approved, "reason": reason},
        )
        return {"approved": approved, "approver": approver, "case_status": doc.status.value}

    @staticmethod
    def build_order_payload(doc: CaseDocument) -> Dict[str, Any]:
        canonical = doc.canonical
        return {
            "customer_id": canonical.customer.resolved_id,
            "external_document_number": doc.id,
            "currency": canonical.currency,
            "lines": [
                {
                    "item_id": item.resolved_item_id,
                    "description": item.description or item.resolved_name,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                }
                for item in canonical.line_items
            ],
        }

    async def submit_order(self, case_id: str) -> Dict[str, Any]:
        doc = await self._load(case_id)
        if doc.order is not None:
            return {
                "status": OrderSubmissionStatus.DUPLICATE.value if doc.order.is_duplicate else OrderSubmissionStatus.CREATED.value,
                "idempotency_key": doc.order.idempotency_key,
                "order_id": doc.order.order_id,
                "order_number": doc.order.order_number,
                "is_duplicate": doc.order.is_duplicate,
                "case_status": doc.status.value,
            }
        if not doc.is_resolution_complete:
            raise BusinessValidationError(f"Case {case_id} has unresolved fields", details={"unresolved": list(doc.unresolved)})

        result = await self.order_writer.submit(case_id, self.build_order_payload(doc))
        if result.is_success:
            ref = ExternalOrderRef(
                order_id=result.order_id,
                order_number=result.order_number,
                idempotency_key=result.idempotency_key,
                is_duplicate=result.is_duplicate,
            )
            doc = await self.case_store.update(
                case_id, [SetExternalOrder(ref), TransitionStatus(CaseEvent.ON_ORDER_CREATED)],
                EventType.ORDER_CREATED, metadata=result.to_dict(),
            )
        elif result.status == OrderSubmissionStatus.QUEUED:
            doc = await self.case_store.update(
                case_id, [TransitionStatus(CaseEvent.ON_SUBMISSION_QUEUED, reason=result.error)],
                EventType.SUBMISSION_QUEUED, metadata=result.to_dict(),
            )
        return dict(result.to_dict(), case_status=doc.status.value)

    async def finalize_audit(self, case_id: str) -> Dict[str, Any]:
        pointer = await self.audit.finalize(case_id)
        await self.case_store.update(
            case_id, [SetAuditPointer(pointer)], EventType.AUDIT_FINALIZED, metadata=pointer.model_dump(),
        )
        return pointer.model_dump()

    # =========================================================================
    # BOOKKEEPING
    # =========================================================================

    async def mark_case(self, case_id: str, event: str, reason: Optional[str] = None, actor: str = "system",
                        event_type: str = EventType.STATUS_CHANGED.value) -> Dict[str, Any]:
        doc = await self.case_store.update(
            case_id, [TransitionStatus(CaseEvent(event), actor=actor, reason=reason)], EventType(event_type),
            actor=actor, metadata={"event": event, "reason": reason},
        )
        logger.info("Case %s -> %s (%s)", case_id, doc.status.value, event)
        return {"case_status": doc.status.value}

    async def reset_for_resubmission(self, case_id: str, file_url: str, file_name: Optional[str],
                                     correlation_id: str, actor: str = "user") -> Dict[str, Any]:
        doc = await self.case_store.update(
            case_id,
            [
                ResetForResubmission(file_url, file_name, correlation_id),
                TransitionStatus(CaseEvent.ON_FILE_RESUBMITTED, actor=actor),
            ],
            EventType.CASE_RESTARTED,
            actor=actor,
            metadata={"file_url": file_url, "correlation_id": correlation_id},
        )
        logger.info("Case %s restarting on %s (correlation %s)", case_id, file_url, correlation_id)
        return {"case_status": doc.status.value}

    async def notify(self, case_id: str, card_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.notifications.notify(case_id, card_type, payload)
        return result.to_dict()
