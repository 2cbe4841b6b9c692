"""
Order Hub - Case Workflow

The case state machine as a durable workflow. One run per pipeline attempt:

    parse -> committee (-> mapping review) -> customer -> items -> approval
          -> submit (-> submission queue) -> audit -> complete

Signals only stage data on this object; every effect happens in a step.
Corrections that do not fit the order (an unknown row, a field that cannot
be edited) are rejected and reported on the next card. A corrected customer
during item resolution, or any correction while awaiting approval, sends
the case back to customer resolution and asks for approval again.

- file-resubmitted       {file_url, file_name?, submitted_by?}
- corrections-submitted  {corrections: [Correction...]}
- selections-submitted   {selections: [Selection...]}
- approval-decided       {approved, approver?, reason?}

A resubmitted file wins over anything else staged: it is checked at every
wait and around every step, resets the case and continues as new with a
fresh history.

Every human wait is bounded by the escalation schedule: a reminder at P0,
an escalation to the secondary recipient at P1, cancellation at P2. The
phase deadlines are absolute logical times taken when the wait begins, so a
replayed run arms the same timers.
"""

import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from orderhub.services import config
from orderhub.services.case_models import CUSTOMER_FIELD
from orderhub.services.case_state_machine import CaseEvent, CaseStatus
from orderhub.services.durable import (
    NO_RETRY,
    STANDARD_RETRY_POLICY,
    SUBMISSION_RETRY_POLICY,
    ContinueAsNew,
    RetryPolicy,
    StepFailedError,
)
from orderhub.services.event_log import EventType
from orderhub.services.notifications import CardType
from orderhub.services.order_writer import OrderSubmissionStatus

logger = logging.getLogger(__name__)

WORKFLOW_TYPE = "order_case"

SIGNAL_FILE_RESUBMITTED = "file-resubmitted"
SIGNAL_CORRECTIONS = "corrections-submitted"
SIGNAL_SELECTIONS = "selections-submitted"
SIGNAL_APPROVAL = "approval-decided"


class StageOutcome(str, Enum):
    DONE = "done"
    # corrections changed the order; resolution starts over at the customer
    REOPENED = "reopened"
    CANCELLED = "cancelled"


class OrderCaseWorkflow:
    """One order-intake case from upload to finalization or cancellation."""

    SIGNAL_HANDLERS = {
        SIGNAL_FILE_RESUBMITTED: "on_file_resubmitted",
        SIGNAL_CORRECTIONS: "on_corrections_submitted",
        SIGNAL_SELECTIONS: "on_selections_submitted",
        SIGNAL_APPROVAL: "on_approval_decided",
    }

    def __init__(
        self,
        steps,
        step_policy: RetryPolicy = STANDARD_RETRY_POLICY,
        submit_policy: RetryPolicy = SUBMISSION_RETRY_POLICY,
        reminder_after: timedelta = config.ESCALATION_REMINDER_AFTER,
        escalate_after: timedelta = config.ESCALATION_ESCALATE_AFTER,
        cancel_after: timedelta = config.ESCALATION_CANCEL_AFTER,
        queue_default_delay: float = config.SUBMISSION_QUEUE_DEFAULT_DELAY_SECONDS,
        queue_max_rounds: int = config.SUBMISSION_QUEUE_MAX_ROUNDS,
    ):
        self.steps = steps
        self.step_policy = step_policy
        self.submit_policy = submit_policy
        self.reminder_after = reminder_after
        self.escalate_after = escalate_after
        self.cancel_after = cancel_after
        self.queue_default_delay = queue_default_delay
        self.queue_max_rounds = queue_max_rounds

        self.case_id: Optional[str] = None
        self.status: str = CaseStatus.INTAKE.value
        self.current_step: Optional[str] = None
        self.waiting_for: Optional[str] = None
        self.last_updated: Optional[str] = None
        self.errors: List[Dict[str, Any]] = []

        # staged by signals
        self.resubmission: Optional[Dict[str, Any]] = None
        self.pending_corrections: List[List[Dict[str, Any]]] = []
        self.pending_selections: List[Dict[str, Any]] = []
        self.approval: Optional[Dict[str, Any]] = None

    # =========================================================================
    # SIGNAL HANDLERS (stage only)
    # =========================================================================

    def on_file_resubmitted(self, payload: Dict[str, Any]) -> None:
        self.resubmission = payload

    def on_corrections_submitted(self, payload: Dict[str, Any]) -> None:
        self.pending_corrections.append(list(payload.get("corrections", [])))

    def on_selections_submitted(self, payload: Dict[str, Any]) -> None:
        self.pending_selections.extend(payload.get("selections", []))

    def on_approval_decided(self, payload: Dict[str, Any]) -> None:
        self.approval = payload

    # =========================================================================
    # QUERY
    # =========================================================================

    def get_state(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "status": self.status,
            "current_step": self.current_step,
            "waiting_for": self.waiting_for,
            "last_updated": self.last_updated,
            "errors": list(self.errors),
            "pending": {
                "resubmission": self.resubmission is not None,
                "correction_batches": len(self.pending_corrections),
                "selections": len(self.pending_selections),
                "approval": self.approval is not None,
            },
        }

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(self, ctx, workflow_input: Dict[str, Any]) -> Dict[str, Any]:
        self.case_id = workflow_input["case_id"]
        self.last_updated = ctx.now().isoformat()
        try:
            return await self._pipeline(ctx, workflow_input)
        except StepFailedError as e:
            return await self._handle_step_failure(ctx, e)

    async def _pipeline(self, ctx, workflow_input: Dict[str, Any]) -> Dict[str, Any]:
        parsed = await self._step(ctx, self.steps.parse_document, self.case_id, workflow_input["file_url"],
                                  name="parse_document")
        if parsed["status"] == "blocked":
            return await self._blocked(ctx, parsed.get("reason") or "File could not be parsed")

        if not await self._mapping_stage(ctx):
            return self._result(CaseStatus.CANCELLED)
        while True:
            if not await self._customer_stage(ctx):
                return self._result(CaseStatus.CANCELLED)
            stage = await self._item_stage(ctx)
            if stage == StageOutcome.REOPENED:
                continue
            if stage == StageOutcome.CANCELLED:
                return self._result(CaseStatus.CANCELLED)
            stage = await self._approval_stage(ctx)
            if stage == StageOutcome.REOPENED:
                continue
            if stage == StageOutcome.CANCELLED:
                return self._result(CaseStatus.CANCELLED)
            break

        outcome = await self._submission_stage(ctx)
        if outcome is None:
            return self._result(CaseStatus.FAILED)

        await self._finalize_audit(ctx)
        await self._notify(ctx, CardType.COMPLETE, {
            "order_id": outcome.get("order_id"),
            "order_number": outcome.get("order_number"),
            "is_duplicate": outcome.get("is_duplicate", False),
        })
        return self._result(CaseStatus.FINALIZED, order_id=outcome.get("order_id"),
                            order_number=outcome.get("order_number"))

    def _result(self, status: CaseStatus, **extra) -> Dict[str, Any]:
        return dict({"case_id": self.case_id, "status": status.value, "errors": list(self.errors)}, **extra)

    # =========================================================================
    # STAGES
    # =========================================================================

    async def _mapping_stage(self, ctx) -> bool:
        evaluator_ids = await ctx.side_effect("select_evaluators", self.steps.committee.select_evaluators)
        task_id = await ctx.side_effect("committee_task_id", lambda: f"mapping-{uuid.uuid4().hex[:12]}")
        review = await self._step(ctx, self.steps.run_committee, self.case_id, task_id, evaluator_ids,
                                  name="run_committee", external=True)
        if not review["requires_human"]:
            return True

        card = {
            "reason": review.get("reason"),
            "disagreements": review.get("disagreements", []),
            "next_action": "Review the column mapping and submit corrections",
        }
        while True:
            await self._notify(ctx, CardType.ISSUES, card)
            if not await self._await_human(ctx, lambda: bool(self.pending_corrections), "mapping_review"):
                return False
            applied = await self._apply_pending_corrections(ctx)
            if applied["case_status"] != CaseStatus.MAPPING_REVIEW.value:
                return True
            card = {
                "reason": "None of the corrections could be applied",
                "rejected": applied["rejected"],
                "next_action": "Review the column mapping and submit corrections",
            }

    async def _customer_stage(self, ctx) -> bool:
        result = await self._step(ctx, self.steps.resolve_customer, self.case_id, name="resolve_customer",
                                  external=True)
        while not result["resolved"]:
            await self._notify(ctx, CardType.SELECTION_NEEDED, {
                "field": CUSTOMER_FIELD,
                "match_status": result.get("status"),
                "candidates": result.get("candidates", []),
                "rejected": result.get("rejected", []),
                "next_action": "Select the customer or correct its name",
            })
            arrived = await self._await_human(
                ctx,
                lambda: self._staged_selection(CUSTOMER_FIELD) is not None or bool(self.pending_corrections),
                "customer_selection",
            )
            if not arrived:
                return False

            if self.pending_corrections:
                applied = await self._apply_pending_corrections(ctx)
                result = await self._step(ctx, self.steps.resolve_customer, self.case_id, name="resolve_customer",
                                          external=True)
                result = dict(result, rejected=applied["rejected"])
                continue

            selection = self._staged_selection(CUSTOMER_FIELD)
            self._discard_selections(lambda s: s.get("field") == CUSTOMER_FIELD)
            result = await self._step(ctx, self.steps.apply_customer_selection, self.case_id, selection,
                                      name="apply_customer_selection", external=True)
        return True

    async def _item_stage(self, ctx) -> StageOutcome:
        # a customer pick must not be read again as an item pick
        self._discard_selections(lambda s: s.get("field") == CUSTOMER_FIELD)

        result = await self._step(ctx, self.steps.resolve_items, self.case_id, name="resolve_items", external=True)
        while not result["complete"]:
            await self._notify(ctx, CardType.SELECTION_NEEDED, {
                "unresolved": result.get("unresolved", {}),
                "rejected": result.get("rejected", []),
                "next_action": "Select the matching items or correct the lines",
            })
            arrived = await self._await_human(
                ctx, lambda: bool(self.pending_selections) or bool(self.pending_corrections), "item_selection",
            )
            if not arrived:
                return StageOutcome.CANCELLED

            if self.pending_corrections:
                applied = await self._apply_pending_corrections(ctx)
                if applied["case_status"] == CaseStatus.CUSTOMER_RESOLUTION.value:
                    return StageOutcome.REOPENED
                result = await self._step(ctx, self.steps.resolve_items, self.case_id, name="resolve_items",
                                          external=True)
                result = dict(result, rejected=applied["rejected"])
                continue

            selections = list(self.pending_selections)
            self.pending_selections = []
            result = await self._step(ctx, self.steps.apply_item_selections, self.case_id, selections,
                                      name="apply_item_selections", external=True)
        return StageOutcome.DONE

    async def _approval_stage(self, ctx) -> StageOutcome:
        card = {"next_action": "Approve or reject the order"}
        while True:
            await self._notify(ctx, CardType.READY_FOR_APPROVAL, card)
            arrived = await self._await_human(
                ctx, lambda: self.approval is not None or bool(self.pending_corrections), "approval",
            )
            if not arrived:
                return StageOutcome.CANCELLED
            if not self.pending_corrections:
                break

            # an approval staged with the edits was given for the old content
            self.approval = None
            applied = await self._apply_pending_corrections(ctx)
            if applied["case_status"] == CaseStatus.CUSTOMER_RESOLUTION.value:
                return StageOutcome.REOPENED
            card = {"rejected": applied["rejected"], "next_action": "Approve or reject the order"}

        decision, self.approval = self.approval, None
        result = await self._step(ctx, self.steps.record_approval, self.case_id, decision, name="record_approval")
        if not result["approved"]:
            await self._notify(ctx, CardType.CANCELLED, {
                "reason": decision.get("reason") or "Rejected by approver",
                "cancelled_by": result.get("approver"),
            })
            return StageOutcome.CANCELLED
        return StageOutcome.DONE

    async def _submission_stage(self, ctx) -> Optional[Dict[str, Any]]:
        """Submit until created, failed, or out of queue rounds. Returns the outcome on success."""
        rounds = 0
        while True:
            outcome = await self._step(ctx, self.steps.submit_order, self.case_id, name="submit_order",
                                       policy=self.submit_policy, external=True)
            status = outcome["status"]
            if status in (OrderSubmissionStatus.CREATED.value, OrderSubmissionStatus.DUPLICATE.value):
                return outcome
            if status == OrderSubmissionStatus.FAILED.value:
                await self._fail(ctx, f"Order system rejected the order: {outcome.get('error')}")
                return None

            rounds += 1
            if rounds > self.queue_max_rounds:
                await self._fail(ctx, f"Order system unavailable after {self.queue_max_rounds} queued attempts")
                return None
            if rounds == 1:
                await self._notify(ctx, CardType.SUBMISSION_QUEUED, {
                    "reason": outcome.get("error"),
                    "next_action": "No action needed; submission retries automatically",
                })

            delay = outcome.get("retry_after_seconds") or self.queue_default_delay
            self.waiting_for = "submission_retry"
            await ctx.wait_condition(lambda: self.resubmission is not None, timeout=timedelta(seconds=delay),
                                     name="submission_backoff")
            self.waiting_for = None
            await self._step(ctx, self.steps.mark_case, self.case_id, CaseEvent.ON_SUBMISSION_RETRY.value,
                             f"queued round {rounds}", "system", EventType.SUBMISSION_RETRY.value,
                             name="mark_submission_retry")

    async def _finalize_audit(self, ctx) -> None:
        try:
            await self._step(ctx, self.steps.finalize_audit, self.case_id, name="finalize_audit",
                             timeout=config.AUDIT_TIMEOUT_SECONDS, check_restart=False)
        except StepFailedError as e:
            # the order exists; a missing audit bundle does not undo that
            logger.error("Case %s audit finalization failed: %s", self.case_id, e.error_message)
            self.errors.append({"step": e.step_name, "kind": e.kind, "message": e.error_message})

    # =========================================================================
    # HALTS
    # =========================================================================

    async def _handle_step_failure(self, ctx, error: StepFailedError) -> Dict[str, Any]:
        logger.error("Case %s step %s failed (%s): %s", self.case_id, error.step_name, error.kind, error.error_message)
        self.errors.append({"step": error.step_name, "kind": error.kind, "message": error.error_message})

        if error.kind == "permanent":
            await self._step(ctx, self.steps.mark_case, self.case_id, CaseEvent.ON_STEP_BLOCKED.value,
                             error.error_message, "system", EventType.CASE_BLOCKED.value,
                             name="mark_blocked", check_restart=False)
            return await self._blocked(ctx, error.error_message)

        await self._fail(ctx, f"{error.step_name} failed after {error.attempts} attempt(s): {error.error_message}")
        return self._result(CaseStatus.FAILED)

    async def _fail(self, ctx, reason: str) -> None:
        await self._step(ctx, self.steps.mark_case, self.case_id, CaseEvent.ON_STEP_FAILED.value, reason,
                         "system", EventType.CASE_FAILED.value, name="mark_failed", check_restart=False)
        await self._notify(ctx, CardType.FAILED, {
            "reason": reason,
            "next_action": "An operator must review this case",
        })

    async def _blocked(self, ctx, reason: str) -> Dict[str, Any]:
        """Notify once, then wait without limit for a new file."""
        await self._notify(ctx, CardType.BLOCKED, {
            "reason": reason,
            "next_action": "Upload a corrected file",
        })
        self.waiting_for = "file_resubmission"
        await ctx.wait_condition(lambda: self.resubmission is not None, name="blocked")
        await self._restart(ctx)

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _step(self, ctx, fn: Callable, *args, name: str, policy: Optional[RetryPolicy] = None,
                    timeout: Optional[float] = config.STEP_TIMEOUT_SECONDS, external: bool = False,
                    check_restart: bool = True) -> Any:
        if check_restart:
            await self._check_resubmission(ctx)
        self.current_step = name
        result = await ctx.execute_step(fn, *args, name=name, retry_policy=policy or self.step_policy,
                                        timeout=timeout, external=external)
        if isinstance(result, dict) and result.get("case_status"):
            self.status = result["case_status"]
        self.last_updated = ctx.now().isoformat()
        if check_restart:
            await self._check_resubmission(ctx)
        return result

    async def _notify(self, ctx, card_type: CardType, payload: Dict[str, Any]) -> None:
        await self._step(ctx, self.steps.notify, self.case_id, card_type.value, payload,
                         name=f"notify:{card_type.value}", policy=NO_RETRY, external=True, check_restart=False)

    async def _check_resubmission(self, ctx) -> None:
        if self.resubmission is not None:
            await self._restart(ctx)

    async def _restart(self, ctx) -> None:
        resubmission = self.resubmission
        correlation_id = await ctx.side_effect("restart_correlation_id", lambda: uuid.uuid4().hex)
        await self._step(ctx, self.steps.reset_for_resubmission, self.case_id, resubmission["file_url"],
                         resubmission.get("file_name"), correlation_id, resubmission.get("submitted_by") or "user",
                         name="reset_for_resubmission", check_restart=False)
        logger.info("Case %s continuing as new on %s", self.case_id, resubmission["file_url"])
        raise ContinueAsNew({
            "case_id": self.case_id,
            "file_url": resubmission["file_url"],
            "file_name": resubmission.get("file_name"),
            "correlation_id": correlation_id,
        })

    async def _await_human(self, ctx, predicate: Callable[[], bool], label: str) -> bool:
        """
        Wait for `predicate` under the escalation schedule.

        Returns True when the awaited input (or a resubmitted file) arrived,
        False after the case was cancelled for lack of response.
        """
        started = ctx.now()
        reminder_at = started + self.reminder_after
        escalate_at = reminder_at + self.escalate_after
        cancel_at = escalate_at + self.cancel_after

        def satisfied() -> bool:
            return self.resubmission is not None or predicate()

        self.waiting_for = label
        try:
            if await ctx.wait_condition(satisfied, deadline=reminder_at, name=f"{label}:p0"):
                return await self._resume_after_wait(ctx)
            await self._notify(ctx, CardType.REMINDER, {"waiting_for": label})

            if await ctx.wait_condition(satisfied, deadline=escalate_at, name=f"{label}:p1"):
                return await self._resume_after_wait(ctx)
            await self._notify(ctx, CardType.ESCALATION, {"waiting_for": label})

            if await ctx.wait_condition(satisfied, deadline=cancel_at, name=f"{label}:p2"):
                return await self._resume_after_wait(ctx)
        finally:
            self.waiting_for = None

        reason = f"No response while waiting for {label}"
        await self._step(ctx, self.steps.mark_case, self.case_id, CaseEvent.ON_TIMEOUT.value, reason, "system",
                         EventType.CASE_CANCELLED.value, name="mark_cancelled", check_restart=False)
        await self._notify(ctx, CardType.CANCELLED, {"reason": reason})
        return False

    async def _resume_after_wait(self, ctx) -> bool:
        await self._check_resubmission(ctx)
        return True

    async def _apply_pending_corrections(self, ctx) -> Dict[str, Any]:
        corrections = [c for batch in self.pending_corrections for c in batch]
        self.pending_corrections = []
        return await self._step(ctx, self.steps.apply_corrections, self.case_id, corrections, name="apply_corrections")

    def _staged_selection(self, field_name: str) -> Optional[Dict[str, Any]]:
        for selection in reversed(self.pending_selections):
            if selection.get("field") == field_name:
                return selection
        return None

    def _discard_selections(self, matches: Callable[[Dict[str, Any]], bool]) -> None:
        self.pending_selections = [s for s in self.pending_selections if not matches(s)]
