"""
End-to-end case workflow tests on the in-memory engine and virtual clock.
"""
from datetime import timedelta

import pytest

from orderhub.services.case_state_machine import CaseStatus
from orderhub.services.case_workflow import (
    SIGNAL_APPROVAL,
    SIGNAL_CORRECTIONS,
    SIGNAL_FILE_RESUBMITTED,
    SIGNAL_SELECTIONS,
)
from orderhub.services.consensus import StaticEvaluator, header_matching_answer
from orderhub.services.durable import RunStatus
from orderhub.services.errors import BusinessValidationError, TransientStepError

APPROVE = {"approved": True, "approver": "manager@example.com"}


async def signal(engine, case_id, name, payload):
    await engine.runtime.signal(case_id, name, payload)
    await engine.runtime.wait_idle()


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_upload_to_finalized(self, engine):
        """A clean file runs straight to approval, then to a finalized, archived case."""
        engine.register_file()
        case_id = await engine.start_case()

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.AWAITING_APPROVAL
        assert doc.canonical.customer.resolved_id == "cust-acme"
        assert [item.resolved_item_id for item in doc.canonical.line_items] == ["item-oats", "item-almond"]
        assert doc.canonical.column_mapping["sku"] == "c2"
        assert engine.runtime.query(case_id)["waiting_for"] == "approval"
        assert len(engine.cards(case_id, "ready_for_approval")) == 1

        await signal(engine, case_id, SIGNAL_APPROVAL, APPROVE)
        result = await engine.runtime.wait_for_result(case_id)

        assert result["status"] == "finalized"
        assert result["order_number"] == "SO-00001"
        assert len(engine.order_system.orders) == 1

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.FINALIZED
        assert doc.archived is True
        assert doc.audit.manifest_path == f"cases/{case_id}/audit/manifest.json"
        assert doc.completed_at is not None
        complete = engine.cards(case_id, "complete")
        assert len(complete) == 1
        assert complete[0]["payload"]["order_number"] == "SO-00001"

    @pytest.mark.asyncio
    async def test_event_trail(self, engine):
        """The event log records each pipeline stage in order."""
        engine.register_file()
        case_id = await engine.start_case()
        await signal(engine, case_id, SIGNAL_APPROVAL, APPROVE)
        await engine.runtime.wait_for_result(case_id)

        types = [e["type"] for e in await engine.event_log.get_events(case_id)]
        assert types == [
            "case_created", "file_parsed", "committee_completed", "customer_resolved",
            "items_resolved", "approval_received", "order_created", "audit_finalized",
        ]
        evidence = await engine.evidence.list(case_id, prefix="committee/")
        assert any(a["path"].endswith("decision.json") for a in evidence)


class TestEscalation:

    @pytest.mark.asyncio
    async def test_reminder_escalation_cancellation(self, engine):
        """Silence brings a reminder at 24h, an escalation at 48h and cancellation 5 days later."""
        engine.register_file()
        case_id = await engine.start_case()

        await engine.clock.advance(timedelta(hours=23))
        assert engine.cards(case_id, "reminder") == []

        await engine.clock.advance(timedelta(hours=1))
        assert len(engine.cards(case_id, "reminder")) == 1
        assert engine.cards(case_id, "escalation") == []

        await engine.clock.advance(timedelta(hours=24))
        escalations = engine.cards(case_id, "escalation")
        assert len(escalations) == 1
        assert escalations[0]["payload"]["secondary_recipient"] == "ops-manager"

        await engine.clock.advance(timedelta(days=5))
        result = await engine.runtime.wait_for_result(case_id)
        assert result["status"] == "cancelled"

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.CANCELLED
        assert doc.cancellation.reason == "No response while waiting for approval"
        assert len(engine.cards(case_id, "cancelled")) == 1

        await engine.clock.advance(timedelta(days=30))
        assert len(engine.cards(case_id, "reminder")) == 1
        assert len(engine.cards(case_id, "escalation")) == 1
        assert engine.clock.pending_timers() == 0

    @pytest.mark.asyncio
    async def test_answer_after_reminder(self, engine):
        """Input arriving between reminder and escalation continues the case."""
        engine.register_file()
        case_id = await engine.start_case()
        await engine.clock.advance(timedelta(hours=30))

        await signal(engine, case_id, SIGNAL_APPROVAL, APPROVE)
        result = await engine.runtime.wait_for_result(case_id)

        assert result["status"] == "finalized"
        assert len(engine.cards(case_id, "reminder")) == 1
        assert engine.cards(case_id, "escalation") == []
        assert engine.clock.pending_timers() == 0


class TestHumanInput:

    @pytest.mark.asyncio
    async def test_rejection_cancels(self, engine):
        engine.register_file()
        case_id = await engine.start_case()

        await signal(engine, case_id, SIGNAL_APPROVAL,
                     {"approved": False, "approver": "manager@example.com", "reason": "Wrong prices"})
        result = await engine.runtime.wait_for_result(case_id)

        assert result["status"] == "cancelled"
        doc = await engine.case_store.get(case_id)
        assert doc.cancellation.reason == "Wrong prices"
        assert doc.cancellation.cancelled_by == "manager@example.com"
        assert engine.order_system.orders == {}
        assert len(engine.cards(case_id, "cancelled")) == 1

    @pytest.mark.asyncio
    async def test_customer_selection(self, engine):
        """An unknown customer waits for a selection, then the pipeline continues."""
        engine.register_file(customer="Initech")
        case_id = await engine.start_case()

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.CUSTOMER_RESOLUTION
        cards = engine.cards(case_id, "selection_needed")
        assert len(cards) == 1
        assert cards[0]["payload"]["field"] == "customer"

        await signal(engine, case_id, SIGNAL_SELECTIONS, {
            "selections": [{"field": "customer", "candidate_id": "cust-globex", "submitted_by": "clerk"}],
        })

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.AWAITING_APPROVAL
        assert doc.canonical.customer.resolved_id == "cust-globex"
        assert doc.canonical.customer.match_method.value == "user_selected"
        assert doc.applied_selections == {"customer": "cust-globex"}

    @pytest.mark.asyncio
    async def test_item_selection(self, engine):
        """An unmatched line waits for an item pick."""
        engine.register_file(line_items=[{"row": 1, "description": "Mystery granola", "quantity": 3}])
        case_id = await engine.start_case()

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.ITEM_RESOLUTION
        assert "line_items[1]" in doc.unresolved

        await signal(engine, case_id, SIGNAL_SELECTIONS, {
            "selections": [{"field": "line_items[1]", "candidate_id": "item-honey", "submitted_by": "clerk"}],
        })

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.AWAITING_APPROVAL
        assert doc.canonical.line(1).resolved_item_id == "item-honey"
        assert doc.unresolved == {}

    @pytest.mark.asyncio
    async def test_mapping_review_with_corrections(self, make_engine):
        """Too few committee answers sends the mapping to a human; corrections resume the case."""
        engine = make_engine(evaluators=[
            StaticEvaluator("azure-gpt-5.1", answer=header_matching_answer),
            StaticEvaluator("azure-claude-opus-4.5", error=RuntimeError("quota exceeded")),
            StaticEvaluator("gemini-2.5-pro", error=RuntimeError("quota exceeded")),
        ])
        engine.register_file()
        case_id = await engine.start_case()

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.MAPPING_REVIEW
        assert doc.committee.requires_human is True
        assert len(engine.cards(case_id, "issues")) == 1

        await signal(engine, case_id, SIGNAL_CORRECTIONS, {"corrections": [{
            "correction_id": "fix-1",
            "field_path": "mapping.sku",
            "corrected_value": "c2",
            "submitted_by": "clerk",
        }]})

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.AWAITING_APPROVAL
        assert [c.correction_id for c in doc.corrections] == ["fix-1"]
        assert doc.corrections[0].original_value == "c2"


class TestLateCorrections:

    @pytest.mark.asyncio
    async def test_customer_corrected_during_item_resolution(self, engine):
        """A new customer name while lines are unmatched sends the case back to customer resolution."""
        engine.register_file(line_items=[
            {"row": 1, "sku": "OAT-1KG", "description": "Rolled oats", "quantity": 10},
            {"row": 2, "description": "Mystery granola", "quantity": 3},
        ])
        case_id = await engine.start_case()
        assert (await engine.case_store.get(case_id)).status == CaseStatus.ITEM_RESOLUTION

        await signal(engine, case_id, SIGNAL_CORRECTIONS, {"corrections": [{
            "correction_id": "fix-customer",
            "field_path": "customer.name",
            "corrected_value": "Globex Corporation",
            "submitted_by": "buyer",
        }]})

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.ITEM_RESOLUTION
        assert doc.canonical.customer.raw_name == "Globex Corporation"
        assert doc.canonical.customer.resolved_id == "cust-globex"
        assert engine.runtime.query(case_id)["waiting_for"] == "item_selection"

        await signal(engine, case_id, SIGNAL_SELECTIONS, {
            "selections": [{"field": "line_items[2]", "candidate_id": "item-honey", "submitted_by": "clerk"}],
        })

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.AWAITING_APPROVAL
        assert doc.canonical.customer.resolved_id == "cust-globex"
        assert doc.canonical.line(2).resolved_item_id == "item-honey"

    @pytest.mark.asyncio
    async def test_unknown_row_is_rejected_not_blocking(self, engine):
        """A correction for a row the order does not have is reported back; the case keeps waiting."""
        engine.register_file(line_items=[{"row": 1, "description": "Mystery granola", "quantity": 3}])
        case_id = await engine.start_case()

        await signal(engine, case_id, SIGNAL_CORRECTIONS, {"corrections": [{
            "correction_id": "fix-ghost",
            "field_path": "line_items[99].description",
            "corrected_value": "Honey",
            "submitted_by": "buyer",
        }]})

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.ITEM_RESOLUTION
        assert doc.corrections == []
        assert engine.runtime.is_running(case_id)
        cards = engine.cards(case_id, "selection_needed")
        assert len(cards) == 2
        assert cards[-1]["payload"]["rejected"][0]["correction_id"] == "fix-ghost"

    @pytest.mark.asyncio
    async def test_correction_during_approval_asks_again(self, engine):
        """An edit while awaiting approval is applied and the order is approved afresh."""
        engine.register_file()
        case_id = await engine.start_case()
        assert len(engine.cards(case_id, "ready_for_approval")) == 1

        await signal(engine, case_id, SIGNAL_CORRECTIONS, {"corrections": [{
            "correction_id": "fix-qty",
            "field_path": "line_items[1].quantity",
            "corrected_value": 12,
            "submitted_by": "buyer",
        }]})

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.AWAITING_APPROVAL
        assert doc.canonical.line(1).quantity == 12
        assert doc.canonical.line(1).resolved_item_id == "item-oats"
        assert len(engine.cards(case_id, "ready_for_approval")) == 2

        await signal(engine, case_id, SIGNAL_APPROVAL, APPROVE)
        result = await engine.runtime.wait_for_result(case_id)
        assert result["status"] == "finalized"
        order = next(iter(engine.order_system.orders.values()))
        assert order["payload"]["lines"][0]["quantity"] == 12

    @pytest.mark.asyncio
    async def test_rejected_mapping_corrections_keep_review_open(self, make_engine):
        """Mapping review stays open until a correction actually applies."""
        engine = make_engine(evaluators=[
            StaticEvaluator("azure-gpt-5.1", answer=header_matching_answer),
            StaticEvaluator("azure-claude-opus-4.5", error=RuntimeError("quota exceeded")),
            StaticEvaluator("gemini-2.5-pro", error=RuntimeError("quota exceeded")),
        ])
        engine.register_file()
        case_id = await engine.start_case()

        await signal(engine, case_id, SIGNAL_CORRECTIONS, {"corrections": [{
            "correction_id": "fix-ghost",
            "field_path": "line_items[99].quantity",
            "corrected_value": 5,
            "submitted_by": "clerk",
        }]})

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.MAPPING_REVIEW
        issues = engine.cards(case_id, "issues")
        assert len(issues) == 2
        assert issues[-1]["payload"]["rejected"][0]["reason"] == "No line item for row 99"

        await signal(engine, case_id, SIGNAL_CORRECTIONS, {"corrections": [{
            "correction_id": "fix-sku",
            "field_path": "mapping.sku",
            "corrected_value": "c2",
            "submitted_by": "clerk",
        }]})
        assert (await engine.case_store.get(case_id)).status == CaseStatus.AWAITING_APPROVAL



class TestResubmission:

    @pytest.mark.asyncio
    async def test_blocked_case_restarts_on_new_file(self, engine):
        """An unreadable file blocks; a new file continues as a fresh run."""
        case_id = await engine.start_case("https://files.example.com/orders/broken.xlsx")

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.BLOCKED
        assert len(engine.cards(case_id, "blocked")) == 1
        assert engine.clock.pending_timers() == 0

        new_url = engine.register_file("https://files.example.com/orders/acme-v2.xlsx")
        await signal(engine, case_id, SIGNAL_FILE_RESUBMITTED,
                     {"file_url": new_url, "file_name": "acme-v2.xlsx", "submitted_by": "buyer@example.com"})

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.AWAITING_APPROVAL
        assert doc.file_url == new_url
        assert doc.file_name == "acme-v2.xlsx"
        run = await engine.runtime.describe(case_id)
        assert run["run_index"] == 2
        assert run["input"]["correlation_id"] == doc.correlation_id

    @pytest.mark.asyncio
    async def test_new_file_during_approval(self, engine):
        """A resubmission interrupts the approval wait and restarts on the new file."""
        engine.register_file()
        case_id = await engine.start_case()
        first = await engine.case_store.get(case_id)

        new_url = engine.register_file("https://files.example.com/orders/globex.xlsx", customer="Globex")
        await signal(engine, case_id, SIGNAL_FILE_RESUBMITTED, {"file_url": new_url})

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.AWAITING_APPROVAL
        assert doc.canonical.customer.resolved_id == "cust-globex"
        assert doc.correlation_id != first.correlation_id
        assert len(engine.cards(case_id, "ready_for_approval")) == 2
        # only the new approval wait is armed
        assert engine.clock.pending_timers() == 1

        await signal(engine, case_id, SIGNAL_APPROVAL, APPROVE)
        assert (await engine.runtime.wait_for_result(case_id))["status"] == "finalized"


class TestFailures:

    @pytest.mark.asyncio
    async def test_permanent_step_failure_blocks(self, engine):
        """A permanent failure blocks the case until a new file arrives."""
        engine.parser.register("https://files.example.com/orders/bad.xlsx",
                               BusinessValidationError("Parser rejected file: 400"))
        case_id = await engine.start_case("https://files.example.com/orders/bad.xlsx")

        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.BLOCKED
        assert "Parser rejected file" in doc.block_reason
        state = engine.runtime.query(case_id)
        assert state["waiting_for"] == "file_resubmission"
        assert state["errors"][0]["kind"] == "permanent"
        assert len(engine.parser.calls) == 1

    @pytest.mark.asyncio
    async def test_transient_exhaustion_fails(self, engine):
        """A step that keeps failing transiently halts the case as failed."""
        engine.parser.register("https://files.example.com/orders/acme.xlsx", TransientStepError("parser down"))
        case_id = await engine.start_case()

        result = await engine.runtime.wait_for_result(case_id)
        assert result["status"] == "failed"
        assert len(engine.parser.calls) == 3
        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.FAILED
        assert len(engine.cards(case_id, "failed")) == 1


class TestSubmissionQueue:

    @pytest.mark.asyncio
    async def test_queued_then_created(self, engine):
        """An unavailable order system queues the case until Retry-After passes."""
        engine.register_file()
        engine.order_system.make_unavailable(rounds=1, retry_after_seconds=120)
        case_id = await engine.start_case()

        await signal(engine, case_id, SIGNAL_APPROVAL, APPROVE)
        doc = await engine.case_store.get(case_id)
        assert doc.status == CaseStatus.SUBMISSION_QUEUED
        assert len(engine.cards(case_id, "submission_queued")) == 1

        await engine.clock.advance(timedelta(seconds=119))
        assert engine.order_system.orders == {}

        await engine.clock.advance(timedelta(seconds=1))
        result = await engine.runtime.wait_for_result(case_id)
        assert result["status"] == "finalized"
        assert len(engine.order_system.orders) == 1
        types = [e["type"] for e in await engine.event_log.get_events(case_id)]
        assert types.index("submission_queued") < types.index("submission_retry") < types.index("order_created")

    @pytest.mark.asyncio
    async def test_queue_rounds_exhausted(self, engine):
        """An order system that never comes back fails the case after the last round."""
        engine.register_file()
        engine.order_system.make_unavailable(rounds=100, retry_after_seconds=1)
        case_id = await engine.start_case()

        await signal(engine, case_id, SIGNAL_APPROVAL, APPROVE)
        await engine.clock.advance(timedelta(minutes=1))

        result = await engine.runtime.wait_for_result(case_id)
        assert result["status"] == "failed"
        assert engine.order_system.create_calls == 0
        assert len(engine.cards(case_id, "submission_queued")) == 1
        assert len(engine.cards(case_id, "failed")) == 1


class TestRestart:

    @pytest.mark.asyncio
    async def test_process_restart_mid_approval(self, engine):
        """A restarted runtime replays to the approval wait without repeating any step."""
        engine.register_file()
        case_id = await engine.start_case()
        await engine.runtime.shutdown()
        assert (await engine.runtime.describe(case_id))["status"] == RunStatus.RUNNING

        runtime = engine.new_runtime()
        assert await runtime.resume_all() == 1
        await runtime.wait_idle()

        assert len(engine.parser.calls) == 1
        assert len(engine.cards(case_id, "ready_for_approval")) == 1
        assert runtime.query(case_id)["waiting_for"] == "approval"
        assert engine.clock.pending_timers() == 1

        await signal(engine, case_id, SIGNAL_APPROVAL, APPROVE)
        result = await runtime.wait_for_result(case_id)
        assert result["status"] == "finalized"
        assert len(engine.order_system.orders) == 1
        assert sum(1 for e in await engine.event_log.get_events(case_id) if e["type"] == "file_parsed") == 1

    @pytest.mark.asyncio
    async def test_escalation_clock_survives_restart(self, engine):
        """Phase deadlines are absolute: a restart does not push the reminder back."""
        engine.register_file()
        case_id = await engine.start_case()
        await engine.clock.advance(timedelta(hours=20))
        await engine.runtime.shutdown()

        runtime = engine.new_runtime()
        await runtime.resume_all()
        await runtime.wait_idle()

        await engine.clock.advance(timedelta(hours=4))
        assert len(engine.cards(case_id, "reminder")) == 1
