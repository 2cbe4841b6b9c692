"""
Tests for the versioned case store and the append-only event log.
"""
import asyncio

import pytest

from orderhub.services.case_models import (
    ApplyFieldCorrection,
    CanonicalOrder,
    CaseDocument,
    Correction,
    CustomerInfo,
    LineItem,
    TransitionStatus,
    correction_problem,
)
from orderhub.services.case_state_machine import CaseEvent, CaseStatus
from orderhub.services.case_store import CaseStore, InMemoryCaseBackend
from orderhub.services.errors import (
    BusinessValidationError,
    CaseNotFoundError,
    CaseWriteContention,
    InvalidTransitionError,
    VersionConflict,
    classify_error,
)
from orderhub.services.event_log import EventLog, EventType, InMemoryEventBackend


class InterleavingBackend(InMemoryCaseBackend):
    """Holds the first `readers` reads until all of them have read the same version."""

    def __init__(self, readers: int = 2):
        super().__init__()
        self.readers = readers
        self.arrived = 0
        self.gate = asyncio.Event()
        self.conflicts = 0

    async def get(self, case_id):
        found = await super().get(case_id)
        if self.arrived < self.readers:
            self.arrived += 1
            if self.arrived == self.readers:
                self.gate.set()
            await self.gate.wait()
        return found

    async def put(self, case_id, data, version_token):
        try:
            return await super().put(case_id, data, version_token)
        except VersionConflict:
            self.conflicts += 1
            raise


class AlwaysConflictingBackend(InMemoryCaseBackend):
    async def put(self, case_id, data, version_token):
        raise VersionConflict(case_id, version_token, version_token + 1)


def parsed_case(case_id: str = "case-1") -> CaseDocument:
    return CaseDocument(
        id=case_id,
        tenant_id="tenant-1",
        status=CaseStatus.CUSTOMER_RESOLUTION,
        canonical=CanonicalOrder(
            customer=CustomerInfo(raw_name="Acme Foods"),
            line_items=[
                LineItem(row=1, sku="OAT-1KG", quantity=10),
                LineItem(row=2, description="Almond milk", quantity=24),
            ],
        ),
    )


def correction(path: str, value, who: str = "clerk") -> Correction:
    return Correction(field_path=path, corrected_value=value, submitted_by=who)


@pytest.fixture
def event_log():
    return EventLog(InMemoryEventBackend())


class TestCaseStoreBasics:

    @pytest.mark.asyncio
    async def test_create_and_read(self, event_log):
        """A created case starts at version 1 and logs case_created."""
        store = CaseStore(InMemoryCaseBackend(), event_log)
        await store.create(parsed_case())

        doc, version = await store.read("case-1")
        assert version == 1
        assert doc.canonical.customer.raw_name == "Acme Foods"
        events = await event_log.get_events("case-1")
        assert [e["type"] for e in events] == ["case_created"]

    @pytest.mark.asyncio
    async def test_unknown_case(self, event_log):
        """Reading a missing case raises CaseNotFoundError (404)."""
        store = CaseStore(InMemoryCaseBackend(), event_log)
        with pytest.raises(CaseNotFoundError) as exc:
            await store.read("missing")
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_stale_write_is_rejected(self, event_log):
        """A write with an old version token raises VersionConflict."""
        store = CaseStore(InMemoryCaseBackend(), event_log)
        await store.create(parsed_case())
        doc, version = await store.read("case-1")

        assert await store.write("case-1", doc, version) == 2
        with pytest.raises(VersionConflict) as exc:
            await store.write("case-1", doc, version)
        assert exc.value.expected_version == 1
        assert exc.value.actual_version == 2

    @pytest.mark.asyncio
    async def test_update_appends_event_with_version(self, event_log):
        """Every successful update appends exactly one event carrying the new version."""
        store = CaseStore(InMemoryCaseBackend(), event_log)
        await store.create(parsed_case())

        doc = await store.update(
            "case-1", [ApplyFieldCorrection(correction("line_items[2].quantity", 30))],
            EventType.CORRECTIONS_APPLIED, actor="clerk",
        )
        assert doc.version == 2
        assert doc.canonical.line(2).quantity == 30

        latest = await event_log.get_latest_event("case-1")
        assert latest["type"] == "corrections_applied"
        assert latest["actor"] == "clerk"
        assert latest["metadata"]["version"] == 2
        assert latest["metadata"]["operations"] == ["apply_field_correction"]

    @pytest.mark.asyncio
    async def test_failed_operation_writes_nothing(self, event_log):
        """An invalid transition aborts the whole update."""
        store = CaseStore(InMemoryCaseBackend(), event_log)
        await store.create(parsed_case())

        with pytest.raises(InvalidTransitionError):
            await store.update(
                "case-1",
                [ApplyFieldCorrection(correction("customer.name", "Globex")), TransitionStatus(CaseEvent.ON_APPROVED)],
                EventType.STATUS_CHANGED,
            )
        doc, version = await store.read("case-1")
        assert version == 1
        assert doc.canonical.customer.raw_name == "Acme Foods"
        assert await event_log.count("case-1") == 1


class TestOptimisticConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_corrections_both_land(self, event_log):
        """Two writers on the same version: one conflicts, retries, and both edits survive."""
        backend = InterleavingBackend(readers=2)
        store = CaseStore(backend, event_log, retry_delay=0.0)
        await store.create(parsed_case())

        await asyncio.gather(
            store.update("case-1", [ApplyFieldCorrection(correction("line_items[1].quantity", 12, "alice"))],
                         EventType.CORRECTIONS_APPLIED, actor="alice"),
            store.update("case-1", [ApplyFieldCorrection(correction("line_items[2].unit_price", 2.5, "bob"))],
                         EventType.CORRECTIONS_APPLIED, actor="bob"),
        )

        doc, version = await store.read("case-1")
        assert backend.conflicts == 1
        assert version == 3
        assert doc.canonical.line(1).quantity == 12
        assert doc.canonical.line(2).unit_price == 2.5
        assert {c.submitted_by for c in doc.corrections} == {"alice", "bob"}
        assert len(await event_log.get_events_by_type("case-1", EventType.CORRECTIONS_APPLIED)) == 2

    @pytest.mark.asyncio
    async def test_contention_exhaustion_is_transient(self, event_log):
        """Running out of local retries surfaces as a transient step failure."""
        store = CaseStore(AlwaysConflictingBackend(), event_log, max_attempts=3, retry_delay=0.0)
        await store.create(parsed_case())

        with pytest.raises(CaseWriteContention) as exc:
            await store.update("case-1", [ApplyFieldCorrection(correction("customer.name", "Globex"))],
                               EventType.CORRECTIONS_APPLIED)
        assert classify_error(exc.value) == "transient"
        assert exc.value.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_correction_applied_once(self, event_log):
        """Replaying the same correction id does not record it twice."""
        store = CaseStore(InMemoryCaseBackend(), event_log)
        await store.create(parsed_case())
        fix = correction("line_items[1].quantity", 15)

        await store.update("case-1", [ApplyFieldCorrection(fix)], EventType.CORRECTIONS_APPLIED)
        doc = await store.update("case-1", [ApplyFieldCorrection(fix)], EventType.CORRECTIONS_APPLIED)
        assert len(doc.corrections) == 1
        assert doc.corrections[0].original_value == 10

    @pytest.mark.asyncio
    async def test_bad_correction_path(self, event_log):
        """Unsupported paths are business validation errors."""
        store = CaseStore(InMemoryCaseBackend(), event_log)
        await store.create(parsed_case())
        with pytest.raises(BusinessValidationError):
            await store.update("case-1", [ApplyFieldCorrection(correction("line_items[1].resolved_item_id", "x"))],
                               EventType.CORRECTIONS_APPLIED)

    def test_correction_problem(self):
        """Line corrections must name a row the parsed order has."""
        canonical = parsed_case().canonical
        assert correction_problem(canonical, "line_items[2].quantity") is None
        assert correction_problem(canonical, "customer.name") is None
        assert correction_problem(canonical, "line_items[9].quantity") == "No line item for row 9"
        assert correction_problem(None, "line_items[9].quantity") is None
        with pytest.raises(BusinessValidationError):
            correction_problem(canonical, "line_items[1].resolved_item_id")


class TestEventLog:

    @pytest.mark.asyncio
    async def test_sequence_is_gapless_under_concurrency(self, event_log):
        """Concurrent appends still number 1..n without gaps or repeats."""
        numbers = await asyncio.gather(*[
            event_log.append("case-9", EventType.STATUS_CHANGED, status="intake", metadata={"i": i})
            for i in range(20)
        ])
        assert sorted(numbers) == list(range(1, 21))

        events = await event_log.get_events("case-9")
        assert [e["sequence_number"] for e in events] == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_sequences_are_per_case(self, event_log):
        """Each case numbers its own events from 1."""
        await event_log.append("case-a", EventType.CASE_CREATED)
        await event_log.append("case-a", EventType.FILE_PARSED)
        assert await event_log.append("case-b", EventType.CASE_CREATED) == 1

    @pytest.mark.asyncio
    async def test_listed_events_are_copies(self, event_log):
        """Mutating a listed event does not change the log."""
        await event_log.append("case-a", EventType.CASE_CREATED, actor="system")
        events = await event_log.get_events("case-a")
        events[0]["actor"] = "mallory"
        assert (await event_log.get_events("case-a"))[0]["actor"] == "system"
