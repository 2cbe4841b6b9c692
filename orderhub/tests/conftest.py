"""
Shared fixtures: a fully in-memory engine on a virtual clock.

Retry policies have zero backoff so failure paths run without waiting, and
escalation phases are driven with VirtualClock.advance.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest

from orderhub.services.audit_service import AuditService
from orderhub.services.case_steps import CaseSteps
from orderhub.services.case_store import CaseStore, InMemoryCaseBackend
from orderhub.services.case_workflow import WORKFLOW_TYPE, OrderCaseWorkflow
from orderhub.services.case_models import CaseDocument
from orderhub.services.catalog_client import InMemoryCatalog
from orderhub.services.consensus import Committee, EvaluatorPool, StaticEvaluator, header_matching_answer
from orderhub.services.document_parser import InMemoryDocumentParser
from orderhub.services.durable import DurableRuntime, InMemoryHistoryStore, RetryPolicy, VirtualClock
from orderhub.services.entity_resolver import EntityResolver
from orderhub.services.event_log import EventLog, InMemoryEventBackend
from orderhub.services.evidence_store import InMemoryEvidenceStore
from orderhub.services.notifications import MockNotificationChannel, NotificationService
from orderhub.services.order_writer import IdempotentOrderWriter, InMemoryOrderSystem


FAST_RETRY = RetryPolicy(max_attempts=3, initial_interval=0.0, backoff_coefficient=1.0, maximum_interval=0.0)

EVALUATOR_IDS = ["azure-gpt-5.1", "azure-claude-opus-4.5", "gemini-2.5-pro"]

DEFAULT_FILE_URL = "https://files.example.com/orders/acme.xlsx"

CATALOG_ITEMS = [
    {"id": "item-oats", "name": "Organic Rolled Oats 1kg", "sku": "OAT-1KG", "gtin": "4006381333931", "rate": 3.5},
    {"id": "item-almond", "name": "Almond Milk Unsweetened 1L", "sku": "ALM-1L", "gtin": "5012345678900", "rate": 2.2},
    {"id": "item-honey", "name": "Wildflower Honey 500g", "sku": "HNY-500", "gtin": "7612345000017", "rate": 6.8},
]

CATALOG_CUSTOMERS = [
    {"id": "cust-acme", "name": "Acme Foods Inc.", "company_name": "Acme Foods"},
    {"id": "cust-globex", "name": "Globex Corporation", "company_name": "Globex"},
]


def order_columns() -> List[Dict[str, Any]]:
    return [
        {"id": "c1", "header": "Customer Name", "samples": ["Acme Foods"]},
        {"id": "c2", "header": "SKU", "samples": ["OAT-1KG", ""]},
        {"id": "c3", "header": "GTIN", "samples": ["", "5012345678900"]},
        {"id": "c4", "header": "Description", "samples": ["Rolled oats", "Almond milk"]},
        {"id": "c5", "header": "Quantity", "samples": ["10", "24"]},
        {"id": "c6", "header": "Unit Price", "samples": ["3.50", "2.20"]},
    ]


def parsed_order(customer: str = "Acme Foods", line_items: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Parser service answer for a well-formed two-line order."""
    if line_items is None:
        line_items = [
            {"row": 1, "sku": "OAT-1KG", "description": "Rolled oats", "quantity": 10, "unit_price": 3.5},
            {"row": 2, "gtin": "5012345678900", "description": "Almond milk", "quantity": 24, "unit_price": 2.2},
        ]
    return {
        "status": "ok",
        "canonical": {
            "customer": {"raw_name": customer},
            "line_items": line_items,
            "columns": order_columns(),
            "detected_language": "en",
            "currency": "USD",
        },
        "issues": [],
    }


@dataclass
class Engine:
    clock: VirtualClock
    event_log: EventLog
    case_store: CaseStore
    evidence: InMemoryEvidenceStore
    parser: InMemoryDocumentParser
    catalog: InMemoryCatalog
    pool: EvaluatorPool
    order_system: InMemoryOrderSystem
    channel: MockNotificationChannel
    steps: CaseSteps
    history: InMemoryHistoryStore
    runtime: DurableRuntime

    def new_runtime(self) -> DurableRuntime:
        """A fresh runtime over the same history, as after a process restart."""
        runtime = DurableRuntime(self.history, clock=self.clock, default_retry_policy=FAST_RETRY)
        runtime.register(WORKFLOW_TYPE, lambda: OrderCaseWorkflow(self.steps, step_policy=FAST_RETRY,
                                                                  submit_policy=FAST_RETRY))
        self.runtime = runtime
        return runtime

    def register_file(self, file_url: str = DEFAULT_FILE_URL, **order) -> str:
        """Make the parser answer `file_url` with a parsed order (see parsed_order)."""
        self.parser.register(file_url, parsed_order(**order))
        return file_url

    async def start_case(self, file_url: str = DEFAULT_FILE_URL) -> str:
        doc = CaseDocument(id=uuid.uuid4().hex, tenant_id="tenant-1", user_id="buyer@example.com",
                           file_name="acme.xlsx", file_url=file_url)
        doc = await self.case_store.create(doc, actor="buyer@example.com")
        await self.runtime.start(WORKFLOW_TYPE, doc.id, {
            "case_id": doc.id,
            "file_url": file_url,
            "file_name": doc.file_name,
            "correlation_id": doc.correlation_id,
        })
        await self.runtime.wait_idle()
        return doc.id

    def cards(self, case_id: str, card_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.channel.get_sent(case_id, card_type)


def build_engine(evaluators=None) -> Engine:
    clock = VirtualClock()
    event_log = EventLog(InMemoryEventBackend())
    case_store = CaseStore(InMemoryCaseBackend(), event_log, retry_delay=0.0)
    evidence = InMemoryEvidenceStore()
    parser = InMemoryDocumentParser()
    catalog = InMemoryCatalog(items=CATALOG_ITEMS, customers=CATALOG_CUSTOMERS)
    pool = EvaluatorPool(evaluators or [StaticEvaluator(eid, answer=header_matching_answer) for eid in EVALUATOR_IDS])
    order_system = InMemoryOrderSystem()
    channel = MockNotificationChannel()
    steps = CaseSteps(
        case_store=case_store,
        parser=parser,
        committee=Committee(pool, evidence, timeout=5.0),
        resolver=EntityResolver(catalog),
        order_writer=IdempotentOrderWriter(order_system),
        notifications=NotificationService(channel),
        audit=AuditService(case_store, event_log, evidence),
    )
    engine = Engine(clock, event_log, case_store, evidence, parser, catalog, pool, order_system, channel,
                    steps, InMemoryHistoryStore(), None)
    engine.new_runtime()
    return engine


@pytest.fixture
async def engine():
    built = build_engine()
    yield built
    await built.runtime.shutdown()


@pytest.fixture
async def make_engine():
    """Factory for engines with a custom evaluator pool."""
    built = []

    def factory(**kwargs) -> Engine:
        created = build_engine(**kwargs)
        built.append(created)
        return created

    yield factory
    for created in built:
        await created.runtime.shutdown()
