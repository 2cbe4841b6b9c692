"""
Order Hub - API Server

Wires the stores, collaborators and durable runtime, registers the case
workflow and resumes any run left open by the previous process.

    uvicorn orderhub.server:app

By default cases, events, evidence and workflow history live in MongoDB and
the collaborators are reached over HTTP. ORDERHUB_USE_MOCKS=true runs
entirely in memory for demos and local development.
"""

from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from dotenv import load_dotenv
import logging
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from motor.motor_asyncio import AsyncIOMotorClient

from orderhub import __version__
from orderhub.routes import auth_router, cases_router, set_cases_deps
from orderhub.services import config
from orderhub.services.audit_service import AuditService
from orderhub.services.case_steps import CaseSteps
from orderhub.services.case_store import CaseStore, InMemoryCaseBackend, MongoCaseBackend
from orderhub.services.case_workflow import WORKFLOW_TYPE, OrderCaseWorkflow
from orderhub.services.catalog_client import HttpCatalogClient, InMemoryCatalog
from orderhub.services.consensus import Committee, EvaluatorPool
from orderhub.services.document_parser import HttpDocumentParser, InMemoryDocumentParser
from orderhub.services.durable import DurableRuntime, InMemoryHistoryStore, MongoHistoryStore
from orderhub.services.entity_resolver import EntityResolver
from orderhub.services.event_log import EventLog, InMemoryEventBackend, MongoEventBackend
from orderhub.services.evidence_store import InMemoryEvidenceStore, MongoEvidenceStore
from orderhub.services.notifications import MockNotificationChannel, NotificationService, WebhookNotificationChannel
from orderhub.services.order_writer import HttpOrderSystemClient, IdempotentOrderWriter, InMemoryOrderSystem

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


# ==================== ENGINE WIRING ====================

@dataclass
class Engine:
    case_store: CaseStore
    event_log: EventLog
    evidence_store: Any
    steps: CaseSteps
    runtime: DurableRuntime
    mongo_client: Optional[AsyncIOMotorClient] = None


def build_engine(use_mocks: bool = config.USE_MOCKS, clock=None) -> Engine:
    """Assemble every collaborator; in-memory when `use_mocks`, MongoDB + HTTP otherwise."""
    mongo_client = None
    if use_mocks:
        event_log = EventLog(InMemoryEventBackend())
        case_store = CaseStore(InMemoryCaseBackend(), event_log)
        evidence_store = InMemoryEvidenceStore()
        history = InMemoryHistoryStore()
        parser = InMemoryDocumentParser()
        catalog = InMemoryCatalog()
        order_client = InMemoryOrderSystem()
        channel = MockNotificationChannel()
    else:
        mongo_client = AsyncIOMotorClient(config.MONGO_URL)
        db = mongo_client[config.DB_NAME]
        event_log = EventLog(MongoEventBackend(db))
        case_store = CaseStore(MongoCaseBackend(db), event_log)
        evidence_store = MongoEvidenceStore(db)
        history = MongoHistoryStore(db)
        parser = HttpDocumentParser()
        catalog = HttpCatalogClient()
        order_client = HttpOrderSystemClient()
        channel = WebhookNotificationChannel() if config.NOTIFY_WEBHOOK_URL else MockNotificationChannel(db)

    steps = CaseSteps(
        case_store=case_store,
        parser=parser,
        committee=Committee(EvaluatorPool.from_config(use_mocks=use_mocks), evidence_store),
        resolver=EntityResolver(catalog),
        order_writer=IdempotentOrderWriter(order_client),
        notifications=NotificationService(channel),
        audit=AuditService(case_store, event_log, evidence_store),
    )
    runtime = DurableRuntime(history, clock=clock)
    runtime.register(WORKFLOW_TYPE, lambda: OrderCaseWorkflow(steps))
    return Engine(case_store, event_log, evidence_store, steps, runtime, mongo_client)


async def ensure_indexes(engine: Engine):
    for component in (engine.case_store.backend, engine.event_log.backend, engine.evidence_store,
                      engine.runtime.history):
        if hasattr(component, "ensure_indexes"):
            await component.ensure_indexes()


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = build_engine()
    app.state.engine = engine
    await ensure_indexes(engine)
    set_cases_deps(engine.case_store, engine.event_log, engine.evidence_store, engine.runtime)
    resumed = await engine.runtime.resume_all()
    logger.info("Order Hub started. Mocks: %s, resumed %d case workflow(s)", config.USE_MOCKS, resumed)
    yield
    await engine.runtime.shutdown()
    if engine.mongo_client is not None:
        engine.mongo_client.close()
    logger.info("Order Hub stopped")


app = FastAPI(title="Order Hub API", version=__version__, lifespan=lifespan)
api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health_check():
    """Health check endpoint for Docker/Kubernetes probes."""
    return {"status": "healthy", "service": "order-hub", "version": __version__}


api_router.include_router(auth_router)
api_router.include_router(cases_router)
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)
