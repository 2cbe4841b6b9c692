"""
Order Hub - Cases Router

Case intake, inspection and the human-input signals.

Signals are accepted only while the case's workflow is running; a case
that has reached a terminal status answers 409.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Any, List, Optional
from pydantic import BaseModel, Field
import logging
import uuid

from orderhub.routes.auth import get_current_username
from orderhub.services.case_models import CaseDocument, Correction, Selection, correction_problem, utc_now_iso
from orderhub.services.case_state_machine import CaseStateMachine
from orderhub.services.case_workflow import (
    SIGNAL_APPROVAL,
    SIGNAL_CORRECTIONS,
    SIGNAL_FILE_RESUBMITTED,
    SIGNAL_SELECTIONS,
    WORKFLOW_TYPE,
)
from orderhub.services.durable import WorkflowAlreadyRunningError, WorkflowError, WorkflowNotFoundError
from orderhub.services.errors import BusinessValidationError, CaseNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cases", tags=["cases"])

# Stores and runtime - set by main app
case_store = None
event_log = None
evidence_store = None
runtime = None

def set_dependencies(store, events, evidence, durable_runtime):
    global case_store, event_log, evidence_store, runtime
    case_store = store
    event_log = events
    evidence_store = evidence
    runtime = durable_runtime


# ==================== MODELS ====================

class CaseIntakeRequest(BaseModel):
    tenant_id: str
    file_url: str
    file_name: Optional[str] = None
    file_sha256: Optional[str] = None
    user_id: Optional[str] = None
    language: str = "en"


class FileResubmission(BaseModel):
    file_url: str
    file_name: Optional[str] = None


class CorrectionInput(BaseModel):
    field_path: str
    corrected_value: Any = None
    original_value: Any = None
    note: Optional[str] = None


class CorrectionsRequest(BaseModel):
    corrections: List[CorrectionInput] = Field(default_factory=list)


class SelectionInput(BaseModel):
    field: str
    candidate_id: str


class SelectionsRequest(BaseModel):
    selections: List[SelectionInput]


class ApprovalRequest(BaseModel):
    approved: bool
    reason: Optional[str] = None


# ==================== HELPERS ====================

async def _require_case(case_id: str) -> CaseDocument:
    try:
        return await case_store.get(case_id)
    except CaseNotFoundError:
        raise HTTPException(status_code=404, detail="Case not found")


async def _deliver(case_id: str, signal: str, payload: dict):
    await _require_case(case_id)
    try:
        await runtime.signal(case_id, signal, payload)
    except WorkflowNotFoundError:
        raise HTTPException(status_code=409, detail="Case is not accepting input")
    except WorkflowError as e:
        raise HTTPException(status_code=e.status_code or 400, detail=e.message)
    return {"case_id": case_id, "signal": signal, "accepted": True}


# ==================== INTAKE / INSPECTION ====================

@router.post("")
async def create_case(req: CaseIntakeRequest, username: Optional[str] = Depends(get_current_username)):
    """Create a case for an uploaded order file and start its workflow."""
    doc = CaseDocument(
        id=uuid.uuid4().hex,
        tenant_id=req.tenant_id,
        user_id=req.user_id or username,
        file_name=req.file_name,
        file_url=req.file_url,
        file_sha256=req.file_sha256,
        language=req.language,
    )
    doc = await case_store.create(doc, actor=username or req.user_id or "system")
    try:
        run_id = await runtime.start(WORKFLOW_TYPE, doc.id, {
            "case_id": doc.id,
            "file_url": doc.file_url,
            "file_name": doc.file_name,
            "correlation_id": doc.correlation_id,
        })
    except WorkflowAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=e.message)

    return {
        "case_id": doc.id,
        "status": doc.status.value,
        "correlation_id": doc.correlation_id,
        "run_id": run_id,
    }


@router.get("")
async def list_cases(status: Optional[str] = Query(None), limit: int = Query(50, le=500)):
    """Cases, most recently updated first."""
    docs = await case_store.list_cases(status=status, limit=limit)
    return {
        "cases": [
            {"id": d.id, "tenant_id": d.tenant_id, "status": d.status.value, "file_name": d.file_name,
             "updated_at": d.updated_at}
            for d in docs
        ],
        "total": len(docs),
    }


@router.get("/{case_id}")
async def get_case(case_id: str):
    try:
        doc, version = await case_store.read(case_id)
    except CaseNotFoundError:
        raise HTTPException(status_code=404, detail="Case not found")
    return {"case": doc.to_storage(), "version": version}


@router.get("/{case_id}/state")
async def get_case_state(case_id: str):
    """Live workflow state, or the last run's record once the workflow has closed."""
    doc = await _require_case(case_id)
    if runtime.is_running(case_id):
        return dict(runtime.query(case_id), running=True)

    latest = await runtime.describe(case_id)
    return {
        "case_id": case_id,
        "status": doc.status.value,
        "running": False,
        "run_id": latest["run_id"] if latest else None,
        "run_status": latest["status"] if latest else None,
        "result": latest.get("result") if latest else None,
        "error": latest.get("error") if latest else None,
    }


@router.get("/{case_id}/events")
async def get_case_events(case_id: str, event_type: Optional[str] = Query(None)):
    await _require_case(case_id)
    if event_type:
        events = await event_log.get_events_by_type(case_id, event_type)
    else:
        events = await event_log.get_events(case_id)
    return {"case_id": case_id, "events": events, "count": len(events)}


@router.get("/{case_id}/evidence")
async def get_case_evidence(case_id: str, prefix: str = Query("committee/")):
    await _require_case(case_id)
    artifacts = await evidence_store.list(case_id, prefix=prefix)
    return {"case_id": case_id, "artifacts": artifacts, "count": len(artifacts)}


# ==================== SIGNALS ====================

@router.post("/{case_id}/signals/file-resubmitted")
async def signal_file_resubmitted(case_id: str, req: FileResubmission,
                                  username: Optional[str] = Depends(get_current_username)):
    """Replace the case's file; the pipeline restarts from intake."""
    return await _deliver(case_id, SIGNAL_FILE_RESUBMITTED, {
        "file_url": req.file_url,
        "file_name": req.file_name,
        "submitted_by": username or "user",
    })


@router.post("/{case_id}/signals/corrections")
async def signal_corrections(case_id: str, req: CorrectionsRequest,
                             username: Optional[str] = Depends(get_current_username)):
    """Field corrections. Each gets its id and timestamp here; an empty list confirms the mapping as is."""
    doc = await _require_case(case_id)
    if not CaseStateMachine.accepts_corrections(doc.status):
        raise HTTPException(status_code=409, detail=f"Case is no longer accepting corrections ({doc.status.value})")

    corrections = []
    for item in req.corrections:
        try:
            problem = correction_problem(doc.canonical, item.field_path)
        except BusinessValidationError as e:
            problem = e.message
        if problem:
            raise HTTPException(status_code=422, detail=problem)
        corrections.append(Correction(
            correction_id=uuid.uuid4().hex,
            field_path=item.field_path,
            original_value=item.original_value,
            corrected_value=item.corrected_value,
            note=item.note,
            submitted_by=username or "user",
            submitted_at=utc_now_iso(),
        ).model_dump(mode="json"))

    result = await _deliver(case_id, SIGNAL_CORRECTIONS, {"corrections": corrections})
    result["correction_ids"] = [c["correction_id"] for c in corrections]
    return result


@router.post("/{case_id}/signals/selections")
async def signal_selections(case_id: str, req: SelectionsRequest,
                            username: Optional[str] = Depends(get_current_username)):
    selections = [
        Selection(field=s.field, candidate_id=s.candidate_id, submitted_by=username or "user").model_dump()
        for s in req.selections
    ]
    return await _deliver(case_id, SIGNAL_SELECTIONS, {"selections": selections})


@router.post("/{case_id}/signals/approval")
async def signal_approval(case_id: str, req: ApprovalRequest,
                          username: Optional[str] = Depends(get_current_username)):
    return await _deliver(case_id, SIGNAL_APPROVAL, {
        "approved": req.approved,
        "approver": username or "user",
        "reason": req.reason,
    })
