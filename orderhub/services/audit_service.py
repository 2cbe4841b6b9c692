"""
Order Hub - Audit Bundle Finalization

After submission the case's artifacts are sealed into a manifest:
the final case snapshot, the ordered event trail and every committee
evidence file, each with its sha256. The manifest itself is stored in the
evidence trail and its hash goes on the case as the audit pointer.
"""

import hashlib
import json
import logging
from typing import Any, Dict

from orderhub.services.case_models import AuditPointer, utc_now_iso
from orderhub.services.evidence_store import AUDIT_MANIFEST_PATH

logger = logging.getLogger(__name__)


def content_sha256(content: Any) -> str:
    encoded = json.dumps(content, sort_keys=True, default=str, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class AuditService:
    def __init__(self, case_store, event_log, evidence_store):
        self.case_store = case_store
        self.event_log = event_log
        self.evidence_store = evidence_store

    async def build_manifest(self, case_id: str) -> Dict[str, Any]:
        doc = await self.case_store.get(case_id)
        events = await self.event_log.get_events(case_id)
        evidence = await self.evidence_store.list(case_id, prefix="committee/")

        snapshot = doc.to_storage()
        artifacts = [
            {"path": "case.json", "sha256": content_sha256(snapshot)},
            {"path": "events.json", "sha256": content_sha256(events), "count": len(events)},
        ]
        for artifact in evidence:
            artifacts.append({"path": artifact["path"], "sha256": content_sha256(artifact["content"])})

        return {
            "case_id": case_id,
            "tenant_id": doc.tenant_id,
            "correlation_id": doc.correlation_id,
            "status": doc.status.value,
            "order": doc.order.model_dump() if doc.order else None,
            "artifacts": artifacts,
            "created_at": utc_now_iso(),
        }

    async def finalize(self, case_id: str) -> AuditPointer:
        manifest = await self.build_manifest(case_id)
        await self.evidence_store.put(case_id, AUDIT_MANIFEST_PATH, manifest)
        pointer = AuditPointer(
            manifest_path=f"cases/{case_id}/{AUDIT_MANIFEST_PATH}",
            artifact_count=len(manifest["artifacts"]),
            manifest_sha256=content_sha256(manifest),
        )
        logger.info("Case %s audit bundle sealed: %d artifact(s)", case_id, pointer.artifact_count)
        return pointer
