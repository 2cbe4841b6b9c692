"""
Order Hub - Case Store

Versioned read / modify / write of case documents.

    read(case_id)                  -> (document, version_token)
    write(case_id, doc, token)     -> new version, or VersionConflict
    update(case_id, operations)    -> read-modify-write with bounded retry

Every successful write is followed by exactly one event-log append. The
append is best effort: a failure is logged and the case write stands.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from orderhub.services import config
from orderhub.services.case_models import CaseDocument, CaseUpdate, utc_now_iso
from orderhub.services.errors import (
    CaseNotFoundError,
    CaseWriteContention,
    OrderHubError,
    VersionConflict,
)
from orderhub.services.event_log import EventLog, EventType

logger = logging.getLogger(__name__)


# =============================================================================
# BACKENDS
# =============================================================================

class InMemoryCaseBackend:
    """Process-local case storage with the same version contract as Mongo."""

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}

    async def insert(self, case_id: str, data: Dict[str, Any]) -> None:
        if case_id in self._docs:
            raise OrderHubError(f"Case already exists: {case_id}", status_code=409)
        self._docs[case_id] = copy.deepcopy(data)

    async def get(self, case_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        data = self._docs.get(case_id)
        if data is None:
            return None
        return copy.deepcopy(data), data["version"]

    async def put(self, case_id: str, data: Dict[str, Any], version_token: int) -> int:
        current = self._docs.get(case_id)
        if current is None:
            raise CaseNotFoundError(case_id)
        if current["version"] != version_token:
            raise VersionConflict(case_id, version_token, current["version"])
        new_version = version_token + 1
        self._docs[case_id] = dict(copy.deepcopy(data), version=new_version)
        return new_version

    async def list(self, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        docs = [copy.deepcopy(d) for d in self._docs.values() if status is None or d.get("status") == status]
        docs.sort(key=lambda d: d.get("created_at", ""), reverse=True)
        return docs[:limit]


class MongoCaseBackend:
    """Case storage on MongoDB; the version filter on update_one is the OCC check."""

    def __init__(self, db, collection: str = "cases"):
        self.collection = db[collection]

    async def ensure_indexes(self):
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index("status")
        await self.collection.create_index("tenant_id")
        await self.collection.create_index("created_at")

    async def insert(self, case_id: str, data: Dict[str, Any]) -> None:
        try:
            await self.collection.insert_one(dict(data))
        except DuplicateKeyError:
            raise OrderHubError(f"Case already exists: {case_id}", status_code=409)

    async def get(self, case_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        data = await self.collection.find_one({"id": case_id}, {"_id": 0})
        if data is None:
            return None
        return data, data["version"]

    async def put(self, case_id: str, data: Dict[str, Any], version_token: int) -> int:
        new_version = version_token + 1
        update = dict(data, version=new_version)
        update.pop("_id", None)
        result = await self.collection.update_one(
            {"id": case_id, "version": version_token},
            {"$set": update},
        )
        if result.matched_count == 0:
            current = await self.collection.find_one({"id": case_id}, {"version": 1})
            if current is None:
                raise CaseNotFoundError(case_id)
            raise VersionConflict(case_id, version_token, current.get("version"))
        return new_version

    async def list(self, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = {"status": status} if status else {}
        cursor = self.collection.find(query, {"_id": 0}).sort("created_at", -1).limit(limit)
        return await cursor.to_list(limit)


# =============================================================================
# CASE STORE
# =============================================================================

class CaseStore:
    """OCC-safe case persistence paired with the audit trail."""

    def __init__(
        self,
        backend,
        event_log: EventLog,
        max_attempts: int = config.CASE_WRITE_MAX_ATTEMPTS,
        retry_delay: float = config.CASE_WRITE_RETRY_DELAY_SECONDS,
    ):
        self.backend = backend
        self.event_log = event_log
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def create(self, doc: CaseDocument, actor: str = "system") -> CaseDocument:
        doc = doc.model_copy(deep=True)
        doc.version = 1
        await self.backend.insert(doc.id, doc.to_storage())
        logger.info("Case %s created (tenant=%s, correlation=%s)", doc.id, doc.tenant_id, doc.correlation_id)
        await self._append_event(
            doc, EventType.CASE_CREATED, actor,
            {"file_name": doc.file_name, "file_url": doc.file_url},
        )
        return doc

    async def read(self, case_id: str) -> Tuple[CaseDocument, int]:
        found = await self.backend.get(case_id)
        if found is None:
            raise CaseNotFoundError(case_id)
        data, version = found
        return CaseDocument.from_storage(data), version

    async def get(self, case_id: str) -> CaseDocument:
        doc, _ = await self.read(case_id)
        return doc

    async def write(self, case_id: str, doc: CaseDocument, version_token: int) -> int:
        """Single conditional write. Raises VersionConflict on a stale token."""
        return await self.backend.put(case_id, doc.to_storage(), version_token)

    async def list_cases(self, status: Optional[str] = None, limit: int = 50) -> List[CaseDocument]:
        return [CaseDocument.from_storage(d) for d in await self.backend.list(status, limit)]

    async def update(
        self,
        case_id: str,
        operations: List[CaseUpdate],
        event_type: str,
        actor: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CaseDocument:
        """
        Apply `operations` to the latest version of the case and write it back.

        A version conflict re-reads and re-applies, up to `max_attempts`
        times with an attempt-scaled delay. Exhaustion raises
        CaseWriteContention, a transient failure the step retry policy
        restarts from a fresh read.
        """
        for attempt in range(1, self.max_attempts + 1):
            doc, version = await self.read(case_id)
            working = doc.model_copy(deep=True)
            now = utc_now_iso()
            for operation in operations:
                operation.apply(working, now)
            working.updated_at = now

            try:
                new_version = await self.write(case_id, working, version)
            except VersionConflict as e:
                logger.warning(
                    "Case %s write conflict on attempt %d/%d (expected v%s, found v%s)",
                    case_id, attempt, self.max_attempts, e.expected_version, e.actual_version,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue

            working.version = new_version
            event_metadata = dict(metadata or {})
            event_metadata.setdefault("operations", [op.description for op in operations])
            event_metadata["version"] = new_version
            await self._append_event(working, event_type, actor, event_metadata)
            return working

        raise CaseWriteContention(
            f"Case {case_id} still conflicting after {self.max_attempts} attempts",
            details={"case_id": case_id, "attempts": self.max_attempts},
        )

    async def _append_event(self, doc: CaseDocument, event_type, actor: str, metadata: Dict[str, Any]):
        try:
            await self.event_log.append(
                doc.id,
                event_type,
                status=doc.status,
                correlation_id=doc.correlation_id,
                actor=actor,
                metadata=metadata,
            )
        except Exception as e:
            logger.error("Audit append failed for case %s (%s): %s", doc.id, getattr(event_type, "value", event_type), str(e))
