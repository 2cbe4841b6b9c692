"""
Order Hub - Evidence Trail

Per-case artifacts addressed by path:

    committee/{task_id}/{evaluator_id}/input.json
    committee/{task_id}/{evaluator_id}/output.json
    committee/{task_id}/decision.json
    audit/manifest.json

Artifacts are written once; writing the same path again replaces the
content (a retried step writes the same evidence).
"""

import copy
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def evaluator_input_path(task_id: str, evaluator_id: str) -> str:
    return f"committee/{task_id}/{evaluator_id}/input.json"


def evaluator_output_path(task_id: str, evaluator_id: str) -> str:
    return f"committee/{task_id}/{evaluator_id}/output.json"


def decision_path(task_id: str) -> str:
    return f"committee/{task_id}/decision.json"


AUDIT_MANIFEST_PATH = "audit/manifest.json"


class InMemoryEvidenceStore:
    def __init__(self):
        self._artifacts: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def put(self, case_id: str, path: str, content: Any) -> None:
        self._artifacts.setdefault(case_id, {})[path] = {
            "case_id": case_id,
            "path": path,
            "content": copy.deepcopy(content),
            "stored_at": datetime.now(timezone.utc).isoformat(),
        }

    async def get(self, case_id: str, path: str) -> Optional[Any]:
        artifact = self._artifacts.get(case_id, {}).get(path)
        return copy.deepcopy(artifact["content"]) if artifact else None

    async def list(self, case_id: str, prefix: str = "") -> List[Dict[str, Any]]:
        artifacts = self._artifacts.get(case_id, {})
        return [copy.deepcopy(a) for p, a in sorted(artifacts.items()) if p.startswith(prefix)]


class MongoEvidenceStore:
    """Evidence on MongoDB (`case_evidence`, unique on case_id + path)."""

    def __init__(self, db, collection: str = "case_evidence"):
        self.collection = db[collection]

    async def ensure_indexes(self):
        await self.collection.create_index([("case_id", 1), ("path", 1)], unique=True)

    async def put(self, case_id: str, path: str, content: Any) -> None:
        await self.collection.update_one(
            {"case_id": case_id, "path": path},
            {"$set": {"content": content, "stored_at": datetime.now(timezone.utc).isoformat()}},
            upsert=True,
        )

    async def get(self, case_id: str, path: str) -> Optional[Any]:
        artifact = await self.collection.find_one({"case_id": case_id, "path": path}, {"_id": 0})
        return artifact["content"] if artifact else None

    async def list(self, case_id: str, prefix: str = "") -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"case_id": case_id}
        if prefix:
            query["path"] = {"$regex": f"^{re.escape(prefix)}"}
        return await self.collection.find(query, {"_id": 0}).sort("path", 1).to_list(None)
