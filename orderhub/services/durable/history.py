"""
Workflow run and history persistence.

A run document:
    {run_id, workflow_id, workflow_type, run_index, status, input, result, error,
     parent_run_id, started_at, closed_at}

History entries are append-only and ordered by `seq` within a run.
"""

import copy
from typing import Any, Dict, List, Optional


class RunStatus:
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CONTINUED_AS_NEW = "continued_as_new"


class InMemoryHistoryStore:
    """Process-local history; survives a runtime restart within the process."""

    def __init__(self):
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._history: Dict[str, List[Dict[str, Any]]] = {}

    async def create_run(self, run: Dict[str, Any]) -> None:
        self._runs[run["run_id"]] = copy.deepcopy(run)
        self._history[run["run_id"]] = []

    async def update_run(self, run_id: str, fields: Dict[str, Any]) -> None:
        self._runs[run_id].update(copy.deepcopy(fields))

    async def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def find_latest_run(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        runs = [r for r in self._runs.values() if r["workflow_id"] == workflow_id]
        if not runs:
            return None
        return copy.deepcopy(max(runs, key=lambda r: r.get("run_index", 0)))

    async def list_runs(self, status: Optional[str] = None, workflow_id: Optional[str] = None) -> List[Dict[str, Any]]:
        runs = [
            r for r in self._runs.values()
            if (status is None or r["status"] == status) and (workflow_id is None or r["workflow_id"] == workflow_id)
        ]
        return [copy.deepcopy(r) for r in sorted(runs, key=lambda r: (r["started_at"], r.get("run_index", 0)))]

    async def append(self, run_id: str, entry: Dict[str, Any]) -> None:
        self._history[run_id].append(copy.deepcopy(entry))

    async def load(self, run_id: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(e) for e in self._history.get(run_id, [])]


class MongoHistoryStore:
    """History on MongoDB (`workflow_runs`, `workflow_history`)."""

    def __init__(self, db, runs_collection: str = "workflow_runs", history_collection: str = "workflow_history"):
        self.runs = db[runs_collection]
        self.history = db[history_collection]

    async def ensure_indexes(self):
        await self.runs.create_index("run_id", unique=True)
        await self.runs.create_index([("workflow_id", 1), ("run_index", -1)])
        await self.runs.create_index("status")
        await self.history.create_index([("run_id", 1), ("seq", 1)], unique=True)

    async def create_run(self, run: Dict[str, Any]) -> None:
        await self.runs.insert_one(dict(run))

    async def update_run(self, run_id: str, fields: Dict[str, Any]) -> None:
        await self.runs.update_one({"run_id": run_id}, {"$set": fields})

    async def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        return await self.runs.find_one({"run_id": run_id}, {"_id": 0})

    async def find_latest_run(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        return await self.runs.find_one({"workflow_id": workflow_id}, {"_id": 0}, sort=[("run_index", -1)])

    async def list_runs(self, status: Optional[str] = None, workflow_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = {}
        if status:
            query["status"] = status
        if workflow_id:
            query["workflow_id"] = workflow_id
        return await self.runs.find(query, {"_id": 0}).sort("started_at", 1).to_list(None)

    async def append(self, run_id: str, entry: Dict[str, Any]) -> None:
        await self.history.insert_one(dict(entry, run_id=run_id))

    async def load(self, run_id: str) -> List[Dict[str, Any]]:
        cursor = self.history.find({"run_id": run_id}, {"_id": 0}).sort("seq", 1)
        return await cursor.to_list(None)
