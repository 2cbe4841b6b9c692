"""
Durable runtime: starts, resumes, signals and queries workflow runs.

One asyncio task per active run. A run waiting on a signal or timer holds
no admission slot; only executing steps count against the step and
external-call limits.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .. import config
from .clock import SystemClock
from .context import WorkflowContext
from .errors import ContinueAsNew, WorkflowAlreadyRunningError, WorkflowError, WorkflowNotFoundError
from .history import RunStatus
from .retry import STANDARD_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    run: Dict[str, Any]
    workflow: Any
    context: WorkflowContext
    task: Optional[asyncio.Task] = None


class DurableRuntime:
    """Hosts workflow runs on top of a history store and a clock."""

    def __init__(
        self,
        history_store,
        clock=None,
        max_concurrent_steps: int = config.MAX_CONCURRENT_STEPS,
        max_concurrent_external_calls: int = config.MAX_CONCURRENT_EXTERNAL_CALLS,
        default_retry_policy: RetryPolicy = STANDARD_RETRY_POLICY,
    ):
        self.history = history_store
        self.clock = clock or SystemClock()
        self.default_retry_policy = default_retry_policy
        self._step_slots = asyncio.Semaphore(max_concurrent_steps)
        self._external_slots = asyncio.Semaphore(max_concurrent_external_calls)
        self._factories: Dict[str, Callable[[], Any]] = {}
        self._active: Dict[str, _ActiveRun] = {}
        self._waiters: Dict[str, asyncio.Future] = {}

        if hasattr(self.clock, "set_idle_waiter"):
            self.clock.set_idle_waiter(self.wait_idle)

    # =========================================================================
    # REGISTRATION / ADMISSION
    # =========================================================================

    def register(self, workflow_type: str, factory: Callable[[], Any]) -> None:
        """Register a factory producing a fresh workflow object per run."""
        self._factories[workflow_type] = factory

    @asynccontextmanager
    async def admission(self, external: bool = False):
        async with self._step_slots:
            if external:
                async with self._external_slots:
                    yield
            else:
                yield

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, workflow_type: str, workflow_id: str, workflow_input: Dict[str, Any]) -> str:
        if workflow_type not in self._factories:
            raise WorkflowError(f"Unknown workflow type: {workflow_type}")
        if workflow_id in self._active:
            raise WorkflowAlreadyRunningError(workflow_id)
        latest = await self.history.find_latest_run(workflow_id)
        if latest and latest["status"] == RunStatus.RUNNING:
            raise WorkflowAlreadyRunningError(workflow_id)

        run = self._new_run(workflow_type, workflow_id, workflow_input, run_index=(latest or {}).get("run_index", 0) + 1)
        await self.history.create_run(run)
        logger.info("Started workflow %s (%s) run %s", workflow_id, workflow_type, run["run_id"])
        self._launch(run, [])
        return run["run_id"]

    async def resume_all(self) -> int:
        """Replay every run left in `running` state (after a restart).

        Only the latest run of a workflow is replayed. An older run still
        marked running was interrupted while continuing as new and is closed.
        """
        resumed = 0
        runs = await self.history.list_runs(status=RunStatus.RUNNING)
        latest: Dict[str, Dict[str, Any]] = {}
        for run in sorted(runs, key=lambda r: r.get("run_index", 1), reverse=True):
            if run["workflow_id"] in latest:
                logger.warning("Closing run %s of %s, superseded by run %s", run["run_id"], run["workflow_id"],
                               latest[run["workflow_id"]]["run_id"])
                await self.history.update_run(run["run_id"], {
                    "status": RunStatus.CONTINUED_AS_NEW,
                    "closed_at": self.clock.now().isoformat(),
                })
                continue
            latest[run["workflow_id"]] = run

        for run in latest.values():
            if run["workflow_id"] in self._active:
                continue
            if run["workflow_type"] not in self._factories:
                logger.error("Cannot resume run %s: workflow type %s not registered", run["run_id"], run["workflow_type"])
                continue
            history = await self.history.load(run["run_id"])
            self._launch(run, history)
            resumed += 1
        logger.info("Resumed %d workflow run(s)", resumed)
        return resumed

    async def shutdown(self) -> None:
        """Stop every task without closing runs; they resume on the next start."""
        tasks = [a.task for a in self._active.values() if a.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._active.clear()

    # =========================================================================
    # SIGNALS / QUERIES
    # =========================================================================

    async def signal(self, workflow_id: str, name: str, payload: Any = None) -> None:
        active = self._active.get(workflow_id)
        if active is None:
            raise WorkflowNotFoundError(workflow_id)
        if name not in active.workflow.SIGNAL_HANDLERS:
            raise WorkflowError(f"Unknown signal '{name}'", status_code=422)
        logger.info("Signal %s delivered to %s", name, workflow_id)
        await active.context.deliver_signal(name, payload)

    def query(self, workflow_id: str) -> Dict[str, Any]:
        active = self._active.get(workflow_id)
        if active is None:
            raise WorkflowNotFoundError(workflow_id)
        state = active.workflow.get_state()
        state["run_id"] = active.run["run_id"]
        return state

    def is_running(self, workflow_id: str) -> bool:
        return workflow_id in self._active

    async def describe(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        return await self.history.find_latest_run(workflow_id)

    async def wait_for_result(self, workflow_id: str) -> Any:
        """Wait until the workflow chain (following continue-as-new) closes."""
        if workflow_id not in self._active:
            run = await self.history.find_latest_run(workflow_id)
            if run is None:
                raise WorkflowNotFoundError(workflow_id)
            if run["status"] == RunStatus.FAILED:
                raise WorkflowError(run.get("error") or "workflow failed")
            return run.get("result")
        waiter = self._waiters.get(workflow_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[workflow_id] = waiter
        return await asyncio.shield(waiter)

    async def wait_idle(self, timeout: float = 10.0) -> None:
        """Yield until every active run is suspended or finished."""
        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + timeout
        settled_rounds = 0
        while settled_rounds < 3:
            await asyncio.sleep(0)
            busy = any(
                not (a.task is None or a.task.done() or a.context.is_suspended)
                for a in list(self._active.values())
            )
            settled_rounds = 0 if busy else settled_rounds + 1
            if loop.time() > give_up_at:
                raise WorkflowError("Runtime did not become idle in time")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _new_run(self, workflow_type: str, workflow_id: str, workflow_input: Dict[str, Any],
                 run_index: int, parent_run_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "run_id": uuid.uuid4().hex,
            "workflow_id": workflow_id,
            "workflow_type": workflow_type,
            "run_index": run_index,
            "status": RunStatus.RUNNING,
            "input": workflow_input,
            "result": None,
            "error": None,
            "parent_run_id": parent_run_id,
            "started_at": self.clock.now().isoformat(),
            "closed_at": None,
        }

    def _launch(self, run: Dict[str, Any], history) -> None:
        workflow = self._factories[run["workflow_type"]]()
        context = WorkflowContext(self, run, workflow, history)
        active = _ActiveRun(run=run, workflow=workflow, context=context)
        self._active[run["workflow_id"]] = active
        active.task = asyncio.create_task(self._drive(active))

    async def _drive(self, active: _ActiveRun) -> None:
        run = active.run
        workflow_id = run["workflow_id"]
        try:
            result = await active.context.run_workflow()
        except asyncio.CancelledError:
            raise
        except ContinueAsNew as e:
            # successor first; resume_all closes a predecessor a crash left running
            new_run = self._new_run(
                run["workflow_type"], workflow_id, e.new_input,
                run_index=run.get("run_index", 1) + 1, parent_run_id=run["run_id"],
            )
            await self.history.create_run(new_run)
            await self.history.update_run(run["run_id"], {
                "status": RunStatus.CONTINUED_AS_NEW,
                "closed_at": self.clock.now().isoformat(),
            })
            logger.info("Workflow %s continued as new: run %s -> %s", workflow_id, run["run_id"], new_run["run_id"])
            self._launch(new_run, [])
            return
        except Exception as e:
            logger.exception("Workflow %s run %s failed", workflow_id, run["run_id"])
            await self.history.update_run(run["run_id"], {
                "status": RunStatus.FAILED,
                "error": str(e),
                "closed_at": self.clock.now().isoformat(),
            })
            self._close(workflow_id, error=e)
            return

        await self.history.update_run(run["run_id"], {
            "status": RunStatus.COMPLETED,
            "result": result,
            "closed_at": self.clock.now().isoformat(),
        })
        logger.info("Workflow %s run %s completed", workflow_id, run["run_id"])
        self._close(workflow_id, result=result)

    def _close(self, workflow_id: str, result: Any = None, error: Optional[BaseException] = None) -> None:
        self._active.pop(workflow_id, None)
        waiter = self._waiters.pop(workflow_id, None)
        if waiter is not None and not waiter.done():
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result)
