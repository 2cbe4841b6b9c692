"""
Workflow execution context.

Workflow code talks to the outside world only through this object:

    await ctx.execute_step(fn, *args, name=..., retry_policy=..., timeout=...)
    await ctx.side_effect(name, fn)
    await ctx.wait_condition(predicate, timeout=timedelta(...))
    ctx.now()

Every call is a numbered command. On first execution the outcome is
appended to the run history before the workflow continues; on replay the
recorded outcome is returned and nothing is executed. Signals are recorded
with the command that was current when they arrived and are re-applied at
that same command during replay.
"""

import asyncio
import copy
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..errors import classify_error
from .errors import NonDeterminismError, StepFailedError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

COMPLETION_TYPES = ("step_completed", "step_failed", "side_effect", "wait_completed")


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class WorkflowContext:
    """Replay-aware command surface for one workflow run."""

    def __init__(self, runtime, run: Dict[str, Any], workflow, history: List[Dict[str, Any]]):
        self.runtime = runtime
        self.clock = runtime.clock
        self.run = run
        self.workflow_id = run["workflow_id"]
        self.run_id = run["run_id"]
        self.workflow = workflow

        self._history_len = len(history)
        self._completions: Dict[int, Dict[str, Any]] = {}
        self._wait_starts: Dict[int, Dict[str, Any]] = {}
        self._signals: Dict[int, List[Dict[str, Any]]] = {}
        for entry in history:
            command_id = entry["command_id"]
            if entry["type"] in COMPLETION_TYPES:
                self._completions[command_id] = entry
            elif entry["type"] == "wait_started":
                self._wait_starts[command_id] = entry
            elif entry["type"] == "signal":
                self._signals.setdefault(command_id, []).append(entry)

        self._replaying = bool(history)
        self._command_counter = 0
        self._logical_now = datetime.fromisoformat(run["started_at"])
        self._pending_signals: List[Tuple[str, Any]] = []
        self._record_lock = asyncio.Lock()
        self._wake: Optional[asyncio.Future] = None

        self.is_suspended = False
        self.current_command: Optional[str] = None
        self.executed_steps = 0

    # =========================================================================
    # PUBLIC COMMANDS
    # =========================================================================

    @property
    def is_replaying(self) -> bool:
        return self._replaying

    def now(self) -> datetime:
        """Logical time: the latest timestamp this run has observed in its history."""
        return self._logical_now

    async def execute_step(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args,
        name: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        external: bool = False,
    ) -> Any:
        """
        Run a side-effecting step at least once, retrying per policy.

        Permanent errors are not retried. Transient and unclassified errors
        are retried with backoff until the policy's attempts run out. The
        final failure is recorded and raised as StepFailedError.
        """
        name = name or fn.__name__
        command_id = await self._enter_command("step", name)

        recorded = self._completions.get(command_id)
        if recorded is not None:
            self._check_replay(command_id, recorded, "step", name)
            if recorded["type"] == "step_failed":
                raise StepFailedError.from_record(recorded)
            return copy.deepcopy(recorded["result"])

        policy = retry_policy or self.runtime.default_retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.runtime.admission(external):
                    self.executed_steps += 1
                    if timeout:
                        result = await asyncio.wait_for(fn(*args), timeout)
                    else:
                        result = await fn(*args)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = classify_error(e)
                if kind != "permanent" and attempt < policy.max_attempts:
                    delay = policy.delay_for(attempt)
                    logger.warning(
                        "Step %s for %s failed (%s, attempt %d/%d), retrying in %.1fs: %s",
                        name, self.workflow_id, kind, attempt, policy.max_attempts, delay, str(e),
                    )
                    await self._suspended_sleep(delay)
                    continue

                logger.error("Step %s for %s failed (%s) after %d attempt(s): %s",
                             name, self.workflow_id, kind, attempt, str(e))
                record = await self._record({
                    "type": "step_failed",
                    "command": "step",
                    "command_id": command_id,
                    "name": name,
                    "kind": kind,
                    "error_type": type(e).__name__,
                    "message": str(e),
                    "attempts": attempt,
                    "details": _json_safe(getattr(e, "details", None) or {}),
                })
                raise StepFailedError.from_record(record)

            await self._record({
                "type": "step_completed",
                "command": "step",
                "command_id": command_id,
                "name": name,
                "result": _json_safe(result),
                "attempts": attempt,
            })
            return result

    async def side_effect(self, name: str, fn: Callable[[], Any]) -> Any:
        """Evaluate a non-deterministic value once and pin it in history."""
        command_id = await self._enter_command("side_effect", name)

        recorded = self._completions.get(command_id)
        if recorded is not None:
            self._check_replay(command_id, recorded, "side_effect", name)
            return copy.deepcopy(recorded["value"])

        value = _json_safe(fn())
        await self._record({
            "type": "side_effect",
            "command": "side_effect",
            "command_id": command_id,
            "name": name,
            "value": value,
        })
        return copy.deepcopy(value)

    async def wait_condition(
        self,
        predicate: Callable[[], bool],
        timeout: Optional[timedelta] = None,
        deadline: Optional[datetime] = None,
        name: str = "wait",
    ) -> bool:
        """
        Suspend until `predicate()` holds or the logical deadline passes.

        Returns True if the predicate was satisfied, False on timeout. With
        neither timeout nor deadline the wait has no limit.
        """
        command_id = await self._enter_command("wait", name)

        recorded = self._completions.get(command_id)
        if recorded is not None:
            self._check_replay(command_id, recorded, "wait", name)
            return not recorded["timed_out"]

        started = self._wait_starts.get(command_id)
        if started is not None:
            deadline = datetime.fromisoformat(started["deadline"]) if started.get("deadline") else None
        else:
            if deadline is None and timeout is not None:
                deadline = self.now() + timeout
            await self._record({
                "type": "wait_started",
                "command": "wait",
                "command_id": command_id,
                "name": name,
                "deadline": deadline.isoformat() if deadline else None,
            })

        satisfied = await self._await_condition(predicate, deadline)
        await self._record({
            "type": "wait_completed",
            "command": "wait",
            "command_id": command_id,
            "name": name,
            "timed_out": not satisfied,
        })
        return satisfied

    # =========================================================================
    # SIGNALS
    # =========================================================================

    async def deliver_signal(self, name: str, payload: Any) -> None:
        """Stage a signal on the workflow and record it against the current command."""
        if self._replaying:
            self._pending_signals.append((name, payload))
            return
        await self._apply_live_signal(name, payload)

    async def _apply_live_signal(self, name: str, payload: Any) -> None:
        command_id = self._command_counter
        payload = _json_safe(payload)
        self._dispatch_signal(name, payload)
        self._wake_up("signal")
        await self._record({
            "type": "signal",
            "command_id": command_id,
            "name": name,
            "payload": payload,
        })

    def _dispatch_signal(self, name: str, payload: Any) -> None:
        handler_name = self.workflow.SIGNAL_HANDLERS[name]
        getattr(self.workflow, handler_name)(copy.deepcopy(payload))

    # =========================================================================
    # DRIVER
    # =========================================================================

    async def run_workflow(self) -> Any:
        for entry in self._signals.get(0, []):
            self._observe(entry)
            self._dispatch_signal(entry["name"], entry["payload"])
        if self._replaying and not self._completions and not self._wait_starts:
            await self._go_live()
        result = await self.workflow.run(self, copy.deepcopy(self.run["input"]))
        if self._pending_signals:
            logger.warning("Workflow %s finished during replay; %d buffered signal(s) dropped",
                           self.workflow_id, len(self._pending_signals))
        return result

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _enter_command(self, command: str, name: str) -> int:
        self._command_counter += 1
        command_id = self._command_counter
        self.current_command = name

        if self._replaying:
            for entry in self._signals.get(command_id, []):
                self._observe(entry)
                self._dispatch_signal(entry["name"], entry["payload"])
            started = self._wait_starts.get(command_id)
            if started is not None:
                self._observe(started)
            if command_id not in self._completions:
                await self._go_live()
        return command_id

    async def _go_live(self) -> None:
        self._replaying = False
        pending, self._pending_signals = self._pending_signals, []
        for name, payload in pending:
            await self._apply_live_signal(name, payload)

    def _check_replay(self, command_id: int, recorded: Dict[str, Any], command: str, name: str) -> None:
        if recorded.get("command") != command or recorded.get("name") != name:
            raise NonDeterminismError(
                command_id,
                f"{recorded.get('command')}:{recorded.get('name')}",
                f"{command}:{name}",
            )
        self._observe(recorded)

    def _observe(self, entry: Dict[str, Any]) -> None:
        self._observe_time(datetime.fromisoformat(entry["timestamp"]))

    def _observe_time(self, moment: datetime) -> None:
        if moment > self._logical_now:
            self._logical_now = moment

    async def _record(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        async with self._record_lock:
            moment = self.clock.now()
            entry = dict(entry, seq=self._history_len + 1, timestamp=moment.isoformat())
            await self.runtime.history.append(self.run_id, entry)
            self._history_len += 1
        self._observe_time(moment)
        return entry

    def _wake_up(self, reason: str) -> None:
        if self._wake is not None and not self._wake.done():
            self._wake.set_result(reason)
            self.is_suspended = False

    async def _suspended_sleep(self, seconds: float) -> None:
        self.is_suspended = True
        try:
            await self.clock.sleep(seconds)
        finally:
            self.is_suspended = False

    async def _await_condition(self, predicate: Callable[[], bool], deadline: Optional[datetime]) -> bool:
        if predicate():
            return True
        if deadline is not None and deadline <= self.clock.now():
            return False

        loop = asyncio.get_running_loop()
        timer = None
        expired = []

        def on_deadline():
            expired.append(True)
            self._wake_up("timeout")

        try:
            while True:
                self._wake = loop.create_future()
                self.is_suspended = True
                if timer is None and deadline is not None:
                    timer = self.clock.call_at(deadline, on_deadline)
                await self._wake
                if predicate():
                    return True
                if expired:
                    return False
        finally:
            self.is_suspended = False
            self._wake = None
            if timer is not None:
                timer.cancel()
