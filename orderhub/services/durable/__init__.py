"""
Order Hub - Durable Execution

Replay-based execution for long-running case workflows:

- DurableRuntime: hosts runs, delivers signals, resumes after restart
- WorkflowContext: step / side-effect / wait commands recorded in history
- RetryPolicy: bounded exponential backoff per step
- SystemClock / VirtualClock: timer sources (virtual for tests)
- InMemoryHistoryStore / MongoHistoryStore: run + history persistence
"""

from .clock import SystemClock, VirtualClock
from .context import WorkflowContext
from .errors import (
    ContinueAsNew,
    NonDeterminismError,
    StepFailedError,
    WorkflowAlreadyRunningError,
    WorkflowError,
    WorkflowNotFoundError,
)
from .history import InMemoryHistoryStore, MongoHistoryStore, RunStatus
from .retry import NO_RETRY, STANDARD_RETRY_POLICY, SUBMISSION_RETRY_POLICY, RetryPolicy
from .runtime import DurableRuntime

__all__ = [
    'DurableRuntime',
    'WorkflowContext',
    'RetryPolicy',
    'STANDARD_RETRY_POLICY',
    'SUBMISSION_RETRY_POLICY',
    'NO_RETRY',
    'SystemClock',
    'VirtualClock',
    'InMemoryHistoryStore',
    'MongoHistoryStore',
    'RunStatus',
    'ContinueAsNew',
    'NonDeterminismError',
    'StepFailedError',
    'WorkflowAlreadyRunningError',
    'WorkflowError',
    'WorkflowNotFoundError',
]
