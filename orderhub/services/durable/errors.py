"""
Durable runtime exceptions.
"""

from typing import Any, Dict, Optional

from ..errors import OrderHubError


class WorkflowError(OrderHubError):
    """Base class for durable runtime errors."""
    pass


class WorkflowNotFoundError(WorkflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"No running workflow for {workflow_id}", status_code=404)


class WorkflowAlreadyRunningError(WorkflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} is already running", status_code=409)


class NonDeterminismError(WorkflowError):
    """Replayed workflow code issued a different command than the history holds."""
    def __init__(self, command_id: int, expected: str, actual: str):
        super().__init__(
            f"Command {command_id}: history has '{expected}', workflow issued '{actual}'",
            details={"command_id": command_id, "expected": expected, "actual": actual},
        )


class StepFailedError(WorkflowError):
    """
    A step exhausted its retry policy (or failed permanently).

    Raised identically on first execution and on replay, from the failure
    recorded in history.
    """
    def __init__(self, step_name: str, kind: str, error_type: str, message: str,
                 attempts: int = 1, details: Optional[Dict[str, Any]] = None):
        self.step_name = step_name
        self.kind = kind
        self.error_type = error_type
        self.attempts = attempts
        super().__init__(f"{step_name} failed ({kind}, {error_type}): {message}", details=details)
        self.error_message = message

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "StepFailedError":
        return cls(
            step_name=record["name"],
            kind=record["kind"],
            error_type=record["error_type"],
            message=record["message"],
            attempts=record.get("attempts", 1),
            details=record.get("details"),
        )


class ContinueAsNew(Exception):
    """Raised by workflow code to restart with fresh history and a new input."""
    def __init__(self, new_input: Dict[str, Any]):
        self.new_input = new_input
        super().__init__("continue as new")
