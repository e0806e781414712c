from __future__ import annotations

from typing import Any


class OverseerError(RuntimeError):
    """Base class for supervisor failures surfaced to callers."""


class PlanNotFoundError(OverseerError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan not found: {plan_id}")
        self.plan_id = plan_id


class ExecutorBusyError(OverseerError):
    """Raised when a plan is started on an executor that is already running one."""


class ExecutorStateError(OverseerError):
    """Raised when a lifecycle command does not fit the executor's current status."""


class TaskValidationError(OverseerError):
    """Raised when a task's generated output is missing planned files."""

    def __init__(self, task_id: str, missing_files: list[str]) -> None:
        super().__init__(
            f"Task {task_id} is missing planned files: " + ", ".join(missing_files)
        )
        self.task_id = task_id
        self.missing_files = list(missing_files)


class GateFailure(OverseerError):
    """A build or test gate rejected a task. Retryable."""

    def __init__(self, kind: str, message: str, *, result: Any = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.result = result


class TaskTimeoutError(OverseerError):
    """A task exceeded its wall-clock budget. Retryable."""

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Task {task_id} timed out after {timeout_seconds:.1f}s")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class RecoveryFailure(OverseerError):
    """A recovery action raised. Recorded, never re-thrown into the loop."""

    def __init__(self, action: str, message: str) -> None:
        super().__init__(f"Recovery action {action} failed: {message}")
        self.action = action


class PlanTerminalError(OverseerError):
    """The plan cannot continue."""

    MAX_ITERATIONS = "Max iterations reached"
    CONSECUTIVE_FAILURES = "Too many consecutive failures"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class BackendExecutionError(OverseerError):
    """A code-generation backend call failed."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    pass


class BackendProcessError(BackendExecutionError):
    """The backend CLI could not be started or its output could not be read."""
