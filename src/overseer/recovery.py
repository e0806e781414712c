from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from overseer.models import BuildResult, Plan, RecoveryTrigger, Task, TaskError, TestResult

if TYPE_CHECKING:
    from overseer.collaborators import CodeGenerator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecoveryStrategy:
    trigger: RecoveryTrigger
    actions: list[str]
    max_attempts: int = 3
    cooldown_seconds: float = 5.0


def default_recovery_strategies() -> list[RecoveryStrategy]:
    return [
        RecoveryStrategy(
            trigger="build_failure",
            actions=["analyze_errors", "fix_imports", "fix_types", "retry_build"],
            max_attempts=3,
            cooldown_seconds=5.0,
        ),
        RecoveryStrategy(
            trigger="test_failure",
            actions=["analyze_test_errors", "fix_assertions", "retry_tests"],
            max_attempts=3,
            cooldown_seconds=5.0,
        ),
        RecoveryStrategy(
            trigger="runtime_error",
            actions=["check_logs", "analyze_stack", "apply_fix", "restart"],
            max_attempts=3,
            cooldown_seconds=10.0,
        ),
        RecoveryStrategy(
            trigger="timeout",
            actions=["kill_process", "cleanup", "retry_task"],
            max_attempts=2,
            cooldown_seconds=15.0,
        ),
        RecoveryStrategy(
            trigger="manual",
            actions=["analyze_errors", "apply_fix"],
            max_attempts=3,
            cooldown_seconds=5.0,
        ),
        RecoveryStrategy(
            trigger="watchdog",
            actions=["check_logs", "kill_process", "cleanup"],
            max_attempts=3,
            cooldown_seconds=5.0,
        ),
        RecoveryStrategy(
            trigger="health_check",
            actions=["check_logs", "restart"],
            max_attempts=3,
            cooldown_seconds=5.0,
        ),
    ]


@dataclass(slots=True)
class RecoveryResult:
    success: bool
    details: str = ""


@dataclass(slots=True)
class RecoveryContext:
    """Everything a recovery action may read or call during one pipeline run."""

    trigger: RecoveryTrigger
    reason: str
    plan: Plan | None
    task: Task | None
    code_generator: CodeGenerator | None = None
    run_build: Callable[[], Awaitable[BuildResult]] | None = None
    run_tests: Callable[[], Awaitable[TestResult]] | None = None
    log: Callable[[str], None] = logger.info
    reset_failures: Callable[[], None] | None = None
    notes: dict[str, Any] = field(default_factory=dict)

    def recent_errors(self, limit: int = 5) -> list[TaskError]:
        if self.task is None:
            return []
        unresolved = [error for error in self.task.errors if not error.resolved]
        return unresolved[-limit:]


class RecoveryAction(Protocol):
    name: str

    async def execute(self, context: RecoveryContext) -> RecoveryResult: ...


def _format_errors(errors: list[TaskError]) -> str:
    if not errors:
        return "No recorded errors."
    return "\n".join(f"- [{error.kind}] {error.message}" for error in errors)


class AnalyzeErrorsAction:
    def __init__(self, name: str = "analyze_errors", kinds: tuple[str, ...] = ("build",)) -> None:
        self.name = name
        self.kinds = kinds

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        errors = [error for error in context.recent_errors(10) if error.kind in self.kinds]
        if not errors:
            errors = context.recent_errors()
        context.notes["analysis"] = _format_errors(errors)
        context.log(f"{self.name}: {len(errors)} error(s) considered")
        return RecoveryResult(success=True, details=context.notes["analysis"])


class CodeRepairAction:
    """Asks the code generator to repair the current task from its recent errors."""

    def __init__(self, name: str, instruction: str) -> None:
        self.name = name
        self.instruction = instruction

    def build_prompt(self, context: RecoveryContext) -> str:
        task = context.task
        lines = [self.instruction, ""]
        if task is not None:
            lines.append(f"Task: {task.title}")
            if task.description:
                lines.append(task.description)
            if task.planned_files:
                lines.append("Files: " + ", ".join(task.planned_files))
        lines.append("")
        lines.append("Recent errors:")
        lines.append(context.notes.get("analysis") or _format_errors(context.recent_errors()))
        return "\n".join(lines).strip()

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        if context.code_generator is None or context.task is None:
            context.log(f"{self.name}: skipped, no code generator or task")
            return RecoveryResult(success=True, details="skipped")
        project_id = context.plan.project_id if context.plan else ""
        response = await context.code_generator.generate(
            self.build_prompt(context), project_id=project_id
        )
        context.log(f"{self.name}: repair response received ({len(response)} chars)")
        return RecoveryResult(success=True, details=response[:500])


class RetryBuildAction:
    name = "retry_build"

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        if context.run_build is None:
            return RecoveryResult(success=True, details="skipped")
        result = await context.run_build()
        return RecoveryResult(
            success=result.success,
            details="build passed" if result.success else "; ".join(result.errors[:5]),
        )


class RetryTestsAction:
    name = "retry_tests"

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        if context.run_tests is None:
            return RecoveryResult(success=True, details="skipped")
        result = await context.run_tests()
        return RecoveryResult(
            success=result.success,
            details=f"{result.passed} passed, {result.failed} failed, {result.skipped} skipped",
        )


class CheckLogsAction:
    name = "check_logs"

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        errors = context.recent_errors()
        summary = _format_errors(errors)
        context.log(f"check_logs ({context.reason}): {len(errors)} unresolved error(s)")
        return RecoveryResult(success=True, details=summary)


class AnalyzeStackAction:
    name = "analyze_stack"

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        traces = [
            str(error.context["traceback"])
            for error in context.recent_errors()
            if error.kind == "runtime" and error.context.get("traceback")
        ]
        if traces:
            context.notes["analysis"] = traces[-1][-2000:]
        return RecoveryResult(success=True, details=f"{len(traces)} stack trace(s)")


class RestartAction:
    name = "restart"

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        if context.reset_failures is not None:
            context.reset_failures()
        context.log("restart: failure counters reset")
        return RecoveryResult(success=True, details="soft restart")


class LogOnlyAction:
    """Acknowledges an action whose effect is carried by the executor loop itself."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        self.message = message

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        context.log(f"{self.name}: {self.message}")
        return RecoveryResult(success=True, details=self.message)


def default_recovery_actions() -> dict[str, RecoveryAction]:
    actions: list[RecoveryAction] = [
        AnalyzeErrorsAction(),
        AnalyzeErrorsAction("analyze_test_errors", kinds=("test",)),
        CodeRepairAction(
            "fix_imports",
            "Fix missing or incorrect imports and module paths that break the build.",
        ),
        CodeRepairAction(
            "fix_types",
            "Fix type errors reported by the build without changing behaviour.",
        ),
        CodeRepairAction(
            "fix_assertions",
            "Fix the implementation so the failing tests pass. Do not weaken the tests.",
        ),
        CodeRepairAction(
            "apply_fix",
            "Apply a minimal fix for the runtime failure described below.",
        ),
        RetryBuildAction(),
        RetryTestsAction(),
        CheckLogsAction(),
        AnalyzeStackAction(),
        RestartAction(),
        LogOnlyAction("kill_process", "no child process is owned by the executor"),
        LogOnlyAction("cleanup", "nothing to clean up"),
        LogOnlyAction("retry_task", "task will be retried by the next iteration"),
    ]
    return {action.name: action for action in actions}
