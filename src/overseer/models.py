from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

PlanStatus = Literal["draft", "active", "paused", "completed", "failed"]
TaskStatus = Literal["pending", "in_progress", "testing", "completed", "failed"]
TaskType = Literal["feature", "bugfix", "refactor", "test", "docs"]
TaskPriority = Literal["critical", "high", "medium", "low"]
ErrorKind = Literal["build", "test", "runtime", "validation", "timeout"]
IterationStatus = Literal["running", "success", "failed", "partial"]
ComponentType = Literal["component", "hook", "utility", "api", "page"]
FileType = Literal["component", "api", "lib", "config", "test", "doc"]
RecoveryTrigger = Literal[
    "build_failure",
    "test_failure",
    "runtime_error",
    "timeout",
    "manual",
    "health_check",
    "watchdog",
]

TERMINAL_PLAN_STATUSES = {"completed", "failed"}


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class TaskError:
    task_id: str
    kind: ErrorKind
    message: str
    id: str = field(default_factory=lambda: new_id("err"))
    timestamp: str = field(default_factory=utcnow_iso)
    context: dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolution: str | None = None


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    type: TaskType = "feature"
    status: TaskStatus = "pending"
    priority: TaskPriority = "medium"
    planned_files: list[str] = field(default_factory=list)
    planned_changes: list[str] = field(default_factory=list)
    estimated_complexity: int = 2
    implemented_files: list[str] = field(default_factory=list)
    tests_required: list[str] = field(default_factory=list)
    attempts: int = 0
    max_attempts: int = 3
    errors: list[TaskError] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def retries_left(self) -> bool:
        return self.attempts < self.max_attempts


@dataclass(slots=True)
class ArchitectureComponent:
    name: str
    type: ComponentType
    path: str
    description: str = ""
    implemented: bool = False
    verified: bool = False


@dataclass(slots=True)
class ApiSpec:
    route: str
    methods: list[str] = field(default_factory=lambda: ["GET"])
    description: str = ""
    implemented: bool = False
    tested: bool = False


@dataclass(slots=True)
class FileSpec:
    path: str
    type: FileType = "lib"
    exists: bool = False
    content: str | None = None


@dataclass(slots=True)
class ArchitectureSpec:
    components: list[ArchitectureComponent] = field(default_factory=list)
    apis: list[ApiSpec] = field(default_factory=list)
    files: list[FileSpec] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchitectureSpec:
        return cls(
            components=[ArchitectureComponent(**item) for item in data.get("components", [])],
            apis=[ApiSpec(**item) for item in data.get("apis", [])],
            files=[FileSpec(**item) for item in data.get("files", [])],
            dependencies=list(data.get("dependencies", [])),
        )


@dataclass(slots=True)
class BuildResult:
    success: bool
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class TestResult:
    __test__ = False  # keep pytest from collecting this dataclass

    success: bool
    duration_ms: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class RecoveryAttempt:
    trigger: RecoveryTrigger
    action: str
    result: Literal["success", "failed", "pending"] = "pending"
    details: str | None = None
    id: str = field(default_factory=lambda: new_id("recovery"))
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Iteration:
    number: int
    status: IterationStatus = "running"
    tasks_attempted: list[str] = field(default_factory=list)
    tasks_completed: list[str] = field(default_factory=list)
    tasks_failed: list[str] = field(default_factory=list)
    build_result: BuildResult | None = None
    test_result: TestResult | None = None
    errors: list[TaskError] = field(default_factory=list)
    recovery_actions: list[RecoveryAttempt] = field(default_factory=list)
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None


@dataclass(slots=True)
class Progress:
    total: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0


@dataclass(slots=True)
class Plan:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: PlanStatus = "draft"
    tasks: list[Task] = field(default_factory=list)
    current_task_id: str | None = None
    planned_architecture: ArchitectureSpec = field(default_factory=ArchitectureSpec)
    implemented_architecture: ArchitectureSpec = field(default_factory=ArchitectureSpec)
    progress: Progress = field(default_factory=Progress)
    iterations: list[Iteration] = field(default_factory=list)
    current_iteration: int = 0
    max_iterations: int = 50
    failure_reason: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    last_activity_at: str = field(default_factory=utcnow_iso)

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @property
    def last_iteration(self) -> Iteration | None:
        return self.iterations[-1] if self.iterations else None


def is_blocked(task: Task) -> bool:
    return task.status == "pending" and bool(task.blocked_by)


def recompute_progress(plan: Plan) -> Progress:
    """Rebuild progress counters from task state.

    ``blocked`` counts pending tasks whose ``blocked_by`` is non-empty. That list is
    only refreshed when the scheduler evaluates a task, so the count can lag
    behind dependency changes for tasks the scheduler has not looked at yet.
    """
    plan.progress = Progress(
        total=len(plan.tasks),
        completed=sum(1 for task in plan.tasks if task.status == "completed"),
        failed=sum(1 for task in plan.tasks if task.status == "failed"),
        blocked=sum(1 for task in plan.tasks if is_blocked(task)),
    )
    return plan.progress


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    return asdict(plan)


def _task_error_from_dict(data: dict[str, Any]) -> TaskError:
    return TaskError(**data)


def _task_from_dict(data: dict[str, Any]) -> Task:
    payload = dict(data)
    payload["errors"] = [_task_error_from_dict(item) for item in payload.get("errors", [])]
    return Task(**payload)


def _iteration_from_dict(data: dict[str, Any]) -> Iteration:
    payload = dict(data)
    build_result = payload.get("build_result")
    test_result = payload.get("test_result")
    payload["build_result"] = BuildResult(**build_result) if build_result else None
    payload["test_result"] = TestResult(**test_result) if test_result else None
    payload["errors"] = [_task_error_from_dict(item) for item in payload.get("errors", [])]
    payload["recovery_actions"] = [
        RecoveryAttempt(**item) for item in payload.get("recovery_actions", [])
    ]
    return Iteration(**payload)


def plan_from_dict(data: dict[str, Any]) -> Plan:
    payload = dict(data)
    payload["tasks"] = [_task_from_dict(item) for item in payload.get("tasks", [])]
    payload["planned_architecture"] = ArchitectureSpec.from_dict(
        payload.get("planned_architecture") or {}
    )
    payload["implemented_architecture"] = ArchitectureSpec.from_dict(
        payload.get("implemented_architecture") or {}
    )
    payload["progress"] = Progress(**(payload.get("progress") or {}))
    payload["iterations"] = [_iteration_from_dict(item) for item in payload.get("iterations", [])]
    return Plan(**payload)
