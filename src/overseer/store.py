from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from overseer.collaborators import FileProbe
from overseer.config import PlansConfig
from overseer.errors import PlanNotFoundError
from overseer.models import (
    ApiSpec,
    ArchitectureComponent,
    ArchitectureSpec,
    FileSpec,
    Plan,
    Task,
    TaskPriority,
    is_blocked,
    new_id,
    plan_from_dict,
    plan_to_dict,
    recompute_progress,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

NAME_STOPWORDS = {"should", "must", "create", "implement", "component", "api", "endpoint"}
TASK_STATUS_BUCKETS = ("pending", "in_progress", "testing", "completed", "failed", "blocked")
PLAN_FIELDS = {item.name for item in fields(Plan)}
TASK_FIELDS = {item.name for item in fields(Task)}


@dataclass(slots=True)
class ArchitectureDiff:
    missing_components: list[ArchitectureComponent] = field(default_factory=list)
    missing_apis: list[ApiSpec] = field(default_factory=list)
    missing_files: list[FileSpec] = field(default_factory=list)
    unverified_components: list[ArchitectureComponent] = field(default_factory=list)
    untested_apis: list[ApiSpec] = field(default_factory=list)
    completion_percentage: int = 0
    summary: str = ""

    @property
    def missing_count(self) -> int:
        return len(self.missing_components) + len(self.missing_apis) + len(self.missing_files)

    @property
    def unverified_count(self) -> int:
        return len(self.unverified_components) + len(self.untested_apis)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PlanReport:
    plan: Plan
    architecture_diff: ArchitectureDiff
    tasks_by_status: dict[str, list[Task]]
    recent_errors: list[dict[str, str]]
    recommendations: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": plan_to_dict(self.plan),
            "architecture_diff": self.architecture_diff.to_dict(),
            "tasks_by_status": {
                status: [task.id for task in tasks]
                for status, tasks in self.tasks_by_status.items()
            },
            "recent_errors": list(self.recent_errors),
            "recommendations": list(self.recommendations),
        }


def component_priority(component: ArchitectureComponent) -> TaskPriority:
    if component.type in {"api", "page"}:
        return "high"
    return "medium"


def component_complexity(component: ArchitectureComponent) -> int:
    if component.type == "page":
        return 4
    if component.type in {"api", "component"}:
        return 3
    return 2


def extract_name(text: str) -> str:
    """First meaningful word of a requirement, capitalised."""
    words = [
        word
        for word in re.split(r"\s+", text.strip())
        if len(word) > 3 and word.lower() not in NAME_STOPWORDS
    ]
    if words:
        return words[0][0].upper() + words[0][1:]
    return "Feature" + str(int(time.time() * 1000))[-4:]


class PlanStore:
    """In-memory plan registry with task synthesis and architecture diffing."""

    def __init__(self, file_probe: FileProbe, config: PlansConfig | None = None) -> None:
        self.file_probe = file_probe
        self.config = config or PlansConfig()
        self._plans: dict[str, Plan] = {}

    def api_path(self, api: ApiSpec) -> str:
        return self.config.api_path_template.format(route=api.route)

    # Plans

    def create_plan(
        self,
        project_id: str,
        title: str,
        description: str = "",
        planned_architecture: ArchitectureSpec | None = None,
    ) -> Plan:
        plan = Plan(
            id=new_id("plan"),
            project_id=project_id,
            title=title,
            description=description,
            planned_architecture=planned_architecture or ArchitectureSpec(),
            max_iterations=self.config.max_iterations,
        )
        self._plans[plan.id] = plan
        logger.info("Plan created: %s (%s)", plan.id, title)
        return plan

    def get_plan(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)

    def require_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def list_plans(self, project_id: str | None = None) -> list[Plan]:
        return [
            plan
            for plan in self._plans.values()
            if project_id is None or plan.project_id == project_id
        ]

    def update_plan(self, plan_id: str, **updates: Any) -> Plan:
        plan = self.require_plan(plan_id)
        unknown = sorted(set(updates) - PLAN_FIELDS)
        if unknown:
            raise ValueError("Unknown plan fields: " + ", ".join(unknown))
        for key, value in updates.items():
            setattr(plan, key, value)
        plan.last_activity_at = utcnow_iso()
        recompute_progress(plan)
        return plan

    def delete_plan(self, plan_id: str) -> bool:
        return self._plans.pop(plan_id, None) is not None

    # Tasks

    def add_task(self, plan_id: str, title: str, **task_fields: Any) -> Task:
        plan = self.require_plan(plan_id)
        unknown = sorted(set(task_fields) - TASK_FIELDS)
        if unknown:
            raise ValueError("Unknown task fields: " + ", ".join(unknown))
        task_fields.setdefault("max_attempts", self.config.max_task_attempts)
        task = Task(id=task_fields.pop("id", None) or new_id("task"), title=title, **task_fields)
        plan.tasks.append(task)
        plan.last_activity_at = utcnow_iso()
        recompute_progress(plan)
        logger.info("Task added to %s: %s (%s)", plan_id, task.id, title)
        return task

    def add_tasks_from_architecture(self, plan_id: str) -> list[Task]:
        """Create one task per unimplemented architecture item.

        Items that already have a task for the same planned file are skipped,
        so calling this repeatedly never duplicates work.
        """
        plan = self.require_plan(plan_id)
        targeted = {path for task in plan.tasks for path in task.planned_files}
        created: list[Task] = []

        for component in plan.planned_architecture.components:
            if component.implemented or component.path in targeted:
                continue
            created.append(
                self.add_task(
                    plan_id,
                    f"Implement {component.name}",
                    description=(
                        f"Create {component.type} at {component.path}: {component.description}"
                    ),
                    type="feature",
                    priority=component_priority(component),
                    planned_files=[component.path],
                    planned_changes=[f"Create {component.type}: {component.name}"],
                    estimated_complexity=component_complexity(component),
                    tests_required=[f"{component.name}.test.tsx"],
                )
            )
            targeted.add(component.path)

        for api in plan.planned_architecture.apis:
            path = self.api_path(api)
            if api.implemented or path in targeted:
                continue
            created.append(
                self.add_task(
                    plan_id,
                    f"Implement API {api.route}",
                    description=f"Create API endpoint: {api.description}",
                    type="feature",
                    priority="high",
                    planned_files=[path],
                    planned_changes=[f"Add {method} handler" for method in api.methods],
                    estimated_complexity=4 if len(api.methods) > 2 else 3,
                    tests_required=[f"api{api.route}.test.ts"],
                )
            )
            targeted.add(path)

        for file_spec in plan.planned_architecture.files:
            if file_spec.exists or file_spec.path in targeted:
                continue
            task_type = {"test": "test", "doc": "docs"}.get(file_spec.type, "feature")
            created.append(
                self.add_task(
                    plan_id,
                    f"Create {file_spec.path}",
                    description=f"Create {file_spec.type} file",
                    type=task_type,
                    priority="high" if file_spec.type == "test" else "medium",
                    planned_files=[file_spec.path],
                    planned_changes=[f"Create {file_spec.type} file: {file_spec.path}"],
                    estimated_complexity=2,
                )
            )
            targeted.add(file_spec.path)

        logger.info("Tasks created from architecture for %s: %d", plan_id, len(created))
        return created

    # Architecture diff

    async def _probe(self, path: str) -> bool:
        try:
            return bool(await self.file_probe.exists(path))
        except OSError:
            logger.warning("File probe failed for %s", path, exc_info=True)
            return False

    async def compare_architecture(self, plan_id: str) -> ArchitectureDiff:
        plan = self.require_plan(plan_id)
        planned = plan.planned_architecture
        implemented = plan.implemented_architecture
        diff = ArchitectureDiff()
        total = 0
        present = 0

        for component in planned.components:
            total += 1
            if await self._probe(component.path):
                present += 1
                component.implemented = True
                if not any(item.path == component.path for item in implemented.components):
                    implemented.components.append(ArchitectureComponent(**asdict(component)))
                if not component.verified:
                    diff.unverified_components.append(component)
            else:
                component.implemented = False
                diff.missing_components.append(component)

        for api in planned.apis:
            total += 1
            if await self._probe(self.api_path(api)):
                present += 1
                api.implemented = True
                if not any(item.route == api.route for item in implemented.apis):
                    implemented.apis.append(ApiSpec(**asdict(api)))
                if not api.tested:
                    diff.untested_apis.append(api)
            else:
                api.implemented = False
                diff.missing_apis.append(api)

        for file_spec in planned.files:
            total += 1
            if await self._probe(file_spec.path):
                present += 1
                file_spec.exists = True
                if not any(item.path == file_spec.path for item in implemented.files):
                    implemented.files.append(FileSpec(**asdict(file_spec)))
            else:
                file_spec.exists = False
                diff.missing_files.append(file_spec)

        diff.completion_percentage = round(present / total * 100) if total else 0
        missing = diff.missing_count
        unverified = diff.unverified_count
        if missing == 0 and unverified == 0:
            diff.summary = "Architecture fully implemented and verified!"
        elif missing == 0:
            diff.summary = f"Architecture implemented. {unverified} items need verification/testing."
        else:
            diff.summary = (
                f"{missing} items missing, {unverified} unverified. "
                f"{diff.completion_percentage}% complete."
            )
        logger.info(
            "Architecture comparison for %s: %d%% complete, %d missing",
            plan_id,
            diff.completion_percentage,
            missing,
        )
        return diff

    async def generate_plan_report(self, plan_id: str) -> PlanReport:
        plan = self.require_plan(plan_id)
        diff = await self.compare_architecture(plan_id)

        tasks_by_status: dict[str, list[Task]] = {status: [] for status in TASK_STATUS_BUCKETS}
        for task in plan.tasks:
            tasks_by_status[task.status].append(task)
            if is_blocked(task):
                tasks_by_status["blocked"].append(task)

        recent_errors = [
            {"task_id": task.id, "error": error.message, "timestamp": error.timestamp}
            for task in plan.tasks
            for error in task.errors[-3:]
        ]
        recent_errors.sort(key=lambda item: item["timestamp"], reverse=True)

        recommendations: list[str] = []
        if diff.missing_components:
            recommendations.append(
                f"Complete {len(diff.missing_components)} missing components before proceeding."
            )
        if diff.untested_apis:
            recommendations.append(f"Add tests for {len(diff.untested_apis)} untested APIs.")
        if tasks_by_status["failed"]:
            recommendations.append(
                f"Review {len(tasks_by_status['failed'])} failed tasks for common error patterns."
            )
        if tasks_by_status["blocked"]:
            recommendations.append(
                f"Resolve dependencies for {len(tasks_by_status['blocked'])} blocked tasks."
            )

        return PlanReport(
            plan=plan,
            architecture_diff=diff,
            tasks_by_status=tasks_by_status,
            recent_errors=recent_errors[:10],
            recommendations=recommendations,
        )

    # Generation

    def generate_plan_from_description(
        self,
        project_id: str,
        description: str,
        requirements: list[str],
    ) -> Plan:
        architecture = ArchitectureSpec()
        for requirement in requirements:
            lowered = requirement.lower()
            if "component" in lowered or "ui" in lowered:
                name = extract_name(requirement)
                architecture.components.append(
                    ArchitectureComponent(
                        name=name,
                        type="component",
                        path=f"app/components/{name}.tsx",
                        description=requirement,
                    )
                )
            if "api" in lowered or "endpoint" in lowered:
                name = extract_name(requirement)
                architecture.apis.append(
                    ApiSpec(
                        route=f"/{name.lower()}",
                        methods=["GET", "POST"],
                        description=requirement,
                    )
                )
            if "hook" in lowered or "state" in lowered:
                name = extract_name(requirement)
                architecture.components.append(
                    ArchitectureComponent(
                        name=f"use{name}",
                        type="hook",
                        path=f"lib/hooks/use{name}.ts",
                        description=requirement,
                    )
                )

        plan = self.create_plan(
            project_id,
            f"Development Plan: {description[:50]}...",
            description,
            architecture,
        )
        self.add_tasks_from_architecture(plan.id)
        return plan

    # Persistence

    def export_plans(self) -> list[dict[str, Any]]:
        return [plan_to_dict(plan) for plan in self._plans.values()]

    def import_plans(self, payload: list[dict[str, Any]]) -> None:
        self._plans.clear()
        for item in payload:
            plan = plan_from_dict(item)
            self._plans[plan.id] = plan

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.export_plans(), indent=2) + "\n", encoding="utf-8")

    def load(self, path: Path) -> None:
        if not path.exists():
            self.import_plans([])
            return
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, list):
            raise ValueError(f"Plan state file must hold a JSON list: {path}")
        self.import_plans(payload)
