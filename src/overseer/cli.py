from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import click

from overseer import __version__
from overseer.backends import CommandBackend, GenerationAttempt, ResilientBackend, RetryPolicy
from overseer.collaborators import (
    BackendCodeGenerator,
    CommandBuildRunner,
    CommandTestRunner,
    WorkspaceFileProbe,
)
from overseer.config import OverseerConfig, load_config, save_config
from overseer.errors import OverseerError
from overseer.executor import Executor
from overseer.health import HealthMonitor, default_triggers, wait_until_settled
from overseer.models import ArchitectureSpec, Plan, plan_to_dict
from overseer.store import PlanStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: OverseerConfig
    workspace: Path
    state_path: Path
    store: PlanStore

    def save(self) -> None:
        self.store.save(self.state_path)


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _log_generation_attempt(attempt: GenerationAttempt) -> None:
    if attempt.succeeded:
        logger.info(
            "Code generation via %s succeeded on try %d (%.1fs)",
            attempt.backend,
            attempt.attempt + 1,
            attempt.duration_seconds,
        )
    else:
        logger.warning("Code generation via %s failed: %s", attempt.backend, attempt.error)


def _build_backend(config: OverseerConfig, workspace: Path) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    names = [config.backend.primary, config.backend.fallback]
    return ResilientBackend(
        [(name, CommandBackend.preset(name, workspace)) for name in names],
        retry_policy=policy,
        on_attempt=_log_generation_attempt,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    workspace = _resolve_path(repo_root, config.project.workspace)
    state_path = _resolve_path(repo_root, config.plans.state_file)
    store = PlanStore(WorkspaceFileProbe(workspace), config.plans)
    try:
        store.load(state_path)
    except (ValueError, TypeError, KeyError) as exc:
        raise click.ClickException(f"Could not read plan state {state_path}: {exc}") from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        workspace=workspace,
        state_path=state_path,
        store=store,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_path(repo_root, config_value))


def _build_executor(runtime: Runtime) -> Executor:
    config = runtime.config
    return Executor(
        code_generator=BackendCodeGenerator(_build_backend(config, runtime.workspace)),
        build_runner=CommandBuildRunner(config.project.build_command, runtime.workspace),
        test_runner=CommandTestRunner(config.project.test_command, runtime.workspace),
        file_probe=runtime.store.file_probe,
        config=config.agent,
    )


def _require_plan(runtime: Runtime, plan_id: str) -> Plan:
    try:
        return runtime.store.require_plan(plan_id)
    except OverseerError as exc:
        raise click.ClickException(str(exc)) from exc


def _plan_summary(plan: Plan) -> dict[str, Any]:
    return {
        "id": plan.id,
        "project_id": plan.project_id,
        "title": plan.title,
        "status": plan.status,
        "progress": asdict(plan.progress),
        "current_iteration": plan.current_iteration,
        "max_iterations": plan.max_iterations,
        "failure_reason": plan.failure_reason,
    }


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


async def _run_plan(runtime: Runtime, plan: Plan, *, monitor_enabled: bool) -> None:
    executor = _build_executor(runtime)
    monitor = HealthMonitor(executor, runtime.config.monitor) if monitor_enabled else None
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, executor.stop)
    if monitor is not None:
        monitor.start()
    try:
        await executor.start_plan(plan)
        await wait_until_settled(executor, monitor)
    finally:
        if monitor is not None:
            monitor.stop()
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)


@click.group()
@click.version_option(__version__, prog_name="overseer")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Overseer CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--project", "project_name", default=None)
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def init_command(backend: str | None, project_name: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    if project_name:
        config.project.name = project_name
    save_config(config_path, config)

    state_path = _resolve_path(repo_root, config.plans.state_file)
    if not state_path.exists():
        PlanStore(WorkspaceFileProbe(repo_root), config.plans).save(state_path)

    click.echo(f"Initialized Overseer in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Plan state: {state_path}")


@cli.group("plan")
def plan_group() -> None:
    """Create, inspect and report on plans."""


@plan_group.command("create")
@click.argument("title")
@click.option("--project", "project_id", default=None)
@click.option("--description", default="")
@click.option(
    "--architecture",
    "architecture_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file with components, apis, files and dependencies.",
)
@click.option("--tasks/--no-tasks", "with_tasks", default=True, show_default=True)
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def plan_create_command(
    title: str,
    project_id: str | None,
    description: str,
    architecture_path: Path | None,
    with_tasks: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    architecture = ArchitectureSpec()
    if architecture_path is not None:
        try:
            architecture = ArchitectureSpec.from_dict(
                json.loads(architecture_path.read_text(encoding="utf-8"))
            )
        except (ValueError, TypeError) as exc:
            raise click.ClickException(f"Invalid architecture file: {exc}") from exc
    plan = runtime.store.create_plan(
        project_id or runtime.config.project.name, title, description, architecture
    )
    if with_tasks:
        runtime.store.add_tasks_from_architecture(plan.id)
    runtime.save()
    click.echo(f"Plan created: {plan.id}")
    click.echo(f"Tasks: {plan.progress.total}")


@plan_group.command("generate")
@click.argument("description")
@click.option("--requirement", "-r", "requirements", multiple=True)
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def plan_generate_command(
    description: str, requirements: tuple[str, ...], project_id: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    plan = runtime.store.generate_plan_from_description(
        project_id or runtime.config.project.name, description, list(requirements)
    )
    runtime.save()
    click.echo(f"Plan created: {plan.id}")
    click.echo(f"Tasks: {plan.progress.total}")


@plan_group.command("list")
@click.option("--project", "project_id", default=None)
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def plan_list_command(project_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json([_plan_summary(plan) for plan in runtime.store.list_plans(project_id)])


@plan_group.command("show")
@click.argument("plan_id")
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def plan_show_command(plan_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(plan_to_dict(_require_plan(runtime, plan_id)))


@plan_group.command("tasks-from-architecture")
@click.argument("plan_id")
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def plan_tasks_command(plan_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _require_plan(runtime, plan_id)
    created = runtime.store.add_tasks_from_architecture(plan_id)
    runtime.save()
    click.echo(f"Tasks created: {len(created)}")


@plan_group.command("compare")
@click.argument("plan_id")
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def plan_compare_command(plan_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _require_plan(runtime, plan_id)
    diff = asyncio.run(runtime.store.compare_architecture(plan_id))
    runtime.save()
    _echo_json(diff.to_dict())


@plan_group.command("report")
@click.argument("plan_id")
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def plan_report_command(plan_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _require_plan(runtime, plan_id)
    report = asyncio.run(runtime.store.generate_plan_report(plan_id))
    runtime.save()
    payload = report.to_dict()
    payload["plan"] = _plan_summary(report.plan)
    _echo_json(payload)


@cli.command("run")
@click.argument("plan_id")
@click.option("--monitor/--no-monitor", "monitor_enabled", default=True, show_default=True)
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def run_command(plan_id: str, monitor_enabled: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    plan = _require_plan(runtime, plan_id)
    try:
        asyncio.run(_run_plan(runtime, plan, monitor_enabled=monitor_enabled))
    except OverseerError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.save()

    click.echo(f"Plan {plan.id}: {plan.status}")
    click.echo(f"Tasks: {plan.progress.completed}/{plan.progress.total} completed")
    click.echo(f"Iterations: {plan.current_iteration}")
    if plan.status == "failed":
        raise click.ClickException(f"Plan failed: {plan.failure_reason}")


@cli.command("status")
@click.argument("plan_id", required=False)
@click.option("--config", "config_value", default="overseer.toml", show_default=True)
def status_command(plan_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if plan_id is None:
        _echo_json({"plans": [_plan_summary(plan) for plan in runtime.store.list_plans()]})
        return
    plan = _require_plan(runtime, plan_id)
    payload = _plan_summary(plan)
    payload["tasks"] = [
        {"id": task.id, "title": task.title, "status": task.status, "attempts": task.attempts}
        for task in plan.tasks
    ]
    last = plan.last_iteration
    payload["last_iteration"] = asdict(last) if last is not None else None
    _echo_json(payload)


@cli.command("triggers")
def triggers_command() -> None:
    """Show the remediation triggers the health monitor registers for a run."""
    _echo_json([asdict(spec) for spec in default_triggers()])
