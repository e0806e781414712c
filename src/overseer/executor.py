from __future__ import annotations

import asyncio
import copy
import logging
import time
import traceback
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from overseer.collaborators import BuildRunner, CodeGenerator, FileProbe, TestRunner
from overseer.config import AgentConfig
from overseer.errors import (
    ExecutorBusyError,
    ExecutorStateError,
    GateFailure,
    PlanTerminalError,
    RecoveryFailure,
    TaskTimeoutError,
    TaskValidationError,
)
from overseer.events import AgentEvent, EventBus, EventListener, EventType
from overseer.models import (
    TERMINAL_PLAN_STATUSES,
    BuildResult,
    ErrorKind,
    Iteration,
    Plan,
    RecoveryAttempt,
    RecoveryTrigger,
    Task,
    TaskError,
    TestResult,
    new_id,
    recompute_progress,
    utcnow_iso,
)
from overseer.recovery import RecoveryAction, RecoveryContext, default_recovery_actions
from overseer.scheduling import select_next_task
from overseer.timers import PeriodicTask

logger = logging.getLogger(__name__)

AgentStatus = Literal[
    "idle",
    "planning",
    "developing",
    "testing",
    "recovering",
    "paused",
    "completed",
    "failed",
]
ActivityType = Literal["info", "action", "error", "recovery", "milestone"]
CONSECUTIVE_FAILURE_LIMIT = 3

_LOG_LEVELS = {"error": logging.ERROR, "recovery": logging.WARNING}


@dataclass(slots=True)
class ActivityLogEntry:
    type: ActivityType
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("log"))
    timestamp: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class AgentState:
    config: AgentConfig
    status: AgentStatus = "idle"
    current_plan: Plan | None = None
    current_task: Task | None = None
    is_healthy: bool = True
    consecutive_failures: int = 0
    last_health_check: str = field(default_factory=utcnow_iso)
    last_activity: str = field(default_factory=utcnow_iso)
    last_activity_at: float = 0.0
    activity_log: list[ActivityLogEntry] = field(default_factory=list)


def build_task_prompt(task: Task, plan: Plan) -> str:
    planned_files = "\n".join(f"- {path}" for path in task.planned_files) or "None"
    planned_changes = "\n".join(f"- {change}" for change in task.planned_changes) or "None"
    previous_errors = (
        "\n".join(f"- [{error.kind}] {error.message}" for error in task.errors) or "None"
    )
    return (
        "## Current Development Plan\n"
        f"Title: {plan.title}\n"
        f"Progress: {plan.progress.completed}/{plan.progress.total} tasks completed\n\n"
        "## Current Task\n"
        f"ID: {task.id}\n"
        f"Title: {task.title}\n"
        f"Description: {task.description}\n"
        f"Type: {task.type}\n"
        f"Priority: {task.priority}\n\n"
        f"## Planned Files\n{planned_files}\n\n"
        f"## Planned Changes\n{planned_changes}\n\n"
        f"## Previous Errors\n{previous_errors}\n\n"
        "## Instructions\n"
        "1. Implement the changes described above.\n"
        "2. Follow the existing code patterns and conventions.\n"
        "3. Make sure every planned file exists when you are done.\n"
        "4. Add tests where the task requires them.\n"
    )


class Executor:
    """Runs one plan at a time through the execute, validate, recover loop."""

    def __init__(
        self,
        *,
        code_generator: CodeGenerator,
        build_runner: BuildRunner,
        test_runner: TestRunner,
        file_probe: FileProbe,
        config: AgentConfig | None = None,
        recovery_actions: dict[str, RecoveryAction] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.code_generator = code_generator
        self.build_runner = build_runner
        self.test_runner = test_runner
        self.file_probe = file_probe
        self.config = config or AgentConfig()
        self.recovery_actions = (
            recovery_actions if recovery_actions is not None else default_recovery_actions()
        )
        self.clock = clock
        self.state = AgentState(config=self.config, last_activity_at=clock())
        self._events = EventBus()
        self._running = False
        self._generation = 0
        self._loop_lock = asyncio.Lock()
        self._watchdog: PeriodicTask | None = None
        self._health_timer: PeriodicTask | None = None
        self._background: asyncio.Task[None] | None = None
        self._restart_pending = False
        self._recovery_counts: dict[tuple[str, str], int] = {}
        self._log("info", "Executor initialized")

    # Public API

    @property
    def running(self) -> bool:
        return self._running

    async def start_plan(self, plan: Plan) -> None:
        if self._running:
            raise ExecutorBusyError("Executor is already running a plan")
        if plan.status in TERMINAL_PLAN_STATUSES:
            raise ExecutorStateError(f"Plan {plan.id} is already {plan.status}")

        self.state.current_plan = plan
        self.state.status = "planning"
        self._running = True
        plan.status = "active"
        plan.started_at = plan.started_at or utcnow_iso()

        self._emit("plan_started", plan_id=plan.id)
        self._log("milestone", f"Started plan: {plan.title}")
        self._start_timers()
        await self._run_loop()

    def pause(self) -> None:
        if not self._running:
            return
        self._running = False
        self._clear_timers()
        self.state.status = "paused"
        if self.state.current_plan is not None:
            self.state.current_plan.status = "paused"
        self._emit("agent_paused")
        self._log("info", "Executor paused")

    async def resume(self) -> None:
        if self.state.status != "paused":
            raise ExecutorStateError("Executor is not paused")
        self._running = True
        self.state.status = "developing"
        self._emit("agent_resumed")
        self._log("info", "Executor resumed")
        self._start_timers()
        await self._run_loop()

    def stop(self) -> None:
        self._running = False
        self._clear_timers()
        self._cancel_pending_restart()
        plan = self.state.current_plan
        if plan is not None and plan.status == "active":
            plan.status = "paused"
        self.state.status = "idle"
        self._emit("agent_stopped")
        self._log("info", "Executor stopped")

    async def restart(self, delay_seconds: float = 2.0) -> None:
        """Stop now and continue the attached plan in the background after a delay.

        The background task exists as soon as this returns, so ``join`` covers the
        delay as well as the resumed loop. A ``stop`` issued during the delay
        cancels the pending resume.
        """
        self._log("recovery", f"Restarting executor in {delay_seconds:.1f}s")
        self.stop()
        self._restart_pending = True
        self._background = asyncio.get_running_loop().create_task(
            self._resume_after(delay_seconds), name="overseer-executor-restart"
        )

    async def join(self) -> None:
        """Wait until no restart is pending and no restarted loop is running."""
        while self._background is not None and not self._background.done():
            await asyncio.wait({self._background})
        background = self._background
        if background is not None and not background.cancelled():
            background.result()

    @property
    def busy(self) -> bool:
        """A restart is waiting out its delay or a restarted loop is still running."""
        return self._background is not None and not self._background.done()

    async def trigger_recovery(self, reason: str, kind: RecoveryTrigger = "manual") -> bool:
        self._log("recovery", f"Manual recovery triggered: {reason}")
        return await self._recover(kind, reason, manual=True)

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        return self._events.subscribe(listener)

    def get_state(self) -> AgentState:
        return copy.deepcopy(self.state)

    # Loop

    async def _resume_after(self, delay_seconds: float) -> None:
        try:
            await asyncio.sleep(delay_seconds)
        finally:
            self._restart_pending = False
        plan = self.state.current_plan
        if plan is None or plan.status in TERMINAL_PLAN_STATUSES or self._running:
            return
        self._running = True
        self.state.status = "developing"
        self._emit("agent_resumed", restarted=True)
        self._start_timers()
        await self._run_loop()

    def _cancel_pending_restart(self) -> None:
        if self._restart_pending and self._background is not None:
            self._background.cancel()
        self._restart_pending = False

    def _is_current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    async def _run_loop(self) -> None:
        self._generation += 1
        generation = self._generation
        async with self._loop_lock:
            if not self._is_current(generation):
                return
            await self._execution_loop(generation)

    async def _execution_loop(self, generation: int) -> None:
        plan = self.state.current_plan
        if plan is None:
            return
        plan.status = "active"

        while self._is_current(generation) and plan.current_iteration < plan.max_iterations:
            task = select_next_task(plan, allow_retry=self.config.auto_recovery)
            recompute_progress(plan)
            if task is None:
                self._complete_plan(plan)
                return

            iteration = self._start_iteration(plan)
            try:
                await self._run_iteration(plan, task, iteration)
            except GateFailure as failure:
                await self._handle_gate_failure(task, failure, iteration)
            except Exception as exc:
                try:
                    await self._handle_loop_exception(plan, task, iteration, exc)
                except PlanTerminalError as terminal:
                    self._finish_iteration(plan, iteration)
                    self._fail_plan(plan, terminal.reason)
                    return
            self._finish_iteration(plan, iteration)

            if self._is_current(generation) and self.config.iteration_delay_seconds > 0:
                await asyncio.sleep(self.config.iteration_delay_seconds)

        if not self._is_current(generation) or plan.status in TERMINAL_PLAN_STATUSES:
            return
        # Out of iterations: fail only if a task is still eligible.
        if select_next_task(plan, allow_retry=self.config.auto_recovery) is None:
            self._complete_plan(plan)
        else:
            self._fail_plan(plan, PlanTerminalError.MAX_ITERATIONS)

    def _start_iteration(self, plan: Plan) -> Iteration:
        plan.current_iteration += 1
        iteration = Iteration(number=plan.current_iteration)
        plan.iterations.append(iteration)
        plan.last_activity_at = utcnow_iso()
        self._emit("iteration_started", plan_id=plan.id, iteration=iteration.number)
        return iteration

    def _finish_iteration(self, plan: Plan, iteration: Iteration) -> None:
        iteration.completed_at = utcnow_iso()
        recompute_progress(plan)
        self._emit(
            "iteration_completed",
            plan_id=plan.id,
            iteration=iteration.number,
            status=iteration.status,
        )

    async def _run_iteration(self, plan: Plan, task: Task, iteration: Iteration) -> None:
        iteration.tasks_attempted.append(task.id)
        self.state.current_task = task
        plan.current_task_id = task.id
        self._set_status("developing")

        await self._execute_task(task, plan)
        task.status = "testing"

        if self.config.test_before_commit:
            self._set_status("testing")
            test_result = await self._run_tests()
            iteration.test_result = test_result
            if not test_result.success:
                raise GateFailure(
                    "test", f"Tests failed: {test_result.failed} failures", result=test_result
                )

        if self.config.build_before_commit:
            self._set_status("testing")
            build_result = await self._run_build()
            iteration.build_result = build_result
            if not build_result.success:
                raise GateFailure(
                    "build",
                    "Build failed: " + ", ".join(build_result.errors),
                    result=build_result,
                )

        self._complete_task(task, iteration)
        self.state.consecutive_failures = 0
        self._set_status("developing")
        iteration.status = "success"

    async def _execute_task(self, task: Task, plan: Plan) -> None:
        task.status = "in_progress"
        task.attempts += 1
        task.started_at = task.started_at or utcnow_iso()
        self._emit("task_started", task_id=task.id, attempt=task.attempts)
        self._log("action", f"Executing task: {task.title}", task_id=task.id)

        timeout = self.config.task_timeout_seconds
        try:
            await asyncio.wait_for(self._perform_task(task, plan), timeout=timeout)
        except TimeoutError as exc:
            raise TaskTimeoutError(task.id, timeout) from exc

    async def _perform_task(self, task: Task, plan: Plan) -> None:
        prompt = build_task_prompt(task, plan)
        await self.code_generator.generate(prompt, project_id=plan.project_id)

        missing: list[str] = []
        for path in task.planned_files:
            if await self.file_probe.exists(path):
                if path not in task.implemented_files:
                    task.implemented_files.append(path)
            else:
                missing.append(path)
        if missing and self.config.require_planned_files:
            raise TaskValidationError(task.id, missing)
        self._log("info", f"Validated implementation for task: {task.title}", task_id=task.id)

    # Gates

    async def _run_build(self) -> BuildResult:
        self._emit("build_started")
        self._log("action", "Running build...")
        try:
            result = await self.build_runner.run()
        except Exception as exc:
            logger.warning("Build runner raised", exc_info=True)
            result = BuildResult(success=False, errors=[str(exc) or type(exc).__name__])
        self._emit(
            "build_completed",
            success=result.success,
            duration_ms=result.duration_ms,
            errors=list(result.errors),
        )
        self._log(
            "info" if result.success else "error",
            f"Build {'succeeded' if result.success else 'failed'} in {result.duration_ms}ms",
        )
        return result

    async def _run_tests(self) -> TestResult:
        self._emit("test_started")
        self._log("action", "Running tests...")
        try:
            result = await self.test_runner.run()
        except Exception as exc:
            logger.warning("Test runner raised", exc_info=True)
            result = TestResult(success=False, errors=[str(exc) or type(exc).__name__])
        self._emit(
            "test_completed",
            success=result.success,
            passed=result.passed,
            failed=result.failed,
            skipped=result.skipped,
        )
        self._log(
            "info" if result.success else "error",
            f"Tests {'passed' if result.success else 'failed'}: "
            f"{result.passed} passed, {result.failed} failed",
        )
        return result

    # Failure handling

    async def _handle_gate_failure(
        self, task: Task, failure: GateFailure, iteration: Iteration
    ) -> None:
        kind: ErrorKind = "test" if failure.kind == "test" else "build"
        result_errors = list(getattr(failure.result, "errors", []) or [])
        error = TaskError(
            task_id=task.id,
            kind=kind,
            message=str(failure),
            context={"errors": result_errors},
        )
        task.errors.append(error)
        iteration.errors.append(error)
        iteration.tasks_failed.append(task.id)
        self._log("error", f"{kind.capitalize()} failure on task {task.id}: {error.message}")

        if self.config.auto_recovery and task.retries_left:
            task.status = "pending"
            iteration.status = "partial"
            trigger: RecoveryTrigger = "test_failure" if kind == "test" else "build_failure"
            await self._recover(trigger, error.message)
        else:
            iteration.status = "failed"
            self._fail_task(task, error)

    async def _handle_loop_exception(
        self, plan: Plan, task: Task, iteration: Iteration, exc: Exception
    ) -> None:
        self.state.consecutive_failures += 1
        kind: ErrorKind = "runtime"
        if isinstance(exc, TaskTimeoutError):
            kind = "timeout"
        elif isinstance(exc, TaskValidationError):
            kind = "validation"

        error = TaskError(
            task_id=task.id,
            kind=kind,
            message=str(exc) or type(exc).__name__,
            context={
                "exception": type(exc).__name__,
                "traceback": "".join(traceback.format_exception(exc)),
            },
        )
        task.errors.append(error)
        iteration.errors.append(error)
        iteration.tasks_failed.append(task.id)
        iteration.status = "failed"
        self._log(
            "error",
            f"Iteration {iteration.number} error: {error.message}",
            task_id=task.id,
            kind=kind,
        )

        if self.config.auto_recovery and task.retries_left:
            task.status = "pending"
        else:
            self._fail_task(task, error)
        recompute_progress(plan)

        if self.config.auto_recovery:
            await self._recover("timeout" if kind == "timeout" else "runtime_error", error.message)

        if self.state.consecutive_failures >= CONSECUTIVE_FAILURE_LIMIT:
            raise PlanTerminalError(PlanTerminalError.CONSECUTIVE_FAILURES) from exc

    # Recovery

    async def _recover(self, trigger: RecoveryTrigger, reason: str, *, manual: bool = False) -> bool:
        strategy = self.config.strategy_for(trigger)
        task = self.state.current_task
        if strategy is not None and task is not None and not manual:
            key = (task.id, trigger)
            if self._recovery_counts.get(key, 0) >= strategy.max_attempts:
                self._log("recovery", f"Recovery limit reached for {trigger} on task {task.id}")
                return False
            self._recovery_counts[key] = self._recovery_counts.get(key, 0) + 1

        previous_status = self.state.status
        self.state.status = "recovering"
        self._emit("recovery_triggered", trigger=trigger, reason=reason)
        self._log("recovery", f"Recovery triggered: {trigger}")

        if strategy is None:
            self._log("error", f"No recovery strategy for trigger: {trigger}")
            self._emit("recovery_completed", trigger=trigger, success=False)
            self._restore_status(previous_status)
            return False

        plan = self.state.current_plan
        attempt = RecoveryAttempt(trigger=trigger, action=" -> ".join(strategy.actions))
        context = RecoveryContext(
            trigger=trigger,
            reason=reason,
            plan=plan,
            task=task,
            code_generator=self.code_generator,
            run_build=self._run_build,
            run_tests=self._run_tests,
            log=lambda message: self._log("info", message),
            reset_failures=self._reset_failures,
        )
        success = False
        try:
            for index, name in enumerate(strategy.actions):
                if index and strategy.cooldown_seconds > 0:
                    await asyncio.sleep(strategy.cooldown_seconds)
                await self._run_recovery_action(name, context)
        except RecoveryFailure as failure:
            attempt.result = "failed"
            attempt.details = str(failure)
            self._log("error", f"Recovery failed: {failure}")
        else:
            success = True
            attempt.result = "success"
            self.state.consecutive_failures = 0
            self._log("recovery", "Recovery successful")

        if plan is not None and plan.last_iteration is not None:
            plan.last_iteration.recovery_actions.append(attempt)
        self._emit("recovery_completed", trigger=trigger, success=success)
        self._restore_status(previous_status)
        return success

    async def _run_recovery_action(self, name: str, context: RecoveryContext) -> None:
        action = self.recovery_actions.get(name)
        if action is None:
            self._log("info", f"Unknown recovery action: {name}")
            return
        self._log("action", f"Executing recovery action: {name}")
        try:
            result = await action.execute(context)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise RecoveryFailure(name, str(exc) or type(exc).__name__) from exc
        if not result.success:
            self._log("info", f"Recovery action {name} reported no fix: {result.details}")

    def _set_status(self, status: AgentStatus) -> None:
        # A pause or stop issued mid-iteration wins over in-flight progress.
        if self._running:
            self.state.status = status

    def _restore_status(self, previous_status: AgentStatus) -> None:
        if self.state.status == "recovering":
            self.state.status = previous_status

    def _reset_failures(self) -> None:
        self.state.consecutive_failures = 0

    # Timers

    def _start_timers(self) -> None:
        self._clear_timers()
        self._watchdog = PeriodicTask(
            "overseer-watchdog", self.config.watchdog_interval_seconds, self._watchdog_tick
        )
        self._health_timer = PeriodicTask(
            "overseer-health", self.config.health_check_interval_seconds, self._health_tick
        )
        self._watchdog.start()
        self._health_timer.start()

    def _clear_timers(self) -> None:
        for timer in (self._watchdog, self._health_timer):
            if timer is not None:
                timer.stop()
        self._watchdog = None
        self._health_timer = None

    @property
    def timers_active(self) -> bool:
        return any(
            timer is not None and timer.running for timer in (self._watchdog, self._health_timer)
        )

    async def _watchdog_tick(self) -> None:
        inactive = self.clock() - self.state.last_activity_at
        if inactive <= self.config.watchdog_interval_seconds * 2:
            return
        self._log("error", f"Watchdog: inactivity detected ({inactive:.1f}s)")
        if self.config.auto_recovery:
            await self._recover("watchdog", f"No activity for {inactive:.1f}s")

    def _health_tick(self) -> None:
        self.state.last_health_check = utcnow_iso()
        self.state.is_healthy = self.state.consecutive_failures < CONSECUTIVE_FAILURE_LIMIT
        self._emit(
            "health_check",
            healthy=self.state.is_healthy,
            consecutive_failures=self.state.consecutive_failures,
        )

    # Transitions

    def _complete_task(self, task: Task, iteration: Iteration) -> None:
        task.status = "completed"
        task.completed_at = utcnow_iso()
        iteration.tasks_completed.append(task.id)
        self._emit("task_completed", task_id=task.id)
        self._log("milestone", f"Task completed: {task.title}")

    def _fail_task(self, task: Task, error: TaskError) -> None:
        task.status = "failed"
        self._emit("task_failed", task_id=task.id, kind=error.kind, error=error.message)
        self._log("error", f"Task failed: {task.title}", task_id=task.id)

    def _complete_plan(self, plan: Plan) -> None:
        plan.status = "completed"
        plan.completed_at = utcnow_iso()
        plan.current_task_id = None
        recompute_progress(plan)
        self.state.status = "completed"
        self.state.current_task = None
        self._running = False
        self._clear_timers()
        self._emit("plan_completed", plan_id=plan.id, progress=asdict(plan.progress))
        self._log("milestone", f"Plan completed: {plan.title}")

    def _fail_plan(self, plan: Plan, reason: str) -> None:
        plan.status = "failed"
        plan.failure_reason = reason
        plan.completed_at = utcnow_iso()
        recompute_progress(plan)
        self.state.status = "failed"
        self._running = False
        self._clear_timers()
        self._emit("plan_failed", plan_id=plan.id, reason=reason)
        self._log("error", f"Plan failed: {reason}")

    # Utilities

    def _emit(self, event_type: EventType, **data: Any) -> None:
        self._events.emit(AgentEvent(type=event_type, data=data))

    def _log(self, entry_type: ActivityType, message: str, **details: Any) -> None:
        self.state.activity_log.append(
            ActivityLogEntry(type=entry_type, message=message, details=details)
        )
        limit = self.config.activity_log_limit
        if len(self.state.activity_log) > limit:
            del self.state.activity_log[:-limit]
        self.state.last_activity = utcnow_iso()
        self.state.last_activity_at = self.clock()
        logger.log(_LOG_LEVELS.get(entry_type, logging.INFO), message)
