import asyncio
from typing import Any

import pytest

from overseer.config import AgentConfig
from overseer.errors import ExecutorBusyError, ExecutorStateError
from overseer.events import AgentEvent
from overseer.executor import Executor, build_task_prompt
from overseer.models import BuildResult, Plan, Task, TestResult
from overseer.recovery import RecoveryContext, RecoveryResult, RecoveryStrategy


class FakeGenerator:
    def __init__(
        self,
        *,
        gate: asyncio.Event | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.gate = gate
        self.delay = delay
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt: str, *, project_id: str) -> str:
        _ = project_id
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return "done"


class FakeProbe:
    def __init__(self, missing: set[str] | None = None) -> None:
        self.missing = set(missing or ())

    async def exists(self, path: str) -> bool:
        return path not in self.missing


class FakeBuild:
    def __init__(self, decide: Any = None) -> None:
        self.decide = decide or (lambda: True)
        self.calls = 0

    async def run(self) -> BuildResult:
        self.calls += 1
        success = bool(self.decide())
        return BuildResult(success=success, duration_ms=5, errors=[] if success else ["TS2304"])


class FakeTests:
    def __init__(self, outcomes: list[bool] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls = 0

    async def run(self) -> TestResult:
        self.calls += 1
        success = self.outcomes.pop(0) if self.outcomes else True
        return TestResult(success=success, duration_ms=5, passed=3, failed=0 if success else 1)


class RecordingAction:
    def __init__(self, name: str, calls: list[tuple[str, float]]) -> None:
        self.name = name
        self.calls = calls

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        self.calls.append((self.name, asyncio.get_running_loop().time()))
        return RecoveryResult(success=True)


class ExplodingAction:
    name = "explode"

    async def execute(self, context: RecoveryContext) -> RecoveryResult:
        raise RuntimeError("explode failed")


def _config(**overrides: Any) -> AgentConfig:
    config = AgentConfig(
        iteration_delay_seconds=0.0,
        watchdog_interval_seconds=60.0,
        health_check_interval_seconds=60.0,
        task_timeout_seconds=5.0,
    )
    for strategy in config.recovery_strategies:
        strategy.cooldown_seconds = 0.0
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def _executor(
    *,
    generator: FakeGenerator | None = None,
    build: FakeBuild | None = None,
    tests: FakeTests | None = None,
    probe: FakeProbe | None = None,
    config: AgentConfig | None = None,
    **kwargs: Any,
) -> Executor:
    return Executor(
        code_generator=generator or FakeGenerator(),
        build_runner=build or FakeBuild(),
        test_runner=tests or FakeTests(),
        file_probe=probe or FakeProbe(),
        config=config or _config(),
        **kwargs,
    )


def _plan(*tasks: Task, max_iterations: int = 50) -> Plan:
    return Plan(
        id="plan-1",
        project_id="shop",
        title="Shop",
        tasks=list(tasks),
        max_iterations=max_iterations,
    )


def _record(executor: Executor) -> list[AgentEvent]:
    events: list[AgentEvent] = []
    executor.subscribe(events.append)
    return events


def _types(events: list[AgentEvent], event_type: str) -> list[AgentEvent]:
    return [event for event in events if event.type == event_type]


def test_linear_chain_completes_in_three_iterations() -> None:
    plan = _plan(
        Task(id="t1", title="one", planned_files=["a.ts"]),
        Task(id="t2", title="two", depends_on=["t1"]),
        Task(id="t3", title="three", depends_on=["t2"]),
    )
    executor = _executor()
    events = _record(executor)

    asyncio.run(executor.start_plan(plan))

    assert plan.status == "completed"
    assert plan.current_iteration == 3
    assert [iteration.number for iteration in plan.iterations] == [1, 2, 3]
    assert (plan.progress.total, plan.progress.completed) == (3, 3)
    assert (plan.progress.failed, plan.progress.blocked) == (0, 0)
    assert [event.data["task_id"] for event in _types(events, "task_completed")] == [
        "t1",
        "t2",
        "t3",
    ]
    assert plan.tasks[0].implemented_files == ["a.ts"]
    assert _types(events, "plan_completed")[0].data["progress"]["completed"] == 3
    assert executor.state.status == "completed"
    assert not executor.timers_active


def test_build_gate_failing_twice_then_passing() -> None:
    task = Task(id="t1", title="one", max_attempts=3)
    build = FakeBuild(decide=lambda: task.attempts >= 3)
    executor = _executor(build=build)
    events = _record(executor)
    plan = _plan(task)

    asyncio.run(executor.start_plan(plan))

    assert task.status == "completed"
    assert task.attempts == 3
    assert [error.kind for error in task.errors] == ["build", "build"]
    triggered = _types(events, "recovery_triggered")
    assert [event.data["trigger"] for event in triggered] == ["build_failure", "build_failure"]
    assert [iteration.status for iteration in plan.iterations] == ["partial", "partial", "success"]
    assert sum(len(iteration.recovery_actions) for iteration in plan.iterations) == 2
    assert plan.status == "completed"


def test_test_gate_failure_without_auto_recovery_fails_immediately() -> None:
    task = Task(id="t1", title="one", max_attempts=3)
    tests = FakeTests(outcomes=[False])
    executor = _executor(tests=tests, config=_config(auto_recovery=False))
    events = _record(executor)
    plan = _plan(task)

    asyncio.run(executor.start_plan(plan))

    assert task.status == "failed"
    assert task.attempts == 1
    assert [error.kind for error in task.errors] == ["test"]
    assert _types(events, "recovery_triggered") == []
    assert _types(events, "task_failed")[0].data["task_id"] == "t1"
    assert plan.progress.failed == 1


def test_exhausted_task_is_never_reselected() -> None:
    task = Task(id="t1", title="one", max_attempts=2)
    build = FakeBuild(decide=lambda: False)
    executor = _executor(build=build)
    plan = _plan(task)

    asyncio.run(executor.start_plan(plan))

    assert task.status == "failed"
    assert task.attempts == 2
    assert plan.current_iteration == 2


def test_start_plan_rejects_when_already_running() -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        executor = _executor(generator=FakeGenerator(gate=gate))
        runner = asyncio.create_task(executor.start_plan(_plan(Task(id="t1", title="one"))))
        await asyncio.sleep(0)

        with pytest.raises(ExecutorBusyError):
            await executor.start_plan(_plan(Task(id="t2", title="two")))

        executor.stop()
        gate.set()
        await runner

    asyncio.run(_run())


def test_start_plan_rejects_finished_plan() -> None:
    plan = _plan(Task(id="t1", title="one"))
    plan.status = "completed"

    with pytest.raises(ExecutorStateError):
        asyncio.run(_executor().start_plan(plan))


def test_pause_is_observed_at_next_iteration_and_resume_continues() -> None:
    plan = _plan(Task(id="t1", title="one"), Task(id="t2", title="two"))

    async def _run() -> tuple[Executor, list[AgentEvent]]:
        gate = asyncio.Event()
        executor = _executor(generator=FakeGenerator(gate=gate))
        events = _record(executor)
        runner = asyncio.create_task(executor.start_plan(plan))
        await asyncio.sleep(0)

        executor.pause()
        assert not executor.timers_active
        gate.set()
        await runner

        assert plan.status == "paused"
        assert executor.state.status == "paused"
        assert [task.status for task in plan.tasks] == ["completed", "pending"]

        await executor.resume()
        return executor, events

    executor, events = asyncio.run(_run())

    assert plan.status == "completed"
    assert [task.status for task in plan.tasks] == ["completed", "completed"]
    assert len(_types(events, "agent_paused")) == 1
    assert len(_types(events, "agent_resumed")) == 1


def test_resume_requires_prior_pause() -> None:
    with pytest.raises(ExecutorStateError):
        asyncio.run(_executor().resume())


def test_stop_clears_timers_and_resets_status() -> None:
    async def _run() -> Executor:
        gate = asyncio.Event()
        executor = _executor(generator=FakeGenerator(gate=gate))
        runner = asyncio.create_task(executor.start_plan(_plan(Task(id="t1", title="one"))))
        await asyncio.sleep(0)
        assert executor.timers_active

        executor.stop()
        assert not executor.timers_active
        assert executor.state.status == "idle"
        gate.set()
        await runner
        return executor

    executor = asyncio.run(_run())

    assert not executor.running
    assert not executor.timers_active


def test_restart_continues_attached_plan_in_background() -> None:
    plan = _plan(Task(id="t1", title="one"), Task(id="t2", title="two"))

    async def _run() -> list[AgentEvent]:
        gate = asyncio.Event()
        executor = _executor(generator=FakeGenerator(gate=gate))
        events = _record(executor)
        runner = asyncio.create_task(executor.start_plan(plan))
        await asyncio.sleep(0)

        await executor.restart(0)
        gate.set()
        await runner
        await executor.join()
        return events

    events = asyncio.run(_run())

    assert plan.status == "completed"
    assert [task.status for task in plan.tasks] == ["completed", "completed"]
    assert len(_types(events, "agent_stopped")) == 1
    assert _types(events, "agent_resumed")[0].data == {"restarted": True}
    assert len(_types(events, "plan_completed")) == 1


def test_stop_during_restart_delay_cancels_the_resume() -> None:
    plan = _plan(Task(id="t1", title="one"))

    async def _run() -> Executor:
        executor = _executor()
        executor.state.current_plan = plan
        await executor.restart(10)
        assert executor.busy

        executor.stop()
        await executor.join()
        return executor

    executor = asyncio.run(_run())

    assert not executor.busy
    assert not executor.running
    assert plan.tasks[0].status == "pending"
    assert plan.current_iteration == 0


def test_task_timeout_is_recorded_and_counted() -> None:
    task = Task(id="t1", title="slow")
    executor = _executor(
        generator=FakeGenerator(delay=1.0),
        config=_config(task_timeout_seconds=0.01, auto_recovery=False),
    )
    plan = _plan(task)

    asyncio.run(executor.start_plan(plan))

    assert task.status == "failed"
    assert task.errors[0].kind == "timeout"
    assert "timed out" in task.errors[0].message
    assert executor.state.consecutive_failures == 1


def test_timeout_recovery_honours_strategy_attempt_limit() -> None:
    task = Task(id="t1", title="slow", max_attempts=3)
    executor = _executor(
        generator=FakeGenerator(delay=1.0),
        config=_config(task_timeout_seconds=0.01),
    )
    events = _record(executor)
    plan = _plan(task)

    asyncio.run(executor.start_plan(plan))

    assert task.status == "failed"
    assert task.attempts == 3
    triggered = [event.data["trigger"] for event in _types(events, "recovery_triggered")]
    assert triggered == ["timeout", "timeout"]
    assert plan.status == "completed"


def test_missing_planned_files_raise_validation_errors() -> None:
    task = Task(id="t1", title="one", planned_files=["app/a.tsx"])
    executor = _executor(
        probe=FakeProbe(missing={"app/a.tsx"}), config=_config(auto_recovery=False)
    )

    asyncio.run(executor.start_plan(_plan(task)))

    assert task.errors[0].kind == "validation"
    assert "app/a.tsx" in task.errors[0].message


def test_three_consecutive_loop_errors_abort_the_plan() -> None:
    plan = _plan(*[Task(id=f"t{index}", title=f"task {index}") for index in range(1, 5)])
    executor = _executor(
        generator=FakeGenerator(error=RuntimeError("generator offline")),
        config=_config(auto_recovery=False),
    )
    events = _record(executor)

    asyncio.run(executor.start_plan(plan))

    assert plan.status == "failed"
    assert plan.failure_reason == "Too many consecutive failures"
    assert plan.current_iteration == 3
    assert plan.tasks[3].status == "pending"
    assert _types(events, "plan_failed")[0].data["reason"] == "Too many consecutive failures"
    assert plan.tasks[0].errors[0].kind == "runtime"
    assert "generator offline" in plan.tasks[0].errors[0].context["traceback"]
    assert executor.state.status == "failed"
    assert not executor.timers_active


def test_exhausting_max_iterations_fails_the_plan() -> None:
    plan = _plan(
        Task(id="t1", title="one"),
        Task(id="t2", title="two"),
        Task(id="t3", title="three"),
        max_iterations=2,
    )
    executor = _executor()

    asyncio.run(executor.start_plan(plan))

    assert plan.status == "failed"
    assert plan.failure_reason == "Max iterations reached"
    assert plan.progress.completed == 2


def test_finishing_every_task_on_the_last_iteration_completes_the_plan() -> None:
    plan = _plan(
        Task(id="t1", title="one"),
        Task(id="t2", title="two", depends_on=["t1"]),
        Task(id="t3", title="three", depends_on=["t2"]),
        max_iterations=3,
    )
    executor = _executor()
    events = _record(executor)

    asyncio.run(executor.start_plan(plan))

    assert plan.status == "completed"
    assert plan.failure_reason is None
    assert plan.current_iteration == 3
    assert (plan.progress.total, plan.progress.completed) == (3, 3)
    assert _types(events, "plan_failed") == []
    assert not executor.timers_active


def test_recovery_actions_run_in_declared_order_with_cooldown_between() -> None:
    calls: list[tuple[str, float]] = []
    names = ["check_logs", "apply_fix", "restart"]
    config = _config(
        recovery_strategies=[
            RecoveryStrategy(trigger="manual", actions=names, cooldown_seconds=0.05)
        ]
    )
    executor = _executor(
        config=config,
        recovery_actions={name: RecordingAction(name, calls) for name in names},
    )

    async def _run() -> float:
        started = asyncio.get_running_loop().time()
        assert await executor.trigger_recovery("operator request") is True
        return started

    started = asyncio.run(_run())

    assert [name for name, _ in calls] == names
    stamps = [stamp for _, stamp in calls]
    assert stamps[0] - started < 0.05
    assert all(later - earlier >= 0.045 for earlier, later in zip(stamps, stamps[1:]))


def test_recovery_action_failure_is_recorded_not_raised() -> None:
    task = Task(id="t1", title="one")
    config = _config(
        recovery_strategies=[
            RecoveryStrategy(trigger="build_failure", actions=["explode"], cooldown_seconds=0.0)
        ]
    )
    executor = _executor(
        build=FakeBuild(decide=lambda: task.attempts >= 2),
        config=config,
        recovery_actions={"explode": ExplodingAction()},
    )
    events = _record(executor)
    plan = _plan(task)

    asyncio.run(executor.start_plan(plan))

    attempt = plan.iterations[0].recovery_actions[0]
    assert attempt.result == "failed"
    assert "explode failed" in (attempt.details or "")
    assert _types(events, "recovery_completed")[0].data["success"] is False
    assert plan.status == "completed"


def test_trigger_without_strategy_is_a_logged_no_op() -> None:
    executor = _executor(config=_config(recovery_strategies=[]))
    events = _record(executor)

    succeeded = asyncio.run(executor.trigger_recovery("operator request"))

    assert succeeded is False
    assert _types(events, "recovery_completed")[0].data == {
        "trigger": "manual",
        "success": False,
    }
    assert executor.state.status == "idle"
    assert any("No recovery strategy" in entry.message for entry in executor.state.activity_log)


def test_manual_recovery_resets_failure_counter() -> None:
    executor = _executor()
    executor.state.consecutive_failures = 2

    assert asyncio.run(executor.trigger_recovery("operator request")) is True
    assert executor.state.consecutive_failures == 0


def test_failing_listener_does_not_block_others_and_unsubscribe_works() -> None:
    executor = _executor()

    def _broken(event: AgentEvent) -> None:
        raise ValueError("listener bug")

    executor.subscribe(_broken)
    events = _record(executor)
    late: list[AgentEvent] = []
    unsubscribe = executor.subscribe(late.append)
    unsubscribe()

    asyncio.run(executor.start_plan(_plan(Task(id="t1", title="one"))))

    assert _types(events, "plan_completed")
    assert late == []


def test_get_state_returns_an_independent_snapshot() -> None:
    executor = _executor()
    snapshot = executor.get_state()
    snapshot.activity_log.clear()
    snapshot.consecutive_failures = 9

    assert executor.state.activity_log
    assert executor.state.consecutive_failures == 0


def test_activity_log_is_bounded() -> None:
    executor = _executor(config=_config(activity_log_limit=5))

    asyncio.run(executor.start_plan(_plan(Task(id="t1", title="one"), Task(id="t2", title="two"))))

    assert len(executor.state.activity_log) == 5
    assert executor.state.activity_log[-1].message == "Plan completed: Shop"


def test_watchdog_triggers_recovery_after_inactivity() -> None:
    now = [100.0]
    executor = _executor(config=_config(watchdog_interval_seconds=30.0), clock=lambda: now[0])
    events = _record(executor)

    asyncio.run(executor._watchdog_tick())
    assert _types(events, "recovery_triggered") == []

    now[0] += 61.0
    asyncio.run(executor._watchdog_tick())
    assert [event.data["trigger"] for event in _types(events, "recovery_triggered")] == [
        "watchdog"
    ]


def test_health_tick_reports_unhealthy_after_three_failures() -> None:
    executor = _executor()
    events = _record(executor)
    executor.state.consecutive_failures = 3

    executor._health_tick()

    assert executor.state.is_healthy is False
    assert _types(events, "health_check")[0].data == {
        "healthy": False,
        "consecutive_failures": 3,
    }


def test_health_timer_emits_events_while_plan_runs() -> None:
    executor = _executor(
        generator=FakeGenerator(delay=0.05),
        config=_config(health_check_interval_seconds=0.01),
    )
    events = _record(executor)

    asyncio.run(executor.start_plan(_plan(Task(id="t1", title="one"))))

    assert _types(events, "health_check")
    assert not executor.timers_active


def test_task_prompt_mentions_files_changes_and_previous_errors() -> None:
    plan = _plan()
    task = Task(
        id="t1",
        title="Cart",
        planned_files=["app/Cart.tsx"],
        planned_changes=["Create component: Cart"],
    )

    prompt = build_task_prompt(task, plan)

    assert "- app/Cart.tsx" in prompt
    assert "- Create component: Cart" in prompt
    assert "## Previous Errors\nNone" in prompt
