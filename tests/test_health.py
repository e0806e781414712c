import asyncio
from typing import Any

import httpx
import pytest

from overseer.config import AgentConfig, MonitorConfig
from overseer.events import AgentEvent
from overseer.executor import ActivityLogEntry, AgentState, Executor
from overseer.health import (
    HealthCheck,
    HealthMonitor,
    HttpLivenessProbe,
    LivenessResult,
    TriggerAction,
    TriggerCondition,
    TriggerSpec,
    aggregate_status,
    check_agent_health,
    check_build_status,
    check_error_rate,
    check_memory,
    wait_until_settled,
)
from overseer.models import BuildResult, Iteration, Plan, Task, TestResult


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeGenerator:
    def __init__(self, gate: asyncio.Event | None = None) -> None:
        self.gate = gate

    async def generate(self, prompt: str, *, project_id: str) -> str:
        _ = prompt, project_id
        if self.gate is not None:
            await self.gate.wait()
        return "done"


class PassingBuild:
    async def run(self) -> BuildResult:
        return BuildResult(success=True, duration_ms=1)


class PassingTests:
    async def run(self) -> TestResult:
        return TestResult(success=True, duration_ms=1, passed=1)


class AllFilesProbe:
    async def exists(self, path: str) -> bool:
        return True


class StaticProbe:
    def __init__(self, result: LivenessResult) -> None:
        self.result = result

    async def probe(self) -> LivenessResult:
        return self.result


def _executor(clock: Clock | None = None, gate: asyncio.Event | None = None) -> Executor:
    config = AgentConfig(iteration_delay_seconds=0.0)
    for strategy in config.recovery_strategies:
        strategy.cooldown_seconds = 0.0
    return Executor(
        code_generator=FakeGenerator(gate),
        build_runner=PassingBuild(),
        test_runner=PassingTests(),
        file_probe=AllFilesProbe(),
        config=config,
        clock=clock or Clock(),
    )


def _monitor(executor: Executor, clock: Clock, **kwargs: Any) -> HealthMonitor:
    config = MonitorConfig(restart_delay_seconds=0.0, error_window_seconds=300.0)
    return HealthMonitor(executor, config, clock=clock, **kwargs)


def _record(executor: Executor) -> list[AgentEvent]:
    events: list[AgentEvent] = []
    executor.subscribe(events.append)
    return events


def _check(status: str) -> HealthCheck:
    return HealthCheck(name="x", status=status, message="")  # type: ignore[arg-type]


def _notify_spec(**kwargs: Any) -> TriggerSpec:
    defaults: dict[str, Any] = {
        "name": "Notify on errors",
        "type": "error_rate",
        "condition": TriggerCondition(type="threshold_exceeded", threshold=1),
        "action": TriggerAction(type="notify"),
        "cooldown_seconds": 30.0,
    }
    defaults.update(kwargs)
    return TriggerSpec(**defaults)


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        (["pass", "pass", "pass"], "healthy"),
        (["warn", "pass"], "healthy"),
        (["warn", "warn", "pass"], "degraded"),
        (["fail", "warn", "warn"], "unhealthy"),
        (["fail", "fail", "pass"], "critical"),
    ],
)
def test_aggregate_status(statuses: list[str], expected: str) -> None:
    assert aggregate_status([_check(status) for status in statuses]) == expected


def test_agent_health_thresholds() -> None:
    state = AgentState(config=AgentConfig())
    assert check_agent_health(state).status == "pass"

    state.consecutive_failures = 3
    assert check_agent_health(state).status == "warn"

    state.consecutive_failures = 5
    assert check_agent_health(state).status == "fail"
    assert "5 consecutive failures" in check_agent_health(state).message

    state.consecutive_failures = 0
    state.is_healthy = False
    assert check_agent_health(state).status == "warn"


def test_error_rate_and_memory_thresholds() -> None:
    assert check_error_rate(10).status == "pass"
    assert check_error_rate(11).status == "warn"
    assert check_error_rate(21).status == "fail"

    state = AgentState(config=AgentConfig())
    state.activity_log = [ActivityLogEntry(type="info", message="x") for _ in range(501)]
    assert check_memory(state).status == "warn"
    state.activity_log *= 2
    assert check_memory(state).status == "fail"


def test_build_status_check_reads_last_iteration() -> None:
    state = AgentState(config=AgentConfig())
    assert check_build_status(state).message == "No recent builds"

    plan = Plan(id="p", project_id="shop", title="Shop")
    plan.iterations.append(
        Iteration(number=1, build_result=BuildResult(success=False, errors=["a", "b", "c"]))
    )
    state.current_plan = plan
    check = check_build_status(state)
    assert check.status == "fail"
    assert check.message == "Build failed: a, b"


def test_idle_executor_without_probe_is_healthy() -> None:
    clock = Clock()
    monitor = _monitor(_executor(clock), clock)

    status = asyncio.run(monitor.run_health_checks())

    assert status.overall == "healthy"
    assert [check.name for check in status.checks] == [
        "Agent Health",
        "API Health",
        "Error Rate",
        "Memory",
        "Build Status",
    ]
    assert status.checks[1].message == "Liveness probe disabled"


def test_failing_probe_and_error_burst_are_critical() -> None:
    clock = Clock()
    monitor = _monitor(
        _executor(clock), clock, probe=StaticProbe(LivenessResult(False, 0.2, "HTTP 503"))
    )
    for _ in range(25):
        monitor._handle_event(AgentEvent(type="task_failed", data={"task_id": "t"}))

    first = asyncio.run(monitor.run_health_checks())
    second = asyncio.run(monitor.run_health_checks())

    assert first.overall == "critical"
    assert first.checks[1].response_time_ms == 200
    assert second.consecutive_failures == 2


def test_slow_probe_warns() -> None:
    clock = Clock()
    monitor = _monitor(_executor(clock), clock, probe=StaticProbe(LivenessResult(True, 3.0)))

    status = asyncio.run(monitor.run_health_checks())

    assert status.checks[1].status == "warn"
    assert status.checks[1].message == "API slow"


def test_http_probe_reads_status_codes() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/ok":
            return httpx.Response(200, json={"status": "ok"})
        return httpx.Response(503)

    transport = httpx.MockTransport(_handler)
    healthy = HttpLivenessProbe("http://app.test/ok", transport=transport)
    broken = HttpLivenessProbe("http://app.test/down", transport=transport)

    assert asyncio.run(healthy.probe()).ok is True
    result = asyncio.run(broken.probe())
    assert result.ok is False
    assert result.detail == "HTTP 503"


def test_http_probe_reports_timeouts() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    probe = HttpLivenessProbe("http://app.test/ok", transport=httpx.MockTransport(_handler))

    result = asyncio.run(probe.probe())

    assert result.ok is False
    assert result.detail == "Timeout"


def test_error_buffer_counts_failures_inside_window_only() -> None:
    clock = Clock()
    monitor = _monitor(_executor(clock), clock)

    monitor._handle_event(AgentEvent(type="build_completed", data={"success": False}))
    monitor._handle_event(AgentEvent(type="build_completed", data={"success": True}))
    monitor._handle_event(AgentEvent(type="test_completed", data={"success": False}))
    assert monitor.recent_error_count() == 2

    clock.now += 301
    monitor._handle_event(AgentEvent(type="plan_failed", data={"reason": "x"}))
    assert monitor.recent_error_count() == 1


def test_health_check_events_track_consecutive_failures() -> None:
    clock = Clock()
    executor = _executor(clock)
    monitor = _monitor(executor, clock)
    executor.state.consecutive_failures = 4

    monitor._handle_event(AgentEvent(type="health_check", data={"healthy": False}))
    monitor._handle_event(AgentEvent(type="health_check", data={"healthy": False}))
    assert monitor.status.consecutive_failures == 2

    monitor._handle_event(AgentEvent(type="health_check", data={"healthy": True}))
    assert monitor.status.consecutive_failures == 0


def test_trigger_registry_crud() -> None:
    clock = Clock()
    monitor = _monitor(_executor(clock), clock)
    assert len(monitor.get_triggers()) == 5

    trigger = monitor.add_trigger(_notify_spec())
    assert monitor.disable_trigger(trigger.id) is True
    assert [t.enabled for t in monitor.get_triggers() if t.id == trigger.id] == [False]
    assert monitor.enable_trigger(trigger.id) is True
    assert monitor.remove_trigger(trigger.id) is True
    assert monitor.remove_trigger(trigger.id) is False
    assert monitor.enable_trigger("missing") is False

    snapshot = monitor.get_triggers()[0]
    snapshot.enabled = False
    assert monitor.get_triggers()[0].enabled is True


def test_trigger_respects_cooldown() -> None:
    clock = Clock()
    monitor = _monitor(_executor(clock), clock, register_defaults=False)
    trigger = monitor.add_trigger(_notify_spec())
    monitor._handle_event(AgentEvent(type="task_failed"))
    monitor._handle_event(AgentEvent(type="task_failed"))

    async def _evaluate() -> int:
        fired = await monitor.evaluate_triggers()
        await monitor.drain()
        return len(fired)

    assert asyncio.run(_evaluate()) == 1
    assert asyncio.run(_evaluate()) == 0
    clock.now += 31
    assert asyncio.run(_evaluate()) == 1

    stored = monitor.get_triggers()[0]
    assert stored.id == trigger.id
    assert stored.trigger_count == 2
    assert stored.last_triggered == clock.now


def test_disabled_trigger_never_fires() -> None:
    clock = Clock()
    monitor = _monitor(_executor(clock), clock, register_defaults=False)
    monitor.add_trigger(_notify_spec(enabled=False))
    monitor._handle_event(AgentEvent(type="task_failed"))
    monitor._handle_event(AgentEvent(type="task_failed"))

    assert asyncio.run(monitor.evaluate_triggers()) == []


def test_inactivity_trigger_only_fires_while_agent_is_active() -> None:
    clock = Clock()
    executor = _executor(clock)
    monitor = _monitor(executor, clock, register_defaults=False)
    monitor.add_trigger(
        _notify_spec(
            name="Inactive",
            type="inactivity",
            condition=TriggerCondition(type="duration_exceeded", duration_seconds=120.0),
        )
    )
    clock.now += 500

    assert asyncio.run(monitor.evaluate_triggers()) == []

    executor.state.status = "developing"

    async def _evaluate() -> int:
        fired = await monitor.evaluate_triggers()
        await monitor.drain()
        return len(fired)

    assert asyncio.run(_evaluate()) == 1


def test_recover_action_uses_configured_trigger_kind() -> None:
    clock = Clock()
    executor = _executor(clock)
    events = _record(executor)
    monitor = _monitor(executor, clock, register_defaults=False)
    monitor.add_trigger(
        _notify_spec(action=TriggerAction(type="recover", params={"trigger": "build_failure"}))
    )
    monitor._handle_event(AgentEvent(type="task_failed"))
    monitor._handle_event(AgentEvent(type="task_failed"))

    async def _run() -> None:
        await monitor.evaluate_triggers()
        await monitor.drain()

    asyncio.run(_run())

    triggered = [event for event in events if event.type == "recovery_triggered"]
    assert triggered[0].data["trigger"] == "build_failure"
    assert "Notify on errors" in triggered[0].data["reason"]


def test_restart_action_continues_attached_plan() -> None:
    clock = Clock()
    executor = _executor(clock)
    plan = Plan(id="p", project_id="shop", title="Shop", tasks=[Task(id="t1", title="one")])
    executor.state.current_plan = plan
    monitor = _monitor(executor, clock, register_defaults=False)
    monitor.add_trigger(
        TriggerSpec(
            name="Restart on critical",
            type="health",
            condition=TriggerCondition(type="status_equals", pattern="critical"),
            action=TriggerAction(type="restart"),
        )
    )
    monitor.status.overall = "critical"

    async def _run() -> None:
        await monitor.evaluate_triggers()
        await monitor.drain()
        await executor.join()

    asyncio.run(_run())

    assert plan.status == "completed"
    assert plan.tasks[0].status == "completed"


def test_pause_action_pauses_running_executor() -> None:
    clock = Clock()
    plan = Plan(
        id="p",
        project_id="shop",
        title="Shop",
        tasks=[Task(id="t1", title="one"), Task(id="t2", title="two")],
    )

    async def _run() -> Executor:
        gate = asyncio.Event()
        executor = _executor(clock, gate)
        monitor = _monitor(executor, clock, register_defaults=False)
        monitor.add_trigger(
            TriggerSpec(
                name="Pause",
                type="health",
                condition=TriggerCondition(type="consecutive_failures", threshold=10),
                action=TriggerAction(type="pause"),
            )
        )
        monitor.status.consecutive_failures = 11
        runner = asyncio.create_task(executor.start_plan(plan))
        await asyncio.sleep(0)

        await monitor.evaluate_triggers()
        await monitor.drain()
        gate.set()
        await runner
        return executor

    executor = asyncio.run(_run())

    assert executor.state.status == "paused"
    assert plan.status == "paused"
    assert plan.tasks[1].status == "pending"


def test_start_samples_periodically_and_stop_unsubscribes() -> None:
    clock = Clock()
    executor = _executor(clock)
    monitor = _monitor(executor, clock)

    async def _run() -> None:
        monitor.start(interval_seconds=0.01)
        assert monitor.running
        await asyncio.sleep(0.05)
        monitor.stop()

    asyncio.run(_run())

    assert not monitor.running
    assert len(monitor.status.checks) == 5
    executor._health_tick()
    executor.state.consecutive_failures = 3
    executor._health_tick()
    assert monitor.status.consecutive_failures == 0


def test_restart_trigger_mid_run_resumes_plan_before_run_settles() -> None:
    clock = Clock()
    plan = Plan(
        id="p",
        project_id="shop",
        title="Shop",
        tasks=[Task(id="t1", title="one"), Task(id="t2", title="two")],
    )

    async def _run() -> str:
        gate = asyncio.Event()
        executor = _executor(clock, gate)
        monitor = HealthMonitor(
            executor,
            MonitorConfig(restart_delay_seconds=0.05),
            clock=clock,
            register_defaults=False,
        )
        monitor.add_trigger(
            TriggerSpec(
                name="Restart on critical",
                type="health",
                condition=TriggerCondition(type="status_equals", pattern="critical"),
                action=TriggerAction(type="restart"),
            )
        )
        runner = asyncio.create_task(executor.start_plan(plan))
        await asyncio.sleep(0)
        monitor.status.overall = "critical"
        try:
            await monitor.evaluate_triggers()
            gate.set()
            await runner
            status_after_first_loop = plan.status
            await wait_until_settled(executor, monitor)
        finally:
            monitor.stop()
        return status_after_first_loop

    status_after_first_loop = asyncio.run(_run())

    assert status_after_first_loop == "paused"
    assert plan.status == "completed"
    assert [task.status for task in plan.tasks] == ["completed", "completed"]
