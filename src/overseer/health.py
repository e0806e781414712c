from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx

from overseer.config import MonitorConfig
from overseer.events import AgentEvent
from overseer.executor import AgentState, Executor
from overseer.models import new_id, utcnow_iso
from overseer.timers import PeriodicTask

logger = logging.getLogger(__name__)

CheckStatus = Literal["pass", "warn", "fail"]
OverallStatus = Literal["healthy", "degraded", "unhealthy", "critical"]
TriggerType = Literal[
    "health", "error_rate", "inactivity", "build_failure", "test_failure", "memory", "custom"
]
ConditionType = Literal[
    "status_equals", "threshold_exceeded", "duration_exceeded", "consecutive_failures"
]
ActionType = Literal["restart", "recover", "notify", "pause", "escalate"]

ACTIVE_AGENT_STATUSES = {"planning", "developing", "testing", "recovering"}
FAILURE_EVENTS = {"task_failed", "plan_failed"}
RESULT_EVENTS = {"build_completed", "test_completed"}

AGENT_WARN_FAILURES = 3
AGENT_FAIL_FAILURES = 5
ERROR_RATE_WARN = 10
ERROR_RATE_FAIL = 20
ACTIVITY_LOG_WARN = 500
ACTIVITY_LOG_FAIL = 800


@dataclass(slots=True)
class HealthCheck:
    name: str
    status: CheckStatus
    message: str
    last_check: str = field(default_factory=utcnow_iso)
    response_time_ms: int | None = None


@dataclass(slots=True)
class HealthStatus:
    overall: OverallStatus = "healthy"
    checks: list[HealthCheck] = field(default_factory=list)
    last_updated: str = field(default_factory=utcnow_iso)
    uptime_seconds: float = 0.0
    consecutive_failures: int = 0


@dataclass(slots=True)
class TriggerCondition:
    type: ConditionType
    threshold: float | None = None
    duration_seconds: float | None = None
    pattern: str | None = None


@dataclass(slots=True)
class TriggerAction:
    type: ActionType
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TriggerSpec:
    name: str
    type: TriggerType
    condition: TriggerCondition
    action: TriggerAction
    enabled: bool = True
    cooldown_seconds: float = 60.0


@dataclass(slots=True)
class Trigger:
    id: str
    name: str
    type: TriggerType
    condition: TriggerCondition
    action: TriggerAction
    enabled: bool = True
    cooldown_seconds: float = 60.0
    last_triggered: float | None = None
    last_triggered_at: str | None = None
    trigger_count: int = 0

    def cooling_down(self, now: float) -> bool:
        return self.last_triggered is not None and now - self.last_triggered < self.cooldown_seconds


def default_triggers() -> list[TriggerSpec]:
    return [
        TriggerSpec(
            name="Auto-restart on critical",
            type="health",
            condition=TriggerCondition(type="status_equals", pattern="critical"),
            action=TriggerAction(type="restart"),
            cooldown_seconds=60.0,
        ),
        TriggerSpec(
            name="Recover on high errors",
            type="error_rate",
            condition=TriggerCondition(type="threshold_exceeded", threshold=15),
            action=TriggerAction(type="recover", params={"trigger": "runtime_error"}),
            cooldown_seconds=30.0,
        ),
        TriggerSpec(
            name="Restart on inactivity",
            type="inactivity",
            condition=TriggerCondition(type="duration_exceeded", duration_seconds=120.0),
            action=TriggerAction(type="restart"),
            cooldown_seconds=120.0,
        ),
        TriggerSpec(
            name="Recover on build failures",
            type="build_failure",
            condition=TriggerCondition(type="consecutive_failures", threshold=3),
            action=TriggerAction(type="recover", params={"trigger": "build_failure"}),
            cooldown_seconds=45.0,
        ),
        TriggerSpec(
            name="Pause on excessive failures",
            type="health",
            condition=TriggerCondition(type="consecutive_failures", threshold=10),
            action=TriggerAction(type="pause"),
            cooldown_seconds=300.0,
        ),
    ]


def aggregate_status(checks: list[HealthCheck]) -> OverallStatus:
    failing = sum(1 for check in checks if check.status == "fail")
    warning = sum(1 for check in checks if check.status == "warn")
    if failing >= 2:
        return "critical"
    if failing == 1:
        return "unhealthy"
    if warning >= 2:
        return "degraded"
    return "healthy"


def check_agent_health(state: AgentState) -> HealthCheck:
    failures = state.consecutive_failures
    status: CheckStatus
    if state.is_healthy and failures < AGENT_WARN_FAILURES:
        status = "pass"
    elif failures < AGENT_FAIL_FAILURES:
        status = "warn"
    else:
        status = "fail"
    message = (
        "Agent is healthy" if status == "pass" else f"Agent has {failures} consecutive failures"
    )
    return HealthCheck(name="Agent Health", status=status, message=message)


def check_error_rate(recent_errors: int) -> HealthCheck:
    if recent_errors > ERROR_RATE_FAIL:
        return HealthCheck(
            "Error Rate", "fail", f"High error rate: {recent_errors} errors in window"
        )
    if recent_errors > ERROR_RATE_WARN:
        return HealthCheck(
            "Error Rate", "warn", f"Elevated error rate: {recent_errors} errors in window"
        )
    return HealthCheck("Error Rate", "pass", "Error rate normal")


def check_memory(state: AgentState) -> HealthCheck:
    size = len(state.activity_log)
    if size > ACTIVITY_LOG_FAIL:
        return HealthCheck("Memory", "fail", f"Memory usage critical (activity log size: {size})")
    if size > ACTIVITY_LOG_WARN:
        return HealthCheck("Memory", "warn", f"Memory usage elevated (activity log size: {size})")
    return HealthCheck("Memory", "pass", "Memory usage normal")


def check_build_status(state: AgentState) -> HealthCheck:
    plan = state.current_plan
    if plan is None or plan.last_iteration is None:
        return HealthCheck("Build Status", "pass", "No recent builds")
    build = plan.last_iteration.build_result
    if build is None:
        return HealthCheck("Build Status", "pass", "No build in current iteration")
    if build.success:
        return HealthCheck("Build Status", "pass", f"Build passed ({build.duration_ms}ms)")
    return HealthCheck("Build Status", "fail", "Build failed: " + ", ".join(build.errors[:2]))


@dataclass(slots=True)
class LivenessResult:
    ok: bool
    latency_seconds: float
    detail: str = ""


class LivenessProbe(Protocol):
    async def probe(self) -> LivenessResult: ...


class HttpLivenessProbe:
    """GETs a liveness endpoint with a bounded timeout."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def probe(self) -> LivenessResult:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.get(self.url)
        except httpx.TimeoutException:
            return LivenessResult(False, time.monotonic() - started, "Timeout")
        except httpx.HTTPError as exc:
            return LivenessResult(False, time.monotonic() - started, str(exc) or "HTTP error")
        return LivenessResult(
            response.is_success,
            time.monotonic() - started,
            f"HTTP {response.status_code}",
        )


class HealthMonitor:
    """Samples executor health and fires remediation triggers."""

    def __init__(
        self,
        executor: Executor,
        config: MonitorConfig | None = None,
        *,
        probe: LivenessProbe | None = None,
        clock: Callable[[], float] = time.monotonic,
        register_defaults: bool = True,
    ) -> None:
        self.executor = executor
        self.config = config or MonitorConfig()
        if probe is None and self.config.liveness_url:
            probe = HttpLivenessProbe(
                self.config.liveness_url, timeout_seconds=self.config.probe_timeout_seconds
            )
        self.probe = probe
        self.clock = clock
        self.status = HealthStatus()
        self._started_at = clock()
        self._triggers: dict[str, Trigger] = {}
        self._error_times: list[float] = []
        self._sampler: PeriodicTask | None = None
        self._evaluator: PeriodicTask | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._pending: set[asyncio.Task[Any]] = set()
        if register_defaults:
            for spec in default_triggers():
                self.add_trigger(spec)

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._sampler is not None

    def start(self, interval_seconds: float | None = None) -> None:
        if self.running:
            return
        interval = interval_seconds or self.config.interval_seconds
        self._unsubscribe = self.executor.subscribe(self._handle_event)
        self._sampler = PeriodicTask("overseer-health-sampler", interval, self.run_health_checks)
        self._evaluator = PeriodicTask(
            "overseer-trigger-evaluator", interval / 2, self.evaluate_triggers
        )
        self._sampler.start()
        self._evaluator.start()
        self._track(asyncio.get_running_loop().create_task(self.run_health_checks()))
        logger.info("Health monitor started (interval %.1fs)", interval)

    def stop(self) -> None:
        for timer in (self._sampler, self._evaluator):
            if timer is not None:
                timer.stop()
        self._sampler = None
        self._evaluator = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        logger.info("Health monitor stopped")

    async def drain(self) -> None:
        """Wait for dispatched trigger actions to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def busy(self) -> bool:
        return bool(self._pending)

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # Queries

    def get_status(self) -> HealthStatus:
        return copy.deepcopy(self.status)

    def get_triggers(self) -> list[Trigger]:
        return [copy.deepcopy(trigger) for trigger in self._triggers.values()]

    def recent_error_count(self) -> int:
        cutoff = self.clock() - self.config.error_window_seconds
        return sum(1 for stamp in self._error_times if stamp > cutoff)

    # Trigger registry

    def add_trigger(self, spec: TriggerSpec) -> Trigger:
        trigger = Trigger(
            id=new_id("trigger"),
            name=spec.name,
            type=spec.type,
            condition=copy.deepcopy(spec.condition),
            action=copy.deepcopy(spec.action),
            enabled=spec.enabled,
            cooldown_seconds=spec.cooldown_seconds,
        )
        self._triggers[trigger.id] = trigger
        logger.info("Trigger added: %s (%s)", trigger.id, trigger.name)
        return trigger

    def remove_trigger(self, trigger_id: str) -> bool:
        return self._triggers.pop(trigger_id, None) is not None

    def enable_trigger(self, trigger_id: str) -> bool:
        return self._set_enabled(trigger_id, True)

    def disable_trigger(self, trigger_id: str) -> bool:
        return self._set_enabled(trigger_id, False)

    def _set_enabled(self, trigger_id: str, enabled: bool) -> bool:
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            return False
        trigger.enabled = enabled
        return True

    # Sampling

    async def _check_liveness(self) -> HealthCheck:
        if self.probe is None:
            return HealthCheck("API Health", "pass", "Liveness probe disabled")
        result = await self.probe.probe()
        response_ms = int(result.latency_seconds * 1000)
        if not result.ok:
            return HealthCheck(
                "API Health",
                "fail",
                f"Liveness check failed: {result.detail}",
                response_time_ms=response_ms,
            )
        if result.latency_seconds > self.config.slow_response_seconds:
            return HealthCheck("API Health", "warn", "API slow", response_time_ms=response_ms)
        return HealthCheck("API Health", "pass", "API healthy", response_time_ms=response_ms)

    async def run_health_checks(self) -> HealthStatus:
        state = self.executor.get_state()
        checks = [
            check_agent_health(state),
            await self._check_liveness(),
            check_error_rate(self.recent_error_count()),
            check_memory(state),
            check_build_status(state),
        ]
        self.status.checks = checks
        self.status.last_updated = utcnow_iso()
        self.status.uptime_seconds = self.clock() - self._started_at
        self.status.overall = aggregate_status(checks)
        if self.status.overall in {"unhealthy", "critical"}:
            self.status.consecutive_failures += 1
        else:
            self.status.consecutive_failures = 0
        logger.debug(
            "Health sample: %s (%d consecutive failures)",
            self.status.overall,
            self.status.consecutive_failures,
        )
        return self.get_status()

    # Triggers

    async def evaluate_triggers(self) -> list[Trigger]:
        now = self.clock()
        state: AgentState | None = None
        fired: list[Trigger] = []
        for trigger in list(self._triggers.values()):
            if not trigger.enabled or trigger.cooling_down(now):
                continue
            if trigger.condition.type == "duration_exceeded" and state is None:
                state = self.executor.get_state()
            if self._condition_met(trigger, now, state):
                self._dispatch(trigger, now)
                fired.append(trigger)
        return fired

    def _condition_met(self, trigger: Trigger, now: float, state: AgentState | None) -> bool:
        condition = trigger.condition
        if condition.type == "status_equals":
            return self.status.overall == condition.pattern
        if condition.type == "threshold_exceeded":
            if trigger.type == "error_rate":
                return self.recent_error_count() > (condition.threshold or 0)
            return False
        if condition.type == "duration_exceeded":
            if trigger.type == "inactivity" and state is not None:
                if state.status not in ACTIVE_AGENT_STATUSES:
                    return False
                return now - state.last_activity_at > (condition.duration_seconds or 0)
            return False
        if condition.type == "consecutive_failures":
            return self.status.consecutive_failures > (condition.threshold or 0)
        return False

    def _dispatch(self, trigger: Trigger, now: float) -> None:
        trigger.last_triggered = now
        trigger.last_triggered_at = utcnow_iso()
        trigger.trigger_count += 1
        logger.warning(
            "Trigger activated: %s (%s -> %s)", trigger.id, trigger.name, trigger.action.type
        )
        self._track(
            asyncio.get_running_loop().create_task(
                self._execute_action(trigger), name=f"overseer-trigger-{trigger.id}"
            )
        )

    async def _execute_action(self, trigger: Trigger) -> None:
        action = trigger.action
        try:
            if action.type == "restart":
                logger.info("Trigger action: restarting executor")
                await self.executor.restart(self.config.restart_delay_seconds)
            elif action.type == "recover":
                kind = action.params.get("trigger") or "health_check"
                logger.info("Trigger action: recovery (%s)", kind)
                await self.executor.trigger_recovery(f"Auto-triggered by {trigger.name}", kind)
            elif action.type == "pause":
                logger.info("Trigger action: pausing executor")
                self.executor.pause()
            elif action.type == "notify":
                logger.info("Trigger action: notification for %s", trigger.name)
            elif action.type == "escalate":
                logger.warning(
                    "Trigger action: escalation required for %s (overall %s)",
                    trigger.name,
                    self.status.overall,
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Trigger action failed: %s", trigger.id)

    # Events

    def _handle_event(self, event: AgentEvent) -> None:
        failed_result = event.type in RESULT_EVENTS and not event.data.get("success", True)
        if event.type in FAILURE_EVENTS or failed_result:
            self._error_times.append(self.clock())
            limit = self.config.error_buffer_limit
            if len(self._error_times) > limit:
                del self._error_times[:-limit]

        if event.type == "health_check":
            if event.data.get("healthy", True):
                self.status.consecutive_failures = 0
            else:
                self.status.consecutive_failures += 1


async def wait_until_settled(executor: Executor, monitor: HealthMonitor | None = None) -> None:
    """Wait until no trigger action is in flight and no executor restart is pending or running.

    A trigger action may restart the executor, and the restarted loop may in turn
    lead to new trigger actions, so both sides are drained until neither has work.
    """
    while True:
        if monitor is not None:
            await monitor.drain()
        await executor.join()
        if not executor.busy and (monitor is None or not monitor.busy):
            return
