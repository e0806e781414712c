from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from overseer.recovery import RecoveryStrategy, default_recovery_strategies

BackendName = Literal["codex", "claude"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    workspace: str = "."
    build_command: str = "npm run build"
    test_command: str = "npm test -- --passWithNoTests"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 240.0


@dataclass(slots=True)
class AgentConfig:
    test_before_commit: bool = True
    build_before_commit: bool = True
    auto_recovery: bool = True
    require_planned_files: bool = True
    watchdog_interval_seconds: float = 30.0
    health_check_interval_seconds: float = 10.0
    task_timeout_seconds: float = 300.0
    iteration_delay_seconds: float = 1.0
    activity_log_limit: int = 1000
    recovery_strategies: list[RecoveryStrategy] = field(
        default_factory=default_recovery_strategies
    )

    def strategy_for(self, trigger: str) -> RecoveryStrategy | None:
        for strategy in self.recovery_strategies:
            if strategy.trigger == trigger:
                return strategy
        return None


@dataclass(slots=True)
class MonitorConfig:
    interval_seconds: float = 10.0
    liveness_url: str = ""
    probe_timeout_seconds: float = 5.0
    slow_response_seconds: float = 2.0
    restart_delay_seconds: float = 2.0
    error_window_seconds: float = 300.0
    error_buffer_limit: int = 100


@dataclass(slots=True)
class PlansConfig:
    max_iterations: int = 50
    max_task_attempts: int = 3
    api_path_template: str = "app/api{route}/route.ts"
    state_file: str = ".overseer/plans.json"


@dataclass(slots=True)
class OverseerConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    plans: PlansConfig = field(default_factory=PlansConfig)

    @classmethod
    def default(cls) -> OverseerConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OverseerConfig:
        agent_data = dict(data.get("agent", {}))
        recovery = data.get("recovery")
        if isinstance(recovery, dict):
            agent_data["recovery_strategies"] = [
                RecoveryStrategy(
                    trigger=trigger,  # type: ignore[arg-type]
                    actions=list(section.get("actions", [])),
                    max_attempts=int(section.get("max_attempts", 3)),
                    cooldown_seconds=float(section.get("cooldown_seconds", 5.0)),
                )
                for trigger, section in recovery.items()
                if isinstance(section, dict)
            ]
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agent=AgentConfig(**agent_data),
            monitor=MonitorConfig(**data.get("monitor", {})),
            plans=PlansConfig(**data.get("plans", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "workspace": self.project.workspace,
                "build_command": self.project.build_command,
                "test_command": self.project.test_command,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agent": {
                "test_before_commit": self.agent.test_before_commit,
                "build_before_commit": self.agent.build_before_commit,
                "auto_recovery": self.agent.auto_recovery,
                "require_planned_files": self.agent.require_planned_files,
                "watchdog_interval_seconds": self.agent.watchdog_interval_seconds,
                "health_check_interval_seconds": self.agent.health_check_interval_seconds,
                "task_timeout_seconds": self.agent.task_timeout_seconds,
                "iteration_delay_seconds": self.agent.iteration_delay_seconds,
                "activity_log_limit": self.agent.activity_log_limit,
            },
            "monitor": {
                "interval_seconds": self.monitor.interval_seconds,
                "liveness_url": self.monitor.liveness_url,
                "probe_timeout_seconds": self.monitor.probe_timeout_seconds,
                "slow_response_seconds": self.monitor.slow_response_seconds,
                "restart_delay_seconds": self.monitor.restart_delay_seconds,
                "error_window_seconds": self.monitor.error_window_seconds,
                "error_buffer_limit": self.monitor.error_buffer_limit,
            },
            "plans": {
                "max_iterations": self.plans.max_iterations,
                "max_task_attempts": self.plans.max_task_attempts,
                "api_path_template": self.plans.api_path_template,
                "state_file": self.plans.state_file,
            },
            "recovery": {
                strategy.trigger: {
                    "actions": list(strategy.actions),
                    "max_attempts": strategy.max_attempts,
                    "cooldown_seconds": strategy.cooldown_seconds,
                }
                for strategy in self.agent.recovery_strategies
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _render_table(lines: list[str], header: str, values: dict[str, Any]) -> None:
    lines.append(f"[{header}]")
    for key, value in values.items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")


def dumps_toml(config: OverseerConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["project", "backend", "agent", "monitor", "plans"]:
        _render_table(lines, section, data[section])
    for trigger, values in data["recovery"].items():
        _render_table(lines, f"recovery.{trigger}", values)
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OverseerConfig:
    if not path.exists():
        return OverseerConfig.default()
    return OverseerConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: OverseerConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
