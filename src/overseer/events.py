from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from overseer.models import utcnow_iso

logger = logging.getLogger(__name__)

EventType = Literal[
    "plan_started",
    "plan_completed",
    "plan_failed",
    "task_started",
    "task_completed",
    "task_failed",
    "iteration_started",
    "iteration_completed",
    "build_started",
    "build_completed",
    "test_started",
    "test_completed",
    "recovery_triggered",
    "recovery_completed",
    "agent_paused",
    "agent_resumed",
    "agent_stopped",
    "health_check",
]


@dataclass(slots=True)
class AgentEvent:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)


EventListener = Callable[[AgentEvent], None]


class EventBus:
    """Observer registry. A failing listener never stops delivery to the others."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: AgentEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event.type)

    def __len__(self) -> int:
        return len(self._listeners)
