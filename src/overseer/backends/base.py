from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from overseer.errors import BackendExecutionError, BackendProcessError, BackendTimeoutError

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
]


class AgentBackend(ABC):
    """A code-generation agent that answers one prompt as a stream of text chunks.

    Implementations are async generators. Failures surface as
    ``BackendExecutionError`` with ``retriable`` telling ``ResilientBackend``
    whether another attempt against the same backend is worthwhile.
    """

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]: ...
