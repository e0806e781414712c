from overseer.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from overseer.backends.command import CommandBackend
from overseer.backends.resilient import GenerationAttempt, ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CommandBackend",
    "GenerationAttempt",
    "ResilientBackend",
    "RetryPolicy",
]
