from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from overseer.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 240.0

    @property
    def tries_per_backend(self) -> int:
        return max(0, self.max_retries) + 1

    def delay_before(self, attempt: int) -> float:
        """Exponential backoff before ``attempt`` (0 is the first try and never waits)."""
        if attempt <= 0:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(slots=True)
class GenerationAttempt:
    """One try of one code-generation prompt against one backend."""

    backend: str
    attempt: int
    fallback: bool
    succeeded: bool = False
    error: str | None = None
    retriable: bool = True
    delay_seconds: float = 0.0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


AttemptHook = Callable[[GenerationAttempt], None]


class ResilientBackend(AgentBackend):
    """Answers a prompt from the first backend in the chain that succeeds.

    Each backend gets ``RetryPolicy.tries_per_backend`` tries with exponential
    backoff, cut short by a non-retriable error. Later backends are fallbacks and
    only run once every earlier one is exhausted. The tries of the latest call are
    kept in ``attempts``.
    """

    def __init__(
        self,
        backends: Sequence[tuple[str, AgentBackend]],
        retry_policy: RetryPolicy | None = None,
        on_attempt: AttemptHook | None = None,
    ) -> None:
        chain: list[tuple[str, AgentBackend]] = []
        for name, backend in backends:
            if all(name != known for known, _ in chain):
                chain.append((name, backend))
        if not chain:
            raise ValueError("ResilientBackend needs at least one backend")
        self.backends = chain
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_attempt = on_attempt
        self.attempts: list[GenerationAttempt] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        self.attempts = []
        for position, (name, backend) in enumerate(self.backends):
            chunks = await self._answer_with(
                name, backend, position > 0, system_prompt, user_prompt, context
            )
            if chunks is not None:
                for chunk in chunks:
                    yield chunk
                return

        failures = [
            f"{attempt.backend}[{attempt.attempt}]: {attempt.error}" for attempt in self.attempts
        ]
        raise BackendExecutionError(
            "All backend attempts failed. " + "; ".join(failures[-6:]),
            retriable=False,
        )

    async def _answer_with(
        self,
        name: str,
        backend: AgentBackend,
        fallback: bool,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str] | None:
        for attempt in range(self.retry_policy.tries_per_backend):
            record = GenerationAttempt(
                backend=name,
                attempt=attempt,
                fallback=fallback,
                delay_seconds=self.retry_policy.delay_before(attempt),
            )
            if record.delay_seconds > 0:
                await asyncio.sleep(record.delay_seconds)
            started = time.monotonic()
            try:
                chunks = await self._collect(backend, system_prompt, user_prompt, context)
            except BackendExecutionError as exc:
                record.error = str(exc) or type(exc).__name__
                record.retriable = exc.retriable
                chunks = None
            else:
                record.succeeded = True
            record.duration_seconds = time.monotonic() - started
            self._record(record)
            if chunks is not None:
                return chunks
            if not record.retriable:
                break
        return None

    async def _collect(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        timeout = self.retry_policy.timeout_seconds
        stream = backend.execute(system_prompt, user_prompt, context)
        try:
            return await asyncio.wait_for(self._drain(stream), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Code generation timed out after {timeout:.1f}s", retriable=True
            ) from exc

    @staticmethod
    async def _drain(stream: AsyncIterator[str]) -> list[str]:
        return [chunk async for chunk in stream]

    def _record(self, attempt: GenerationAttempt) -> None:
        self.attempts.append(attempt)
        if self.on_attempt is not None:
            self.on_attempt(attempt)
