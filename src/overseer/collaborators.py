from __future__ import annotations

import asyncio
import logging
import re
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from overseer.backends.base import AgentBackend
from overseer.models import BuildResult, TestResult

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
ERROR_PATTERNS = (
    re.compile(r"error[:\s]+(.+)", re.IGNORECASE),
    re.compile(r"Error:\s*(.+)"),
    re.compile(r"failed:\s*(.+)", re.IGNORECASE),
)
WARNING_PATTERN = re.compile(r"warning[:\s]+(.+)", re.IGNORECASE)
PASSED_PATTERN = re.compile(r"(\d+)\s+pass", re.IGNORECASE)
FAILED_PATTERN = re.compile(r"(\d+)\s+fail", re.IGNORECASE)
SKIPPED_PATTERN = re.compile(r"(\d+)\s+skip", re.IGNORECASE)
MAX_PARSED_LINES = 20

CODE_GENERATION_SYSTEM_PROMPT = (
    "You are an autonomous software developer working inside an existing project. "
    "Implement the requested task by writing the planned files to disk. "
    "Follow the project's existing conventions."
)


class CodeGenerator(Protocol):
    async def generate(self, prompt: str, *, project_id: str) -> str: ...


class BuildRunner(Protocol):
    async def run(self) -> BuildResult: ...


class TestRunner(Protocol):
    async def run(self) -> TestResult: ...


class FileProbe(Protocol):
    async def exists(self, path: str) -> bool: ...


def _unique_matches(patterns: tuple[re.Pattern[str], ...], output: str) -> list[str]:
    found: list[str] = []
    for pattern in patterns:
        for match in pattern.finditer(output):
            value = match.group(1).strip()
            if value and value not in found:
                found.append(value)
    return found[:MAX_PARSED_LINES]


def parse_errors(output: str) -> list[str]:
    return _unique_matches(ERROR_PATTERNS, output)


def parse_warnings(output: str) -> list[str]:
    return _unique_matches((WARNING_PATTERN,), output)


def parse_test_counts(output: str) -> tuple[int, int, int]:
    counts = []
    for pattern in (PASSED_PATTERN, FAILED_PATTERN, SKIPPED_PATTERN):
        match = pattern.search(output)
        counts.append(int(match.group(1)) if match else 0)
    return counts[0], counts[1], counts[2]


@dataclass(slots=True)
class CommandOutput:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    used_shell: bool


async def run_command(command: str, cwd: Path) -> CommandOutput:
    """Run a configured command, using a shell only when its syntax needs one."""
    started = time.monotonic()
    command_text = command.strip()
    if not command_text:
        return CommandOutput(1, "", "Command is empty.", 0, False)

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    argv: list[str] = []
    if not used_shell:
        try:
            argv = shlex.split(command_text)
        except ValueError:
            used_shell = True

    try:
        if used_shell:
            process = await asyncio.create_subprocess_shell(
                command_text,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
    except FileNotFoundError as exc:
        duration_ms = int((time.monotonic() - started) * 1000)
        return CommandOutput(127, "", f"Command not found: {exc.filename}", duration_ms, used_shell)

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise
    duration_ms = int((time.monotonic() - started) * 1000)
    return CommandOutput(
        exit_code=process.returncode if process.returncode is not None else 1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_ms=duration_ms,
        used_shell=used_shell,
    )


class BackendCodeGenerator:
    def __init__(
        self,
        backend: AgentBackend,
        *,
        system_prompt: str = CODE_GENERATION_SYSTEM_PROMPT,
        model: str | None = None,
    ) -> None:
        self.backend = backend
        self.system_prompt = system_prompt
        self.model = model

    async def generate(self, prompt: str, *, project_id: str) -> str:
        context: dict[str, str] = {"project_id": project_id}
        if self.model:
            context["model"] = self.model
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=prompt,
            context=context,
        ):
            chunks.append(chunk)
        return "".join(chunks).strip()


class CommandBuildRunner:
    def __init__(self, command: str, workspace: Path) -> None:
        self.command = command
        self.workspace = workspace

    async def run(self) -> BuildResult:
        output = await run_command(self.command, self.workspace)
        errors = parse_errors(output.stderr)
        if output.exit_code != 0 and not errors:
            errors = [output.stderr.strip()[-1000:] or f"exit code {output.exit_code}"]
        return BuildResult(
            success=output.exit_code == 0,
            duration_ms=output.duration_ms,
            errors=errors,
            warnings=parse_warnings(output.stdout),
        )


class CommandTestRunner:
    def __init__(self, command: str, workspace: Path) -> None:
        self.command = command
        self.workspace = workspace

    async def run(self) -> TestResult:
        output = await run_command(self.command, self.workspace)
        passed, failed, skipped = parse_test_counts(output.stdout)
        return TestResult(
            success=output.exit_code == 0,
            duration_ms=output.duration_ms,
            passed=passed,
            failed=failed,
            skipped=skipped,
            errors=parse_errors(output.stderr),
        )


class WorkspaceFileProbe:
    def __init__(self, root: Path) -> None:
        self.root = root

    async def exists(self, path: str) -> bool:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return candidate.exists()
