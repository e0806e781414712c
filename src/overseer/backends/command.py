from __future__ import annotations

import asyncio
import json
import os
import tempfile
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

from overseer.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

PROMPT_PLACEHOLDER = "{prompt}"

PRESET_COMMANDS: dict[str, list[str]] = {
    "claude": ["claude", "-p", PROMPT_PLACEHOLDER, "--output-format", "stream-json"],
    "codex": ["codex", "exec", "--json", PROMPT_PLACEHOLDER],
}


class CommandBackend(AgentBackend):
    """Streams a code-generation CLI that prints text or JSON events per line."""

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        working_directory: Path | None = None,
    ) -> None:
        if PROMPT_PLACEHOLDER not in command:
            raise ValueError(f"Backend command for {name} must contain {PROMPT_PLACEHOLDER}")
        self.name = name
        self.command = list(command)
        self.working_directory = working_directory

    @classmethod
    def preset(cls, name: str, working_directory: Path | None = None) -> CommandBackend:
        try:
            command = PRESET_COMMANDS[name]
        except KeyError as exc:
            raise ValueError(f"Unsupported backend preset: {name}") from exc
        return cls(name, command, working_directory=working_directory)

    @staticmethod
    def render_prompt(system_prompt: str, user_prompt: str, context: dict[str, Any]) -> str:
        parts = [system_prompt.strip(), user_prompt.strip()] if system_prompt else [user_prompt]
        if context:
            parts.append("Context JSON:")
            parts.append(json.dumps(context, ensure_ascii=False, indent=2))
        return "\n\n".join(part for part in parts if part)

    def build_command(self, prompt: str) -> list[str]:
        return [prompt if part == PROMPT_PLACEHOLDER else part for part in self.command]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        for key in ("delta", "text", "result"):
            value = event.get(key)
            if isinstance(value, str):
                return value
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        prompt = self.render_prompt(system_prompt, user_prompt, context)
        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as prompt_file:
            prompt_file.write(system_prompt)
            prompt_file.flush()
            env = os.environ.copy()
            env["OVERSEER_SYSTEM_PROMPT_FILE"] = prompt_file.name

            try:
                process = await asyncio.create_subprocess_exec(
                    *self.build_command(prompt),
                    cwd=str(self.working_directory) if self.working_directory else None,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise BackendProcessError(
                    f"{self.name} binary not found: {self.command[0]}",
                    backend=self.name,
                    retriable=False,
                ) from exc

            if process.stdout is None:
                raise BackendProcessError(
                    f"{self.name} backend did not expose stdout.",
                    backend=self.name,
                    retriable=False,
                )

            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line
                    continue
                parse_buffer = ""
                if isinstance(event, dict):
                    content = self._extract_content(event)
                    if content:
                        yield content
                else:
                    yield line

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            if return_code != 0:
                raise BackendExecutionError(
                    f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
