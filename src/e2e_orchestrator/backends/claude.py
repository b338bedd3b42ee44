from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from e2e_orchestrator.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    JsonLineDecoder,
    STREAM_LIMIT,
)


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        return ""

    async def execute(self, prompt: str) -> AsyncIterator[str]:
        command = self.build_command(prompt)
        self._emit({"event": "agent_cli_start", "command": command[:2], "prompt_chars": len(prompt)})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend=self.name, retriable=False
            )

        stderr_task = (
            asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        )
        try:
            decoder = JsonLineDecoder()
            result_text: str | None = None
            transcript: list[str] = []
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                event, noise = decoder.feed(line)
                if noise is not None:
                    transcript.append(noise)
                if event is None:
                    continue
                if event.get("type") == "result":
                    result = event.get("result")
                    result_text = result if isinstance(result, str) else ""
                    self._emit({"event": "agent_result", "is_error": bool(event.get("is_error"))})
                    continue
                content = self._extract_content(event)
                if content:
                    transcript.append(content)

            leftover = decoder.flush()
            if leftover:
                transcript.append(leftover)
            if result_text:
                yield result_text
            elif transcript:
                yield "\n".join(transcript)

            return_code = await process.wait()
            stderr_output = ""
            if stderr_task is not None:
                stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
            self._emit({"event": "agent_cli_exit", "exit_code": return_code})
            if return_code != 0:
                raise BackendExecutionError(
                    f"Claude backend failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
