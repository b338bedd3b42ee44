from __future__ import annotations

import asyncio
import os
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

INSTALL_HINT = "Install it: curl https://cursor.com/install -fsS | bash"
_TOOL_KINDS = {
    "readToolCall": "read",
    "writeToolCall": "write",
    "editToolCall": "edit",
}


class CursorAgentBackend(AgentBackend):
    """Drives the Cursor ``agent`` CLI in print mode."""

    name = "cursor"

    def __init__(
        self,
        binary: str = "agent",
        *,
        model: str = "auto",
        working_directory: Path | None = None,
        api_key: str | None = None,
        api_key_env: str = "CURSOR_API_KEY",
        debug: bool = False,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.working_directory = working_directory
        self.api_key = api_key
        self.api_key_env = api_key_env
        self.debug = debug
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "--print", "--force", "--model", self.model]
        if self.debug:
            command.extend(["--output-format", "stream-json", "--stream-partial-output"])
        command.append(prompt)
        return command

    def _resolve_api_key(self) -> str:
        api_key = self.api_key or os.environ.get(self.api_key_env, "")
        if not api_key.strip():
            raise BackendProcessError(
                f"{self.api_key_env} not set", backend=self.name, retriable=False
            )
        return api_key

    @staticmethod
    def describe_tool_call(tool_call: dict[str, Any]) -> tuple[str, str]:
        shell = tool_call.get("shellToolCall")
        if isinstance(shell, dict):
            args = shell.get("args") or {}
            command = str(args.get("command", "")) if isinstance(args, dict) else ""
            if "agent-browser" in command:
                return "browser", command
            return "shell", command[:80]
        for key, kind in _TOOL_KINDS.items():
            payload = tool_call.get(key)
            if isinstance(payload, dict):
                args = payload.get("args") or {}
                path = args.get("path", "unknown") if isinstance(args, dict) else "unknown"
                return kind, str(path)
        for key in tool_call:
            if key.endswith("ToolCall"):
                return key.removesuffix("ToolCall"), ""
        return "unknown", ""

    def _handle_stream_event(self, event: dict[str, Any], tool_count: int) -> tuple[int, str | None]:
        """Report one streamed event; returns the tool count and any final result text."""
        event_type = event.get("type")
        subtype = event.get("subtype")
        if event_type == "system" and subtype == "init":
            self._emit({"event": "agent_init", "model": event.get("model") or "unknown"})
        elif event_type == "tool_call" and subtype == "started":
            tool_count += 1
            tool_call = event.get("tool_call")
            kind, detail = self.describe_tool_call(tool_call if isinstance(tool_call, dict) else {})
            self._emit(
                {"event": "agent_tool_call", "index": tool_count, "kind": kind, "detail": detail}
            )
        elif event_type == "result":
            duration_ms = event.get("duration_ms") or 0
            self._emit(
                {
                    "event": "agent_result",
                    "duration_seconds": round(float(duration_ms) / 1000, 1),
                    "tool_calls": tool_count,
                }
            )
            result = event.get("result")
            return tool_count, result if isinstance(result, str) else ""
        return tool_count, None

    async def execute(self, prompt: str) -> AsyncIterator[str]:
        api_key = self._resolve_api_key()
        env = os.environ.copy()
        env[self.api_key_env] = api_key
        command = self.build_command(prompt)
        self._emit(
            {
                "event": "agent_cli_start",
                "command": command[:5],
                "prompt_chars": len(prompt),
                "stream": self.debug,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.binary} CLI not found. {INSTALL_HINT}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Agent backend did not expose stdout.", backend=self.name, retriable=False
            )

        stderr_task = (
            asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        )
        try:
            saw_output = False
            raw_lines: list[str] = []
            result_text: str | None = None
            tool_count = 0
            decoder = JsonLineDecoder()
            async for raw_line in process.stdout:
                text = raw_line.decode("utf-8", errors="replace")
                if not text.strip():
                    continue
                saw_output = True
                if not self.debug:
                    yield text
                    continue
                raw_lines.append(text)
                event, noise = decoder.feed(text.strip())
                if noise is not None:
                    self._emit({"event": "agent_stream_unparsed", "line": noise[:200]})
                if event is not None:
                    tool_count, final = self._handle_stream_event(event, tool_count)
                    if final is not None:
                        result_text = final

            if self.debug:
                leftover = decoder.flush()
                if leftover:
                    self._emit({"event": "agent_stream_unparsed", "line": leftover[:200]})
                if result_text:
                    yield result_text
                elif raw_lines:
                    yield "".join(raw_lines)

            return_code = await process.wait()
            stderr_output = ""
            if stderr_task is not None:
                stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
            self._emit(
                {"event": "agent_cli_exit", "exit_code": return_code, "stderr": stderr_output[:400]}
            )
            if return_code != 0 and not saw_output:
                raise BackendExecutionError(
                    f"Agent failed with exit code {return_code}: {stderr_output}",
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
