"""Command tool running shell commands inside the working directory."""

import asyncio
import os
import re
import shlex
from typing import Any

from opendev_agent.config import get_config
from opendev_agent.logging import get_logger
from opendev_agent.tools.registry import Tool, ToolResult

log = get_logger(__name__)

_SEPARATORS = {";", "&&", "||", "|", "&"}


def split_command_segments(command: str) -> list[str]:
    """Split a shell command on control operators into normalized segments."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[str] = []
    current: list[str] = []
    for token in lexer:
        if token in _SEPARATORS:
            if current:
                segments.append(" ".join(current))
            current = []
            continue
        current.append(token)
    if current:
        segments.append(" ".join(current))
    return segments


def find_blocked_pattern(command: str, blocked_patterns: list[str]) -> str | None:
    """Return the blocked pattern a command matches, or ``None``.

    Single-word patterns match a segment's executable; patterns containing
    whitespace match a whole segment or its leading words.
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return "empty command"
    try:
        segments = split_command_segments(cleaned)
    except ValueError:
        return "unparseable command"

    for raw in blocked_patterns or []:
        pattern = str(raw or "").strip()
        if not pattern:
            continue
        for segment in segments:
            if re.search(r"\s", pattern):
                if segment == pattern or segment.startswith(pattern + " "):
                    return pattern
            elif segment.split(" ", 1)[0] == pattern or segment == pattern:
                return pattern
    return None


class ExecuteCommandTool(Tool):
    """Execute a shell command with the working directory as cwd."""

    name = "executeCommand"
    description = (
        "Execute a shell command. Always provide a clear description of what the command does."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "description": {
                "type": "string",
                "description": "A brief description of what this command does",
            },
        },
        "required": ["command", "description"],
        "additionalProperties": False,
    }

    def __init__(self):
        self.config = get_config()
        # Registry deadline sits just past the subprocess deadline so the
        # process is killed here rather than abandoned.
        self.timeout_seconds = float(self.config.tools.command.timeout) + 5.0

    async def execute(self, command: str, description: str = "", **kwargs: Any) -> ToolResult:
        """Run ``command``; non-zero exit is a failed result."""
        blocked = find_blocked_pattern(command, self.config.tools.command.blocked)
        if blocked:
            log.warning("Blocked command", command=command, pattern=blocked)
            return ToolResult(success=False, error=f"Command blocked: {blocked}")

        working_directory = kwargs.get("_working_directory")
        timeout = max(1, int(self.config.tools.command.timeout))

        log.info("Executing command", command=command, cwd=str(working_directory), timeout=timeout)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(working_directory) if working_directory else None,
                env=os.environ.copy(),
            )
        except OSError as e:
            log.error("Command failed to start", command=command, error=str(e))
            return ToolResult(success=False, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ToolResult(success=False, error=f"Command timed out after {timeout}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        max_chars = self.config.tools.command.max_output_chars
        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")
        if max_chars > 0 and len(stdout_text) > max_chars:
            stdout_text = stdout_text[:max_chars] + f"\n... [truncated, {len(stdout_text)} total chars]"

        if process.returncode != 0:
            return ToolResult(
                success=False,
                output=stdout_text,
                error=stderr_text.strip() or f"Command exited with code {process.returncode}",
            )
        return ToolResult(success=True, output=stdout_text or "(no output)")
