"""Sandbox resource-limit tracking for a single agent activation.

A tracker is created for every activation (the initial start, and each resume
after a clarifying question) so usage counters always begin at zero. Each of
the six dimensions is checked on its own; a limit of ``0`` disables it.
"""

import time
from typing import Any

from opendev_agent.exceptions import LimitExceededError
from opendev_agent.logging import get_logger
from opendev_agent.models import SandboxLimits, SandboxUsage

log = get_logger(__name__)


def _percentage(value: float, limit: int) -> int:
    if limit <= 0:
        return 0
    return round((value / limit) * 100)


class SandboxLimitsTracker:
    """Counts activation usage and raises ``LimitExceededError`` past a budget."""

    def __init__(
        self,
        limits: SandboxLimits | None = None,
        clock: Any = time.monotonic,
    ):
        self._limits = limits.model_copy() if limits is not None else SandboxLimits()
        self._clock = clock
        self._started = clock()
        self._usage = SandboxUsage(execution_start_time=time.time())

    def get_limits(self) -> SandboxLimits:
        return self._limits.model_copy()

    def get_usage(self) -> SandboxUsage:
        return self._usage.model_copy()

    def elapsed_seconds(self) -> float:
        return self._clock() - self._started

    def _exceeded(self, limit_type: str, limit: int, current: int, message: str) -> None:
        log.warning(
            "Sandbox limit exceeded",
            limit_type=limit_type,
            limit=limit,
            current=current,
        )
        raise LimitExceededError(limit_type, limit, current, message)

    def check_time_limit(self) -> None:
        """Raise once wall-clock time since activation start reaches the budget."""
        limit = self._limits.max_execution_time_seconds
        if limit <= 0:
            return
        elapsed = self.elapsed_seconds()
        if elapsed >= limit:
            self._exceeded(
                "maxExecutionTimeSeconds",
                limit,
                round(elapsed),
                f"Execution time limit exceeded: {round(elapsed)}s / {limit}s",
            )

    def track_tokens(self, input_tokens: int, output_tokens: int) -> None:
        self._usage.tokens_used += max(0, int(input_tokens or 0)) + max(0, int(output_tokens or 0))
        limit = self._limits.max_tokens
        if limit > 0 and self._usage.tokens_used > limit:
            self._exceeded(
                "maxTokens",
                limit,
                self._usage.tokens_used,
                f"Token budget exceeded: {self._usage.tokens_used} / {limit} tokens",
            )

    def track_file_operation(self) -> None:
        self._usage.file_operations_count += 1
        limit = self._limits.max_file_operations
        if limit > 0 and self._usage.file_operations_count > limit:
            self._exceeded(
                "maxFileOperations",
                limit,
                self._usage.file_operations_count,
                f"File operation limit exceeded: {self._usage.file_operations_count} / {limit} operations",
            )

    def track_command(self) -> None:
        self._usage.commands_count += 1
        limit = self._limits.max_commands
        if limit > 0 and self._usage.commands_count > limit:
            self._exceeded(
                "maxCommands",
                limit,
                self._usage.commands_count,
                f"Command limit exceeded: {self._usage.commands_count} / {limit} commands",
            )

    def track_step(self) -> None:
        self._usage.steps_count += 1
        limit = self._limits.max_steps
        if limit > 0 and self._usage.steps_count > limit:
            self._exceeded(
                "maxSteps",
                limit,
                self._usage.steps_count,
                f"Step limit exceeded: {self._usage.steps_count} / {limit} steps",
            )

    def validate_file_size(self, content_length: int) -> None:
        """Precondition for writes; does not count as a file operation."""
        limit = self._limits.max_file_size_bytes
        if limit > 0 and content_length > limit:
            self._exceeded(
                "maxFileSizeBytes",
                limit,
                content_length,
                f"File size limit exceeded: {content_length} / {limit} bytes",
            )

    def get_usage_summary(self) -> dict[str, Any]:
        """Snapshot of usage against limits, for ``sandboxUsage`` events."""
        elapsed = self.elapsed_seconds()
        limits = self._limits
        usage = self._usage
        return {
            "elapsedTimeSeconds": round(elapsed),
            "tokensUsed": usage.tokens_used,
            "fileOperationsCount": usage.file_operations_count,
            "commandsCount": usage.commands_count,
            "stepsCount": usage.steps_count,
            "limits": limits.to_wire(),
            "percentages": {
                "time": _percentage(elapsed, limits.max_execution_time_seconds),
                "tokens": _percentage(usage.tokens_used, limits.max_tokens),
                "fileOperations": _percentage(usage.file_operations_count, limits.max_file_operations),
                "commands": _percentage(usage.commands_count, limits.max_commands),
                "steps": _percentage(usage.steps_count, limits.max_steps),
            },
        }
