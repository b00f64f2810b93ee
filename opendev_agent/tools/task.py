"""Control tools: task completion and clarifying questions.

Neither tool touches the filesystem. ``completeTask`` is a terminal marker
and ``askQuestion`` pauses the execution; both are interpreted by the
mediator and orchestrator rather than executed for side effects.
"""

from typing import Any

from opendev_agent.tools.registry import Tool, ToolResult


class CompleteTaskTool(Tool):
    name = "completeTask"
    description = "Mark the task as complete with a summary of what was accomplished."
    parameters = {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "A summary of what was accomplished to complete the task",
            },
        },
        "required": ["summary"],
        "additionalProperties": False,
    }

    async def execute(self, summary: str, **kwargs: Any) -> ToolResult:
        return ToolResult(success=True, output=summary or "Task marked as complete")


class AskQuestionTool(Tool):
    name = "askQuestion"
    description = (
        "Ask the user a clarifying question when requirements are ambiguous or more "
        "information is needed. This will pause execution until the user responds."
    )
    parameters = {
        "type": "object",
        "properties": {
            "question": {
                "type": "string",
                "description": "The clarifying question to ask the user",
            },
            "context": {
                "type": "string",
                "description": "Additional context about why this question is being asked",
            },
        },
        "required": ["question"],
        "additionalProperties": False,
    }

    def describe(self, requires_approval: bool) -> str:
        return self.description

    async def execute(self, question: str, context: str | None = None, **kwargs: Any) -> ToolResult:
        return ToolResult(success=False, error="askQuestion is handled by the execution orchestrator")
