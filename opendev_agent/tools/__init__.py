"""Tools package for OpenDev Agent."""

from opendev_agent.tools.filesystem import (
    DeleteFileTool,
    EditFileTool,
    ListDirectoryTool,
    ReadFileTool,
    WriteFileTool,
)
from opendev_agent.tools.registry import Tool, ToolRegistry, ToolResult
from opendev_agent.tools.shell import ExecuteCommandTool
from opendev_agent.tools.task import AskQuestionTool, CompleteTaskTool


def create_default_registry() -> ToolRegistry:
    """Registry with every agent tool registered."""
    registry = ToolRegistry()
    for tool in (
        ReadFileTool(),
        ListDirectoryTool(),
        WriteFileTool(),
        EditFileTool(),
        DeleteFileTool(),
        ExecuteCommandTool(),
        CompleteTaskTool(),
        AskQuestionTool(),
    ):
        registry.register(tool)
    return registry


__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "create_default_registry",
    "ReadFileTool",
    "ListDirectoryTool",
    "WriteFileTool",
    "EditFileTool",
    "DeleteFileTool",
    "ExecuteCommandTool",
    "CompleteTaskTool",
    "AskQuestionTool",
]
