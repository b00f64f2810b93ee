"""File tools confined to the project's working directory."""

from pathlib import Path
from typing import Any

from opendev_agent.config import get_config
from opendev_agent.exceptions import PathTraversalError
from opendev_agent.logging import get_logger
from opendev_agent.paths import validate_path
from opendev_agent.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def _path_schema(description: str) -> dict[str, Any]:
    return {"type": "string", "description": description}


def _working_directory(kwargs: dict[str, Any]) -> Path:
    raw = kwargs.get("_working_directory")
    if raw is None:
        raise PathTraversalError(".", "<unset>")
    return Path(raw)


class ReadFileTool(Tool):
    """Read file contents."""

    name = "readFile"
    description = "Read the contents of a file."
    parameters = {
        "type": "object",
        "properties": {
            "path": _path_schema("The path to the file to read, relative to the working directory"),
        },
        "required": ["path"],
        "additionalProperties": False,
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        try:
            file_path = validate_path(_working_directory(kwargs), path)
            if not file_path.is_file():
                return ToolResult(success=False, error=f"File not found: {path}")

            max_size = get_config().tools.max_read_bytes
            file_size = file_path.stat().st_size
            if max_size > 0 and file_size > max_size:
                return ToolResult(
                    success=False,
                    error=f"File too large: {file_size} bytes (max {max_size})",
                )
            return ToolResult(success=True, output=file_path.read_text(encoding="utf-8", errors="replace"))
        except PathTraversalError as e:
            return ToolResult(success=False, error=str(e))
        except OSError as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))


class ListDirectoryTool(Tool):
    """List directory entries, directories suffixed with ``/``."""

    name = "listDirectory"
    description = "List the contents of a directory."
    parameters = {
        "type": "object",
        "properties": {
            "path": _path_schema("The path to the directory to list, relative to the working directory"),
        },
        "required": ["path"],
        "additionalProperties": False,
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        try:
            dir_path = validate_path(_working_directory(kwargs), path)
            if not dir_path.is_dir():
                return ToolResult(success=False, error=f"Directory not found: {path}")
            entries = sorted(
                f"{entry.name}/" if entry.is_dir() else entry.name
                for entry in dir_path.iterdir()
            )
            return ToolResult(success=True, output="\n".join(entries) or "(empty directory)")
        except PathTraversalError as e:
            return ToolResult(success=False, error=str(e))
        except OSError as e:
            log.error("List directory failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))


class WriteFileTool(Tool):
    """Create or overwrite a file."""

    name = "writeFile"
    description = "Create or overwrite a file with new content."
    parameters = {
        "type": "object",
        "properties": {
            "path": _path_schema("The path to the file to write, relative to the working directory"),
            "content": {"type": "string", "description": "The content to write to the file"},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        try:
            file_path = validate_path(_working_directory(kwargs), path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
            return ToolResult(success=True, output=f"File written: {path}")
        except PathTraversalError as e:
            return ToolResult(success=False, error=str(e))
        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))


class EditFileTool(Tool):
    """Search-and-replace the first occurrence of a text fragment."""

    name = "editFile"
    description = "Edit a file by searching for text and replacing it."
    parameters = {
        "type": "object",
        "properties": {
            "path": _path_schema("The path to the file to edit, relative to the working directory"),
            "search": {"type": "string", "description": "The exact text to search for in the file"},
            "replace": {"type": "string", "description": "The text to replace the search text with"},
        },
        "required": ["path", "search", "replace"],
        "additionalProperties": False,
    }

    async def execute(self, path: str, search: str, replace: str, **kwargs: Any) -> ToolResult:
        try:
            file_path = validate_path(_working_directory(kwargs), path)
            if not file_path.is_file():
                return ToolResult(success=False, error=f"File not found: {path}")

            content = file_path.read_text(encoding="utf-8")
            if not search or search not in content:
                return ToolResult(success=False, error=f"Search text not found in file: {path}")

            file_path.write_text(content.replace(search, replace, 1), encoding="utf-8")
            return ToolResult(success=True, output=f"File edited: {path}")
        except PathTraversalError as e:
            return ToolResult(success=False, error=str(e))
        except OSError as e:
            log.error("Edit failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))


class DeleteFileTool(Tool):
    """Delete a single file."""

    name = "deleteFile"
    description = "Delete a file."
    parameters = {
        "type": "object",
        "properties": {
            "path": _path_schema("The path to the file to delete, relative to the working directory"),
        },
        "required": ["path"],
        "additionalProperties": False,
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        try:
            file_path = validate_path(_working_directory(kwargs), path)
            if not file_path.is_file():
                return ToolResult(success=False, error=f"File not found: {path}")
            file_path.unlink()
            return ToolResult(success=True, output=f"File deleted: {path}")
        except PathTraversalError as e:
            return ToolResult(success=False, error=str(e))
        except OSError as e:
            log.error("Delete failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
