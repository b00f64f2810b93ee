"""Working-directory confinement for filesystem tools."""

import os
from pathlib import Path

from opendev_agent.exceptions import PathTraversalError


def validate_path(working_directory: Path | str, relative_path: str) -> Path:
    """Resolve ``relative_path`` under ``working_directory``.

    The result must be the root itself or nested under ``root + os.sep``.
    Nothing is cached: the root may be reconfigured between calls.

    Raises:
        PathTraversalError: if the resolved path escapes the root
    """
    root = os.path.abspath(os.fspath(working_directory))
    candidate = os.path.abspath(os.path.join(root, str(relative_path or ".")))
    if candidate != root and not candidate.startswith(root.rstrip(os.sep) + os.sep):
        raise PathTraversalError(str(relative_path), root)
    return Path(candidate)
