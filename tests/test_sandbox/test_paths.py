from pathlib import Path

import pytest

from opendev_agent.exceptions import PathTraversalError
from opendev_agent.paths import validate_path


def test_rejects_parent_escape(tmp_path: Path):
    with pytest.raises(PathTraversalError) as exc_info:
        validate_path(tmp_path, "../escape.txt")
    assert "outside the working directory" in str(exc_info.value)


def test_rejects_absolute_path_outside_root(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        validate_path(tmp_path / "root", str(tmp_path / "other" / "file.txt"))


def test_rejects_sibling_sharing_prefix(tmp_path: Path):
    root = tmp_path / "app"
    with pytest.raises(PathTraversalError):
        validate_path(root, "../app-secrets/key.txt")


def test_accepts_root_itself(tmp_path: Path):
    assert validate_path(tmp_path, ".") == tmp_path


def test_accepts_deeply_nested_paths(tmp_path: Path):
    deep = "/".join(f"level{idx}" for idx in range(40)) + "/file.txt"
    resolved = validate_path(tmp_path, deep)
    assert resolved.name == "file.txt"
    assert str(resolved).startswith(str(tmp_path))


def test_normalizes_internal_parent_segments(tmp_path: Path):
    resolved = validate_path(tmp_path, "src/../README.md")
    assert resolved == Path(str(tmp_path)) / "README.md"
