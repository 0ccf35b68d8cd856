from __future__ import annotations

import re
from pathlib import Path

import pytest

from code_executor.services.workspace import Workspace, open_workspace


def test_create_makes_unique_session_directories(tmp_path: Path) -> None:
    first = Workspace.create(tmp_path)
    second = Workspace.create(tmp_path)

    assert first.root != second.root
    assert first.root.is_dir() and second.root.is_dir()
    assert first.root.parent == tmp_path.resolve()
    assert re.fullmatch(r"[0-9a-f]{16}", first.session_id)


def test_write_text_stays_inside_workspace(tmp_path: Path) -> None:
    workspace = Workspace.create(tmp_path)

    target = workspace.write_text("main.py", "print(1)\n")
    assert target.parent == workspace.root
    assert target.read_text(encoding="utf-8") == "print(1)\n"

    for bad in ("../escape.py", "sub/dir.py", "..", ""):
        with pytest.raises(ValueError):
            workspace.write_text(bad, "x")
    assert not (tmp_path / "escape.py").exists()


def test_destroy_is_recursive_and_idempotent(tmp_path: Path) -> None:
    workspace = Workspace.create(tmp_path)
    workspace.write_text("a.txt", "a")

    workspace.destroy()
    workspace.destroy()

    assert not workspace.root.exists()


@pytest.mark.asyncio
async def test_open_workspace_removes_directory_on_error(tmp_path: Path) -> None:
    seen: list[Path] = []

    with pytest.raises(RuntimeError):
        async with open_workspace(tmp_path) as workspace:
            seen.append(workspace.root)
            workspace.write_text("main.cpp", "int main() {}")
            raise RuntimeError("boom")

    assert seen and not seen[0].exists()
    assert list(tmp_path.iterdir()) == []
