from __future__ import annotations

import sys
import time
from pathlib import Path

import psutil
import pytest

from code_executor.core.config import Settings
from code_executor.services.executor import ExecutionEngine


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        workspace_root=str(tmp_path / "workspaces"),
        python_bin=sys.executable,
    )


@pytest.fixture
def engine(settings: Settings) -> ExecutionEngine:
    return ExecutionEngine(settings)


@pytest.fixture
def workspace_entries(settings: Settings):
    def _entries() -> list[Path]:
        root = Path(settings.workspace_root)
        return sorted(root.iterdir()) if root.exists() else []
    return _entries


def _is_gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture
def process_gone():
    def _wait(pid: int, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if _is_gone(pid):
                return True
            time.sleep(0.05)
        return _is_gone(pid)
    return _wait


@pytest.fixture
def live_children():
    def _children() -> list[psutil.Process]:
        alive = []
        for child in psutil.Process().children(recursive=True):
            if not _is_gone(child.pid):
                alive.append(child)
        return alive
    return _children
