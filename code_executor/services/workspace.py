from __future__ import annotations

import asyncio
import os
import secrets
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import structlog


logger = structlog.get_logger(__name__)


class Workspace:
    """Ephemeral directory owned by a single execution."""

    def __init__(self, root: Path, session_id: str) -> None:
        self.root = root
        self.session_id = session_id

    @classmethod
    def create(cls, base_dir: str | os.PathLike[str]) -> "Workspace":
        base = Path(base_dir)
        base.mkdir(parents=True, exist_ok=True)
        session_id = secrets.token_hex(8)
        root = base / session_id
        # exist_ok=False: a collision must never hand out someone else's directory
        root.mkdir(mode=0o700, exist_ok=False)
        return cls(root.resolve(), session_id)

    def path(self, filename: str) -> Path:
        if not filename or filename in (".", "..") or Path(filename).name != filename:
            raise ValueError(f"Refusing to place {filename!r} outside the workspace")
        return self.root / filename

    def write_text(self, filename: str, content: str) -> Path:
        target = self.path(filename)
        # lone surrogates cannot be encoded; they are written as "?"
        with open(target, "w", encoding="utf-8", errors="replace", newline="") as fh:
            fh.write(content)
        return target

    def destroy(self) -> None:
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(
                "Workspace cleanup error",
                session_id=self.session_id,
                path=str(self.root),
                error=str(exc),
            )


@asynccontextmanager
async def open_workspace(base_dir: str | os.PathLike[str]) -> AsyncIterator[Workspace]:
    """Create a workspace and guarantee its removal when the block exits."""
    workspace = await asyncio.to_thread(Workspace.create, base_dir)
    try:
        yield workspace
    finally:
        await asyncio.to_thread(workspace.destroy)
