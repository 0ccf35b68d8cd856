from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from code_executor.core.config import Settings
from code_executor.services.limits import ResolvedLimits
from code_executor.services.workspace import Workspace


class ExecutionError(Exception):
    """Base class for failures raised while preparing an execution."""


class InvalidSourceError(ExecutionError):
    """Source text yields an identifier that cannot be used safely."""


@dataclass(frozen=True, slots=True)
class Artifact:
    """Files a driver has materialized inside a workspace."""

    workspace: Path
    source_path: Path
    entry_point: str
    binary_path: Path | None = None


@dataclass(frozen=True, slots=True)
class Invocation:
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    # RLIMIT_AS in MB; None for runtimes governed by their own heap flag
    address_space_mb: int | None = None


class LanguageDriver(ABC):
    name: str
    aliases: tuple[str, ...] = ()

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @abstractmethod
    def prepare(self, workspace: Workspace, source: str) -> Artifact:
        """Write the source into ``workspace`` and describe the resulting files."""

    def compile_step(self, artifact: Artifact, limits: ResolvedLimits) -> Invocation | None:
        return None

    @abstractmethod
    def run_step(self, artifact: Artifact, limits: ResolvedLimits) -> Invocation:
        ...


class PythonDriver(LanguageDriver):
    name = "python"
    aliases = ("py", "python3")

    def prepare(self, workspace: Workspace, source: str) -> Artifact:
        path = workspace.write_text("main.py", source)
        return Artifact(workspace=workspace.root, source_path=path, entry_point="main.py")

    def run_step(self, artifact: Artifact, limits: ResolvedLimits) -> Invocation:
        return Invocation(
            # -s: no user site-packages
            argv=[self.settings.python_bin, "-s", str(artifact.source_path)],
            env={
                "PYTHONNOUSERSITE": "1",
                "PYTHONDONTWRITEBYTECODE": "1",
                "PYTHONUNBUFFERED": "1",
                "PYTHONIOENCODING": "utf-8",
            },
            address_space_mb=limits.memory_mb,
        )


class JavaScriptDriver(LanguageDriver):
    name = "javascript"
    aliases = ("js", "node")

    def prepare(self, workspace: Workspace, source: str) -> Artifact:
        path = workspace.write_text("main.js", source)
        return Artifact(workspace=workspace.root, source_path=path, entry_point="main.js")

    def run_step(self, artifact: Artifact, limits: ResolvedLimits) -> Invocation:
        return Invocation(
            argv=[
                self.settings.node_bin,
                f"--max-old-space-size={limits.memory_mb}",
                str(artifact.source_path),
            ],
        )


_JAVA_CLASS_PATTERN = re.compile(r"public\s+(?:(?:final|abstract|strictfp)\s+)*class\s+([^\s{<]+)")
_JAVA_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]{0,63}")
DEFAULT_JAVA_CLASS = "Main"


def java_class_name(source: str) -> str:
    """Derive the public class name, falling back to ``Main``.

    Raises InvalidSourceError when the declared name is not a plain
    identifier, so it can never be used to build a path or an argument.
    """
    match = _JAVA_CLASS_PATTERN.search(source)
    name = match.group(1) if match else DEFAULT_JAVA_CLASS
    if not _JAVA_IDENTIFIER.fullmatch(name):
        raise InvalidSourceError("Invalid Java class name")
    return name


class JavaDriver(LanguageDriver):
    name = "java"

    def prepare(self, workspace: Workspace, source: str) -> Artifact:
        class_name = java_class_name(source)
        path = workspace.write_text(f"{class_name}.java", source)
        return Artifact(workspace=workspace.root, source_path=path, entry_point=class_name)

    def compile_step(self, artifact: Artifact, limits: ResolvedLimits) -> Invocation | None:
        return Invocation(
            argv=[self.settings.javac_bin, "-encoding", "UTF-8", artifact.source_path.name],
        )

    def run_step(self, artifact: Artifact, limits: ResolvedLimits) -> Invocation:
        return Invocation(
            argv=[
                self.settings.java_bin,
                f"-Xmx{limits.memory_mb}m",
                "-XX:+UseSerialGC",
                "-cp",
                str(artifact.workspace),
                artifact.entry_point,
            ],
        )


def _binary_path(artifact: Artifact) -> Path:
    if artifact.binary_path is None:
        raise ExecutionError(f"No compiled binary recorded for {artifact.source_path.name}")
    return artifact.binary_path


class CppDriver(LanguageDriver):
    name = "cpp"
    aliases = ("c++",)

    def prepare(self, workspace: Workspace, source: str) -> Artifact:
        path = workspace.write_text("main.cpp", source)
        binary = workspace.path("main.exe" if os.name == "nt" else "main")
        return Artifact(
            workspace=workspace.root,
            source_path=path,
            entry_point=binary.name,
            binary_path=binary,
        )

    def compile_step(self, artifact: Artifact, limits: ResolvedLimits) -> Invocation | None:
        return Invocation(
            argv=[
                self.settings.cxx_bin,
                "-O2",
                "-std=gnu++17",
                str(artifact.source_path),
                "-o",
                str(_binary_path(artifact)),
            ],
        )

    def run_step(self, artifact: Artifact, limits: ResolvedLimits) -> Invocation:
        return Invocation(argv=[str(_binary_path(artifact))], address_space_mb=limits.memory_mb)


class DriverRegistry:
    """Case-insensitive lookup of language drivers by name or alias."""

    def __init__(self, drivers: Iterable[LanguageDriver] = ()) -> None:
        self._drivers: dict[str, LanguageDriver] = {}
        self._keys: dict[str, str] = {}
        for driver in drivers:
            self.register(driver)

    def register(self, driver: LanguageDriver) -> None:
        keys = [key.lower() for key in (driver.name, *driver.aliases)]
        for key in keys:
            owner = self._keys.get(key)
            if owner is not None and owner != driver.name:
                raise ValueError(f"Language key {key!r} already registered by {owner!r}")
        for key in keys:
            self._keys[key] = driver.name
        self._drivers[driver.name] = driver

    def get(self, language: str) -> LanguageDriver | None:
        name = self._keys.get(language.strip().lower())
        return self._drivers[name] if name is not None else None

    def languages(self) -> dict[str, list[str]]:
        return {name: list(driver.aliases) for name, driver in self._drivers.items()}


def default_registry(settings: Settings) -> DriverRegistry:
    return DriverRegistry(
        [
            PythonDriver(settings),
            JavaScriptDriver(settings),
            JavaDriver(settings),
            CppDriver(settings),
        ]
    )
