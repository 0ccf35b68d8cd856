from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

import structlog

from code_executor.core.config import Settings, get_settings
from code_executor.services.admission import AdmissionController
from code_executor.services.drivers import (
    DriverRegistry,
    Invocation,
    InvalidSourceError,
    LanguageDriver,
    default_registry,
)
from code_executor.services.limits import ResolvedLimits, resolve_limits
from code_executor.services.runner import RunResult, run_process, sandbox_environment
from code_executor.services.workspace import Workspace, open_workspace


logger = structlog.get_logger(__name__)

BUSY_MESSAGE = "Server busy: too many concurrent executions, please retry later"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    BUSY = "busy"
    SETUP = "setup"
    COMPILE = "compile"
    RUNTIME = "runtime"
    LIMIT = "limit"
    SPAWN = "spawn"


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    # Loosely typed on purpose: callers outside the HTTP layer are validated here
    source: Any
    language: Any
    stdin: Any = ""
    limits: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    stdout: str
    stderr: str
    failed: bool
    error_kind: ErrorKind | None = None
    exit_code: int | None = None
    duration_ms: int = 0

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, stdout: str = "") -> "ExecutionResult":
        return cls(stdout=stdout, stderr=message, failed=True, error_kind=kind)


class ExecutionEngine:
    """Validates, admits and runs untrusted programs.

    ``execute`` never raises: every failure comes back as an
    ``ExecutionResult`` with ``failed=True`` and a readable ``stderr``.
    The admission slot and the workspace are released on every path.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        registry: DriverRegistry | None = None,
        admission: AdmissionController | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry or default_registry(self.settings)
        self.admission = admission or AdmissionController(self.settings.max_concurrency)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        try:
            return await self._execute(request)
        except Exception as exc:
            logger.exception("Unexpected execution failure")
            return ExecutionResult.failure(ErrorKind.SETUP, str(exc) or exc.__class__.__name__)

    def _validate(self, request: ExecutionRequest) -> ExecutionResult | LanguageDriver:
        settings = self.settings
        source, language, stdin = request.source, request.language, request.stdin

        if source is None:
            return ExecutionResult.failure(ErrorKind.VALIDATION, "Source code is required")
        if not isinstance(source, str):
            return ExecutionResult.failure(ErrorKind.VALIDATION, "Source code must be a string")
        if len(source) > settings.max_source_chars:
            return ExecutionResult.failure(
                ErrorKind.VALIDATION,
                f"Source code exceeds maximum length of {settings.max_source_chars} characters",
            )
        if not isinstance(language, str):
            return ExecutionResult.failure(ErrorKind.VALIDATION, "Language must be a string")
        if stdin is not None and not isinstance(stdin, str):
            return ExecutionResult.failure(ErrorKind.VALIDATION, "Input must be a string")
        if stdin and len(stdin) > settings.max_stdin_chars:
            return ExecutionResult.failure(
                ErrorKind.VALIDATION,
                f"Input exceeds maximum length of {settings.max_stdin_chars} characters",
            )

        driver = self.registry.get(language)
        if driver is None:
            return ExecutionResult.failure(ErrorKind.VALIDATION, f"Unsupported language: {language}")
        return driver

    async def _execute(self, request: ExecutionRequest) -> ExecutionResult:
        checked = self._validate(request)
        if isinstance(checked, ExecutionResult):
            logger.info("Execution rejected", reason=checked.stderr)
            return checked
        driver = checked

        if not self.admission.try_acquire():
            logger.warning(
                "Execution rejected, server busy",
                language=driver.name,
                max_concurrency=self.admission.max_concurrency,
            )
            return ExecutionResult.failure(ErrorKind.BUSY, BUSY_MESSAGE)

        try:
            raw_limits = request.limits if isinstance(request.limits, Mapping) else None
            limits = resolve_limits(raw_limits, self.settings)
            return await self._run(driver, request.source, request.stdin or "", limits)
        finally:
            self.admission.release()

    async def _run(
        self, driver: LanguageDriver, source: str, stdin: str, limits: ResolvedLimits
    ) -> ExecutionResult:
        try:
            async with open_workspace(self.settings.workspace_root) as workspace:
                log = logger.bind(session_id=workspace.session_id, language=driver.name)
                log.info("Execution started", timeout_ms=limits.timeout_ms, memory_mb=limits.memory_mb)

                try:
                    artifact = await asyncio.to_thread(driver.prepare, workspace, source)
                except InvalidSourceError as exc:
                    log.warning("Source rejected by driver", error=str(exc))
                    return ExecutionResult.failure(ErrorKind.VALIDATION, str(exc))

                compile_step = driver.compile_step(artifact, limits)
                if compile_step is not None:
                    compiled = await self._invoke(compile_step, workspace, limits, stdin=None)
                    if compiled.failed:
                        log.warning(
                            "Compilation failed",
                            exit_code=compiled.exit_code,
                            duration_ms=compiled.duration_ms,
                        )
                        return _to_result(compiled, ErrorKind.COMPILE)

                ran = await self._invoke(driver.run_step(artifact, limits), workspace, limits, stdin=stdin)
                log.info(
                    "Execution finished",
                    exit_code=ran.exit_code,
                    failed=ran.failed,
                    timed_out=ran.timed_out,
                    output_exceeded=ran.output_exceeded,
                    duration_ms=ran.duration_ms,
                )
                return _to_result(ran, ErrorKind.RUNTIME)
        except OSError as exc:
            logger.warning("Workspace setup failed", language=driver.name, error=str(exc))
            return ExecutionResult.failure(ErrorKind.SETUP, f"Setup failed: {exc}")

    async def _invoke(
        self,
        invocation: Invocation,
        workspace: Workspace,
        limits: ResolvedLimits,
        stdin: str | None,
    ) -> RunResult:
        return await run_process(
            invocation.argv,
            cwd=workspace.root,
            env=sandbox_environment(workspace.root, invocation.env),
            timeout_ms=limits.timeout_ms,
            max_output_bytes=limits.max_output_bytes,
            stdin=stdin,
            memory_limit_mb=invocation.address_space_mb,
            watchdog_grace_ms=self.settings.watchdog_grace_ms,
            debug_output_chars=self.settings.debug_output_chars,
        )


def _to_result(run: RunResult, failure_kind: ErrorKind) -> ExecutionResult:
    if run.spawn_error:
        kind: ErrorKind | None = ErrorKind.SPAWN
    elif run.limit_exceeded:
        kind = ErrorKind.LIMIT
    elif run.failed:
        kind = failure_kind
    else:
        kind = None
    return ExecutionResult(
        stdout=run.stdout,
        stderr=run.stderr,
        failed=run.failed,
        error_kind=kind,
        exit_code=run.exit_code,
        duration_ms=run.duration_ms,
    )


@lru_cache(maxsize=1)
def get_engine() -> ExecutionEngine:
    return ExecutionEngine(get_settings())


async def execute_code(
    source: Any,
    language: Any,
    stdin: Any = "",
    limits: Mapping[str, Any] | None = None,
) -> ExecutionResult:
    """Run ``source`` on the process-wide engine."""
    return await get_engine().execute(
        ExecutionRequest(source=source, language=language, stdin=stdin, limits=limits)
    )
