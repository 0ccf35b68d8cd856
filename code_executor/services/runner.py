from __future__ import annotations

import asyncio
import math
import os
import secrets
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import psutil
import structlog


try:  # POSIX resource limits (best-effort)
    import resource  # type: ignore
except Exception:  # pragma: no cover - non-POSIX
    resource = None  # type: ignore[assignment]


logger = structlog.get_logger(__name__)

_READ_CHUNK = 4096
_MAX_FILE_BYTES = 16 * 1024 * 1024
_TRUNCATED_SUFFIX = "\n...[truncated]"
_TRACK_INTERVAL_SEC = 0.05

# Inherited by everything the program starts; identifies leftovers after exit
RUN_MARKER_ENV = "CODE_EXECUTOR_RUN"


@dataclass(frozen=True, slots=True)
class RunResult:
    stdout: str
    stderr: str
    failed: bool
    exit_code: int | None
    duration_ms: int = 0
    timed_out: bool = False
    output_exceeded: bool = False
    spawn_error: bool = False

    @property
    def limit_exceeded(self) -> bool:
        return self.timed_out or self.output_exceeded


def sandbox_environment(
    workspace_dir: str | os.PathLike[str], extra: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Minimal child environment: inherited PATH, home and temp inside the workspace."""
    home = str(workspace_dir)
    env: dict[str, str] = {
        "PATH": os.environ.get("PATH", os.defpath),
        "HOME": home,
        "TMPDIR": home,
        "TMP": home,
        "TEMP": home,
    }
    if os.name == "nt":  # pragma: no cover - Windows only
        env["USERPROFILE"] = home
        # processes fail to start on Windows without these
        for key in ("SYSTEMROOT", "COMSPEC", "PATHEXT"):
            if key in os.environ:
                env[key] = os.environ[key]
    if extra:
        env.update(extra)
    return env


def _limit_preexec(cpu_time_sec: int, memory_limit_mb: int | None) -> Callable[[], None]:
    def _apply() -> None:  # executed in child before exec
        if resource is not None:
            try:
                resource.setrlimit(resource.RLIMIT_CPU, (cpu_time_sec, cpu_time_sec))
            except (ValueError, OSError):
                pass
            if memory_limit_mb is not None:
                try:
                    bytes_limit = memory_limit_mb * 1024 * 1024
                    resource.setrlimit(resource.RLIMIT_AS, (bytes_limit, bytes_limit))
                except (ValueError, OSError):
                    pass
            try:
                resource.setrlimit(resource.RLIMIT_FSIZE, (_MAX_FILE_BYTES, _MAX_FILE_BYTES))
            except (ValueError, OSError):
                pass
    return _apply


def kill_process_tree(pid: int) -> None:
    """SIGKILL ``pid`` together with every descendant it has spawned.

    Descendants are collected before anything is signalled, since once the
    parent dies they are re-parented and can no longer be found through it.
    """
    try:
        parent: psutil.Process | None = psutil.Process(pid)
        descendants = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        parent, descendants = None, []

    if os.name == "posix":
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    for proc in [*descendants, parent]:
        if proc is None:
            continue
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.warning("Unable to kill process", pid=proc.pid)


def _kill_process_group(pgid: int) -> None:
    # Stragglers left behind by a child that already exited on its own
    if os.name != "posix":
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class _DescendantTracker:
    """Remembers every process seen below ``pid`` while it is alive.

    A program can detach a child into its own session and exit; such a child
    is outside the process group and no longer reachable through the parent.
    """

    def __init__(self, pid: int) -> None:
        self._pid = pid
        self.seen: dict[int, psutil.Process] = {}

    def snapshot(self) -> None:
        try:
            children = psutil.Process(self._pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return
        for child in children:
            self.seen.setdefault(child.pid, child)

    async def follow(self) -> None:
        while True:
            self.snapshot()
            await asyncio.sleep(_TRACK_INTERVAL_SEC)


def _kill_strays(marker: str, tracked: Mapping[int, psutil.Process]) -> int:
    """Kill tracked descendants and any process still carrying this run's marker."""
    strays: dict[int, psutil.Process] = dict(tracked)
    for proc in psutil.process_iter():
        if proc.pid in strays:
            continue
        try:
            if proc.environ().get(RUN_MARKER_ENV) == marker:
                strays[proc.pid] = proc
        except psutil.Error:
            continue

    killed = 0
    for proc in strays.values():
        try:
            if proc.status() == psutil.STATUS_ZOMBIE:
                continue
            # psutil compares create_time first, so a recycled pid is never signalled
            proc.kill()
            killed += 1
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.warning("Unable to kill process", pid=proc.pid)
    return killed


class _Watchdog:
    """Thread timer that kills the tree if the asyncio deadline never fires."""

    def __init__(self, pid: int, delay_sec: float) -> None:
        self.fired = False
        self._pid = pid
        self._timer = threading.Timer(delay_sec, self._fire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

    def _fire(self) -> None:
        self.fired = True
        logger.warning("Watchdog deadline reached, killing process tree", pid=self._pid)
        kill_process_tree(self._pid)


class _StreamCapture:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.buffer = bytearray()
        self.exceeded = False

    def feed(self, chunk: bytes) -> bool:
        """Append ``chunk``; returns False once the ceiling would be crossed."""
        room = self.limit - len(self.buffer)
        if len(chunk) > room:
            self.buffer.extend(chunk[: max(0, room)])
            self.exceeded = True
            return False
        self.buffer.extend(chunk)
        return True

    def text(self) -> str:
        return self.buffer.decode("utf-8", errors="replace")


async def _pump(
    stream: asyncio.StreamReader, capture: _StreamCapture, on_overflow: Callable[[], None]
) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        if not capture.feed(chunk):
            on_overflow()
            return


async def _feed_stdin(writer: asyncio.StreamWriter, data: bytes | None) -> None:
    try:
        if data:
            writer.write(data)
            await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        # child exited without consuming its input
        pass
    finally:
        try:
            writer.close()
        except (BrokenPipeError, ConnectionResetError):
            pass


def _encode_stdin(stdin: str | None) -> bytes | None:
    if not stdin:
        return None
    if not stdin.endswith("\n"):
        stdin += "\n"
    # lone surrogates cannot be encoded; they reach the program as "?"
    return stdin.encode("utf-8", errors="replace")


def _debug_prefix(text: str, max_chars: int, ceiling: int) -> str:
    limit = max(0, min(max_chars, ceiling - len(_TRUNCATED_SUFFIX)))
    if len(text) <= limit:
        return text
    return text[:limit] + _TRUNCATED_SUFFIX


async def run_process(
    argv: Sequence[str],
    *,
    cwd: str | os.PathLike[str],
    env: Mapping[str, str],
    timeout_ms: int,
    max_output_bytes: int,
    stdin: str | None = None,
    memory_limit_mb: int | None = None,
    watchdog_grace_ms: int = 500,
    debug_output_chars: int = 1024,
) -> RunResult:
    """Run ``argv`` to completion under a wall-clock deadline and output ceilings.

    Notes:
    - The argument vector is executed directly; no shell is involved.
    - stdout/stderr are read incrementally and capped at ``max_output_bytes``
      each. Crossing the cap kills the process tree immediately.
    - The deadline is enforced by ``asyncio.wait_for`` and, independently, by a
      watchdog thread firing ``watchdog_grace_ms`` later.
    - ``memory_limit_mb`` sets RLIMIT_AS on POSIX; leave it unset for runtimes
      that reserve large virtual address ranges (JVM, V8).
    - Spawn failures are reported in the result, never raised.
    """
    timeout_sec = timeout_ms / 1000.0
    start = time.perf_counter()

    def _elapsed_ms() -> int:
        return int((time.perf_counter() - start) * 1000)

    stdin_bytes = _encode_stdin(stdin)
    marker = secrets.token_hex(8)
    child_env = {**env, RUN_MARKER_ENV: marker}

    popen_kwargs: dict[str, object] = {}
    if os.name == "posix":
        # New session: the child leads its own process group
        popen_kwargs["start_new_session"] = True
        popen_kwargs["preexec_fn"] = _limit_preexec(math.ceil(timeout_sec) + 1, memory_limit_mb)
    else:  # pragma: no cover - Windows only
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

    try:
        proc = await asyncio.create_subprocess_exec(  # nosec: B603 (controlled argv)
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=child_env,
            **popen_kwargs,
        )
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        logger.warning("Process spawn failed", executable=argv[0] if argv else None, error=str(exc))
        message = f"Failed to start {argv[0] if argv else 'process'}: {exc}"
        return RunResult(
            stdout="",
            stderr=message[:max_output_bytes],
            failed=True,
            exit_code=None,
            duration_ms=_elapsed_ms(),
            spawn_error=True,
        )

    stdout_cap = _StreamCapture(max_output_bytes)
    stderr_cap = _StreamCapture(max_output_bytes)
    tracker = _DescendantTracker(proc.pid)
    output_exceeded = False
    timed_out = False

    def _on_overflow() -> None:
        nonlocal output_exceeded
        if output_exceeded:
            return
        output_exceeded = True
        logger.warning("Output limit exceeded, killing process tree", pid=proc.pid, limit=max_output_bytes)
        kill_process_tree(proc.pid)

    watchdog = _Watchdog(proc.pid, timeout_sec + watchdog_grace_ms / 1000.0)
    tasks: list[asyncio.Future] = []
    tracking: asyncio.Future | None = None
    try:
        watchdog.start()
        tracking = asyncio.ensure_future(tracker.follow())
        tasks = [
            asyncio.ensure_future(_feed_stdin(proc.stdin, stdin_bytes)),
            asyncio.ensure_future(_pump(proc.stdout, stdout_cap, _on_overflow)),
            asyncio.ensure_future(_pump(proc.stderr, stderr_cap, _on_overflow)),
        ]
        await asyncio.wait_for(asyncio.gather(proc.wait(), *tasks), timeout=timeout_sec)
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning("Execution deadline reached, killing process tree", pid=proc.pid, timeout_ms=timeout_ms)
        kill_process_tree(proc.pid)
    except BaseException:
        kill_process_tree(proc.pid)
        _kill_process_group(proc.pid)
        _kill_strays(marker, tracker.seen)
        raise
    finally:
        watchdog.cancel()
        if tracking is not None:
            tracking.cancel()
        for task in tasks:
            task.cancel()

    if proc.returncode is None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=max(watchdog_grace_ms, 100) / 1000.0)
        except asyncio.TimeoutError:
            logger.error("Process still alive after kill", pid=proc.pid)
    _kill_process_group(proc.pid)
    strays = await asyncio.to_thread(_kill_strays, marker, tracker.seen)
    if strays:
        logger.warning("Killed processes left behind by the program", pid=proc.pid, count=strays)

    timed_out = timed_out or watchdog.fired
    duration_ms = _elapsed_ms()
    stdout = stdout_cap.text()

    if output_exceeded or timed_out:
        if output_exceeded:
            reason = f"Output limit exceeded ({max_output_bytes // 1024} KB per stream)"
        else:
            reason = f"Execution timeout ({timeout_sec:g} seconds exceeded)"
        return RunResult(
            stdout=_debug_prefix(stdout, debug_output_chars, max_output_bytes),
            stderr=reason,
            failed=True,
            exit_code=None,
            duration_ms=duration_ms,
            timed_out=timed_out and not output_exceeded,
            output_exceeded=output_exceeded,
        )

    exit_code = proc.returncode
    return RunResult(
        stdout=stdout,
        stderr=stderr_cap.text(),
        failed=exit_code != 0,
        exit_code=exit_code,
        duration_ms=duration_ms,
    )
