from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from functools import lru_cache


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _str_from_env(name: str, default: str) -> str:
    raw = os.environ.get(name)
    return raw if raw else default


def _default_python_bin() -> str:
    return "python" if os.name == "nt" else "python3"


def _default_workspace_root() -> str:
    return os.path.join(tempfile.gettempdir(), "code-executor")


@dataclass(frozen=True, slots=True)
class Settings:
    default_timeout_ms: int = 5_000
    min_timeout_ms: int = 1_000
    max_timeout_ms: int = 10_000
    default_memory_mb: int = 128
    min_memory_mb: int = 16
    max_memory_mb: int = 128
    max_output_bytes: int = 512 * 1024  # per stream
    max_source_chars: int = 50_000
    max_stdin_chars: int = 10_000
    max_concurrency: int = 10
    watchdog_grace_ms: int = 500       # watchdog fires this long after the deadline
    debug_output_chars: int = 1024     # stdout kept after a limit kill
    workspace_root: str = field(default_factory=_default_workspace_root)
    python_bin: str = field(default_factory=_default_python_bin)
    node_bin: str = "node"
    javac_bin: str = "javac"
    java_bin: str = "java"
    cxx_bin: str = "g++"
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            default_timeout_ms=_int_from_env("DEFAULT_TIMEOUT_MS", 5_000),
            min_timeout_ms=_int_from_env("MIN_TIMEOUT_MS", 1_000),
            max_timeout_ms=_int_from_env("MAX_TIMEOUT_MS", 10_000),
            default_memory_mb=_int_from_env("DEFAULT_MEMORY_MB", 128),
            min_memory_mb=_int_from_env("MIN_MEMORY_MB", 16),
            max_memory_mb=_int_from_env("MAX_MEMORY_MB", 128),
            max_output_bytes=_int_from_env("MAX_OUTPUT_BYTES", 512 * 1024),
            max_source_chars=_int_from_env("MAX_SOURCE_CHARS", 50_000),
            max_stdin_chars=_int_from_env("MAX_STDIN_CHARS", 10_000),
            max_concurrency=_int_from_env("MAX_CONCURRENT_EXECUTIONS", 10),
            watchdog_grace_ms=_int_from_env("WATCHDOG_GRACE_MS", 500),
            debug_output_chars=_int_from_env("DEBUG_OUTPUT_CHARS", 1024),
            workspace_root=_str_from_env("WORKSPACE_ROOT", _default_workspace_root()),
            python_bin=_str_from_env("PYTHON_BIN", _default_python_bin()),
            node_bin=_str_from_env("NODE_BIN", "node"),
            javac_bin=_str_from_env("JAVAC_BIN", "javac"),
            java_bin=_str_from_env("JAVA_BIN", "java"),
            cxx_bin=_str_from_env("CXX_BIN", "g++"),
            log_level=_str_from_env("LOG_LEVEL", "INFO"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
