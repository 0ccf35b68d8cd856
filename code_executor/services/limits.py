from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from code_executor.core.config import Settings


@dataclass(frozen=True, slots=True)
class ResolvedLimits:
    timeout_ms: int
    memory_mb: int
    max_output_bytes: int

    @property
    def timeout_sec(self) -> float:
        return self.timeout_ms / 1000.0


def _as_int(value: Any) -> int | None:
    # bool is an int subclass; treat it as "not supplied"
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _clamp(value: int | None, default: int, floor: int, ceiling: int) -> int:
    if value is None:
        value = default
    return max(floor, min(ceiling, value))


def resolve_limits(requested: Mapping[str, Any] | None, settings: Settings) -> ResolvedLimits:
    """Clamp caller-supplied limits into the configured [floor, ceiling] ranges.

    Missing or non-integer values fall back to the configured defaults. The
    output ceiling is not caller-adjustable.
    """
    requested = requested or {}
    timeout_ms = _clamp(
        _as_int(requested.get("timeout_ms")),
        settings.default_timeout_ms,
        settings.min_timeout_ms,
        settings.max_timeout_ms,
    )
    memory_mb = _clamp(
        _as_int(requested.get("memory_mb")),
        settings.default_memory_mb,
        settings.min_memory_mb,
        settings.max_memory_mb,
    )
    return ResolvedLimits(
        timeout_ms=timeout_ms,
        memory_mb=memory_mb,
        max_output_bytes=settings.max_output_bytes,
    )
