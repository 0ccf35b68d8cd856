from __future__ import annotations

import pytest

from code_executor.core.config import Settings
from code_executor.services.limits import resolve_limits


def test_defaults_when_nothing_requested() -> None:
    limits = resolve_limits(None, Settings())

    assert limits.timeout_ms == 5_000
    assert limits.memory_mb == 128
    assert limits.max_output_bytes == 512 * 1024
    assert limits.timeout_sec == pytest.approx(5.0)


def test_caller_cannot_widen_ceilings() -> None:
    limits = resolve_limits({"timeout_ms": 60_000, "memory_mb": 4096}, Settings())

    assert limits.timeout_ms == 10_000
    assert limits.memory_mb == 128


def test_values_below_floor_are_raised() -> None:
    limits = resolve_limits({"timeout_ms": 5, "memory_mb": 1}, Settings())

    assert limits.timeout_ms == 1_000
    assert limits.memory_mb == 16


def test_narrowing_within_range_is_kept() -> None:
    limits = resolve_limits({"timeout_ms": 2_500, "memory_mb": 64}, Settings())

    assert limits.timeout_ms == 2_500
    assert limits.memory_mb == 64


@pytest.mark.parametrize("bogus", ["3000", 2.5, True, None, [1]])
def test_non_integer_values_fall_back_to_default(bogus: object) -> None:
    limits = resolve_limits({"timeout_ms": bogus, "memory_mb": bogus}, Settings())

    assert limits.timeout_ms == 5_000
    assert limits.memory_mb == 128


def test_operator_overrides_apply() -> None:
    settings = Settings(max_timeout_ms=3_000, default_timeout_ms=2_000, max_output_bytes=1024)

    assert resolve_limits({"timeout_ms": 9_000}, settings).timeout_ms == 3_000
    assert resolve_limits({}, settings).timeout_ms == 2_000
    assert resolve_limits({}, settings).max_output_bytes == 1024
