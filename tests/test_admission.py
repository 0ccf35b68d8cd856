from __future__ import annotations

import threading

import pytest

from code_executor.services.admission import AdmissionController


def test_acquire_up_to_ceiling_then_reject() -> None:
    admission = AdmissionController(2)

    assert admission.try_acquire() is True
    assert admission.try_acquire() is True
    assert admission.try_acquire() is False
    assert admission.in_flight == 2

    admission.release()
    assert admission.in_flight == 1
    assert admission.try_acquire() is True


def test_release_without_acquire_is_an_error() -> None:
    admission = AdmissionController(1)

    with pytest.raises(RuntimeError):
        admission.release()


def test_ceiling_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AdmissionController(0)


def test_concurrent_acquires_never_exceed_ceiling() -> None:
    admission = AdmissionController(10)
    barrier = threading.Barrier(50)
    granted: list[bool] = []
    lock = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        ok = admission.try_acquire()
        with lock:
            granted.append(ok)

    threads = [threading.Thread(target=_worker) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert granted.count(True) == 10
    assert admission.in_flight == 10
