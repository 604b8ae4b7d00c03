"""Tests for per-instance locking."""

from __future__ import annotations

import threading

from flowforge.engine.workflow.locks import InstanceLocks


def test_lock_is_reentrant_and_released_after_use() -> None:
    locks = InstanceLocks()

    with locks.hold("a"):
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 1

    assert len(locks) == 0


def test_waiting_thread_keeps_the_lock_alive() -> None:
    locks = InstanceLocks()
    entered = threading.Event()
    order: list[str] = []

    def contend() -> None:
        entered.set()
        with locks.hold("a"):
            order.append("second")

    with locks.hold("a"):
        worker = threading.Thread(target=contend)
        worker.start()
        entered.wait(timeout=5)
        order.append("first")
    worker.join(timeout=5)

    assert order == ["first", "second"]
    assert len(locks) == 0
