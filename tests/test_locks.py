"""Tests for onboarding/delivery/locks.py."""
from __future__ import annotations

import threading
import time

import pytest

from onboarding.delivery.locks import KeyedLocks


def _run_concurrently(target, count: int) -> None:
    threads = [threading.Thread(target=target) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


class TestKeyedLocks:
    def test_same_key_is_exclusive(self):
        locks = KeyedLocks()
        state = {"inside": 0, "peak": 0}
        guard = threading.Lock()

        def work():
            with locks.hold(("M001", "sms")):
                with guard:
                    state["inside"] += 1
                    state["peak"] = max(state["peak"], state["inside"])
                time.sleep(0.01)
                with guard:
                    state["inside"] -= 1

        _run_concurrently(work, 6)
        assert state["peak"] == 1

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        other_done = threading.Event()

        def other():
            with locks.hold(("M001", "email")):
                other_done.set()

        with locks.hold(("M001", "sms")):
            thread = threading.Thread(target=other)
            thread.start()
            assert other_done.wait(2)
            thread.join()

    def test_locks_are_dropped_after_use(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_lock_released_on_error(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        with locks.hold("a"):
            pass
