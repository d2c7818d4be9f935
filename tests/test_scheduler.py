import os
import sys
import threading
import time

import pytest

# Ensure project root is on sys.path for module resolution
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from execution.scheduler import SingleFlightTask


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        SingleFlightTask("bad", 0, lambda: None)


def test_fire_skips_while_a_run_is_in_flight():
    entered = threading.Event()
    release = threading.Event()

    def slow():
        entered.set()
        release.wait(5)

    task = SingleFlightTask("slow", 60, slow)
    t = threading.Thread(target=task.fire)
    t.start()
    assert entered.wait(5)
    assert task.busy
    assert task.fire() is False
    release.set()
    t.join(5)

    assert task.runs == 1
    assert task.skipped == 1
    assert not task.busy


def test_loop_never_runs_concurrently():
    active = 0
    peak = 0
    lock = threading.Lock()

    def work():
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1

    task = SingleFlightTask("work", 0.01, work)
    task.start()
    assert task.running
    time.sleep(0.3)
    task.stop(timeout=2)

    assert peak == 1
    assert task.runs >= 2
    assert not task.running


def test_failures_are_counted_and_loop_keeps_going():
    calls = []

    def boom():
        calls.append(1)
        raise RuntimeError("boom")

    task = SingleFlightTask("boom", 0.01, boom)
    task.start()
    time.sleep(0.1)
    task.stop(timeout=2)
    assert task.failures == len(calls)
    assert task.failures >= 2


def test_stop_is_idempotent():
    task = SingleFlightTask("idle", 60, lambda: None, run_immediately=False)
    task.stop()
    task.start()
    task.stop(timeout=2)
    task.stop(timeout=2)
    assert not task.running
    assert task.runs == 0
