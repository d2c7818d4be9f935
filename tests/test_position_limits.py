import os
import sys
import threading
from datetime import datetime, timedelta, timezone

import pytest

# Ensure project root is on sys.path for module resolution
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from models.position import LimitKey
from risk.limits import LimitState, PositionLimitTracker
from storage.memory import MemoryStore

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _key(direction="long", h="abc123"):
    return LimitKey("cs1", "BTCUSDT", h, direction)


@pytest.fixture
def tracker():
    return PositionLimitTracker(MemoryStore())


def test_open_without_ledger_is_refused(tracker):
    assert not tracker.can_open(_key(), NOW)
    assert not tracker.on_open(_key(), NOW)
    assert tracker.state(_key(), NOW) == LimitState.IDLE


def test_capacity_is_enforced(tracker):
    k = _key()
    tracker.ensure(k, max_positions=2, now=NOW)
    assert tracker.on_open(k, NOW)
    assert tracker.on_open(k, NOW)
    assert not tracker.on_open(k, NOW)
    assert tracker.get(k).current_positions == 2
    assert tracker.state(k, NOW) == LimitState.AT_CAPACITY

    tracker.on_close(k, NOW)
    assert tracker.state(k, NOW) == LimitState.HAS_CAPACITY
    assert tracker.on_open(k, NOW)


def test_cooldown_blocks_until_it_passes(tracker):
    k = _key()
    tracker.ensure(k, max_positions=5, now=NOW)
    assert tracker.on_open(k, NOW, cooldown_seconds=60)
    assert tracker.state(k, NOW + timedelta(seconds=30)) == LimitState.COOLDOWN
    assert not tracker.on_open(k, NOW + timedelta(seconds=30))
    later = NOW + timedelta(seconds=61)
    assert tracker.can_open(k, later)
    assert tracker.on_open(k, later)
    assert tracker.get(k).last_position_opened_at == later


def test_close_below_zero_clamps_and_flags(tracker):
    k = _key()
    tracker.ensure(k, max_positions=1, now=NOW)
    lim = tracker.on_close(k, NOW)
    assert lim.current_positions == 0
    assert lim.audit_flagged
    assert tracker.get(k).audit_flagged


def test_ensure_is_idempotent_and_updates_cap(tracker):
    k = _key()
    tracker.ensure(k, max_positions=3, now=NOW)
    tracker.on_open(k, NOW)
    again = tracker.ensure(k, max_positions=3, now=NOW)
    assert again.current_positions == 1
    tracker.ensure(k, max_positions=1, now=NOW)
    assert tracker.get(k).max_positions == 1
    assert not tracker.can_open(k, NOW)
    with pytest.raises(ValueError):
        tracker.ensure(_key(h="other"), max_positions=-1)


def test_directions_have_separate_ledgers(tracker):
    tracker.ensure(_key("long"), 1, NOW)
    tracker.ensure(_key("short"), 1, NOW)
    assert tracker.on_open(_key("long"), NOW)
    assert tracker.on_open(_key("short"), NOW)
    assert not tracker.on_open(_key("long"), NOW)


def test_concurrent_opens_never_exceed_max(tracker):
    k = _key()
    tracker.ensure(k, max_positions=5, now=NOW)
    barrier = threading.Barrier(20)
    results = []
    results_lock = threading.Lock()

    def worker():
        barrier.wait()
        ok = tracker.on_open(k, NOW)
        with results_lock:
            results.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 5
    assert tracker.get(k).current_positions == 5


def test_hold_on_one_key_does_not_block_another(tracker):
    a, b = _key(h="a"), _key(h="b")
    tracker.ensure(a, 1, NOW)
    tracker.ensure(b, 1, NOW)
    done = threading.Event()

    def other():
        tracker.on_open(b, NOW)
        done.set()

    with tracker.hold(a):
        t = threading.Thread(target=other)
        t.start()
        assert done.wait(2.0)
    t.join()


def test_reconcile_aligns_counters(tracker):
    a, b = _key(h="a"), _key(h="b")
    tracker.ensure(a, 3, NOW)
    tracker.ensure(b, 3, NOW)
    tracker.on_open(a, NOW)
    tracker.on_open(a, NOW)

    drifted = tracker.reconcile({a: 2, b: 1}, NOW)
    assert drifted == 1
    assert tracker.get(b).current_positions == 1
    assert tracker.get(b).audit_flagged
    assert not tracker.get(a).audit_flagged

    assert tracker.reconcile({}, NOW) == 2
    assert tracker.get(a).current_positions == 0


def _assert_within_cap(lim):
    assert 0 <= lim.current_positions <= lim.max_positions


def test_lowering_cap_below_open_count_waits_for_closes(tracker):
    k = _key()
    tracker.ensure(k, max_positions=3, now=NOW)
    for _ in range(3):
        assert tracker.on_open(k, NOW)

    lim = tracker.ensure(k, max_positions=1, now=NOW)
    _assert_within_cap(lim)
    assert (lim.max_positions, lim.target_max_positions) == (3, 1)
    assert not tracker.can_open(k, NOW)

    tracker.on_close(k, NOW)
    lim = tracker.get(k)
    _assert_within_cap(lim)
    assert (lim.current_positions, lim.max_positions) == (2, 2)

    tracker.on_close(k, NOW)
    lim = tracker.get(k)
    assert (lim.current_positions, lim.max_positions, lim.target_max_positions) == (1, 1, None)
    assert not tracker.can_open(k, NOW)

    # same requested cap again is a no-op; a higher one clears the pending target
    tracker.ensure(k, max_positions=1, now=NOW)
    assert tracker.get(k).max_positions == 1
    tracker.ensure(k, max_positions=4, now=NOW)
    assert tracker.can_open(k, NOW)


def test_ensure_with_pending_cap_is_idempotent(tracker):
    k = _key()
    tracker.ensure(k, max_positions=2, now=NOW)
    tracker.on_open(k, NOW)
    tracker.on_open(k, NOW)
    tracker.ensure(k, max_positions=0, now=NOW)
    again = tracker.ensure(k, max_positions=0, now=NOW)
    assert (again.max_positions, again.target_max_positions) == (2, 0)


def test_reconcile_never_leaves_more_open_than_the_cap(tracker):
    k = _key()
    tracker.ensure(k, max_positions=2, now=NOW)
    assert tracker.reconcile({k: 4}, NOW) == 1
    lim = tracker.get(k)
    _assert_within_cap(lim)
    assert (lim.current_positions, lim.max_positions, lim.target_max_positions) == (4, 4, 2)
    assert lim.audit_flagged

    assert tracker.reconcile({k: 1}, NOW) == 1
    lim = tracker.get(k)
    assert (lim.current_positions, lim.max_positions, lim.target_max_positions) == (1, 2, None)
