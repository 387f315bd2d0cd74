"""
Tests for the APScheduler-backed schedule registry.
"""

import threading
from datetime import datetime

import pytest

from notifier.errors import InvalidTime, JobNotFound
from notifier.registry import KeyedLock, ScheduleRegistry


def noop():
    pass


def test_register_leaves_job_stopped(registry):
    handle = registry.register("daily-email-a", 8, 0, noop)

    assert handle.job_id == "daily-email-a"
    assert handle.time == "08:00"
    assert not handle.running
    assert registry.list_active_job_ids() == set()
    assert registry.job_ids() == {"daily-email-a"}
    assert registry.next_run_time("daily-email-a") is None


def test_start_stop_remove(registry):
    registry.register("daily-email-a", 8, 0, noop)

    assert registry.start("daily-email-a")
    assert registry.is_running("daily-email-a")
    assert registry.list_active_job_ids() == {"daily-email-a"}
    next_run = registry.next_run_time("daily-email-a")
    assert (next_run.hour, next_run.minute) == (8, 0)

    assert registry.stop("daily-email-a")
    assert not registry.is_running("daily-email-a")
    assert registry.next_run_time("daily-email-a") is None

    assert registry.remove("daily-email-a")
    assert len(registry) == 0
    assert registry.scheduler.get_jobs() == []


def test_unknown_job_ids(registry):
    assert not registry.start("daily-email-missing")
    assert not registry.stop("daily-email-missing")
    assert not registry.remove("daily-email-missing")
    assert registry.get_handle("daily-email-missing") is None
    with pytest.raises(JobNotFound):
        registry.next_run_time("daily-email-missing")


def test_start_twice_is_harmless(registry):
    registry.register("daily-email-a", 8, 0, noop)
    assert registry.start("daily-email-a")
    assert registry.start("daily-email-a")
    assert registry.list_active_job_ids() == {"daily-email-a"}


def test_reregister_replaces_existing_job(registry):
    registry.register("daily-email-a", 8, 0, noop)
    registry.start("daily-email-a")

    handle = registry.register("daily-email-a", 9, 30, noop)

    assert len(registry) == 1
    assert len(registry.scheduler.get_jobs()) == 1
    assert (handle.hour, handle.minute) == (9, 30)
    assert registry.get_handle("daily-email-a") is handle
    assert not handle.running


@pytest.mark.parametrize("hour,minute", [(24, 0), (0, 60), (-1, 0)])
def test_register_rejects_invalid_time(registry, hour, minute):
    with pytest.raises(InvalidTime):
        registry.register("daily-email-a", hour, minute, noop)
    assert len(registry) == 0


def test_unknown_timezone():
    with pytest.raises(InvalidTime):
        ScheduleRegistry(timezone="Nowhere/City")


def test_running_job_fires(registry):
    fired = threading.Event()
    registry.register("daily-email-a", 8, 0, fired.set)
    registry.start("daily-email-a")
    registry.startup()
    assert registry.running

    registry.scheduler.modify_job("daily-email-a", next_run_time=datetime.now(registry.timezone))

    assert fired.wait(5)


def test_failing_fire_does_not_block_others(registry):
    fired = threading.Event()

    def explode():
        raise RuntimeError("boom")

    registry.register("daily-email-a", 8, 0, explode)
    registry.register("daily-email-b", 8, 0, fired.set)
    registry.start("daily-email-a")
    registry.start("daily-email-b")
    registry.startup()

    now = datetime.now(registry.timezone)
    registry.scheduler.modify_job("daily-email-a", next_run_time=now)
    registry.scheduler.modify_job("daily-email-b", next_run_time=now)

    assert fired.wait(5)
    assert registry.is_running("daily-email-a")


def test_keyed_lock_is_reentrant():
    locks = KeyedLock()
    with locks.hold("a"):
        with locks.hold("a"):
            pass


def test_keyed_lock_keys_are_independent():
    locks = KeyedLock()
    entered = threading.Event()

    def other():
        with locks.hold("b"):
            entered.set()

    with locks.hold("a"):
        thread = threading.Thread(target=other)
        thread.start()
        assert entered.wait(2)
        thread.join()


def test_keyed_lock_drops_released_keys():
    locks = KeyedLock()
    for i in range(100):
        with locks.hold(f"daily-email-{i}"):
            assert len(locks) == 1
    assert len(locks) == 0


def test_keyed_lock_kept_while_waited_on():
    locks = KeyedLock()
    acquired = threading.Event()

    def waiter():
        with locks.hold("a"):
            acquired.set()

    with locks.hold("a"):
        thread = threading.Thread(target=waiter)
        thread.start()
        assert not acquired.wait(0.2)
        assert len(locks) == 1
    thread.join(2)
    assert acquired.is_set()
    assert len(locks) == 0
