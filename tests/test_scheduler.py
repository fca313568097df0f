"""Tests for the batch scheduler."""
import threading

from feed_to_podcast.scheduler import BatchScheduler


WAIT = 5.0


class BlockingRun:
    """Run function that holds the batch open until released."""

    def __init__(self):
        self.entries = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self.saw_cancel = False

    def __call__(self, cancel):
        self.entries += 1
        self.started.set()
        while not self.release.is_set():
            if cancel.wait(0.01):
                self.saw_cancel = True
                return


def test_manual_trigger_while_running_is_skipped():
    run = BlockingRun()
    sched = BatchScheduler(run, interval_seconds=3600)

    assert sched.trigger_manual_run() is True
    assert run.started.wait(WAIT)
    assert sched.status().is_running is True
    started_at = sched.status().last_run
    assert started_at is not None
    assert sched.trigger_manual_run() is False
    assert sched.trigger_manual_run() is False

    run.release.set()
    assert sched.wait_idle(WAIT)
    assert run.entries == 1
    assert sched.status().is_running is False
    assert sched.status().last_run == started_at


def test_force_stop():
    run = BlockingRun()
    sched = BatchScheduler(run, interval_seconds=3600)

    assert sched.force_stop() is False

    sched.trigger_manual_run()
    assert run.started.wait(WAIT)
    assert sched.force_stop() is True
    assert sched.wait_idle(WAIT)
    assert run.saw_cancel is True
    assert sched.force_stop() is False


def test_failing_run_does_not_wedge_scheduler():
    calls = []

    def boom(cancel):
        calls.append(1)
        raise RuntimeError("batch exploded")

    sched = BatchScheduler(boom, interval_seconds=3600)

    assert sched.trigger_manual_run() is True
    assert sched.wait_idle(WAIT)
    assert sched.trigger_manual_run() is True
    assert sched.wait_idle(WAIT)
    assert len(calls) == 2
    assert sched.status().is_running is False


def test_initial_run_fires_after_delay():
    ran = threading.Event()
    sched = BatchScheduler(lambda cancel: ran.set(), interval_seconds=3600, initial_delay_seconds=0.05)
    try:
        sched.start()
        assert ran.wait(WAIT)
        assert sched.wait_idle(WAIT)
        # rescheduled relative to completion
        assert sched.status().next_run is not None
    finally:
        sched.shutdown()


def test_disable_initial_run_waits_full_interval():
    ran = threading.Event()
    sched = BatchScheduler(
        lambda cancel: ran.set(), interval_seconds=3600, initial_delay_seconds=0.01, disable_initial_run=True
    )
    try:
        sched.start()
        assert ran.wait(0.3) is False
        assert sched.status().next_run is not None
    finally:
        sched.shutdown()


def test_enable_disable_transitions():
    sched = BatchScheduler(lambda cancel: None, interval_seconds=3600, initial_delay_seconds=600, enabled=False)
    try:
        sched.start()
        assert sched.status().enabled is False
        assert sched.status().next_run is None

        sched.enable()
        assert sched.status().enabled is True
        assert sched.status().next_run is not None

        sched.disable()
        status = sched.status()
        assert status.enabled is False
        assert status.next_run is None
    finally:
        sched.shutdown()


def test_disable_lets_running_batch_finish():
    run = BlockingRun()
    sched = BatchScheduler(run, interval_seconds=3600)
    sched.start()
    try:
        sched.trigger_manual_run()
        assert run.started.wait(WAIT)
        sched.disable()
        assert sched.status().is_running is True

        run.release.set()
        assert sched.wait_idle(WAIT)
        assert run.saw_cancel is False
        assert sched.status().next_run is None
    finally:
        sched.shutdown()


def test_superseded_timer_does_not_drop_the_armed_one():
    calls = []
    sched = BatchScheduler(lambda cancel: calls.append(1), interval_seconds=3600, initial_delay_seconds=600)
    try:
        sched.start()
        armed = sched._timer

        # a timer that was replaced while already firing
        stale = threading.Thread(target=sched._on_timer)
        stale.start()
        stale.join(WAIT)

        assert calls == []
        assert sched.status().is_running is False
        assert sched._timer is armed
        assert sched.status().next_run is not None

        sched.disable()
        assert sched._timer is None
        assert armed.finished.is_set()
    finally:
        sched.shutdown()
