import threading
from datetime import datetime, timedelta, timezone

import pytest

from condo_collections.core.errors import CycleAlreadyRunning
from condo_collections.services.pipeline import CycleSummary
from condo_collections.services.scheduler import CollectionScheduler, SchedulerPhase


class BlockingRunner:
    """Cycle runner that holds the scheduler in RUNNING until released."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = []

    def __call__(self, trigger):
        self.calls.append(trigger)
        self.started.set()
        self.release.wait(5)
        return CycleSummary(cycle_timestamp=datetime(2026, 10, 19, tzinfo=timezone.utc), trigger=trigger)


def _scheduler(runner, **kwargs):
    kwargs.setdefault("run_hour", 6)
    kwargs.setdefault("run_minute", 0)
    kwargs.setdefault("tz_name", "America/New_York")
    return CollectionScheduler(runner, **kwargs)


def test_manual_trigger_runs_and_returns_to_idle():
    runner = BlockingRunner()
    runner.release.set()
    scheduler = _scheduler(runner)

    summary = scheduler.trigger_manual()

    assert summary.trigger == "manual"
    assert runner.calls == ["manual"]
    state = scheduler.state
    assert state.phase == SchedulerPhase.IDLE
    assert state.last_trigger == "manual"
    assert state.last_summary is summary
    assert state.last_error is None


def test_second_trigger_while_running_is_rejected_or_dropped():
    runner = BlockingRunner()
    scheduler = _scheduler(runner)
    worker = threading.Thread(target=scheduler.trigger_scheduled)
    worker.start()
    try:
        assert runner.started.wait(5)
        assert scheduler.is_running

        with pytest.raises(CycleAlreadyRunning):
            scheduler.trigger_manual()
        assert scheduler.trigger_scheduled() is None
    finally:
        runner.release.set()
        worker.join(5)

    assert runner.calls == ["scheduled"]
    assert scheduler.state.phase == SchedulerPhase.IDLE


def test_concurrent_manual_triggers_run_one_cycle():
    runner = BlockingRunner()
    scheduler = _scheduler(runner)
    outcomes = []
    lock = threading.Lock()
    all_rejected = threading.Event()

    def trigger():
        try:
            scheduler.trigger_manual()
            outcome = "ran"
        except CycleAlreadyRunning:
            outcome = "rejected"
        with lock:
            outcomes.append(outcome)
            if outcomes.count("rejected") == 7:
                all_rejected.set()

    threads = [threading.Thread(target=trigger) for _ in range(8)]
    for thread in threads:
        thread.start()
    assert runner.started.wait(5)
    assert all_rejected.wait(5)
    runner.release.set()
    for thread in threads:
        thread.join(5)

    assert len(runner.calls) == 1
    assert sorted(outcomes) == ["ran"] + ["rejected"] * 7


def test_failed_cycle_resets_to_idle_and_records_error():
    def exploding_runner(trigger):
        raise RuntimeError("database is locked")

    scheduler = _scheduler(exploding_runner)

    with pytest.raises(RuntimeError):
        scheduler.trigger_manual()
    assert scheduler.state.phase == SchedulerPhase.IDLE
    assert scheduler.state.last_error == "database is locked"

    assert scheduler.trigger_scheduled() is None
    assert scheduler.state.phase == SchedulerPhase.IDLE


def test_fatal_summary_is_reported_as_last_error():
    def aborted_runner(trigger):
        return CycleSummary(
            cycle_timestamp=datetime(2026, 10, 19, tzinfo=timezone.utc),
            trigger=trigger,
            fatal_error="ledger offline",
        )

    scheduler = _scheduler(aborted_runner)
    scheduler.trigger_manual()
    assert scheduler.state.last_error == "ledger offline"


@pytest.mark.parametrize(
    "now, expected",
    [
        # 05:30 EDT, today's 06:00 slot is still ahead.
        (datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc), datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)),
        # 06:00 EDT exactly, next run is tomorrow.
        (datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc), datetime(2026, 10, 20, 10, 0, tzinfo=timezone.utc)),
        # Across the November DST change the local hour holds.
        (datetime(2026, 10, 31, 12, 0, tzinfo=timezone.utc), datetime(2026, 11, 1, 11, 0, tzinfo=timezone.utc)),
    ],
)
def test_next_run_at_uses_local_run_time(now, expected):
    scheduler = _scheduler(BlockingRunner(), clock=lambda: now)
    assert scheduler.next_run_at() == expected


def test_start_and_stop_loop():
    scheduler = _scheduler(BlockingRunner())
    scheduler.start()
    try:
        assert scheduler.loop_active
    finally:
        scheduler.stop()
    assert not scheduler.loop_active


def test_run_if_due_waits_for_the_target_time():
    runner = BlockingRunner()
    runner.release.set()
    target = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
    now = {"value": target - timedelta(seconds=1)}
    scheduler = _scheduler(runner, clock=lambda: now["value"])

    assert scheduler.run_if_due(target) is False
    assert runner.calls == []

    now["value"] = target
    assert scheduler.run_if_due(target) is True
    assert runner.calls == ["scheduled"]


class EarlyWake:
    """Stop event whose first wait returns early without being set."""

    def __init__(self):
        self.waits = 0
        self._set = False

    def is_set(self):
        return self._set

    def set(self):
        self._set = True

    def clear(self):
        self._set = False

    def wait(self, timeout=None):
        self.waits += 1
        if self.waits > 1:
            self._set = True
        return self._set


def test_loop_does_not_run_when_woken_early():
    runner = BlockingRunner()
    runner.release.set()
    clock = datetime(2026, 10, 19, 9, 59, 59, 500000, tzinfo=timezone.utc)
    scheduler = _scheduler(runner, clock=lambda: clock)
    scheduler._stop = EarlyWake()

    scheduler._loop()

    assert scheduler._stop.waits == 2
    assert runner.calls == []
