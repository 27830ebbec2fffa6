from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .. import config as app_config
from ..core.errors import CycleAlreadyRunning
from .pipeline import CycleSummary, run_collections

logger = logging.getLogger(__name__)

MANUAL_TRIGGER = "manual"
SCHEDULED_TRIGGER = "scheduled"

CycleRunner = Callable[[str], CycleSummary]


class SchedulerPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class SchedulerState:
    phase: SchedulerPhase = SchedulerPhase.IDLE
    current_trigger: Optional[str] = None
    started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_trigger: Optional[str] = None
    last_summary: Optional[CycleSummary] = None
    last_error: Optional[str] = None


def run_cycle_with_new_session(trigger: str) -> CycleSummary:
    with app_config.SessionLocal() as session:
        return run_collections(session, trigger=trigger)


class CollectionScheduler:
    """Runs the collections cycle daily and on demand, never two cycles at once."""

    def __init__(
        self,
        cycle_runner: CycleRunner = run_cycle_with_new_session,
        *,
        run_hour: Optional[int] = None,
        run_minute: Optional[int] = None,
        tz_name: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._runner = cycle_runner
        self.run_hour = run_hour if run_hour is not None else app_config.settings.collections_run_hour
        self.run_minute = run_minute if run_minute is not None else app_config.settings.collections_run_minute
        self.tz = ZoneInfo(tz_name or app_config.settings.collections_timezone)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = SchedulerState()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state.phase == SchedulerPhase.RUNNING

    def _begin(self, trigger: str) -> bool:
        with self._lock:
            if self._state.phase == SchedulerPhase.RUNNING:
                return False
            self._state = replace(
                self._state,
                phase=SchedulerPhase.RUNNING,
                current_trigger=trigger,
                started_at=self._clock(),
            )
            return True

    def _finish(self, trigger: str, summary: Optional[CycleSummary], error: Optional[str]) -> None:
        with self._lock:
            self._state = replace(
                self._state,
                phase=SchedulerPhase.IDLE,
                current_trigger=None,
                started_at=None,
                last_finished_at=self._clock(),
                last_trigger=trigger,
                last_summary=summary if summary is not None else self._state.last_summary,
                last_error=error or (summary.fatal_error if summary else None),
            )

    def _run(self, trigger: str) -> CycleSummary:
        summary: Optional[CycleSummary] = None
        error: Optional[str] = None
        logger.info("Collections cycle started (trigger=%s).", trigger)
        try:
            summary = self._runner(trigger)
            return summary
        except Exception as exc:
            error = str(exc)
            raise
        finally:
            self._finish(trigger, summary, error)
            logger.info("Collections cycle finished (trigger=%s, error=%s).", trigger, error)

    def trigger_manual(self) -> CycleSummary:
        if not self._begin(MANUAL_TRIGGER):
            logger.info("Manual collections trigger rejected: a cycle is already running.")
            raise CycleAlreadyRunning()
        return self._run(MANUAL_TRIGGER)

    def trigger_scheduled(self) -> Optional[CycleSummary]:
        if not self._begin(SCHEDULED_TRIGGER):
            logger.warning("Scheduled collections run dropped: a cycle is already running.")
            return None
        try:
            return self._run(SCHEDULED_TRIGGER)
        except Exception:
            logger.exception("Scheduled collections cycle failed.")
            return None

    def next_run_at(self, after: Optional[datetime] = None) -> datetime:
        reference = (after or self._clock()).astimezone(self.tz)
        candidate = reference.replace(hour=self.run_hour, minute=self.run_minute, second=0, microsecond=0)
        if candidate <= reference:
            candidate = candidate + timedelta(days=1)
            candidate = candidate.replace(hour=self.run_hour, minute=self.run_minute)
        return candidate.astimezone(timezone.utc)

    def run_if_due(self, target: datetime) -> bool:
        """Trigger the scheduled run only once the clock has reached ``target``."""
        if self._clock() < target:
            return False
        self.trigger_scheduled()
        return True

    def _loop(self) -> None:
        logger.info("Collections scheduler loop started; next run at %s.", self.next_run_at().isoformat())
        while not self._stop.is_set():
            target = self.next_run_at()
            delay = max((target - self._clock()).total_seconds(), 0.0)
            if self._stop.wait(timeout=delay):
                break
            # Event.wait may return before the timeout elapses.
            if not self.run_if_due(target):
                logger.debug("Scheduler woke before %s; waiting again.", target.isoformat())
        logger.info("Collections scheduler loop stopped.")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="collections-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def loop_active(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


collection_scheduler = CollectionScheduler()
