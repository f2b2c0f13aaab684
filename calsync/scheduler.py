from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from calsync.config_manager import ConfigManager
from calsync.models import SyncConfig, SyncRange, SyncResult
from calsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

MIN_PERIODIC_SECONDS = 10


@dataclass(frozen=True)
class RangePlan:
    sync_range: SyncRange
    mode: str
    past_units: int
    future_units: int

    @property
    def windowed(self) -> bool:
        return self.mode != "standard"


def plan_range(
    base: date,
    past_units: int,
    future_units: int,
    synced_past: int,
    synced_future: int,
    config: SyncConfig,
    manual: bool = True,
) -> RangePlan:
    """Pick the date range for the next pass.

    A manual trigger whose extent has outgrown the synced watermark by more
    than the buffer fetches only a chunk just beyond that edge, one direction
    per pass with the past first. The plan's units record which extent that
    chunk covers, so the other direction stays pending for the next trigger.
    Every other trigger uses the whole extent plus the buffer.
    """
    unit = config.unit_days
    chunk = config.chunk_size_units
    buffer = config.buffer_units
    scrolled_past = past_units > synced_past + buffer
    scrolled_future = future_units > synced_future + buffer

    if manual and scrolled_past:
        covered_future = synced_future if scrolled_future else future_units
        return RangePlan(
            SyncRange(
                base - timedelta(days=(past_units + chunk) * unit),
                base - timedelta(days=(past_units - buffer) * unit),
            ),
            "windowed-past",
            past_units,
            covered_future,
        )
    if manual and scrolled_future:
        return RangePlan(
            SyncRange(
                base + timedelta(days=(future_units - buffer) * unit),
                base + timedelta(days=(future_units + chunk) * unit),
            ),
            "windowed-future",
            past_units,
            future_units,
        )

    start = base - timedelta(days=(past_units + buffer) * unit)
    end = base + timedelta(days=(future_units + buffer) * unit)
    return RangePlan(SyncRange(start, end), "standard", past_units, future_units)


class SyncScheduler:
    """Turns extent changes and a periodic timer into throttled sync passes.

    Watermarks only move after a successful manual pass, and only as far as the
    extent that pass requested.
    """

    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        today: Callable[[], date] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._clock = clock
        self._today = today or (lambda: datetime.now(timezone.utc).date())
        self.base_date = self._today()
        self.past_units = 0
        self.future_units = 0
        self.synced_past = 0
        self.synced_future = 0
        self.last_result: SyncResult | None = None
        self._last_run_at: float | None = None
        self._lock = threading.RLock()
        self._trailing: threading.Timer | None = None
        self._trailing_manual = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calsync-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        with self._lock:
            if self._trailing is not None:
                self._trailing.cancel()
                self._trailing = None
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _loop(self) -> None:
        self._execute(manual=False, trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(MIN_PERIODIC_SECONDS, int(config.sync.periodic_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                self.request_sync(manual=True)
            else:
                self._execute(manual=False, trigger="periodic")

    def extent(self) -> dict[str, object]:
        with self._lock:
            return {
                "base_date": self.base_date.isoformat(),
                "past_units": self.past_units,
                "future_units": self.future_units,
                "synced_past": self.synced_past,
                "synced_future": self.synced_future,
            }

    def update_extent(self, past_units: int, future_units: int) -> SyncResult | None:
        with self._lock:
            self.past_units = max(0, int(past_units))
            self.future_units = max(0, int(future_units))
        return self.request_sync(manual=True)

    def current_plan(self, manual: bool = True) -> RangePlan:
        config = self.config_manager.load()
        with self._lock:
            return plan_range(
                self.base_date,
                self.past_units,
                self.future_units,
                self.synced_past,
                self.synced_future,
                config.sync,
                manual=manual,
            )

    def request_sync(self, manual: bool = True) -> SyncResult | None:
        """Run now when outside the cool-down, else arm one trailing run.

        Returns the result of an immediate run, or ``None`` when deferred.
        """
        config = self.config_manager.load()
        throttle_seconds = max(0, config.sync.throttle_ms) / 1000.0
        with self._lock:
            now = self._clock()
            elapsed = None if self._last_run_at is None else now - self._last_run_at
            if elapsed is not None and elapsed < throttle_seconds:
                self._trailing_manual = self._trailing_manual or manual
                if self._trailing is None:
                    delay = throttle_seconds - elapsed
                    self._trailing = threading.Timer(delay, self._fire_trailing)
                    self._trailing.daemon = True
                    self._trailing.start()
                    logger.debug("Sync throttled, trailing run in %.2fs", delay)
                return None
            self._last_run_at = now
        return self._execute(manual=manual, trigger="manual" if manual else "periodic")

    def _fire_trailing(self) -> None:
        with self._lock:
            self._trailing = None
            manual = self._trailing_manual
            self._trailing_manual = False
            self._last_run_at = self._clock()
        self._execute(manual=manual, trigger="manual" if manual else "periodic")

    def _execute(self, manual: bool, trigger: str) -> SyncResult:
        plan = self.current_plan(manual=manual)
        logger.debug("Sync %s over %s (%s)", trigger, plan.sync_range.to_dict(), plan.mode)
        result = self.sync_engine.run_once(
            trigger=trigger,
            sync_range=plan.sync_range,
            force_full=plan.windowed,
        )
        if manual and result.ok:
            with self._lock:
                self.synced_past = max(self.synced_past, plan.past_units)
                self.synced_future = max(self.synced_future, plan.future_units)
        elif result.status == "error":
            logger.info("Sync %s failed, watermarks unchanged: %s", trigger, result.message)
        with self._lock:
            self.last_result = result
        return result
