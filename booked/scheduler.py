from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable, Optional

from booked.config_manager import ConfigManager
from booked.models import SyncResult
from booked.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class DebounceController:
    """Runs ``callback`` once triggers have been quiet for ``quiet_seconds``.

    Every ``trigger`` cancels the pending timer and schedules a new one, so only
    the arguments of the last trigger reach the callback. ``in_progress`` turns
    on when a trigger is accepted and off once the scheduled callback finished
    with nothing newer pending.
    """

    def __init__(
        self,
        callback: Callable[..., Any],
        quiet_seconds: float = 3.0,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self._callback = callback
        self.quiet_seconds = quiet_seconds
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Any = None
        self._generation = 0
        self._active = 0
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        with self._lock:
            return self._in_progress

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def trigger(self, *args: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._in_progress = True
            timer = self._timer_factory(self.quiet_seconds, self._fire, args=(self._generation, args))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            if self._active == 0:
                self._in_progress = False

    def _fire(self, generation: int, args: tuple[Any, ...]) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self._active += 1
        try:
            self._callback(*args)
        except Exception:
            logger.exception("Debounced sync failed")
        finally:
            with self._lock:
                self._active -= 1
                if self._active == 0 and self._timer is None:
                    self._in_progress = False


class SyncScheduler:
    """Entry points the surrounding application uses to start syncs.

    Selection changes are persisted right away and synced after the debounce
    quiet period; manual syncs run immediately. With ``sync.interval_seconds``
    set, a background thread also resyncs periodically.
    """

    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        quiet_seconds = config_manager.load().sync.debounce_seconds
        self.debounce = DebounceController(self._run_debounced, quiet_seconds, timer_factory)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def sync_in_progress(self) -> bool:
        return self.debounce.in_progress or self.sync_engine.is_busy()

    def manual_sync(self) -> SyncResult:
        return self.sync_engine.run_once(trigger="manual")

    def on_selection_changed(self, new_selection: Iterable[str]) -> list[str]:
        selection = self.config_manager.save_selection(new_selection)
        self.debounce.quiet_seconds = self.config_manager.load().sync.debounce_seconds
        self.debounce.trigger(selection)
        return selection

    def _run_debounced(self, selection: list[str]) -> None:
        result = self.sync_engine.run_once(trigger="selection", selection=selection)
        if result.status == "busy":
            logger.info("Mirror busy, rescheduling selection sync")
            self.debounce.trigger(selection)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="booked-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self.debounce.cancel()
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def _loop(self) -> None:
        # Run one sync at startup so the mirror catches up after downtime.
        self.sync_engine.run_once(trigger="startup")

        while not self._stop_event.is_set():
            interval_seconds = self.config_manager.load().sync.interval_seconds
            if self._stop_event.wait(timeout=interval_seconds or None):
                break
            self.sync_engine.run_once(trigger="scheduled")
