from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from booked.caldav_client import CalDAVService
from booked.config_manager import ConfigManager
from booked.models import AppConfig, CalendarInfo, SyncResult
from booked.reconciler import Reconciler
from booked.state_store import StateStore


logger = logging.getLogger(__name__)


def _local_now(timezone_name: str) -> datetime:
    try:
        return datetime.now(ZoneInfo(timezone_name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, planning in UTC", timezone_name)
        return datetime.now(timezone.utc)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        reconciler: Reconciler | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.reconciler = reconciler or Reconciler(state_store)

    def _skipped(self, trigger: str, message: str, started_at: datetime) -> SyncResult:
        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        self.state_store.record_sync_run(
            trigger=trigger,
            status="skipped",
            message=message,
            duration_ms=duration_ms,
        )
        return SyncResult(status="skipped", message=message, duration_ms=duration_ms, trigger=trigger)

    def _resolve_mirror(self, config: AppConfig, service: CalDAVService) -> CalendarInfo:
        mirror_info = service.ensure_mirror_calendar(config.mirror.calendar_id, config.mirror.calendar_name)
        if config.mirror.calendar_id != mirror_info.calendar_id:
            self.config_manager.update({"mirror": {"calendar_id": mirror_info.calendar_id}})
        return mirror_info

    def _record(self, result: SyncResult) -> SyncResult:
        self.state_store.record_sync_run(
            trigger=result.trigger,
            status=result.status,
            message=result.message,
            duration_ms=result.duration_ms,
            created=result.created,
            deleted=result.deleted,
            kept=result.kept,
            failed=result.failed,
        )
        return result

    def _error(self, trigger: str, exc: Exception, started_at: datetime) -> SyncResult:
        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        error_message = f"{type(exc).__name__}: {exc}"
        logger.error("Sync run (%s) failed: %s", trigger, error_message)
        self.state_store.record_sync_run(
            trigger=trigger,
            status="error",
            message=error_message,
            duration_ms=duration_ms,
        )
        self.state_store.record_audit_event(
            calendar_id="system",
            uid="sync",
            action="run_error",
            details={
                "trigger": trigger,
                "error": error_message,
                "traceback": traceback.format_exc(limit=5),
            },
        )
        return SyncResult(status="error", message=error_message, duration_ms=duration_ms, trigger=trigger)

    def is_busy(self) -> bool:
        mirror_calendar_id = self.config_manager.load().mirror.calendar_id
        return bool(mirror_calendar_id) and self.reconciler.is_busy(mirror_calendar_id)

    def run_once(self, trigger: str = "manual", selection: Iterable[str] | None = None) -> SyncResult:
        """Run one reconciliation of the mirror calendar.

        ``selection`` overrides the persisted calendar selection for this run.
        Errors never escape: they are recorded and returned as an ``error`` result.
        """
        started_at = datetime.now(timezone.utc)
        try:
            config = self.config_manager.load()
            if not config.caldav.base_url or not config.caldav.username:
                return self._skipped(trigger, "CalDAV config missing base_url/username. Sync skipped.", started_at)

            calendar_ids = list(selection) if selection is not None else list(config.sync.selected_calendar_ids)
            service = CalDAVService(config.caldav)
            mirror_info = self._resolve_mirror(config, service)
            result = self.reconciler.run(
                service,
                mirror_info.calendar_id,
                calendar_ids,
                sync_config=config.sync,
                title=config.mirror.title,
                trigger=trigger,
                now=_local_now(config.sync.timezone),
            )
            return self._record(result)
        except Exception as exc:
            return self._error(trigger, exc, started_at)

    def clear_mirror(self, trigger: str = "clear") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        try:
            config = self.config_manager.load()
            if not config.caldav.base_url or not config.caldav.username:
                return self._skipped(trigger, "CalDAV config missing base_url/username. Clear skipped.", started_at)
            service = CalDAVService(config.caldav)
            mirror_info = self._resolve_mirror(config, service)
            result = self.reconciler.clear(
                service,
                mirror_info.calendar_id,
                max_workers=config.sync.max_workers,
                trigger=trigger,
            )
            return self._record(result)
        except Exception as exc:
            return self._error(trigger, exc, started_at)

    def list_selectable_calendars(self) -> tuple[list[CalendarInfo], str]:
        """Source calendars the user may select, and the mirror calendar id."""
        config = self.config_manager.load()
        service = CalDAVService(config.caldav)
        mirror_info = self._resolve_mirror(config, service)
        calendars = [cal for cal in service.list_calendars() if cal.calendar_id != mirror_info.calendar_id]
        return calendars, mirror_info.calendar_id
