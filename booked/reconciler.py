from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Protocol

from booked.diff import diff_events
from booked.models import (
    DEFAULT_MIRROR_TITLE,
    CalendarPermissionError,
    MirroredEvent,
    MirrorFields,
    OperationFailure,
    SourceEvent,
    SyncConfig,
    SyncMapping,
    SyncResult,
    source_tag,
)
from booked.state_store import StateStore
from booked.window import planning_window


logger = logging.getLogger(__name__)

IDLE = "idle"
FETCHING = "fetching"
DIFFING = "diffing"
APPLYING = "applying"

CLEAR_LOOKBACK = timedelta(days=366)
CLEAR_LOOKAHEAD = timedelta(days=731)


class CalendarProvider(Protocol):
    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[SourceEvent]: ...

    def create_mirrored_event(self, calendar_id: str, fields: MirrorFields) -> str: ...

    def delete_mirrored_event(self, calendar_id: str, uid: str) -> bool: ...

    def list_mirrored_events(self, calendar_id: str, start: datetime, end: datetime) -> list[MirroredEvent]: ...


@dataclass
class FetchResult:
    events: list[SourceEvent] = field(default_factory=list)
    failed_calendars: dict[str, str] = field(default_factory=dict)


@dataclass
class RecoveryPlan:
    mappings: dict[str, str]
    orphans: list[MirroredEvent] = field(default_factory=list)
    adopted: int = 0
    dropped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.adopted or self.dropped)


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _from_calendars(
    source_key: str, source_calendars: Mapping[str, str], failed_calendars: Mapping[str, str]
) -> bool:
    calendar_id = source_calendars.get(source_key)
    if calendar_id:
        return calendar_id in failed_calendars
    # Rows written before the source calendar was stored.
    return any(source_key.startswith(f"{cid}:") for cid in failed_calendars)


def _in_window(event: SourceEvent, start: datetime, end: datetime) -> bool:
    if event.start is None:
        return False
    event_end = event.end or event.start
    if event.start >= end:
        return False
    return event_end > start or event.start >= start


def fetch_source_events(
    provider: CalendarProvider,
    calendar_ids: Iterable[str],
    start: datetime,
    end: datetime,
) -> FetchResult:
    """Fetch every selected calendar; one failing calendar does not stop the others.

    Permission errors are not isolated: they abort the whole run.
    """
    result = FetchResult()
    for calendar_id in sorted(set(calendar_ids)):
        try:
            events = provider.fetch_events(calendar_id, start, end)
        except CalendarPermissionError:
            raise
        except Exception as exc:
            logger.warning("Fetching %s failed, skipping it this run: %s", calendar_id, exc)
            result.failed_calendars[calendar_id] = _error_text(exc)
            continue
        result.events.extend(event for event in events if _in_window(event, start, end))
    return result


def recover_mappings(
    source_events: Iterable[SourceEvent],
    mappings: Mapping[str, str],
    mirrored_events: Iterable[MirroredEvent],
) -> RecoveryPlan:
    """Reconcile persisted mappings with what the mirror calendar really holds.

    Mappings pointing at a mirror that vanished are dropped when their source is
    still present so the block gets recreated. Tagged mirrors for an unmapped
    source are adopted instead of duplicated. Tagged mirrors nobody references
    are returned as orphans. Untagged events were not written by us and are
    ignored.
    """
    current_keys = {event.key for event in source_events}
    key_by_tag = {source_tag(key): key for key in current_keys}
    live = sorted(mirrored_events, key=lambda item: item.uid)
    live_uids = {item.uid for item in live}

    plan = RecoveryPlan(mappings={})
    for source_key, mirrored_uid in mappings.items():
        if mirrored_uid not in live_uids and source_key in current_keys:
            plan.dropped += 1
            continue
        plan.mappings[source_key] = mirrored_uid

    referenced = set(plan.mappings.values())
    for mirrored in live:
        if mirrored.uid in referenced or not mirrored.source_tag:
            continue
        source_key = key_by_tag.get(mirrored.source_tag)
        if source_key is not None and source_key not in plan.mappings:
            plan.mappings[source_key] = mirrored.uid
            referenced.add(mirrored.uid)
            plan.adopted += 1
        else:
            plan.orphans.append(mirrored)
    return plan


def _run_batch(
    items: list[Any], func: Callable[[Any], Any], max_workers: int
) -> list[tuple[Any, Any, BaseException | None]]:
    if not items:
        return []
    outcomes: list[tuple[Any, Any, BaseException | None]] = []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as pool:
        futures = {pool.submit(func, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                outcomes.append((item, future.result(), None))
            except Exception as exc:
                outcomes.append((item, None, exc))
    return outcomes


class Reconciler:
    """Brings one mirror calendar in line with the selected source calendars.

    Each mirror calendar moves through idle -> fetching -> diffing -> applying
    -> idle. A run is refused while its mirror is not idle; runs against
    different mirror calendars do not block each other.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store
        self._lock = threading.Lock()
        self._states: dict[str, str] = {}

    def state(self, mirror_calendar_id: str) -> str:
        with self._lock:
            return self._states.get(mirror_calendar_id, IDLE)

    def is_busy(self, mirror_calendar_id: str) -> bool:
        return self.state(mirror_calendar_id) != IDLE

    def _begin(self, mirror_calendar_id: str) -> bool:
        with self._lock:
            if self._states.get(mirror_calendar_id, IDLE) != IDLE:
                return False
            self._states[mirror_calendar_id] = FETCHING
            return True

    def _set_state(self, mirror_calendar_id: str, state: str) -> None:
        with self._lock:
            self._states[mirror_calendar_id] = state

    def _finish(self, mirror_calendar_id: str) -> None:
        with self._lock:
            self._states.pop(mirror_calendar_id, None)

    def _audit(self, mirror_calendar_id: str, uid: str, action: str, **details: Any) -> None:
        self.state_store.record_audit_event(
            calendar_id=mirror_calendar_id,
            uid=uid,
            action=action,
            details=details,
        )

    def _busy_result(self, mirror_calendar_id: str, trigger: str) -> SyncResult:
        logger.info("Sync for %s already running, %s trigger skipped", mirror_calendar_id, trigger)
        return SyncResult(
            status="busy",
            message=f"Sync already running for {mirror_calendar_id}.",
            duration_ms=0,
            trigger=trigger,
        )

    def run(
        self,
        provider: CalendarProvider,
        mirror_calendar_id: str,
        calendar_ids: Iterable[str],
        *,
        sync_config: SyncConfig | None = None,
        title: str = DEFAULT_MIRROR_TITLE,
        trigger: str = "manual",
        now: datetime | None = None,
    ) -> SyncResult:
        sync_config = sync_config or SyncConfig()
        selection = [cid for cid in calendar_ids if cid and cid != mirror_calendar_id]
        if not self._begin(mirror_calendar_id):
            return self._busy_result(mirror_calendar_id, trigger)

        started_at = datetime.now(timezone.utc)
        try:
            window_start, window_end = planning_window(
                now or datetime.now(timezone.utc), sync_config.month_threshold_days
            )
            fetched = fetch_source_events(provider, selection, window_start, window_end)
            warnings = [f"fetch {cid}: {error}" for cid, error in sorted(fetched.failed_calendars.items())]

            self._set_state(mirror_calendar_id, DIFFING)
            mappings = self.state_store.load_mappings(mirror_calendar_id)
            source_calendars = self.state_store.load_mapping_calendars(mirror_calendar_id)
            source_calendars.update((event.key, event.calendar_id) for event in fetched.events)
            orphans: list[MirroredEvent] = []
            if sync_config.verify_mirror or not mappings:
                plan = self._recover(
                    provider,
                    mirror_calendar_id,
                    fetched,
                    mappings,
                    source_calendars,
                    window_start,
                    window_end,
                    warnings,
                    trigger,
                )
                if plan is not None:
                    mappings = plan.mappings
                    orphans = plan.orphans

            diff = diff_events(fetched.events, mappings)
            if fetched.failed_calendars:
                # Sources of an unreadable calendar are unknown this run, not gone.
                failed = fetched.failed_calendars
                held = [
                    item for item in diff.to_delete if _from_calendars(item.source_key, source_calendars, failed)
                ]
                diff.to_delete = [item for item in diff.to_delete if item not in held]
                diff.to_keep.extend(held)

            self._set_state(mirror_calendar_id, APPLYING)
            stale = diff.to_delete + [SyncMapping(source_key="", mirrored_uid=item.uid) for item in orphans]
            deleted, failures = self._apply_deletes(
                provider, mirror_calendar_id, stale, sync_config.max_workers, trigger
            )
            created, create_failures = self._apply_creates(
                provider, mirror_calendar_id, diff.to_create, title, sync_config.max_workers, trigger
            )
            failures.extend(create_failures)
        finally:
            self._finish(mirror_calendar_id)

        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        status = "partial" if failures or warnings else "success"
        message = (
            f"Created {created}, deleted {deleted}, kept {len(diff.to_keep)}, "
            f"failed {len(failures)} from {len(selection)} calendars."
        )
        logger.info("Sync %s for %s: %s", status, mirror_calendar_id, message)
        return SyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            trigger=trigger,
            created=created,
            deleted=deleted,
            kept=len(diff.to_keep),
            failed=len(failures),
            failures=failures,
            warnings=warnings,
        )

    def _recover(
        self,
        provider: CalendarProvider,
        mirror_calendar_id: str,
        fetched: FetchResult,
        mappings: dict[str, str],
        source_calendars: Mapping[str, str],
        window_start: datetime,
        window_end: datetime,
        warnings: list[str],
        trigger: str,
    ) -> RecoveryPlan | None:
        try:
            mirrored = provider.list_mirrored_events(mirror_calendar_id, window_start, window_end)
        except CalendarPermissionError:
            raise
        except Exception as exc:
            logger.warning("Listing mirror %s failed, trusting stored mappings: %s", mirror_calendar_id, exc)
            warnings.append(f"list mirror: {_error_text(exc)}")
            return None

        plan = recover_mappings(fetched.events, mappings, mirrored)
        if fetched.failed_calendars and plan.orphans:
            # Orphans may belong to a calendar that could not be read.
            logger.info("Keeping %d untracked mirrors until every calendar is readable", len(plan.orphans))
            plan.orphans = []
        if plan.changed:
            self.state_store.save_mappings(mirror_calendar_id, plan.mappings, source_calendars)
            self._audit(
                mirror_calendar_id,
                "mappings",
                "mappings_recovered",
                trigger=trigger,
                adopted=plan.adopted,
                dropped=plan.dropped,
            )
            logger.info(
                "Recovered mappings for %s: adopted %d, dropped %d",
                mirror_calendar_id,
                plan.adopted,
                plan.dropped,
            )
        return plan

    def _apply_deletes(
        self,
        provider: CalendarProvider,
        mirror_calendar_id: str,
        stale: list[SyncMapping],
        max_workers: int,
        trigger: str,
    ) -> tuple[int, list[OperationFailure]]:
        def delete_one(mapping: SyncMapping) -> bool:
            existed = provider.delete_mirrored_event(mirror_calendar_id, mapping.mirrored_uid)
            if mapping.source_key:
                self.state_store.remove_mapping(mirror_calendar_id, mapping.source_key)
            return existed

        deleted = 0
        failures: list[OperationFailure] = []
        permission_denied: BaseException | None = None
        for mapping, existed, exc in _run_batch(stale, delete_one, max_workers):
            if exc is not None:
                logger.warning("Deleting mirror %s failed: %s", mapping.mirrored_uid, exc)
                failures.append(
                    OperationFailure(
                        action="delete",
                        source_key=mapping.source_key,
                        mirrored_uid=mapping.mirrored_uid,
                        error=_error_text(exc),
                    )
                )
                self._audit(
                    mirror_calendar_id, mapping.mirrored_uid, "delete_failed", trigger=trigger, error=_error_text(exc)
                )
                if isinstance(exc, CalendarPermissionError):
                    permission_denied = exc
                continue
            deleted += 1
            self._audit(
                mirror_calendar_id,
                mapping.mirrored_uid,
                "mirror_deleted" if existed else "mirror_missing",
                trigger=trigger,
                source_key=mapping.source_key,
            )
        if permission_denied is not None:
            raise permission_denied
        return deleted, failures

    def _apply_creates(
        self,
        provider: CalendarProvider,
        mirror_calendar_id: str,
        events: list[SourceEvent],
        title: str,
        max_workers: int,
        trigger: str,
    ) -> tuple[int, list[OperationFailure]]:
        def create_one(event: SourceEvent) -> str:
            mirrored_uid = provider.create_mirrored_event(mirror_calendar_id, MirrorFields.from_source(event, title))
            self.state_store.add_mapping(mirror_calendar_id, event.key, mirrored_uid, event.calendar_id)
            return mirrored_uid

        created = 0
        failures: list[OperationFailure] = []
        permission_denied: BaseException | None = None
        for event, mirrored_uid, exc in _run_batch(events, create_one, max_workers):
            if exc is not None:
                logger.warning("Mirroring %s failed: %s", event.key, exc)
                failures.append(
                    OperationFailure(action="create", source_key=event.key, mirrored_uid="", error=_error_text(exc))
                )
                self._audit(
                    mirror_calendar_id,
                    source_tag(event.key),
                    "create_failed",
                    trigger=trigger,
                    source_key=event.key,
                    error=_error_text(exc),
                )
                if isinstance(exc, CalendarPermissionError):
                    permission_denied = exc
                continue
            created += 1
            self._audit(mirror_calendar_id, mirrored_uid, "mirror_created", trigger=trigger, source_key=event.key)
        if permission_denied is not None:
            raise permission_denied
        return created, failures

    def clear(
        self,
        provider: CalendarProvider,
        mirror_calendar_id: str,
        *,
        max_workers: int = 4,
        trigger: str = "clear",
        now: datetime | None = None,
    ) -> SyncResult:
        """Remove every mirror this service created in ``mirror_calendar_id``."""
        if not self._begin(mirror_calendar_id):
            return self._busy_result(mirror_calendar_id, trigger)

        started_at = datetime.now(timezone.utc)
        warnings: list[str] = []
        try:
            mappings = self.state_store.load_mappings(mirror_calendar_id)
            stale = [SyncMapping(source_key=key, mirrored_uid=uid) for key, uid in sorted(mappings.items())]
            known_uids = set(mappings.values())
            anchor = now or datetime.now(timezone.utc)
            try:
                listed = provider.list_mirrored_events(
                    mirror_calendar_id, anchor - CLEAR_LOOKBACK, anchor + CLEAR_LOOKAHEAD
                )
            except CalendarPermissionError:
                raise
            except Exception as exc:
                logger.warning("Listing mirror %s failed, clearing mapped events only: %s", mirror_calendar_id, exc)
                warnings.append(f"list mirror: {_error_text(exc)}")
                listed = []
            for mirrored in listed:
                if mirrored.source_tag and mirrored.uid not in known_uids:
                    stale.append(SyncMapping(source_key="", mirrored_uid=mirrored.uid))
                    known_uids.add(mirrored.uid)

            self._set_state(mirror_calendar_id, APPLYING)
            deleted, failures = self._apply_deletes(provider, mirror_calendar_id, stale, max_workers, trigger)
        finally:
            self._finish(mirror_calendar_id)

        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        status = "partial" if failures or warnings else "success"
        message = f"Cleared {deleted} mirrored events, failed {len(failures)}."
        logger.info("Clear %s for %s: %s", status, mirror_calendar_id, message)
        return SyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            trigger=trigger,
            deleted=deleted,
            failed=len(failures),
            failures=failures,
            warnings=warnings,
        )
