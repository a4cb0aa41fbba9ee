from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from booked.models import SourceEvent, SyncMapping


@dataclass
class EventDiff:
    to_create: list[SourceEvent] = field(default_factory=list)
    to_delete: list[SyncMapping] = field(default_factory=list)
    to_keep: list[SyncMapping] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_create and not self.to_delete


def diff_events(source_events: Iterable[SourceEvent], mappings: Mapping[str, str]) -> EventDiff:
    """Split the current source set against known mappings.

    Mappings are keyed by source key. A mapping whose source disappeared is
    stale and goes to ``to_delete``; an unmapped source goes to ``to_create``;
    everything else is kept untouched. Mirrors are never updated in place, and
    a source whose times changed keeps its key, so it stays in ``to_keep``.
    """
    current: dict[str, SourceEvent] = {}
    for event in source_events:
        current.setdefault(event.key, event)

    result = EventDiff()
    for source_key, mirrored_uid in mappings.items():
        mapping = SyncMapping(source_key=source_key, mirrored_uid=mirrored_uid)
        if source_key in current:
            result.to_keep.append(mapping)
        else:
            result.to_delete.append(mapping)

    for source_key, event in current.items():
        if source_key not in mappings:
            result.to_create.append(event)
    return result
