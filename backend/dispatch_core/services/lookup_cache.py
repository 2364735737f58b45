from __future__ import annotations

import uuid
from typing import Any

from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.schemas.events import TransitionEvent

CACHED_KINDS = frozenset({EntityKind.REPORT, EntityKind.DISPATCH})


class LookupCache:
    """By-number lookup snapshots, evicted whenever the entity transitions.

    A snapshot older than the newest transition already seen for its entity
    is refused, so a read that raced a commit cannot repopulate stale data.
    """

    def __init__(self) -> None:
        self._by_number: dict[tuple[EntityKind, str], Any] = {}
        self._number_by_id: dict[tuple[EntityKind, uuid.UUID], str] = {}
        self._seen_versions: dict[tuple[EntityKind, uuid.UUID], int] = {}

    def get(self, kind: EntityKind, number: str) -> Any | None:
        return self._by_number.get((kind, number))

    def put(self, kind: EntityKind, number: str, entity_id: uuid.UUID, snapshot: Any, *, version: int) -> bool:
        if version < self._seen_versions.get((kind, entity_id), 0):
            return False
        self._by_number[(kind, number)] = snapshot
        self._number_by_id[(kind, entity_id)] = number
        return True

    def evict(self, kind: EntityKind, entity_id: uuid.UUID) -> None:
        number = self._number_by_id.pop((kind, entity_id), None)
        if number is not None:
            self._by_number.pop((kind, number), None)

    async def handle(self, event: TransitionEvent) -> None:
        if event.entity_kind not in CACHED_KINDS:
            return
        key = (event.entity_kind, event.entity_id)
        self._seen_versions[key] = max(event.version, self._seen_versions.get(key, 0))
        self.evict(event.entity_kind, event.entity_id)

    def __len__(self) -> int:
        return len(self._by_number)
