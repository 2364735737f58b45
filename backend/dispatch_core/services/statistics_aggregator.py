"""Derived per-status counts built from the committed transition stream.

The aggregator is the only owner of the counters: nothing else increments
or decrements them. Events may arrive twice (outbox redelivery) or out of
order (concurrent committers), so it keys on ``transition_id`` for
deduplication and keeps the highest-version status seen per entity.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter, OrderedDict, defaultdict

from dispatch_core.models import LIFECYCLES
from dispatch_core.models.dispatch import DispatchStatus
from dispatch_core.models.lifecycle import EntityKind
from dispatch_core.schemas.events import TransitionEvent
from dispatch_core.schemas.statistics import EntityCounts, StatisticsSnapshot

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW = 10_000


class StatisticsAggregator:
    def __init__(self, *, dedup_window: int = DEFAULT_DEDUP_WINDOW) -> None:
        self._dedup_window = dedup_window
        self._seen: OrderedDict[uuid.UUID, None] = OrderedDict()
        self._latest: dict[EntityKind, dict[uuid.UUID, tuple[int, str]]] = defaultdict(dict)
        self._unfulfilled: set[uuid.UUID] = set()
        self.events_applied = 0
        self.duplicates_ignored = 0

    async def handle(self, event: TransitionEvent) -> None:
        if event.transition_id in self._seen:
            self.duplicates_ignored += 1
            logger.debug(
                "statistics.duplicate_ignored",
                extra={"transition_id": str(event.transition_id)},
            )
            return
        self._remember(event.transition_id)

        states = self._latest[event.entity_kind]
        current = states.get(event.entity_id)
        if current is None or event.version > current[0]:
            states[event.entity_id] = (event.version, event.to_status)
        self.events_applied += 1

        if event.entity_kind is EntityKind.UNIT_ASSIGNMENT and event.is_creation and event.parent_id:
            self._unfulfilled.discard(event.parent_id)
        elif event.entity_kind is EntityKind.DISPATCH and event.to_status in _TERMINAL_DISPATCH_VALUES:
            self._unfulfilled.discard(event.entity_id)

    def _remember(self, transition_id: uuid.UUID) -> None:
        self._seen[transition_id] = None
        while len(self._seen) > self._dedup_window:
            self._seen.popitem(last=False)

    def record_unfulfilled(self, dispatch_id: uuid.UUID) -> bool:
        """Flag a dispatch left without units, unless it is already known closed."""
        latest = self._latest[EntityKind.DISPATCH].get(dispatch_id)
        if latest is not None and latest[1] in _TERMINAL_DISPATCH_VALUES:
            logger.debug("statistics.unfulfilled_ignored_closed", extra={"dispatch_id": str(dispatch_id)})
            return False
        self._unfulfilled.add(dispatch_id)
        return True

    @property
    def unfulfilled_dispatch_ids(self) -> frozenset[uuid.UUID]:
        return frozenset(self._unfulfilled)

    def get_counts(self, kind: EntityKind) -> EntityCounts:
        lifecycle = LIFECYCLES[kind]
        terminal = {status.value for status in lifecycle.terminal_statuses}
        states = self._latest.get(kind, {})
        active = Counter(status for _, status in states.values() if status not in terminal)
        return EntityCounts(entity_kind=kind, total=len(states), active_by_status=dict(active))

    def snapshot(self) -> StatisticsSnapshot:
        return StatisticsSnapshot(
            counts=[self.get_counts(kind) for kind in EntityKind],
            unfulfilled_dispatch_ids=sorted(self._unfulfilled, key=str),
            events_applied=self.events_applied,
            duplicates_ignored=self.duplicates_ignored,
        )


_TERMINAL_DISPATCH_VALUES = frozenset({DispatchStatus.COMPLETED.value, DispatchStatus.CANCELLED.value})
