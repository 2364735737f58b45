from __future__ import annotations

import uuid

from dispatch_core.schemas.events import TransitionEvent
from dispatch_core.services.transition_fanout import TransitionFanout


class PostCommitEventQueue:
    def __init__(self) -> None:
        self._events: list[TransitionEvent] = []

    def enqueue(self, event: TransitionEvent) -> None:
        self._events.append(event)

    async def publish_all(self, fanout: TransitionFanout) -> tuple[list[uuid.UUID], list[uuid.UUID]]:
        """Deliver queued events in staging order; returns (delivered, failed) transition ids."""
        events, self._events = self._events, []
        delivered: list[uuid.UUID] = []
        failed: list[uuid.UUID] = []
        for event in events:
            if await fanout.deliver(event):
                delivered.append(event.transition_id)
            else:
                failed.append(event.transition_id)
        return delivered, failed

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)
