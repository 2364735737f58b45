from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from dispatch_core.schemas.events import TransitionEvent

logger = logging.getLogger(__name__)


class TransitionSink(Protocol):
    async def handle(self, event: TransitionEvent) -> None: ...


class TransitionFanout:
    """Delivers each committed transition to every subscribed sink.

    A failing sink never blocks the others. ``deliver`` reports whether every
    sink accepted the event so the caller can leave it in the outbox for retry.
    Sinks must therefore tolerate seeing the same transition more than once.
    """

    def __init__(self, sinks: Iterable[TransitionSink] = ()) -> None:
        self._sinks: list[TransitionSink] = list(sinks)

    def subscribe(self, sink: TransitionSink) -> None:
        self._sinks.append(sink)

    @property
    def sinks(self) -> tuple[TransitionSink, ...]:
        return tuple(self._sinks)

    async def deliver(self, event: TransitionEvent) -> bool:
        delivered = True
        for sink in self._sinks:
            try:
                await sink.handle(event)
            except Exception as exc:
                delivered = False
                logger.error(
                    "transition_fanout.deliver failed",
                    extra={
                        "sink": type(sink).__name__,
                        "transition_id": str(event.transition_id),
                        "entity_kind": event.entity_kind.value,
                        "entity_id": str(event.entity_id),
                        "to_status": event.to_status,
                        "error": str(exc),
                    },
                    exc_info=exc,
                )
        return delivered
