"""Status lifecycles shared by every workflow entity.

Each entity kind declares a transition table, the timestamp column that entering
a status stamps, and an optional hook deriving extra columns from those stamps.
``StatusStateMachine`` is the only writer that consults these tables.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

StatusT = TypeVar("StatusT", bound=enum.Enum)


class EntityKind(str, enum.Enum):
    REPORT = "report"
    DISPATCH = "dispatch"
    UNIT_ASSIGNMENT = "unit_assignment"
    UNIT = "unit"
    SCENE_SUPPORT = "scene_support"


@dataclass(frozen=True, slots=True)
class StampRule:
    field: str
    overwrite: bool = False


@dataclass(frozen=True)
class Lifecycle:
    kind: EntityKind
    model: type
    status_enum: type[enum.Enum]
    transitions: Mapping[Any, frozenset[Any]]
    stamps: Mapping[Any, tuple[StampRule, ...]] = field(default_factory=dict)
    derive: Callable[[Any, dict[str, Any]], dict[str, Any]] | None = None
    parent_attr: str | None = None

    @property
    def terminal_statuses(self) -> frozenset[Any]:
        return frozenset(status for status, targets in self.transitions.items() if not targets)

    def allowed_targets(self, from_status: Any) -> frozenset[Any]:
        return self.transitions.get(from_status, frozenset())

    def is_terminal(self, status: Any) -> bool:
        return status in self.terminal_statuses

    def coerce_status(self, value: Any) -> enum.Enum | None:
        if isinstance(value, self.status_enum):
            return value
        try:
            return self.status_enum(value)
        except ValueError:
            pass
        if isinstance(value, str) and value.upper() in self.status_enum.__members__:
            return self.status_enum[value.upper()]
        return None

    def timestamp_values(self, entity: Any, target: Any, at: datetime) -> dict[str, datetime]:
        values: dict[str, datetime] = {}
        for rule in self.stamps.get(target, ()):
            if rule.overwrite or getattr(entity, rule.field) is None:
                values[rule.field] = at
        return values

    def parent_id(self, entity: Any) -> Any:
        return getattr(entity, self.parent_attr) if self.parent_attr else None


def forward_lattice(order: Sequence[StatusT], cancelled: StatusT) -> dict[StatusT, frozenset[StatusT]]:
    """Every later status is reachable; CANCELLED from anything but the last."""
    table: dict[StatusT, frozenset[StatusT]] = {}
    for index, status in enumerate(order):
        later = frozenset(order[index + 1 :])
        table[status] = later | {cancelled} if later else frozenset()
    table[cancelled] = frozenset()
    return table


def minutes_between(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() // 60))
