import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.exc import IntegrityError

from dispatch_core.core.config import Settings
from dispatch_core.db.unit_of_work import UnitOfWork
from dispatch_core.models import (
    AssignmentStatus,
    Dispatch,
    DispatchStatus,
    DispatchType,
    EmergencyType,
    MaintenanceStatus,
    PriorityLevel,
    Report,
    ReportStatus,
    SceneSupport,
    SupportStatus,
    SupportType,
    TransitionRecord,
    Unit,
    UnitAssignment,
    UnitStatus,
    UnitType,
)
from dispatch_core.models.dispatch import ACTIVE_DISPATCH_STATUSES
from dispatch_core.services.dispatch_workflow import DispatchWorkflow
from dispatch_core.services.lookup_cache import LookupCache
from dispatch_core.services.statistics_aggregator import StatisticsAggregator
from dispatch_core.services.task_scheduler import BackgroundTaskScheduler
from dispatch_core.services.transition_fanout import TransitionFanout

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


async def _io() -> None:
    # yield to the loop like a database round-trip would
    await asyncio.sleep(0)


def _integrity(constraint: str) -> IntegrityError:
    return IntegrityError("INSERT", {}, Exception(f"duplicate key violates {constraint}"))


def _page(rows: list, *, status, priority, limit: int, offset: int, newest_first: str) -> tuple[list, int]:
    matching = [
        row
        for row in rows
        if (status is None or row.status is status) and (priority is None or row.priority is priority)
    ]
    matching.sort(key=lambda row: getattr(row, newest_first), reverse=True)
    return matching[offset : offset + limit], len(matching)


class InMemoryStore:
    def __init__(self) -> None:
        self.tables: dict[type, dict[uuid.UUID, Any]] = defaultdict(dict)

    def rows(self, model: type) -> dict[uuid.UUID, Any]:
        return self.tables[model]

    def all(self, model: type) -> list[Any]:
        return list(self.tables[model].values())

    def insert(self, entity: Any) -> Any:
        self.tables[type(entity)][entity.id] = entity
        return entity


class FakeDB:
    def __init__(self) -> None:
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    async def close(self) -> None:
        self.closed = True


class InMemoryReportRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def create(self, report: Report) -> Report:
        await _io()
        if any(r.report_number == report.report_number for r in self.store.all(Report)):
            raise _integrity("reports.report_number")
        return self.store.insert(report)

    async def get_by_id(self, report_id: uuid.UUID) -> Report | None:
        await _io()
        return self.store.rows(Report).get(report_id)

    async def get_by_number(self, report_number: str) -> Report | None:
        await _io()
        return next((r for r in self.store.all(Report) if r.report_number == report_number), None)

    async def list_paginated(self, *, status=None, priority=None, limit: int, offset: int):
        await _io()
        rows = self.store.all(Report)
        return _page(rows, status=status, priority=priority, limit=limit, offset=offset, newest_first="received_at")


class InMemoryDispatchRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def create(self, dispatch: Dispatch) -> Dispatch:
        await _io()
        for existing in self.store.all(Dispatch):
            if existing.dispatch_number == dispatch.dispatch_number:
                raise _integrity("dispatches.dispatch_number")
            if existing.report_id == dispatch.report_id and existing.status in ACTIVE_DISPATCH_STATUSES:
                raise _integrity("uq_dispatches_active_report")
        return self.store.insert(dispatch)

    async def get_by_id(self, dispatch_id: uuid.UUID) -> Dispatch | None:
        await _io()
        return self.store.rows(Dispatch).get(dispatch_id)

    async def get_by_number(self, dispatch_number: str) -> Dispatch | None:
        await _io()
        return next((d for d in self.store.all(Dispatch) if d.dispatch_number == dispatch_number), None)

    async def list_paginated(self, *, status=None, priority=None, limit: int, offset: int):
        await _io()
        rows = self.store.all(Dispatch)
        return _page(rows, status=status, priority=priority, limit=limit, offset=offset, newest_first="dispatched_at")

    async def get_active_for_report(self, report_id: uuid.UUID) -> Dispatch | None:
        await _io()
        return next(
            (d for d in self.store.all(Dispatch) if d.report_id == report_id and d.status in ACTIVE_DISPATCH_STATUSES),
            None,
        )

    async def create_assignment(self, assignment: UnitAssignment) -> UnitAssignment:
        await _io()
        for existing in self.store.all(UnitAssignment):
            if existing.dispatch_id == assignment.dispatch_id and existing.sequence == assignment.sequence:
                raise _integrity("uq_unit_assignments_dispatch_sequence")
        return self.store.insert(assignment)

    async def list_assignments(self, dispatch_id: uuid.UUID) -> list[UnitAssignment]:
        await _io()
        return sorted(
            (a for a in self.store.all(UnitAssignment) if a.dispatch_id == dispatch_id),
            key=lambda a: a.sequence,
        )

    async def next_assignment_sequence(self, dispatch_id: uuid.UUID) -> int:
        await _io()
        sequences = [a.sequence for a in self.store.all(UnitAssignment) if a.dispatch_id == dispatch_id]
        return max(sequences, default=0) + 1


class InMemoryUnitRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def find_available(self, unit_type: UnitType) -> list[Unit]:
        await _io()
        return sorted(
            (
                u
                for u in self.store.all(Unit)
                if u.unit_type is unit_type
                and u.status is UnitStatus.AVAILABLE
                and u.maintenance_status is MaintenanceStatus.OPERATIONAL
            ),
            key=lambda u: u.unit_number,
        )

    async def get_by_id(self, unit_id: uuid.UUID) -> Unit | None:
        await _io()
        return self.store.rows(Unit).get(unit_id)


class InMemorySceneSupportRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def create(self, support: SceneSupport) -> SceneSupport:
        await _io()
        if any(s.dispatch_id == support.dispatch_id for s in self.store.all(SceneSupport)):
            raise _integrity("scene_supports.dispatch_id")
        return self.store.insert(support)

    async def get_by_id(self, support_id: uuid.UUID) -> SceneSupport | None:
        await _io()
        return self.store.rows(SceneSupport).get(support_id)

    async def get_for_dispatch(self, dispatch_id: uuid.UUID) -> SceneSupport | None:
        await _io()
        return next((s for s in self.store.all(SceneSupport) if s.dispatch_id == dispatch_id), None)

    async def list_paginated(self, *, status=None, priority=None, limit: int, offset: int):
        await _io()
        rows = self.store.all(SceneSupport)
        return _page(rows, status=status, priority=priority, limit=limit, offset=offset, newest_first="requested_at")


class InMemoryStatusRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get(self, model: type, entity_id: uuid.UUID) -> Any | None:
        await _io()
        return self.store.rows(model).get(entity_id)

    async def compare_and_set(
        self, model: type, entity_id: uuid.UUID, *, expected_version: int, values: dict[str, Any]
    ) -> int | None:
        await _io()
        entity = self.store.rows(model).get(entity_id)
        if entity is None or entity.version != expected_version:
            return None
        for key, value in values.items():
            setattr(entity, key, value)
        entity.version = expected_version + 1
        return entity.version


class InMemoryTransitionRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def add(self, record: TransitionRecord) -> TransitionRecord:
        return self.store.insert(record)

    async def list_undelivered(
        self, *, limit: int, max_attempts: int, occurred_before: datetime
    ) -> list[TransitionRecord]:
        await _io()
        pending = [
            r
            for r in self.store.all(TransitionRecord)
            if r.delivered_at is None and r.delivery_attempts < max_attempts and r.occurred_at < occurred_before
        ]
        return sorted(pending, key=lambda r: (r.occurred_at, r.version))[:limit]

    async def mark_delivered(self, transition_ids: list[uuid.UUID], *, at: datetime) -> None:
        for transition_id in transition_ids:
            record = self.store.rows(TransitionRecord)[transition_id]
            record.delivered_at = at
            record.delivery_attempts += 1

    async def record_failed_attempt(self, transition_ids: list[uuid.UUID]) -> None:
        for transition_id in transition_ids:
            self.store.rows(TransitionRecord)[transition_id].delivery_attempts += 1


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: InMemoryStore, fanout: TransitionFanout) -> None:
        super().__init__(FakeDB, fanout)
        self.store = store

    def _bind(self, db: FakeDB) -> None:
        self.reports = InMemoryReportRepository(self.store)
        self.dispatches = InMemoryDispatchRepository(self.store)
        self.units = InMemoryUnitRepository(self.store)
        self.scene_supports = InMemorySceneSupportRepository(self.store)
        self.statuses = InMemoryStatusRepository(self.store)
        self.transitions = InMemoryTransitionRepository(self.store)


class RecordingSink:
    def __init__(self) -> None:
        self.events = []

    async def handle(self, event) -> None:
        self.events.append(event)

    def of(self, kind) -> list:
        return [event for event in self.events if event.entity_kind is kind]


class FailingSink:
    def __init__(self, failures: int = 1) -> None:
        self.failures = failures
        self.calls = 0

    async def handle(self, event) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("sink unavailable")


class FakePublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, uuid.UUID, dict, str | None]] = []

    async def publish(self, event_name, entity_id, payload, *, entity_type=None, correlation_id=None) -> None:
        self.events.append((event_name, entity_id, payload, entity_type))


class FixedClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class Seeder:
    def __init__(self, store: InMemoryStore, clock: FixedClock) -> None:
        self.store = store
        self.clock = clock

    def report(
        self,
        *,
        emergency_type: EmergencyType = EmergencyType.FIRE,
        priority: PriorityLevel = PriorityLevel.HIGH,
        status: ReportStatus = ReportStatus.RECEIVED,
        version: int = 1,
        **overrides: Any,
    ) -> Report:
        fields = {
            "id": uuid.uuid4(),
            "report_number": f"ER-{uuid.uuid4().hex[:8].upper()}",
            "caller_name": "Dana Reyes",
            "caller_phone": "555-0100",
            "location_address": "12 Harbor Rd",
            "location_latitude": 40.7128,
            "location_longitude": -74.0060,
            "description": None,
            "emergency_type": emergency_type,
            "priority": priority,
            "status": status,
            "received_at": self.clock(),
            "dispatched_at": None,
            "arrived_at": None,
            "completed_at": None,
            "cancelled_at": None,
            "version": version,
        }
        fields.update(overrides)
        return self.store.insert(Report(**fields))

    def dispatch(
        self,
        report: Report | None = None,
        *,
        dispatch_type: DispatchType = DispatchType.FIRE_ENGINE,
        priority: PriorityLevel = PriorityLevel.HIGH,
        status: DispatchStatus = DispatchStatus.DISPATCHED,
        version: int = 1,
        **overrides: Any,
    ) -> Dispatch:
        if report is None:
            report = self.report(priority=priority, status=ReportStatus.DISPATCHED, dispatched_at=self.clock())
        fields = {
            "id": uuid.uuid4(),
            "dispatch_number": f"DISP-{uuid.uuid4().hex[:8].upper()}",
            "report_id": report.id,
            "dispatch_type": dispatch_type,
            "priority": priority,
            "status": status,
            "incident_latitude": report.location_latitude,
            "incident_longitude": report.location_longitude,
            "dispatched_at": self.clock(),
            "en_route_at": None,
            "arrived_at": None,
            "completed_at": None,
            "cancelled_at": None,
            "notes": None,
            "version": version,
        }
        fields.update(overrides)
        return self.store.insert(Dispatch(**fields))

    def unit(
        self,
        unit_number: str,
        *,
        unit_type: UnitType = UnitType.ENGINE,
        status: UnitStatus = UnitStatus.AVAILABLE,
        maintenance_status: MaintenanceStatus = MaintenanceStatus.OPERATIONAL,
        latitude: float | None = None,
        longitude: float | None = None,
        current_dispatch_id: uuid.UUID | None = None,
    ) -> Unit:
        return self.store.insert(
            Unit(
                id=uuid.uuid4(),
                unit_number=unit_number,
                unit_name=f"Unit {unit_number}",
                unit_type=unit_type,
                station_code="ST-1",
                status=status,
                maintenance_status=maintenance_status,
                current_latitude=latitude,
                current_longitude=longitude,
                crew_count=4,
                current_dispatch_id=current_dispatch_id,
                status_changed_at=None,
                version=1,
            )
        )

    def assignment(
        self,
        dispatch: Dispatch,
        unit: Unit,
        *,
        sequence: int = 1,
        status: AssignmentStatus = AssignmentStatus.DISPATCHED,
    ) -> UnitAssignment:
        unit.status = UnitStatus.DISPATCHED
        unit.current_dispatch_id = dispatch.id
        return self.store.insert(
            UnitAssignment(
                id=uuid.uuid4(),
                dispatch_id=dispatch.id,
                unit_id=unit.id,
                sequence=sequence,
                status=status,
                dispatched_at=dispatch.dispatched_at,
                en_route_at=None,
                arrived_at=None,
                completed_at=None,
                cancelled_at=None,
                estimated_arrival_at=None,
                actual_arrival_at=None,
                travel_distance_km=None,
                response_time_minutes=None,
                travel_time_minutes=None,
                version=1,
            )
        )

    def support(
        self,
        dispatch: Dispatch,
        *,
        support_type: SupportType = SupportType.ADDITIONAL_UNITS,
        status: SupportStatus = SupportStatus.REQUESTED,
    ) -> SceneSupport:
        return self.store.insert(
            SceneSupport(
                id=uuid.uuid4(),
                dispatch_id=dispatch.id,
                support_type=support_type,
                priority=dispatch.priority,
                status=status,
                requested_at=self.clock(),
                approved_at=None,
                dispatched_at=None,
                arrived_at=None,
                completed_at=None,
                cancelled_at=None,
                description=None,
                summary=None,
                cost_estimate=None,
                actual_cost=None,
                actual_duration_minutes=None,
                version=1,
            )
        )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def seed(store: InMemoryStore, clock: FixedClock) -> Seeder:
    return Seeder(store, clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="test", database_url="", redis_url="", log_json=False)


@pytest.fixture
def recorder() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def statistics(settings: Settings) -> StatisticsAggregator:
    return StatisticsAggregator(dedup_window=settings.statistics_dedup_window)


@pytest.fixture
def cache() -> LookupCache:
    return LookupCache()


@pytest.fixture
def fanout(recorder: RecordingSink, statistics: StatisticsAggregator, cache: LookupCache) -> TransitionFanout:
    return TransitionFanout([recorder, statistics, cache])


@pytest.fixture
def uow_factory(store: InMemoryStore, fanout: TransitionFanout):
    return lambda: InMemoryUnitOfWork(store, fanout)


@pytest.fixture
def workflow(uow_factory, fanout, statistics, cache, settings, clock) -> DispatchWorkflow:
    return DispatchWorkflow(
        uow_factory=uow_factory,
        fanout=fanout,
        scheduler=BackgroundTaskScheduler(history_size=settings.task_history_size),
        statistics=statistics,
        cache=cache,
        settings=settings,
        clock=clock,
    )
