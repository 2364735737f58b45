from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dispatch_core.core.errors import AppError, ErrorCodes

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 1_000


class TaskOutcome(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(eq=False)
class ScheduledTask:
    name: str
    scheduled_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    outcome: TaskOutcome = TaskOutcome.PENDING
    result: Any = None
    error_code: str | None = None
    error_message: str | None = None
    finished_at: datetime | None = None
    task: asyncio.Task | None = None

    @property
    def done(self) -> bool:
        return self.outcome is not TaskOutcome.PENDING


class BackgroundTaskScheduler:
    """Runs follow-up work after the caller's commit and records how it ended.

    A job's return value may carry ``task_outcome`` and ``reason_code``
    attributes to report a skip; otherwise a clean return is SUCCEEDED.
    ``AppError`` maps to FAILED with its code, anything else to INTERNAL_ERROR.
    Finished records move to a bounded history and drop their ``asyncio.Task``.
    """

    def __init__(self, *, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self._pending: list[ScheduledTask] = []
        self._finished: deque[ScheduledTask] = deque(maxlen=history_size)

    def schedule(self, name: str, job: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> ScheduledTask:
        record = ScheduledTask(name=name)
        record.task = asyncio.create_task(self._run(record, job, *args, **kwargs), name=name)
        self._pending.append(record)
        logger.info("task_scheduler.scheduled", extra={"task_name": name})
        return record

    async def _run(self, record: ScheduledTask, job: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> None:
        try:
            result = await job(*args, **kwargs)
        except AppError as exc:
            record.outcome = TaskOutcome.FAILED
            record.error_code = exc.code
            record.error_message = exc.message
            logger.warning(
                "task_scheduler.task_failed",
                extra={"task_name": record.name, "error_code": exc.code, "details": exc.details},
            )
        except Exception as exc:
            record.outcome = TaskOutcome.FAILED
            record.error_code = ErrorCodes.INTERNAL_ERROR
            record.error_message = str(exc)
            logger.error(
                "task_scheduler.task_crashed",
                extra={"task_name": record.name, "error": str(exc)},
                exc_info=exc,
            )
        else:
            record.result = result
            record.outcome = getattr(result, "task_outcome", TaskOutcome.SUCCEEDED)
            record.error_code = getattr(result, "reason_code", None)
            logger.info(
                "task_scheduler.task_finished",
                extra={"task_name": record.name, "outcome": record.outcome.value, "reason_code": record.error_code},
            )
        finally:
            self._retire(record)

    def _retire(self, record: ScheduledTask) -> None:
        if record.outcome is TaskOutcome.PENDING:
            record.outcome = TaskOutcome.FAILED
            record.error_code = ErrorCodes.INTERNAL_ERROR
            record.error_message = "cancelled"
        record.finished_at = datetime.now(UTC)
        record.task = None
        if record in self._pending:
            self._pending.remove(record)
        self._finished.append(record)

    async def drain(self) -> list[ScheduledTask]:
        """Wait for every scheduled task, including tasks scheduled by tasks."""
        while self._pending:
            await asyncio.gather(
                *(record.task for record in list(self._pending) if record.task is not None),
                return_exceptions=True,
            )
            for record in [r for r in self._pending if r.task is not None and r.task.done()]:
                self._retire(record)
        return list(self._finished)

    async def shutdown(self) -> None:
        running = [record.task for record in self._pending if record.task is not None]
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        # tasks cancelled before their first step never reach _run's cleanup
        for record in list(self._pending):
            self._retire(record)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def tasks(self, prefix: str | None = None) -> list[ScheduledTask]:
        records = [*self._finished, *self._pending]
        if prefix is None:
            return records
        return [record for record in records if record.name.startswith(prefix)]
