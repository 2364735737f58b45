"""Background worker entrypoint.

Run as: python -m dispatch_core.worker

Handles:
- Outbox redelivery of committed status transitions
"""
from __future__ import annotations

import asyncio
import logging
import signal

from dispatch_core.core.config import get_settings
from dispatch_core.core.logging import configure_logging
from dispatch_core.services.dispatch_workflow import build_workflow
from dispatch_core.workers.transition_redelivery_worker import _redelivery_loop

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    logger.info("Dispatch worker starting...")
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler():
        logger.info("Worker received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _signal_handler)

    settings = get_settings()
    workflow = build_workflow(settings=settings)

    tasks = [
        asyncio.create_task(_heartbeat_loop(stop_event)),
        asyncio.create_task(
            _redelivery_loop(
                stop_event, workflow.redeliver_pending, interval_seconds=settings.redelivery_interval_seconds
            )
        ),
    ]

    await stop_event.wait()
    logger.info("Worker shutting down...")

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await workflow.scheduler.shutdown()
    logger.info("Worker stopped.")


async def _heartbeat_loop(stop: asyncio.Event) -> None:
    while not stop.is_set():
        logger.debug("Worker heartbeat")
        await asyncio.sleep(60)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
