"""
Celery Tasks for periodic delivery dispatch

Each task runs one channel's dispatcher inside a fresh event loop with a
per-task database engine.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from relay.workers.celery_app import celery_app
from relay.workers.dispatchers import run_channel
from relay.db.database import get_task_session_factory
from relay.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _dispatch(channel: str) -> dict:
    async with get_task_session_factory() as session_factory:
        summary = await run_channel(channel, session_factory)
    logger.info(
        "Dispatch task finished",
        extra_data={"channel": channel, "processed": summary["processed"]},
    )
    return summary


@celery_app.task(name="relay.workers.tasks.dispatch_webhooks")
def dispatch_webhooks():
    """Deliver due generic webhook jobs"""
    return run_async(_dispatch("webhooks"))


@celery_app.task(name="relay.workers.tasks.dispatch_communications")
def dispatch_communications():
    """Deliver due chat-platform messages"""
    return run_async(_dispatch("communications"))


@celery_app.task(name="relay.workers.tasks.dispatch_push")
def dispatch_push():
    """Deliver due web push notifications"""
    return run_async(_dispatch("push"))


@celery_app.task(name="relay.workers.tasks.dispatch_calendar")
def dispatch_calendar():
    """Create due calendar events"""
    return run_async(_dispatch("calendar"))
