"""Periodic engine tasks run by Celery beat."""

import asyncio
import logging

from sqlalchemy.exc import OperationalError

from sequencer.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def process_due_enrollments_task(self):
    """Advance every enrollment whose wait has elapsed."""
    try:
        return asyncio.run(_process_due())
    except OperationalError as exc:
        logger.error(f"Due sweep could not reach the database: {exc}")
        raise self.retry(exc=exc)


@celery_app.task
def archive_inactive_nurture_task():
    return asyncio.run(_archive_nurture())


@celery_app.task
def advance_nurture_cadence_task():
    return asyncio.run(_advance_cadence())


async def _process_due() -> dict:
    from sequencer.database import async_session, engine
    from sequencer.services.workflow_engine import process_due_enrollments

    try:
        async with async_session() as db:
            stats = await process_due_enrollments(db)
    finally:
        # Pooled connections belong to this event loop
        await engine.dispose()
    logger.info(f"Due sweep: {stats}")
    return stats


async def _archive_nurture() -> int:
    from sequencer.database import async_session, engine
    from sequencer.services.nurture_engine import archive_inactive_nurture_leads

    try:
        async with async_session() as db:
            return await archive_inactive_nurture_leads(db)
    finally:
        await engine.dispose()


async def _advance_cadence() -> int:
    from sequencer.database import async_session, engine
    from sequencer.services.nurture_engine import advance_nurture_cadence

    try:
        async with async_session() as db:
            return await advance_nurture_cadence(db)
    finally:
        await engine.dispose()
