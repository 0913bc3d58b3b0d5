# backend/passkey_gate/tasks/maintenance.py
"""
Maintenance tasks for database hygiene.
"""

import asyncio
import logging

from passkey_gate.db import session as db_session
from passkey_gate.services import session_service
from passkey_gate.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="passkey_gate.tasks.maintenance.purge_expired_sessions")
def purge_expired_sessions_task() -> int:
    """
    Periodic task removing expired sign-in sessions.
    Runs the async purge on a fresh event loop.
    """
    return asyncio.run(purge_expired_sessions())


async def purge_expired_sessions() -> int:
    logger.info("Maintenance: Purging expired sessions.")
    db_session.initialize_worker_db_resources()
    try:
        async with db_session.get_worker_db_session() as db:
            purged = await session_service.purge_expired_sessions(db)
    finally:
        # Pooled connections are bound to this task's event loop
        if db_session.worker_async_engine is not None:
            await db_session.worker_async_engine.dispose()
    logger.info("Maintenance: %d expired session(s) purged.", purged)
    return purged
