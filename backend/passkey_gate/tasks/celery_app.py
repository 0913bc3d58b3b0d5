# backend/passkey_gate/tasks/celery_app.py
import logging

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown

from passkey_gate.core.config import settings
from passkey_gate.db.session import dispose_worker_db_resources_sync, initialize_worker_db_resources

logger = logging.getLogger(__name__)

celery_app = Celery(
    "passkey_gate",
    broker=str(settings.CELERY_BROKER_URL),
    backend=str(settings.CELERY_RESULT_BACKEND),
    include=["passkey_gate.tasks.maintenance"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    task_track_started=True,
    result_expires=3600,
    beat_schedule={
        "purge-expired-sessions": {
            "task": "passkey_gate.tasks.maintenance.purge_expired_sessions",
            "schedule": float(settings.SESSION_PURGE_INTERVAL_SECONDS),
        },
    },
)


# --- Worker Process Lifecycle Signal Handlers ---


@worker_process_init.connect(weak=False)
def init_worker_process_signal(**_kwargs):
    """Signal handler for when a Celery worker process starts."""
    logger.info("CELERY_WORKER_PROCESS_INIT: Initializing DB resources.")
    initialize_worker_db_resources()


@worker_process_shutdown.connect(weak=False)
def shutdown_worker_process_signal(**_kwargs):
    """Signal handler for when a Celery worker process shuts down."""
    logger.info("CELERY_WORKER_PROCESS_SHUTDOWN: Signal received. Disposing DB resources.")
    dispose_worker_db_resources_sync()


@celery_app.task(name="passkey_gate.tasks.health_check_celery")
def health_check_celery_task() -> str:
    logger.info("Celery health check task executed.")
    return "Celery worker is healthy."
