"""
Celery worker for periodic maintenance: contract reconciliation and notification cleanup.
"""
from celery import Celery
import logging
from .config import settings
from .database import SessionLocal
from .use_cases.contract_lifecycle import reconcile_active_contracts
from .use_cases import notifications

logger = logging.getLogger(__name__)

celery_app = Celery(
    "lessonhub",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
)


@celery_app.task(name="reconcile_active_contracts")
def reconcile_active_contracts_task():
    """
    Re-run summary recompute and completion for every active contract.

    Catches contracts whose completion was missed (e.g. lessons edited
    directly in the database). Busy contracts are skipped until the next run.
    """
    db = SessionLocal()
    try:
        return reconcile_active_contracts(db)
    except Exception as e:
        db.rollback()
        logger.error("Error reconciling contracts: %s", e, exc_info=True)
        raise
    finally:
        db.close()


@celery_app.task(name="cleanup_superseded_notifications")
def cleanup_superseded_notifications_task():
    """Retract opened/assigned/declined records of appointments that were accepted."""
    db = SessionLocal()
    try:
        removed = notifications.cleanup_superseded_notifications(db)
        logger.info("Removed %d superseded appointment notifications", removed)
        return {"removed": removed}
    except Exception as e:
        db.rollback()
        logger.error("Error cleaning up notifications: %s", e, exc_info=True)
        raise
    finally:
        db.close()


# Schedule periodic processing
celery_app.conf.beat_schedule = {
    'reconcile-contracts': {
        'task': 'reconcile_active_contracts',
        'schedule': settings.RECONCILE_INTERVAL_SECONDS,
    },
    'cleanup-notifications-hourly': {
        'task': 'cleanup_superseded_notifications',
        'schedule': 3600.0,
    },
}
