"""Background scheduler for periodic cleanup of expired secrets and old audit events."""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from skyddad.config import settings
from skyddad.database import SessionLocal
from skyddad.logging_config import get_logger
from skyddad.services import audit_service
from skyddad.services.errors import StoreUnavailable
from skyddad.services.secret_store import purge_expired_secrets, utcnow

logger = get_logger("scheduler")

scheduler = BackgroundScheduler()


def run_cleanup(db) -> dict:
    """
    Delete expired secrets and audit events past retention.

    Returns the counts of deleted rows.
    """
    now = utcnow()
    expired = purge_expired_secrets(db, now=now)
    if expired:
        audit_service.record_event(
            db, audit_service.EVENT_EXPIRED, None, audit_service.SYSTEM_CLIENT
        )

    old_events = audit_service.purge_old_log_events(db, settings.log_retention_days, now=now)
    audit_service.record_event(db, audit_service.EVENT_CLEANUP, None, audit_service.SYSTEM_CLIENT)

    return {"expired_secrets": expired, "old_log_events": old_events}


def cleanup_job() -> None:
    """Scheduled entry point; owns its own session."""
    db = SessionLocal()
    try:
        counts = run_cleanup(db)
        logger.info("cleanup_completed", **counts)
    except (SQLAlchemyError, StoreUnavailable) as e:
        logger.error("cleanup_failed", error=type(e).__name__)
    finally:
        db.close()


def start_scheduler() -> None:
    """Start the background scheduler."""
    scheduler.add_job(
        cleanup_job,
        trigger=IntervalTrigger(hours=settings.cleanup_interval_hours),
        id="cleanup_expired_secrets",
        replace_existing=True,
    )
    if not scheduler.running:
        scheduler.start()
    logger.info("scheduler_started", interval_hours=settings.cleanup_interval_hours)


def shutdown_scheduler() -> None:
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")
