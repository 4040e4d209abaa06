"""Anonymized audit trail of secret lifecycle events."""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from skyddad.models.log_event import LogEvent

logger = structlog.get_logger()

EVENT_CREATED = "created"
EVENT_VIEWED = "viewed"
EVENT_PIN_FAILED = "pin_failed"
EVENT_LOCKED = "locked"
EVENT_EXPIRED = "expired"
EVENT_CLEANUP = "cleanup"

# Order matters: Edge and Chrome user agents also contain "Safari"
_BROWSER_FAMILIES = ("Edg", "Chrome", "Firefox", "Safari")


@dataclass(frozen=True, slots=True)
class ClientInfo:
    ip: str = "unknown"
    user_agent: str = "unknown"


SYSTEM_CLIENT = ClientInfo(ip="system", user_agent="cleanup-job")


def hash_ip(ip: str) -> str:
    """SHA-256 of the IP address; the raw address is never stored."""
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


def browser_family(user_agent: str) -> str:
    for family in _BROWSER_FAMILIES:
        if family in user_agent:
            return "Edge" if family == "Edg" else family
    return "Other"


def hash_user_agent(user_agent: str) -> str:
    """Hash only the browser family, dropping version and OS details."""
    return hashlib.sha256(browser_family(user_agent).encode("utf-8")).hexdigest()


def record_event(
    db: Session,
    event_type: str,
    secret_id: str | None,
    client: ClientInfo | None = None,
) -> bool:
    """
    Store an audit event.

    Returns True if the event was written, False otherwise.
    Failures are logged but don't raise - auditing must never break the
    request that triggered it.
    """
    client = client or ClientInfo()
    event = LogEvent(
        event_type=event_type,
        secret_id=secret_id,
        ip_hash=hash_ip(client.ip),
        user_agent_hash=hash_user_agent(client.user_agent),
    )

    try:
        db.add(event)
        db.commit()
        return True
    except sa_exc.SQLAlchemyError as e:
        db.rollback()
        logger.warning("audit_event_failed", event_type=event_type, error=type(e).__name__)
        return False


def purge_old_log_events(db: Session, retention_days: int, *, now: datetime) -> int:
    """Delete audit events older than the retention window. Returns count deleted."""
    cutoff = now - timedelta(days=retention_days)
    result = (
        db.query(LogEvent)
        .filter(LogEvent.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    return result
