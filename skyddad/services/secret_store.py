"""
Typed access to the secrets table.

Every mutation here is a single committed transaction built around a
conditional UPDATE, so concurrent requests against the same secret are
serialized by the database's row write lock rather than by anything in
process memory. Nothing is cached between calls.
"""

from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session
from sqlalchemy.orm import exc as orm_exc

from skyddad.models.secret import Secret
from skyddad.services.errors import ConflictError, StoreUnavailable


class ConsumeResult(str, Enum):
    CONSUMED = "consumed"
    NOT_FOUND = "not_found"


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@contextmanager
def store_errors(db: Session):
    """Translate connection-level database failures into StoreUnavailable."""
    try:
        yield
    except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.DisconnectionError) as e:
        db.rollback()
        raise StoreUnavailable("Secret store unavailable") from e


def insert_secret(
    db: Session,
    *,
    secret_id: str,
    ciphertext: str,
    pin_hash: str | None,
    expires_at: datetime,
    views_left: int = 1,
    creator_ip: str | None = None,
) -> Secret:
    """
    Insert a new secret.

    Raises ConflictError if the id is already taken.
    """
    secret = Secret(
        id=secret_id,
        ciphertext=ciphertext,
        pin_hash=pin_hash,
        views_left=views_left,
        pin_attempts=0,
        expires_at=expires_at,
        creator_ip=creator_ip,
    )

    with store_errors(db):
        db.add(secret)
        try:
            db.commit()
        except (sa_exc.IntegrityError, orm_exc.FlushError) as e:
            db.rollback()
            raise ConflictError("Secret id already exists") from e
        db.refresh(secret)

    return secret


def fetch_live_secret(db: Session, secret_id: str, *, now: datetime | None = None) -> Secret | None:
    """Return the secret if it exists and has not expired."""
    now = now or utcnow()
    with store_errors(db):
        return (
            db.query(Secret)
            .filter(Secret.id == secret_id, Secret.expires_at > now)
            .first()
        )


def consume_view(
    db: Session,
    secret_id: str,
    *,
    now: datetime | None = None,
    max_pin_attempts: int | None = None,
) -> ConsumeResult:
    """
    Spend one view of a secret, deleting it when the budget reaches zero.

    The decrement only applies to a live row with views left, and the delete
    runs in the same transaction. Of two concurrent callers on a single-view
    secret, the second one's UPDATE waits for the first to commit and then
    matches no row.

    With max_pin_attempts set, a secret locked by a concurrent wrong PIN is
    treated as gone.
    """
    now = now or utcnow()
    conditions = [
        Secret.id == secret_id,
        Secret.views_left > 0,
        Secret.expires_at > now,
    ]
    if max_pin_attempts is not None:
        conditions.append(Secret.pin_attempts < max_pin_attempts)

    with store_errors(db):
        updated = (
            db.query(Secret)
            .filter(*conditions)
            .update({Secret.views_left: Secret.views_left - 1}, synchronize_session=False)
        )
        if updated == 0:
            db.rollback()
            return ConsumeResult.NOT_FOUND

        (
            db.query(Secret)
            .filter(Secret.id == secret_id, Secret.views_left <= 0)
            .delete(synchronize_session=False)
        )
        db.commit()

    return ConsumeResult.CONSUMED


def increment_pin_attempts(db: Session, secret_id: str) -> int | None:
    """
    Record a failed PIN and return the new attempt count.

    The read happens while this transaction still holds the row lock taken
    by the UPDATE, so two concurrent failures always count as two.
    Returns None if the secret no longer exists.
    """
    with store_errors(db):
        updated = (
            db.query(Secret)
            .filter(Secret.id == secret_id)
            .update({Secret.pin_attempts: Secret.pin_attempts + 1}, synchronize_session=False)
        )
        if updated == 0:
            db.rollback()
            return None

        attempts = db.query(Secret.pin_attempts).filter(Secret.id == secret_id).scalar()
        db.commit()

    return attempts


def purge_expired_secrets(db: Session, *, now: datetime | None = None) -> int:
    """
    Hard delete all secrets past their expiry.

    Returns the count of deleted rows.
    """
    now = now or utcnow()
    with store_errors(db):
        result = (
            db.query(Secret)
            .filter(Secret.expires_at <= now)
            .delete(synchronize_session=False)
        )
        db.commit()
    return result
