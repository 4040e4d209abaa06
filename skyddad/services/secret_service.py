"""
Secret lifecycle: creation and gated one-time retrieval.

A retrieval walks TokenCheck -> [PinGate] -> Decrypt -> Consumed and stops
at the first rejection. The only state lives in the secrets table; this
module holds nothing between calls.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy.orm import Session

from skyddad.config import settings
from skyddad.services import audit_service
from skyddad.services.audit_service import ClientInfo
from skyddad.services.crypto_utils import hash_pin, validate_pin, verify_pin
from skyddad.services.encryption_service import decrypt, encrypt
from skyddad.services.errors import (
    BadPinFormat,
    ConflictError,
    DecryptionError,
    InvalidSecretText,
    OperationTimeout,
)
from skyddad.services.link_token_service import generate_secret_id, issue_token, verify_token
from skyddad.services.secret_store import (
    ConsumeResult,
    consume_view,
    fetch_live_secret,
    increment_pin_attempts,
    insert_secret,
    utcnow,
)

logger = structlog.get_logger()

MAX_PIN_ATTEMPTS = 5
DEFAULT_VIEWS = 1


class RetrievalStatus(str, Enum):
    CONSUMED = "consumed"
    PIN_REQUIRED = "pin_required"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    INVALID_LINK = "invalid_link"
    NOT_FOUND = "not_found"
    LOCKED = "locked"
    BAD_PIN_FORMAT = "bad_pin_format"
    DECRYPT_ERROR = "decrypt_error"


@dataclass(frozen=True, slots=True)
class SecretCreateRequest:
    plaintext: str
    pin: str | None = None
    expires_in: timedelta = timedelta(hours=24)


@dataclass(frozen=True, slots=True)
class CreatedSecret:
    secret_id: str
    token: str
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class SecretRetrieveRequest:
    secret_id: str
    token: str | None
    pin: str | None = None


@dataclass(frozen=True, slots=True)
class RetrievalOutcome:
    status: RetrievalStatus
    reason: RejectionReason | None = None
    plaintext: str | None = None
    pin_attempts: int = 0
    pin_mismatch: bool = False
    message: str | None = None

    @classmethod
    def consumed(cls, plaintext: str) -> "RetrievalOutcome":
        return cls(status=RetrievalStatus.CONSUMED, plaintext=plaintext)

    @classmethod
    def pin_required(cls, attempts: int, *, mismatch: bool = False) -> "RetrievalOutcome":
        return cls(
            status=RetrievalStatus.PIN_REQUIRED,
            pin_attempts=attempts,
            pin_mismatch=mismatch,
        )

    @classmethod
    def rejected(cls, reason: RejectionReason, message: str | None = None) -> "RetrievalOutcome":
        return cls(status=RetrievalStatus.REJECTED, reason=reason, message=message)


class Deadline:
    """Caller-supplied time budget, checked before each store mutation."""

    def __init__(self, timeout: float | None) -> None:
        self._expires = None if timeout is None else time.monotonic() + timeout

    def check(self, step: str) -> None:
        if self._expires is not None and time.monotonic() >= self._expires:
            raise OperationTimeout(f"Deadline exceeded before {step}")


def validate_secret_text(text) -> None:
    """Raise InvalidSecretText unless text is a non-empty string within the size limit."""
    if not isinstance(text, str):
        raise InvalidSecretText("Secret text is required")
    if len(text) == 0:
        raise InvalidSecretText("Secret text cannot be empty")
    if len(text) > settings.max_secret_length:
        raise InvalidSecretText(
            f"Secret text cannot exceed {settings.max_secret_length} characters"
        )


def _validate_expiry(expires_in: timedelta) -> None:
    if expires_in <= timedelta(0):
        raise ValueError("Expiry must be in the future")
    if expires_in > timedelta(hours=settings.max_expiry_hours):
        raise ValueError(f"Expiry cannot exceed {settings.max_expiry_hours} hours")


def _emit_audit(
    db: Session, event_type: str, secret_id: str | None, client: ClientInfo | None
) -> None:
    # Fire-and-forget; audit failures never change the outcome
    try:
        audit_service.record_event(db, event_type, secret_id, client)
    except Exception as e:
        logger.warning("audit_event_failed", event_type=event_type, error=type(e).__name__)


def create_secret(
    db: Session,
    request: SecretCreateRequest,
    *,
    client: ClientInfo | None = None,
    timeout: float | None = None,
) -> CreatedSecret:
    """
    Encrypt and store a new single-view secret.

    The PIN, if any, is validated and hashed before anything is written.
    An id collision is retried once with a fresh id.
    """
    deadline = Deadline(timeout)
    validate_secret_text(request.plaintext)
    _validate_expiry(request.expires_in)

    pin_hash = hash_pin(request.pin) if request.pin else None
    ciphertext = encrypt(request.plaintext, settings.encryption_key_bytes)
    expires_at = utcnow() + request.expires_in

    def insert() -> str:
        secret_id = generate_secret_id()
        deadline.check("insert")
        insert_secret(
            db,
            secret_id=secret_id,
            ciphertext=ciphertext,
            pin_hash=pin_hash,
            expires_at=expires_at,
            views_left=DEFAULT_VIEWS,
            creator_ip=client.ip if client else None,
        )
        return secret_id

    try:
        secret_id = insert()
    except ConflictError:
        logger.warning("secret_id_collision")
        secret_id = insert()

    logger.info(
        "secret_created",
        secret_id=secret_id[:8],
        pin_protected=pin_hash is not None,
        expires_at=expires_at.isoformat(),
    )
    _emit_audit(db, audit_service.EVENT_CREATED, secret_id, client)

    return CreatedSecret(
        secret_id=secret_id,
        token=issue_token(secret_id, settings.link_token_secret_bytes),
        expires_at=expires_at,
    )


def is_valid_link(secret_id: str, token: str | None) -> bool:
    """Stateless link check; says nothing about whether the secret still exists."""
    return verify_token(secret_id, token, settings.link_token_secret_bytes)


def _pin_gate(
    db: Session,
    request: SecretRetrieveRequest,
    pin_hash: str,
    attempts: int,
    deadline: Deadline,
    client: ClientInfo | None,
) -> RetrievalOutcome | None:
    """Return a terminal outcome, or None when the submitted PIN is correct."""
    if attempts >= MAX_PIN_ATTEMPTS:
        return RetrievalOutcome.rejected(RejectionReason.LOCKED)

    if not request.pin:
        return RetrievalOutcome.pin_required(attempts)

    try:
        validate_pin(request.pin)
    except BadPinFormat as e:
        return RetrievalOutcome.rejected(RejectionReason.BAD_PIN_FORMAT, str(e))

    if verify_pin(request.pin, pin_hash):
        return None

    deadline.check("recording failed PIN")
    new_attempts = increment_pin_attempts(db, request.secret_id)
    if new_attempts is None:
        return RetrievalOutcome.rejected(RejectionReason.NOT_FOUND)

    logger.info("pin_attempt_failed", secret_id=request.secret_id[:8], attempts=new_attempts)
    _emit_audit(db, audit_service.EVENT_PIN_FAILED, request.secret_id, client)

    if new_attempts >= MAX_PIN_ATTEMPTS:
        logger.warning("secret_locked", secret_id=request.secret_id[:8])
        _emit_audit(db, audit_service.EVENT_LOCKED, request.secret_id, client)
        return RetrievalOutcome.rejected(RejectionReason.LOCKED)

    return RetrievalOutcome.pin_required(new_attempts, mismatch=True)


def retrieve_secret(
    db: Session,
    request: SecretRetrieveRequest,
    *,
    client: ClientInfo | None = None,
    timeout: float | None = None,
) -> RetrievalOutcome:
    """
    Retrieve a secret's plaintext.

    This is a one-time operation. The view is only spent after the payload
    decrypted successfully, and the secret is deleted once its view budget
    is exhausted.
    """
    deadline = Deadline(timeout)

    # Checked before any lookup so a bad link reveals nothing about existence
    if not is_valid_link(request.secret_id, request.token):
        return RetrievalOutcome.rejected(RejectionReason.INVALID_LINK)

    secret = fetch_live_secret(db, request.secret_id)
    if secret is None:
        return RetrievalOutcome.rejected(RejectionReason.NOT_FOUND)

    # Copy out before later commits expire the instance
    ciphertext = secret.ciphertext
    pin_hash = secret.pin_hash
    attempts = secret.pin_attempts

    if pin_hash is not None:
        gate = _pin_gate(db, request, pin_hash, attempts, deadline, client)
        if gate is not None:
            return gate

    try:
        plaintext = decrypt(
            ciphertext,
            settings.encryption_key_bytes,
            allow_legacy=settings.allow_legacy_decrypt,
        )
    except DecryptionError as e:
        logger.error(
            "secret_decrypt_failed",
            secret_id=request.secret_id[:8],
            error_type=type(e).__name__,
        )
        return RetrievalOutcome.rejected(RejectionReason.DECRYPT_ERROR)

    deadline.check("consuming view")
    result = consume_view(
        db,
        request.secret_id,
        max_pin_attempts=MAX_PIN_ATTEMPTS if pin_hash is not None else None,
    )
    if result is ConsumeResult.NOT_FOUND:
        # Another request spent the last view (or cleanup removed the row)
        # between our fetch and the decrement. This caller already holds the
        # decrypted text, so the store outcome is informational only.
        logger.warning("secret_consume_raced", secret_id=request.secret_id[:8])
        return RetrievalOutcome.consumed(plaintext)

    logger.info("secret_viewed", secret_id=request.secret_id[:8])
    _emit_audit(db, audit_service.EVENT_VIEWED, request.secret_id, client)

    return RetrievalOutcome.consumed(plaintext)
