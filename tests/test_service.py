"""Tests for the secret lifecycle service."""

import threading
from datetime import timedelta

import pytest

from skyddad.config import settings
from skyddad.models.log_event import LogEvent
from skyddad.models.secret import Secret
from skyddad.services import audit_service, secret_service
from skyddad.services.audit_service import ClientInfo
from skyddad.services.errors import InvalidSecretText, OperationTimeout
from skyddad.services.link_token_service import generate_secret_id, issue_token
from skyddad.services.secret_service import (
    MAX_PIN_ATTEMPTS,
    RejectionReason,
    RetrievalStatus,
    SecretCreateRequest,
    SecretRetrieveRequest,
    create_secret,
    retrieve_secret,
)
from skyddad.services.secret_store import ConsumeResult, insert_secret
from tests.test_utils import make_legacy_blob, utcnow

CLIENT = ClientInfo(ip="203.0.113.7", user_agent="Mozilla/5.0 Firefox/130.0")


def view(db, created, pin=None, token=None):
    return retrieve_secret(
        db,
        SecretRetrieveRequest(
            secret_id=created.secret_id,
            token=token if token is not None else created.token,
            pin=pin,
        ),
        client=CLIENT,
    )


def store_raw(db, ciphertext, *, expires_in=timedelta(hours=1)):
    """Insert a row directly, bypassing encryption. Returns (secret_id, token)."""
    secret_id = generate_secret_id()
    insert_secret(
        db,
        secret_id=secret_id,
        ciphertext=ciphertext,
        pin_hash=None,
        expires_at=utcnow() + expires_in,
    )
    return secret_id, issue_token(secret_id, settings.link_token_secret_bytes)


class TestCreateSecret:
    """Tests for create_secret."""

    def test_create_returns_id_token_and_expiry(self, db_session):
        before = utcnow()
        created = create_secret(
            db_session, SecretCreateRequest(plaintext="hello", expires_in=timedelta(hours=2))
        )

        assert len(created.secret_id) == 64
        assert len(created.token) == 64
        assert before + timedelta(hours=2) <= created.expires_at <= utcnow() + timedelta(hours=2)

    def test_stored_row_is_encrypted(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))
        row = db_session.get(Secret, created.secret_id)

        assert row.ciphertext.startswith("v1:")
        assert "hello" not in row.ciphertext
        assert row.views_left == 1
        assert row.pin_attempts == 0
        assert row.pin_hash is None

    def test_pin_is_stored_hashed(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello", pin="1234"))
        row = db_session.get(Secret, created.secret_id)

        assert row.pin_hash.startswith("$argon2id$")
        assert "1234" not in row.pin_hash

    def test_empty_pin_means_no_pin(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello", pin=""))
        assert db_session.get(Secret, created.secret_id).pin_hash is None

    @pytest.mark.parametrize("plaintext", ["", None, "x" * 10_001])
    def test_invalid_text_is_rejected(self, db_session, plaintext):
        with pytest.raises(InvalidSecretText):
            create_secret(db_session, SecretCreateRequest(plaintext=plaintext))
        assert db_session.query(Secret).count() == 0

    def test_max_length_text_is_accepted(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="x" * 10_000))
        assert view(db_session, created).plaintext == "x" * 10_000

    @pytest.mark.parametrize("expires_in", [timedelta(0), timedelta(hours=169)])
    def test_invalid_expiry_is_rejected(self, db_session, expires_in):
        with pytest.raises(ValueError):
            create_secret(db_session, SecretCreateRequest(plaintext="hi", expires_in=expires_in))

    def test_id_collision_is_retried_once(self, db_session, monkeypatch):
        existing = create_secret(db_session, SecretCreateRequest(plaintext="first"))
        db_session.expunge_all()

        fresh_id = generate_secret_id()
        ids = iter([existing.secret_id, fresh_id])
        monkeypatch.setattr(secret_service, "generate_secret_id", lambda: next(ids))

        created = create_secret(db_session, SecretCreateRequest(plaintext="second"))

        assert created.secret_id == fresh_id
        assert view(db_session, created).plaintext == "second"
        assert view(db_session, existing).plaintext == "first"

    def test_expired_deadline_writes_nothing(self, db_session):
        with pytest.raises(OperationTimeout):
            create_secret(db_session, SecretCreateRequest(plaintext="hello"), timeout=0)
        assert db_session.query(Secret).count() == 0

    def test_create_records_audit_event(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hi"), client=CLIENT)

        event = db_session.query(LogEvent).one()
        assert event.event_type == audit_service.EVENT_CREATED
        assert event.secret_id == created.secret_id
        assert event.ip_hash == audit_service.hash_ip(CLIENT.ip)


class TestRetrieveSecret:
    """Tests for retrieve_secret without a PIN."""

    def test_view_once_then_gone(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))

        first = view(db_session, created)
        assert first.status is RetrievalStatus.CONSUMED
        assert first.plaintext == "hello"

        second = view(db_session, created)
        assert second.status is RetrievalStatus.REJECTED
        assert second.reason is RejectionReason.NOT_FOUND
        assert second.plaintext is None

        db_session.expire_all()
        assert db_session.get(Secret, created.secret_id) is None

    def test_wrong_token_is_invalid_link(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))
        other = create_secret(db_session, SecretCreateRequest(plaintext="other"))

        outcome = view(db_session, created, token=other.token)

        assert outcome.reason is RejectionReason.INVALID_LINK
        assert view(db_session, created).plaintext == "hello"

    def test_invalid_link_never_touches_the_store(self, db_session, monkeypatch):
        calls = []
        monkeypatch.setattr(
            secret_service, "fetch_live_secret", lambda *args, **kwargs: calls.append(args)
        )

        outcome = retrieve_secret(
            db_session,
            SecretRetrieveRequest(secret_id=generate_secret_id(), token="0" * 64),
        )

        assert outcome.reason is RejectionReason.INVALID_LINK
        assert calls == []

    def test_missing_token_is_invalid_link(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))
        outcome = retrieve_secret(
            db_session, SecretRetrieveRequest(secret_id=created.secret_id, token=None)
        )
        assert outcome.reason is RejectionReason.INVALID_LINK

    def test_expired_secret_is_not_found(self, db_session):
        secret_id, token = store_raw(
            db_session, "v1:unused", expires_in=timedelta(seconds=-1)
        )

        outcome = retrieve_secret(
            db_session, SecretRetrieveRequest(secret_id=secret_id, token=token)
        )

        assert outcome.reason is RejectionReason.NOT_FOUND

    def test_tampered_ciphertext_does_not_spend_the_view(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))
        row = db_session.get(Secret, created.secret_id)
        version, nonce, ciphertext, tag = row.ciphertext.split(":")
        row.ciphertext = ":".join([version, nonce, ciphertext, nonce])
        db_session.commit()

        outcome = view(db_session, created)

        assert outcome.reason is RejectionReason.DECRYPT_ERROR
        db_session.expire_all()
        assert db_session.get(Secret, created.secret_id).views_left == 1

    def test_unknown_format_is_decrypt_error(self, db_session):
        secret_id, token = store_raw(db_session, "v9:AAAA:AAAA:AAAA")

        outcome = retrieve_secret(
            db_session, SecretRetrieveRequest(secret_id=secret_id, token=token)
        )

        assert outcome.reason is RejectionReason.DECRYPT_ERROR
        assert db_session.get(Secret, secret_id) is not None

    def test_legacy_row_still_decrypts(self, db_session):
        blob = make_legacy_blob("from before the upgrade", settings.encryption_key_bytes)
        secret_id, token = store_raw(db_session, blob)

        outcome = retrieve_secret(
            db_session, SecretRetrieveRequest(secret_id=secret_id, token=token)
        )

        assert outcome.status is RetrievalStatus.CONSUMED
        assert outcome.plaintext == "from before the upgrade"

    def test_legacy_row_rejected_when_disabled(self, db_session, monkeypatch):
        monkeypatch.setattr(settings, "allow_legacy_decrypt", False)
        blob = make_legacy_blob("old", settings.encryption_key_bytes)
        secret_id, token = store_raw(db_session, blob)

        outcome = retrieve_secret(
            db_session, SecretRetrieveRequest(secret_id=secret_id, token=token)
        )

        assert outcome.reason is RejectionReason.DECRYPT_ERROR

    def test_audit_failure_does_not_block_retrieval(self, db_session, monkeypatch):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))

        def broken_record_event(*args, **kwargs):
            raise RuntimeError("audit table gone")

        monkeypatch.setattr(audit_service, "record_event", broken_record_event)

        assert view(db_session, created).plaintext == "hello"

    def test_expired_deadline_does_not_spend_the_view(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))

        with pytest.raises(OperationTimeout):
            retrieve_secret(
                db_session,
                SecretRetrieveRequest(secret_id=created.secret_id, token=created.token),
                timeout=0,
            )

        assert view(db_session, created).plaintext == "hello"


class TestPinProtection:
    """Tests for the PIN gate, attempt counting and lockout."""

    @pytest.fixture
    def created(self, db_session):
        return create_secret(db_session, SecretCreateRequest(plaintext="hello", pin="1234"))

    def test_no_pin_asks_for_pin(self, db_session, created):
        outcome = view(db_session, created)

        assert outcome.status is RetrievalStatus.PIN_REQUIRED
        assert outcome.pin_attempts == 0
        assert outcome.pin_mismatch is False

    def test_correct_pin_reveals_secret(self, db_session, created):
        outcome = view(db_session, created, pin="1234")

        assert outcome.status is RetrievalStatus.CONSUMED
        assert outcome.plaintext == "hello"

    def test_wrong_pins_count_up_then_lock(self, db_session, created):
        for expected in range(1, MAX_PIN_ATTEMPTS):
            outcome = view(db_session, created, pin="0000")
            assert outcome.status is RetrievalStatus.PIN_REQUIRED
            assert outcome.pin_attempts == expected
            assert outcome.pin_mismatch is True

        fifth = view(db_session, created, pin="0000")
        assert fifth.status is RetrievalStatus.REJECTED
        assert fifth.reason is RejectionReason.LOCKED

        # Locked for good, even with the right PIN
        after = view(db_session, created, pin="1234")
        assert after.reason is RejectionReason.LOCKED
        assert view(db_session, created).reason is RejectionReason.LOCKED

    def test_correct_pin_after_some_failures(self, db_session, created):
        view(db_session, created, pin="0000")
        view(db_session, created, pin="1111")

        outcome = view(db_session, created, pin="1234")
        assert outcome.plaintext == "hello"

    def test_pin_required_reports_current_attempts(self, db_session, created):
        view(db_session, created, pin="0000")
        view(db_session, created, pin="0000")

        outcome = view(db_session, created)
        assert outcome.status is RetrievalStatus.PIN_REQUIRED
        assert outcome.pin_attempts == 2
        assert outcome.pin_mismatch is False

    @pytest.mark.parametrize("pin", ["12", "12 34", "x" * 21, "pin!"])
    def test_bad_pin_format_does_not_count(self, db_session, created, pin):
        outcome = view(db_session, created, pin=pin)

        assert outcome.reason is RejectionReason.BAD_PIN_FORMAT
        assert outcome.message
        db_session.expire_all()
        assert db_session.get(Secret, created.secret_id).pin_attempts == 0

    def test_wrong_pin_records_audit_events(self, db_session, created):
        for _ in range(MAX_PIN_ATTEMPTS):
            view(db_session, created, pin="0000")

        types = [e.event_type for e in db_session.query(LogEvent).order_by(LogEvent.id)]
        assert types.count(audit_service.EVENT_PIN_FAILED) == MAX_PIN_ATTEMPTS
        assert types.count(audit_service.EVENT_LOCKED) == 1

    def test_pin_is_ignored_for_unprotected_secret(self, db_session):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))
        assert view(db_session, created, pin="9999").plaintext == "hello"


class TestConsumeRace:
    """A viewer that loses the consume race after decrypting."""

    def test_raced_viewer_still_gets_the_decrypted_text(self, db_session, monkeypatch):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))
        real_consume_view = secret_service.consume_view
        store_results = []

        def consume_after_competitor(db, secret_id, **kwargs):
            # A concurrent viewer spends the only view first
            store_results.append(real_consume_view(db, secret_id))
            result = real_consume_view(db, secret_id, **kwargs)
            store_results.append(result)
            return result

        monkeypatch.setattr(secret_service, "consume_view", consume_after_competitor)

        outcome = view(db_session, created)

        assert store_results == [ConsumeResult.CONSUMED, ConsumeResult.NOT_FOUND]
        assert outcome.status is RetrievalStatus.CONSUMED
        assert outcome.plaintext == "hello"
        db_session.expire_all()
        assert db_session.get(Secret, created.secret_id) is None

    def test_raced_viewer_records_no_viewed_event(self, db_session, monkeypatch):
        created = create_secret(db_session, SecretCreateRequest(plaintext="hello"))
        monkeypatch.setattr(
            secret_service, "consume_view", lambda *args, **kwargs: ConsumeResult.NOT_FOUND
        )

        view(db_session, created)

        types = [e.event_type for e in db_session.query(LogEvent)]
        assert audit_service.EVENT_VIEWED not in types

    def test_concurrent_viewers_spend_the_view_once(self, session_factory, monkeypatch):
        """Only one consume_view succeeds and the row is deleted once."""
        with session_factory() as db:
            created = create_secret(db, SecretCreateRequest(plaintext="hello"))

        real_consume_view = secret_service.consume_view
        store_results = []
        outcomes = []
        lock = threading.Lock()

        def recording_consume_view(*args, **kwargs):
            result = real_consume_view(*args, **kwargs)
            with lock:
                store_results.append(result)
            return result

        monkeypatch.setattr(secret_service, "consume_view", recording_consume_view)
        barrier = threading.Barrier(2)

        def worker():
            with session_factory() as db:
                barrier.wait()
                outcome = view(db, created)
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert len(outcomes) == 2
        assert store_results.count(ConsumeResult.CONSUMED) == 1
        with session_factory() as db:
            assert db.get(Secret, created.secret_id) is None

        # A viewer that fetched before the delete holds the text; one that
        # fetched after it sees NOT_FOUND.
        for outcome in outcomes:
            if outcome.status is RetrievalStatus.CONSUMED:
                assert outcome.plaintext == "hello"
            else:
                assert outcome.reason is RejectionReason.NOT_FOUND
        assert any(o.status is RetrievalStatus.CONSUMED for o in outcomes)
