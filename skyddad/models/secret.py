from datetime import UTC, datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from skyddad.database import Base


class Secret(Base):
    """
    A one-time secret.

    The row is the only state of a secret: view budget and PIN attempts are
    mutated in place by atomic UPDATE statements, and the row is deleted
    when the last view is consumed (or by the cleanup job once expired).
    """

    __tablename__ = "secrets"

    # 256-bit random id, hex encoded
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Versioned encrypted payload, see encryption_service
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)

    # Argon2id hash; NULL means no PIN gate
    pin_hash: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)

    # Counters
    views_left: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    pin_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Timing
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(UTC).replace(tzinfo=None), nullable=False
    )

    # Provenance (audit only, never used for authorization)
    creator_ip: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
