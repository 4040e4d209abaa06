import re

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from skyddad.config import settings
from skyddad.services.errors import BadPinFormat

# Argon2id, tuned so a verification costs low tens of milliseconds.
# Guessing stays expensive even before the attempt lockout engages.
ph = PasswordHasher(
    time_cost=settings.pin_hash_time_cost,
    memory_cost=settings.pin_hash_memory_cost,
    parallelism=settings.pin_hash_parallelism,
    hash_len=32,
    salt_len=16,
)

_PIN_PATTERN = re.compile(r"[A-Za-z0-9]+")


def validate_pin(pin) -> None:
    """Raise BadPinFormat unless pin is 4-20 ASCII letters or digits."""
    if not pin or not isinstance(pin, str):
        raise BadPinFormat("PIN is required")
    if len(pin) < settings.pin_min_length or len(pin) > settings.pin_max_length:
        raise BadPinFormat(
            f"PIN must be between {settings.pin_min_length} and "
            f"{settings.pin_max_length} characters"
        )
    if not _PIN_PATTERN.fullmatch(pin):
        raise BadPinFormat("PIN can only contain letters and numbers")


def hash_pin(pin: str) -> str:
    """Validate and hash a PIN using Argon2id."""
    validate_pin(pin)
    return ph.hash(pin)


def verify_pin(pin: str, pin_hash: str) -> bool:
    """Verify a PIN against its Argon2id hash."""
    try:
        ph.verify(pin_hash, pin)
        return True
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError):
        # A corrupt stored hash never verifies
        return False
