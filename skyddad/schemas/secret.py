import re
from datetime import datetime, timedelta

from pydantic import BaseModel, Field, field_validator

from skyddad.config import settings

_EXPIRY_PATTERN = re.compile(r"^(\d+)([hd])$")


def parse_expiry(value: str) -> timedelta:
    """
    Parse an expiry like "1h", "24h" or "7d" into a timedelta.

    Rejects zero, malformed values and anything beyond the configured maximum.
    """
    match = _EXPIRY_PATTERN.match(value)
    if not match:
        raise ValueError('Expiry must look like "1h", "24h" or "7d"')

    amount = int(match.group(1))
    hours = amount if match.group(2) == "h" else amount * 24

    # Bounded before building the timedelta, which overflows on huge values
    if hours <= 0:
        raise ValueError("Expiry must be at least 1 hour")
    if hours > settings.max_expiry_hours:
        raise ValueError(f"Expiry cannot exceed {settings.max_expiry_hours} hours")
    return timedelta(hours=hours)


class SecretCreate(BaseModel):
    # Text and PIN rules are enforced by the service so violations are a 400
    secret: str = Field(..., description="Plain text to share once")
    pin: str | None = Field(
        None, max_length=128, description="Optional 4-20 character alphanumeric PIN"
    )
    expires_in: str = Field(settings.default_expiry, description='e.g. "1h", "24h", "7d"')

    @field_validator("expires_in")
    @classmethod
    def validate_expires_in(cls, v: str) -> str:
        parse_expiry(v)
        return v

    @property
    def expiry_delta(self) -> timedelta:
        return parse_expiry(self.expires_in)


class SecretCreateResponse(BaseModel):
    secret_id: str
    token: str
    view_path: str
    expires_at: datetime


class SecretViewRequest(BaseModel):
    token: str = Field(..., max_length=128)
    # Format is checked by the service so a bad PIN is a 400, not a 422
    pin: str | None = Field(None, max_length=128)


class SecretViewResponse(BaseModel):
    status: str
    secret: str
    message: str


class PinRequiredDetail(BaseModel):
    status: str = "pin_required"
    pin_attempts: int
    max_pin_attempts: int
    pin_mismatch: bool = False
    message: str


class LinkStatusResponse(BaseModel):
    valid: bool
