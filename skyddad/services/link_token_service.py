import hashlib
import hmac
import secrets

SECRET_ID_BYTES = 32  # 64 hex chars = 256 bits
TOKEN_LENGTH = 64  # hex HMAC-SHA256


def generate_secret_id() -> str:
    """Generate a random 256-bit secret id."""
    return secrets.token_hex(SECRET_ID_BYTES)


def issue_token(secret_id: str, mac_secret: bytes) -> str:
    """Derive the link token for a secret id: hex HMAC-SHA256(mac_secret, id)."""
    return hmac.new(mac_secret, secret_id.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_token(secret_id: str, token: str | None, mac_secret: bytes) -> bool:
    """
    Check a link token in constant time.

    Stateless: never consults the database, so a link can be recognised as
    well-formed even after its secret has been consumed.
    """
    if not isinstance(token, str) or not token.isascii():
        return False

    expected = issue_token(secret_id, mac_secret)
    # Length is public (always TOKEN_LENGTH)
    if len(token) != len(expected):
        return False
    return hmac.compare_digest(token.encode("ascii"), expected.encode("ascii"))
