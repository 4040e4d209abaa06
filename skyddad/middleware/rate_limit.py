from slowapi import Limiter
from starlette.requests import Request


def get_client_ip(request: Request) -> str:
    """Client IP, taking the first X-Forwarded-For hop set by our reverse proxy."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_client_secret_key(request: Request) -> str:
    """Per-IP, per-secret key so guessing one secret's PIN can't starve other links."""
    secret_id = request.path_params.get("secret_id", "")
    return f"{get_client_ip(request)}:{secret_id}"


limiter = Limiter(key_func=get_client_ip)
