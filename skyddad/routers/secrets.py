from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from skyddad.config import settings
from skyddad.database import get_db
from skyddad.middleware.rate_limit import get_client_ip, get_client_secret_key, limiter
from skyddad.schemas.secret import (
    LinkStatusResponse,
    PinRequiredDetail,
    SecretCreate,
    SecretCreateResponse,
    SecretViewRequest,
    SecretViewResponse,
)
from skyddad.services.audit_service import ClientInfo
from skyddad.services.errors import BadPinFormat, InvalidSecretText
from skyddad.services.secret_service import (
    MAX_PIN_ATTEMPTS,
    RejectionReason,
    RetrievalOutcome,
    RetrievalStatus,
    SecretCreateRequest,
    SecretRetrieveRequest,
    create_secret,
    is_valid_link,
    retrieve_secret,
)

router = APIRouter()

# Wrong link and consumed/expired secret must look identical to a prober
NOT_FOUND_DETAIL = "Secret not found"

_REJECTIONS = {
    RejectionReason.INVALID_LINK: (404, NOT_FOUND_DETAIL),
    RejectionReason.NOT_FOUND: (404, NOT_FOUND_DETAIL),
    RejectionReason.LOCKED: (403, "Too many incorrect PIN attempts. This secret is locked."),
    RejectionReason.BAD_PIN_FORMAT: (400, "Invalid PIN format"),
    RejectionReason.DECRYPT_ERROR: (500, "Secret could not be decrypted"),
}

SecretIdPath = Path(..., max_length=128)


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )


def outcome_to_response(outcome: RetrievalOutcome) -> SecretViewResponse:
    """Map a retrieval outcome onto the HTTP contract, raising for non-200 outcomes."""
    if outcome.status is RetrievalStatus.CONSUMED:
        return SecretViewResponse(
            status="consumed",
            secret=outcome.plaintext,
            message="This secret has been deleted and cannot be viewed again.",
        )

    if outcome.status is RetrievalStatus.PIN_REQUIRED:
        detail = PinRequiredDetail(
            pin_attempts=outcome.pin_attempts,
            max_pin_attempts=MAX_PIN_ATTEMPTS,
            pin_mismatch=outcome.pin_mismatch,
            message="Incorrect PIN" if outcome.pin_mismatch else "This secret is protected by a PIN",
        )
        raise HTTPException(status_code=401, detail=detail.model_dump())

    status_code, detail = _REJECTIONS[outcome.reason]
    if outcome.reason is RejectionReason.BAD_PIN_FORMAT and outcome.message:
        detail = outcome.message
    raise HTTPException(status_code=status_code, detail=detail)


@router.post("/secrets", response_model=SecretCreateResponse, status_code=201)
@limiter.limit(settings.rate_limit_creates)
async def create_new_secret(
    request: Request,
    secret_data: SecretCreate,
    db: Session = Depends(get_db),
):
    """
    Create a new one-time secret.

    The response carries the id and link token; neither can be recovered later.
    """
    try:
        created = await run_in_threadpool(
            create_secret,
            db,
            SecretCreateRequest(
                plaintext=secret_data.secret,
                pin=secret_data.pin,
                expires_in=secret_data.expiry_delta,
            ),
            client=client_info(request),
            timeout=settings.request_timeout_seconds,
        )
    except (InvalidSecretText, BadPinFormat) as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SecretCreateResponse(
        secret_id=created.secret_id,
        token=created.token,
        view_path=f"/view/{created.secret_id}?token={created.token}",
        expires_at=created.expires_at,
    )


@router.post("/secrets/{secret_id}/view", response_model=SecretViewResponse)
@limiter.limit(settings.rate_limit_views, key_func=get_client_secret_key)
async def view_secret(
    request: Request,
    view_data: SecretViewRequest,
    secret_id: str = SecretIdPath,
    db: Session = Depends(get_db),
):
    """
    View a secret.

    This is a ONE-TIME operation. After a successful view the secret is
    permanently deleted. PIN-protected secrets answer 401 until the PIN is
    supplied, and lock after 5 wrong PINs.
    """
    outcome = await run_in_threadpool(
        retrieve_secret,
        db,
        SecretRetrieveRequest(secret_id=secret_id, token=view_data.token, pin=view_data.pin),
        client=client_info(request),
        timeout=settings.request_timeout_seconds,
    )
    return outcome_to_response(outcome)


@router.get("/secrets/{secret_id}/link", response_model=LinkStatusResponse)
@limiter.limit(settings.rate_limit_views)
async def get_link_status(
    request: Request,
    secret_id: str = SecretIdPath,
    token: str = Query(..., max_length=128),
):
    """
    Check that a link is well-formed without touching the secret.

    Used by the share page; says nothing about whether the secret was viewed.
    """
    return LinkStatusResponse(valid=is_valid_link(secret_id, token))
