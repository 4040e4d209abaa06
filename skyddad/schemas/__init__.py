from skyddad.schemas.secret import (
    LinkStatusResponse,
    PinRequiredDetail,
    SecretCreate,
    SecretCreateResponse,
    SecretViewRequest,
    SecretViewResponse,
)

__all__ = [
    "LinkStatusResponse",
    "PinRequiredDetail",
    "SecretCreate",
    "SecretCreateResponse",
    "SecretViewRequest",
    "SecretViewResponse",
]
