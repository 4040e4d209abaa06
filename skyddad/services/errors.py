"""Exceptions raised by the secret lifecycle services."""


class SkyddadError(Exception):
    """Base class for service-layer errors."""


class DecryptionError(SkyddadError):
    """A stored ciphertext could not be turned back into plaintext."""


class IntegrityError(DecryptionError):
    """Authentication failed or the ciphertext blob is malformed."""


class FormatError(DecryptionError):
    """The ciphertext carries a version tag this deployment cannot read."""


class BadPinFormat(SkyddadError, ValueError):
    """PIN is not 4-20 alphanumeric characters."""


class InvalidSecretText(SkyddadError, ValueError):
    """Secret text is empty or too long."""


class ConflictError(SkyddadError):
    """A secret with the same id already exists."""


class StoreUnavailable(SkyddadError):
    """The database could not be reached or failed mid-operation."""


class OperationTimeout(SkyddadError):
    """The caller's deadline passed before the operation could commit."""
