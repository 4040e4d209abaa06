"""
Server-side encryption of secret payloads.

Every payload is sealed with AES-256-GCM under the single key from settings.
Blobs are self-describing text so the decoder can pick its routine from the
version tag alone:

    v1:<nonce b64>:<ciphertext b64>:<tag b64>     AES-256-GCM (written)
    <iv b64>:<ciphertext b64>                      AES-256-CBC (read only)

The untagged CBC layout is what older deployments stored. It has no
authentication tag, so a modified blob may decrypt to garbage instead of
failing. It is kept readable for secrets created before the GCM switch and
can be turned off with ALLOW_LEGACY_DECRYPT=false. Nothing ever writes it.

Security Note:
    Never log plaintext, ciphertext or key material.
    Nonces are 128-bit values from os.urandom; a counter is never used.
"""

import base64
import binascii
import os
import re
from enum import Enum

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from skyddad.services.errors import FormatError, IntegrityError

KEY_LENGTH = 32  # AES-256
NONCE_SIZE = 16  # 128-bit GCM nonce
TAG_SIZE = 16
LEGACY_IV_SIZE = 16

SEPARATOR = ":"
_VERSION_TAG = re.compile(r"^v\d+$")


class CipherFormat(str, Enum):
    """Closed set of ciphertext layouts this codec understands."""

    GCM_V1 = "v1"
    LEGACY_CBC_V0 = "v0"


CURRENT_FORMAT = CipherFormat.GCM_V1


def _check_key(key: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Encryption key must be exactly {KEY_LENGTH} bytes, got {len(key)}")


def _b64decode(value: str, field_name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise IntegrityError(f"{field_name}: invalid base64")


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _to_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        raise IntegrityError("Decrypted payload is not valid UTF-8")


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt text into a current-format (GCM v1) blob."""
    _check_key(key)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return SEPARATOR.join(
        [CURRENT_FORMAT.value, _b64encode(nonce), _b64encode(ciphertext), _b64encode(tag)]
    )


def detect_format(blob: str) -> tuple[CipherFormat, list[str]]:
    """
    Split a blob into its format and the remaining fields.

    Raises FormatError for an unknown version tag and IntegrityError for
    anything that is not a blob at all.
    """
    parts = blob.split(SEPARATOR)
    head = parts[0]

    if _VERSION_TAG.match(head):
        try:
            return CipherFormat(head), parts[1:]
        except ValueError:
            raise FormatError(f"Unsupported ciphertext version: {head}")

    # Untagged two-field blobs predate versioning
    if len(parts) == 2:
        return CipherFormat.LEGACY_CBC_V0, parts

    raise IntegrityError("Invalid encrypted data format")


def _decrypt_gcm_v1(fields: list[str], key: bytes) -> str:
    if len(fields) != 3:
        raise IntegrityError("GCM blob must have nonce, ciphertext and tag")

    nonce = _b64decode(fields[0], "nonce")
    ciphertext = _b64decode(fields[1], "ciphertext")
    tag = _b64decode(fields[2], "tag")

    if len(nonce) != NONCE_SIZE:
        raise IntegrityError(f"Nonce must be {NONCE_SIZE} bytes")
    if len(tag) != TAG_SIZE:
        raise IntegrityError(f"Tag must be {TAG_SIZE} bytes")

    try:
        data = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag:
        raise IntegrityError("Authentication failed")
    return _to_text(data)


def _decrypt_legacy_cbc(fields: list[str], key: bytes) -> str:
    # No integrity guarantee on this path, see module docstring.
    if len(fields) != 2:
        raise IntegrityError("Legacy blob must have iv and ciphertext")

    iv = _b64decode(fields[0], "iv")
    ciphertext = _b64decode(fields[1], "ciphertext")

    if len(iv) != LEGACY_IV_SIZE:
        raise IntegrityError(f"IV must be {LEGACY_IV_SIZE} bytes")
    if not ciphertext or len(ciphertext) % 16 != 0:
        raise IntegrityError("Legacy ciphertext must be a non-empty multiple of 16 bytes")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        data = unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise IntegrityError("Invalid padding")
    return _to_text(data)


_DECODERS = {
    CipherFormat.GCM_V1: _decrypt_gcm_v1,
    CipherFormat.LEGACY_CBC_V0: _decrypt_legacy_cbc,
}


def decrypt(blob: str, key: bytes, *, allow_legacy: bool = True) -> str:
    """
    Decrypt a blob produced by encrypt() or by a pre-GCM deployment.

    Raises:
        IntegrityError: authentication failed or the blob is malformed.
        FormatError: unknown version tag, or a legacy blob while legacy
            reads are disabled.
    """
    _check_key(key)
    fmt, fields = detect_format(blob)

    if fmt is CipherFormat.LEGACY_CBC_V0 and not allow_legacy:
        raise FormatError("Legacy CBC ciphertext is disabled")

    return _DECODERS[fmt](fields, key)
