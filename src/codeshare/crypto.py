"""AES-256-GCM sealing of TOTP secrets stored in the models table."""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from codeshare.config import settings
from codeshare.errors import InvalidSecretError

_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM
_AAD = b"codeshare:model-secret"


def _get_key() -> bytes:
    raw = settings.codeshare_master_key
    if not raw:
        raise RuntimeError("CODESHARE_MASTER_KEY not set")
    key = base64.b64decode(raw)
    if len(key) != 32:
        raise ValueError("CODESHARE_MASTER_KEY must be 32 bytes (base64-encoded)")
    return key


def generate_master_key() -> str:
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()


def seal_secret(secret: str) -> str:
    """Encrypt a TOTP secret. Returns base64(nonce + ciphertext)."""
    key = _get_key()
    nonce = os.urandom(_NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, secret.encode(), _AAD)
    return base64.b64encode(nonce + ct).decode()


def open_secret(sealed: str) -> str:
    """Decrypt a sealed secret.

    A token that cannot be decrypted with the current key is reported as an
    invalid secret so the publisher shows the error code instead of crashing.
    """
    key = _get_key()
    try:
        raw = base64.b64decode(sealed, validate=True)
        nonce, ct = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        return AESGCM(key).decrypt(nonce, ct, _AAD).decode()
    except (binascii.Error, ValueError, InvalidTag) as e:
        raise InvalidSecretError("Stored secret could not be decrypted") from e
