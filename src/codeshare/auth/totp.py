"""TOTP (Time-based One-Time Password) generation for shared 2FA secrets.

Uses pyotp with the standard parameters (SHA1, 6 digits, 30-second step), so
every caller inside the same 30-second epoch derives the same code.
"""

from __future__ import annotations

import base64
import binascii
import re
import time
from datetime import datetime, timezone

import pyotp

from codeshare.errors import InvalidSecretError

INTERVAL = 30
DIGITS = 6

_WHITESPACE = re.compile(r"\s+")


def _unix_seconds(now: datetime | float | None) -> int:
    if now is None:
        return int(time.time())
    if isinstance(now, datetime):
        return int(now.timestamp())
    return int(now)


def normalize_secret(secret: str | None) -> str:
    """Strip whitespace, uppercase, and check the secret decodes as base32."""
    if not secret:
        raise InvalidSecretError("TOTP secret is empty")
    cleaned = _WHITESPACE.sub("", secret).upper().rstrip("=")
    if not cleaned:
        raise InvalidSecretError("TOTP secret is empty")
    padded = cleaned + "=" * (-len(cleaned) % 8)
    try:
        base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidSecretError(f"TOTP secret is not valid base32: {e}") from e
    return cleaned


def generate_secret() -> str:
    """Generate a new TOTP secret (base32-encoded, 32 chars)."""
    return pyotp.random_base32()


def generate_code(secret: str | None, for_time: datetime | float | None = None) -> str:
    """Get the TOTP code for a secret at ``for_time`` (default: now)."""
    totp = pyotp.TOTP(normalize_secret(secret), digits=DIGITS, interval=INTERVAL)
    return totp.at(_unix_seconds(for_time))


def verify_code(secret: str, code: str) -> bool:
    """Verify a TOTP code against a secret (allows +-1 window)."""
    return pyotp.TOTP(normalize_secret(secret), interval=INTERVAL).verify(code, valid_window=1)


def get_provisioning_uri(secret: str, username: str, issuer: str = "CodeShare") -> str:
    """Get the otpauth:// URI for QR code enrollment."""
    return pyotp.TOTP(normalize_secret(secret)).provisioning_uri(name=username, issuer_name=issuer)


def current_epoch(now: datetime | float | None = None) -> int:
    return _unix_seconds(now) // INTERVAL


def time_remaining(now: datetime | float | None = None) -> int:
    """Seconds left in the current window.

    Returns 0 exactly on a window boundary, the instant a new code takes over.
    """
    offset = _unix_seconds(now) % INTERVAL
    if offset == 0:
        return 0
    return INTERVAL - offset


def window_end(now: datetime | float | None = None) -> datetime:
    """When the code generated at ``now`` stops being current."""
    end = (current_epoch(now) + 1) * INTERVAL
    return datetime.fromtimestamp(end, tz=timezone.utc)
