"""Share-link validation and expiry countdown formatting."""

from __future__ import annotations

import secrets
from datetime import datetime

from codeshare.config import settings
from codeshare.errors import AccessDeniedError, LinkExpiredError, LinkNotFoundError
from codeshare.models import AccessType, LinkStatus, ShareLink

TOKEN_BYTES = 24


def generate_access_token() -> str:
    """URL-safe random token for a new share link."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def validate(link: ShareLink | None, current_user_email: str | None, now: datetime) -> LinkStatus:
    """Classify a link for the current viewer. Pure: no I/O, no clock reads."""
    if link is None:
        return LinkStatus.NOT_FOUND
    if link.expires_at is not None and link.expires_at <= now:
        return LinkStatus.EXPIRED
    if link.access_type == AccessType.RESTRICTED:
        if not current_user_email:
            return LinkStatus.ACCESS_DENIED
        allowed = {e.lower() for e in (link.allowed_emails or [])}
        if current_user_email.lower() not in allowed:
            return LinkStatus.ACCESS_DENIED
    return LinkStatus.VALID


def check_link(link: ShareLink | None, current_user_email: str | None, now: datetime) -> ShareLink:
    """Like ``validate`` but raises the matching LinkError unless valid."""
    status = validate(link, current_user_email, now)
    if link is None:
        raise LinkNotFoundError()
    if status == LinkStatus.EXPIRED:
        raise LinkExpiredError()
    if status == LinkStatus.ACCESS_DENIED:
        raise AccessDeniedError(current_user_email.lower() if current_user_email else None)
    return link


def remaining_ms(link: ShareLink, now: datetime) -> int | None:
    if link.expires_at is None:
        return None
    return int((link.expires_at - now).total_seconds() * 1000)


def format_time_remaining(ms: int) -> str:
    """Collapse a duration to its two largest units, e.g. "1h 1m" or "45s"."""
    seconds = max(0, int(ms)) // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def is_nearing_expiry(ms: int | None) -> bool:
    if ms is None or ms <= 0:
        return False
    return ms // (1000 * 60) < settings.expiry_warning_minutes


def status_message(link: ShareLink | None, ms: int | None) -> str:
    """One-line description of a link's expiry, shown under the code."""
    if link is None:
        return ""
    if link.expires_at is None:
        if link.one_time_view:
            return "Single-use link (expires after viewing)"
        return "No expiration"
    if not ms or ms <= 0:
        return "Link expired"
    text = format_time_remaining(ms)
    if link.one_time_view:
        return f"Single-use link (expires in {text})"
    return f"Link expires in {text}"
