"""Tests for share-link validation and countdown text."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from codeshare.errors import AccessDeniedError, LinkExpiredError, LinkNotFoundError
from codeshare.models import AccessType, LinkStatus, ShareLink
from codeshare.share_links import (
    check_link,
    format_time_remaining,
    generate_access_token,
    is_nearing_expiry,
    status_message,
    validate,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_link(**kwargs) -> ShareLink:
    defaults = {"id": uuid4(), "group_id": uuid4(), "access_token": "tok"}
    return ShareLink(**(defaults | kwargs))


def test_missing_link_not_found():
    assert validate(None, "a@example.com", NOW) == LinkStatus.NOT_FOUND


def test_open_link_valid():
    assert validate(make_link(), None, NOW) == LinkStatus.VALID


def test_expiry_is_inclusive():
    assert validate(make_link(expires_at=NOW), None, NOW) == LinkStatus.EXPIRED
    assert validate(make_link(expires_at=NOW + timedelta(seconds=1)), None, NOW) == LinkStatus.VALID


def test_expired_wins_over_access_type():
    link = make_link(
        expires_at=NOW - timedelta(minutes=1),
        access_type=AccessType.RESTRICTED,
        allowed_emails=["someone@example.com"],
    )
    assert validate(link, None, NOW) == LinkStatus.EXPIRED
    assert validate(link, "intruder@example.com", NOW) == LinkStatus.EXPIRED


def test_restricted_requires_email():
    link = make_link(access_type=AccessType.RESTRICTED, allowed_emails=["ops@example.com"])
    assert validate(link, None, NOW) == LinkStatus.ACCESS_DENIED
    assert validate(link, "", NOW) == LinkStatus.ACCESS_DENIED


def test_restricted_email_case_insensitive():
    link = make_link(access_type=AccessType.RESTRICTED, allowed_emails=["Ops@Example.com"])
    assert validate(link, "OPS@example.COM", NOW) == LinkStatus.VALID
    assert validate(link, "other@example.com", NOW) == LinkStatus.ACCESS_DENIED


def test_restricted_without_list_denies_everyone():
    link = make_link(access_type=AccessType.RESTRICTED, allowed_emails=None)
    assert validate(link, "ops@example.com", NOW) == LinkStatus.ACCESS_DENIED


def test_validate_is_pure():
    link = make_link(access_type=AccessType.RESTRICTED, allowed_emails=["ops@example.com"])
    results = {validate(link, "ops@example.com", NOW) for _ in range(5)}
    assert results == {LinkStatus.VALID}
    assert link.views_count == 0


def test_check_link_raises_matching_errors():
    with pytest.raises(LinkNotFoundError):
        check_link(None, None, NOW)
    with pytest.raises(LinkExpiredError, match="has expired"):
        check_link(make_link(expires_at=NOW), None, NOW)
    restricted = make_link(access_type=AccessType.RESTRICTED, allowed_emails=["ops@example.com"])
    with pytest.raises(AccessDeniedError, match="must be logged in"):
        check_link(restricted, None, NOW)
    with pytest.raises(AccessDeniedError, match=r"Your email \(bob@example.com\)") as exc:
        check_link(restricted, "Bob@Example.com", NOW)
    assert exc.value.email == "bob@example.com"


@pytest.mark.parametrize(
    ("ms", "expected"),
    [
        (0, "0s"),
        (999, "0s"),
        (45_000, "45s"),
        (90_000, "1m 30s"),
        (3_661_000, "1h 1m"),
        (86_400_000, "1d 0h"),
        (90_061_000, "1d 1h"),
        (-5_000, "0s"),
    ],
)
def test_format_time_remaining(ms, expected):
    assert format_time_remaining(ms) == expected


def test_nearing_expiry():
    assert is_nearing_expiry(4 * 60_000)
    assert not is_nearing_expiry(5 * 60_000)
    assert not is_nearing_expiry(None)
    assert not is_nearing_expiry(0)


def test_status_message():
    assert status_message(None, None) == ""
    assert status_message(make_link(), None) == "No expiration"
    assert status_message(make_link(one_time_view=True), None) == "Single-use link (expires after viewing)"
    timed = make_link(expires_at=NOW + timedelta(minutes=2))
    assert status_message(timed, 90_000) == "Link expires in 1m 30s"
    assert status_message(timed, 0) == "Link expired"
    single = make_link(expires_at=NOW + timedelta(minutes=2), one_time_view=True)
    assert status_message(single, 45_000) == "Single-use link (expires in 45s)"


def test_access_tokens_are_unique():
    tokens = {generate_access_token() for _ in range(50)}
    assert len(tokens) == 50
