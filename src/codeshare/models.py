"""Pydantic models for records and view state flowing through the service."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _assume_utc(value: datetime) -> datetime:
    """Naive timestamps from API clients are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


# === Enums matching DB schema ===


class AccessType(StrEnum):
    ANYONE = "anyone"
    RESTRICTED = "restricted"


# === Enums for runtime state ===


class LinkStatus(StrEnum):
    VALID = "valid"
    EXPIRED = "expired"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"


class PublisherPhase(StrEnum):
    IDLE = "idle"
    GENERATING = "generating"
    PERSISTING = "persisting"
    PUBLISHED = "published"
    PERSIST_FAILED = "persist_failed"


class ViewPhase(StrEnum):
    LOADING = "loading"
    ERROR = "error"
    READY = "ready"


# === Persisted records ===


class Group(BaseModel):
    id: UUID
    title: str
    description: str | None = None
    created_by: UUID | None = None
    created_at: datetime | None = None


class Model(BaseModel):
    """An account whose 2FA secret is shared with a group."""

    id: UUID
    group_id: UUID | None = None
    name: str
    code: str | None = None
    code_updated_at: datetime | None = None


class Code(BaseModel):
    """One generated code. Rows are append-only; newest created_at wins."""

    id: UUID
    group_id: UUID
    code: str
    created_at: datetime
    expires_at: datetime


class ShareLink(BaseModel):
    id: UUID
    group_id: UUID
    access_token: str
    expires_at: UtcDatetime | None = None
    one_time_view: bool = False
    views_count: int = 0
    access_type: AccessType = AccessType.ANYONE
    allowed_emails: list[str] | None = None
    created_at: datetime | None = None


class ShareLinkCreate(BaseModel):
    expires_at: UtcDatetime | None = None
    one_time_view: bool = False
    access_type: AccessType = AccessType.ANYONE
    allowed_emails: list[str] | None = None


# === Ephemeral state ===


class TimerState(BaseModel):
    time_remaining: int = Field(30, ge=0, le=30)


class PublisherState(BaseModel):
    """What a code display shows for one model."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: UUID
    phase: PublisherPhase = PublisherPhase.IDLE
    code: str = ""
    stale: bool = False
    error: str | None = None
    time_remaining: int = 30
    published_at: datetime | None = None


class ViewState(BaseModel):
    """Snapshot of a public shared view."""

    phase: ViewPhase = ViewPhase.LOADING
    error: str | None = None
    error_kind: str | None = None
    is_deletion: bool = False
    group: Group | None = None
    latest_code: Code | None = None
    one_time_view: bool = False
    link_time_remaining_ms: int | None = None
    time_remaining_text: str | None = None
    status_message: str = ""
    nearing_expiry: bool = False
