"""Backend contract consumed by the code lifecycle, plus an in-memory backend.

``PostgresBackend`` (codeshare.repository) is the production implementation.
``MemoryBackend`` keeps everything in process and publishes the same change
events the database triggers would; it backs ``server --dry-run`` and tests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID, uuid4

from codeshare.auth.totp import window_end
from codeshare.errors import LinkAlreadyUsedError, LinkExpiredError, LinkNotFoundError
from codeshare.models import Code, Group, Model, ShareLink, ShareLinkCreate
from codeshare.realtime import DELETE, INSERT, ChangeEvent, RealtimeHub
from codeshare.share_links import generate_access_token

logger = logging.getLogger(__name__)

CODES = "codes"
SHARED_LINKS = "shared_links"


class Backend(Protocol):
    async def update_model_code(self, model_id: UUID, code: str) -> bool:
        """Store the current code for a model. Soft failures return False."""
        ...

    async def fetch_latest_code(self, group_id: UUID) -> Code | None: ...

    async def register_share_link_view(self, group_id: UUID, token: str) -> ShareLink:
        """Atomically record a view; one-time links succeed exactly once."""
        ...

    async def get_share_link(self, group_id: UUID, token: str) -> ShareLink | None: ...

    async def share_link_exists(self, link_id: UUID) -> bool: ...

    async def get_group(self, group_id: UUID) -> Group | None: ...

    async def get_model_secret(self, model_id: UUID) -> str | None: ...

    async def list_models(self) -> list[Model]: ...

    async def create_share_link(self, group_id: UUID, body: ShareLinkCreate) -> ShareLink: ...

    async def delete_share_link(self, link_id: UUID) -> bool: ...

    async def list_share_links(self, group_id: UUID) -> list[ShareLink]: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryBackend:
    """Process-local backend.

    Each method body runs without awaiting, so a check-and-write such as
    one-time-view consumption cannot interleave with another call on the loop.
    """

    def __init__(self, hub: RealtimeHub | None = None) -> None:
        self.hub = hub or RealtimeHub()
        self.groups: dict[UUID, Group] = {}
        self.models: dict[UUID, Model] = {}
        self.secrets: dict[UUID, str] = {}
        self.codes: list[Code] = []
        self.links: dict[UUID, ShareLink] = {}

    # --- seeding ---

    def add_group(self, title: str, description: str | None = None) -> Group:
        group = Group(id=uuid4(), title=title, description=description, created_at=_now())
        self.groups[group.id] = group
        return group

    def add_model(self, group_id: UUID | None, name: str, secret: str) -> Model:
        model = Model(id=uuid4(), group_id=group_id, name=name)
        self.models[model.id] = model
        self.secrets[model.id] = secret
        return model

    def insert_code(self, group_id: UUID, code: str, expires_at: datetime | None = None) -> Code:
        row = Code(
            id=uuid4(),
            group_id=group_id,
            code=code,
            created_at=_now(),
            expires_at=expires_at or window_end(),
        )
        self.codes.append(row)
        self.hub.publish(ChangeEvent(CODES, INSERT, row.model_dump(mode="json")))
        return row

    # --- contract ---

    async def update_model_code(self, model_id: UUID, code: str) -> bool:
        model = self.models.get(model_id)
        if model is None:
            logger.warning("update_model_code: unknown model %s", model_id)
            return False
        changed = model.code != code
        model.code = code
        model.code_updated_at = _now()
        if changed and model.group_id is not None:
            self.insert_code(model.group_id, code)
        return True

    async def fetch_latest_code(self, group_id: UUID) -> Code | None:
        # Later inserts win ties on created_at.
        for row in reversed(sorted(self.codes, key=lambda c: c.created_at)):
            if row.group_id == group_id:
                return row
        return None

    async def register_share_link_view(self, group_id: UUID, token: str) -> ShareLink:
        link = self._find_link(group_id, token)
        if link is None:
            raise LinkNotFoundError()
        if link.expires_at is not None and link.expires_at <= _now():
            raise LinkExpiredError()
        if link.one_time_view and link.views_count > 0:
            raise LinkAlreadyUsedError()
        link.views_count += 1
        return link.model_copy()

    async def get_share_link(self, group_id: UUID, token: str) -> ShareLink | None:
        link = self._find_link(group_id, token)
        return link.model_copy() if link else None

    async def share_link_exists(self, link_id: UUID) -> bool:
        return link_id in self.links

    async def get_group(self, group_id: UUID) -> Group | None:
        return self.groups.get(group_id)

    async def get_model_secret(self, model_id: UUID) -> str | None:
        return self.secrets.get(model_id)

    async def list_models(self) -> list[Model]:
        return list(self.models.values())

    async def create_share_link(self, group_id: UUID, body: ShareLinkCreate) -> ShareLink:
        link = ShareLink(
            id=uuid4(),
            group_id=group_id,
            access_token=generate_access_token(),
            expires_at=body.expires_at,
            one_time_view=body.one_time_view,
            access_type=body.access_type,
            allowed_emails=[e.lower() for e in body.allowed_emails] if body.allowed_emails else None,
            created_at=_now(),
        )
        self.links[link.id] = link
        return link.model_copy()

    async def delete_share_link(self, link_id: UUID) -> bool:
        link = self.links.pop(link_id, None)
        if link is None:
            return False
        self.hub.publish(ChangeEvent(SHARED_LINKS, DELETE, {"id": str(link.id), "group_id": str(link.group_id)}))
        return True

    async def list_share_links(self, group_id: UUID) -> list[ShareLink]:
        return [link.model_copy() for link in self.links.values() if link.group_id == group_id]

    def _find_link(self, group_id: UUID, token: str) -> ShareLink | None:
        for link in self.links.values():
            if link.group_id == group_id and link.access_token == token:
                return link
        return None
