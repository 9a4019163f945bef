"""PostgreSQL implementation of the backend contract."""

from __future__ import annotations

import logging
from uuid import UUID

import psycopg
import psycopg.errors

from codeshare.auth.totp import window_end
from codeshare.crypto import open_secret, seal_secret
from codeshare.db import execute, execute_one
from codeshare.errors import LinkAlreadyUsedError, LinkExpiredError, LinkNotFoundError
from codeshare.models import Code, Group, Model, ShareLink, ShareLinkCreate
from codeshare.share_links import generate_access_token

logger = logging.getLogger(__name__)

_LINK_COLUMNS = """id, group_id, access_token, expires_at, one_time_view, views_count,
                   access_type, allowed_emails, created_at"""

_VIEW_ERRORS = {
    "link_not_found": LinkNotFoundError,
    "link_expired": LinkExpiredError,
    "link_already_used": LinkAlreadyUsedError,
}


class PostgresBackend:
    async def update_model_code(self, model_id: UUID, code: str) -> bool:
        """Set models.code and append a codes row when the code changed.

        Returns False (never raises) when the model is missing or the write
        fails; the publisher retries on its next cycle.
        """
        try:
            row = await execute_one(
                """WITH prev AS (
                       SELECT id, group_id, code FROM models WHERE id = %(id)s FOR UPDATE
                   ),
                   upd AS (
                       UPDATE models m
                          SET code = %(code)s, code_updated_at = now()
                         FROM prev
                        WHERE m.id = prev.id
                       RETURNING m.id
                   ),
                   ins AS (
                       INSERT INTO codes (group_id, model_id, code, expires_at)
                       SELECT prev.group_id, prev.id, %(code)s, %(expires_at)s
                         FROM prev
                        WHERE prev.group_id IS NOT NULL
                          AND prev.code IS DISTINCT FROM %(code)s
                       RETURNING id
                   )
                   SELECT (SELECT count(*) FROM upd) AS updated,
                          (SELECT count(*) FROM ins) AS inserted""",
                {"id": model_id, "code": code, "expires_at": window_end()},
            )
        except psycopg.Error:
            logger.warning("Failed to update code for model %s", model_id, exc_info=True)
            return False
        if not row or not row["updated"]:
            logger.warning("update_model_code: model %s not found", model_id)
            return False
        return True

    async def fetch_latest_code(self, group_id: UUID) -> Code | None:
        row = await execute_one(
            """SELECT id, group_id, code, created_at, expires_at
               FROM codes
               WHERE group_id = %s
               ORDER BY created_at DESC
               LIMIT 1""",
            (group_id,),
        )
        return Code(**row) if row else None

    async def register_share_link_view(self, group_id: UUID, token: str) -> ShareLink:
        try:
            row = await execute_one(
                "SELECT handle_share_link_view(%s, %s) AS result",
                (group_id, token),
            )
        except psycopg.errors.RaiseException as e:
            error_cls = _VIEW_ERRORS.get(e.diag.message_primary or "", LinkNotFoundError)
            raise error_cls() from e
        if not row or not row["result"] or not row["result"].get("link"):
            raise LinkAlreadyUsedError()
        return ShareLink.model_validate(row["result"]["link"])

    async def get_share_link(self, group_id: UUID, token: str) -> ShareLink | None:
        row = await execute_one(
            f"""SELECT {_LINK_COLUMNS}
                FROM shared_links
                WHERE group_id = %s AND access_token = %s""",
            (group_id, token),
        )
        return ShareLink(**row) if row else None

    async def share_link_exists(self, link_id: UUID) -> bool:
        row = await execute_one("SELECT id FROM shared_links WHERE id = %s", (link_id,))
        return row is not None

    async def get_group(self, group_id: UUID) -> Group | None:
        row = await execute_one(
            "SELECT id, title, description, created_by, created_at FROM groups WHERE id = %s",
            (group_id,),
        )
        return Group(**row) if row else None

    async def get_model_secret(self, model_id: UUID) -> str | None:
        row = await execute_one("SELECT secret FROM models WHERE id = %s", (model_id,))
        if not row or not row["secret"]:
            return None
        return open_secret(row["secret"])

    async def list_models(self) -> list[Model]:
        rows = await execute(
            """SELECT id, group_id, name, code, code_updated_at
               FROM models
               WHERE secret IS NOT NULL
               ORDER BY created_at"""
        )
        return [Model(**r) for r in rows]

    async def create_share_link(self, group_id: UUID, body: ShareLinkCreate) -> ShareLink:
        emails = [e.lower() for e in body.allowed_emails] if body.allowed_emails else None
        row = await execute_one(
            f"""INSERT INTO shared_links
                   (group_id, access_token, expires_at, one_time_view, access_type, allowed_emails)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {_LINK_COLUMNS}""",
            (group_id, generate_access_token(), body.expires_at, body.one_time_view,
             str(body.access_type), emails),
        )
        return ShareLink(**row)

    async def delete_share_link(self, link_id: UUID) -> bool:
        rows = await execute("DELETE FROM shared_links WHERE id = %s RETURNING id", (link_id,))
        return bool(rows)

    async def list_share_links(self, group_id: UUID) -> list[ShareLink]:
        rows = await execute(
            f"""SELECT {_LINK_COLUMNS}
                FROM shared_links
                WHERE group_id = %s
                ORDER BY created_at DESC""",
            (group_id,),
        )
        return [ShareLink(**r) for r in rows]

    async def add_model(self, group_id: UUID | None, name: str, secret: str) -> Model:
        """Enroll a model; the secret is sealed before it is stored."""
        row = await execute_one(
            """INSERT INTO models (group_id, name, secret)
               VALUES (%s, %s, %s)
               RETURNING id, group_id, name, code, code_updated_at""",
            (group_id, name, seal_secret(secret)),
        )
        return Model(**row)
