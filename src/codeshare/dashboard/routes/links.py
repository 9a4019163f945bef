"""Share link management API."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request

from codeshare.backend import Backend
from codeshare.dashboard.app import get_backend
from codeshare.models import AccessType, ShareLink, ShareLinkCreate

router = APIRouter(tags=["links"])


def _with_url(request: Request, link: ShareLink) -> dict:
    url = request.url_for("shared_page", group_id=str(link.group_id)).include_query_params(token=link.access_token)
    return {**link.model_dump(mode="json"), "url": str(url)}


@router.get("/api/groups/{group_id}/links")
async def list_links(request: Request, group_id: UUID, backend: Backend = Depends(get_backend)):
    return [_with_url(request, link) for link in await backend.list_share_links(group_id)]


@router.post("/api/groups/{group_id}/links", status_code=201)
async def create_link(
    request: Request,
    group_id: UUID,
    body: ShareLinkCreate,
    backend: Backend = Depends(get_backend),
):
    if body.access_type == AccessType.RESTRICTED and not body.allowed_emails:
        raise HTTPException(status_code=400, detail="Restricted links need at least one allowed email")
    if await backend.get_group(group_id) is None:
        raise HTTPException(status_code=404, detail=f"Group not found: {group_id}")
    link = await backend.create_share_link(group_id, body)
    return _with_url(request, link)


@router.delete("/api/links/{link_id}")
async def revoke_link(link_id: UUID, backend: Backend = Depends(get_backend)):
    """Delete a link. Open shared views end with a deletion notice."""
    if not await backend.delete_share_link(link_id):
        raise HTTPException(status_code=404, detail="Link not found")
    return {"ok": True}
