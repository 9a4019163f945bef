"""Public shared view: HTML page, JSON snapshot and SSE live stream."""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.responses import StreamingResponse

from codeshare.backend import Backend
from codeshare.config import settings
from codeshare.dashboard.app import get_backend, get_hub, get_resumes, get_user_email, templates
from codeshare.dashboard.resume import ResumeRegistry
from codeshare.models import ViewPhase, ViewState
from codeshare.realtime import RealtimeHub
from codeshare.shared_view import SharedViewController, ViewContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["shared"])

KEEPALIVE_S = 15.0

ERROR_STATUS = {
    "not_found": 404,
    "already_used": 410,
    "deleted": 404,
    "expired": 410,
    "access_denied": 403,
}


def _sse(state: ViewState, event_id: str | None = None) -> str:
    prefix = f"id: {event_id}\n" if event_id else ""
    return f"{prefix}data: {state.model_dump_json()}\n\n"


# --- HTML ---

@router.get("/shared/{group_id}", response_class=HTMLResponse, name="shared_page")
async def shared_page(
    request: Request,
    group_id: UUID,
    token: str | None = Query(None),
    user_email: str | None = Depends(get_user_email),
):
    # The page only opens the stream; the stream registers the view, so a
    # one-time link is consumed once per page load. The stream request passes
    # through the same proxy, so it sees the same viewer email.
    return templates.TemplateResponse(
        request,
        "shared.html",
        {"group_id": str(group_id), "token": token or "", "user_email": user_email or ""},
    )


# --- API ---

@router.get("/api/shared/{group_id}")
async def shared_snapshot(
    group_id: UUID,
    token: str | None = Query(None),
    user_email: str | None = Depends(get_user_email),
    backend: Backend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
):
    """Register one view and return the resulting state."""
    view = SharedViewController(backend, hub, ViewContext(group_id, token, user_email))
    try:
        await view.start()
        state = view.state
    finally:
        view.close()
    status = ERROR_STATUS.get(state.error_kind or "", 400) if state.phase == ViewPhase.ERROR else 200
    return JSONResponse(state.model_dump(mode="json"), status_code=status)


@router.get("/api/shared/{group_id}/stream")
async def shared_stream(
    request: Request,
    group_id: UUID,
    token: str | None = Query(None),
    last_event_id: str | None = Header(None, alias="Last-Event-ID"),
    user_email: str | None = Depends(get_user_email),
    backend: Backend = Depends(get_backend),
    hub: RealtimeHub = Depends(get_hub),
    resumes: ResumeRegistry = Depends(get_resumes),
):
    """SSE endpoint — one ViewState per change until the view errors out.

    Events carry a resume key as their id. A reconnect presenting it continues
    the same view without registering another one.
    """

    async def event_generator():
        queue: asyncio.Queue[ViewState] = asyncio.Queue()
        resumed = resumes.claim(last_event_id, group_id, token)
        view = SharedViewController(
            backend, hub, ViewContext(group_id, token, user_email), register_view=not resumed
        )
        view.add_listener(queue.put_nowait)
        key: str | None = None
        try:
            await view.start()
            while not queue.empty():
                queue.get_nowait()
            if view.state.phase == ViewPhase.ERROR:
                if resumed:
                    resumes.discard(last_event_id)
                yield _sse(view.state)
                return
            key = last_event_id if resumed else resumes.issue(group_id, token)
            yield f"retry: {settings.stream_retry_ms}\n" + _sse(view.state, key)
            while True:
                try:
                    state = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_S)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        return
                    yield ": keep-alive\n\n"
                    continue
                # Collapse bursts (countdown + code) into the newest state.
                while not queue.empty():
                    state = queue.get_nowait()
                yield _sse(state, key)
                if state.phase == ViewPhase.ERROR:
                    return
        finally:
            if key is not None:
                if view.state.phase == ViewPhase.ERROR:
                    resumes.discard(key)
                else:
                    resumes.release(key)
            view.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
