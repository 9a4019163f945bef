from __future__ import annotations

from fastapi import APIRouter, Request

from codeshare import __version__

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health(request: Request):
    return {
        "ok": True,
        "version": __version__,
        "publishers": request.app.state.registry.status()["running"],
        "subscriptions": request.app.state.hub.subscription_count,
    }
