"""Code publisher control API."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from codeshare.dashboard.app import get_registry
from codeshare.publisher import PublisherRegistry

router = APIRouter(tags=["publishers"])


@router.get("/api/publishers")
async def publishers_status(registry: PublisherRegistry = Depends(get_registry)):
    return registry.status()


@router.post("/api/models/{model_id}/publisher")
async def start_publisher(model_id: UUID, registry: PublisherRegistry = Depends(get_registry)):
    try:
        publisher = await registry.start(model_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return publisher.state.model_dump(mode="json")


@router.delete("/api/models/{model_id}/publisher")
async def stop_publisher(model_id: UUID, registry: PublisherRegistry = Depends(get_registry)):
    return {"ok": registry.stop(model_id)}


@router.get("/api/models/{model_id}/code")
async def current_code(model_id: UUID, registry: PublisherRegistry = Depends(get_registry)):
    """What the model's code display shows right now."""
    publisher = registry.get(model_id)
    if publisher is None:
        raise HTTPException(status_code=404, detail="No publisher running for this model")
    return publisher.state.model_dump(mode="json")
