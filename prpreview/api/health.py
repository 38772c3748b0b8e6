"""Health endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from prpreview import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"ok": True, "version": __version__}
