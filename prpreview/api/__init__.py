"""API package for PR preview endpoints."""

from __future__ import annotations

from prpreview.api.deps import require_token
from prpreview.api.router import router

__all__ = ["router", "require_token"]
