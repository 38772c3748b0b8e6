"""Composition of API routers under the /api/pr-testing prefix."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from prpreview.api.deps import require_token
from prpreview.api.pr_testing import router as pr_testing_router
from prpreview.api.repository import router as repository_router

router = APIRouter(prefix="/api/pr-testing", dependencies=[Depends(require_token)])
router.include_router(pr_testing_router)
router.include_router(repository_router)
