"""Background maintenance: retention pruning and liveness checks."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from prpreview.orchestrator import Orchestrator

logger = structlog.get_logger("prpreview.maintenance")


async def run_maintenance(orchestrator: Orchestrator) -> list[int]:
    """One maintenance pass; returns the PR numbers that were pruned."""
    await orchestrator.active_sessions()
    removed = orchestrator.store.prune(orchestrator.config.session_retention_days())
    if removed:
        logger.info("Pruned sessions", count=len(removed), pr_numbers=removed)
    return removed


async def maintenance_loop(orchestrator: Orchestrator) -> None:
    """Periodically prune old sessions and fail ones whose app vanished."""
    interval_s = orchestrator.config.maintenance_interval_s()
    while True:
        try:
            await run_maintenance(orchestrator)
        except Exception:
            logger.exception("Maintenance loop failed")
        await asyncio.sleep(interval_s)
