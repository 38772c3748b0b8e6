"""Helpers for producing server-sent event (SSE) responses."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator

from starlette.responses import StreamingResponse

from prpreview.models import LogEntry
from prpreview.store import SessionStore


def sse_event(data: dict) -> str:
    """Serialize an event payload into SSE wire format."""
    payload = json.dumps(data, separators=(",", ":"))
    return f"data: {payload}\n\n"


def _log_event(pr_number: int, entry: LogEntry) -> dict:
    return {
        "type": "log",
        "prNumber": pr_number,
        "timestamp": entry.timestamp,
        "text": entry.text,
        "line": entry.render(),
    }


def _finished(store: SessionStore, pr_number: int, queue: asyncio.Queue) -> bool:
    session = store.get(pr_number)
    return (session is None or session.is_terminal) and queue.empty()


async def log_stream(store: SessionStore, pr_number: int) -> AsyncIterator[bytes]:
    """Replay a session's buffered log, then stream new lines as UTF-8 SSE bytes.

    The feed ends with an ``end`` event once the session is stopped, failed
    or removed and every queued line has been sent.
    """
    # Subscribing and snapshotting happen with no await in between, so every
    # line lands in exactly one of the two.
    queue = store.new_subscriber(pr_number)
    replay = store.get_logs(pr_number)
    heartbeat_s = float(os.environ.get("PRPREVIEW_SSE_KEEPALIVE_SECONDS", "15"))
    try:
        for line in replay:
            yield sse_event({"type": "replay", "prNumber": pr_number, "line": line}).encode("utf-8")
        while not _finished(store, pr_number, queue):
            try:
                entry = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
            except asyncio.TimeoutError:
                yield b": keepalive\n\n"
                continue
            yield sse_event(_log_event(pr_number, entry)).encode("utf-8")
        session = store.get(pr_number)
        state = session.state.value if session is not None else None
        yield sse_event({"type": "end", "prNumber": pr_number, "state": state}).encode("utf-8")
    finally:
        store.remove_subscriber(pr_number, queue)


def stream_response(store: SessionStore, pr_number: int) -> StreamingResponse:
    """Build a StreamingResponse for a session's live log feed."""
    return StreamingResponse(log_stream(store, pr_number), media_type="text/event-stream")
