"""Helpers for building the ``{success, message, data, code}`` envelope."""

from __future__ import annotations

from typing import Any, NoReturn

from fastapi import HTTPException


def envelope(data: Any = None, message: str | None = None, *, success: bool = True) -> dict:
    """Return a response envelope, omitting empty ``message`` and ``data``."""
    body: dict[str, Any] = {"success": success}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def error_body(code: str, message: str, data: Any = None) -> dict:
    body = envelope(data, message, success=False)
    body["code"] = code
    return body


def raise_http_error(code: str, message: str, status_code: int, data: Any = None) -> NoReturn:
    """Raise an HTTPException whose detail is already a failure envelope.

    Args:
        code: Stable error code string.
        message: Human-readable error message.
        status_code: HTTP status to return.
        data: Optional structured details.
    """
    raise HTTPException(status_code=status_code, detail=error_body(code, message, data))
