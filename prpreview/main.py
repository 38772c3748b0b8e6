"""FastAPI application entrypoint for the PR preview orchestrator."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from prpreview.api import router as api_router
from prpreview.api.errors import error_body
from prpreview.api.health import router as health_router
from prpreview.errors import OrchestratorError
from prpreview.logging import configure_logging
from prpreview.orchestrator import Orchestrator
from prpreview.settings import Settings, settings as default_settings

logger = structlog.get_logger("prpreview.http")


def create_app(
    config: Settings | None = None,
    *,
    orchestrator: Orchestrator | None = None,
    maintenance: bool = True,
) -> FastAPI:
    """Build the application with its orchestrator wired into ``app.state``.

    Args:
        config: Settings to use; defaults to the environment-backed instance.
        orchestrator: Pre-built orchestrator, mainly for tests.
        maintenance: Whether to run the background maintenance loop.
    """
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orch = orchestrator or Orchestrator(config)
        app.state.orchestrator = orch
        await orch.startup(maintenance=maintenance)
        try:
            yield
        finally:
            await orch.shutdown()

    app = FastAPI(title="prpreview", lifespan=lifespan)
    app.state.settings = config

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_id = str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        start_time = time.monotonic()
        logger.info("Request started")
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.exception("Request failed", duration_ms=round(duration_ms, 2))
            structlog.contextvars.clear_contextvars()
            raise
        duration_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        structlog.contextvars.clear_contextvars()
        return response

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        """Convert component errors into the failure envelope."""
        logger.warning("Request rejected", code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Convert HTTPException into the failure envelope.

        Args:
            request: Incoming request that triggered the error.
            exc: Raised HTTPException instance.
        """
        if isinstance(exc.detail, dict) and "success" in exc.detail:
            return JSONResponse(status_code=exc.status_code, content=exc.detail)
        code_map = {
            401: "UNAUTHORIZED",
            404: "NOT_FOUND",
            405: "METHOD_NOT_ALLOWED",
            409: "CONFLICT",
            422: "VALIDATION_ERROR",
        }
        code = code_map.get(exc.status_code, "INTERNAL_ERROR")
        return JSONResponse(status_code=exc.status_code, content=error_body(code, str(exc.detail)))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert validation errors into the failure envelope.

        Args:
            request: Incoming request that failed validation.
            exc: Validation exception with details.
        """
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = f"{field}: {first.get('msg')}" if field else "Invalid request"
        return JSONResponse(
            status_code=422,
            content=error_body("VALIDATION_ERROR", message, _jsonable_errors(errors)),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error")
        return JSONResponse(status_code=500, content=error_body("INTERNAL_ERROR", "Internal server error"))

    app.include_router(health_router)
    app.include_router(api_router)
    return app


def _jsonable_errors(errors) -> list[dict]:
    # ctx may hold the raw exception object, which JSONResponse can't encode.
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in errors
    ]


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    configure_logging(default_settings)
    uvicorn.run(
        create_app(default_settings),
        host=default_settings.host(),
        port=default_settings.port(),
        reload=False,
    )


if __name__ == "__main__":
    run()
