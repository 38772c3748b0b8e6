"""PR session lifecycle endpoints."""

from __future__ import annotations

from contextlib import contextmanager

import structlog
from fastapi import APIRouter, Depends, Path

from prpreview.api.deps import get_orchestrator
from prpreview.api.errors import envelope
from prpreview.errors import NotFoundError
from prpreview.models import (
    AddLogRequest,
    CleanupRequest,
    ClonePRRequest,
    CopyToWorkspaceRequest,
    PathRequest,
    PRSession,
    RunTestsRequest,
    StartAppRequest,
    StopAppRequest,
    StopStatus,
)
from prpreview.orchestrator import Orchestrator
from prpreview.sse import stream_response

router = APIRouter(tags=["pr-testing"])
logger = structlog.get_logger("prpreview.api.pr_testing")


@contextmanager
def _pr_logging_context(pr_number: int):
    structlog.contextvars.bind_contextvars(pr_number=pr_number)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars("pr_number")


def _summary(session: PRSession) -> dict:
    return session.model_dump(by_alias=True, mode="json")


@router.post("/clone", response_model=dict)
async def clone_pr(
    payload: ClonePRRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Clone a PR's branch into a fresh workspace."""
    with _pr_logging_context(payload.pr_number):
        logger.info("Clone requested", branch=payload.branch, repo_name=payload.repo_name)
        session = await orchestrator.clone_pr(
            payload.pr_number, payload.branch, payload.repo_url, payload.repo_name
        )
        logger.info("Clone completed", temp_dir=session.temp_dir)
        return envelope(_summary(session), f"PR #{payload.pr_number} cloned to {session.temp_dir}")


@router.post("/start", response_model=dict)
async def start_app(
    payload: StartAppRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Start the app of a cloned PR."""
    with _pr_logging_context(payload.pr_number):
        logger.info("Start requested", temp_dir=payload.temp_dir)
        session = await orchestrator.start_app(payload.pr_number, payload.temp_dir)
        data = {
            "processId": session.process_id,
            "port": session.port,
            "prNumber": session.pr_number,
            "tempDir": session.temp_dir,
            "startCommand": orchestrator.config.start_command(),
        }
        logger.info("App started", pid=session.process_id, port=session.port)
        return envelope(data, f"App for PR #{payload.pr_number} started on port {session.port}")


@router.post("/stop", response_model=dict)
async def stop_app(
    payload: StopAppRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Stop a PR's app and its whole process group."""
    with _pr_logging_context(payload.pr_number):
        logger.info("Stop requested", pid=payload.pid, cleanup=payload.cleanup)
        result = await orchestrator.stop_app(
            payload.pr_number, payload.pid, payload.temp_dir, cleanup=payload.cleanup
        )
        if result.status == StopStatus.NOT_FOUND:
            message = f"No running app for PR #{payload.pr_number}"
        else:
            message = f"App for PR #{payload.pr_number} stopped"
        return envelope(result.model_dump(by_alias=True, mode="json"), message)


@router.post("/run-tests", response_model=dict)
async def run_tests(
    payload: RunTestsRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Re-run the configured test command in a cloned PR's workspace.

    Failing tests are reported in the data with a 200 status.
    """
    with _pr_logging_context(payload.pr_number):
        run = await orchestrator.run_tests(payload.pr_number)
        message = "Tests passed" if run.passed else f"Tests failed with exit code {run.exit_code}"
        return envelope(run.model_dump(by_alias=True, mode="json"), message)


@router.get("/setup-logs/{pr_number}", response_model=dict)
async def get_setup_logs(
    pr_number: int = Path(..., gt=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Return a PR's setup and runtime log lines; empty for unknown PRs."""
    return envelope({"logs": orchestrator.get_setup_logs(pr_number)})


@router.get("/setup-logs/{pr_number}/stream")
async def stream_setup_logs(
    pr_number: int = Path(..., gt=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """SSE feed of a PR's log: buffered lines first, then live ones."""
    if orchestrator.store.get(pr_number) is None:
        raise NotFoundError(f"No session for PR #{pr_number}")
    return stream_response(orchestrator.store, pr_number)


@router.post("/add-log", response_model=dict)
async def add_log(
    payload: AddLogRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Append a client-supplied line to a PR's setup log."""
    await orchestrator.add_log(payload.pr_number, payload.message)
    return envelope(message="Log added")


@router.get("/active-tests", response_model=dict)
async def active_tests(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    """List PRs whose app is currently running."""
    sessions = await orchestrator.active_sessions()
    logger.info("Listed active tests", count=len(sessions))
    return envelope({"sessions": [_summary(s) for s in sessions]})


@router.get("/server-info/{pr_number}", response_model=dict)
async def server_info(
    pr_number: int = Path(..., gt=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Port, pid and workspace of a PR's running app."""
    session = await orchestrator.server_info(pr_number)
    return envelope(_summary(session))


@router.delete("/sessions/{pr_number}", response_model=dict)
async def delete_session(
    pr_number: int = Path(..., gt=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Forget a stopped or failed session."""
    with _pr_logging_context(pr_number):
        await orchestrator.reap(pr_number)
        logger.info("Session deleted")
        return envelope(message=f"Session for PR #{pr_number} removed")


@router.post("/cleanup", response_model=dict)
async def cleanup(
    payload: CleanupRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Delete the workspace of a PR whose app is not running."""
    with _pr_logging_context(payload.pr_number):
        data = await orchestrator.cleanup_workspace(payload.pr_number, payload.temp_dir)
        return envelope(data, "Workspace removed" if data["removed"] else "Workspace already gone")


@router.post("/copy-to-workspace", response_model=dict)
async def copy_to_workspace(
    payload: CopyToWorkspaceRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Copy a PR workspace into another directory."""
    logger.info("Copy requested", temp_dir=payload.temp_dir, destination=payload.destination)
    data = await orchestrator.copy_to_workspace(payload.temp_dir, payload.destination)
    return envelope(data, f"Copied {data['tempDir']} to {data['destination']}")


@router.post("/check-directory", response_model=dict)
async def check_directory(
    payload: PathRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Return metadata about a local directory path."""
    data = orchestrator.check_directory(payload.path)
    logger.info("Directory check completed", path=data["path"], exists=data["exists"], is_git=data["isGit"])
    return envelope(data)
