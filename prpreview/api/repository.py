"""Low-level repository and command endpoints.

These let a client drive workspace preparation step by step. Directory
arguments are confined to the workspace root unless path restriction is
disabled.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from prpreview.api.deps import get_orchestrator
from prpreview.api.errors import envelope
from prpreview.models import (
    CheckoutBranchRequest,
    CloneRepositoryRequest,
    FetchBranchRequest,
    GitResult,
    PathRequest,
    RunCommandRequest,
    SetupRemoteRequest,
)
from prpreview.orchestrator import Orchestrator

router = APIRouter(tags=["repository"])
logger = structlog.get_logger("prpreview.api.repository")


def _git_envelope(result: GitResult) -> dict:
    last = result.last
    data = {
        "operation": result.operation,
        "output": last.stdout if last else "",
        "commands": [c.model_dump(by_alias=True) for c in result.commands],
    }
    return envelope(data, result.message)


@router.post("/create-directory", response_model=dict)
async def create_directory(
    payload: PathRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    result = await orchestrator.create_directory(payload.path)
    return envelope({"path": orchestrator.checked_path(payload.path)}, result.message)


@router.post("/clone-repository", response_model=dict)
async def clone_repository(
    payload: CloneRepositoryRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    logger.info("Clone repository requested", destination=payload.destination, branch=payload.branch)
    result = await orchestrator.clone_repository(payload.repo_url, payload.destination, payload.branch)
    return _git_envelope(result)


@router.post("/checkout-branch", response_model=dict)
async def checkout_branch(
    payload: CheckoutBranchRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    result = await orchestrator.checkout_branch(
        payload.directory, payload.branch_name, payload.start_point
    )
    return _git_envelope(result)


@router.post("/setup-remote", response_model=dict)
async def setup_remote(
    payload: SetupRemoteRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    result = await orchestrator.setup_remote(
        payload.directory, payload.remote_name, payload.remote_url
    )
    return _git_envelope(result)


@router.post("/fetch-branch", response_model=dict)
async def fetch_branch(
    payload: FetchBranchRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    result = await orchestrator.fetch_branch(
        payload.directory, payload.remote_name, payload.branch_name
    )
    return _git_envelope(result)


@router.post("/run-command", response_model=dict)
async def run_command(
    payload: RunCommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Run a command and report its exit code and output.

    A non-zero exit is reported with ``success: false`` and a 200 status;
    the command ran, it just did not succeed.
    """
    logger.info("Run command requested", directory=payload.directory, shell=payload.shell)
    result = await orchestrator.run_command(
        payload.command, payload.directory, timeout=payload.timeout, shell=payload.shell
    )
    data = {
        "exitCode": result.exit_code,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "durationS": result.duration_s,
    }
    if result.ok:
        return envelope(data, "Command succeeded")
    return envelope(data, f"Command exited with code {result.exit_code}", success=False)
