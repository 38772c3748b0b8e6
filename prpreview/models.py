"""Pydantic models for session state, command results and API payloads."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionState(str, Enum):
    """Lifecycle states for a PR preview session."""

    CREATED = "created"
    CLONING = "cloning"
    CHECKED_OUT = "checked_out"
    REMOTE_READY = "remote_ready"
    FETCHED = "fetched"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.STOPPED, SessionState.FAILED})
PROCESS_STATES = frozenset({SessionState.RUNNING, SessionState.STOPPING})
STARTABLE_STATES = frozenset(
    {SessionState.CHECKED_OUT, SessionState.REMOTE_READY, SessionState.FETCHED}
)


class PRTestRun(CamelModel):
    """Outcome of running the PR's test command in its workspace.

    A failing run is recorded here and never fails the session.
    """

    command: str
    exit_code: int
    passed: bool
    output: str = ""
    duration_s: float = 0.0
    timed_out: bool = False
    ran_at: str


class PRSession(CamelModel):
    """Tracked lifecycle of one PR's workspace and app process."""

    pr_number: int
    temp_dir: Optional[str] = None
    repo_url: str
    repo_name: str
    branch: str
    state: SessionState = SessionState.CREATED
    process_id: Optional[int] = None
    port: Optional[int] = None
    exit_code: Optional[int] = None
    last_error: Optional[str] = None
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    test_results: Optional[PRTestRun] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class LogEntry(BaseModel):
    """One immutable, timestamped setup or runtime log line."""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    text: str

    def render(self) -> str:
        return f"[{self.timestamp}] {self.text}"


class CommandResult(CamelModel):
    """Captured outcome of one finished command."""

    command: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def output(self) -> str:
        """Return stderr, falling back to stdout, trimmed for messages."""
        return (self.stderr or self.stdout or "").strip()


class GitResult(CamelModel):
    """Outcome of a repository operation with the output of every command it ran."""

    success: bool
    operation: str
    message: str
    commands: list[CommandResult] = Field(default_factory=list)

    @property
    def last(self) -> CommandResult | None:
        return self.commands[-1] if self.commands else None


class StopStatus(str, Enum):
    STOPPED = "stopped"
    NOT_FOUND = "not_found"


class StopResult(CamelModel):
    status: StopStatus
    pr_number: int
    pid: int
    temp_dir: str
    cleaned_up: bool = False


# --- Request bodies ---


def _not_blank(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must not be empty")
    return value.strip()


NonBlankStr = Annotated[str, AfterValidator(_not_blank)]


class ClonePRRequest(CamelModel):
    pr_number: int = Field(gt=0)
    branch: NonBlankStr
    repo_url: NonBlankStr
    repo_name: NonBlankStr


class StartAppRequest(CamelModel):
    pr_number: int = Field(gt=0)
    temp_dir: NonBlankStr


class StopAppRequest(CamelModel):
    pr_number: int = Field(gt=0)
    pid: int = Field(gt=0)
    temp_dir: NonBlankStr
    cleanup: bool = False


class AddLogRequest(CamelModel):
    pr_number: int = Field(gt=0)
    message: NonBlankStr


class RunTestsRequest(CamelModel):
    pr_number: int = Field(gt=0)


class CleanupRequest(CamelModel):
    pr_number: int = Field(gt=0)
    temp_dir: NonBlankStr


class PathRequest(CamelModel):
    path: NonBlankStr


class CloneRepositoryRequest(CamelModel):
    repo_url: NonBlankStr
    destination: NonBlankStr
    branch: Optional[str] = None


class CheckoutBranchRequest(CamelModel):
    directory: NonBlankStr
    branch_name: NonBlankStr
    start_point: Optional[str] = None


class SetupRemoteRequest(CamelModel):
    directory: NonBlankStr
    remote_name: NonBlankStr
    remote_url: NonBlankStr


class FetchBranchRequest(CamelModel):
    directory: NonBlankStr
    remote_name: NonBlankStr
    branch_name: NonBlankStr


class RunCommandRequest(CamelModel):
    command: NonBlankStr
    directory: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    shell: bool = False


class CopyToWorkspaceRequest(CamelModel):
    temp_dir: NonBlankStr
    destination: NonBlankStr
