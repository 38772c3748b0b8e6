"""Facade that drives PR sessions through their lifecycle.

The orchestrator is the only place that changes a session's state. Every
operation that spans awaits for one PR runs under that PR's lock, so a clone,
a start and a stop for the same PR never interleave, while different PRs
proceed in parallel.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import shutil
from functools import partial

import structlog

from prpreview.errors import (
    CommandTimeoutError,
    ConflictError,
    GitOperationError,
    NotFoundError,
    ProcessError,
    ValidationError,
)
from prpreview.git import (
    RepositoryManager,
    is_git_repository,
    normalize_directory_path,
    validate_branch_name,
    validate_repo_name,
    validate_repo_url,
)
from prpreview.log_redaction import redact_text
from prpreview.models import (
    PROCESS_STATES,
    STARTABLE_STATES,
    CommandResult,
    GitResult,
    PRSession,
    PRTestRun,
    SessionState,
    StopResult,
    StopStatus,
)
from prpreview.runner import run_command
from prpreview.settings import Settings
from prpreview.store import SessionStore, now
from prpreview.supervisor import ManagedProcess, ProcessSupervisor, group_members

logger = structlog.get_logger("prpreview.orchestrator")

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.CLONING}),
    SessionState.CLONING: frozenset({SessionState.CHECKED_OUT}),
    SessionState.CHECKED_OUT: frozenset(
        {SessionState.REMOTE_READY, SessionState.FETCHED, SessionState.STARTING, SessionState.STOPPED}
    ),
    SessionState.REMOTE_READY: frozenset(
        {SessionState.FETCHED, SessionState.STARTING, SessionState.STOPPED}
    ),
    SessionState.FETCHED: frozenset(
        {SessionState.REMOTE_READY, SessionState.STARTING, SessionState.STOPPED}
    ),
    SessionState.STARTING: frozenset({SessionState.RUNNING}),
    SessionState.RUNNING: frozenset({SessionState.STOPPING}),
    SessionState.STOPPING: frozenset({SessionState.STOPPED}),
    SessionState.STOPPED: frozenset(),
    SessionState.FAILED: frozenset(),
}

_COPY_IGNORE = shutil.ignore_patterns(".git", "node_modules")
# Keeps a chatty git or install command from flooding the session log.
_MAX_OUTPUT_LINES = 200
_MAX_TEST_OUTPUT_CHARS = 20_000


def can_transition(current: SessionState, new: SessionState) -> bool:
    """True if ``current -> new`` is a legal lifecycle step."""
    if new == SessionState.FAILED:
        return current not in (SessionState.STOPPED, SessionState.FAILED)
    return new in _TRANSITIONS[current]


def _same_path(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return os.path.realpath(a) == os.path.realpath(b)


class Orchestrator:
    """Clone, start and stop PR preview apps.

    Args:
        config: Service settings.
        store: Session registry; built from ``config`` when omitted.
        repos: Git wrapper; built from ``config`` when omitted.
        supervisor: App process supervisor; built from ``config`` when omitted.
    """

    def __init__(
        self,
        config: Settings,
        *,
        store: SessionStore | None = None,
        repos: RepositoryManager | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self.config = config
        self.store = store or SessionStore(config)
        self.repos = repos or RepositoryManager(timeout_s=config.git_timeout_s())
        self.supervisor = supervisor or ProcessSupervisor(
            stop_grace_s=config.stop_grace_s(), poll_interval_s=config.log_poll_s()
        )
        self._background: set[asyncio.Task] = set()
        self._maintenance: asyncio.Task | None = None

    # --- lifecycle of the service itself ---

    async def startup(self, *, maintenance: bool = True) -> None:
        """Recover persisted sessions and start the maintenance loop."""
        self.recover()
        if maintenance:
            from prpreview.maintenance import maintenance_loop

            self._maintenance = asyncio.create_task(maintenance_loop(self), name="maintenance")
        logger.info("Orchestrator started", sessions=len(self.store.list_sessions()))

    async def shutdown(self) -> None:
        """Stop background work; running apps are left alive for the next start."""
        tasks = list(self._background)
        if self._maintenance is not None:
            tasks.append(self._maintenance)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._maintenance = None
        await self.supervisor.close()
        self.store.close()
        logger.info("Orchestrator stopped")

    def recover(self) -> None:
        """Reconcile sessions loaded from disk with the live process table.

        Running apps whose process group survived are re-attached. Sessions
        caught mid-operation by the restart are marked failed.
        """
        for session in self.store.list_sessions():
            if session.state in PROCESS_STATES:
                managed = None
                if session.process_id and session.temp_dir:
                    managed = self.supervisor.adopt(
                        session.pr_number,
                        session.process_id,
                        session.temp_dir,
                        log_path=self.store.process_log_path(session.pr_number),
                        on_line=partial(self.store.append_log, session.pr_number),
                        on_exit=self._exit_handler(session.pr_number),
                    )
                if managed is not None:
                    self.store.append_log(session.pr_number, f"Re-attached to app (pid {managed.pid})")
                elif session.state == SessionState.STOPPING:
                    self._transition(session, SessionState.STOPPED)
                else:
                    self._fail(session, "App exited while the orchestrator was offline")
            elif session.state in (SessionState.CREATED, SessionState.CLONING, SessionState.STARTING):
                self._fail(session, f"Interrupted by orchestrator restart while {session.state.value}")

    # --- state helpers ---

    def _transition(
        self,
        session: PRSession,
        new: SessionState,
        *,
        error: str | None = None,
        process_id: int | None = None,
    ) -> None:
        if not can_transition(session.state, new):
            raise ConflictError(
                f"PR #{session.pr_number} cannot go from {session.state.value} to {new.value}"
            )
        old = session.state
        session.state = new
        if new in PROCESS_STATES:
            if process_id is not None:
                session.process_id = process_id
        else:
            session.process_id = None
        if new == SessionState.RUNNING:
            session.started_at = now()
        if session.is_terminal:
            session.ended_at = now()
        if new == SessionState.FAILED:
            session.last_error = error
        self.store.update(session)
        logger.info(
            "Session state changed",
            pr_number=session.pr_number,
            old=old.value,
            new=new.value,
        )

    def _fail(self, session: PRSession, message: str) -> None:
        if session.is_terminal:
            return
        message = redact_text(message)
        self._transition(session, SessionState.FAILED, error=message)
        self.store.append_log(session.pr_number, f"Error: {message}")
        logger.warning("Session failed", pr_number=session.pr_number, error=message)

    def _log_output(self, pr_number: int, commands: list[CommandResult]) -> None:
        for result in commands:
            lines = [line for line in (result.stdout + "\n" + result.stderr).splitlines() if line.strip()]
            for line in lines[:_MAX_OUTPUT_LINES]:
                self.store.append_log(pr_number, line)
            if len(lines) > _MAX_OUTPUT_LINES:
                self.store.append_log(pr_number, f"... {len(lines) - _MAX_OUTPUT_LINES} more lines")

    def _git_step(self, session: PRSession, result: GitResult) -> None:
        """Record a git step in the session log; fail the session on error."""
        self._log_output(session.pr_number, result.commands)
        if result.success:
            self.store.append_log(session.pr_number, result.message)
            return
        self._fail(session, result.message)
        raise GitOperationError(result.message, details=_git_details(result))

    # --- high-level operations ---

    async def clone_pr(self, pr_number: int, branch: str, repo_url: str, repo_name: str) -> PRSession:
        """Allocate a workspace for ``pr_number`` and check out its branch.

        Raises:
            ValidationError: An identifier is malformed.
            ConflictError: The PR has an active session and the clone policy
                is ``reject``.
            GitOperationError: Clone or checkout failed; the session is left
                ``failed`` with its workspace in place for inspection.
        """
        branch = validate_branch_name(branch)
        repo_url = validate_repo_url(repo_url)
        repo_name = validate_repo_name(repo_name)

        async with self.store.lock(pr_number):
            existing = self.store.get(pr_number)
            if existing is not None and not existing.is_terminal:
                if self.config.clone_policy() == "reject":
                    raise ConflictError(
                        f"PR #{pr_number} already has an active session "
                        f"({existing.state.value}); stop it before cloning again",
                        details={"state": existing.state.value, "tempDir": existing.temp_dir},
                    )
                await self._replace(existing)

            session = self.store.create(
                pr_number, repo_url=repo_url, repo_name=repo_name, branch=branch
            )
            log = partial(self.store.append_log, pr_number)
            log(f"Setting up PR #{pr_number} for {repo_name} (branch {branch})")
            try:
                self._transition(session, SessionState.CLONING)
                session.temp_dir = self.store.allocate_workspace(pr_number, repo_name)
                self.store.update(session)
                created = await self.repos.create_directory(session.temp_dir)
                self._git_step(session, created)

                log(f"Cloning {redact_text(repo_url)} into {session.temp_dir}")
                cloned = await self.repos.clone_repository(repo_url, session.temp_dir, branch)
                self._git_step(session, cloned)

                checked_out = await self.repos.checkout_branch(session.temp_dir, branch)
                self._git_step(session, checked_out)
                self._transition(session, SessionState.CHECKED_OUT)
            except Exception as exc:
                self._fail(session, str(exc))
                raise
            await self._run_tests(session)
            log(f"PR #{pr_number} is ready in {session.temp_dir}")
            return session

    async def run_tests(self, pr_number: int) -> PRTestRun:
        """Run the configured test command again in a PR's workspace.

        Raises:
            ValidationError: No test command is configured.
            ConflictError: The PR has no checked-out workspace.
        """
        if not self.config.test_command():
            raise ValidationError("test command is not configured")
        async with self.store.lock(pr_number):
            session = self.store.get(pr_number)
            if session is None or not session.temp_dir:
                raise ConflictError(f"PR #{pr_number} has not been cloned")
            if session.state not in STARTABLE_STATES and session.state != SessionState.RUNNING:
                raise ConflictError(f"PR #{pr_number} is {session.state.value}; clone it again first")
            return await self._run_tests(session)

    async def _run_tests(self, session: PRSession) -> PRTestRun | None:
        command = self.config.test_command()
        if not command:
            return None
        log = partial(self.store.append_log, session.pr_number)
        log(f"Running tests: {command}")
        env = {"PR_TEST": "true", "PR_NUMBER": str(session.pr_number)}
        try:
            result = await run_command(
                command, session.temp_dir, timeout=self.config.command_timeout_s(), env=env
            )
        except ProcessError as exc:
            run = PRTestRun(
                command=command,
                exit_code=-1,
                passed=False,
                output=exc.message,
                timed_out=isinstance(exc, CommandTimeoutError),
                ran_at=now(),
            )
        else:
            self._log_output(session.pr_number, [result])
            output = redact_text((result.stdout + result.stderr).strip())
            run = PRTestRun(
                command=command,
                exit_code=result.exit_code,
                passed=result.ok,
                output=output[-_MAX_TEST_OUTPUT_CHARS:],
                duration_s=result.duration_s,
                ran_at=now(),
            )
        session.test_results = run
        self.store.update(session)
        if run.passed:
            log("Tests passed")
        else:
            log(f"Tests failed (exit code {run.exit_code})")
        logger.info(
            "Tests finished",
            pr_number=session.pr_number,
            exit_code=run.exit_code,
            passed=run.passed,
        )
        return run

    async def _replace(self, session: PRSession) -> None:
        """Retire an active session so a new clone can take the PR number."""
        pr_number = session.pr_number
        self.store.append_log(pr_number, "Replaced by a new clone request")
        if session.state in PROCESS_STATES and session.process_id and session.temp_dir:
            if session.state == SessionState.RUNNING:
                self._transition(session, SessionState.STOPPING)
            await self.supervisor.stop(session.process_id, session.temp_dir)
            self._transition(session, SessionState.STOPPED)
        else:
            self._fail(session, "Replaced by a new clone request")

    async def start_app(self, pr_number: int, temp_dir: str) -> PRSession:
        """Launch the app for a cloned PR.

        Runs the configured install command first when there is one, then
        starts the app in its own process group with ``PORT``, ``PR_TEST`` and
        ``PR_NUMBER`` set.

        Raises:
            ConflictError: The PR was never cloned, ``temp_dir`` is not its
                workspace, or its app is already running.
            ProcessError: Install or launch failed; the session is ``failed``.
        """
        async with self.store.lock(pr_number):
            session = self.store.get(pr_number)
            if session is None or not session.temp_dir:
                raise ConflictError(f"PR #{pr_number} has not been cloned")
            if not _same_path(session.temp_dir, temp_dir):
                raise ConflictError(
                    f"{temp_dir} is not the workspace of PR #{pr_number}",
                    details={"tempDir": session.temp_dir},
                )
            if session.state in PROCESS_STATES or session.state == SessionState.STARTING:
                raise ConflictError(
                    f"App for PR #{pr_number} is already running",
                    details={"processId": session.process_id, "port": session.port},
                )
            if session.state not in STARTABLE_STATES:
                raise ConflictError(
                    f"PR #{pr_number} is {session.state.value}; clone it again before starting"
                )
            argv = shlex.split(self.config.start_command())
            if not argv:
                raise ValidationError("start command is not configured")

            log = partial(self.store.append_log, pr_number)
            session.port = self.store.allocate_port()
            self._transition(session, SessionState.STARTING)
            env = {"PORT": str(session.port), "PR_TEST": "true", "PR_NUMBER": str(pr_number)}
            try:
                await self._install(session, env)
                log(f"Starting app: {self.config.start_command()} (port {session.port})")
                managed = await self.supervisor.start(
                    pr_number,
                    session.temp_dir,
                    argv,
                    env=env,
                    log_path=self.store.rotate_process_log(pr_number),
                    on_line=partial(self.store.append_log, pr_number),
                    on_exit=self._exit_handler(pr_number),
                )
            except Exception as exc:
                self._fail(session, str(exc))
                raise
            self._transition(session, SessionState.RUNNING, process_id=managed.pid)
            log(f"App started (pid {managed.pid}, port {session.port})")
            return session

    async def _install(self, session: PRSession, env: dict[str, str]) -> None:
        command = self.config.install_command()
        if not command:
            return
        self.store.append_log(session.pr_number, f"Installing dependencies: {command}")
        result = await run_command(
            command, session.temp_dir, timeout=self.config.command_timeout_s(), env=env
        )
        self._log_output(session.pr_number, [result])
        if not result.ok:
            raise ProcessError(
                f"install command exited with code {result.exit_code}",
                details=result.model_dump(by_alias=True),
            )

    async def stop_app(
        self, pr_number: int, pid: int, temp_dir: str, *, cleanup: bool = False
    ) -> StopResult:
        """Stop a PR's app and everything it spawned.

        Stopping a PR with no running app reports ``not_found``, so repeated
        stops are safe. A session that was cloned but never started is
        closed as ``stopped`` when ``temp_dir`` names its workspace, which
        frees the PR number for a new clone.

        Raises:
            ConflictError: The PR's app is running under a different pid or
                workspace than the one named.
        """
        async with self.store.lock(pr_number):
            session = self.store.get(pr_number)
            if session is None or session.state not in PROCESS_STATES:
                if (
                    session is not None
                    and session.state in STARTABLE_STATES
                    and _same_path(session.temp_dir, temp_dir)
                ):
                    self._transition(session, SessionState.STOPPED)
                    self.store.append_log(pr_number, "Session closed before its app was started")
                cleaned = False
                if cleanup and session is not None and _same_path(session.temp_dir, temp_dir):
                    cleaned = await self._delete_workspace(session)
                logger.info("Stop requested with no running app", pr_number=pr_number, pid=pid)
                return StopResult(
                    status=StopStatus.NOT_FOUND,
                    pr_number=pr_number,
                    pid=pid,
                    temp_dir=temp_dir,
                    cleaned_up=cleaned,
                )
            if session.process_id != pid or not _same_path(session.temp_dir, temp_dir):
                raise ConflictError(
                    f"pid {pid} in {temp_dir} is not the running app of PR #{pr_number}",
                    details={"processId": session.process_id, "tempDir": session.temp_dir},
                )

            if session.state == SessionState.RUNNING:
                self._transition(session, SessionState.STOPPING)
            self.store.append_log(pr_number, f"Stopping app (pid {pid})")
            managed = self.supervisor.get(session.temp_dir)
            try:
                status = await self.supervisor.stop(pid, session.temp_dir)
            except Exception as exc:
                self._fail(session, str(exc))
                raise
            if managed is not None:
                session.exit_code = managed.exit_code
            self._transition(session, SessionState.STOPPED)
            self.store.append_log(pr_number, "App stopped")
            cleaned = await self._delete_workspace(session) if cleanup else False
            return StopResult(
                status=status,
                pr_number=pr_number,
                pid=pid,
                temp_dir=session.temp_dir,
                cleaned_up=cleaned,
            )

    def get_setup_logs(self, pr_number: int) -> list[str]:
        """Rendered log lines for ``pr_number``; empty when the PR is unknown."""
        return self.store.get_logs(pr_number)

    # --- unexpected exits ---

    def _exit_handler(self, pr_number: int):
        def on_exit(managed: ManagedProcess) -> None:
            if managed.stop_requested:
                return
            # Runs inside the drain task; the lock is taken by a separate task.
            task = asyncio.get_running_loop().create_task(
                self._handle_unexpected_exit(pr_number, managed)
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return on_exit

    async def _handle_unexpected_exit(self, pr_number: int, managed: ManagedProcess) -> None:
        async with self.store.lock(pr_number):
            session = self.store.get(pr_number)
            if (
                session is None
                or session.state != SessionState.RUNNING
                or session.process_id != managed.pid
                or managed.stop_requested
            ):
                return
            # Reap anything the leader left behind in its group.
            await self.supervisor.stop(managed.pid, managed.temp_dir)
            session.exit_code = managed.exit_code
            if managed.adopted:
                # Not our child after a restart, so its status can't be collected.
                self._fail(session, "App exited unexpectedly after the orchestrator restarted")
            else:
                code = "unknown" if managed.exit_code is None else managed.exit_code
                self._fail(session, f"App exited unexpectedly (exit code {code})")

    # --- supplemental operations ---

    async def add_log(self, pr_number: int, message: str) -> None:
        if self.store.get(pr_number) is None:
            raise NotFoundError(f"No session for PR #{pr_number}")
        self.store.append_log(pr_number, message)

    async def active_sessions(self) -> list[PRSession]:
        """Sessions with a running app, after dropping ones whose group vanished."""
        active: list[PRSession] = []
        for session in self.store.list_sessions():
            if session.state != SessionState.RUNNING:
                continue
            if session.process_id and group_members(session.process_id):
                active.append(session)
                continue
            async with self.store.lock(session.pr_number):
                current = self.store.get(session.pr_number)
                if current is None or current.state != SessionState.RUNNING:
                    continue
                if current.process_id and group_members(current.process_id):
                    active.append(current)
                    continue
                if current.temp_dir and current.process_id:
                    await self.supervisor.stop(current.process_id, current.temp_dir)
                self._fail(current, "App process is no longer running")
        return active

    async def server_info(self, pr_number: int) -> PRSession:
        session = self.store.get(pr_number)
        if session is None or session.state != SessionState.RUNNING:
            raise NotFoundError(f"No running app for PR #{pr_number}")
        return session

    async def reap(self, pr_number: int) -> None:
        """Forget a finished session. Its workspace is left on disk."""
        async with self.store.lock(pr_number):
            if not self.store.remove(pr_number):
                raise NotFoundError(f"No session for PR #{pr_number}")

    async def cleanup_workspace(self, pr_number: int, temp_dir: str) -> dict:
        """Delete the workspace of a PR whose app is not running."""
        async with self.store.lock(pr_number):
            session = self.store.get(pr_number)
            if session is None:
                raise NotFoundError(f"No session for PR #{pr_number}")
            if not _same_path(session.temp_dir, temp_dir):
                raise ConflictError(f"{temp_dir} is not the workspace of PR #{pr_number}")
            if session.state in PROCESS_STATES or session.state == SessionState.STARTING:
                raise ConflictError(f"Stop the app for PR #{pr_number} before cleaning up")
            removed = await self._delete_workspace(session)
            if not session.is_terminal:
                self._fail(session, "Workspace was removed")
            return {"prNumber": pr_number, "tempDir": session.temp_dir, "removed": removed}

    async def _delete_workspace(self, session: PRSession) -> bool:
        path = session.temp_dir
        if not path or not os.path.isdir(path):
            return False
        root = os.path.realpath(self.store.workspace_root())
        real = os.path.realpath(path)
        if real == root or os.path.commonpath([root, real]) != root:
            raise ValidationError(f"refusing to delete {path}: outside the workspace root")
        await asyncio.to_thread(shutil.rmtree, real)
        self.store.append_log(session.pr_number, f"Removed workspace {real}")
        logger.info("Workspace removed", pr_number=session.pr_number, path=real)
        return True

    def check_directory(self, path: str) -> dict:
        """Report whether ``path`` is an existing directory and a git work tree."""
        normalized = normalize_directory_path(path)
        exists = os.path.isdir(normalized)
        return {"path": normalized, "exists": exists, "isGit": exists and is_git_repository(normalized)}

    async def copy_to_workspace(self, temp_dir: str, destination: str) -> dict:
        """Copy a PR workspace over ``destination``, skipping VCS and dependency dirs."""
        source = self.checked_path(temp_dir, "tempDir")
        if not os.path.isdir(source):
            raise ValidationError(f"tempDir does not exist: {temp_dir}")
        if not os.path.isabs(destination):
            raise ValidationError("destination must be an absolute path")
        target = normalize_directory_path(destination)
        if not os.path.isdir(target):
            raise ValidationError(f"destination does not exist: {destination}")
        if os.path.commonpath([source, target]) in (source, target):
            raise ValidationError("tempDir and destination must not contain each other")
        await asyncio.to_thread(
            shutil.copytree, source, target, ignore=_COPY_IGNORE, dirs_exist_ok=True
        )
        owner = self.store.find_by_workspace(source)
        if owner is not None:
            self.store.append_log(owner.pr_number, f"Copied workspace to {target}")
        logger.info("Workspace copied", source=source, destination=target)
        return {"tempDir": source, "destination": target}

    # --- low-level repository operations ---

    def checked_path(self, path: str, field: str = "path") -> str:
        """Normalize ``path``, confining it to the workspace root when configured."""
        if not path or not path.strip():
            raise ValidationError(f"{field} is required")
        if not os.path.isabs(os.path.expanduser(path)):
            raise ValidationError(f"{field} must be an absolute path")
        normalized = normalize_directory_path(path)
        if self.config.restrict_paths():
            root = os.path.realpath(self.store.workspace_root())
            if os.path.commonpath([root, normalized]) != root:
                raise ValidationError(f"{field} must be inside {root}")
        return normalized

    async def _workspace_op(self, directory: str, op, advance_to: SessionState | None = None) -> GitResult:
        owner = self.store.find_by_workspace(directory)
        if owner is None:
            result = await op()
        else:
            async with self.store.lock(owner.pr_number):
                result = await op()
                session = self.store.get(owner.pr_number)
                if session is not None and not session.is_terminal:
                    self._log_output(session.pr_number, result.commands)
                    self.store.append_log(session.pr_number, result.message)
                    if (
                        result.success
                        and advance_to is not None
                        and session.state != advance_to
                        and can_transition(session.state, advance_to)
                    ):
                        self._transition(session, advance_to)
        if not result.success:
            raise GitOperationError(result.message, details=_git_details(result))
        return result

    async def create_directory(self, path: str) -> GitResult:
        result = await self.repos.create_directory(self.checked_path(path))
        if not result.success:
            raise ValidationError(result.message)
        return result

    async def clone_repository(self, repo_url: str, destination: str, branch: str | None = None) -> GitResult:
        destination = self.checked_path(destination, "destination")
        return await self._workspace_op(
            destination, lambda: self.repos.clone_repository(repo_url, destination, branch)
        )

    async def checkout_branch(
        self, directory: str, branch_name: str, start_point: str | None = None
    ) -> GitResult:
        directory = self.checked_path(directory, "directory")
        return await self._workspace_op(
            directory, lambda: self.repos.checkout_branch(directory, branch_name, start_point)
        )

    async def setup_remote(self, directory: str, remote_name: str, remote_url: str) -> GitResult:
        directory = self.checked_path(directory, "directory")
        return await self._workspace_op(
            directory,
            lambda: self.repos.setup_remote(directory, remote_name, remote_url),
            SessionState.REMOTE_READY,
        )

    async def fetch_branch(self, directory: str, remote_name: str, branch_name: str) -> GitResult:
        directory = self.checked_path(directory, "directory")
        return await self._workspace_op(
            directory,
            lambda: self.repos.fetch_branch(directory, remote_name, branch_name),
            SessionState.FETCHED,
        )

    async def run_command(
        self,
        command: str,
        directory: str | None = None,
        *,
        timeout: float | None = None,
        shell: bool = False,
    ) -> CommandResult:
        """Run an ad-hoc command, logging it to the owning session if any.

        Without a ``directory`` the command runs in the workspace root while
        paths are restricted, and in the server's own directory otherwise.
        """
        if directory is not None:
            directory = self.checked_path(directory, "directory")
        elif self.config.restrict_paths():
            directory = self.store.workspace_root()
            os.makedirs(directory, exist_ok=True)
        result = await run_command(
            command,
            directory,
            timeout=timeout or self.config.command_timeout_s(),
            shell=shell,
        )
        owner = self.store.find_by_workspace(directory) if directory else None
        if owner is not None:
            self.store.append_log(owner.pr_number, f"$ {command} (exit code {result.exit_code})")
        return result


def _git_details(result: GitResult) -> dict:
    return {
        "operation": result.operation,
        "commands": [c.model_dump(by_alias=True) for c in result.commands],
    }

