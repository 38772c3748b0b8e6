"""Supervision of the long-running app process for each PR workspace.

Each app runs as the leader of its own process group, detached from the
orchestrator's session so an orchestrator restart leaves it running. Its
stdout and stderr share one capture file, which keeps lines in arrival order;
a drain task tails that file into the session log until the leader exits.
Stopping always targets the whole group, because dev servers routinely fork
watchers and build steps that would otherwise be orphaned.
"""

from __future__ import annotations

import asyncio
import os
import re
import signal
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

import structlog

from prpreview.errors import ConflictError, ProcessError, ValidationError
from prpreview.models import StopStatus

logger = structlog.get_logger("prpreview.supervisor")

LineCallback = Callable[[str], None]
ExitCallback = Callable[["ManagedProcess"], None]

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_MAX_PARTIAL_BYTES = 64 * 1024
_KILL_WAIT_S = 5.0
_GROUP_POLL_S = 0.05
_PROC = "/proc"


@dataclass
class ManagedProcess:
    """Bookkeeping for one supervised app process."""

    pr_number: int
    pid: int
    temp_dir: str
    log_path: str
    proc: asyncio.subprocess.Process | None = None
    drain_task: asyncio.Task | None = field(default=None, repr=False)
    stop_requested: bool = False
    exit_code: int | None = None
    adopted: bool = False

    @property
    def pgid(self) -> int:
        # start_new_session makes the leader's pid its group id.
        return self.pid

    @property
    def exited(self) -> bool:
        return self.drain_task is not None and self.drain_task.done()


def _read_stat(pid: int) -> list[str] | None:
    """Fields of /proc/<pid>/stat after the command name, or None."""
    try:
        with open(os.path.join(_PROC, str(pid), "stat"), "rb") as handle:
            raw = handle.read().decode("utf-8", errors="replace")
    except OSError:
        return None
    # comm may contain spaces and parentheses; it ends at the last ')'.
    return raw[raw.rfind(")") + 2:].split()


def _has_procfs() -> bool:
    return os.path.isdir(os.path.join(_PROC, "self"))


def group_members(pgid: int) -> list[int]:
    """Return the live (non-zombie) pids whose process group is ``pgid``."""
    if not _has_procfs():
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return []
        except PermissionError:
            pass
        return [pgid]
    members: list[int] = []
    for name in os.listdir(_PROC):
        if not name.isdigit():
            continue
        fields = _read_stat(int(name))
        if fields is None or len(fields) < 3:
            continue
        state, pgrp = fields[0], fields[2]
        if state != "Z" and pgrp == str(pgid):
            members.append(int(name))
    return members


def is_running(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    if _has_procfs():
        fields = _read_stat(pid)
        return bool(fields) and fields[0] != "Z"
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _cwd_matches(pid: int, temp_dir: str) -> bool:
    """Guard against pid reuse: the process must still live in its workspace."""
    try:
        cwd = os.readlink(os.path.join(_PROC, str(pid), "cwd"))
    except OSError:
        return True
    return os.path.realpath(cwd) == os.path.realpath(temp_dir)


def _clean_line(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").rstrip("\r")
    return _ANSI_RE.sub("", text)


def _signal_group(pgid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        pass
    except PermissionError as exc:
        raise ProcessError(f"not permitted to signal process group {pgid}") from exc


async def _wait_group_exit(pgid: int, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while group_members(pgid):
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(_GROUP_POLL_S)
    return True


class ProcessSupervisor:
    """Start, tail and stop one app process per workspace.

    Processes are addressed by ``(pid, workspace)`` pairs, never by pid
    alone, so a recycled pid belonging to someone else is never signalled.
    """

    def __init__(self, *, stop_grace_s: float = 5.0, poll_interval_s: float = 0.2) -> None:
        self._stop_grace_s = stop_grace_s
        self._poll_s = poll_interval_s
        self._by_workspace: dict[str, ManagedProcess] = {}

    def get(self, temp_dir: str) -> ManagedProcess | None:
        return self._by_workspace.get(os.path.realpath(temp_dir))

    def managed(self) -> list[ManagedProcess]:
        return list(self._by_workspace.values())

    async def start(
        self,
        pr_number: int,
        temp_dir: str,
        command: Sequence[str],
        *,
        log_path: str,
        on_line: LineCallback,
        on_exit: ExitCallback,
        env: Mapping[str, str] | None = None,
    ) -> ManagedProcess:
        """Launch ``command`` in ``temp_dir`` and start draining its output.

        Args:
            pr_number: Owning PR, for logging.
            temp_dir: Workspace to run in; must exist.
            command: Argument vector of the app's start command.
            log_path: Capture file for the combined stdout/stderr.
            on_line: Called with every output line, in arrival order.
            on_exit: Called once when the process exits on its own or is stopped.
            env: Extra environment variables for the app.

        Raises:
            ValidationError: The workspace or command is missing.
            ConflictError: A process is already running in this workspace.
            ProcessError: The process could not be spawned.
        """
        key = os.path.realpath(temp_dir)
        if not os.path.isdir(key):
            raise ValidationError(f"workspace does not exist: {temp_dir}")
        if not command:
            raise ValidationError("start command is empty")
        existing = self._by_workspace.get(key)
        if existing is not None and not existing.exited:
            raise ConflictError(
                f"process {existing.pid} is already running in {key}",
                details={"pid": existing.pid},
            )

        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        offset = os.path.getsize(log_path) if os.path.exists(log_path) else 0
        run_env = dict(os.environ)
        if env:
            run_env.update(env)
        with open(log_path, "ab") as capture:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=key,
                    env=run_env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=capture,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                logger.warning("App spawn failed", pr_number=pr_number, argv=list(command), error=str(exc))
                raise ProcessError(f"failed to start {command[0]}: {exc}") from exc

        managed = ManagedProcess(pr_number=pr_number, pid=proc.pid, temp_dir=key, log_path=log_path, proc=proc)
        self._by_workspace[key] = managed
        managed.drain_task = asyncio.create_task(
            self._drain(managed, offset, on_line, on_exit), name=f"drain-pr-{pr_number}"
        )
        logger.info("App process started", pr_number=pr_number, pid=proc.pid, workspace=key)
        return managed

    def adopt(
        self,
        pr_number: int,
        pid: int,
        temp_dir: str,
        *,
        log_path: str,
        on_line: LineCallback,
        on_exit: ExitCallback,
    ) -> ManagedProcess | None:
        """Re-attach to a group started before an orchestrator restart.

        Returns None when the group is gone or the pid now belongs to a
        process outside ``temp_dir``.
        """
        key = os.path.realpath(temp_dir)
        if not group_members(pid) or not _cwd_matches(pid, key):
            return None
        offset = os.path.getsize(log_path) if os.path.exists(log_path) else 0
        managed = ManagedProcess(
            pr_number=pr_number, pid=pid, temp_dir=key, log_path=log_path, adopted=True
        )
        self._by_workspace[key] = managed
        managed.drain_task = asyncio.create_task(
            self._drain(managed, offset, on_line, on_exit), name=f"drain-pr-{pr_number}"
        )
        logger.info("Adopted running app process", pr_number=pr_number, pid=pid, workspace=key)
        return managed

    async def stop(self, pid: int, temp_dir: str) -> StopStatus:
        """Terminate the process group led by ``pid`` in ``temp_dir``.

        Sends SIGTERM to the group, escalates to SIGKILL after the grace
        period, and returns only once no member of the group is alive and
        the drain task has been joined.

        Returns:
            ``STOPPED`` if something was terminated, ``NOT_FOUND`` if the pair
            is unknown or the group had already exited.
        """
        key = os.path.realpath(temp_dir)
        managed = self._by_workspace.get(key)
        if managed is None or managed.pid != pid:
            logger.info("Stop requested for unknown process", pid=pid, workspace=key)
            return StopStatus.NOT_FOUND
        managed.stop_requested = True

        if not group_members(managed.pgid):
            await self._join(managed)
            self._by_workspace.pop(key, None)
            logger.info("Process already exited", pid=pid, exit_code=managed.exit_code)
            return StopStatus.NOT_FOUND

        logger.info(
            "Stopping process group",
            pr_number=managed.pr_number,
            pgid=managed.pgid,
            adopted=managed.adopted,
        )
        _signal_group(managed.pgid, signal.SIGTERM)
        if not await _wait_group_exit(managed.pgid, self._stop_grace_s):
            logger.warning(
                "Process group ignored SIGTERM; killing",
                pgid=managed.pgid,
                survivors=group_members(managed.pgid),
            )
            _signal_group(managed.pgid, signal.SIGKILL)
            if not await _wait_group_exit(managed.pgid, _KILL_WAIT_S):
                raise ProcessError(f"process group {managed.pgid} survived SIGKILL")

        await self._join(managed)
        self._by_workspace.pop(key, None)
        logger.info("Process group stopped", pr_number=managed.pr_number, exit_code=managed.exit_code)
        return StopStatus.STOPPED

    async def close(self) -> None:
        """Cancel every drain task. The app processes themselves keep running."""
        tasks = [m.drain_task for m in self._by_workspace.values() if m.drain_task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._by_workspace.clear()

    async def _join(self, managed: ManagedProcess) -> None:
        task = managed.drain_task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(task, timeout=self._stop_grace_s + _KILL_WAIT_S)
        except asyncio.TimeoutError:
            logger.error("Drain task did not finish; cancelled", pid=managed.pid)

    async def _wait_exit(self, managed: ManagedProcess, waiter: asyncio.Future | None) -> bool:
        if waiter is not None:
            done, _ = await asyncio.wait({waiter}, timeout=self._poll_s)
            return bool(done)
        await asyncio.sleep(self._poll_s)
        return not is_running(managed.pid)

    def _forward(self, handle, partial: bytes, on_line: LineCallback) -> bytes:
        chunk = handle.read()
        if not chunk:
            return partial
        lines = (partial + chunk).split(b"\n")
        partial = lines.pop()
        if len(partial) > _MAX_PARTIAL_BYTES:
            lines.append(partial)
            partial = b""
        for raw in lines:
            self._emit(raw, on_line)
        return partial

    def _emit(self, raw: bytes, on_line: LineCallback) -> None:
        text = _clean_line(raw)
        if not text.strip():
            return
        try:
            on_line(text)
        except Exception:
            logger.exception("Log forwarding failed")

    async def _drain(
        self,
        managed: ManagedProcess,
        offset: int,
        on_line: LineCallback,
        on_exit: ExitCallback,
    ) -> None:
        waiter = asyncio.ensure_future(managed.proc.wait()) if managed.proc else None
        partial = b""
        try:
            with open(managed.log_path, "rb") as handle:
                handle.seek(offset)
                while True:
                    exited = await self._wait_exit(managed, waiter)
                    partial = self._forward(handle, partial, on_line)
                    if exited:
                        break
                if partial:
                    self._emit(partial, on_line)
        finally:
            if waiter is not None and not waiter.done():
                waiter.cancel()
        if managed.proc is not None:
            managed.exit_code = managed.proc.returncode
        logger.info(
            "App process exited",
            pr_number=managed.pr_number,
            pid=managed.pid,
            exit_code=managed.exit_code,
            stop_requested=managed.stop_requested,
            adopted=managed.adopted,
        )
        try:
            on_exit(managed)
        except Exception:
            logger.exception("Exit callback failed", pid=managed.pid)
