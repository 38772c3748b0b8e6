"""Run a single command to completion and capture its output."""

from __future__ import annotations

import asyncio
import os
import shlex
import signal
import time
from collections.abc import Mapping, Sequence

import structlog

from prpreview.errors import CommandSpawnError, CommandTimeoutError, ValidationError
from prpreview.models import CommandResult

logger = structlog.get_logger("prpreview.runner")

# Reaping a killed group should be near-instant; don't hang the caller if not.
_REAP_TIMEOUT_S = 5.0


def _to_argv(command: str | Sequence[str], shell: bool) -> list[str]:
    if isinstance(command, str):
        if not command.strip():
            raise ValidationError("command is required")
        if shell:
            return ["/bin/sh", "-c", command]
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            raise ValidationError(f"command could not be parsed: {exc}") from exc
    else:
        argv = [str(part) for part in command]
    if not argv or not argv[0]:
        raise ValidationError("command is required")
    return argv


def _kill_group(pid: int) -> None:
    """SIGKILL the process group led by ``pid``; a vanished group is fine."""
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    _kill_group(proc.pid)
    try:
        await asyncio.wait_for(proc.wait(), timeout=_REAP_TIMEOUT_S)
    except asyncio.TimeoutError:
        logger.error("Killed command did not exit", pid=proc.pid)


async def run_command(
    command: str | Sequence[str],
    directory: str | None = None,
    *,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    shell: bool = False,
) -> CommandResult:
    """Run ``command`` and return its exit code and captured output.

    A non-zero exit code is reported in the result, not raised. The command
    runs in its own process group so that a timeout or cancellation can take
    down everything it spawned.

    Args:
        command: Argument vector, or a string split with ``shlex`` (or handed
            to ``/bin/sh -c`` when ``shell`` is true).
        directory: Working directory; must already exist. Defaults to the
            current directory.
        timeout: Seconds to wait before killing the process group.
        env: Extra environment variables layered over the current environment.
        shell: Interpret a string command with the shell.

    Raises:
        ValidationError: Empty command or missing directory.
        CommandSpawnError: The process could not be started.
        CommandTimeoutError: The timeout elapsed; the group was killed first.
    """
    argv = _to_argv(command, shell)
    if directory is not None and not os.path.isdir(directory):
        raise ValidationError(f"directory does not exist: {directory}")

    run_env = dict(os.environ)
    run_env["GIT_TERMINAL_PROMPT"] = "0"
    if env:
        run_env.update(env)

    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=directory,
            env=run_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        logger.warning("Command spawn failed", argv=argv, error=str(exc))
        raise CommandSpawnError(f"failed to start {argv[0]}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        logger.warning("Command timed out", argv=argv, timeout_s=timeout, pid=proc.pid)
        raise CommandTimeoutError(
            f"{argv[0]} timed out after {timeout:g}s",
            details={"command": argv, "timeout": timeout},
        ) from None
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    duration = time.monotonic() - start
    result = CommandResult(
        command=argv,
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_s=round(duration, 3),
    )
    logger.debug(
        "Command finished",
        argv=argv,
        exit_code=result.exit_code,
        duration_ms=round(duration * 1000, 2),
    )
    return result
