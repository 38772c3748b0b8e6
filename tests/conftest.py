"""Shared fixtures: isolated settings, a local origin repository and an orchestrator."""

from __future__ import annotations

import asyncio
import os
import shlex
import subprocess
import sys
import textwrap
import time

import pytest

from prpreview.models import PROCESS_STATES
from prpreview.orchestrator import Orchestrator
from prpreview.settings import Settings
from prpreview.store import SessionStore
from prpreview.supervisor import is_running

PR_BRANCH = "feature/pr-1"

# Dev-server stand-in: forks a helper that stays in the server's process
# group, records the helper's pid, prints the readiness line and idles until
# signalled.
SERVER_SCRIPT = textwrap.dedent(
    """
    import os
    import subprocess
    import sys
    import time

    child = subprocess.Popen([sys.executable, "-c", "import time\\nwhile True: time.sleep(1)"])
    with open("child.pid", "w") as handle:
        handle.write(str(child.pid))
    print("listening on port " + os.environ.get("PORT", "?"), flush=True)
    print("pr " + os.environ.get("PR_NUMBER", "?") + " test " + os.environ.get("PR_TEST", "?"), flush=True)
    print("this line goes to stderr", file=sys.stderr, flush=True)
    while True:
        time.sleep(0.2)
    """
)

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def git(*args: str, cwd: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env={**os.environ, **GIT_ENV},
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def python_command(*args: str) -> str:
    """A start command running the current interpreter."""
    return " ".join(shlex.quote(part) for part in (sys.executable, *args))


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def read_pid(path: str) -> int:
    with open(path) as handle:
        return int(handle.read().strip())


def pid_gone(pid: int) -> bool:
    return not is_running(pid)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        workspace_root=tmp_path / "workspaces",
        start_command=python_command("server.py"),
        install_command="",
        test_command="",
        token="",
        stop_grace_seconds=2,
        log_poll_seconds=0.05,
        git_timeout_seconds=60,
        base_app_port=18500,
        clone_policy="reject",
        maintenance_seconds=3600,
    )


@pytest.fixture
def fresh_store(settings):
    store = SessionStore(settings)
    yield store
    store.close()


@pytest.fixture
def origin_repo(tmp_path) -> str:
    """A local repository with ``main`` and a PR branch carrying the server."""
    path = str(tmp_path / "origin")
    os.makedirs(path)
    git("init", "-q", cwd=path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=path)
    with open(os.path.join(path, "README.md"), "w") as handle:
        handle.write("# demo\n")
    git("add", "README.md", cwd=path)
    git("commit", "-q", "-m", "initial", cwd=path)
    git("checkout", "-q", "-b", PR_BRANCH, cwd=path)
    with open(os.path.join(path, "server.py"), "w") as handle:
        handle.write(SERVER_SCRIPT)
    git("add", "server.py", cwd=path)
    git("commit", "-q", "-m", "add server", cwd=path)
    git("checkout", "-q", "main", cwd=path)
    return path


@pytest.fixture
async def orchestrator(settings):
    orch = Orchestrator(settings)
    await orch.startup(maintenance=False)
    yield orch
    for session in orch.store.list_sessions():
        if session.state in PROCESS_STATES and session.process_id:
            await orch.stop_app(session.pr_number, session.process_id, session.temp_dir)
    await orch.shutdown()
