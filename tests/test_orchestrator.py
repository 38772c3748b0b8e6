"""End-to-end orchestration tests against a local repository and real processes."""

from __future__ import annotations

import asyncio
import os
import signal

import pytest

from prpreview.errors import ConflictError, GitOperationError, NotFoundError, ProcessError, ValidationError
from prpreview.models import SessionState, StopStatus
from prpreview.orchestrator import Orchestrator, can_transition
from prpreview.settings import Settings
from prpreview.supervisor import group_members

from conftest import PR_BRANCH, pid_gone, python_command, read_pid, wait_until


def _logs_contain(orchestrator, pr_number: int, needle: str) -> bool:
    return any(needle in line for line in orchestrator.get_setup_logs(pr_number))


def _with(settings: Settings, **overrides) -> Settings:
    merged = dict(settings._overrides)
    merged.update(overrides)
    return Settings(**merged)


class TestTransitions:
    def test_table(self) -> None:
        assert can_transition(SessionState.CHECKED_OUT, SessionState.STARTING)
        assert can_transition(SessionState.FETCHED, SessionState.REMOTE_READY)
        assert can_transition(SessionState.CLONING, SessionState.FAILED)
        assert can_transition(SessionState.CHECKED_OUT, SessionState.STOPPED)
        assert not can_transition(SessionState.CREATED, SessionState.RUNNING)
        assert not can_transition(SessionState.RUNNING, SessionState.STOPPED)
        assert not can_transition(SessionState.STOPPED, SessionState.FAILED)
        assert not can_transition(SessionState.FAILED, SessionState.CLONING)


class TestClone:
    """Cloning allocates a fresh workspace and records evidence in the log."""

    @pytest.mark.anyio
    async def test_clone_checks_out_branch(self, orchestrator, origin_repo, settings) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        assert session.state == SessionState.CHECKED_OUT
        assert session.process_id is None
        assert os.path.isdir(os.path.join(session.temp_dir, ".git"))
        assert os.path.dirname(session.temp_dir) == os.path.realpath(settings.workspace_root())
        assert _logs_contain(orchestrator, 1, "Cloning")
        assert _logs_contain(orchestrator, 1, f"Checked out branch {PR_BRANCH}")

    @pytest.mark.anyio
    async def test_failed_clone_marks_session_failed(self, orchestrator, origin_repo) -> None:
        with pytest.raises(GitOperationError) as info:
            await orchestrator.clone_pr(2, "no-such-branch", origin_repo, "acme/app")
        session = orchestrator.store.get(2)
        assert session.state == SessionState.FAILED
        assert session.last_error
        assert info.value.details["operation"] == "clone_repository"
        assert os.path.isdir(session.temp_dir)
        assert _logs_contain(orchestrator, 2, "Error:")

    @pytest.mark.anyio
    async def test_invalid_branch_has_no_side_effects(self, orchestrator, origin_repo) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.clone_pr(3, "--upload-pack=x", origin_repo, "acme/app")
        assert orchestrator.store.get(3) is None

    @pytest.mark.anyio
    async def test_active_session_rejects_second_clone(self, orchestrator, origin_repo) -> None:
        await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        with pytest.raises(ConflictError):
            await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")

    @pytest.mark.anyio
    async def test_replace_policy(self, settings, origin_repo) -> None:
        orch = Orchestrator(_with(settings, clone_policy="replace"))
        await orch.startup(maintenance=False)
        try:
            first = await orch.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
            second = await orch.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
            assert second.temp_dir != first.temp_dir
            assert second.state == SessionState.CHECKED_OUT
        finally:
            await orch.shutdown()

    @pytest.mark.anyio
    async def test_concurrent_clones_get_distinct_workspaces(self, orchestrator, origin_repo) -> None:
        sessions = await asyncio.gather(
            *(orchestrator.clone_pr(n, PR_BRANCH, origin_repo, "acme/app") for n in (11, 12, 13))
        )
        assert len({s.temp_dir for s in sessions}) == 3
        assert all(s.state == SessionState.CHECKED_OUT for s in sessions)


class TestTestCommand:
    """The PR's own tests run after checkout; their outcome is data, not an error."""

    @pytest.mark.anyio
    async def test_passing_tests_are_recorded(self, settings, origin_repo) -> None:
        command = python_command(
            "-c", "import os, sys; print('2 passed'); sys.exit(0 if os.path.exists('server.py') else 1)"
        )
        orch = Orchestrator(_with(settings, test_command=command))
        await orch.startup(maintenance=False)
        try:
            session = await orch.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
            assert session.state == SessionState.CHECKED_OUT
            assert session.test_results.passed is True
            assert session.test_results.exit_code == 0
            assert "2 passed" in session.test_results.output
            assert _logs_contain(orch, 1, "Tests passed")
        finally:
            await orch.shutdown()

    @pytest.mark.anyio
    async def test_failing_tests_do_not_fail_session(self, settings, origin_repo) -> None:
        config = _with(settings, test_command=python_command("-c", "print('1 failed'); raise SystemExit(1)"))
        orch = Orchestrator(config)
        await orch.startup(maintenance=False)
        try:
            session = await orch.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
            assert session.state == SessionState.CHECKED_OUT
            assert session.test_results.passed is False
            assert session.test_results.exit_code == 1
            assert "1 failed" in session.test_results.output
            assert _logs_contain(orch, 1, "Tests failed (exit code 1)")

            rerun = await orch.run_tests(1)
            assert rerun.exit_code == 1
            started = await orch.start_app(1, session.temp_dir)
            assert started.state == SessionState.RUNNING
            await orch.stop_app(1, started.process_id, started.temp_dir)
        finally:
            await orch.shutdown()

        restored = Orchestrator(config)
        try:
            assert restored.store.get(1).test_results.exit_code == 1
        finally:
            restored.store.close()

    @pytest.mark.anyio
    async def test_slow_tests_time_out_as_data(self, settings, origin_repo) -> None:
        config = _with(
            settings,
            test_command=python_command("-c", "import time; time.sleep(5)"),
            command_timeout_seconds=0.3,
        )
        orch = Orchestrator(config)
        await orch.startup(maintenance=False)
        try:
            session = await orch.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
            assert session.state == SessionState.CHECKED_OUT
            assert session.test_results.timed_out is True
            assert session.test_results.passed is False
        finally:
            await orch.shutdown()

    @pytest.mark.anyio
    async def test_no_test_command(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        assert session.test_results is None
        with pytest.raises(ValidationError):
            await orchestrator.run_tests(1)


class TestStartStop:
    """The full clone, start, stop lifecycle."""

    @pytest.mark.anyio
    async def test_start_before_clone_conflicts(self, orchestrator, tmp_path) -> None:
        with pytest.raises(ConflictError):
            await orchestrator.start_app(7, str(tmp_path))
        assert orchestrator.supervisor.managed() == []

    @pytest.mark.anyio
    async def test_start_with_wrong_workspace_conflicts(self, orchestrator, origin_repo, tmp_path) -> None:
        await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        with pytest.raises(ConflictError):
            await orchestrator.start_app(1, str(tmp_path))

    @pytest.mark.anyio
    async def test_lifecycle(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        session = await orchestrator.start_app(1, session.temp_dir)
        assert session.state == SessionState.RUNNING
        assert session.process_id
        assert session.port is not None

        assert await wait_until(lambda: _logs_contain(orchestrator, 1, "listening on"))
        assert _logs_contain(orchestrator, 1, f"listening on port {session.port}")
        assert _logs_contain(orchestrator, 1, "pr 1 test true")
        assert _logs_contain(orchestrator, 1, "this line goes to stderr")
        child = read_pid(os.path.join(session.temp_dir, "child.pid"))

        with pytest.raises(ConflictError):
            await orchestrator.start_app(1, session.temp_dir)

        pid = session.process_id
        result = await orchestrator.stop_app(1, pid, session.temp_dir)
        assert result.status == StopStatus.STOPPED
        assert group_members(pid) == []
        assert await wait_until(lambda: pid_gone(child), timeout=2)
        stopped = orchestrator.store.get(1)
        assert stopped.state == SessionState.STOPPED
        assert stopped.process_id is None
        assert os.path.isdir(stopped.temp_dir)

        again = await orchestrator.stop_app(1, pid, session.temp_dir)
        assert again.status == StopStatus.NOT_FOUND

    @pytest.mark.anyio
    async def test_stop_with_wrong_pid_conflicts(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        session = await orchestrator.start_app(1, session.temp_dir)
        with pytest.raises(ConflictError):
            await orchestrator.stop_app(1, session.process_id + 100000, session.temp_dir)
        assert orchestrator.store.get(1).state == SessionState.RUNNING

    @pytest.mark.anyio
    async def test_stop_unknown_pr_is_not_found(self, orchestrator, tmp_path) -> None:
        result = await orchestrator.stop_app(99, 12345, str(tmp_path))
        assert result.status == StopStatus.NOT_FOUND

    @pytest.mark.anyio
    async def test_stop_before_start_closes_session(self, orchestrator, origin_repo) -> None:
        first = await orchestrator.clone_pr(5, PR_BRANCH, origin_repo, "acme/app")
        result = await orchestrator.stop_app(5, 4242, first.temp_dir)
        assert result.status == StopStatus.NOT_FOUND
        closed = orchestrator.store.get(5)
        assert closed.state == SessionState.STOPPED
        assert os.path.isdir(first.temp_dir)
        assert _logs_contain(orchestrator, 5, "Session closed before its app was started")

        second = await orchestrator.clone_pr(5, PR_BRANCH, origin_repo, "acme/app")
        assert second.state == SessionState.CHECKED_OUT
        assert second.temp_dir != first.temp_dir

        await orchestrator.stop_app(5, 4242, second.temp_dir)
        await orchestrator.reap(5)
        assert orchestrator.store.get(5) is None

    @pytest.mark.anyio
    async def test_stop_before_start_with_other_workspace_is_ignored(self, orchestrator, origin_repo, tmp_path) -> None:
        await orchestrator.clone_pr(5, PR_BRANCH, origin_repo, "acme/app")
        result = await orchestrator.stop_app(5, 4242, str(tmp_path))
        assert result.status == StopStatus.NOT_FOUND
        assert orchestrator.store.get(5).state == SessionState.CHECKED_OUT

    @pytest.mark.anyio
    async def test_stop_with_cleanup_removes_workspace(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        session = await orchestrator.start_app(1, session.temp_dir)
        result = await orchestrator.stop_app(1, session.process_id, session.temp_dir, cleanup=True)
        assert result.cleaned_up
        assert not os.path.exists(session.temp_dir)

    @pytest.mark.anyio
    async def test_unexpected_exit_fails_session(self, settings, origin_repo) -> None:
        config = _with(settings, start_command=python_command("-c", "import sys; print('crash'); sys.exit(3)"))
        orch = Orchestrator(config)
        await orch.startup(maintenance=False)
        try:
            session = await orch.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
            await orch.start_app(1, session.temp_dir)
            assert await wait_until(lambda: orch.store.get(1).state == SessionState.FAILED)
            failed = orch.store.get(1)
            assert failed.exit_code == 3
            assert "exit code 3" in failed.last_error
            assert failed.process_id is None
            assert _logs_contain(orch, 1, "crash")
        finally:
            await orch.shutdown()

    @pytest.mark.anyio
    async def test_install_command_runs_first(self, settings, origin_repo) -> None:
        install = python_command("-c", "open('installed.txt', 'w').write('ok')")
        orch = Orchestrator(_with(settings, install_command=install))
        await orch.startup(maintenance=False)
        try:
            session = await orch.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
            session = await orch.start_app(1, session.temp_dir)
            assert os.path.exists(os.path.join(session.temp_dir, "installed.txt"))
            await orch.stop_app(1, session.process_id, session.temp_dir)
        finally:
            await orch.shutdown()

    @pytest.mark.anyio
    async def test_failing_install_fails_session(self, settings, origin_repo) -> None:
        orch = Orchestrator(_with(settings, install_command=python_command("-c", "raise SystemExit(2)")))
        await orch.startup(maintenance=False)
        try:
            session = await orch.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
            with pytest.raises(ProcessError):
                await orch.start_app(1, session.temp_dir)
            assert orch.store.get(1).state == SessionState.FAILED
            assert orch.supervisor.managed() == []
        finally:
            await orch.shutdown()


class TestRecovery:
    @pytest.mark.anyio
    async def test_running_app_is_adopted_after_restart(self, settings, origin_repo) -> None:
        first = Orchestrator(settings)
        await first.startup(maintenance=False)
        session = await first.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        session = await first.start_app(1, session.temp_dir)
        pid = session.process_id
        await first.shutdown()
        assert group_members(pid)

        second = Orchestrator(settings)
        await second.startup(maintenance=False)
        try:
            restored = second.store.get(1)
            assert restored.state == SessionState.RUNNING
            assert second.supervisor.get(restored.temp_dir).adopted is True
            result = await second.stop_app(1, pid, restored.temp_dir)
            assert result.status == StopStatus.STOPPED
            assert group_members(pid) == []
        finally:
            await second.shutdown()

    @pytest.mark.anyio
    async def test_adopted_app_exit_fails_session(self, settings, origin_repo) -> None:
        first = Orchestrator(settings)
        await first.startup(maintenance=False)
        session = await first.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        session = await first.start_app(1, session.temp_dir)
        pid = session.process_id
        await first.shutdown()

        second = Orchestrator(settings)
        await second.startup(maintenance=False)
        try:
            os.killpg(pid, signal.SIGKILL)
            assert await wait_until(lambda: second.store.get(1).state == SessionState.FAILED)
            assert "after the orchestrator restarted" in second.store.get(1).last_error
            assert group_members(pid) == []
        finally:
            await second.shutdown()

    @pytest.mark.anyio
    async def test_interrupted_clone_is_failed(self, settings) -> None:
        first = Orchestrator(settings)
        session = first.store.create(5, repo_url="/tmp/x", repo_name="x", branch="main")
        session.state = SessionState.CLONING
        first.store.update(session)
        first.store.close()

        second = Orchestrator(settings)
        await second.startup(maintenance=False)
        try:
            assert second.store.get(5).state == SessionState.FAILED
        finally:
            await second.shutdown()


class TestLowLevel:
    """Step-by-step repository operations advance an owning session."""

    @pytest.mark.anyio
    async def test_remote_and_fetch_advance_state(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        await orchestrator.setup_remote(session.temp_dir, "upstream", origin_repo)
        assert orchestrator.store.get(1).state == SessionState.REMOTE_READY
        await orchestrator.fetch_branch(session.temp_dir, "upstream", "main")
        assert orchestrator.store.get(1).state == SessionState.FETCHED
        assert _logs_contain(orchestrator, 1, "Fetched main from upstream")

    @pytest.mark.anyio
    async def test_git_failure_raises(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        with pytest.raises(GitOperationError):
            await orchestrator.fetch_branch(session.temp_dir, "origin", "missing-branch")
        assert orchestrator.store.get(1).state == SessionState.CHECKED_OUT

    @pytest.mark.anyio
    async def test_paths_confined_to_workspace_root(self, orchestrator, tmp_path) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.create_directory(str(tmp_path / "outside"))
        with pytest.raises(ValidationError):
            await orchestrator.checkout_branch("/etc", "main")

    @pytest.mark.anyio
    async def test_create_directory_inside_root(self, orchestrator, settings) -> None:
        target = os.path.join(settings.workspace_root(), "manual", "dir")
        result = await orchestrator.create_directory(target)
        assert result.success
        assert os.path.isdir(target)

    @pytest.mark.anyio
    async def test_run_command_logs_to_owner(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        result = await orchestrator.run_command("git status --short", session.temp_dir)
        assert result.ok
        assert _logs_contain(orchestrator, 1, "$ git status --short (exit code 0)")

    @pytest.mark.anyio
    async def test_run_command_without_directory_uses_workspace_root(self, orchestrator, settings) -> None:
        result = await orchestrator.run_command("pwd")
        assert result.stdout.strip() == os.path.realpath(settings.workspace_root())


class TestSupplemental:
    @pytest.mark.anyio
    async def test_unknown_pr_logs_are_empty(self, orchestrator) -> None:
        assert orchestrator.get_setup_logs(404) == []

    @pytest.mark.anyio
    async def test_add_log(self, orchestrator, origin_repo) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.add_log(1, "hello")
        await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        await orchestrator.add_log(1, "client says hello")
        assert _logs_contain(orchestrator, 1, "client says hello")

    @pytest.mark.anyio
    async def test_active_sessions_and_server_info(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        with pytest.raises(NotFoundError):
            await orchestrator.server_info(1)
        session = await orchestrator.start_app(1, session.temp_dir)
        active = await orchestrator.active_sessions()
        assert [s.pr_number for s in active] == [1]
        info = await orchestrator.server_info(1)
        assert info.port == session.port

    @pytest.mark.anyio
    async def test_cleanup_and_reap(self, orchestrator, origin_repo) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        with pytest.raises(ConflictError):
            await orchestrator.reap(1)
        data = await orchestrator.cleanup_workspace(1, session.temp_dir)
        assert data["removed"]
        assert not os.path.exists(session.temp_dir)
        assert orchestrator.store.get(1).state == SessionState.FAILED
        await orchestrator.reap(1)
        assert orchestrator.store.get(1) is None
        with pytest.raises(NotFoundError):
            await orchestrator.reap(1)

    @pytest.mark.anyio
    async def test_copy_to_workspace(self, orchestrator, origin_repo, tmp_path) -> None:
        session = await orchestrator.clone_pr(1, PR_BRANCH, origin_repo, "acme/app")
        os.makedirs(os.path.join(session.temp_dir, "node_modules", "dep"))
        dest = tmp_path / "main-checkout"
        dest.mkdir()
        await orchestrator.copy_to_workspace(session.temp_dir, str(dest))
        assert (dest / "server.py").exists()
        assert not (dest / ".git").exists()
        assert not (dest / "node_modules").exists()

    def test_check_directory(self, origin_repo, tmp_path, settings) -> None:
        orch = Orchestrator(settings)
        try:
            assert orch.check_directory(origin_repo)["isGit"] is True
            missing = orch.check_directory(str(tmp_path / "missing"))
            assert missing["exists"] is False and missing["isGit"] is False
        finally:
            orch.store.close()
