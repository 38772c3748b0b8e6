"""Git primitives for preparing PR workspaces.

Every operation validates its identifiers before touching the filesystem and
returns a :class:`~prpreview.models.GitResult` carrying the captured output of
the commands it ran. Nothing here retries.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import structlog

from prpreview.errors import ValidationError
from prpreview.log_redaction import redact_text
from prpreview.models import CommandResult, GitResult
from prpreview.runner import run_command

logger = structlog.get_logger("prpreview.git")

_REMOTE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_URL_SCHEME_RE = re.compile(r"^(https?|ssh|git|file)://[^\s]+$")
_SCP_URL_RE = re.compile(r"^[A-Za-z0-9._-]+@[A-Za-z0-9._-]+:[^\s]+$")
# Characters git refuses in ref names, plus whitespace and control chars.
_BAD_REF_CHARS_RE = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]")
_REPO_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+(/[A-Za-z0-9._-]+)?$")


def normalize_directory_path(path: str) -> str:
    """Expand ``~`` and return the absolute, symlink-resolved path."""
    return str(Path(path).expanduser().resolve())


def is_git_repository(path: str) -> bool:
    """Return True if ``path`` is the top of a git work tree."""
    return os.path.exists(os.path.join(path, ".git"))


def validate_branch_name(name: str, field: str = "branch") -> str:
    """Check ``name`` against git's ref-name rules.

    Raises:
        ValidationError: The name is empty or not a legal ref name.
    """
    if not name or not name.strip():
        raise ValidationError(f"{field} is required")
    name = name.strip()
    if (
        name.startswith(("-", "/", "."))
        or name.endswith(("/", ".", ".lock"))
        or ".." in name
        or "//" in name
        or "@{" in name
        or "/." in name
        or name == "@"
        or _BAD_REF_CHARS_RE.search(name)
    ):
        raise ValidationError(f"{field} is not a valid git ref name: {name!r}")
    return name


def validate_remote_name(name: str) -> str:
    if not name or not _REMOTE_NAME_RE.match(name.strip()):
        raise ValidationError(f"remote name is not valid: {name!r}")
    return name.strip()


def validate_repo_url(url: str, field: str = "repoUrl") -> str:
    """Accept http(s)/ssh/git/file URLs, scp-style ``user@host:path`` and absolute paths."""
    if not url or not url.strip():
        raise ValidationError(f"{field} is required")
    url = url.strip()
    if url.startswith("-"):
        raise ValidationError(f"{field} is not a valid repository URL")
    if _URL_SCHEME_RE.match(url) or _SCP_URL_RE.match(url):
        return url
    if os.path.isabs(url) and not re.search(r"\s", url):
        return url
    raise ValidationError(f"{field} is not a valid repository URL: {redact_text(url)!r}")


def validate_repo_name(name: str) -> str:
    if not name or not _REPO_NAME_RE.match(name.strip()):
        raise ValidationError(f"repoName is not valid: {name!r}")
    if any(part in (".", "..") for part in name.strip().split("/")):
        raise ValidationError(f"repoName is not valid: {name!r}")
    return name.strip()


def _require_absolute(path: str, field: str) -> str:
    if not path or not path.strip():
        raise ValidationError(f"{field} is required")
    if not os.path.isabs(path):
        raise ValidationError(f"{field} must be an absolute path")
    return os.path.normpath(path)


class RepositoryManager:
    """Thin, validated wrappers around the git CLI."""

    def __init__(self, timeout_s: float | None = 300.0) -> None:
        self._timeout_s = timeout_s

    async def _git(self, args: list[str], cwd: str | None) -> CommandResult:
        result = await run_command(["git", *args], cwd, timeout=self._timeout_s)
        if not result.ok:
            logger.warning(
                "Git command failed",
                args=args,
                exit_code=result.exit_code,
                stderr=result.output(),
            )
        return result

    def _result(self, operation: str, commands: list[CommandResult], ok_message: str) -> GitResult:
        failed = next((c for c in commands if not c.ok), None)
        if failed is None:
            return GitResult(success=True, operation=operation, message=ok_message, commands=commands)
        detail = redact_text(failed.output()) or f"exit code {failed.exit_code}"
        return GitResult(
            success=False,
            operation=operation,
            message=f"git {failed.command[1]} failed: {detail}",
            commands=commands,
        )

    async def create_directory(self, path: str) -> GitResult:
        """Create ``path`` and any missing parents; idempotent for directories."""
        path = _require_absolute(path, "path")
        if os.path.exists(path) and not os.path.isdir(path):
            return GitResult(
                success=False,
                operation="create_directory",
                message=f"path exists and is not a directory: {path}",
            )
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as exc:
            return GitResult(
                success=False,
                operation="create_directory",
                message=f"could not create {path}: {exc.strerror or exc}",
            )
        logger.info("Directory ready", path=path)
        return GitResult(success=True, operation="create_directory", message=f"Created directory {path}")

    async def clone_repository(
        self, repo_url: str, destination: str, branch: str | None = None
    ) -> GitResult:
        """Clone ``repo_url`` into ``destination``.

        When ``branch`` is given only that branch is cloned, so the PR head is
        checked out without transferring the default branch first.
        """
        repo_url = validate_repo_url(repo_url)
        destination = _require_absolute(destination, "destination")
        args = ["clone"]
        if branch:
            args += ["--branch", validate_branch_name(branch), "--single-branch"]
        args += ["--", repo_url, destination]
        logger.info("Cloning repository", repo_url=repo_url, destination=destination, branch=branch)
        result = await self._git(args, None)
        return self._result("clone_repository", [result], f"Cloned into {destination}")

    async def checkout_branch(
        self, directory: str, branch_name: str, start_point: str | None = None
    ) -> GitResult:
        """Switch to ``branch_name``, creating it when it does not exist yet.

        A missing branch is created from ``start_point`` when one is given,
        otherwise from the matching remote-tracking branch or ``HEAD``.
        """
        directory = _require_absolute(directory, "directory")
        branch_name = validate_branch_name(branch_name, "branchName")
        if start_point:
            start_point = validate_branch_name(start_point, "startPoint")
        if not os.path.isdir(directory) or not is_git_repository(directory):
            return GitResult(
                success=False,
                operation="checkout_branch",
                message=f"not a git repository: {directory}",
            )

        exists = await self._git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"], directory
        )
        if exists.ok:
            commands = [await self._git(["checkout", branch_name, "--"], directory)]
        elif start_point:
            commands = [await self._git(["checkout", "-b", branch_name, start_point, "--"], directory)]
        else:
            first = await self._git(["checkout", branch_name, "--"], directory)
            commands = [first]
            if not first.ok:
                commands = [await self._git(["checkout", "-b", branch_name, "--"], directory)]
        return self._result("checkout_branch", commands, f"Checked out branch {branch_name}")

    async def setup_remote(self, directory: str, remote_name: str, remote_url: str) -> GitResult:
        """Add ``remote_name`` or repoint it at ``remote_url`` if it already exists."""
        directory = _require_absolute(directory, "directory")
        remote_name = validate_remote_name(remote_name)
        remote_url = validate_repo_url(remote_url, "remoteUrl")
        if not os.path.isdir(directory) or not is_git_repository(directory):
            return GitResult(
                success=False, operation="setup_remote", message=f"not a git repository: {directory}"
            )

        listing = await self._git(["remote"], directory)
        if not listing.ok:
            return self._result("setup_remote", [listing], "")
        if remote_name in listing.stdout.split():
            update = await self._git(["remote", "set-url", remote_name, remote_url], directory)
            return self._result("setup_remote", [listing, update], f"Updated remote {remote_name}")
        add = await self._git(["remote", "add", remote_name, remote_url], directory)
        return self._result("setup_remote", [listing, add], f"Added remote {remote_name}")

    async def fetch_branch(self, directory: str, remote_name: str, branch_name: str) -> GitResult:
        """Fetch exactly ``branch_name`` from ``remote_name`` into its tracking ref."""
        directory = _require_absolute(directory, "directory")
        remote_name = validate_remote_name(remote_name)
        branch_name = validate_branch_name(branch_name, "branchName")
        if not os.path.isdir(directory) or not is_git_repository(directory):
            return GitResult(
                success=False, operation="fetch_branch", message=f"not a git repository: {directory}"
            )
        refspec = f"+refs/heads/{branch_name}:refs/remotes/{remote_name}/{branch_name}"
        result = await self._git(["fetch", remote_name, refspec], directory)
        return self._result(
            "fetch_branch", [result], f"Fetched {branch_name} from {remote_name}"
        )
