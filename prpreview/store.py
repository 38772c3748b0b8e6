"""Session registry: PR sessions, their logs, workspaces and ports."""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import socket
import tempfile
from datetime import datetime, timedelta, timezone

import structlog

from prpreview.db import Database
from prpreview.errors import ConflictError
from prpreview.log_redaction import redact_text
from prpreview.logbuffer import LogBuffer
from prpreview.models import LogEntry, PRSession, PROCESS_STATES, SessionState
from prpreview.settings import Settings

logger = structlog.get_logger("prpreview.store")

_LOG_ROTATE_BYTES = 5_000_000
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def now() -> str:
    """Return an ISO8601 UTC timestamp suitable for API payloads."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def _slug(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-")[:40]


class SessionStore:
    """PR sessions keyed by PR number, with per-key locks and capped logs.

    Mutations that span several awaits must run under :meth:`lock` for their
    PR number; plain reads (``get``, ``get_logs``) never take it.
    """

    def __init__(self, config: Settings, *, persist: bool = True) -> None:
        self._config = config
        self._data_dir = config.data_dir()
        self._workspace_root = config.workspace_root()
        self._max_lines = config.log_max_lines()
        os.makedirs(os.path.join(self._data_dir, "sessions"), exist_ok=True)
        self._db = Database(self._data_dir) if persist else None
        self._sessions: dict[int, PRSession] = {}
        self._logs: dict[int, LogBuffer] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._subscribers: dict[int, list[asyncio.Queue]] = {}
        self._workspaces: set[str] = set()
        self._load_sessions()

    def _load_sessions(self) -> None:
        if self._db is None:
            return
        for session in self._db.load_all():
            self._sessions[session.pr_number] = session
            self._logs[session.pr_number] = LogBuffer(
                self._max_lines, self._read_log_file(session.pr_number)
            )
            if session.temp_dir:
                self._workspaces.add(session.temp_dir)
        if self._sessions:
            logger.info("Loaded persisted sessions", count=len(self._sessions))

    def close(self) -> None:
        if self._db is not None:
            self._db.dispose()

    # --- sessions ---

    def lock(self, pr_number: int) -> asyncio.Lock:
        """Return the mutual-exclusion lock for one PR number."""
        lock = self._locks.get(pr_number)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[pr_number] = lock
        return lock

    def create(self, pr_number: int, *, repo_url: str, repo_name: str, branch: str) -> PRSession:
        """Register a fresh session in CREATED state, replacing a terminal one.

        Raises:
            ConflictError: An active session already exists for ``pr_number``.
        """
        existing = self._sessions.get(pr_number)
        if existing is not None and not existing.is_terminal:
            raise ConflictError(
                f"PR #{pr_number} already has an active session ({existing.state.value})"
            )
        stamp = now()
        session = PRSession(
            pr_number=pr_number,
            repo_url=redact_text(repo_url),
            repo_name=repo_name,
            branch=branch,
            state=SessionState.CREATED,
            created_at=stamp,
            updated_at=stamp,
        )
        self._sessions[pr_number] = session
        self._logs[pr_number] = LogBuffer(self._max_lines)
        self._rotate_log_file(pr_number, force=True)
        _rotate(self.process_log_path(pr_number), force=True)
        self._persist(session)
        return session

    def get(self, pr_number: int) -> PRSession | None:
        return self._sessions.get(pr_number)

    def list_sessions(self) -> list[PRSession]:
        return sorted(self._sessions.values(), key=lambda s: s.pr_number)

    def find_by_workspace(self, temp_dir: str) -> PRSession | None:
        """Return the session that owns ``temp_dir``, if any."""
        target = os.path.realpath(temp_dir)
        for session in self._sessions.values():
            if session.temp_dir and os.path.realpath(session.temp_dir) == target:
                return session
        return None

    def update(self, session: PRSession) -> None:
        """Persist an updated session snapshot."""
        session.updated_at = now()
        self._sessions[session.pr_number] = session
        self._persist(session)

    def remove(self, pr_number: int) -> bool:
        """Drop a terminal session's bookkeeping; its workspace stays on disk.

        Raises:
            ConflictError: The session is not terminal.
        """
        session = self._sessions.get(pr_number)
        if session is None:
            return False
        if not session.is_terminal:
            raise ConflictError(f"PR #{pr_number} session is {session.state.value}; stop it first")
        self._sessions.pop(pr_number, None)
        self._logs.pop(pr_number, None)
        self._subscribers.pop(pr_number, None)
        lock = self._locks.get(pr_number)
        if lock is not None and not lock.locked():
            self._locks.pop(pr_number, None)
        if self._db is not None:
            self._db.delete(pr_number)
        shutil.rmtree(self._session_dir(pr_number), ignore_errors=True)
        logger.info("Session removed", pr_number=pr_number)
        return True

    def prune(self, retention_days: int) -> list[int]:
        """Remove terminal sessions that ended before the retention window."""
        if retention_days <= 0:
            return []
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        removed: list[int] = []
        for session in list(self._sessions.values()):
            if not session.is_terminal:
                continue
            ts = session.ended_at or session.updated_at
            try:
                when = parse_ts(ts)
            except ValueError:
                continue
            if when < cutoff and self.remove(session.pr_number):
                removed.append(session.pr_number)
        return removed

    def _persist(self, session: PRSession) -> None:
        if self._db is not None:
            self._db.save(session)

    # --- workspaces and ports ---

    def allocate_workspace(self, pr_number: int, repo_name: str) -> str:
        """Create a brand-new, never-before-used workspace directory."""
        os.makedirs(self._workspace_root, exist_ok=True)
        prefix = f"pr-{pr_number}-"
        slug = _slug(repo_name)
        if slug:
            prefix += f"{slug}-"
        path = os.path.realpath(tempfile.mkdtemp(prefix=prefix, dir=self._workspace_root))
        if path in self._workspaces:
            raise ConflictError(f"workspace collision at {path}")
        self._workspaces.add(path)
        return path

    def allocate_port(self) -> int:
        """Lowest free port at or above the base port not held by a live session."""
        held = {
            s.port
            for s in self._sessions.values()
            if s.port is not None and (s.state in PROCESS_STATES or s.state == SessionState.STARTING)
        }
        port = self._config.base_app_port()
        while port in held or not _port_available(port):
            port += 1
        return port

    def workspace_root(self) -> str:
        return self._workspace_root

    # --- logs ---

    def append_log(self, pr_number: int, text: str) -> LogEntry | None:
        """Append one line to a session's log; ignored for unknown sessions."""
        buffer = self._logs.get(pr_number)
        if buffer is None:
            return None
        entry = buffer.append(redact_text(text.rstrip("\r\n")))
        self._append_log_file(pr_number, entry)
        for queue in list(self._subscribers.get(pr_number, [])):
            queue.put_nowait(entry)
        return entry

    def get_logs(self, pr_number: int) -> list[str]:
        """Snapshot of a session's rendered log lines; empty when unknown."""
        buffer = self._logs.get(pr_number)
        return buffer.lines() if buffer is not None else []

    def new_subscriber(self, pr_number: int) -> asyncio.Queue:
        """Register a queue that receives every subsequent log entry."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(pr_number, []).append(queue)
        logger.debug(
            "New log subscriber",
            pr_number=pr_number,
            total_subscribers=len(self._subscribers[pr_number]),
        )
        return queue

    def remove_subscriber(self, pr_number: int, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(pr_number, [])
        if queue in queues:
            queues.remove(queue)

    def has_subscribers(self, pr_number: int) -> bool:
        return bool(self._subscribers.get(pr_number))

    def process_log_path(self, pr_number: int) -> str:
        """Capture file the app process writes its stdout and stderr to."""
        return os.path.join(self._session_dir(pr_number), "process.log")

    def rotate_process_log(self, pr_number: int) -> str:
        """Rotate an oversized capture file; call only while no app writes to it."""
        path = self.process_log_path(pr_number)
        _rotate(path)
        return path

    def _session_dir(self, pr_number: int) -> str:
        return os.path.join(self._data_dir, "sessions", f"pr-{pr_number}")

    def _log_path(self, pr_number: int) -> str:
        return os.path.join(self._session_dir(pr_number), "setup.jsonl")

    def _rotate_log_file(self, pr_number: int, *, force: bool = False) -> None:
        _rotate(self._log_path(pr_number), force=force)

    def _append_log_file(self, pr_number: int, entry: LogEntry) -> None:
        path = self._log_path(pr_number)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        self._rotate_log_file(pr_number)
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps({"ts": entry.timestamp, "text": entry.text}) + "\n")

    def _read_log_file(self, pr_number: int) -> list[LogEntry]:
        path = self._log_path(pr_number)
        if not os.path.exists(path):
            return []
        entries: list[LogEntry] = []
        try:
            with open(path, "r", encoding="utf-8") as handle:
                for line in handle:
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                        entries.append(LogEntry(timestamp=record["ts"], text=record["text"]))
                    except (json.JSONDecodeError, KeyError, TypeError):
                        continue
        except OSError:
            return []
        return entries[-self._max_lines:]


def _rotate(path: str, *, force: bool = False) -> None:
    try:
        if os.path.exists(path) and (force or os.path.getsize(path) > _LOG_ROTATE_BYTES):
            os.replace(path, f"{path}.1")
    except OSError:
        logger.warning("Log rotation failed", path=path)


def _port_available(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True
