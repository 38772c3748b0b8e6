"""Environment-backed configuration.

Every accessor reads ``PRPREVIEW_<NAME>`` from the environment on each call,
so tests can patch the environment or pass explicit overrides to
:class:`Settings`.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

_PREFIX = "PRPREVIEW_"
_TRUE = {"1", "true", "yes", "on"}

CLONE_POLICIES = ("reject", "replace")


class Settings:
    """Typed accessors over ``PRPREVIEW_*`` environment variables."""

    def __init__(self, **overrides: object) -> None:
        self._overrides = {key.lower(): value for key, value in overrides.items()}

    def _raw(self, name: str) -> str | None:
        if name in self._overrides:
            value = self._overrides[name]
            return None if value is None else str(value)
        return os.environ.get(f"{_PREFIX}{name.upper()}")

    def _str(self, name: str, default: str) -> str:
        value = self._raw(name)
        return default if value is None else value.strip()

    def _int(self, name: str, default: int) -> int:
        value = self._raw(name)
        if value is None or not value.strip():
            return default
        return int(value)

    def _float(self, name: str, default: float) -> float:
        value = self._raw(name)
        if value is None or not value.strip():
            return default
        return float(value)

    def _bool(self, name: str, default: bool) -> bool:
        value = self._raw(name)
        if value is None or not value.strip():
            return default
        return value.strip().lower() in _TRUE

    def data_dir(self) -> str:
        """Directory for the session database, setup logs and process output."""
        default = os.path.join(Path.home(), ".local", "share", "prpreview")
        return os.path.abspath(os.path.expanduser(self._str("data_dir", default)))

    def workspace_root(self) -> str:
        """Parent directory under which PR workspaces are allocated."""
        default = os.path.join(tempfile.gettempdir(), "prpreview-workspaces")
        return os.path.abspath(os.path.expanduser(self._str("workspace_root", default)))

    def host(self) -> str:
        return self._str("host", "127.0.0.1")

    def port(self) -> int:
        return self._int("port", 8790)

    def token(self) -> str:
        """Bearer token required on API routes; empty disables auth."""
        return self._str("token", "")

    def start_command(self) -> str:
        """Command that launches the app under test inside its workspace."""
        return self._str("start_command", "npm run dev")

    def install_command(self) -> str:
        """Optional command run in the workspace before the app starts."""
        return self._str("install_command", "")

    def test_command(self) -> str:
        """Optional command run after checkout; its outcome is reported, never fatal."""
        return self._str("test_command", "")

    def base_app_port(self) -> int:
        return self._int("base_app_port", 5174)

    def git_timeout_s(self) -> float:
        return self._float("git_timeout_seconds", 300.0)

    def command_timeout_s(self) -> float:
        return self._float("command_timeout_seconds", 600.0)

    def stop_grace_s(self) -> float:
        return self._float("stop_grace_seconds", 5.0)

    def log_max_lines(self) -> int:
        return self._int("log_max_lines", 2000)

    def log_poll_s(self) -> float:
        return self._float("log_poll_seconds", 0.2)

    def clone_policy(self) -> str:
        """What to do when a clone targets a PR with an active session."""
        policy = self._str("clone_policy", "reject").lower()
        if policy not in CLONE_POLICIES:
            raise ValueError(f"Unknown clone policy: {policy}")
        return policy

    def restrict_paths(self) -> bool:
        """Confine low-level directory arguments to the workspace root."""
        return self._bool("restrict_paths", True)

    def session_retention_days(self) -> int:
        return self._int("session_retention_days", 7)

    def maintenance_interval_s(self) -> float:
        return self._float("maintenance_seconds", 60.0)

    def log_level(self) -> str:
        return self._str("log_level", "INFO").upper()

    def log_format(self) -> str:
        return self._str("log_format", "console").lower()


settings = Settings()
