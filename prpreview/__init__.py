"""PR preview orchestrator: per-PR workspaces, git setup and dev-server supervision."""

__version__ = "0.1.0"
