"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _default_workspace() -> Path:
    return Path.home() / ".devpipe"


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    workspace_dir: Path = field(default_factory=_default_workspace)
    db_path: Path | None = None
    agent_id: str = "devpipe"
    workflow_path: Path | None = None
    slack_bot_token: str | None = None
    stale_worker_hours: float = 2.0
    dispatch_timeout: float = 600.0
    git_pull_timeout: float = 30.0
    lock_timeout: float = 10.0
    lock_stale: float = 30.0
    lock_retry: float = 0.05
    heartbeat_interval: float = 60.0
    sync_delivery: bool = False
    auto_tick: bool = True
    tracker_factory: str | None = None
    runtime_factory: str | None = None
    log_level: str = "INFO"

    @property
    def audit_db_path(self) -> Path:
        return self.db_path or self.workspace_dir / "audit.db"

    @classmethod
    def from_env(cls) -> "Config":
        values: dict = {}

        if workspace := os.environ.get("DEVPIPE_WORKSPACE"):
            values["workspace_dir"] = Path(workspace).expanduser()

        if db := os.environ.get("DEVPIPE_DB_PATH"):
            values["db_path"] = Path(db).expanduser()

        if agent_id := os.environ.get("DEVPIPE_AGENT_ID"):
            values["agent_id"] = agent_id

        if workflow := os.environ.get("DEVPIPE_WORKFLOW"):
            values["workflow_path"] = Path(workflow).expanduser()

        values["slack_bot_token"] = os.environ.get("SLACK_BOT_TOKEN")

        for env_name, attr in (
            ("DEVPIPE_STALE_WORKER_HOURS", "stale_worker_hours"),
            ("DEVPIPE_DISPATCH_TIMEOUT", "dispatch_timeout"),
            ("DEVPIPE_GIT_PULL_TIMEOUT", "git_pull_timeout"),
            ("DEVPIPE_LOCK_TIMEOUT", "lock_timeout"),
            ("DEVPIPE_LOCK_STALE", "lock_stale"),
            ("DEVPIPE_HEARTBEAT_INTERVAL", "heartbeat_interval"),
        ):
            if raw := os.environ.get(env_name):
                values[attr] = float(raw)

        if sync := os.environ.get("DEVPIPE_SYNC_DELIVERY"):
            values["sync_delivery"] = _truthy(sync)

        if auto_tick := os.environ.get("DEVPIPE_AUTO_TICK"):
            values["auto_tick"] = _truthy(auto_tick)

        if tracker := os.environ.get("DEVPIPE_TRACKER"):
            values["tracker_factory"] = tracker

        if runtime := os.environ.get("DEVPIPE_RUNTIME"):
            values["runtime_factory"] = runtime

        if level := os.environ.get("DEVPIPE_LOG_LEVEL"):
            values["log_level"] = level.upper()

        return cls(**values)


def get_config() -> Config:
    return Config.from_env()
