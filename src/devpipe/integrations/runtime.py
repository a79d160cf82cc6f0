"""Session runtime collaborator and a binding that runs Claude CLI processes."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = uuid.UUID("6f1c2b1e-8a52-4b7e-9a0e-3d3f5c1d2e47")


class SessionError(Exception):
    """Raised when a session cannot be created or a task cannot be delivered."""


class SessionRuntime(ABC):
    """Operations the engine needs from whatever hosts worker sessions."""

    @abstractmethod
    def ensure_session(self, session_key: str, model: str, label: str | None = None) -> None:
        """Create or update a session. Idempotent."""

    @abstractmethod
    def deliver_task(self, session_key: str, message: str, idempotency_key: str, timeout: float) -> None:
        """Hand a task to a session. A repeated idempotency key is a no-op."""

    @abstractmethod
    def list_alive_sessions(self) -> set[str] | None:
        """Session keys known to be alive, or None when liveness is unknown."""


def session_uuid(session_key: str) -> str:
    return str(uuid.uuid5(SESSION_NAMESPACE, session_key))


def _is_pid_alive(pid: int | None) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


class ClaudeCliRuntime(SessionRuntime):
    """Runs one ``claude -p`` process per delivered task.

    Each session key maps to a stable Claude session id, so later tasks resume
    the same conversation. Session records (pid, model) live under
    ``output_dir/sessions`` so liveness survives a restart of the orchestrator.
    """

    def __init__(
        self,
        output_dir: Path,
        cwd: str | Path | None = None,
        permission_mode: str = "acceptEdits",
        mcp_config_path: str | None = None,
    ):
        self.output_dir = Path(output_dir)
        self.cwd = cwd
        self.permission_mode = permission_mode
        self.mcp_config_path = mcp_config_path
        self._lock = threading.Lock()
        self._delivered: set[str] = set()
        self._processes: dict[str, subprocess.Popen] = {}

    @property
    def sessions_dir(self) -> Path:
        return self.output_dir / "sessions"

    def _record_path(self, session_key: str) -> Path:
        return self.sessions_dir / f"{session_uuid(session_key)}.json"

    def _read_record(self, session_key: str) -> dict:
        path = self._record_path(session_key)
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Unreadable session record %s", path)
            return {}

    def _write_record(self, session_key: str, record: dict) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self._record_path(session_key).write_text(json.dumps(record, indent=2))

    def ensure_session(self, session_key, model, label=None):
        with self._lock:
            record = self._read_record(session_key)
            record.update(sessionKey=session_key, model=model, label=label)
            record.setdefault("sessionId", session_uuid(session_key))
            record.setdefault("started", False)
            self._write_record(session_key, record)

    def deliver_task(self, session_key, message, idempotency_key, timeout):
        with self._lock:
            if idempotency_key in self._delivered:
                logger.info("Skipping duplicate delivery %s", idempotency_key)
                return
            record = self._read_record(session_key)
            if not record:
                raise SessionError(f"Session not created: {session_key}")

            cmd = ["claude", "-p", message, "--output-format", "json"]
            if record.get("model"):
                cmd += ["--model", record["model"]]
            if record.get("started"):
                cmd += ["--resume", record["sessionId"]]
            else:
                cmd += ["--session-id", record["sessionId"]]
            if self.permission_mode:
                cmd += ["--permission-mode", self.permission_mode]
            if self.mcp_config_path:
                cmd += ["--mcp-config", self.mcp_config_path]

            self.output_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
            output_file = self.output_dir / f"session-{record['sessionId']}-{timestamp}.json"
            try:
                with open(output_file, "w") as f:
                    proc = subprocess.Popen(
                        cmd,
                        cwd=self.cwd,
                        stdout=f,
                        stderr=subprocess.STDOUT,
                    )
            except OSError as e:
                raise SessionError(f"Failed to start claude for {session_key}: {e}") from e

            self._processes[session_key] = proc
            self._delivered.add(idempotency_key)
            record.update(
                started=True,
                pid=proc.pid,
                outputFile=str(output_file),
                deliveredAt=datetime.now(timezone.utc).isoformat(),
                timeout=timeout,
            )
            self._write_record(session_key, record)
            logger.info("Delivered task to %s (PID %d)", session_key, proc.pid)

    def list_alive_sessions(self):
        if not self.sessions_dir.exists():
            return set()
        alive: set[str] = set()
        for path in self.sessions_dir.glob("*.json"):
            try:
                record = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError):
                continue
            key = record.get("sessionKey")
            proc = self._processes.get(key)
            if proc is not None:
                if proc.poll() is None:
                    alive.add(key)
            elif _is_pid_alive(record.get("pid")):
                alive.add(key)
        return alive
