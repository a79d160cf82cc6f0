"""SQLite audit log: connection management, schema and event appends."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from devpipe.db.models import AuditEvent

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event TEXT NOT NULL,
    project TEXT,
    issue_id TEXT,
    data TEXT DEFAULT '{}',
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_audit_events_project ON audit_events(project, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_events_event ON audit_events(event);
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _row_to_event(row: sqlite3.Row) -> AuditEvent:
    return AuditEvent(
        id=row["id"],
        event=row["event"],
        project=row["project"],
        issue_id=row["issue_id"],
        data=json.loads(row["data"] or "{}"),
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )


class AuditLog:
    """Append-only event log. Appending never raises."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def log(self, event: str, project: str | None = None, issue_id: str | int | None = None, **data) -> None:
        try:
            with get_db(self.db_path) as db:
                db.execute(
                    "INSERT INTO audit_events (event, project, issue_id, data) VALUES (?, ?, ?, ?)",
                    (
                        event,
                        project,
                        str(issue_id) if issue_id is not None else None,
                        json.dumps(data, default=str),
                    ),
                )
                db.commit()
        except (sqlite3.Error, OSError):
            logger.exception("Failed to append audit event %s", event)

    def recent(
        self,
        limit: int = 50,
        project: str | None = None,
        event: str | None = None,
    ) -> list[AuditEvent]:
        """Most recent events first, optionally filtered."""
        query = "SELECT * FROM audit_events WHERE 1=1"
        params: list = []
        if project:
            query += " AND project = ?"
            params.append(project)
        if event:
            query += " AND event = ?"
            params.append(event)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with get_db(self.db_path) as db:
            rows = db.execute(query, params).fetchall()
        return [_row_to_event(r) for r in rows]
