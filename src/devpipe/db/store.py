"""Durable worker state: projects.json with a lock file and atomic writes."""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path

from devpipe.core.errors import (
    ProjectNotFoundError,
    SlotConflictError,
    StateLockTimeout,
    StateStoreError,
    ValidationError,
)
from devpipe.db.migrations import migrate_document, slugify
from devpipe.db.models import Channel, Project, ProjectsData, RoleWorkerState, Slot
from devpipe.db.slots import (
    empty_role_worker_state,
    find_free_slot,
    find_slot_by_issue,
    reconcile_slots,
)

logger = logging.getLogger(__name__)

STATE_FILE = "projects.json"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _merge_slot_fields(slot: Slot, fields: dict) -> None:
    merged = slot.to_dict()
    merged.update(fields)
    replacement = Slot.from_dict(merged)
    for attr in vars(replacement):
        setattr(slot, attr, getattr(replacement, attr))


class WorkerStateStore:
    """Single-document store for projects and their worker slots.

    Every mutation runs inside ``transaction()``, which holds the workspace
    lock across the whole read-modify-write.
    """

    def __init__(
        self,
        workspace_dir: Path,
        lock_timeout: float = 10.0,
        lock_stale: float = 30.0,
        lock_retry: float = 0.05,
    ):
        self.workspace_dir = Path(workspace_dir)
        self.lock_timeout = lock_timeout
        self.lock_stale = lock_stale
        self.lock_retry = lock_retry

    @property
    def path(self) -> Path:
        return self.workspace_dir / STATE_FILE

    @property
    def lock_path(self) -> Path:
        return self.workspace_dir / f"{STATE_FILE}.lock"

    # ── Locking ─────────────────────────────────────────────────────────────

    def _lock_age(self) -> float | None:
        """Seconds since the current lock was taken, None if there is no lock."""
        try:
            content = self.lock_path.read_text().strip()
            mtime = self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return None
        try:
            taken = int(content.split()[0]) / 1000
        except (ValueError, IndexError):
            taken = mtime
        return time.time() - taken

    def _release(self, token: str) -> None:
        """Remove the lock file only while it still carries our token."""
        try:
            current = self.lock_path.read_text().strip()
        except FileNotFoundError:
            return
        if current != token:
            logger.warning("Lock %s was taken over by another holder; leaving it", self.lock_path)
            return
        with suppress(FileNotFoundError):
            os.unlink(self.lock_path)

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the workspace lock, stealing it when its holder looks dead.

        The lock file holds ``<epoch ms> <pid> <nonce>``. Release only removes
        the file while it still holds that token.
        """
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                age = self._lock_age()
                if age is not None and age > self.lock_stale:
                    logger.warning("Stealing stale lock %s (age %.1fs)", self.lock_path, age)
                    with suppress(FileNotFoundError):
                        os.unlink(self.lock_path)
                    continue
                if time.monotonic() >= deadline:
                    raise StateLockTimeout(
                        f"Could not acquire {self.lock_path} within {self.lock_timeout}s"
                    )
                time.sleep(self.lock_retry)
                continue
            token = f"{int(time.time() * 1000)} {os.getpid()} {uuid.uuid4().hex}"
            with os.fdopen(fd, "w") as f:
                f.write(token)
            break

        try:
            yield
        finally:
            self._release(token)

    # ── Read / write ────────────────────────────────────────────────────────

    def read_raw(self) -> dict:
        if not self.path.exists():
            return {"projects": {}}
        try:
            return json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Corrupt state file {self.path}: {e}") from e

    def read(self) -> ProjectsData:
        """Parse the document, migrating older shapes in memory."""
        document, _ = migrate_document(self.read_raw())
        return ProjectsData.from_dict(document)

    def write(self, data: ProjectsData) -> None:
        """Write via a temporary file and rename so readers never see a partial file."""
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{STATE_FILE}.tmp")
        with open(tmp, "w") as f:
            json.dump(data.to_dict(), f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    @contextmanager
    def transaction(self) -> Iterator[ProjectsData]:
        with self.lock():
            data = self.read()
            yield data
            self.write(data)

    def migrate(self) -> bool:
        """Persist the current shape if the file on disk is an older one."""
        with self.lock():
            if not self.path.exists():
                return False
            document, changed = migrate_document(self.read_raw())
            if changed:
                self.write(ProjectsData.from_dict(document))
                logger.info("Migrated %s to the current schema", self.path)
            return changed

    # ── Projects ────────────────────────────────────────────────────────────

    @staticmethod
    def resolve(data: ProjectsData, slug_or_channel: str) -> Project:
        if slug_or_channel in data.projects:
            return data.projects[slug_or_channel]
        for project in data.projects.values():
            if any(c.channel_id == str(slug_or_channel) for c in project.channels):
                return project
        raise ProjectNotFoundError(f"Project not found: {slug_or_channel}")

    def get_project(self, slug_or_channel: str) -> Project:
        return self.resolve(self.read(), slug_or_channel)

    def list_projects(self) -> list[Project]:
        return list(self.read().projects.values())

    def register_project(
        self,
        name: str,
        repo: str,
        desired_slots: dict[str, dict[str, int]],
        slug: str | None = None,
        base_branch: str = "main",
        repo_remote: str | None = None,
        provider: str | None = None,
        channel_id: str | None = None,
        channel: str = "slack",
    ) -> Project:
        slug = slug or slugify(name)
        with self.transaction() as data:
            if slug in data.projects:
                raise ValidationError(f"Project already registered: {slug}")
            project = Project(
                slug=slug,
                name=name,
                repo=repo,
                base_branch=base_branch,
                repo_remote=repo_remote,
                provider=provider,
                channels=[Channel(channel_id=channel_id, channel=channel)] if channel_id else [],
                workers={role: empty_role_worker_state(d) for role, d in desired_slots.items()},
            )
            data.projects[slug] = project
        logger.info("Registered project %s (%s)", slug, repo)
        return project

    # ── Worker state ────────────────────────────────────────────────────────

    def get_worker_state(self, slug: str, role: str) -> RoleWorkerState:
        project = self.get_project(slug)
        return project.workers.get(role, RoleWorkerState())

    def update(self, slug: str, role: str, partial: dict) -> RoleWorkerState:
        """Deep-merge a partial worker update.

        ``partial["levels"]`` maps level -> {slot index: fields} (or a list of
        field dicts); only the named levels, slots and fields are touched.
        """
        with self.transaction() as data:
            project = self.resolve(data, slug)
            state = project.workers.setdefault(role, RoleWorkerState())
            for level, slot_updates in (partial.get("levels") or {}).items():
                if isinstance(slot_updates, list):
                    slot_updates = dict(enumerate(slot_updates))
                slots = state.levels.setdefault(level, [])
                for index, fields in slot_updates.items():
                    index = int(index)
                    while len(slots) <= index:
                        slots.append(Slot())
                    _merge_slot_fields(slots[index], fields or {})
            return state

    def activate(
        self,
        slug: str,
        role: str,
        issue_id: str,
        level: str,
        session_key: str | None = None,
        start_time: str | None = None,
        previous_label: str | None = None,
        slot_index: int | None = None,
        name: str | None = None,
    ) -> tuple[int, Slot]:
        """Mark a slot active for an issue. Returns (slot index, slot).

        ``session_key`` is written only when given; otherwise the slot keeps
        whatever key it already holds.
        """
        issue_id = str(issue_id)
        with self.transaction() as data:
            project = self.resolve(data, slug)
            for other_role, other_state in project.workers.items():
                found = find_slot_by_issue(other_state, issue_id)
                if found and (other_role, found[0]) != (role, level):
                    raise SlotConflictError(
                        f"Issue {issue_id} is already active in {other_role}/{found[0]}#{found[1]}"
                    )
                if found and slot_index is not None and found[1] != slot_index:
                    raise SlotConflictError(
                        f"Issue {issue_id} is already active in {role}/{level}#{found[1]}"
                    )

            state = project.workers.setdefault(role, RoleWorkerState())
            slots = state.levels.setdefault(level, [])
            if slot_index is None:
                found = find_slot_by_issue(state, issue_id)
                slot_index = found[1] if found else find_free_slot(state, level)
                if slot_index is None:
                    slot_index = len(slots)
            while len(slots) <= slot_index:
                slots.append(Slot())

            slot = slots[slot_index]
            if slot.active and slot.issue_id != issue_id:
                raise SlotConflictError(
                    f"Slot {role}/{level}#{slot_index} is already busy with issue {slot.issue_id}"
                )

            slot.active = True
            slot.issue_id = issue_id
            slot.start_time = start_time or utc_now_iso()
            slot.previous_label = previous_label
            slot.task_count += 1
            if session_key is not None:
                slot.session_key = session_key
            if name is not None:
                slot.name = name
            logger.info("Activated %s/%s/%s#%d for issue %s", slug, role, level, slot_index, issue_id)
            return slot_index, slot

    def deactivate(
        self,
        slug: str,
        role: str,
        level: str | None = None,
        slot_index: int | None = None,
        issue_id: str | None = None,
    ) -> bool:
        """Free a slot, located by (level, index) or by issue id.

        When both a position and ``issue_id`` are given, the slot is only freed
        if it still holds that issue. The session key and slot name are kept.
        Returns False when the slot was already inactive, could not be found,
        or has moved on to another issue.
        """
        with self.transaction() as data:
            project = self.resolve(data, slug)
            state = project.workers.get(role)
            if state is None:
                return False
            if issue_id is not None and (level is None or slot_index is None):
                found = find_slot_by_issue(state, str(issue_id))
                if found is None:
                    return False
                level, slot_index = found
            if level is None or slot_index is None:
                return False
            slots = state.levels.get(level, [])
            if slot_index >= len(slots) or not slots[slot_index].active:
                return False

            slot = slots[slot_index]
            if issue_id is not None and slot.issue_id != str(issue_id):
                logger.info(
                    "Not releasing %s/%s/%s#%d: it now holds issue %s, not %s",
                    slug, role, level, slot_index, slot.issue_id, issue_id,
                )
                return False
            slot.active = False
            slot.issue_id = None
            slot.start_time = None
            slot.previous_label = None
            logger.info("Deactivated %s/%s/%s#%d", slug, role, level, slot_index)
            return True

    def clear_issue_id(self, slug: str, role: str, level: str, slot_index: int) -> bool:
        """Drop a leftover issue id from an inactive slot."""
        with self.transaction() as data:
            state = self.resolve(data, slug).workers.get(role)
            slots = state.levels.get(level, []) if state else []
            if slot_index >= len(slots) or slots[slot_index].active or not slots[slot_index].issue_id:
                return False
            slots[slot_index].issue_id = None
            return True

    def reconcile(self, slug: str, role: str, desired: dict[str, int]) -> bool:
        with self.transaction() as data:
            project = self.resolve(data, slug)
            state = project.workers.setdefault(role, RoleWorkerState())
            return reconcile_slots(state, desired)
