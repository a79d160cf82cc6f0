"""Heartbeat: periodic health, review and tick passes over every project."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from devpipe.core.context import EngineContext
from devpipe.core.health import check_project
from devpipe.core.queue import project_tick
from devpipe.core.review import review_pass

logger = logging.getLogger(__name__)

MAX_REVIEW_ROUNDS = 5


@dataclass
class ProjectBeat:
    project: str
    health_fixes: int = 0
    review_transitions: int = 0
    pickups: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "healthFixes": self.health_fixes,
            "reviewTransitions": self.review_transitions,
            "pickups": self.pickups,
            "error": self.error,
        }


@dataclass
class BeatResult:
    projects: list[ProjectBeat] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"projects": [p.to_dict() for p in self.projects]}


def beat_project(ctx: EngineContext, slug: str, dry_run: bool = False) -> ProjectBeat:
    out = ProjectBeat(project=slug)
    out.health_fixes = sum(1 for f in check_project(ctx, slug, auto_fix=not dry_run) if f.fixed)
    if not dry_run:
        # A review transition can land an issue in another review state.
        for _ in range(MAX_REVIEW_ROUNDS):
            moved = len(review_pass(ctx, slug))
            out.review_transitions += moved
            if not moved:
                break
    out.pickups = len(project_tick(ctx, slug, dry_run=dry_run).pickups)
    return out


def beat(ctx: EngineContext, slug: str | None = None, dry_run: bool = False) -> BeatResult:
    """One heartbeat over one project, or all of them. Errors stay with their project."""
    result = BeatResult()
    slugs = [slug] if slug else [p.slug for p in ctx.store.list_projects()]
    for s in slugs:
        try:
            result.projects.append(beat_project(ctx, s, dry_run=dry_run))
        except Exception as e:
            logger.exception("Heartbeat failed for project %s", s)
            result.projects.append(ProjectBeat(project=s, error=str(e)))
    return result


class Heartbeat:
    """Background thread that runs a heartbeat every ``interval`` seconds."""

    def __init__(self, ctx: EngineContext, interval: float | None = None):
        self.ctx = ctx
        self.interval = interval if interval is not None else ctx.config.heartbeat_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="devpipe-heartbeat", daemon=True)
        self._thread.start()
        logger.info("Heartbeat started (every %ss)", self.interval)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Heartbeat stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        while not self._stop_event.is_set():
            try:
                beat(self.ctx)
            except Exception:
                logger.exception("Error in heartbeat loop")
            self._stop_event.wait(self.interval)
