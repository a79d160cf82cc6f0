"""Project registration and read-only status views."""

from __future__ import annotations

import logging

from devpipe.core.context import EngineContext
from devpipe.core.results import Advisory, best_effort
from devpipe.db.models import Project
from devpipe.integrations import git as git_mod

logger = logging.getLogger(__name__)


def ensure_workflow_labels(ctx: EngineContext, project: Project) -> list[Advisory]:
    """Create every state label of the workflow in the project's tracker."""
    advisories: list[Advisory] = []
    tracker = best_effort(advisories, "tracker", ctx.tracker_for, project)
    if tracker is None:
        return advisories
    for label, color in ctx.workflow.label_colors().items():
        best_effort(advisories, f"ensure_label:{label}", tracker.ensure_label, label, color)
    return advisories


def register_project(
    ctx: EngineContext,
    name: str,
    repo: str,
    slug: str | None = None,
    base_branch: str = "main",
    channel_id: str | None = None,
    channel: str = "slack",
    provider: str | None = None,
    create_labels: bool = True,
) -> tuple[Project, list[Advisory]]:
    """Register a project with one idle slot array per role and level.

    Tracker label creation is best-effort; problems come back as advisories.
    """
    advisories: list[Advisory] = []
    repo_remote = git_mod.remote_url(repo) if repo else None
    desired = {role: ctx.roles.desired_slots(role) for role in ctx.roles.ids()}
    project = ctx.store.register_project(
        name,
        repo,
        desired,
        slug=slug,
        base_branch=base_branch,
        repo_remote=repo_remote,
        provider=provider,
        channel_id=channel_id,
        channel=channel,
    )
    if create_labels:
        advisories.extend(ensure_workflow_labels(ctx, project))
    ctx.audit.log("project_registered", project=project.slug, name=name, repo=repo)
    return project, advisories


def worker_rows(ctx: EngineContext, project: Project) -> list[dict]:
    """One row per slot, in role then level order."""
    rows = []
    for role in ctx.roles.ids():
        state = project.workers.get(role)
        if state is None:
            continue
        for level, index, slot in state.iter_slots():
            rows.append({
                "role": role,
                "level": level,
                "slot": index,
                "name": slot.name,
                "active": slot.active,
                "issueId": slot.issue_id,
                "startTime": slot.start_time,
                "sessionKey": slot.session_key,
                "taskCount": slot.task_count,
                "capacity": ctx.roles.capacity(role, level),
            })
    return rows


def project_summary(ctx: EngineContext, project: Project) -> dict:
    rows = worker_rows(ctx, project)
    return {
        "slug": project.slug,
        "name": project.name,
        "repo": project.repo,
        "baseBranch": project.base_branch,
        "channels": [c.to_dict() for c in project.channels],
        "activeWorkers": sum(1 for r in rows if r["active"]),
        "slots": len(rows),
    }


def queue_status(ctx: EngineContext, slug: str) -> dict:
    """Issues waiting in each queue label, grouped by role."""
    project = ctx.store.get_project(slug)
    tracker = ctx.tracker_for(project)
    queues: dict[str, dict[str, list[dict]]] = {}
    for role in ctx.workflow.roles():
        labels = ctx.workflow.queue_labels(role)
        if not labels:
            continue
        queues[role] = {
            label: [
                {"issueId": i.iid, "title": i.title, "url": i.web_url}
                for i in sorted(tracker.list_issues_by_label(label), key=lambda i: i.iid)
            ]
            for label in labels
        }
    return {"project": project.slug, "queues": queues}
