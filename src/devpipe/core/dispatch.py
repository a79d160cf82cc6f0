"""Dispatch: claim a slot, commit the issue's label and hand the task to a worker session."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field

from devpipe.core.context import EngineContext
from devpipe.core.errors import (
    CommitmentError,
    NoFreeSlotError,
    ProviderUnhealthy,
    SlotConflictError,
    ValidationError,
)
from devpipe.core.messages import (
    build_dispatch_announcement,
    build_task_message,
    idempotency_key,
    session_key as make_session_key,
    session_label,
    slot_name,
)
from devpipe.core.results import Advisory, best_effort
from devpipe.core.workflow import REVIEW_ROUTING_PREFIX
from devpipe.db.models import Project, RoleWorkerState
from devpipe.db.slots import find_free_slot, find_slot_by_issue, reconcile_slots
from devpipe.integrations import slack as slack_mod
from devpipe.integrations.tracker import Issue, TrackerProvider

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    project: str
    issue_id: int
    role: str
    level: str
    model: str
    slot_index: int
    slot_name: str
    session_action: str
    session_key: str
    from_label: str
    to_label: str
    announcement: str
    level_reason: str = "explicit"
    advisories: list[Advisory] = field(default_factory=list)
    state_degraded: bool = False
    delivery: threading.Thread | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "issueId": self.issue_id,
            "role": self.role,
            "level": self.level,
            "model": self.model,
            "slotIndex": self.slot_index,
            "slotName": self.slot_name,
            "sessionAction": self.session_action,
            "sessionKey": self.session_key,
            "fromLabel": self.from_label,
            "toLabel": self.to_label,
            "announcement": self.announcement,
            "levelReason": self.level_reason,
            "warnings": [a.to_dict() for a in self.advisories],
            "stateDegraded": self.state_degraded,
        }


# ── Secondary labels ────────────────────────────────────────────────────────


def apply_role_label(tracker: TrackerProvider, issue: Issue, role: str, level: str, name: str, color: str) -> str:
    """Replace any previous ``<role>:...`` ownership label with ``<role>:<level>:<name>``."""
    label = f"{role}:{level}:{name}"
    stale = [lbl for lbl in issue.labels if lbl.startswith(f"{role}:") and lbl != label]
    if stale:
        tracker.remove_labels(issue.iid, stale)
    tracker.ensure_label(label, color)
    tracker.add_label(issue.iid, label)
    return label


def apply_routing_label(tracker: TrackerProvider, issue: Issue, prefix: str, value: str, color: str = "#d93f0b") -> str:
    label = f"{prefix}:{value}"
    stale = [lbl for lbl in issue.labels if lbl.startswith(f"{prefix}:") and lbl != label]
    if stale:
        tracker.remove_labels(issue.iid, stale)
    if label not in issue.labels:
        tracker.ensure_label(label, color)
        tracker.add_label(issue.iid, label)
    return label


# ── Delivery ────────────────────────────────────────────────────────────────


def _deliver(ctx: EngineContext, project: Project, issue_id: int, key: str, model: str,
             label: str, message: str, idem_key: str) -> None:
    runtime = ctx.runtime_for(project)
    runtime.ensure_session(key, model, label)
    runtime.deliver_task(key, message, idem_key, ctx.config.dispatch_timeout)


def _deliver_detached(ctx: EngineContext, project: Project, issue_id: int, key: str, model: str,
                      label: str, message: str, idem_key: str) -> threading.Thread:
    """Deliver on a daemon thread; failures go to the log and the audit trail."""

    def run():
        try:
            _deliver(ctx, project, issue_id, key, model, label, message, idem_key)
        except Exception as e:
            logger.warning("Delivery of #%s to %s failed: %s", issue_id, key, e)
            ctx.audit.log(
                "delivery_failed", project=project.slug, issue_id=issue_id,
                session_key=key, error=str(e),
            )

    thread = threading.Thread(target=run, name=f"deliver-{project.slug}-{issue_id}", daemon=True)
    thread.start()
    return thread


# ── Dispatch ────────────────────────────────────────────────────────────────


def _resolve_from_label(ctx: EngineContext, issue: Issue, role: str, from_label: str | None) -> str:
    queue_labels = ctx.workflow.queue_labels(role)
    if from_label is None:
        for label in issue.labels:
            if label in queue_labels:
                return label
        raise ValidationError(
            f"Issue #{issue.iid} is not in a {role} queue (expected one of: {', '.join(queue_labels)})"
        )
    if from_label not in queue_labels:
        raise ValidationError(f"'{from_label}' is not a queue label for role '{role}'")
    return from_label


def _resolve_slot(ctx: EngineContext, project: Project, role: str, level: str,
                  issue_id: int, slot_index: int | None) -> tuple[int, RoleWorkerState]:
    for other_role, other_state in project.workers.items():
        found = find_slot_by_issue(other_state, str(issue_id))
        if found:
            raise SlotConflictError(
                f"Issue #{issue_id} is already active in {other_role}/{found[0]}#{found[1]}"
            )

    state = copy.deepcopy(project.workers.get(role, RoleWorkerState()))
    reconcile_slots(state, ctx.roles.desired_slots(role))
    capacity = ctx.roles.capacity(role, level)
    if slot_index is None:
        slot_index = find_free_slot(state, level, capacity)
        if slot_index is None:
            raise NoFreeSlotError(f"No free {role}/{level} slot in project '{project.slug}'")
    else:
        slots = state.levels.get(level, [])
        if slot_index < 0 or slot_index >= min(len(slots), capacity):
            raise ValidationError(f"Slot {role}/{level}#{slot_index} does not exist")
        if slots[slot_index].active:
            raise NoFreeSlotError(
                f"Slot {role}/{level}#{slot_index} is busy with issue {slots[slot_index].issue_id}"
            )
    return slot_index, state


def dispatch(
    ctx: EngineContext,
    slug: str,
    issue: Issue,
    role: str,
    level: str | None = None,
    from_label: str | None = None,
    slot_index: int | None = None,
    level_reason: str | None = None,
) -> DispatchResult:
    """Dispatch an issue to a worker slot.

    Everything before the label transition is validation and reads: a failure
    there leaves no trace. The label transition is the commitment point; past
    it, failures are recorded as advisories and left for the health pass.
    """
    # ── Validation, no side effects ──
    role_entry = ctx.roles.get(role)
    role = role_entry.id
    if level is None:
        level, level_reason = ctx.roles.select_level(role, issue.title, issue.description, issue.labels)
    else:
        level = ctx.roles.level(role, level)
        level_reason = level_reason or "explicit"
    project = ctx.store.get_project(slug)
    from_label = _resolve_from_label(ctx, issue, role, from_label)
    to_label = ctx.workflow.active_label(role)
    slot_index, state = _resolve_slot(ctx, project, role, level, issue.iid, slot_index)

    name = slot_name(project.slug, role, level, slot_index)
    key = make_session_key(ctx.config.agent_id, project.slug, role, level, name)
    existing_key = state.levels[level][slot_index].session_key
    session_action = "send" if existing_key == key else "spawn"
    model = ctx.roles.model_for(role, level)

    tracker = ctx.tracker_for(project)
    advisories: list[Advisory] = []

    # ── Task payload ──
    from_state = ctx.workflow.state_by_label(from_label)
    feedback = ctx.workflow.is_feedback_state(from_label)
    comments = best_effort(advisories, "list_comments", tracker.list_comments, issue.iid) or []
    review_status = diff = None
    if feedback or (from_state is not None and from_state.check):
        review_status = best_effort(advisories, "get_review_status", tracker.get_review_status, issue.iid)
    if from_state is not None and from_state.check:
        diff = best_effort(advisories, "get_diff", tracker.get_diff, issue.iid)
    message = build_task_message(
        project_name=project.name,
        role=role,
        issue=issue,
        results=role_entry.results,
        repo=project.repo,
        base_branch=project.base_branch,
        comments=comments,
        review_status=review_status,
        diff=diff,
        feedback_cycle=feedback,
    )

    # ── Commitment point ──
    try:
        tracker.transition_label(issue.iid, from_label, to_label)
    except Exception as e:
        logger.error("Dispatch of #%s aborted, label transition failed: %s", issue.iid, e)
        raise CommitmentError(
            f"Could not move #{issue.iid} from '{from_label}' to '{to_label}': {e}"
        ) from e

    best_effort(
        advisories, "role_label", apply_role_label,
        tracker, issue, role, level, name, role_entry.label_color,
    )
    if ctx.workflow.produces_reviewable_work(role):
        best_effort(
            advisories, "review_routing_label", apply_routing_label,
            tracker, issue, REVIEW_ROUTING_PREFIX, ctx.workflow.review_policy.value,
        )

    # ── Delivery ──
    label = session_label(project.slug, role, level, name)
    idem_key = idempotency_key(project.slug, issue.iid, role, level, key)
    delivery = None
    if ctx.config.sync_delivery:
        try:
            _deliver(ctx, project, issue.iid, key, model, label, message, idem_key)
        except Exception as e:
            logger.error("Delivery of #%s failed, rolling back label: %s", issue.iid, e)
            best_effort(advisories, "rollback_label", tracker.transition_label, issue.iid, to_label, from_label)
            ctx.audit.log(
                "dispatch_rolled_back", project=project.slug, issue_id=issue.iid,
                role=role, level=level, error=str(e),
            )
            raise CommitmentError(f"Delivery of #{issue.iid} failed, label rolled back: {e}") from e
    else:
        delivery = _deliver_detached(ctx, project, issue.iid, key, model, label, message, idem_key)

    # ── Slot activation ──
    state_degraded = False
    try:
        ctx.store.activate(
            project.slug,
            role,
            str(issue.iid),
            level,
            session_key=key if session_action == "spawn" else None,
            previous_label=from_label,
            slot_index=slot_index,
            name=name,
        )
    except Exception as e:
        logger.warning("Worker for #%s is running but its slot could not be recorded: %s", issue.iid, e)
        advisories.append(Advisory(step="activate_worker", message=str(e)))
        state_degraded = True

    announcement = build_dispatch_announcement(
        ctx.roles.emoji_for(role, level), session_action, role, name, level, issue
    )
    ctx.audit.log(
        "dispatch",
        project=project.slug,
        issue_id=issue.iid,
        role=role,
        level=level,
        slot=slot_index,
        session_action=session_action,
        session_key=key,
        from_label=from_label,
        to_label=to_label,
        state_degraded=state_degraded,
    )
    ctx.audit.log(
        "model_selection",
        project=project.slug,
        issue_id=issue.iid,
        role=role,
        level=level,
        model=model,
        reason=level_reason,
    )
    ctx.notifier.notify(
        project, "workerStart", announcement, slack_mod.format_dispatch(announcement, issue.web_url)
    )

    logger.info("Dispatched #%s to %s/%s#%d (%s)", issue.iid, role, level, slot_index, session_action)
    return DispatchResult(
        project=project.slug,
        issue_id=issue.iid,
        role=role,
        level=level,
        model=model,
        slot_index=slot_index,
        slot_name=name,
        session_action=session_action,
        session_key=key,
        from_label=from_label,
        to_label=to_label,
        announcement=announcement,
        level_reason=level_reason,
        advisories=advisories,
        state_degraded=state_degraded,
        delivery=delivery,
    )


def dispatch_issue(
    ctx: EngineContext,
    slug: str,
    issue_id: int,
    role: str,
    level: str | None = None,
    slot_index: int | None = None,
) -> DispatchResult:
    """Fetch an issue by id and dispatch it from whatever queue label it carries."""
    project = ctx.store.get_project(slug)
    tracker = ctx.tracker_for(project)
    try:
        issue = tracker.get_issue(int(issue_id))
    except ProviderUnhealthy:
        raise
    except Exception as e:
        raise ValidationError(f"Issue #{issue_id} not found: {e}") from e
    return dispatch(ctx, project.slug, issue, role, level=level, slot_index=slot_index)
