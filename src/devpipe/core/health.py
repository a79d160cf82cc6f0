"""Health reconciler: find slots and labels that drifted apart and repair them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from devpipe.core.context import EngineContext
from devpipe.core.errors import ProviderUnhealthy
from devpipe.db.models import Project, Slot
from devpipe.integrations import slack as slack_mod
from devpipe.integrations.tracker import Issue, TrackerProvider

logger = logging.getLogger(__name__)

ISSUE_GONE = "issue_gone"
LABEL_MISMATCH = "label_mismatch"
SESSION_DEAD = "session_dead"
STALE_WORKER = "stale_worker"
ORPHAN_ISSUE_ID = "orphan_issue_id"
ORPHANED_LABEL = "orphaned_label"

_UNSET = object()


@dataclass
class HealthFix:
    type: str
    role: str
    message: str
    level: str | None = None
    slot_index: int | None = None
    issue_id: str | None = None
    session_key: str | None = None
    fixed: bool = False
    label_reverted: str | None = None
    label_revert_failed: bool = False

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "role": self.role,
            "level": self.level,
            "slotIndex": self.slot_index,
            "issueId": self.issue_id,
            "sessionKey": self.session_key,
            "message": self.message,
            "fixed": self.fixed,
            "labelReverted": self.label_reverted,
            "labelRevertFailed": self.label_revert_failed,
        }


def _age_hours(slot: Slot, now: datetime) -> float | None:
    try:
        started = slot.started_at()
    except ValueError:
        return None
    if started is None:
        return None
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return (now - started) / timedelta(hours=1)


def _fetch_issue(tracker: TrackerProvider, issue_id: str) -> Issue | None:
    """None when the issue is deleted, closed or unreadable.

    An open circuit breaker propagates: an unhealthy tracker says nothing
    about whether the issue still exists.
    """
    try:
        issue = tracker.get_issue(int(issue_id))
    except ProviderUnhealthy:
        raise
    except Exception as e:
        logger.debug("Issue #%s could not be fetched: %s", issue_id, e)
        return None
    if issue.state == "closed":
        return None
    return issue


def _revert(tracker: TrackerProvider, fix: HealthFix, issue_id: int, from_label: str, to_label: str) -> None:
    try:
        tracker.transition_label(issue_id, from_label, to_label)
        fix.label_reverted = f"{from_label} → {to_label}"
    except Exception as e:
        logger.warning("Could not revert #%s to '%s': %s", issue_id, to_label, e)
        fix.label_revert_failed = True


def _check_active_slot(
    ctx: EngineContext,
    project: Project,
    tracker: TrackerProvider,
    role: str,
    level: str,
    index: int,
    slot: Slot,
    alive_sessions: set[str] | None,
    auto_fix: bool,
    now: datetime,
) -> HealthFix | None:
    active_label = ctx.workflow.active_label(role)
    where = f"{role}/{level}#{index}"

    def make(kind: str, message: str) -> HealthFix:
        return HealthFix(
            type=kind, role=role, level=level, slot_index=index,
            issue_id=slot.issue_id, session_key=slot.session_key, message=message,
        )

    def release(fix: HealthFix) -> HealthFix:
        if auto_fix:
            fix.fixed = ctx.store.deactivate(
                project.slug, role, level=level, slot_index=index, issue_id=slot.issue_id,
            )
        return fix

    if not slot.issue_id or not slot.issue_id.isdigit():
        return release(make(ISSUE_GONE, f"{where} active without a valid issue id ({slot.issue_id!r})"))

    issue = _fetch_issue(tracker, slot.issue_id)
    if issue is None:
        return release(make(ISSUE_GONE, f"{where} active but issue #{slot.issue_id} no longer exists or is closed"))

    current = ctx.workflow.current_state_label(issue.labels)
    if current != active_label:
        return release(make(
            LABEL_MISMATCH,
            f"{where} active but issue #{issue.iid} has label '{current}' (expected '{active_label}')",
        ))

    if alive_sessions is None:
        return None
    hours = _age_hours(slot, now)
    if hours is None or hours <= ctx.config.stale_worker_hours:
        return None

    if slot.session_key and slot.session_key in alive_sessions:
        return make(
            STALE_WORKER,
            f"{where} has been working on #{issue.iid} for {hours:.1f}h",
        )

    fix = make(SESSION_DEAD, f"{where} session '{slot.session_key}' is gone after {hours:.1f}h on #{issue.iid}")
    if auto_fix:
        target = slot.previous_label or ctx.workflow.revert_label(role)
        if target:
            _revert(tracker, fix, issue.iid, active_label, target)
        else:
            fix.label_revert_failed = True
        fix.fixed = ctx.store.deactivate(
            project.slug, role, level=level, slot_index=index, issue_id=slot.issue_id,
        )
    return fix


def scan_orphaned_labels(
    ctx: EngineContext,
    project: Project,
    tracker: TrackerProvider,
    role: str,
    auto_fix: bool = True,
) -> list[HealthFix]:
    """Issues sitting in the role's active label with no slot tracking them."""
    fixes: list[HealthFix] = []
    active = ctx.workflow.active_state(role)
    revert_to = ctx.workflow.revert_label(role)
    if active is None or revert_to is None:
        return fixes
    try:
        issues = tracker.list_issues_by_label(active.label)
    except Exception as e:
        logger.warning("Orphaned label scan for %s/%s skipped: %s", project.slug, role, e)
        return fixes

    # Re-read so slots activated during the listing are seen.
    state = ctx.store.get_project(project.slug).workers.get(role)
    tracked = {
        slot.issue_id for _, _, slot in (state.iter_slots() if state else ()) if slot.active
    }
    for issue in issues:
        if str(issue.iid) in tracked:
            continue
        fix = HealthFix(
            type=ORPHANED_LABEL,
            role=role,
            issue_id=str(issue.iid),
            message=f"Issue #{issue.iid} has '{active.label}' but no {role} slot is tracking it",
        )
        if auto_fix:
            _revert(tracker, fix, issue.iid, active.label, revert_to)
            fix.fixed = not fix.label_revert_failed
        fixes.append(fix)
    return fixes


def check_project(
    ctx: EngineContext,
    slug: str,
    alive_sessions=_UNSET,
    auto_fix: bool = True,
    now: datetime | None = None,
) -> list[HealthFix]:
    """Run one health pass over every role of a project.

    ``alive_sessions`` defaults to the project runtime's live session set. When
    it is None the runtime could not be asked, and session checks are skipped.
    """
    project = ctx.store.get_project(slug)
    tracker = ctx.tracker_for(project)
    now = now or datetime.now(timezone.utc)
    if alive_sessions is _UNSET:
        try:
            alive_sessions = ctx.runtime_for(project).list_alive_sessions()
        except Exception as e:
            logger.warning("Could not list live sessions for %s: %s", slug, e)
            alive_sessions = None

    fixes: list[HealthFix] = []
    for role in ctx.workflow.roles():
        if ctx.workflow.active_state(role) is None:
            continue
        state = project.workers.get(role)
        for level, index, slot in (state.iter_slots() if state else ()):
            if slot.active:
                fix = _check_active_slot(
                    ctx, project, tracker, role, level, index, slot, alive_sessions, auto_fix, now
                )
                if fix is not None:
                    fixes.append(fix)
            elif slot.issue_id:
                fix = HealthFix(
                    type=ORPHAN_ISSUE_ID, role=role, level=level, slot_index=index,
                    issue_id=slot.issue_id,
                    message=f"{role}/{level}#{index} is idle but still holds issue {slot.issue_id}",
                )
                if auto_fix:
                    fix.fixed = ctx.store.clear_issue_id(project.slug, role, level, index)
                fixes.append(fix)
        fixes.extend(scan_orphaned_labels(ctx, project, tracker, role, auto_fix))

    repaired = [f.to_dict() for f in fixes if f.fixed]
    for fix in repaired:
        ctx.audit.log("health_fix", project=project.slug, issue_id=fix["issueId"], **fix)
    if repaired:
        logger.info("Health pass repaired %d problem(s) in %s", len(repaired), slug)
        ctx.notifier.notify(
            project, "healthFix", f"Health repairs in {project.name}",
            slack_mod.format_health_fix(project.name, repaired),
        )
    return fixes
