"""Queue scan: rank waiting issues and fill free slots."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field

from devpipe.core.context import EngineContext
from devpipe.core.dispatch import DispatchResult, dispatch
from devpipe.core.errors import CommitmentError, StateStoreError, ValidationError
from devpipe.core.workflow import AGENT_REVIEW_LABEL, StateType, WorkflowConfig
from devpipe.db.models import Project, RoleWorkerState
from devpipe.db.slots import find_free_slot, reconcile_slots
from devpipe.integrations.tracker import Issue, TrackerProvider

logger = logging.getLogger(__name__)


@dataclass
class Pickup:
    issue_id: int
    title: str
    role: str
    level: str
    from_label: str
    slot_index: int | None = None
    session_action: str = "dry-run"
    announcement: str = ""

    @classmethod
    def from_dispatch(cls, issue: Issue, result: DispatchResult) -> "Pickup":
        return cls(
            issue_id=issue.iid,
            title=issue.title,
            role=result.role,
            level=result.level,
            from_label=result.from_label,
            slot_index=result.slot_index,
            session_action=result.session_action,
            announcement=result.announcement,
        )

    def to_dict(self) -> dict:
        return {
            "issueId": self.issue_id,
            "title": self.title,
            "role": self.role,
            "level": self.level,
            "fromLabel": self.from_label,
            "slotIndex": self.slot_index,
            "sessionAction": self.session_action,
            "announcement": self.announcement,
        }


@dataclass
class TickResult:
    pickups: list[Pickup] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"pickups": [p.to_dict() for p in self.pickups], "skipped": self.skipped}


def rank_issues(workflow: WorkflowConfig, candidates: list[tuple[Issue, str]]) -> list[tuple[Issue, str]]:
    """Highest queue priority first; within a queue, lowest issue id first."""
    return sorted(candidates, key=lambda c: workflow.priority_weight(c[1], c[0].iid), reverse=True)


def is_dispatchable(workflow: WorkflowConfig, issue: Issue, label: str) -> bool:
    """Review queues only hand out issues routed to an agent reviewer."""
    state = workflow.state_by_label(label)
    if state is None:
        return False
    if state.type == StateType.REVIEW:
        return AGENT_REVIEW_LABEL in issue.labels
    return True


def list_candidates(
    workflow: WorkflowConfig,
    tracker: TrackerProvider,
    role: str,
    exclude: set[int] | None = None,
) -> list[tuple[Issue, str]]:
    exclude = exclude or set()
    candidates: list[tuple[Issue, str]] = []
    seen: set[int] = set()
    for label in workflow.queue_labels(role):
        for issue in tracker.list_issues_by_label(label):
            if issue.iid in exclude or issue.iid in seen:
                continue
            if not is_dispatchable(workflow, issue, label):
                continue
            seen.add(issue.iid)
            candidates.append((issue, label))
    return rank_issues(workflow, candidates)


def find_next_issue(
    workflow: WorkflowConfig,
    tracker: TrackerProvider,
    role: str,
    exclude: set[int] | None = None,
) -> tuple[Issue, str] | None:
    ranked = list_candidates(workflow, tracker, role, exclude)
    return ranked[0] if ranked else None


def _active_issue_ids(project: Project) -> set[int]:
    ids = set()
    for state in project.workers.values():
        for _, _, slot in state.iter_slots():
            if slot.active and slot.issue_id and slot.issue_id.isdigit():
                ids.add(int(slot.issue_id))
    return ids


def _capacity_view(ctx: EngineContext, project: Project, role: str) -> RoleWorkerState:
    state = copy.deepcopy(project.workers.get(role, RoleWorkerState()))
    reconcile_slots(state, ctx.roles.desired_slots(role))
    return state


def _has_free_slot(ctx: EngineContext, state: RoleWorkerState, role: str) -> bool:
    return any(
        find_free_slot(state, level, ctx.roles.capacity(role, level)) is not None
        for level in ctx.roles.get(role).levels
    )


def project_tick(
    ctx: EngineContext,
    slug: str,
    target_role: str | None = None,
    max_pickups: int | None = None,
    dry_run: bool = False,
) -> TickResult:
    """Dispatch queued issues into every free slot of a project."""
    out = TickResult()
    project = ctx.store.get_project(slug)
    tracker = ctx.tracker_for(project)
    if target_role:
        roles = [ctx.roles.get(target_role).id]
    else:
        roles = [r for r in ctx.workflow.roles() if r in ctx.roles.ids()]

    for role in roles:
        attempted: set[int] = set()
        planned: dict[str, int] = {}
        while max_pickups is None or len(out.pickups) < max_pickups:
            project = ctx.store.get_project(slug)
            state = _capacity_view(ctx, project, role)
            if not dry_run and not _has_free_slot(ctx, state, role):
                break

            nxt = find_next_issue(ctx.workflow, tracker, role, _active_issue_ids(project) | attempted)
            if nxt is None:
                break
            issue, label = nxt
            attempted.add(issue.iid)

            level, reason = ctx.roles.select_level(role, issue.title, issue.description, issue.labels)
            capacity = ctx.roles.capacity(role, level)
            free = find_free_slot(state, level, capacity)
            if dry_run:
                busy = sum(1 for s in state.levels.get(level, [])[:capacity] if s.active)
                if busy + planned.get(level, 0) >= capacity:
                    free = None
            if free is None:
                out.skipped.append({"issueId": issue.iid, "role": role, "level": level, "reason": "no free slot"})
                continue

            if dry_run:
                planned[level] = planned.get(level, 0) + 1
                out.pickups.append(Pickup(issue.iid, issue.title, role, level, label, slot_index=None))
                continue

            try:
                result = dispatch(ctx, slug, issue, role, level=level, from_label=label, level_reason=reason)
            except (ValidationError, CommitmentError, StateStoreError) as e:
                logger.warning("Tick could not dispatch #%s to %s: %s", issue.iid, role, e)
                out.skipped.append({"issueId": issue.iid, "role": role, "level": level, "reason": str(e)})
                continue
            out.pickups.append(Pickup.from_dispatch(issue, result))

    if out.pickups:
        logger.info("Tick for %s picked up %d issue(s)", slug, len(out.pickups))
    return out
