"""Review poller: advance issues waiting in review states from their PR status."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from devpipe.core.context import EngineContext
from devpipe.core.workflow import (
    AGENT_REVIEW_LABEL,
    SKIP_REVIEW_LABEL,
    Action,
    Event,
    ReviewCheck,
    WorkflowState,
)
from devpipe.db.models import Project
from devpipe.integrations import git as git_mod
from devpipe.integrations import slack as slack_mod
from devpipe.integrations.tracker import Issue, PrState, ReviewStatus, TrackerProvider

logger = logging.getLogger(__name__)


@dataclass
class ReviewTransition:
    issue_id: int
    event: str
    from_label: str
    to_label: str
    merged: bool = False

    def to_dict(self) -> dict:
        return {
            "issueId": self.issue_id,
            "event": self.event,
            "fromLabel": self.from_label,
            "toLabel": self.to_label,
            "merged": self.merged,
        }


def check_met(check: str, pr_state: PrState) -> bool:
    if check == ReviewCheck.PR_MERGED:
        return pr_state == PrState.MERGED
    if check == ReviewCheck.PR_APPROVED:
        return pr_state in (PrState.APPROVED, PrState.MERGED)
    return False


def _event_for(state: WorkflowState, issue: Issue, status: ReviewStatus) -> str | None:
    if status.state == PrState.NONE:
        return None
    if SKIP_REVIEW_LABEL in issue.labels and Event.SKIP in state.on and status.state != PrState.CLOSED:
        return Event.SKIP
    if check_met(state.check, status.state):
        return Event.APPROVED
    if status.state == PrState.CHANGES_REQUESTED:
        return Event.CHANGES_REQUESTED
    if status.state == PrState.CLOSED:
        return Event.PR_CLOSED
    return None


def _move(ctx: EngineContext, project: Project, tracker: TrackerProvider, issue: Issue,
          event: str, from_label: str, to_label: str, merged: bool = False) -> ReviewTransition:
    tracker.transition_label(issue.iid, from_label, to_label)
    transition = ReviewTransition(issue.iid, event, from_label, to_label, merged)
    ctx.audit.log("review_transition", project=project.slug, issue_id=issue.iid, **transition.to_dict())
    ctx.notifier.notify(
        project, "reviewTransition", f"#{issue.iid}: {from_label} → {to_label}",
        slack_mod.format_review_transition(issue.iid, from_label, to_label, event.lower()),
    )
    logger.info("Review pass moved #%s %s → %s (%s)", issue.iid, from_label, to_label, event)
    return transition


def review_issue(
    ctx: EngineContext,
    project: Project,
    tracker: TrackerProvider,
    state: WorkflowState,
    issue: Issue,
) -> ReviewTransition | None:
    """Check one issue's PR and apply the matching transition, if any."""
    status = tracker.get_review_status(issue.iid)
    event = _event_for(state, issue, status)
    if event is None:
        return None
    found = ctx.workflow.transition_for(state.id, event)
    if found is None:
        return None
    transition, target = found

    merged = status.state == PrState.MERGED
    for action in transition.actions:
        if action == Action.MERGE_PR:
            if merged:
                continue
            try:
                tracker.merge(issue.iid)
                merged = True
            except Exception as e:
                logger.warning("Merge for #%s failed during review pass: %s", issue.iid, e)
                failed = ctx.workflow.transition_for(state.id, Event.MERGE_FAILED)
                if failed is None:
                    return None
                try:
                    tracker.add_comment(issue.iid, f"Automatic merge failed: {e}")
                except Exception:
                    logger.warning("Could not comment on #%s", issue.iid)
                return _move(ctx, project, tracker, issue, Event.MERGE_FAILED, state.label, failed[1].label)
        elif action == Action.GIT_PULL:
            try:
                git_mod.pull(project.repo, project.base_branch, timeout=ctx.config.git_pull_timeout)
            except git_mod.GitError as e:
                logger.warning("git pull for %s failed: %s", project.slug, e)
        elif action == Action.CLOSE_ISSUE:
            tracker.close_issue(issue.iid)
        elif action == Action.REOPEN_ISSUE:
            tracker.reopen_issue(issue.iid)

    return _move(ctx, project, tracker, issue, event, state.label, target.label, merged)


def review_pass(ctx: EngineContext, slug: str) -> list[ReviewTransition]:
    """One sweep over every review state of a project. Pending reviews are left alone.

    Errors for a single issue are logged and the sweep moves on.
    """
    project = ctx.store.get_project(slug)
    tracker = ctx.tracker_for(project)
    transitions: list[ReviewTransition] = []

    for state in ctx.workflow.review_states():
        try:
            issues = tracker.list_issues_by_label(state.label)
        except Exception as e:
            logger.warning("Could not list '%s' issues for %s: %s", state.label, slug, e)
            continue
        for issue in issues:
            if AGENT_REVIEW_LABEL in issue.labels:
                continue
            try:
                moved = review_issue(ctx, project, tracker, state, issue)
            except Exception as e:
                logger.warning("Review check for #%s failed: %s", issue.iid, e)
                continue
            if moved is not None:
                transitions.append(moved)

    return transitions
