"""Completion pipeline: apply a worker's reported result to the issue and its slot."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from devpipe.core.context import EngineContext
from devpipe.core.errors import CommitmentError, NoRuleError, ValidationError
from devpipe.core.messages import build_completion_announcement
from devpipe.core.queue import project_tick
from devpipe.core.results import Advisory, best_effort
from devpipe.core.workflow import Action, Event
from devpipe.db.slots import find_slot_by_issue
from devpipe.integrations import git as git_mod
from devpipe.integrations import slack as slack_mod
from devpipe.integrations.tracker import PrState

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    project: str
    issue_id: int
    role: str
    result: str
    from_label: str
    to_label: str
    level: str | None = None
    slot_index: int | None = None
    issue_closed: bool = False
    issue_reopened: bool = False
    merged: bool = False
    rerouted: bool = False
    pr_url: str | None = None
    next_state: str = ""
    announcement: str = ""
    advisories: list[Advisory] = field(default_factory=list)
    state_degraded: bool = False
    pickups: list[dict] = field(default_factory=list)

    @property
    def label_transition(self) -> str:
        return f"{self.from_label} → {self.to_label}"

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "issueId": self.issue_id,
            "role": self.role,
            "result": self.result,
            "labelTransition": self.label_transition,
            "issueClosed": self.issue_closed,
            "issueReopened": self.issue_reopened,
            "merged": self.merged,
            "rerouted": self.rerouted,
            "prUrl": self.pr_url,
            "nextState": self.next_state,
            "announcement": self.announcement,
            "warnings": [a.to_dict() for a in self.advisories],
            "stateDegraded": self.state_degraded,
            "pickups": self.pickups,
        }


def complete(
    ctx: EngineContext,
    slug: str,
    role: str,
    result: str,
    issue_id: int,
    summary: str | None = None,
    pr_url: str | None = None,
    auto_tick: bool | None = None,
) -> CompletionResult:
    """Route an issue to its next state after a worker reports a result.

    Unknown roles or results, results the workflow has no rule for, and
    issues no active slot of the role holds are rejected before anything is
    touched. Actions run in declared order; a
    failed merge stops the remaining actions and sends the issue to the
    active state's MERGE_FAILED target instead.
    """
    role = ctx.roles.get(role).id
    result = ctx.roles.result(role, result)
    rule = ctx.workflow.completion_rule(role, result)
    if rule is None:
        raise NoRuleError(f"No completion rule for {role}:{result}")

    project = ctx.store.get_project(slug)
    issue_id = int(issue_id)
    state = project.workers.get(role)
    found = find_slot_by_issue(state, str(issue_id)) if state else None
    if found is None:
        raise ValidationError(f"Worker not active: no {role} slot in {project.slug} holds #{issue_id}")

    tracker = ctx.tracker_for(project)
    out = CompletionResult(
        project=project.slug,
        issue_id=issue_id,
        role=role,
        result=result,
        from_label=rule.from_label,
        to_label=rule.to_label,
        pr_url=pr_url,
        level=found[0],
        slot_index=found[1],
    )

    # ── Actions ──
    active_state = ctx.workflow.active_state(role)
    for action in rule.actions:
        if action == Action.GIT_PULL:
            best_effort(
                out.advisories, "gitPull", git_mod.pull,
                project.repo, project.base_branch, timeout=ctx.config.git_pull_timeout,
            )
        elif action == Action.DETECT_PR:
            if not out.pr_url:
                status = best_effort(out.advisories, "detectPr", tracker.get_review_status, issue_id)
                if status is not None:
                    out.pr_url = status.url
        elif action == Action.MERGE_PR:
            status = best_effort(out.advisories, "merge_status", tracker.get_review_status, issue_id)
            if status is not None:
                out.pr_url = out.pr_url or status.url
            if status is not None and status.state == PrState.MERGED:
                out.merged = True
                continue
            try:
                tracker.merge(issue_id)
                out.merged = True
            except Exception as e:
                logger.warning("Merge for #%s failed: %s", issue_id, e)
                out.advisories.append(Advisory(step="mergePr", message=str(e)))
                reroute = ctx.workflow.transition_for(active_state.id, Event.MERGE_FAILED)
                if reroute is not None:
                    out.to_label = reroute[1].label
                    out.rerouted = True
                    best_effort(
                        out.advisories, "merge_failed_comment", tracker.add_comment, issue_id,
                        f"Merge failed after {role} {result}: {e}. Sending back to {out.to_label}.",
                    )
                break
        elif action == Action.CLOSE_ISSUE:
            tracker.close_issue(issue_id)
            out.issue_closed = True
        elif action == Action.REOPEN_ISSUE:
            tracker.reopen_issue(issue_id)
            out.issue_reopened = True
        else:
            out.advisories.append(Advisory(step=action, message=f"Unknown action '{action}'"))

    # ── Label transition ──
    try:
        tracker.transition_label(issue_id, out.from_label, out.to_label)
    except Exception as e:
        logger.error("Completion of #%s failed at label transition: %s", issue_id, e)
        raise CommitmentError(
            f"Could not move #{issue_id} from '{out.from_label}' to '{out.to_label}': {e}"
        ) from e

    # ── Slot release ──
    try:
        released = ctx.store.deactivate(
            project.slug, role, level=out.level, slot_index=out.slot_index, issue_id=issue_id,
        )
    except Exception as e:
        logger.warning("Slot for #%s could not be released: %s", issue_id, e)
        out.advisories.append(Advisory(step="deactivate_worker", message=str(e)))
        out.state_degraded = True
    else:
        if not released:
            out.advisories.append(Advisory(
                step="deactivate_worker",
                message=f"{role}/{out.level}#{out.slot_index} no longer held #{issue_id}",
            ))

    if out.rerouted:
        out.next_state = f"{out.to_label} (merge failed)"
    else:
        out.next_state = ctx.workflow.next_state_description(role, result)

    issue = best_effort(out.advisories, "get_issue", tracker.get_issue, issue_id)
    out.announcement = build_completion_announcement(
        role, result, issue_id, summary, out.next_state,
        issue_url=issue.web_url if issue else None, pr_url=out.pr_url,
    )

    ctx.audit.log(
        "work_finish",
        project=project.slug,
        issue_id=issue_id,
        role=role,
        result=result,
        level=out.level,
        slot=out.slot_index,
        from_label=out.from_label,
        to_label=out.to_label,
        merged=out.merged,
        rerouted=out.rerouted,
        summary=summary,
        warnings=[a.to_dict() for a in out.advisories],
    )
    ctx.notifier.notify(
        project, "workerComplete", out.announcement,
        slack_mod.format_completion(out.announcement, out.pr_url),
    )
    if out.merged:
        ctx.notifier.notify(
            project, "prMerged", f"PR for #{issue_id} merged",
            slack_mod.format_completion(f":twisted_rightwards_arrows: PR for #{issue_id} merged", out.pr_url),
        )

    if ctx.config.auto_tick if auto_tick is None else auto_tick:
        tick = best_effort(out.advisories, "tick", project_tick, ctx, project.slug)
        if tick is not None:
            out.pickups = [p.to_dict() for p in tick.pickups]

    logger.info("Completed #%s: %s %s → %s", issue_id, role, result, out.to_label)
    return out
