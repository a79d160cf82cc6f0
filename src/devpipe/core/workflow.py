"""Workflow statechart: states, transitions, queries and validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from devpipe.core.errors import WorkflowConfigError

logger = logging.getLogger(__name__)

PRIORITY_SCALE = 1_000_000_000
DEFAULT_COLOR = "#cccccc"


class StateType(str, Enum):
    QUEUE = "queue"
    ACTIVE = "active"
    HOLD = "hold"
    TERMINAL = "terminal"
    REVIEW = "review"


class ReviewPolicy(str, Enum):
    HUMAN = "human"
    AGENT = "agent"
    SKIP = "skip"


REVIEW_ROUTING_PREFIX = "review"
AGENT_REVIEW_LABEL = f"{REVIEW_ROUTING_PREFIX}:{ReviewPolicy.AGENT.value}"
SKIP_REVIEW_LABEL = f"{REVIEW_ROUTING_PREFIX}:{ReviewPolicy.SKIP.value}"


class Event:
    PICKUP = "PICKUP"
    COMPLETE = "COMPLETE"
    REVIEW = "REVIEW"
    APPROVED = "APPROVED"
    MERGE_FAILED = "MERGE_FAILED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    MERGE_CONFLICT = "MERGE_CONFLICT"
    PR_CLOSED = "PR_CLOSED"
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"
    REFINE = "REFINE"
    BLOCKED = "BLOCKED"
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class Action:
    GIT_PULL = "gitPull"
    DETECT_PR = "detectPr"
    MERGE_PR = "mergePr"
    CLOSE_ISSUE = "closeIssue"
    REOPEN_ISSUE = "reopenIssue"

    ALL = (GIT_PULL, DETECT_PR, MERGE_PR, CLOSE_ISSUE, REOPEN_ISSUE)


class ReviewCheck:
    PR_APPROVED = "prApproved"
    PR_MERGED = "prMerged"

    ALL = (PR_APPROVED, PR_MERGED)


FEEDBACK_EVENTS = (
    Event.CHANGES_REQUESTED,
    Event.MERGE_CONFLICT,
    Event.MERGE_FAILED,
    Event.REJECT,
    Event.FAIL,
    Event.PR_CLOSED,
)


def result_to_event(result: str) -> str:
    """Map a worker's reported result to a workflow event name."""
    if result.lower() == "done":
        return Event.COMPLETE
    return result.upper()


@dataclass(frozen=True)
class Transition:
    target: str
    actions: tuple[str, ...] = ()
    description: str | None = None

    def to_dict(self) -> Any:
        if not self.actions and not self.description:
            return self.target
        data: dict = {"target": self.target}
        if self.actions:
            data["actions"] = list(self.actions)
        if self.description:
            data["description"] = self.description
        return data


@dataclass(frozen=True)
class WorkflowState:
    id: str
    type: StateType
    label: str
    role: str | None = None
    color: str = DEFAULT_COLOR
    priority: int = 0
    check: str | None = None
    description: str | None = None
    on: Mapping[str, Transition] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_queue(self) -> bool:
        """Review states that carry a role can be picked up like a queue."""
        return self.type == StateType.QUEUE or (
            self.type == StateType.REVIEW and self.role is not None
        )

    def to_dict(self) -> dict:
        data: dict = {"type": self.type.value, "label": self.label, "color": self.color}
        if self.role:
            data["role"] = self.role
        if self.priority:
            data["priority"] = self.priority
        if self.check:
            data["check"] = self.check
        if self.description:
            data["description"] = self.description
        if self.on:
            data["on"] = {event: t.to_dict() for event, t in self.on.items()}
        return data


@dataclass(frozen=True)
class CompletionRule:
    from_label: str
    to_label: str
    target_state: str
    actions: tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkflowConfig:
    initial: str
    states: Mapping[str, WorkflowState]
    review_policy: ReviewPolicy = ReviewPolicy.HUMAN
    max_workers_per_level: int = 2

    # ── Role lookups ────────────────────────────────────────────────────────

    def roles(self) -> list[str]:
        """Roles with at least one queue or active state, in declaration order."""
        seen: list[str] = []
        for state in self.states.values():
            if state.role and state.role not in seen:
                seen.append(state.role)
        return seen

    def active_state(self, role: str) -> WorkflowState | None:
        for state in self.states.values():
            if state.type == StateType.ACTIVE and state.role == role:
                return state
        return None

    def active_label(self, role: str) -> str:
        state = self.active_state(role)
        if state is None:
            raise WorkflowConfigError([f"No active state for role '{role}'"])
        return state.label

    def queue_states(self, role: str) -> list[WorkflowState]:
        states = [s for s in self.states.values() if s.is_queue and s.role == role]
        return sorted(states, key=lambda s: s.priority, reverse=True)

    def queue_labels(self, role: str) -> list[str]:
        """Queue labels for a role, highest priority first."""
        return [s.label for s in self.queue_states(role)]

    def all_queue_labels(self) -> list[str]:
        states = [s for s in self.states.values() if s.is_queue]
        return [s.label for s in sorted(states, key=lambda s: s.priority, reverse=True)]

    def role_for_label(self, label: str) -> str | None:
        state = self.state_by_label(label)
        return state.role if state else None

    # ── Label lookups ───────────────────────────────────────────────────────

    def state_by_label(self, label: str) -> WorkflowState | None:
        for state in self.states.values():
            if state.label == label:
                return state
        return None

    def state_key_by_label(self, label: str) -> str | None:
        state = self.state_by_label(label)
        return state.id if state else None

    def state_labels(self) -> list[str]:
        return [s.label for s in self.states.values()]

    def current_state_label(self, labels: list[str]) -> str | None:
        """Return the first of an issue's labels that names a workflow state."""
        known = set(self.state_labels())
        for label in labels:
            if label in known:
                return label
        return None

    def label_colors(self) -> dict[str, str]:
        return {s.label: s.color for s in self.states.values()}

    def priority(self, label: str) -> int:
        state = self.state_by_label(label)
        return state.priority if state else 0

    def priority_weight(self, label: str, issue_id: int) -> int:
        """Sort key: higher-priority queues first, then the oldest issue."""
        return self.priority(label) * PRIORITY_SCALE - issue_id

    # ── Transitions ─────────────────────────────────────────────────────────

    def completion_rule(self, role: str, result: str) -> CompletionRule | None:
        """Resolve the rule for a worker result, or None when the workflow has none."""
        active = self.active_state(role)
        if active is None:
            return None
        transition = active.on.get(result_to_event(result))
        if transition is None:
            return None
        target = self.states.get(transition.target)
        if target is None:
            return None
        return CompletionRule(
            from_label=active.label,
            to_label=target.label,
            target_state=target.id,
            actions=transition.actions,
        )

    def transition_for(self, state_id: str, event: str) -> tuple[Transition, WorkflowState] | None:
        state = self.states.get(state_id)
        if state is None:
            return None
        transition = state.on.get(event)
        if transition is None or transition.target not in self.states:
            return None
        return transition, self.states[transition.target]

    def revert_label(self, role: str) -> str | None:
        """The queue label whose pickup leads into the role's active state."""
        active = self.active_state(role)
        if active is None:
            return None
        for state in self.states.values():
            if not state.is_queue or state.role != role:
                continue
            pickup = state.on.get(Event.PICKUP)
            if pickup and pickup.target == active.id:
                return state.label
        return None

    def is_feedback_state(self, label: str) -> bool:
        """True when the state is entered by a rework event (rejection, failed test, ...)."""
        state_id = self.state_key_by_label(label)
        if state_id is None:
            return False
        for state in self.states.values():
            for event, transition in state.on.items():
                if event in FEEDBACK_EVENTS and transition.target == state_id:
                    return True
        return False

    def review_states(self) -> list[WorkflowState]:
        return [s for s in self.states.values() if s.check]

    def produces_reviewable_work(self, role: str) -> bool:
        active = self.active_state(role)
        if active is None:
            return False
        for transition in active.on.values():
            target = self.states.get(transition.target)
            if target is not None and target.check:
                return True
        return False

    def next_state_description(self, role: str, result: str) -> str:
        rule = self.completion_rule(role, result)
        if rule is None:
            return ""
        target = self.states[rule.target_state]
        if target.type == StateType.TERMINAL:
            return "Done!"
        if target.type == StateType.HOLD:
            return "awaiting human decision"
        if target.is_queue and target.role:
            return f"{target.role.upper()} queue"
        return target.label

    # ── Validation ──────────────────────────────────────────────────────────

    def validate(self, known_roles: list[str] | None = None) -> list[str]:
        """Return every structural problem found, empty when the workflow is sound."""
        problems: list[str] = []

        if self.initial not in self.states:
            problems.append(f"Initial state '{self.initial}' does not exist")

        labels: dict[str, str] = {}
        active_per_role: dict[str, list[str]] = {}
        for state in self.states.values():
            if state.label in labels:
                problems.append(
                    f"Label '{state.label}' used by both '{labels[state.label]}' and '{state.id}'"
                )
            labels[state.label] = state.id

            if state.type in (StateType.QUEUE, StateType.ACTIVE) and not state.role:
                problems.append(f"State '{state.id}' ({state.type.value}) must declare a role")
            if state.type == StateType.REVIEW and not state.check:
                problems.append(f"Review state '{state.id}' must declare a check")
            if state.check and state.check not in ReviewCheck.ALL:
                problems.append(f"State '{state.id}' has unknown check '{state.check}'")
            if state.type == StateType.TERMINAL and state.on:
                problems.append(f"Terminal state '{state.id}' must not have transitions")
            if state.type == StateType.ACTIVE and state.role:
                active_per_role.setdefault(state.role, []).append(state.id)
            if known_roles is not None and state.role and state.role not in known_roles:
                problems.append(f"State '{state.id}' uses unknown role '{state.role}'")

            for event, transition in state.on.items():
                if transition.target not in self.states:
                    problems.append(
                        f"Transition '{state.id}.{event}' targets unknown state '{transition.target}'"
                    )
                for action in transition.actions:
                    if action not in Action.ALL:
                        problems.append(
                            f"Transition '{state.id}.{event}' has unknown action '{action}'"
                        )

        for role in self.roles():
            actives = active_per_role.get(role, [])
            if len(actives) != 1:
                problems.append(
                    f"Role '{role}' must have exactly one active state, found {len(actives)}"
                )

        return problems

    def to_dict(self) -> dict:
        return {
            "initial": self.initial,
            "reviewPolicy": self.review_policy.value,
            "maxWorkersPerLevel": self.max_workers_per_level,
            "states": {sid: s.to_dict() for sid, s in self.states.items()},
        }


# ── Construction ────────────────────────────────────────────────────────────


def _parse_transition(raw: Any) -> Transition:
    if isinstance(raw, str):
        return Transition(target=raw)
    if isinstance(raw, dict) and "target" in raw:
        return Transition(
            target=raw["target"],
            actions=tuple(raw.get("actions") or ()),
            description=raw.get("description"),
        )
    raise WorkflowConfigError([f"Malformed transition: {raw!r}"])


def _parse_state(state_id: str, raw: dict) -> WorkflowState:
    try:
        state_type = StateType(raw["type"])
    except (KeyError, ValueError):
        raise WorkflowConfigError([f"State '{state_id}' has invalid type {raw.get('type')!r}"])
    if "label" not in raw:
        raise WorkflowConfigError([f"State '{state_id}' has no label"])
    on = {event: _parse_transition(t) for event, t in (raw.get("on") or {}).items()}
    return WorkflowState(
        id=state_id,
        type=state_type,
        label=raw["label"],
        role=raw.get("role"),
        color=raw.get("color", DEFAULT_COLOR),
        priority=int(raw.get("priority", 0)),
        check=raw.get("check"),
        description=raw.get("description"),
        on=MappingProxyType(on),
    )


def workflow_from_dict(raw: dict) -> WorkflowConfig:
    states = {sid: _parse_state(sid, s) for sid, s in (raw.get("states") or {}).items()}
    try:
        policy = ReviewPolicy(raw.get("reviewPolicy", ReviewPolicy.HUMAN.value))
    except ValueError:
        raise WorkflowConfigError([f"Unknown review policy {raw.get('reviewPolicy')!r}"])
    return WorkflowConfig(
        initial=raw.get("initial", ""),
        states=MappingProxyType(states),
        review_policy=policy,
        max_workers_per_level=int(raw.get("maxWorkersPerLevel", 2)),
    )


DEFAULT_WORKFLOW_DICT: dict = {
    "initial": "planning",
    "reviewPolicy": "human",
    "maxWorkersPerLevel": 2,
    "states": {
        "planning": {
            "type": "hold",
            "label": "Planning",
            "color": "#95a5a6",
            "on": {Event.APPROVE: "todo"},
        },
        "todo": {
            "type": "queue",
            "role": "developer",
            "label": "To Do",
            "color": "#0366d6",
            "priority": 1,
            "on": {Event.PICKUP: "doing"},
        },
        "doing": {
            "type": "active",
            "role": "developer",
            "label": "Doing",
            "color": "#f0ad4e",
            "on": {
                Event.COMPLETE: {"target": "toReview", "actions": [Action.DETECT_PR]},
                Event.BLOCKED: "refining",
            },
        },
        "toReview": {
            "type": "review",
            "role": "reviewer",
            "label": "To Review",
            "color": "#7057ff",
            "priority": 2,
            "check": ReviewCheck.PR_APPROVED,
            "on": {
                Event.PICKUP: "reviewing",
                Event.APPROVED: {"target": "toTest", "actions": [Action.MERGE_PR, Action.GIT_PULL]},
                Event.SKIP: {"target": "toTest", "actions": [Action.MERGE_PR, Action.GIT_PULL]},
                Event.MERGE_FAILED: "toImprove",
                Event.CHANGES_REQUESTED: "toImprove",
                Event.MERGE_CONFLICT: "toImprove",
                Event.PR_CLOSED: {"target": "rejected", "actions": [Action.CLOSE_ISSUE]},
            },
        },
        "reviewing": {
            "type": "active",
            "role": "reviewer",
            "label": "Reviewing",
            "color": "#c5def5",
            "on": {
                Event.APPROVE: {"target": "toTest", "actions": [Action.MERGE_PR, Action.GIT_PULL]},
                Event.REJECT: "toImprove",
                Event.MERGE_FAILED: "toImprove",
                Event.BLOCKED: "refining",
            },
        },
        "toTest": {
            "type": "queue",
            "role": "tester",
            "label": "To Test",
            "color": "#5bc0de",
            "priority": 2,
            "on": {
                Event.PICKUP: "testing",
                Event.SKIP: {"target": "done", "actions": [Action.CLOSE_ISSUE]},
            },
        },
        "testing": {
            "type": "active",
            "role": "tester",
            "label": "Testing",
            "color": "#9b59b6",
            "on": {
                Event.PASS: {"target": "done", "actions": [Action.CLOSE_ISSUE]},
                Event.FAIL: {"target": "toImprove", "actions": [Action.REOPEN_ISSUE]},
                Event.REFINE: "refining",
                Event.BLOCKED: "refining",
            },
        },
        "done": {"type": "terminal", "label": "Done", "color": "#5cb85c"},
        "rejected": {"type": "terminal", "label": "Rejected", "color": "#e11d48"},
        "toImprove": {
            "type": "queue",
            "role": "developer",
            "label": "To Improve",
            "color": "#d9534f",
            "priority": 3,
            "on": {Event.PICKUP: "doing"},
        },
        "refining": {
            "type": "hold",
            "label": "Refining",
            "color": "#f39c12",
            "on": {Event.APPROVE: "todo"},
        },
        "toDesign": {
            "type": "queue",
            "role": "architect",
            "label": "To Design",
            "color": "#0075ca",
            "priority": 1,
            "on": {Event.PICKUP: "designing"},
        },
        "designing": {
            "type": "active",
            "role": "architect",
            "label": "Designing",
            "color": "#4a90d9",
            "on": {
                Event.COMPLETE: "planning",
                Event.BLOCKED: "refining",
            },
        },
    },
}

DEFAULT_WORKFLOW = workflow_from_dict(DEFAULT_WORKFLOW_DICT)


def _merge_workflow_dicts(base: dict, override: dict) -> dict:
    merged = {k: v for k, v in base.items() if k != "states"}
    merged["states"] = dict(base.get("states") or {})
    for key, value in override.items():
        if key == "states":
            for state_id, state in (value or {}).items():
                if state is None:
                    merged["states"].pop(state_id, None)
                else:
                    merged["states"][state_id] = state
        else:
            merged[key] = value
    return merged


def load_workflow(
    path: Path | None = None,
    known_roles: list[str] | None = None,
) -> WorkflowConfig:
    """Load a workflow, overlaying a YAML file on the built-in default.

    States in the file replace default states with the same id; a state set to
    null removes it. Raises WorkflowConfigError when the result is invalid.
    """
    raw = DEFAULT_WORKFLOW_DICT
    if path is not None:
        try:
            with open(path) as f:
                override = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise WorkflowConfigError([f"{path}: {e}"]) from e
        if not isinstance(override, dict):
            raise WorkflowConfigError([f"{path}: expected a mapping at the top level"])
        raw = _merge_workflow_dicts(DEFAULT_WORKFLOW_DICT, override)
        logger.info("Loaded workflow overrides from %s", path)

    workflow = workflow_from_dict(raw)
    problems = workflow.validate(known_roles)
    if problems:
        raise WorkflowConfigError(problems)
    return workflow
