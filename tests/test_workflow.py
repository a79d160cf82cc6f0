"""Tests for the workflow statechart and role registry."""

import pytest

from devpipe.core.errors import ValidationError, WorkflowConfigError
from devpipe.core.roles import RoleRegistry
from devpipe.core.workflow import (
    DEFAULT_WORKFLOW,
    DEFAULT_WORKFLOW_DICT,
    load_workflow,
    workflow_from_dict,
)


class TestDefaultWorkflow:
    def test_default_is_valid(self):
        assert DEFAULT_WORKFLOW.validate(RoleRegistry().ids()) == []

    def test_roles(self):
        assert DEFAULT_WORKFLOW.roles() == ["developer", "reviewer", "tester", "architect"]

    def test_active_labels(self):
        assert DEFAULT_WORKFLOW.active_label("developer") == "Doing"
        assert DEFAULT_WORKFLOW.active_label("tester") == "Testing"
        assert DEFAULT_WORKFLOW.active_label("reviewer") == "Reviewing"

    def test_active_label_unknown_role(self):
        with pytest.raises(WorkflowConfigError):
            DEFAULT_WORKFLOW.active_label("designer")

    def test_queue_labels_by_priority(self):
        assert DEFAULT_WORKFLOW.queue_labels("developer") == ["To Improve", "To Do"]
        assert DEFAULT_WORKFLOW.queue_labels("reviewer") == ["To Review"]

    def test_revert_label_uses_declaration_order(self):
        assert DEFAULT_WORKFLOW.revert_label("developer") == "To Do"
        assert DEFAULT_WORKFLOW.revert_label("reviewer") == "To Review"

    def test_current_state_label(self):
        labels = ["bug", "developer:medior:Ada", "Doing"]
        assert DEFAULT_WORKFLOW.current_state_label(labels) == "Doing"
        assert DEFAULT_WORKFLOW.current_state_label(["bug"]) is None

    def test_feedback_states(self):
        assert DEFAULT_WORKFLOW.is_feedback_state("To Improve")
        assert not DEFAULT_WORKFLOW.is_feedback_state("To Do")

    def test_review_states(self):
        assert [s.id for s in DEFAULT_WORKFLOW.review_states()] == ["toReview"]
        assert DEFAULT_WORKFLOW.produces_reviewable_work("developer")
        assert not DEFAULT_WORKFLOW.produces_reviewable_work("tester")


class TestCompletionRules:
    def test_developer_done(self):
        rule = DEFAULT_WORKFLOW.completion_rule("developer", "done")
        assert (rule.from_label, rule.to_label) == ("Doing", "To Review")
        assert rule.actions == ("detectPr",)

    def test_tester_pass_closes(self):
        rule = DEFAULT_WORKFLOW.completion_rule("tester", "pass")
        assert rule.to_label == "Done"
        assert rule.actions == ("closeIssue",)

    def test_tester_fail_reopens(self):
        rule = DEFAULT_WORKFLOW.completion_rule("tester", "fail")
        assert rule.to_label == "To Improve"
        assert rule.actions == ("reopenIssue",)

    def test_reviewer_reject(self):
        rule = DEFAULT_WORKFLOW.completion_rule("reviewer", "reject")
        assert rule.to_label == "To Improve"
        assert rule.actions == ()

    def test_result_is_case_insensitive(self):
        assert DEFAULT_WORKFLOW.completion_rule("tester", "PASS") is not None

    @pytest.mark.parametrize("role,result", [
        ("developer", "pass"),
        ("tester", "done"),
        ("reviewer", "refine"),
        ("architect", "approve"),
        ("nobody", "done"),
    ])
    def test_missing_rule_is_none(self, role, result):
        assert DEFAULT_WORKFLOW.completion_rule(role, result) is None

    def test_next_state_description(self):
        assert DEFAULT_WORKFLOW.next_state_description("tester", "pass") == "Done!"
        assert DEFAULT_WORKFLOW.next_state_description("developer", "blocked") == "awaiting human decision"
        assert DEFAULT_WORKFLOW.next_state_description("reviewer", "reject") == "DEVELOPER queue"

    def test_transition_for(self):
        transition, target = DEFAULT_WORKFLOW.transition_for("reviewing", "MERGE_FAILED")
        assert target.label == "To Improve"
        assert DEFAULT_WORKFLOW.transition_for("doing", "MERGE_FAILED") is None


class TestValidation:
    def _raw(self, **states):
        raw = {"initial": "todo", "states": {
            "todo": {"type": "queue", "role": "developer", "label": "To Do", "on": {"PICKUP": "doing"}},
            "doing": {"type": "active", "role": "developer", "label": "Doing", "on": {"COMPLETE": "done"}},
            "done": {"type": "terminal", "label": "Done"},
        }}
        raw["states"].update(states)
        return raw

    def test_minimal_workflow(self):
        assert workflow_from_dict(self._raw()).validate(["developer"]) == []

    def test_unknown_target(self):
        raw = self._raw(doing={"type": "active", "role": "developer", "label": "Doing", "on": {"COMPLETE": "nowhere"}})
        problems = workflow_from_dict(raw).validate()
        assert any("nowhere" in p for p in problems)

    def test_duplicate_label(self):
        problems = workflow_from_dict(self._raw(other={"type": "hold", "label": "Done"})).validate()
        assert any("Label 'Done'" in p for p in problems)

    def test_unknown_action(self):
        raw = self._raw(doing={
            "type": "active", "role": "developer", "label": "Doing",
            "on": {"COMPLETE": {"target": "done", "actions": ["deploy"]}},
        })
        assert any("deploy" in p for p in workflow_from_dict(raw).validate())

    def test_unknown_role(self):
        problems = workflow_from_dict(self._raw()).validate(["tester"])
        assert any("unknown role 'developer'" in p for p in problems)

    def test_review_state_needs_check(self):
        raw = self._raw(review={"type": "review", "label": "Review"})
        assert any("must declare a check" in p for p in workflow_from_dict(raw).validate())

    def test_bad_state_type(self):
        with pytest.raises(WorkflowConfigError):
            workflow_from_dict(self._raw(odd={"type": "limbo", "label": "Odd"}))

    def test_config_error_is_validation_error(self):
        assert issubclass(WorkflowConfigError, ValidationError)


class TestLoadWorkflow:
    def test_no_file_gives_default(self):
        assert load_workflow().to_dict() == DEFAULT_WORKFLOW.to_dict()

    def test_overlay_replaces_and_removes_states(self, workspace):
        path = workspace / "workflow.yaml"
        path.write_text(
            "reviewPolicy: agent\n"
            "states:\n"
            "  toDesign: null\n"
            "  designing: null\n"
            "  todo:\n"
            "    type: queue\n"
            "    role: developer\n"
            "    label: Backlog\n"
            "    priority: 5\n"
            "    on:\n"
            "      PICKUP: doing\n"
        )
        wf = load_workflow(path, RoleRegistry().ids())
        assert wf.review_policy.value == "agent"
        assert "architect" not in wf.roles()
        assert wf.queue_labels("developer") == ["Backlog", "To Improve"]
        assert "toDesign" in DEFAULT_WORKFLOW_DICT["states"]

    def test_invalid_overlay_raises_with_problems(self, workspace):
        path = workspace / "workflow.yaml"
        path.write_text("states:\n  doing: null\n")
        with pytest.raises(WorkflowConfigError) as exc:
            load_workflow(path)
        assert exc.value.problems

    def test_non_mapping_file(self, workspace):
        path = workspace / "workflow.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(WorkflowConfigError):
            load_workflow(path)


class TestRoleRegistry:
    def test_aliases(self):
        roles = RoleRegistry()
        assert roles.get("dev").id == "developer"
        assert roles.get("qa").id == "tester"
        assert roles.level("developer", "mid") == "medior"
        assert roles.level("reviewer", "medior") == "senior"

    def test_unknown_role_and_level(self):
        roles = RoleRegistry()
        with pytest.raises(ValidationError):
            roles.get("designer")
        with pytest.raises(ValidationError):
            roles.level("reviewer", "principal")

    def test_result_validation(self):
        roles = RoleRegistry()
        assert roles.result("tester", "PASS") == "pass"
        with pytest.raises(ValidationError):
            roles.result("developer", "pass")

    def test_select_level_label_wins(self):
        level, reason = RoleRegistry().select_level(
            "developer", "Refactor the architecture", labels=["developer:junior"]
        )
        assert level == "junior"
        assert reason.startswith("label")

    def test_select_level_keywords(self):
        roles = RoleRegistry()
        assert roles.select_level("developer", "Fix typo in README")[0] == "junior"
        assert roles.select_level("developer", "Database migration for orders")[0] == "senior"
        assert roles.select_level("developer", "Add export button") == ("medior", "default")

    def test_capacity(self):
        roles = RoleRegistry(max_workers_per_level=3)
        assert roles.capacity("developer", "junior") == 3
        assert roles.desired_slots("reviewer") == {"junior": 3, "senior": 3}
