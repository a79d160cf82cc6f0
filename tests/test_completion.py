"""Tests for the completion pipeline."""

import copy

import pytest

from devpipe.core.completion import complete
from devpipe.core.dispatch import dispatch_issue
from devpipe.core.errors import CommitmentError, NoRuleError, StateStoreError, ValidationError
from devpipe.core.workflow import DEFAULT_WORKFLOW_DICT, Event, workflow_from_dict
from devpipe.integrations.tracker import MergeError, PrState, TrackerError

from conftest import make_engine


def _slot(engine, role, level, index):
    return engine.store.get_worker_state("demo", role).levels[level][index]


def _start(engine, tracker, iid, label, role, level, title="Add export button"):
    tracker.add_issue(iid, title, [label])
    return dispatch_issue(engine, "demo", iid, role, level=level)


class TestCompletion:
    def test_developer_done(self, engine, tracker):
        started = _start(engine, tracker, 42, "To Do", "developer", "medior")
        tracker.set_review(42, PrState.OPEN, url="https://tracker.example/pulls/7")

        out = complete(engine, "demo", "developer", "done", 42, summary="Added the button")

        assert out.label_transition == "Doing → To Review"
        assert out.pr_url == "https://tracker.example/pulls/7"
        assert "To Review" in tracker.labels_of(42)
        assert "Doing" not in tracker.labels_of(42)
        slot = _slot(engine, "developer", "medior", 0)
        assert not slot.active
        assert slot.issue_id is None
        assert slot.session_key == started.session_key
        assert "Added the button" in out.announcement

    def test_tester_pass_closes_issue(self, engine, tracker):
        _start(engine, tracker, 42, "To Test", "tester", "medior")

        out = complete(engine, "demo", "tester", "pass", 42)

        assert out.issue_closed
        assert out.next_state == "Done!"
        assert tracker.calls_to("close_issue") == [(42,)]
        assert tracker.issues[42].state == "closed"
        assert "Done" in tracker.labels_of(42)

    def test_tester_fail_reopens(self, engine, tracker):
        _start(engine, tracker, 42, "To Test", "tester", "medior")

        out = complete(engine, "demo", "tester", "fail", 42)

        assert out.issue_reopened
        assert "To Improve" in tracker.labels_of(42)

    def test_reviewer_reject(self, engine, tracker):
        tracker.add_issue(42, "Add export button", ["To Review", "review:agent"])
        dispatch_issue(engine, "demo", 42, "reviewer", level="junior")

        out = complete(engine, "demo", "reviewer", "reject", 42)

        assert out.to_label == "To Improve"
        assert out.next_state == "DEVELOPER queue"
        assert tracker.calls_to("close_issue") == []
        assert tracker.calls_to("reopen_issue") == []
        assert not _slot(engine, "reviewer", "junior", 0).active

    def test_blocked_goes_to_hold(self, engine, tracker):
        _start(engine, tracker, 42, "To Do", "developer", "medior")

        out = complete(engine, "demo", "developer", "BLOCKED", 42)

        assert out.result == "blocked"
        assert "Refining" in tracker.labels_of(42)
        assert out.next_state == "awaiting human decision"

    def test_audit_and_warnings(self, engine, tracker):
        _start(engine, tracker, 42, "To Do", "developer", "medior")
        tracker.faults.fail("get_review_status")

        out = complete(engine, "demo", "developer", "done", 42)

        assert [a.step for a in out.advisories] == ["detectPr"]
        event = engine.audit.recent(event="work_finish")[0]
        assert event.data["to_label"] == "To Review"
        assert event.data["warnings"][0]["step"] == "detectPr"

    def test_slot_reassigned_meanwhile_is_left_alone(self, engine, tracker, monkeypatch):
        _start(engine, tracker, 42, "To Do", "developer", "medior")
        tracker.add_issue(43, "Add import button", ["To Do"])
        detect_pr = tracker.get_review_status

        def reassign_then_detect(issue_id):
            engine.store.deactivate("demo", "developer", issue_id="42")
            engine.store.activate("demo", "developer", "43", "medior", slot_index=0)
            return detect_pr(issue_id)

        monkeypatch.setattr(tracker, "get_review_status", reassign_then_detect)

        out = complete(engine, "demo", "developer", "done", 42)

        slot = _slot(engine, "developer", "medior", 0)
        assert slot.active
        assert slot.issue_id == "43"
        assert "To Review" in tracker.labels_of(42)
        assert out.advisories[-1].step == "deactivate_worker"

    def test_slot_release_failure_degrades(self, engine, tracker, monkeypatch):
        _start(engine, tracker, 42, "To Do", "developer", "medior")

        def broken_deactivate(*args, **kwargs):
            raise StateStoreError("disk full")

        monkeypatch.setattr(engine.store, "deactivate", broken_deactivate)

        out = complete(engine, "demo", "developer", "done", 42)

        assert out.state_degraded
        assert out.advisories[-1].step == "deactivate_worker"
        assert "disk full" in out.advisories[-1].message
        assert "To Review" in tracker.labels_of(42)
        assert _slot(engine, "developer", "medior", 0).active


class TestCompletionValidation:
    def test_result_not_valid_for_role(self, engine, tracker):
        with pytest.raises(ValidationError):
            complete(engine, "demo", "developer", "pass", 42)
        assert tracker.calls == []

    def test_issue_without_active_slot_is_rejected(self, engine, tracker):
        tracker.add_issue(7, "Add export button", ["To Do"])
        before = engine.store.path.read_bytes()
        tracker.calls.clear()

        with pytest.raises(ValidationError, match="Worker not active"):
            complete(engine, "demo", "tester", "pass", 7)

        assert tracker.calls == []
        assert tracker.labels_of(7) == ["To Do"]
        assert tracker.issues[7].state == "open"
        assert engine.store.path.read_bytes() == before

    def test_no_rule_mutates_nothing(self, workspace, tracker, runtime):
        raw = copy.deepcopy(DEFAULT_WORKFLOW_DICT)
        del raw["states"]["reviewing"]["on"][Event.BLOCKED]
        engine = make_engine(workspace, tracker, runtime, workflow=workflow_from_dict(raw))
        engine.store.register_project(
            "Demo", str(workspace / "repo"), {"reviewer": {"junior": 1}}, slug="demo"
        )
        _start(engine, tracker, 42, "To Review", "reviewer", "junior")
        before = engine.store.path.read_bytes()
        tracker.calls.clear()

        with pytest.raises(NoRuleError):
            complete(engine, "demo", "reviewer", "blocked", 42)

        assert tracker.calls == []
        assert engine.store.path.read_bytes() == before

    def test_close_failure_keeps_label(self, engine, tracker):
        _start(engine, tracker, 42, "To Test", "tester", "medior")
        tracker.faults.fail("close_issue")

        with pytest.raises(TrackerError):
            complete(engine, "demo", "tester", "pass", 42)

        assert "Testing" in tracker.labels_of(42)
        assert _slot(engine, "tester", "medior", 0).active

    def test_label_failure_raises_commitment_error(self, engine, tracker):
        _start(engine, tracker, 42, "To Do", "developer", "medior")
        tracker.faults.fail("transition_label")

        with pytest.raises(CommitmentError):
            complete(engine, "demo", "developer", "done", 42)

        assert _slot(engine, "developer", "medior", 0).active


class TestMerge:
    def _reviewing(self, engine, tracker, iid=42):
        tracker.add_issue(iid, "Add export button", ["To Review", "review:agent"])
        dispatch_issue(engine, "demo", iid, "reviewer", level="junior")

    def test_approve_merges(self, engine, tracker, monkeypatch):
        pulls = []
        monkeypatch.setattr(
            "devpipe.integrations.git.pull",
            lambda repo, branch, timeout=None: pulls.append((repo, branch)),
        )
        self._reviewing(engine, tracker)
        tracker.set_review(42, PrState.APPROVED)

        out = complete(engine, "demo", "reviewer", "approve", 42)

        assert out.merged
        assert not out.rerouted
        assert tracker.calls_to("merge") == [(42,)]
        assert "To Test" in tracker.labels_of(42)
        assert pulls == [(engine.store.get_project("demo").repo, "main")]

    def test_already_merged_skips_merge(self, engine, tracker, monkeypatch):
        monkeypatch.setattr("devpipe.integrations.git.pull", lambda *a, **kw: "")
        self._reviewing(engine, tracker)
        tracker.set_review(42, PrState.MERGED)

        out = complete(engine, "demo", "reviewer", "approve", 42)

        assert out.merged
        assert tracker.calls_to("merge") == []
        assert "To Test" in tracker.labels_of(42)

    def test_merge_failure_reroutes(self, engine, tracker, monkeypatch):
        pulls = []
        monkeypatch.setattr("devpipe.integrations.git.pull", lambda *a, **kw: pulls.append(a))
        self._reviewing(engine, tracker)
        tracker.set_review(42, PrState.APPROVED)
        tracker.faults.fail("merge", MergeError("merge conflict"))

        out = complete(engine, "demo", "reviewer", "approve", 42)

        assert out.rerouted
        assert not out.merged
        assert out.to_label == "To Improve"
        assert out.next_state == "To Improve (merge failed)"
        assert "To Improve" in tracker.labels_of(42)
        assert "merge conflict" in tracker.comments[42][-1].body
        assert pulls == []
        assert not _slot(engine, "reviewer", "junior", 0).active

    def test_merge_without_pr_reroutes(self, engine, tracker):
        self._reviewing(engine, tracker)

        out = complete(engine, "demo", "reviewer", "approve", 42)

        assert out.rerouted
        assert "To Improve" in tracker.labels_of(42)


class TestAutoTick:
    def test_completion_picks_up_next_issue(self, engine, tracker):
        _start(engine, tracker, 1, "To Do", "developer", "medior")
        tracker.add_issue(2, "Add import button", ["To Do"])

        out = complete(engine, "demo", "developer", "done", 1, auto_tick=True)

        picked = {p["issueId"] for p in out.pickups}
        assert 2 in picked
        assert "Doing" in tracker.labels_of(2)

    def test_auto_tick_off_by_config(self, engine, tracker):
        _start(engine, tracker, 1, "To Do", "developer", "medior")
        tracker.add_issue(2, "Add import button", ["To Do"])

        out = complete(engine, "demo", "developer", "done", 1)

        assert out.pickups == []
        assert "To Do" in tracker.labels_of(2)
