"""Tests for dispatching issues into worker slots."""

import pytest

from devpipe.core.dispatch import dispatch, dispatch_issue
from devpipe.core.errors import (
    CommitmentError,
    NoFreeSlotError,
    SlotConflictError,
    StateStoreError,
    ValidationError,
)
from devpipe.core.messages import idempotency_key
from devpipe.integrations.runtime import SessionError
from devpipe.integrations.tracker import PrState

from conftest import make_engine


def _slot(engine, role, level, index):
    return engine.store.get_worker_state("demo", role).levels[level][index]


class TestDispatch:
    def test_dispatch_from_todo(self, engine, tracker, runtime):
        tracker.add_issue(42, "Add export button", ["To Do"])

        result = dispatch_issue(engine, "demo", 42, "developer", level="medior")

        assert result.from_label == "To Do"
        assert result.to_label == "Doing"
        assert result.session_action == "spawn"
        assert result.slot_index == 0
        labels = tracker.labels_of(42)
        assert "Doing" in labels
        assert "To Do" not in labels
        assert f"developer:medior:{result.slot_name}" in labels
        assert "review:human" in labels

        slot = _slot(engine, "developer", "medior", 0)
        assert slot.active
        assert slot.issue_id == "42"
        assert slot.session_key == result.session_key
        assert slot.previous_label == "To Do"
        assert slot.name == result.slot_name

    def test_task_message_delivered(self, engine, tracker, runtime):
        tracker.add_issue(42, "Add export button", ["To Do"], description="CSV please")

        result = dispatch_issue(engine, "demo", 42, "developer", level="medior")

        assert len(runtime.deliveries) == 1
        delivery = runtime.deliveries[0]
        assert delivery["session_key"] == result.session_key
        assert "Issue #42" in delivery["message"]
        assert "CSV please" in delivery["message"]
        assert "work_finish" in delivery["message"]
        assert delivery["idempotency_key"] == idempotency_key(
            "demo", 42, "developer", "medior", result.session_key
        )
        assert runtime.sessions[result.session_key]["model"] == result.model

    def test_second_dispatch_reuses_session(self, engine, tracker):
        tracker.add_issue(42, "Add export button", ["To Do"])
        tracker.add_issue(43, "Add import button", ["To Do"])

        first = dispatch_issue(engine, "demo", 42, "developer", level="medior")
        engine.store.deactivate("demo", "developer", issue_id="42")
        second = dispatch_issue(engine, "demo", 43, "developer", level="medior")

        assert first.session_action == "spawn"
        assert second.session_action == "send"
        assert second.session_key == first.session_key
        assert second.announcement.startswith("🔧 Sending DEVELOPER")
        assert _slot(engine, "developer", "medior", 0).task_count == 2

    def test_level_from_issue_text(self, engine, tracker):
        tracker.add_issue(7, "Fix typo in README", ["To Do"])

        result = dispatch_issue(engine, "demo", 7, "developer")

        assert result.level == "junior"
        assert result.level_reason == "simple keywords"
        selections = engine.audit.recent(event="model_selection")
        assert selections[0].data["reason"] == "simple keywords"

    def test_feedback_cycle_includes_review(self, engine, tracker, runtime):
        tracker.add_issue(8, "Add export button", ["To Improve"])
        tracker.set_review(8, PrState.CHANGES_REQUESTED)

        dispatch_issue(engine, "demo", 8, "developer", level="medior")

        message = runtime.deliveries[0]["message"]
        assert "FEEDBACK CYCLE" in message
        assert "changes_requested" in message

    def test_audit_records_dispatch(self, engine, tracker):
        tracker.add_issue(42, "Add export button", ["To Do"])
        dispatch_issue(engine, "demo", 42, "developer", level="medior")

        event = engine.audit.recent(event="dispatch")[0]
        assert event.project == "demo"
        assert event.issue_id == "42"
        assert event.data["from_label"] == "To Do"
        assert event.data["to_label"] == "Doing"


class TestDispatchValidation:
    def test_unknown_role_touches_nothing(self, engine, tracker):
        issue = tracker.add_issue(42, "Add export button", ["To Do"])

        with pytest.raises(ValidationError):
            dispatch(engine, "demo", issue, "designer")

        assert tracker.calls == []
        assert not _slot(engine, "developer", "medior", 0).active

    def test_unknown_level(self, engine, tracker):
        issue = tracker.add_issue(42, "Add export button", ["To Do"])
        with pytest.raises(ValidationError):
            dispatch(engine, "demo", issue, "developer", level="principal")
        assert tracker.calls == []

    def test_issue_not_in_queue(self, engine, tracker):
        tracker.add_issue(42, "Add export button", ["Planning"])
        with pytest.raises(ValidationError):
            dispatch_issue(engine, "demo", 42, "developer")
        assert tracker.calls_to("transition_label") == []

    def test_missing_issue(self, engine):
        with pytest.raises(ValidationError):
            dispatch_issue(engine, "demo", 404, "developer")

    def test_no_free_slot(self, engine, tracker):
        for iid in (1, 2, 3):
            tracker.add_issue(iid, f"Issue {iid}", ["To Do"])
        dispatch_issue(engine, "demo", 1, "developer", level="medior")
        dispatch_issue(engine, "demo", 2, "developer", level="medior")

        with pytest.raises(NoFreeSlotError):
            dispatch_issue(engine, "demo", 3, "developer", level="medior")
        assert "To Do" in tracker.labels_of(3)

    def test_busy_explicit_slot(self, engine, tracker):
        tracker.add_issue(1, "One", ["To Do"])
        tracker.add_issue(2, "Two", ["To Do"])
        dispatch_issue(engine, "demo", 1, "developer", level="medior", slot_index=1)
        with pytest.raises(NoFreeSlotError):
            dispatch_issue(engine, "demo", 2, "developer", level="medior", slot_index=1)

    def test_issue_already_active(self, engine, tracker):
        tracker.add_issue(42, "Add export button", ["To Do"])
        dispatch_issue(engine, "demo", 42, "developer", level="medior")
        tracker.issues[42].labels.append("To Test")

        with pytest.raises(SlotConflictError):
            dispatch_issue(engine, "demo", 42, "tester")


class TestCommitment:
    def test_label_failure_aborts(self, engine, tracker, runtime):
        tracker.add_issue(42, "Add export button", ["To Do"])
        tracker.faults.fail("transition_label")

        with pytest.raises(CommitmentError):
            dispatch_issue(engine, "demo", 42, "developer", level="medior")

        assert not _slot(engine, "developer", "medior", 0).active
        assert runtime.deliveries == []
        assert "To Do" in tracker.labels_of(42)

    def test_transient_label_failure_is_retried(self, engine, tracker):
        tracker.add_issue(42, "Add export button", ["To Do"])
        tracker.faults.fail("transition_label", times=1)

        dispatch_issue(engine, "demo", 42, "developer", level="medior")

        assert "Doing" in tracker.labels_of(42)
        assert len(tracker.calls_to("transition_label")) == 2

    def test_side_labels_are_advisory(self, engine, tracker):
        tracker.add_issue(42, "Add export button", ["To Do"])
        tracker.faults.fail("add_label")

        result = dispatch_issue(engine, "demo", 42, "developer", level="medior")

        assert "Doing" in tracker.labels_of(42)
        assert {a.step for a in result.advisories} == {"role_label", "review_routing_label"}
        assert _slot(engine, "developer", "medior", 0).active

    def test_sync_delivery_failure_rolls_back(self, engine, tracker, runtime):
        tracker.add_issue(42, "Add export button", ["To Do"])
        runtime.fail_delivery = SessionError("gateway down")

        with pytest.raises(CommitmentError):
            dispatch_issue(engine, "demo", 42, "developer", level="medior")

        assert "To Do" in tracker.labels_of(42)
        assert "Doing" not in tracker.labels_of(42)
        assert not _slot(engine, "developer", "medior", 0).active
        assert engine.audit.recent(event="dispatch_rolled_back")

    def test_detached_delivery_failure_keeps_dispatch(self, workspace, tracker, runtime):
        engine = make_engine(workspace, tracker, runtime)
        engine.store.register_project(
            "Demo", str(workspace / "repo"), {"developer": {"medior": 2}}, slug="demo"
        )
        tracker.add_issue(42, "Add export button", ["To Do"])
        runtime.fail_delivery = SessionError("gateway down")

        result = dispatch_issue(engine, "demo", 42, "developer", level="medior")
        result.delivery.join(timeout=5)

        assert "Doing" in tracker.labels_of(42)
        assert _slot(engine, "developer", "medior", 0).active
        failed = engine.audit.recent(event="delivery_failed")
        assert failed[0].data["error"] == "gateway down"

    def test_detached_delivery_succeeds(self, workspace, tracker, runtime):
        engine = make_engine(workspace, tracker, runtime)
        engine.store.register_project(
            "Demo", str(workspace / "repo"), {"developer": {"medior": 2}}, slug="demo"
        )
        tracker.add_issue(42, "Add export button", ["To Do"])

        result = dispatch_issue(engine, "demo", 42, "developer", level="medior")
        result.delivery.join(timeout=5)

        assert len(runtime.deliveries) == 1
        assert result.session_key in runtime.list_alive_sessions()

    def test_slot_write_failure_after_commit_degrades(self, engine, tracker, runtime, monkeypatch):
        tracker.add_issue(42, "Add export button", ["To Do"])

        def broken_activate(*args, **kwargs):
            raise StateStoreError("disk full")

        monkeypatch.setattr(engine.store, "activate", broken_activate)

        result = dispatch_issue(engine, "demo", 42, "developer", level="medior")

        assert result.state_degraded
        assert [a.step for a in result.advisories] == ["activate_worker"]
        assert "disk full" in result.advisories[0].message
        assert "Doing" in tracker.labels_of(42)
        assert len(runtime.deliveries) == 1
        assert engine.audit.recent(event="dispatch")[0].data["state_degraded"] is True
