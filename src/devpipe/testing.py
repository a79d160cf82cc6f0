"""In-memory tracker and session runtime that record every call.

Used by the test suite and handy for trying the engine without a real tracker:
``DEVPIPE_TRACKER=devpipe.testing:memory_tracker``.
"""

from __future__ import annotations

import threading
from collections import defaultdict

from devpipe.db.models import Project
from devpipe.integrations.runtime import SessionError, SessionRuntime
from devpipe.integrations.tracker import (
    Comment,
    Issue,
    MergeError,
    PrState,
    ReviewStatus,
    TrackerError,
    TrackerProvider,
)


class _Faults:
    """Per-method failure injection: ``fail("merge", MergeError("conflict"), times=1)``."""

    def __init__(self):
        self._faults: dict[str, list] = {}

    def fail(self, method: str, error: Exception | None = None, times: int | None = None) -> None:
        self._faults[method] = [error or TrackerError(f"{method} failed"), times]

    def clear(self, method: str | None = None) -> None:
        if method is None:
            self._faults.clear()
        else:
            self._faults.pop(method, None)

    def check(self, method: str) -> None:
        fault = self._faults.get(method)
        if fault is None:
            return
        error, times = fault
        if times is not None:
            if times <= 1:
                del self._faults[method]
            else:
                fault[1] = times - 1
        raise error


class InMemoryTracker(TrackerProvider):
    def __init__(self):
        self.issues: dict[int, Issue] = {}
        self.labels: dict[str, str] = {}
        self.comments: dict[int, list[Comment]] = defaultdict(list)
        self.reviews: dict[int, ReviewStatus] = {}
        self.diffs: dict[int, str] = {}
        self.calls: list[tuple] = []
        self.faults = _Faults()
        self._next_iid = 1
        self._lock = threading.Lock()

    def _record(self, method: str, *args) -> None:
        with self._lock:
            self.calls.append((method, *args))
        self.faults.check(method)

    def calls_to(self, method: str) -> list[tuple]:
        return [c[1:] for c in self.calls if c[0] == method]

    def _issue(self, iid: int) -> Issue:
        issue = self.issues.get(int(iid))
        if issue is None:
            raise TrackerError(f"Issue #{iid} not found")
        return issue

    # ── Test setup ──

    def add_issue(self, iid: int, title: str, labels: list[str] | None = None,
                  description: str = "", state: str = "open") -> Issue:
        issue = Issue(
            iid=iid, title=title, description=description, labels=list(labels or []),
            state=state, web_url=f"https://tracker.example/issues/{iid}",
        )
        self.issues[iid] = issue
        self._next_iid = max(self._next_iid, iid + 1)
        return issue

    def set_review(self, iid: int, state: PrState, url: str | None = None) -> None:
        self.reviews[iid] = ReviewStatus(state=state, url=url or f"https://tracker.example/pulls/{iid}")

    def labels_of(self, iid: int) -> list[str]:
        return list(self._issue(iid).labels)

    # ── TrackerProvider ──

    def ensure_label(self, name, color):
        self._record("ensure_label", name, color)
        self.labels.setdefault(name, color)

    def create_issue(self, title, description, label):
        self._record("create_issue", title, description, label)
        return self.add_issue(self._next_iid, title, [label], description)

    def list_issues_by_label(self, label):
        self._record("list_issues_by_label", label)
        return [
            Issue(i.iid, i.title, i.description, list(i.labels), i.state, i.web_url)
            for i in self.issues.values()
            if label in i.labels and i.state == "open"
        ]

    def get_issue(self, iid):
        self._record("get_issue", iid)
        i = self._issue(iid)
        return Issue(i.iid, i.title, i.description, list(i.labels), i.state, i.web_url)

    def list_comments(self, iid):
        self._record("list_comments", iid)
        return list(self.comments[int(iid)])

    def transition_label(self, iid, from_label, to_label):
        self._record("transition_label", iid, from_label, to_label)
        issue = self._issue(iid)
        issue.labels = [lbl for lbl in issue.labels if lbl != from_label]
        if to_label not in issue.labels:
            issue.labels.append(to_label)

    def add_label(self, iid, label):
        self._record("add_label", iid, label)
        issue = self._issue(iid)
        if label not in issue.labels:
            issue.labels.append(label)

    def remove_labels(self, iid, labels):
        self._record("remove_labels", iid, list(labels))
        issue = self._issue(iid)
        issue.labels = [lbl for lbl in issue.labels if lbl not in labels]

    def close_issue(self, iid):
        self._record("close_issue", iid)
        self._issue(iid).state = "closed"

    def reopen_issue(self, iid):
        self._record("reopen_issue", iid)
        self._issue(iid).state = "open"

    def get_review_status(self, iid):
        self._record("get_review_status", iid)
        return self.reviews.get(int(iid), ReviewStatus(state=PrState.NONE))

    def merge(self, iid):
        self._record("merge", iid)
        status = self.reviews.get(int(iid))
        if status is None or status.state in (PrState.NONE, PrState.CLOSED):
            raise MergeError(f"No open pull request for #{iid}")
        status.state = PrState.MERGED

    def get_diff(self, iid):
        self._record("get_diff", iid)
        return self.diffs.get(int(iid))

    def add_comment(self, iid, body):
        self._record("add_comment", iid, body)
        self.comments[int(iid)].append(Comment(author="devpipe", body=body))

    def health_check(self):
        self._record("health_check")
        return True


class InMemoryRuntime(SessionRuntime):
    """Session runtime that keeps sessions and deliveries in memory.

    ``alive`` is the set returned by ``list_alive_sessions``; set it to None to
    simulate a runtime that cannot be asked.
    """

    def __init__(self, alive: set[str] | None = None, track_alive: bool = True):
        self.sessions: dict[str, dict] = {}
        self.deliveries: list[dict] = []
        self.alive: set[str] | None = set(alive or ())
        self.track_alive = track_alive
        self.fail_delivery: Exception | None = None
        self._seen_keys: set[str] = set()
        self._lock = threading.Lock()

    def ensure_session(self, session_key, model, label=None):
        with self._lock:
            self.sessions[session_key] = {"model": model, "label": label}

    def deliver_task(self, session_key, message, idempotency_key, timeout):
        if self.fail_delivery is not None:
            raise self.fail_delivery
        with self._lock:
            if session_key not in self.sessions:
                raise SessionError(f"Unknown session {session_key}")
            if idempotency_key in self._seen_keys:
                return
            self._seen_keys.add(idempotency_key)
            self.deliveries.append(
                {"session_key": session_key, "message": message, "idempotency_key": idempotency_key}
            )
            if self.track_alive and self.alive is not None:
                self.alive.add(session_key)

    def list_alive_sessions(self):
        with self._lock:
            return set(self.alive) if self.alive is not None else None


_shared_tracker = InMemoryTracker()


def memory_tracker(project: Project) -> InMemoryTracker:
    """Tracker factory sharing one in-memory tracker across projects."""
    return _shared_tracker


def memory_runtime(project: Project) -> InMemoryRuntime:
    return InMemoryRuntime()
