"""Issue tracker collaborator: data types, provider interface and resilient wrapper."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from devpipe.integrations.resilience import CircuitBreaker, call_with_retry


class TrackerError(Exception):
    """Raised by tracker providers when an operation fails."""


class MergeError(TrackerError):
    """Raised when a linked pull request cannot be merged."""


@dataclass
class Issue:
    iid: int
    title: str
    description: str = ""
    labels: list[str] = field(default_factory=list)
    state: str = "open"
    web_url: str = ""


@dataclass
class Comment:
    author: str
    body: str
    created_at: str = ""


class PrState(str, Enum):
    NONE = "none"
    OPEN = "open"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"
    CLOSED = "closed"


@dataclass
class ReviewStatus:
    state: PrState
    url: str | None = None
    source_branch: str | None = None
    mergeable: bool | None = None


class TrackerProvider(ABC):
    """Operations the engine needs from an issue tracker."""

    @abstractmethod
    def ensure_label(self, name: str, color: str) -> None: ...

    @abstractmethod
    def create_issue(self, title: str, description: str, label: str) -> Issue: ...

    @abstractmethod
    def list_issues_by_label(self, label: str) -> list[Issue]: ...

    @abstractmethod
    def get_issue(self, iid: int) -> Issue: ...

    @abstractmethod
    def list_comments(self, iid: int) -> list[Comment]: ...

    @abstractmethod
    def transition_label(self, iid: int, from_label: str, to_label: str) -> None:
        """Atomically remove from_label and add to_label."""

    @abstractmethod
    def add_label(self, iid: int, label: str) -> None: ...

    @abstractmethod
    def remove_labels(self, iid: int, labels: list[str]) -> None: ...

    @abstractmethod
    def close_issue(self, iid: int) -> None: ...

    @abstractmethod
    def reopen_issue(self, iid: int) -> None: ...

    @abstractmethod
    def get_review_status(self, iid: int) -> ReviewStatus: ...

    @abstractmethod
    def merge(self, iid: int) -> None:
        """Merge the issue's linked pull request. Raises MergeError on failure."""

    @abstractmethod
    def get_diff(self, iid: int) -> str | None: ...

    @abstractmethod
    def add_comment(self, iid: int, body: str) -> None: ...

    @abstractmethod
    def health_check(self) -> bool: ...


class ResilientTracker(TrackerProvider):
    """Wraps a provider with retries and a circuit breaker.

    Calls that are unsafe to repeat (creating issues, comments, merging) go
    through the breaker only.
    """

    def __init__(
        self,
        provider: TrackerProvider,
        breaker: CircuitBreaker | None = None,
        attempts: int = 3,
        sleep=None,
    ):
        self.provider = provider
        self.breaker = breaker or CircuitBreaker(name=type(provider).__name__, ignore=(MergeError,))
        self.attempts = attempts
        self._sleep = sleep

    def _call(self, fn, *args, retry: bool = True):
        if not retry:
            return self.breaker.call(fn, *args)
        kwargs = {"attempts": self.attempts}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return self.breaker.call(call_with_retry, fn, *args, **kwargs)

    def ensure_label(self, name, color):
        return self._call(self.provider.ensure_label, name, color)

    def create_issue(self, title, description, label):
        return self._call(self.provider.create_issue, title, description, label, retry=False)

    def list_issues_by_label(self, label):
        return self._call(self.provider.list_issues_by_label, label)

    def get_issue(self, iid):
        return self._call(self.provider.get_issue, iid)

    def list_comments(self, iid):
        return self._call(self.provider.list_comments, iid)

    def transition_label(self, iid, from_label, to_label):
        return self._call(self.provider.transition_label, iid, from_label, to_label)

    def add_label(self, iid, label):
        return self._call(self.provider.add_label, iid, label)

    def remove_labels(self, iid, labels):
        return self._call(self.provider.remove_labels, iid, labels)

    def close_issue(self, iid):
        return self._call(self.provider.close_issue, iid)

    def reopen_issue(self, iid):
        return self._call(self.provider.reopen_issue, iid)

    def get_review_status(self, iid):
        return self._call(self.provider.get_review_status, iid)

    def merge(self, iid):
        return self._call(self.provider.merge, iid, retry=False)

    def get_diff(self, iid):
        return self._call(self.provider.get_diff, iid)

    def add_comment(self, iid, body):
        return self._call(self.provider.add_comment, iid, body, retry=False)

    def health_check(self):
        return self._call(self.provider.health_check, retry=False)
