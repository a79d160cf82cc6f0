"""Data models for the persisted worker state document."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Slot:
    active: bool = False
    issue_id: str | None = None
    session_key: str | None = None
    start_time: str | None = None
    previous_label: str | None = None
    task_count: int = 0
    name: str | None = None

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "issueId": self.issue_id,
            "sessionKey": self.session_key,
            "startTime": self.start_time,
            "previousLabel": self.previous_label,
            "taskCount": self.task_count,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        issue_id = data.get("issueId")
        return cls(
            active=bool(data.get("active", False)),
            issue_id=str(issue_id) if issue_id is not None else None,
            session_key=data.get("sessionKey"),
            start_time=data.get("startTime"),
            previous_label=data.get("previousLabel"),
            task_count=int(data.get("taskCount") or 0),
            name=data.get("name"),
        )

    def started_at(self) -> datetime | None:
        if not self.start_time:
            return None
        return datetime.fromisoformat(self.start_time.replace("Z", "+00:00"))


@dataclass
class RoleWorkerState:
    levels: dict[str, list[Slot]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"levels": {lvl: [s.to_dict() for s in slots] for lvl, slots in self.levels.items()}}

    @classmethod
    def from_dict(cls, data: dict) -> "RoleWorkerState":
        levels = data.get("levels") or {}
        return cls(levels={lvl: [Slot.from_dict(s) for s in slots] for lvl, slots in levels.items()})

    def iter_slots(self):
        """Yield (level, index, slot) for every slot."""
        for level, slots in self.levels.items():
            for index, slot in enumerate(slots):
                yield level, index, slot


@dataclass
class Channel:
    channel_id: str
    channel: str = "slack"
    name: str = "primary"
    events: list[str] = field(default_factory=lambda: ["*"])

    def to_dict(self) -> dict:
        return {
            "channelId": self.channel_id,
            "channel": self.channel,
            "name": self.name,
            "events": list(self.events),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Channel":
        return cls(
            channel_id=str(data["channelId"]),
            channel=data.get("channel", "slack"),
            name=data.get("name", "primary"),
            events=list(data.get("events") or ["*"]),
        )

    def wants(self, event: str) -> bool:
        return "*" in self.events or event in self.events


@dataclass
class Project:
    slug: str
    name: str
    repo: str
    base_branch: str = "main"
    repo_remote: str | None = None
    provider: str | None = None
    channels: list[Channel] = field(default_factory=list)
    workers: dict[str, RoleWorkerState] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "slug": self.slug,
            "name": self.name,
            "repo": self.repo,
            "repoRemote": self.repo_remote,
            "baseBranch": self.base_branch,
            "provider": self.provider,
            "channels": [c.to_dict() for c in self.channels],
            "workers": {role: w.to_dict() for role, w in self.workers.items()},
        }

    @classmethod
    def from_dict(cls, slug: str, data: dict) -> "Project":
        return cls(
            slug=data.get("slug") or slug,
            name=data.get("name") or slug,
            repo=data.get("repo", ""),
            base_branch=data.get("baseBranch", "main"),
            repo_remote=data.get("repoRemote"),
            provider=data.get("provider"),
            channels=[Channel.from_dict(c) for c in data.get("channels") or []],
            workers={
                role: RoleWorkerState.from_dict(w) for role, w in (data.get("workers") or {}).items()
            },
        )


@dataclass
class ProjectsData:
    projects: dict[str, Project] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"projects": {slug: p.to_dict() for slug, p in self.projects.items()}}

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectsData":
        return cls(
            projects={
                slug: Project.from_dict(slug, p) for slug, p in (data.get("projects") or {}).items()
            }
        )


@dataclass
class AuditEvent:
    id: int | None = None
    event: str = ""
    project: str | None = None
    issue_id: str | None = None
    data: dict = field(default_factory=dict)
    created_at: datetime | None = None
