"""Role registry: levels, models, valid results and capacity per role."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from devpipe.core.errors import ValidationError

ROLE_ALIASES = {"dev": "developer", "qa": "tester"}

LEVEL_ALIASES: dict[str, dict[str, str]] = {
    "developer": {"mid": "medior"},
    "tester": {"mid": "medior", "reviewer": "medior", "tester": "junior"},
    "reviewer": {"mid": "senior", "medior": "senior"},
    "architect": {"opus": "senior", "sonnet": "junior"},
}

SIMPLE_KEYWORDS = (
    "typo", "docs", "readme", "rename", "bump", "minor", "small", "simple",
    "comment", "format", "lint", "cleanup", "cosmetic",
)
COMPLEX_KEYWORDS = (
    "architecture", "refactor", "migration", "migrate", "security", "redesign",
    "performance", "concurrency", "distributed", "overhaul", "rewrite", "scalability",
)


@dataclass(frozen=True)
class Role:
    id: str
    name: str
    levels: tuple[str, ...]
    default_level: str
    models: Mapping[str, str]
    emoji: Mapping[str, str]
    results: tuple[str, ...]
    label_color: str = "#cccccc"
    max_workers: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))


DEFAULT_ROLES: tuple[Role, ...] = (
    Role(
        id="developer",
        name="Developer",
        levels=("junior", "medior", "senior"),
        default_level="medior",
        models=MappingProxyType({
            "junior": "claude-haiku-4-5",
            "medior": "claude-sonnet-4-5",
            "senior": "claude-opus-4-5",
        }),
        emoji=MappingProxyType({"junior": "⚡", "medior": "🔧", "senior": "🧠"}),
        results=("done", "blocked"),
        label_color="#0e8a16",
    ),
    Role(
        id="tester",
        name="Tester",
        levels=("junior", "medior", "senior"),
        default_level="medior",
        models=MappingProxyType({
            "junior": "claude-haiku-4-5",
            "medior": "claude-sonnet-4-5",
            "senior": "claude-opus-4-5",
        }),
        emoji=MappingProxyType({"junior": "🔍", "medior": "🧪", "senior": "🔬"}),
        results=("pass", "fail", "refine", "blocked"),
        label_color="#5319e7",
    ),
    Role(
        id="reviewer",
        name="Reviewer",
        levels=("junior", "senior"),
        default_level="junior",
        models=MappingProxyType({
            "junior": "claude-sonnet-4-5",
            "senior": "claude-opus-4-5",
        }),
        emoji=MappingProxyType({"junior": "👀", "senior": "🧐"}),
        results=("approve", "reject", "blocked"),
        label_color="#d93f0b",
    ),
    Role(
        id="architect",
        name="Architect",
        levels=("junior", "senior"),
        default_level="junior",
        models=MappingProxyType({
            "junior": "claude-sonnet-4-5",
            "senior": "claude-opus-4-5",
        }),
        emoji=MappingProxyType({"junior": "📐", "senior": "🏗️"}),
        results=("done", "blocked"),
        label_color="#0075ca",
    ),
)


def canonical_role_name(name: str) -> str:
    return ROLE_ALIASES.get(name, name)


def canonical_level_name(role: str, level: str) -> str:
    return LEVEL_ALIASES.get(canonical_role_name(role), {}).get(level, level)


def default_level_name(role: str) -> str:
    """Built-in default level of a role; ``medior`` for roles with no entry."""
    role = canonical_role_name(role)
    for entry in DEFAULT_ROLES:
        if entry.id == role:
            return entry.default_level
    return "medior"


class RoleRegistry:
    """Lookup table for roles, validating names at the boundary."""

    def __init__(self, roles: tuple[Role, ...] = DEFAULT_ROLES, max_workers_per_level: int = 2):
        self._roles = {r.id: r for r in roles}
        self.max_workers_per_level = max_workers_per_level

    def ids(self) -> list[str]:
        return list(self._roles)

    def get(self, role: str) -> Role:
        canonical = canonical_role_name(role)
        if canonical not in self._roles:
            raise ValidationError(
                f"Unknown role '{role}'. Valid roles: {', '.join(self._roles)}"
            )
        return self._roles[canonical]

    def level(self, role: str, level: str | None) -> str:
        """Validate a level for a role, returning its canonical name or the role's default."""
        entry = self.get(role)
        if level is None:
            return entry.default_level
        canonical = canonical_level_name(entry.id, level)
        if canonical not in entry.levels:
            raise ValidationError(
                f"Unknown level '{level}' for role '{entry.id}'. "
                f"Valid levels: {', '.join(entry.levels)}"
            )
        return canonical

    def result(self, role: str, result: str) -> str:
        entry = self.get(role)
        normalized = result.lower()
        if normalized not in entry.results:
            raise ValidationError(
                f"Invalid result '{result}' for role '{entry.id}'. "
                f"Valid results: {', '.join(entry.results)}"
            )
        return normalized

    def model_for(self, role: str, level: str) -> str:
        entry = self.get(role)
        return entry.models.get(level, entry.models[entry.default_level])

    def emoji_for(self, role: str, level: str) -> str:
        return self.get(role).emoji.get(level, "🤖")

    def capacity(self, role: str, level: str) -> int:
        return self.get(role).max_workers.get(level, self.max_workers_per_level)

    def desired_slots(self, role: str) -> dict[str, int]:
        entry = self.get(role)
        return {level: self.capacity(role, level) for level in entry.levels}

    def select_level(self, role: str, title: str, description: str = "", labels: list[str] | None = None) -> tuple[str, str]:
        """Pick a level for an issue. Returns (level, reason).

        An explicit ``<role>:<level>`` label wins; otherwise keywords in the
        title and description decide, falling back to the role's default.
        """
        entry = self.get(role)
        for label in labels or []:
            parts = label.split(":")
            if len(parts) >= 2 and canonical_role_name(parts[0]) == entry.id:
                level = canonical_level_name(entry.id, parts[1])
                if level in entry.levels:
                    return level, f"label {label}"

        text = f"{title} {description}".lower()
        words = set(re.findall(r"[a-z]+", text))
        if entry.id != "tester":
            if words.intersection(COMPLEX_KEYWORDS) and "senior" in entry.levels:
                return "senior", "complex keywords"
            if words.intersection(SIMPLE_KEYWORDS) and "junior" in entry.levels:
                return "junior", "simple keywords"
        return entry.default_level, "default"
