"""Migration of historical projects.json shapes into the current document shape.

Shapes handled, oldest first:

1. Documents keyed by numeric channel id instead of project slug.
2. Projects with hard-wired ``dev``/``qa``/``architect`` worker fields.
3. One flat worker per role: ``{active, issueId, startTime, level, sessions}``.
4. One slot per level (``levels: {level: {...}}``) or a ``slots`` list.
5. Current: ``levels: {level: [slot, ...]}``.

Every function here works on plain dicts so the result can be compared with
the raw document to decide whether a write-back is due.
"""

from __future__ import annotations

import copy
import logging
import re

from devpipe.core.roles import canonical_level_name, canonical_role_name, default_level_name

logger = logging.getLogger(__name__)

LEGACY_ROLE_FIELDS = ("dev", "qa", "architect")


def slugify(name: str) -> str:
    return re.sub(r"\s+", "-", name.strip().lower())


def is_channel_keyed(data: dict) -> bool:
    keys = list((data.get("projects") or {}).keys())
    return bool(keys) and all(re.fullmatch(r"-?\d+", k) for k in keys)


# ── Slots ───────────────────────────────────────────────────────────────────


def _normalize_slot(raw: dict | None) -> dict:
    raw = raw or {}
    issue_id = raw.get("issueId")
    return {
        "active": bool(raw.get("active", False)),
        "issueId": str(issue_id) if issue_id is not None else None,
        "sessionKey": raw.get("sessionKey"),
        "startTime": raw.get("startTime"),
        "previousLabel": raw.get("previousLabel"),
        "taskCount": int(raw.get("taskCount") or 0),
        "name": raw.get("name"),
    }


def _add_slots(levels: dict, level: str, slots: list[dict]) -> None:
    levels.setdefault(level, []).extend(slots)


def _flat_worker_levels(role: str, worker: dict) -> dict:
    """Turn a flat single-worker record into per-level slot lists."""
    levels: dict[str, list[dict]] = {}
    sessions = worker.get("sessions") or {}
    active_level = worker.get("level") or worker.get("tier")
    if active_level:
        active_level = canonical_level_name(role, active_level)
    elif worker.get("active") or worker.get("issueId") is not None or worker.get("sessionKey"):
        # Level-less records still carry work; they land on the role's default level.
        active_level = default_level_name(role)

    for level, key in sessions.items():
        canonical = canonical_level_name(role, level)
        if key is None and canonical != active_level:
            continue
        if canonical in levels:
            if key and not levels[canonical][0]["sessionKey"]:
                levels[canonical][0]["sessionKey"] = key
            continue
        levels[canonical] = [_normalize_slot({"sessionKey": key})]

    if active_level:
        slots = levels.setdefault(active_level, [_normalize_slot({})])
        if not slots[0]["sessionKey"] and worker.get("sessionKey"):
            slots[0]["sessionKey"] = worker["sessionKey"]
        if worker.get("active"):
            slots[0].update(
                active=True,
                issueId=str(worker["issueId"]) if worker.get("issueId") is not None else None,
                startTime=worker.get("startTime"),
                previousLabel=worker.get("previousLabel"),
            )
    return levels


def migrate_worker(role: str, worker: dict | None) -> dict:
    """Convert any historical worker shape for a role into ``{"levels": {...}}``."""
    worker = worker or {}
    levels: dict[str, list[dict]] = {}

    if "levels" in worker:
        for level, value in (worker.get("levels") or {}).items():
            canonical = canonical_level_name(role, level)
            if isinstance(value, list):
                _add_slots(levels, canonical, [_normalize_slot(s) for s in value])
            else:
                _add_slots(levels, canonical, [_normalize_slot(value)])
    elif "slots" in worker:
        for raw in worker.get("slots") or []:
            level = raw.get("level") or raw.get("tier") or default_level_name(role)
            _add_slots(levels, canonical_level_name(role, level), [_normalize_slot(raw)])
    else:
        levels = _flat_worker_levels(role, worker)

    return {"levels": levels}


def _merge_active_slots(target: dict, other: dict) -> None:
    """Append active slots of ``other`` that ``target`` does not already track."""
    claimed = {
        slot["issueId"]
        for slots in target["levels"].values()
        for slot in slots
        if slot["active"]
    }
    for level, slots in other["levels"].items():
        for slot in slots:
            if slot["active"] and slot["issueId"] not in claimed:
                target["levels"].setdefault(level, []).append(slot)
                claimed.add(slot["issueId"])


# ── Projects ────────────────────────────────────────────────────────────────


def migrate_project(slug: str, raw: dict) -> dict:
    project = dict(raw)
    workers_raw: dict = {}

    if "workers" not in project and any(f in project for f in LEGACY_ROLE_FIELDS):
        for legacy in LEGACY_ROLE_FIELDS:
            if legacy in project:
                workers_raw[legacy] = project.pop(legacy)
    else:
        workers_raw = project.get("workers") or {}
        for legacy in LEGACY_ROLE_FIELDS:
            project.pop(legacy, None)

    workers: dict[str, dict] = {}
    for role, worker in workers_raw.items():
        canonical = canonical_role_name(role)
        migrated = migrate_worker(canonical, worker)
        if canonical in workers:
            _merge_active_slots(workers[canonical], migrated)
        else:
            workers[canonical] = migrated

    channels = project.get("channels")
    if channels is None:
        channels = []
        if project.get("channelId"):
            channels.append({
                "channelId": str(project["channelId"]),
                "channel": project.get("channel", "slack"),
                "name": "primary",
                "events": ["*"],
            })

    return {
        "slug": project.get("slug") or slug,
        "name": project.get("name") or slug,
        "repo": project.get("repo", ""),
        "repoRemote": project.get("repoRemote"),
        "baseBranch": project.get("baseBranch", "main"),
        "provider": project.get("provider"),
        "channels": channels,
        "workers": workers,
    }


def _latest_active_start(project: dict) -> str:
    latest = ""
    for worker in project["workers"].values():
        for slots in worker["levels"].values():
            for slot in slots:
                if slot["active"] and (slot["startTime"] or "") > latest:
                    latest = slot["startTime"] or ""
    return latest


def migrate_channel_keyed(projects: dict) -> dict:
    """Group channel-id keyed projects by name into slug-keyed projects."""
    groups: dict[str, list[tuple[str, dict]]] = {}
    for channel_id, raw in projects.items():
        groups.setdefault(raw.get("name") or channel_id, []).append((channel_id, raw))

    result: dict[str, dict] = {}
    for name, members in groups.items():
        slug = slugify(name)
        migrated = [(cid, migrate_project(slug, raw)) for cid, raw in members]
        first_raw = members[0][1]

        # The most recently started active worker state wins per role.
        ordered = sorted(migrated, key=lambda m: _latest_active_start(m[1]), reverse=True)
        base = copy.deepcopy(migrated[0][1])
        workers: dict[str, dict] = {}
        for _, proj in ordered:
            for role, worker in proj["workers"].items():
                if role not in workers:
                    workers[role] = copy.deepcopy(worker)
                else:
                    _merge_active_slots(workers[role], worker)

        base.update(
            slug=slug,
            name=name,
            channels=[
                {
                    "channelId": cid,
                    "channel": first_raw.get("channel", "slack"),
                    "name": "primary" if idx == 0 else f"secondary-{idx}",
                    "events": ["*"],
                }
                for idx, (cid, _) in enumerate(members)
            ],
            workers=workers,
        )
        result[slug] = base
    return result


def migrate_document(raw: dict | None) -> tuple[dict, bool]:
    """Return (current-shape document, whether it differs from the input)."""
    raw = raw or {}
    projects = raw.get("projects") or {}

    if is_channel_keyed(raw):
        logger.info("Migrating channel-keyed projects document (%d entries)", len(projects))
        migrated = migrate_channel_keyed(projects)
    else:
        migrated = {slug: migrate_project(slug, p) for slug, p in projects.items()}

    document = {"projects": migrated}
    return document, document != raw
