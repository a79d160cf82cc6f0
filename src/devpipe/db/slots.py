"""Pure slot helpers operating on a role's worker state."""

from devpipe.db.models import RoleWorkerState, Slot


def empty_role_worker_state(desired: dict[str, int]) -> RoleWorkerState:
    return RoleWorkerState(levels={level: [Slot() for _ in range(count)] for level, count in desired.items()})


def find_free_slot(state: RoleWorkerState, level: str, max_workers: int | None = None) -> int | None:
    """Lowest-indexed inactive slot within the level's bound, or None."""
    slots = state.levels.get(level, [])
    limit = len(slots) if max_workers is None else min(len(slots), max_workers)
    for index in range(limit):
        if not slots[index].active:
            return index
    return None


def find_slot_by_issue(state: RoleWorkerState, issue_id: str) -> tuple[str, int] | None:
    for level, index, slot in state.iter_slots():
        if slot.active and slot.issue_id == str(issue_id):
            return level, index
    return None


def count_active_slots(state: RoleWorkerState) -> int:
    return sum(1 for _, _, slot in state.iter_slots() if slot.active)


def reconcile_slots(state: RoleWorkerState, desired: dict[str, int]) -> bool:
    """Grow or shrink each level's slot list towards the desired count.

    Only trailing idle slots are removed; shrinking stops at the first active
    slot from the end. Returns True when anything changed.
    """
    changed = False
    for level, count in desired.items():
        slots = state.levels.setdefault(level, [])
        while len(slots) < count:
            slots.append(Slot())
            changed = True
        while len(slots) > count and not slots[-1].active:
            slots.pop()
            changed = True
    return changed
