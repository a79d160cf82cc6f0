"""Task messages, announcements, session keys and deterministic slot names."""

from __future__ import annotations

import hashlib

from devpipe.integrations.tracker import Comment, Issue, ReviewStatus

MAX_COMMENTS = 20

SLOT_NAMES = (
    "Ada", "Alan", "Barbara", "Claude", "Donald", "Edsger", "Frances", "Grace",
    "Guido", "Hedy", "Ivan", "John", "Ken", "Leslie", "Linus", "Margaret",
    "Niklaus", "Radia", "Ritchie", "Robin", "Shafi", "Sophie", "Tim", "Tony",
    "Whitfield", "Yukihiro", "Dennis", "Fran", "Jean", "Butler",
)


def slot_name(project: str, role: str, level: str, index: int) -> str:
    """A stable human name for a slot.

    Slots of the same (project, role, level) get consecutive entries of the
    name list, so their names differ for any realistic capacity.
    """
    seed = f"{project}-{role}-{level}".encode()
    offset = int.from_bytes(hashlib.sha256(seed).digest()[:4], "big")
    return SLOT_NAMES[(offset + index) % len(SLOT_NAMES)]


def session_key(agent_id: str, project: str, role: str, level: str, name: str) -> str:
    return f"agent:{agent_id}:subagent:{project}-{role}-{level}-{name.lower()}"


def idempotency_key(project: str, issue_id: int | str, role: str, level: str, session: str) -> str:
    return f"devpipe-{project}-{issue_id}-{role}-{level}-{session}"


def session_label(project: str, role: str, level: str, name: str | None = None) -> str:
    def title(s: str) -> str:
        return " ".join(w.capitalize() for w in s.replace("-", " ").split())

    name_part = f" {name}" if name else ""
    return f"{title(project)} | {title(role)}{name_part} ({title(level)})"


def build_task_message(
    project_name: str,
    role: str,
    issue: Issue,
    results: tuple[str, ...],
    repo: str,
    base_branch: str,
    comments: list[Comment] | None = None,
    review_status: ReviewStatus | None = None,
    diff: str | None = None,
    feedback_cycle: bool = False,
) -> str:
    """Build the task payload sent to a worker session."""
    parts = []
    parts.append(f'{role.upper()} task for project "{project_name}" | Issue #{issue.iid}')
    parts.append("")
    parts.append(issue.title)
    if issue.description:
        parts.append(f"\n{issue.description}")

    if feedback_cycle:
        parts.append(
            "\n> **FEEDBACK CYCLE: this issue is coming back for rework.**\n"
            "> The description above is context only. Address the review feedback\n"
            "> and comments below; where they conflict with the description, follow the feedback."
        )

    if comments:
        parts.append("\n## Comments")
        for comment in comments[-MAX_COMMENTS:]:
            when = f" ({comment.created_at})" if comment.created_at else ""
            parts.append(f"\n**{comment.author}**{when}:\n{comment.body}")

    if review_status is not None and review_status.url:
        parts.append("\n## Pull Request")
        parts.append(f"URL: {review_status.url}")
        parts.append(f"Status: {review_status.state.value}")
        if review_status.source_branch:
            parts.append(f"Branch: {review_status.source_branch} -> {base_branch}")
    if diff:
        parts.append(f"\n## Diff\n```diff\n{diff}\n```")

    parts.append(f"\nRepo: {repo} | Branch: {base_branch} | {issue.web_url}")

    available = ", ".join(f'"{r}"' for r in results)
    parts.append(
        "\n---\n"
        "\n## Completion (mandatory)\n"
        "When you finish this task you MUST call `work_finish` with:\n"
        f'- `role`: "{role}"\n'
        f"- `issue_id`: {issue.iid}\n"
        f"- `result`: one of {available}\n"
        "- `summary`: a brief description of what you did\n"
        "\n"
        "Call `work_finish` even if you hit errors or cannot finish: "
        'use "blocked" with a summary explaining why you are stuck. '
        "Never end your session without calling `work_finish`."
    )

    return "\n".join(parts)


def build_dispatch_announcement(
    emoji: str,
    session_action: str,
    role: str,
    name: str | None,
    level: str,
    issue: Issue,
) -> str:
    verb = "Spawning" if session_action == "spawn" else "Sending"
    name_part = f" {name}" if name else ""
    return f"{emoji} {verb} {role.upper()}{name_part} ({level}) for #{issue.iid}: {issue.title}"


RESULT_EMOJI = {
    "done": "✅",
    "pass": "🎉",
    "fail": "❌",
    "refine": "🤔",
    "blocked": "🚫",
    "approve": "✅",
    "reject": "❌",
}


def build_completion_announcement(
    role: str,
    result: str,
    issue_id: int,
    summary: str | None,
    next_state: str,
    issue_url: str | None = None,
    pr_url: str | None = None,
) -> str:
    emoji = RESULT_EMOJI.get(result, "📋")
    lines = [f"{emoji} {role.upper()} {result.upper()} #{issue_id}"]
    if summary:
        lines[0] += f": {summary}"
    if pr_url:
        lines.append(f"PR: {pr_url}")
    if issue_url:
        lines.append(f"Issue: {issue_url}")
    if next_state:
        lines.append(f"Next: {next_state}")
    return "\n".join(lines)
