"""Slack Web API integration for pipeline notifications."""

import logging
from dataclasses import dataclass

from devpipe.db.models import Project

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def _section(text: str) -> list[dict]:
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


def format_dispatch(announcement: str, issue_url: str | None = None) -> list[dict]:
    link = f"\n<{issue_url}|View issue>" if issue_url else ""
    return _section(f":rocket: {announcement}{link}")


def format_completion(announcement: str, pr_url: str | None = None) -> list[dict]:
    link = f"\n<{pr_url}|View Pull Request>" if pr_url else ""
    return _section(f"{announcement}{link}")


def format_review_transition(issue_id: int, from_label: str, to_label: str, reason: str) -> list[dict]:
    return _section(f":eyes: *Review update* #{issue_id}: {from_label} → *{to_label}* ({reason})")


def format_health_fix(project: str, fixes: list[dict]) -> list[dict]:
    lines = [f"- `{f['type']}` {f['role']}/{f.get('level') or '-'} #{f.get('issueId') or '?'}" for f in fixes]
    return _section(f":stethoscope: *Health repairs in {project}*\n" + "\n".join(lines))


class Notifier:
    """Sends pipeline events to the Slack channels a project subscribes to.

    Delivery is best-effort: failures are logged and never raised.
    """

    def __init__(self, token: str | None):
        self.token = token

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def notify(self, project: Project, event: str, text: str, blocks: list[dict] | None = None) -> int:
        """Post to every subscribed Slack channel. Returns the number of messages sent."""
        if not self.enabled:
            return 0
        sent = 0
        for channel in project.channels:
            if channel.channel != "slack" or not channel.wants(event):
                continue
            try:
                send_message(self.token, channel.channel_id, text, blocks)
                sent += 1
            except Exception:
                logger.exception("Failed to notify %s about %s", channel.channel_id, event)
        return sent
