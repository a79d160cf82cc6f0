"""Tests for the session runtime, Slack notifier, git wrapper and message helpers."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from devpipe.core.messages import (
    build_completion_announcement,
    session_key,
    session_label,
    slot_name,
)
from devpipe.db.models import Channel, Project
from devpipe.integrations import git as git_mod
from devpipe.integrations.runtime import ClaudeCliRuntime, SessionError, session_uuid
from devpipe.integrations.slack import Notifier


def _fake_proc(pid=4242, running=True):
    proc = MagicMock()
    proc.pid = pid
    proc.poll.return_value = None if running else 0
    return proc


class TestClaudeCliRuntime:
    def test_first_delivery_starts_session(self, workspace):
        runtime = ClaudeCliRuntime(output_dir=workspace / "out", cwd=str(workspace))
        runtime.ensure_session("agent:x:subagent:demo-developer-medior-ada", "claude-sonnet-4-5")

        with patch("devpipe.integrations.runtime.subprocess.Popen", return_value=_fake_proc()) as popen:
            runtime.deliver_task("agent:x:subagent:demo-developer-medior-ada", "do it", "idem-1", 60)

        cmd = popen.call_args[0][0]
        assert cmd[:3] == ["claude", "-p", "do it"]
        assert "--session-id" in cmd
        assert cmd[cmd.index("--model") + 1] == "claude-sonnet-4-5"
        assert popen.call_args[1]["cwd"] == str(workspace)

    def test_second_delivery_resumes(self, workspace):
        key = "agent:x:subagent:demo-developer-medior-ada"
        runtime = ClaudeCliRuntime(output_dir=workspace / "out")
        runtime.ensure_session(key, "claude-sonnet-4-5")

        with patch("devpipe.integrations.runtime.subprocess.Popen", return_value=_fake_proc()) as popen:
            runtime.deliver_task(key, "first", "idem-1", 60)
            runtime.deliver_task(key, "second", "idem-2", 60)

        cmd = popen.call_args[0][0]
        assert cmd[cmd.index("--resume") + 1] == session_uuid(key)

    def test_duplicate_idempotency_key(self, workspace):
        key = "agent:x:subagent:demo-tester-medior-tim"
        runtime = ClaudeCliRuntime(output_dir=workspace / "out")
        runtime.ensure_session(key, "claude-sonnet-4-5")

        with patch("devpipe.integrations.runtime.subprocess.Popen", return_value=_fake_proc()) as popen:
            runtime.deliver_task(key, "task", "idem-1", 60)
            runtime.deliver_task(key, "task", "idem-1", 60)

        assert popen.call_count == 1

    def test_unknown_session(self, workspace):
        runtime = ClaudeCliRuntime(output_dir=workspace / "out")
        with pytest.raises(SessionError):
            runtime.deliver_task("nobody", "task", "idem-1", 60)

    def test_missing_binary(self, workspace):
        runtime = ClaudeCliRuntime(output_dir=workspace / "out")
        runtime.ensure_session("k", "m")
        with patch("devpipe.integrations.runtime.subprocess.Popen", side_effect=FileNotFoundError("claude")):
            with pytest.raises(SessionError):
                runtime.deliver_task("k", "task", "idem-1", 60)

    def test_alive_sessions(self, workspace):
        runtime = ClaudeCliRuntime(output_dir=workspace / "out")
        runtime.ensure_session("running", "m")
        runtime.ensure_session("finished", "m")
        runtime.ensure_session("idle", "m")

        with patch("devpipe.integrations.runtime.subprocess.Popen", return_value=_fake_proc(running=True)):
            runtime.deliver_task("running", "task", "idem-1", 60)
        with patch("devpipe.integrations.runtime.subprocess.Popen", return_value=_fake_proc(running=False)):
            runtime.deliver_task("finished", "task", "idem-2", 60)

        assert runtime.list_alive_sessions() == {"running"}

    def test_records_survive_restart(self, workspace):
        runtime = ClaudeCliRuntime(output_dir=workspace / "out")
        runtime.ensure_session("k", "m")
        with patch("devpipe.integrations.runtime.subprocess.Popen", return_value=_fake_proc()):
            runtime.deliver_task("k", "task", "idem-1", 60)

        record = json.loads((workspace / "out" / "sessions" / f"{session_uuid('k')}.json").read_text())
        assert record["started"]
        assert record["pid"] == 4242

        restarted = ClaudeCliRuntime(output_dir=workspace / "out")
        with patch("devpipe.integrations.runtime._is_pid_alive", return_value=True):
            assert restarted.list_alive_sessions() == {"k"}


class TestNotifier:
    def _project(self):
        return Project(
            slug="demo", name="Demo", repo="/tmp/demo",
            channels=[
                Channel(channel_id="C1"),
                Channel(channel_id="C2", events=["workerComplete"]),
                Channel(channel_id="123", channel="telegram"),
            ],
        )

    def test_disabled_without_token(self):
        assert Notifier(None).notify(self._project(), "workerStart", "hi") == 0

    def test_sends_to_subscribed_slack_channels(self):
        with patch("devpipe.integrations.slack.send_message") as send:
            sent = Notifier("xoxb-test").notify(self._project(), "workerStart", "hi")
        assert sent == 1
        assert send.call_args[0][1] == "C1"

    def test_failures_are_swallowed(self):
        with patch("devpipe.integrations.slack.send_message", side_effect=RuntimeError("rate limited")):
            assert Notifier("xoxb-test").notify(self._project(), "workerComplete", "hi") == 0


class TestGit:
    def test_failure_raises_git_error(self):
        error = subprocess.CalledProcessError(1, ["git"], stderr="fatal: not a git repository\n")
        with patch("devpipe.integrations.git.subprocess.run", side_effect=error):
            with pytest.raises(git_mod.GitError, match="not a git repository"):
                git_mod.pull("/tmp/nowhere")

    def test_pull_command(self):
        with patch("devpipe.integrations.git.subprocess.run") as run:
            run.return_value.stdout = "Already up to date.\n"
            assert git_mod.pull("/tmp/repo", "develop", timeout=5) == "Already up to date."
        assert run.call_args[0][0] == ["git", "pull", "--ff-only", "origin", "develop"]
        assert run.call_args[1]["timeout"] == 5

    def test_remote_url_without_origin(self):
        with patch("devpipe.integrations.git.subprocess.run", side_effect=FileNotFoundError("git")):
            assert git_mod.remote_url("/tmp/repo") is None


class TestMessages:
    def test_slot_names_are_stable_and_distinct(self):
        names = [slot_name("demo", "developer", "medior", i) for i in range(4)]
        assert len(set(names)) == 4
        assert names == [slot_name("demo", "developer", "medior", i) for i in range(4)]

    def test_session_key_and_label(self):
        assert session_key("main", "demo", "developer", "medior", "Ada") == (
            "agent:main:subagent:demo-developer-medior-ada"
        )
        assert session_label("my-app", "developer", "medior", "Ada") == "My App | Developer Ada (Medior)"

    def test_completion_announcement(self):
        text = build_completion_announcement(
            "tester", "pass", 42, "All green", "Done!", pr_url="https://tracker.example/pulls/1"
        )
        assert text.splitlines() == ["🎉 TESTER PASS #42: All green", "PR: https://tracker.example/pulls/1", "Next: Done!"]
