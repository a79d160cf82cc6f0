"""Shared fixtures: a temporary workspace wired to in-memory tracker and runtime."""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from devpipe.config import Config
from devpipe.core.context import build_context
from devpipe.testing import InMemoryRuntime, InMemoryTracker


def make_engine(workspace: Path, tracker, runtime, workflow=None, **overrides):
    settings = {"workspace_dir": workspace, "auto_tick": False, "lock_timeout": 2.0}
    settings.update(overrides)
    return build_context(
        Config(**settings),
        tracker_factory=lambda project: tracker,
        runtime_factory=lambda project: runtime,
        workflow=workflow,
        retry_sleep=lambda delay: None,
    )


def hours_ago(hours: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()


@pytest.fixture
def workspace():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def tracker():
    return InMemoryTracker()


@pytest.fixture
def runtime():
    return InMemoryRuntime()


@pytest.fixture
def engine(workspace, tracker, runtime):
    """Engine with one registered project, 'demo', and synchronous delivery."""
    ctx = make_engine(workspace, tracker, runtime, sync_delivery=True)
    ctx.store.register_project(
        "Demo",
        str(workspace / "repo"),
        {role: ctx.roles.desired_slots(role) for role in ctx.roles.ids()},
        slug="demo",
    )
    return ctx


@pytest.fixture
def env_vars():
    """Set environment variables for one test and restore them afterwards."""
    old_env = {}

    def set_env(**values):
        for k, v in values.items():
            if k not in old_env:
                old_env[k] = os.environ.get(k)
            os.environ[k] = v

    yield set_env

    for k, v in old_env.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v
