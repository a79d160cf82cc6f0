"""MCP server exposing the dispatch and completion tools to orchestrators and workers."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from devpipe.config import get_config
from devpipe.core import projects as projects_mod
from devpipe.core.completion import complete
from devpipe.core.context import EngineContext, build_context
from devpipe.core.dispatch import dispatch_issue
from devpipe.core.errors import DevpipeError
from devpipe.core.health import check_project
from devpipe.core.heartbeat import Heartbeat, beat

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    engine: EngineContext
    heartbeat: Heartbeat | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the engine on startup; run the heartbeat while the server is up."""
    config = get_config()
    engine = build_context(config)

    heartbeat = None
    if config.heartbeat_interval > 0:
        heartbeat = Heartbeat(engine)
        heartbeat.start()

    try:
        yield AppContext(engine=engine, heartbeat=heartbeat)
    finally:
        if heartbeat:
            heartbeat.stop()


mcp = FastMCP("devpipe", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _engine(ctx: Context) -> EngineContext:
    return _ctx(ctx).engine


# ── Work Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def work_start(
    ctx: Context,
    project: str,
    issue_id: int,
    role: str,
    level: str | None = None,
    slot: int | None = None,
) -> dict:
    """Dispatch an issue to a worker.

    The issue must carry one of the role's queue labels. Level defaults to the
    one suggested by the issue's labels and text.
    """
    try:
        result = dispatch_issue(_engine(ctx), project, issue_id, role, level=level, slot_index=slot)
    except DevpipeError as e:
        return {"error": str(e)}
    return result.to_dict()


@mcp.tool()
def work_finish(
    ctx: Context,
    project: str,
    role: str,
    result: str,
    issue_id: int,
    summary: str | None = None,
    pr_url: str | None = None,
) -> dict:
    """Report the result of a task. Workers must call this when they are done.

    Valid results depend on the role: developer done/blocked, tester
    pass/fail/refine/blocked, reviewer approve/reject/blocked, architect
    done/blocked.
    """
    try:
        out = complete(_engine(ctx), project, role, result, issue_id, summary=summary, pr_url=pr_url)
    except DevpipeError as e:
        return {"error": str(e)}
    return out.to_dict()


# ── Status Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def queue_status(ctx: Context, project: str) -> dict:
    """List issues waiting in each queue of a project, grouped by role."""
    engine = _engine(ctx)
    try:
        data = projects_mod.queue_status(engine, project)
        data["workers"] = projects_mod.worker_rows(engine, engine.store.get_project(project))
    except DevpipeError as e:
        return {"error": str(e)}
    return data


@mcp.tool()
def health_check(ctx: Context, project: str, fix: bool = True) -> dict:
    """Check a project's slots against the tracker and live sessions, repairing drift when fix is set."""
    try:
        fixes = check_project(_engine(ctx), project, auto_fix=fix)
    except DevpipeError as e:
        return {"error": str(e)}
    return {
        "project": project,
        "healthy": not fixes,
        "fixes": [f.to_dict() for f in fixes],
    }


@mcp.tool()
def heartbeat_tick(ctx: Context, project: str | None = None, dry_run: bool = False) -> dict:
    """Run one health, review and queue pass over one project or all of them."""
    return beat(_engine(ctx), project, dry_run=dry_run).to_dict()


# ── Project Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def project_register(
    ctx: Context,
    name: str,
    repo: str,
    slug: str | None = None,
    base_branch: str = "main",
    channel_id: str | None = None,
    channel: str = "slack",
) -> dict:
    """Register a project and create its workflow labels in the tracker."""
    engine = _engine(ctx)
    try:
        project, advisories = projects_mod.register_project(
            engine, name, repo, slug=slug, base_branch=base_branch,
            channel_id=channel_id, channel=channel,
        )
    except DevpipeError as e:
        return {"error": str(e)}
    data = projects_mod.project_summary(engine, project)
    data["warnings"] = [a.to_dict() for a in advisories]
    return data
