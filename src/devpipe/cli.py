"""CLI entry point for devpipe."""

import json
import logging
import os
import sys
import time

import click

from devpipe import __version__
from devpipe.config import get_config
from devpipe.core import projects as projects_mod
from devpipe.core.completion import complete
from devpipe.core.context import EngineContext, build_context
from devpipe.core.dispatch import dispatch_issue
from devpipe.core.errors import DevpipeError, WorkflowConfigError
from devpipe.core.health import check_project
from devpipe.core.heartbeat import Heartbeat, beat
from devpipe.core.queue import project_tick
from devpipe.core.review import review_pass
from devpipe.core.roles import RoleRegistry
from devpipe.core.workflow import load_workflow
from devpipe.db.store import WorkerStateStore


def _engine() -> EngineContext:
    try:
        return build_context(get_config())
    except DevpipeError as e:
        _fail(e)


def _fail(e: Exception):
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _echo_warnings(warnings: list[dict]) -> None:
    for w in warnings:
        click.echo(f"  ! {w['step']}: {w['message']}")


@click.group()
@click.version_option(__version__, prog_name="devpipe")
def main():
    """devpipe - workflow dispatch engine for autonomous workers"""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo", "repo_path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Base branch name")
@click.option("--slug", default=None, help="Project slug (default: derived from the name)")
@click.option("--channel-id", default=None, help="Notification channel id")
@click.option("--channel", default="slack", help="Notification channel type")
@click.option("--labels/--no-labels", default=True, help="Create workflow labels in the tracker")
def init_project(project_name, repo_path, branch, slug, channel_id, channel, labels):
    """Register a new project."""
    ctx = _engine()
    try:
        project, advisories = projects_mod.register_project(
            ctx,
            project_name,
            os.path.abspath(repo_path),
            slug=slug,
            base_branch=branch,
            channel_id=channel_id,
            channel=channel,
            create_labels=labels,
        )
    except DevpipeError as e:
        _fail(e)
    click.echo(f"Project registered: {project.slug} ({project.name})")
    click.echo(f"  Repo: {project.repo}")
    click.echo(f"  Branch: {project.base_branch}")
    if project.repo_remote:
        click.echo(f"  Remote: {project.repo_remote}")
    _echo_warnings([a.to_dict() for a in advisories])


@main.group("project")
def project_group():
    """Inspect registered projects."""
    pass


@project_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def project_list(json_output):
    """List registered projects."""
    ctx = _engine()
    summaries = [projects_mod.project_summary(ctx, p) for p in ctx.store.list_projects()]
    if json_output:
        _echo_json(summaries)
        return
    if not summaries:
        click.echo("No projects registered.")
        return
    for s in summaries:
        click.echo(f"  {s['slug']}: {s['name']} [{s['activeWorkers']}/{s['slots']} busy] {s['repo']}")


@main.command("status")
@click.argument("project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status(project, json_output):
    """Show the worker slots of a project."""
    ctx = _engine()
    try:
        p = ctx.store.get_project(project)
    except DevpipeError as e:
        _fail(e)
    rows = projects_mod.worker_rows(ctx, p)
    if json_output:
        _echo_json(rows)
        return
    click.echo(f"Project: {p.slug} ({p.name})")
    for r in rows:
        icon = "●" if r["active"] else "○"
        busy = f" #{r['issueId']} since {r['startTime']}" if r["active"] else ""
        click.echo(f"  {icon} {r['role']}/{r['level']}#{r['slot']} {r['name'] or '-'}{busy}")


@main.command("queue")
@click.argument("project")
def queue(project):
    """Show issues waiting in each queue."""
    ctx = _engine()
    try:
        data = projects_mod.queue_status(ctx, project)
    except DevpipeError as e:
        _fail(e)
    for role, labels in data["queues"].items():
        click.echo(f"{role}:")
        for label, issues in labels.items():
            click.echo(f"  {label} ({len(issues)})")
            for i in issues:
                click.echo(f"    #{i['issueId']} {i['title']}")


# ── Workflow Commands ─────────────────────────────────────────────────────────


@main.group("workflow")
def workflow_group():
    """Inspect the workflow statechart."""
    pass


@workflow_group.command("show")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def workflow_show(json_output):
    """Show the active workflow."""
    ctx = _engine()
    if json_output:
        _echo_json(ctx.workflow.to_dict())
        return
    click.echo(f"Initial: {ctx.workflow.initial}   Review policy: {ctx.workflow.review_policy.value}")
    for state_id, state in ctx.workflow.states.items():
        role = f" [{state.role}]" if state.role else ""
        click.echo(f"  {state.label} ({state_id}, {state.type.value}){role}")
        for event, t in state.on.items():
            target = ctx.workflow.states[t.target].label if t.target in ctx.workflow.states else t.target
            actions = f" {list(t.actions)}" if t.actions else ""
            click.echo(f"    {event} → {target}{actions}")


@workflow_group.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def workflow_validate(path):
    """Validate a workflow YAML file."""
    try:
        wf = load_workflow(path, known_roles=RoleRegistry().ids())
    except WorkflowConfigError as e:
        click.echo("Workflow is invalid:", err=True)
        for problem in e.problems:
            click.echo(f"  - {problem}", err=True)
        sys.exit(1)
    except DevpipeError as e:
        _fail(e)
    click.echo(f"Workflow OK: {len(wf.states)} states, roles: {', '.join(wf.roles())}")


# ── State Commands ────────────────────────────────────────────────────────────


@main.command("migrate")
def migrate():
    """Rewrite the worker state file in the current schema."""
    config = get_config()
    store = WorkerStateStore(config.workspace_dir, lock_timeout=config.lock_timeout, lock_stale=config.lock_stale)
    try:
        changed = store.migrate()
    except DevpipeError as e:
        _fail(e)
    click.echo(f"Migrated {store.path}" if changed else "Already up to date.")


@main.command("audit")
@click.option("--project", default=None)
@click.option("--event", default=None, help="Filter by event name")
@click.option("--limit", default=20, type=int)
def audit(project, event, limit):
    """Show recent audit events."""
    ctx = _engine()
    events = ctx.audit.recent(limit=limit, project=project, event=event)
    if not events:
        click.echo("No events found.")
        return
    for e in events:
        issue = f" #{e.issue_id}" if e.issue_id else ""
        click.echo(f"  {e.created_at} {e.event} {e.project or '-'}{issue} {json.dumps(e.data, default=str)}")


# ── Work Commands ─────────────────────────────────────────────────────────────


@main.command("dispatch")
@click.argument("project")
@click.argument("issue_id", type=int)
@click.option("--role", required=True)
@click.option("--level", default=None, help="Level (default: chosen from the issue)")
@click.option("--slot", "slot_index", default=None, type=int)
def dispatch_cmd(project, issue_id, role, level, slot_index):
    """Dispatch an issue to a worker slot."""
    ctx = _engine()
    try:
        result = dispatch_issue(ctx, project, issue_id, role, level=level, slot_index=slot_index)
    except DevpipeError as e:
        _fail(e)
    click.echo(result.announcement)
    click.echo(f"  {result.from_label} → {result.to_label}, slot {result.role}/{result.level}#{result.slot_index}")
    _echo_warnings(result.to_dict()["warnings"])
    if result.delivery is not None:
        result.delivery.join(ctx.config.dispatch_timeout)


@main.command("finish")
@click.argument("project")
@click.argument("issue_id", type=int)
@click.option("--role", required=True)
@click.option("--result", "result_name", required=True)
@click.option("--summary", default=None)
@click.option("--pr-url", default=None)
def finish(project, issue_id, role, result_name, summary, pr_url):
    """Report a worker's result for an issue."""
    ctx = _engine()
    try:
        result = complete(ctx, project, role, result_name, issue_id, summary=summary, pr_url=pr_url)
    except DevpipeError as e:
        _fail(e)
    click.echo(result.announcement)
    click.echo(f"  {result.label_transition}")
    _echo_warnings(result.to_dict()["warnings"])


@main.command("tick")
@click.argument("project", required=False)
@click.option("--role", default=None)
@click.option("--max", "max_pickups", default=None, type=int)
@click.option("--dry-run", is_flag=True)
def tick(project, role, max_pickups, dry_run):
    """Fill free slots from the queues."""
    ctx = _engine()
    slugs = [project] if project else [p.slug for p in ctx.store.list_projects()]
    for slug in slugs:
        try:
            result = project_tick(ctx, slug, target_role=role, max_pickups=max_pickups, dry_run=dry_run)
        except DevpipeError as e:
            _fail(e)
        click.echo(f"{slug}: {len(result.pickups)} pickup(s)")
        for p in result.pickups:
            click.echo(f"  #{p.issue_id} {p.title} → {p.role}/{p.level} ({p.session_action})")
        for s in result.skipped:
            click.echo(f"  skipped #{s['issueId']}: {s['reason']}")


@main.command("health")
@click.argument("project")
@click.option("--fix/--no-fix", default=True, help="Repair what is found")
def health(project, fix):
    """Check slots and labels for drift."""
    ctx = _engine()
    try:
        fixes = check_project(ctx, project, auto_fix=fix)
    except DevpipeError as e:
        _fail(e)
    if not fixes:
        click.echo("Healthy.")
        return
    for f in fixes:
        mark = "fixed" if f.fixed else "found"
        click.echo(f"  [{mark}] {f.type}: {f.message}")


@main.command("review")
@click.argument("project")
def review(project):
    """Advance issues waiting on pull request review."""
    ctx = _engine()
    try:
        moved = review_pass(ctx, project)
    except DevpipeError as e:
        _fail(e)
    click.echo(f"{len(moved)} transition(s)")
    for t in moved:
        click.echo(f"  #{t.issue_id}: {t.from_label} → {t.to_label} ({t.event})")


@main.command("heartbeat")
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.option("--interval", default=None, type=float, help="Seconds between cycles")
def heartbeat(once, interval):
    """Run health, review and tick passes periodically."""
    ctx = _engine()
    if once:
        for p in beat(ctx).projects:
            err = f" error: {p.error}" if p.error else ""
            click.echo(
                f"{p.project}: {p.health_fixes} fix(es), {p.review_transitions} review transition(s), "
                f"{p.pickups} pickup(s){err}"
            )
        return
    hb = Heartbeat(ctx, interval=interval)
    hb.start()
    click.echo(f"Heartbeat running every {hb.interval}s (Ctrl-C to stop)")
    try:
        while hb.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        hb.stop()


# ── Servers ───────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve(host, port):
    """Run the read-only status API."""
    from devpipe.web.app import run_server

    click.echo(f"Serving status API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from devpipe.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
