"""Read-only JSON status API for devpipe."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from devpipe import __version__
from devpipe.config import get_config
from devpipe.core import projects as projects_mod
from devpipe.core.context import EngineContext, build_context
from devpipe.core.errors import DevpipeError, ProjectNotFoundError


def _engine(request: Request) -> EngineContext:
    return request.app.state.engine


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    ctx = _engine(request)
    return JSONResponse({
        "name": "devpipe",
        "version": __version__,
        "projects": len(ctx.store.list_projects()),
    })


async def api_list_projects(request: Request):
    ctx = _engine(request)
    return JSONResponse([projects_mod.project_summary(ctx, p) for p in ctx.store.list_projects()])


async def api_get_project(request: Request):
    ctx = _engine(request)
    try:
        project = ctx.store.get_project(request.path_params["slug"])
    except ProjectNotFoundError:
        return JSONResponse({"error": "Project not found"}, status_code=404)
    data = project.to_dict()
    data["summary"] = projects_mod.project_summary(ctx, project)
    return JSONResponse(data)


async def api_project_workers(request: Request):
    ctx = _engine(request)
    try:
        project = ctx.store.get_project(request.path_params["slug"])
    except ProjectNotFoundError:
        return JSONResponse({"error": "Project not found"}, status_code=404)
    rows = projects_mod.worker_rows(ctx, project)
    role = request.query_params.get("role")
    if role:
        rows = [r for r in rows if r["role"] == role]
    if request.query_params.get("active") in ("1", "true"):
        rows = [r for r in rows if r["active"]]
    return JSONResponse(rows)


async def api_project_queue(request: Request):
    ctx = _engine(request)
    try:
        return JSONResponse(projects_mod.queue_status(ctx, request.path_params["slug"]))
    except ProjectNotFoundError:
        return JSONResponse({"error": "Project not found"}, status_code=404)
    except DevpipeError as e:
        return JSONResponse({"error": str(e)}, status_code=502)


async def api_workflow(request: Request):
    return JSONResponse(_engine(request).workflow.to_dict())


async def api_audit(request: Request):
    ctx = _engine(request)
    try:
        limit = int(request.query_params.get("limit", 50))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    events = ctx.audit.recent(
        limit=limit,
        project=request.query_params.get("project"),
        event=request.query_params.get("event"),
    )
    return JSONResponse([_event_dict(e) for e in events])


# ── Serialization ─────────────────────────────────────────────────────────────


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event": e.event,
        "project": e.project,
        "issueId": e.issue_id,
        "data": e.data,
        "createdAt": e.created_at.isoformat() if e.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(ctx: EngineContext | None = None) -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{slug}", api_get_project),
        Route("/api/projects/{slug}/workers", api_project_workers),
        Route("/api/projects/{slug}/queue", api_project_queue),
        Route("/api/workflow", api_workflow),
        Route("/api/audit", api_audit),
    ]
    app = Starlette(routes=routes)
    app.state.engine = ctx or build_context(get_config())
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
