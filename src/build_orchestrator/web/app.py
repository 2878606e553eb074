"""Read-only JSON API over the stored build projects."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from build_orchestrator.config import get_config
from build_orchestrator.core import store as store_mod
from build_orchestrator.core.manager import project_summary, project_to_dict
from build_orchestrator.core.workspace import list_files
from build_orchestrator.db.engine import init_db


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = store_mod.list_projects(db)
        return JSONResponse([project_summary(p) for p in projects])
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = store_mod.get_project(db, project_id)
        if not project:
            return JSONResponse({"error": "Project not found"}, status_code=404)
        return JSONResponse(project_to_dict(project))
    finally:
        db.close()


async def api_project_files(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = store_mod.get_project(db, project_id)
        if not project:
            return JSONResponse({"error": "Project not found"}, status_code=404)
        return JSONResponse({"files": list_files(project.directory)})
    finally:
        db.close()


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/files", api_project_files),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
