"""JSON API for taskboard."""

import json
import logging
import math
from contextlib import contextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from taskboard.config import Config, get_config
from taskboard.core import projects as projects_mod
from taskboard.core import users as users_mod
from taskboard.core.cache import TaskCache, create_cache
from taskboard.core.events import EventBus
from taskboard.core.query import Pagination, TaskFilter
from taskboard.core.tasks import TaskService
from taskboard.db.engine import init_db
from taskboard.db.models import to_dict
from taskboard.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

USER_HEADER = "x-user-id"


@contextmanager
def _open(request: Request):
    """Yield a TaskService bound to a fresh connection, plus the calling user."""
    state = request.app.state
    db = init_db(state.config.db_path)
    try:
        ref = request.headers.get(USER_HEADER)
        user = users_mod.resolve_user(db, ref) if ref else None
        if not user:
            raise HTTPException(status_code=401, detail="Unknown or missing user")
        yield TaskService(db, cache=state.cache, bus=state.bus), user
    finally:
        db.close()


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Task handlers ─────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    params = request.query_params
    filters = TaskFilter.from_mapping(params)
    pagination = Pagination(page=params.get("page", 1), limit=params.get("limit", 10))
    with _open(request) as (service, user):
        page = service.find_all(user, filters, pagination)
    return JSONResponse({
        "data": [to_dict(t) for t in page.tasks],
        "total": page.total,
        "page": pagination.page,
        "limit": pagination.limit,
        "total_pages": math.ceil(page.total / pagination.limit),
    })


async def api_create_task(request: Request):
    body = await _body(request)
    with _open(request) as (service, user):
        task = service.create(body, user)
    return JSONResponse(to_dict(task), status_code=201)


async def api_get_task(request: Request):
    with _open(request) as (service, user):
        task = service.find_one(request.path_params["task_id"], user)
    return JSONResponse(to_dict(task))


async def api_update_task(request: Request):
    body = await _body(request)
    with _open(request) as (service, user):
        task = service.update(request.path_params["task_id"], body, user)
    return JSONResponse(to_dict(task))


async def api_delete_task(request: Request):
    with _open(request) as (service, user):
        service.remove(request.path_params["task_id"], user)
    return Response(status_code=204)


async def api_task_status(request: Request):
    body = await _body(request)
    with _open(request) as (service, user):
        task = service.update_status(request.path_params["task_id"], body.get("status"), user)
    return JSONResponse(to_dict(task))


async def api_task_priority(request: Request):
    body = await _body(request)
    with _open(request) as (service, user):
        task = service.update_priority(request.path_params["task_id"], body.get("priority"), user)
    return JSONResponse(to_dict(task))


async def api_task_assign(request: Request):
    body = await _body(request)
    assignee_id = body.get("assignee_id")
    if not assignee_id:
        raise ValidationError("assignee_id is required")
    with _open(request) as (service, user):
        task = service.assign(request.path_params["task_id"], assignee_id, user)
    return JSONResponse(to_dict(task))


async def api_task_unassign(request: Request):
    with _open(request) as (service, user):
        task = service.unassign(request.path_params["task_id"], user)
    return JSONResponse(to_dict(task))


async def api_task_time(request: Request):
    body = await _body(request)
    try:
        hours = float(body.get("hours"))
    except (TypeError, ValueError):
        raise ValidationError("hours must be a number") from None
    with _open(request) as (service, user):
        task = service.add_time_entry(request.path_params["task_id"], hours, user)
    return JSONResponse(to_dict(task))


async def api_task_block(request: Request):
    body = await _body(request)
    with _open(request) as (service, user):
        task = service.block(request.path_params["task_id"], body.get("reason", ""), user)
    return JSONResponse(to_dict(task))


async def api_task_unblock(request: Request):
    with _open(request) as (service, user):
        task = service.unblock(request.path_params["task_id"], user)
    return JSONResponse(to_dict(task))


async def api_task_archive(request: Request):
    with _open(request) as (service, user):
        task = service.archive(request.path_params["task_id"], user)
    return JSONResponse(to_dict(task))


async def api_task_unarchive(request: Request):
    with _open(request) as (service, user):
        task = service.unarchive(request.path_params["task_id"], user)
    return JSONResponse(to_dict(task))


async def api_task_activities(request: Request):
    with _open(request) as (service, user):
        activities = service.get_activities(request.path_params["task_id"], user)
    return JSONResponse([to_dict(a) for a in activities])


async def api_task_comments(request: Request):
    task_id = request.path_params["task_id"]
    if request.method == "POST":
        body = await _body(request)
        with _open(request) as (service, user):
            comment = service.add_comment(task_id, body.get("content", ""), user)
        return JSONResponse(to_dict(comment), status_code=201)
    with _open(request) as (service, user):
        comments = service.get_comments(task_id, user)
    return JSONResponse([to_dict(c) for c in comments])


async def api_bulk_update(request: Request):
    body = await _body(request)
    with _open(request) as (service, user):
        tasks = service.bulk_update(body.get("ids") or [], body.get("updates") or {}, user)
    return JSONResponse([to_dict(t) for t in tasks])


async def api_task_stats(request: Request):
    with _open(request) as (service, user):
        stats = service.get_stats(user, request.query_params.get("project_id"))
    return JSONResponse(to_dict(stats))


async def api_overdue_tasks(request: Request):
    with _open(request) as (service, user):
        tasks = service.get_overdue_tasks(user)
    return JSONResponse([to_dict(t) for t in tasks])


# ── Project handlers ──────────────────────────────────────────────────────────


async def api_projects(request: Request):
    if request.method == "POST":
        body = await _body(request)
        with _open(request) as (service, user):
            project = projects_mod.create_project(
                service.db, body.get("name", ""), user, body.get("description", "")
            )
        return JSONResponse(to_dict(project), status_code=201)
    with _open(request) as (service, user):
        projects = projects_mod.list_projects(service.db, user)
    return JSONResponse([to_dict(p) for p in projects])


async def api_project_tasks(request: Request):
    with _open(request) as (service, user):
        tasks = service.get_tasks_by_project(request.path_params["project_id"], user)
    return JSONResponse([to_dict(t) for t in tasks])


# ── Errors ────────────────────────────────────────────────────────────────────


def _error(status_code: int):
    async def handler(request: Request, exc: Exception):
        return JSONResponse({"error": str(exc)}, status_code=status_code)
    return handler


async def _http_error(request: Request, exc: HTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    cache: TaskCache | None = None,
    bus: EventBus | None = None,
) -> Starlette:
    config = config or get_config()
    routes = [
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/bulk", api_bulk_update, methods=["POST"]),
        Route("/api/tasks/stats", api_task_stats, methods=["GET"]),
        Route("/api/tasks/overdue", api_overdue_tasks, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/status", api_task_status, methods=["POST"]),
        Route("/api/tasks/{task_id}/priority", api_task_priority, methods=["POST"]),
        Route("/api/tasks/{task_id}/assign", api_task_assign, methods=["POST"]),
        Route("/api/tasks/{task_id}/unassign", api_task_unassign, methods=["POST"]),
        Route("/api/tasks/{task_id}/time", api_task_time, methods=["POST"]),
        Route("/api/tasks/{task_id}/block", api_task_block, methods=["POST"]),
        Route("/api/tasks/{task_id}/unblock", api_task_unblock, methods=["POST"]),
        Route("/api/tasks/{task_id}/archive", api_task_archive, methods=["POST"]),
        Route("/api/tasks/{task_id}/unarchive", api_task_unarchive, methods=["POST"]),
        Route("/api/tasks/{task_id}/activities", api_task_activities, methods=["GET"]),
        Route("/api/tasks/{task_id}/comments", api_task_comments, methods=["GET", "POST"]),
        Route("/api/projects", api_projects, methods=["GET", "POST"]),
        Route("/api/projects/{project_id}/tasks", api_project_tasks, methods=["GET"]),
    ]
    exception_handlers = {
        HTTPException: _http_error,
        ValidationError: _error(400),
        ForbiddenError: _error(403),
        NotFoundError: _error(404),
        ConflictError: _error(409),
    }
    app = Starlette(routes=routes, exception_handlers=exception_handlers)
    app.state.config = config
    app.state.cache = cache or create_cache(config)
    app.state.bus = bus or EventBus()
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    config = get_config()
    app = create_app(config)
    logger.info("Serving taskboard API on http://%s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())
