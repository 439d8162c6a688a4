from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, RedirectResponse
from jinja2 import Environment, FileSystemLoader, select_autoescape
from starlette.datastructures import UploadFile

from ..common.errors import PublishError
from ..common.logging import get_project_logger
from ..common.metrics import TASKS_SUBMITTED_TOTAL
from ..models import HealthResponse, TaskListResponse, TaskOut
from ..queue.envelope import Failure, InProgress, encode_status

router = APIRouter()
log = get_project_logger("api")

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).resolve().parents[1] / "templates")),
    autoescape=select_autoescape(["html", "xml", "j2"]),
)


def _registry(request: Request):
    return request.app.state.registry


def _actor(request: Request):
    return request.app.state.actor


@router.post("/tasks")
async def submit_tasks(request: Request):
    registry = _registry(request)
    actor = _actor(request)
    max_bytes = request.app.state.settings.max_upload_bytes

    form = await request.form()
    uploads = [v for _, v in form.multi_items() if isinstance(v, UploadFile)]
    if not uploads:
        raise HTTPException(status_code=400, detail="No file in upload")

    # validate every part before the first send so a rejected upload leaves no tasks behind
    parts = []
    for upload in uploads:
        data = await upload.read()
        if not data:
            continue
        if len(data) > max_bytes:
            raise HTTPException(status_code=413, detail=f"{upload.filename} exceeds {max_bytes} bytes")
        parts.append((upload.filename, data))

    for filename, data in parts:
        minted = []

        def register(task_id: str) -> None:
            registry.insert(task_id)
            minted.append(task_id)

        body = encode_status(InProgress(data=data))
        try:
            # exchange raw input for a correlation id; the task is Pending before the publish
            task_id = await run_in_threadpool(actor.send, body, register)
        except PublishError as e:
            for task_id in minted:
                registry.update(task_id, Failure(reason=f"could not enqueue task: {e.message}"))
            log.error("task_submit_failed", extra={"payload": {"tasks": minted, "error": str(e)}})
            raise HTTPException(status_code=503, detail="Task queue unavailable")

        TASKS_SUBMITTED_TOTAL.inc()
        log.info(
            "task_submitted",
            extra={"payload": {"task_id": task_id, "filename": filename, "size": len(data)}},
        )

    return RedirectResponse("/tasks", status_code=302)


@router.get("/tasks", response_class=HTMLResponse)
async def list_tasks(request: Request):
    tasks = [TaskOut.from_record(rec) for rec in _registry(request).snapshot()]
    html = _templates.get_template("tasks.html.j2").render(tasks=tasks)
    return HTMLResponse(html)


@router.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks_json(request: Request):
    return TaskListResponse(tasks=[TaskOut.from_record(rec) for rec in _registry(request).snapshot()])


@router.get("/api/tasks/{task_id}", response_model=TaskOut)
async def get_task(task_id: str, request: Request):
    rec = _registry(request).get(task_id)
    if not rec:
        raise HTTPException(status_code=404, detail="Unknown task")
    return TaskOut.from_record(rec)


@router.get("/healthz", response_model=HealthResponse)
async def health(request: Request):
    return HealthResponse(status="ok", tasks=len(_registry(request)))
