from contextlib import asynccontextmanager
from typing import Optional
import logging
import os

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

import database
from completions import (
    CompletionLedger,
    batch_create_completions,
    batch_delete_completions,
    create_completion,
    delete_completion,
    get_completions,
    rollover_occurrence,
    toggle_occurrence,
    update_completion,
)
from database import (
    create_task_db,
    delete_task_db,
    find_completions_db,
    get_all_tasks,
    get_task_db,
    update_task_db,
)
from dates import Clock, date_key, system_clock, to_canonical_date
from errors import NotFoundError, TrackerError
from models import (
    BatchCreateRequest,
    BatchDeleteRequest,
    Completion,
    CompletionCreate,
    CompletionUpdate,
    OffScheduleRequest,
    OffScheduleResult,
    RolloverRequest,
    RolloverResult,
    SeriesChanges,
    SplitRequest,
    SplitResult,
    Task,
    TaskCreate,
    TaskUpdate,
    ToggleRequest,
    ToggleResult,
)
from off_schedule import clear_off_schedule, set_off_schedule
from projection import project_range
from series import requires_scope_decision, split_series

load_dotenv()

logging.basicConfig(
    level=os.getenv("TRACKER_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("TRACKER_CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup
    database.init_db()
    yield
    # Shutdown (nothing to do)

app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TrackerError)
async def tracker_error_handler(_request: Request, exc: TrackerError):
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, _exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "code": TrackerError.code})


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Acting user, taken from the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def get_clock() -> Clock:
    return system_clock


# Tasks

@app.get("/tasks")
def get_tasks(user_id: str = Depends(get_user_id)) -> list[Task]:
    return get_all_tasks(user_id, root_only=True)


@app.post("/tasks")
def create_task(task_data: TaskCreate, user_id: str = Depends(get_user_id)) -> Task:
    return create_task_db(user_id, task_data)


@app.get("/tasks/calendar")
def get_calendar(start: str, end: str, user_id: str = Depends(get_user_id)) -> dict[str, list[Task]]:
    """Tasks occurring on each date from start to end, keyed YYYY-MM-DD."""
    start_day = to_canonical_date(start, "start")
    end_day = to_canonical_date(end, "end")
    tasks = get_all_tasks(user_id, root_only=True)

    ledger = CompletionLedger.load(user_id, start_date=start_day, end_date=end_day)
    # One-time tasks need their full history to tell "completed elsewhere" apart from "due"
    one_time_ids = [task.id for task in tasks if not task.is_recurring and task.start_date]
    for completion in find_completions_db(user_id, one_time_ids):
        ledger.add(completion)

    days = project_range(tasks, start_day, end_day, ledger)
    return {date_key(day): day_tasks for day, day_tasks in days.items()}


@app.post("/tasks/off-schedule")
def post_off_schedule(request: OffScheduleRequest, user_id: str = Depends(get_user_id)) -> OffScheduleResult:
    return set_off_schedule(user_id, request.task_id, request.date, request.outcome, request.note)


@app.delete("/tasks/off-schedule")
def delete_off_schedule(task_id: str, date: str, user_id: str = Depends(get_user_id)) -> dict:
    removed = clear_off_schedule(user_id, task_id, date)
    return {"status": "cleared" if removed else "unchanged"}


@app.get("/tasks/{task_id}")
def get_task(task_id: str, user_id: str = Depends(get_user_id)) -> Task:
    task = get_task_db(user_id, task_id)
    if task is None:
        raise NotFoundError("Task")
    return task


@app.patch("/tasks/{task_id}")
def update_task(task_id: str, task_data: TaskUpdate, user_id: str = Depends(get_user_id)) -> Task:
    updates = {field: getattr(task_data, field) for field in task_data.model_fields_set}
    result = update_task_db(user_id, task_id, **updates)
    if not result:
        raise NotFoundError("Task")
    return result


@app.delete("/tasks/{task_id}")
def delete_task(task_id: str, user_id: str = Depends(get_user_id)) -> dict:
    if not delete_task_db(user_id, task_id):
        raise NotFoundError("Task")
    return {"status": "deleted"}


@app.post("/tasks/{task_id}/toggle")
def toggle_task(task_id: str, request: Optional[ToggleRequest] = None, user_id: str = Depends(get_user_id),
                clock: Clock = Depends(get_clock)) -> ToggleResult:
    date = request.date if request is not None else None
    return toggle_occurrence(user_id, task_id, date, clock=clock)


@app.post("/tasks/{task_id}/scope-check")
def scope_check(task_id: str, changes: SeriesChanges, user_id: str = Depends(get_user_id)) -> dict:
    task = get_task_db(user_id, task_id)
    if task is None:
        raise NotFoundError("Task")
    return {"requires_scope_decision": requires_scope_decision(task, changes)}


@app.post("/tasks/{task_id}/split")
def split_task(task_id: str, request: SplitRequest, user_id: str = Depends(get_user_id)) -> SplitResult:
    return split_series(user_id, task_id, request.changes, request.edit_date, request.scope)


@app.post("/tasks/{task_id}/rollover")
def rollover_task(task_id: str, request: RolloverRequest, user_id: str = Depends(get_user_id)) -> RolloverResult:
    return rollover_occurrence(user_id, task_id, request.date)


# Completions

@app.get("/completions")
def list_completions(task_id: Optional[str] = None, start_date: Optional[str] = None,
                     end_date: Optional[str] = None, user_id: str = Depends(get_user_id)) -> list[Completion]:
    return get_completions(user_id, task_id, start_date, end_date)


@app.post("/completions")
def post_completion(request: CompletionCreate, user_id: str = Depends(get_user_id)) -> Completion:
    return create_completion(user_id, request.task_id, request.date, request.outcome, request.note)


@app.post("/completions/batch")
def post_completions_batch(request: BatchCreateRequest, user_id: str = Depends(get_user_id)) -> list[Completion]:
    return batch_create_completions(user_id, request.completions)


@app.delete("/completions/batch")
def delete_completions_batch(request: BatchDeleteRequest, user_id: str = Depends(get_user_id)) -> dict:
    return {"deleted": batch_delete_completions(user_id, request.completions)}


@app.patch("/completions/{completion_id}")
def patch_completion(completion_id: str, request: CompletionUpdate,
                     user_id: str = Depends(get_user_id)) -> Completion:
    fields = {field: getattr(request, field) for field in request.model_fields_set}
    return update_completion(user_id, completion_id, **fields)


@app.delete("/completions")
def delete_completion_endpoint(task_id: str, date: str, user_id: str = Depends(get_user_id)) -> dict:
    return {"deleted": delete_completion(user_id, task_id, date)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
