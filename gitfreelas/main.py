import threading
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from celery import Celery

from . import developers, repositories, tasks, webhooks
from .client import Client
from .config import DATABASE_URL, GITHUB_WEBHOOK_SECRET, LOG_LEVEL, REDIS_URL
from .errors import (
    ClientError,
    ForeignKeyConstraintError,
    NotAuthenticatedError,
    QueryValidationError,
    RecordNotFoundError,
    ServiceError,
    UniqueConstraintError,
)
from .log import setup_logging
from .models import TaskStatus, utcnow
from .schemas import (
    ActionResponse,
    ApplyTaskRequest,
    ApproveTaskRequest,
    CreateTaskRequest,
    MyTasksResponse,
    PullRequestEvent,
    ReviewSubmissionRequest,
    TaskDeveloperOut,
    TaskFilters,
    TaskListResponse,
    TaskOut,
    TaskSort,
    UpdateTaskStatusRequest,
)

logger = setup_logging(LOG_LEVEL)

# Celery setup
celery_app = Celery("gitfreelas", broker=REDIS_URL)

app = FastAPI(title="GitFreelas")

_client: Client | None = None
_client_lock = threading.Lock()


def get_client() -> Client:
    global _client
    if _client is None:
        # Sync dependencies run in the threadpool
        with _client_lock:
            if _client is None:
                client = Client(url=DATABASE_URL)
                client.create_all()
                _client = client
    return _client


def get_current_user(authorization: Optional[str] = Header(default=None), client: Client = Depends(get_client)) -> dict:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise NotAuthenticatedError("Not authenticated.")
    token = authorization.split(" ", 1)[1].strip()
    session = client.session.find_first(
        where={"token": token, "expires_at": {"gt": utcnow()}},
        include={"user": True},
    )
    if session is None:
        raise NotAuthenticatedError("Session expired or invalid.")
    return session["user"]


def dispatch_job(name: str, *args) -> bool:
    try:
        celery_app.send_task(f"workers.tasks.{name}", args=list(args))
        return True
    except Exception as e:
        logger.warning("could not queue %s%r: %s", name, args, e)
        return False


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ClientError)
async def client_error_handler(request: Request, exc: ClientError):
    if isinstance(exc, RecordNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (UniqueConstraintError, ForeignKeyConstraintError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, QueryValidationError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.get("/")
def read_root():
    return {"message": "Welcome to GitFreelas!"}


@app.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    status_in: Optional[List[TaskStatus]] = Query(default=None, alias="status"),
    min_value: Optional[str] = None,
    max_value: Optional[str] = None,
    deadline_from: Optional[datetime] = None,
    deadline_to: Optional[datetime] = None,
    creator_id: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[TaskSort] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1),
    client: Client = Depends(get_client),
):
    try:
        filters = TaskFilters(
            status=status_in,
            min_value=min_value,
            max_value=max_value,
            deadline_from=deadline_from,
            deadline_to=deadline_to,
            creator_id=creator_id,
            search=search,
        )
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False)) from e
    return tasks.get_tasks(client, filters, sort, page, limit)


@app.get("/tasks/mine", response_model=MyTasksResponse)
def my_tasks(user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    return tasks.get_my_tasks(client, user["id"])


@app.get("/tasks/{task_id}", response_model=TaskOut)
def read_task(task_id: str, client: Client = Depends(get_client)):
    task = tasks.get_task_by_id(client, task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found.")
    return task


@app.post("/tasks", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
def create_task(request: CreateTaskRequest, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    return tasks.create_task(client, user["id"], request)


@app.patch("/tasks/{task_id}/status", response_model=TaskOut)
def update_status(task_id: str, request: UpdateTaskStatusRequest, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    return tasks.update_task_status(client, user["id"], task_id, request.status)


@app.delete("/tasks/{task_id}", response_model=ActionResponse)
def delete_task(task_id: str, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    tasks.delete_task(client, user["id"], task_id)
    return ActionResponse(success=True)


@app.post("/tasks/{task_id}/apply", response_model=TaskDeveloperOut, status_code=status.HTTP_201_CREATED)
def apply_to_task(task_id: str, request: ApplyTaskRequest, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    return developers.apply_to_task(client, user["id"], task_id, request.wallet_address)


@app.post("/tasks/{task_id}/accept", response_model=ActionResponse)
def accept_developer(task_id: str, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    task = developers.accept_developer(client, user["id"], task_id)
    # Repository creation runs in the worker
    queued = dispatch_job("create_task_repository", task_id)
    message = "Developer accepted, repository is being created." if queued else "Developer accepted! Repository will be created soon."
    return ActionResponse(success=True, message=message, task=task)


@app.post("/tasks/{task_id}/reject", response_model=ActionResponse)
def reject_developer(task_id: str, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    developers.reject_developer(client, user["id"], task_id)
    return ActionResponse(success=True)


@app.post("/tasks/{task_id}/cancel-application", response_model=ActionResponse)
def cancel_application(task_id: str, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    developers.cancel_task_application(client, user["id"], task_id)
    return ActionResponse(success=True)


@app.post("/tasks/{task_id}/submit", response_model=ActionResponse)
def submit_task(task_id: str, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    task = developers.submit_task_for_approval(client, user["id"], task_id)
    return ActionResponse(success=True, task=task)


@app.post("/tasks/{task_id}/approve", response_model=ActionResponse)
def approve_task(task_id: str, request: ApproveTaskRequest, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    task = developers.approve_task_completion(client, user["id"], task_id, request.release_tx_hash)
    return ActionResponse(success=True, message="Work approved, payment release recorded.", task=task)


@app.post("/tasks/{task_id}/request-revision", response_model=ActionResponse)
def request_revision(task_id: str, request: ReviewSubmissionRequest, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    task = developers.request_task_revision(client, user["id"], task_id, request.pr_number, request.feedback)
    dispatch_job("comment_on_pull_request", task_id, request.pr_number, developers.review_comment("revision", request.feedback))
    return ActionResponse(success=True, message="Changes requested, the developer has been notified.", task=task)


@app.post("/tasks/{task_id}/reject-submission", response_model=ActionResponse)
def reject_submission(task_id: str, request: ReviewSubmissionRequest, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    task = developers.reject_task_submission(client, user["id"], task_id, request.pr_number, request.feedback)
    dispatch_job("comment_on_pull_request", task_id, request.pr_number, developers.review_comment("rejection", request.feedback))
    return ActionResponse(success=True, message="Work rejected. The task was cancelled and the value will be refunded.", task=task)


@app.delete("/tasks/{task_id}/repository/collaborators/{username}", response_model=ActionResponse)
def remove_collaborator(task_id: str, username: str, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    repositories.check_collaborator_removal(client, user["id"], task_id, username)
    queued = dispatch_job("remove_repository_collaborator", task_id, username)
    return ActionResponse(success=queued, message="Developer is being removed from the repository." if queued else "Could not queue the removal.")


@app.delete("/tasks/{task_id}/repository", response_model=ActionResponse)
def delete_repository(task_id: str, user: dict = Depends(get_current_user), client: Client = Depends(get_client)):
    repositories.creator_repository(client, user["id"], task_id)
    queued = dispatch_job("delete_task_repository", task_id)
    return ActionResponse(success=queued, message="Repository is being deleted." if queued else "Could not queue the deletion.")


@app.post("/webhooks/github")
async def github_webhook(request: Request, client: Client = Depends(get_client)):
    body = await request.body()
    if not webhooks.verify_signature(body, request.headers.get("x-hub-signature-256"), GITHUB_WEBHOOK_SECRET):
        logger.warning("rejected GitHub webhook with an invalid signature")
        raise NotAuthenticatedError("Invalid signature")
    if request.headers.get("x-github-event", "pull_request") != "pull_request":
        return {"message": "Event ignored"}
    try:
        event = PullRequestEvent.model_validate_json(body)
    except ValidationError:
        raise ServiceError("Invalid webhook payload") from None
    return await run_in_threadpool(webhooks.handle_pull_request_event, client, event)
