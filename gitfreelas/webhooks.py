"""GitHub webhook handling: signature check and pull request events."""

import hashlib
import hmac
import logging

from .developers import move_status
from .errors import NotFoundError, PermissionDeniedError
from .models import TaskStatus
from .repositories import task_id_from_repository
from .schemas import PullRequestEvent

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check ``X-Hub-Signature-256`` against the HMAC of the raw body."""
    if not secret or not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len(SIGNATURE_PREFIX):])


def handle_pull_request_event(client, event: PullRequestEvent) -> dict:
    """An opened PR on a task repository submits the task for approval."""
    if event.action != "opened" or event.pull_request is None:
        return {"message": "Event ignored"}

    task_id = task_id_from_repository(event.repository.name)
    if task_id is None:
        return {"message": "Repository ignored"}

    task = client.task.find_first(
        where={"id": task_id, "status": TaskStatus.IN_PROGRESS, "deleted_at": None},
        include={"task_developer": {"include": {"developer": True}}},
    )
    if task is None or task["task_developer"] is None:
        raise NotFoundError("Task not found")

    author = event.pull_request.user.login
    expected = task["task_developer"]["developer"]["name"]
    if author != expected:
        logger.warning("PR #%s on task %s opened by %s, expected %s",
                       event.pull_request.number, task_id, author, expected)
        raise PermissionDeniedError("Unauthorized PR author")

    move_status(client, task_id, TaskStatus.IN_PROGRESS, TaskStatus.PENDING_APPROVAL)
    logger.info("task %s submitted through PR #%s", task_id, event.pull_request.number)
    return {
        "success": True,
        "message": "Task status updated to PENDING_APPROVAL",
        "task_id": task_id,
        "pr_url": event.pull_request.html_url,
    }
