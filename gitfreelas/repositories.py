"""Task repository naming and creator-side repository actions.

The GitHub calls themselves run in the worker; these functions check who may
ask for them.
"""

from .errors import NotFoundError, ServiceError

REPOSITORY_PREFIX = "gitfreelas-task-"


def repository_name(task_id: str) -> str:
    return f"{REPOSITORY_PREFIX}{task_id}"


def task_id_from_repository(name: str) -> str | None:
    if not name or not name.startswith(REPOSITORY_PREFIX):
        return None
    return name[len(REPOSITORY_PREFIX):] or None


def creator_repository(client, user_id: str, task_id: str) -> dict:
    task = client.task.find_first(
        where={"id": task_id, "creator_id": user_id, "deleted_at": None},
        include={"repository": True},
    )
    if task is None:
        raise NotFoundError("Task not found or no permission")
    repository = task["repository"]
    if repository is None or not repository["is_active"]:
        raise NotFoundError("Repository not found for this task")
    return repository


def check_collaborator_removal(client, user_id: str, task_id: str, username: str) -> dict:
    if not username or not username.strip():
        raise ServiceError("GitHub username is required")
    return creator_repository(client, user_id, task_id)
