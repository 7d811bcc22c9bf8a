"""GitHub pull request webhooks and task repository names."""

from __future__ import annotations

import hashlib
import hmac

import pytest

from gitfreelas import developers, repositories, webhooks
from gitfreelas.errors import NotFoundError, PermissionDeniedError, ServiceError
from gitfreelas.models import TaskStatus
from gitfreelas.schemas import PullRequestEvent

WALLET = "0x" + "ab" * 20
SECRET = "s3cret"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _event(task_id: str, login: str = "dev", action: str = "opened") -> PullRequestEvent:
    return PullRequestEvent.model_validate({
        "action": action,
        "repository": {"name": repositories.repository_name(task_id)},
        "pull_request": {
            "number": 7,
            "html_url": f"https://github.com/org/gitfreelas-task-{task_id}/pull/7",
            "user": {"login": login},
        },
    })


@pytest.fixture
def started(client, make_user, make_task):
    creator, dev = make_user("creator"), make_user("dev")
    task = make_task(creator)
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    developers.accept_developer(client, creator["id"], task["id"])
    return task["id"]


def test_verify_signature() -> None:
    body = b'{"action": "opened"}'
    assert webhooks.verify_signature(body, _sign(body), SECRET)
    assert not webhooks.verify_signature(body, _sign(body, "other"), SECRET)
    assert not webhooks.verify_signature(body + b" ", _sign(body), SECRET)
    assert not webhooks.verify_signature(body, _sign(body)[len("sha256="):], SECRET)
    assert not webhooks.verify_signature(body, None, SECRET)
    assert not webhooks.verify_signature(body, _sign(body), None)


def test_repository_names() -> None:
    assert repositories.repository_name("abc") == "gitfreelas-task-abc"
    assert repositories.task_id_from_repository("gitfreelas-task-abc") == "abc"
    assert repositories.task_id_from_repository("gitfreelas-task-") is None
    assert repositories.task_id_from_repository("some-other-repo") is None


def test_opened_pr_submits_task(client, started) -> None:
    result = webhooks.handle_pull_request_event(client, _event(started))
    assert result["success"] is True
    assert result["task_id"] == started
    assert result["pr_url"].endswith("/pull/7")
    assert client.task.find_unique(where={"id": started})["status"] == TaskStatus.PENDING_APPROVAL


def test_other_events_are_ignored(client, started) -> None:
    assert webhooks.handle_pull_request_event(client, _event(started, action="closed")) == {"message": "Event ignored"}
    event = _event(started)
    event.repository.name = "unrelated"
    assert webhooks.handle_pull_request_event(client, event) == {"message": "Repository ignored"}
    assert client.task.find_unique(where={"id": started})["status"] == TaskStatus.IN_PROGRESS


def test_pr_from_someone_else(client, started) -> None:
    with pytest.raises(PermissionDeniedError, match="Unauthorized PR author"):
        webhooks.handle_pull_request_event(client, _event(started, login="mallory"))
    assert client.task.find_unique(where={"id": started})["status"] == TaskStatus.IN_PROGRESS


def test_pr_on_task_not_in_progress(client, started) -> None:
    webhooks.handle_pull_request_event(client, _event(started))
    with pytest.raises(NotFoundError):
        webhooks.handle_pull_request_event(client, _event(started))
    with pytest.raises(NotFoundError):
        webhooks.handle_pull_request_event(client, _event("missing"))


def test_repository_actions_belong_to_the_creator(client, make_user, make_task) -> None:
    creator, other = make_user(), make_user()
    task = make_task(creator)
    with pytest.raises(NotFoundError, match="Repository not found"):
        repositories.creator_repository(client, creator["id"], task["id"])

    client.task_repository.create(data={
        "task_id": task["id"],
        "repository_name": repositories.repository_name(task["id"]),
        "repository_url": "https://github.com/org/repo",
    })
    assert repositories.creator_repository(client, creator["id"], task["id"])["task_id"] == task["id"]
    with pytest.raises(NotFoundError, match="no permission"):
        repositories.creator_repository(client, other["id"], task["id"])
    with pytest.raises(ServiceError, match="username"):
        repositories.check_collaborator_removal(client, creator["id"], task["id"], "  ")

    client.task_repository.update(where={"task_id": task["id"]}, data={"is_active": False})
    with pytest.raises(NotFoundError, match="Repository not found"):
        repositories.creator_repository(client, creator["id"], task["id"])
