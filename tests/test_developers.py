"""Developer assignment lifecycle from application to approval."""

from __future__ import annotations

import pytest

from gitfreelas import developers
from gitfreelas.errors import InvalidStateError, NotFoundError, PermissionDeniedError, ServiceError
from gitfreelas.models import TaskStatus, TransactionStatus, TransactionType

WALLET = "0x" + "ab" * 20


@pytest.fixture
def people(make_user):
    return make_user("creator"), make_user("dev")


@pytest.fixture
def task(people, make_task):
    creator, _ = people
    return make_task(creator, value_in_wei="1000")


def _status(client, task_id) -> TaskStatus:
    return client.task.find_unique(where={"id": task_id})["status"]


def test_apply_to_task(client, people, task) -> None:
    _, dev = people
    application = developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    assert application["developer_id"] == dev["id"]
    assert application["network_id"] == "11155111"
    assert _status(client, task["id"]) == TaskStatus.APPLIED


def test_apply_validation(client, people, task) -> None:
    creator, dev = people
    with pytest.raises(ServiceError, match="wallet"):
        developers.apply_to_task(client, dev["id"], task["id"], "0x123")
    with pytest.raises(PermissionDeniedError):
        developers.apply_to_task(client, creator["id"], task["id"], WALLET)
    with pytest.raises(NotFoundError):
        developers.apply_to_task(client, dev["id"], "missing", WALLET)


def test_apply_twice_is_rejected(client, people, task, make_user) -> None:
    _, dev = people
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    with pytest.raises(NotFoundError):
        developers.apply_to_task(client, make_user()["id"], task["id"], WALLET)


def test_one_active_task_per_developer(client, people, task, make_task) -> None:
    creator, dev = people
    second = make_task(creator)
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    with pytest.raises(InvalidStateError, match="active task"):
        developers.apply_to_task(client, dev["id"], second["id"], WALLET)


def test_reject_reopens_task(client, people, task) -> None:
    creator, dev = people
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    developers.reject_developer(client, creator["id"], task["id"])
    assert _status(client, task["id"]) == TaskStatus.OPEN
    assert client.task_developer.count() == 0


def test_only_creator_can_accept_or_reject(client, people, task) -> None:
    _, dev = people
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    with pytest.raises(NotFoundError):
        developers.accept_developer(client, dev["id"], task["id"])
    with pytest.raises(NotFoundError):
        developers.reject_developer(client, dev["id"], task["id"])


def test_cancel_application(client, people, task, make_user) -> None:
    _, dev = people
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    with pytest.raises(NotFoundError):
        developers.cancel_task_application(client, make_user()["id"], task["id"])
    developers.cancel_task_application(client, dev["id"], task["id"])
    assert _status(client, task["id"]) == TaskStatus.OPEN


def test_full_lifecycle(client, people, task) -> None:
    creator, dev = people
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)

    accepted = developers.accept_developer(client, creator["id"], task["id"])
    assert accepted["status"] == TaskStatus.IN_PROGRESS
    assert accepted["task_developer"]["accepted_at"] is not None
    with pytest.raises(NotFoundError):
        developers.cancel_task_application(client, dev["id"], task["id"])

    with pytest.raises(NotFoundError):
        developers.submit_task_for_approval(client, creator["id"], task["id"])
    submitted = developers.submit_task_for_approval(client, dev["id"], task["id"])
    assert submitted["status"] == TaskStatus.PENDING_APPROVAL

    approved = developers.approve_task_completion(client, creator["id"], task["id"], "0xrelease")
    assert approved["status"] == TaskStatus.COMPLETED
    ledger = {tx["type"]: tx for tx in approved["transactions"]}
    assert ledger[TransactionType.RELEASE]["value_in_wei"] == "970"
    assert ledger[TransactionType.RELEASE]["user_id"] == dev["id"]
    assert ledger[TransactionType.PLATFORM_FEE]["value_in_wei"] == "30"
    assert all(tx["status"] == TransactionStatus.PENDING for tx in ledger.values())
    assert all(tx["tx_hash"] == "0xrelease" for tx in ledger.values())


def test_approve_needs_pending_approval(client, people, task) -> None:
    creator, dev = people
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    developers.accept_developer(client, creator["id"], task["id"])
    with pytest.raises(NotFoundError):
        developers.approve_task_completion(client, creator["id"], task["id"])


def test_status_moves_are_compare_and_set(client, people, task) -> None:
    with pytest.raises(InvalidStateError, match="no longer APPLIED"):
        client.transaction(lambda tx: developers.move_status(tx, task["id"], TaskStatus.APPLIED, TaskStatus.IN_PROGRESS))
    assert _status(client, task["id"]) == TaskStatus.OPEN


def _submitted(client, people, task) -> str:
    creator, dev = people
    developers.apply_to_task(client, dev["id"], task["id"], WALLET)
    developers.accept_developer(client, creator["id"], task["id"])
    developers.submit_task_for_approval(client, dev["id"], task["id"])
    return task["id"]


def test_request_revision_sends_task_back(client, people, task) -> None:
    creator, dev = people
    task_id = _submitted(client, people, task)
    updated = developers.request_task_revision(client, creator["id"], task_id, 3, "Tests are failing")
    assert updated["status"] == TaskStatus.IN_PROGRESS
    assert updated["task_developer"]["developer_id"] == dev["id"]

    developers.submit_task_for_approval(client, dev["id"], task_id)
    assert _status(client, task_id) == TaskStatus.PENDING_APPROVAL


def test_reject_submission_cancels_task(client, people, task) -> None:
    creator, _ = people
    task_id = _submitted(client, people, task)
    updated = developers.reject_task_submission(client, creator["id"], task_id, 3, "Not what was asked")
    assert updated["status"] == TaskStatus.CANCELLED
    with pytest.raises(NotFoundError, match="reject"):
        developers.reject_task_submission(client, creator["id"], task_id, 3, "again")


def test_review_needs_creator_and_pending_approval(client, people, task) -> None:
    creator, dev = people
    with pytest.raises(NotFoundError):
        developers.request_task_revision(client, creator["id"], task["id"], 1, "too early")
    task_id = _submitted(client, people, task)
    with pytest.raises(NotFoundError, match="request a revision"):
        developers.request_task_revision(client, dev["id"], task_id, 1, "not mine")
    with pytest.raises(NotFoundError):
        developers.reject_task_submission(client, dev["id"], task_id, 1, "not mine")
    assert _status(client, task_id) == TaskStatus.PENDING_APPROVAL


def test_review_comment() -> None:
    assert developers.review_comment("revision", "Add tests").startswith("## Changes requested\n\nAdd tests")
    assert "cancelled" in developers.review_comment("rejection", "Wrong repo")
