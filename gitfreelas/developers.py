"""Developer assignment lifecycle.

    OPEN --apply--> APPLIED --accept--> IN_PROGRESS --submit--> PENDING_APPROVAL --approve--> COMPLETED
                       |
                       +--reject / cancel--> OPEN
"""

import logging

from .errors import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ServiceError,
    UniqueConstraintError,
)
from .models import TaskStatus, TransactionStatus, TransactionType, utcnow
from .web3 import is_valid_address, platform_fee

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [TaskStatus.APPLIED, TaskStatus.IN_PROGRESS, TaskStatus.PENDING_APPROVAL]


def move_status(tx, task_id: str, expected: TaskStatus, status: TaskStatus):
    """Compare-and-set the task status inside a transaction."""
    result = tx.task.update_many(
        where={"id": task_id, "status": expected, "deleted_at": None},
        data={"status": status},
    )
    if result["count"] != 1:
        raise InvalidStateError(f"Task is no longer {expected.value}")


def apply_to_task(client, user_id: str, task_id: str, wallet_address: str) -> dict:
    if not task_id:
        raise ServiceError("Task id is required")
    if not is_valid_address(wallet_address):
        raise ServiceError("Invalid wallet address")

    task = client.task.find_first(
        where={"id": task_id, "status": TaskStatus.OPEN, "deleted_at": None},
        include={"task_developer": True},
    )
    if task is None:
        raise NotFoundError("Task not found or not available")
    if task["creator_id"] == user_id:
        raise PermissionDeniedError("You cannot apply to your own task")
    if task["task_developer"] is not None:
        raise InvalidStateError("This task already has a developer")

    active = client.task_developer.find_first(where={
        "developer_id": user_id,
        "task": {"status": {"in": ACTIVE_STATUSES}, "deleted_at": None},
    })
    if active is not None:
        raise InvalidStateError("You already have an active task. Finish it before applying to another one.")

    def apply(tx):
        task_developer = tx.task_developer.create(data={
            "task_id": task_id,
            "developer_id": user_id,
            "wallet_address": wallet_address,
            "applied_at": utcnow(),
        })
        move_status(tx, task_id, TaskStatus.OPEN, TaskStatus.APPLIED)
        return task_developer

    try:
        task_developer = client.transaction(apply)
    except UniqueConstraintError:
        raise InvalidStateError("This task already has a developer") from None
    logger.info("developer %s applied to task %s", user_id, task_id)
    return task_developer


def _creator_task(client, user_id, task_id, status, action):
    task = client.task.find_first(
        where={"id": task_id, "creator_id": user_id, "status": status, "deleted_at": None},
        include={"task_developer": True},
    )
    if task is None:
        raise NotFoundError(f"Task not found or no permission to {action}")
    if task["task_developer"] is None:
        raise InvalidStateError("No developer has applied")
    return task


def accept_developer(client, user_id: str, task_id: str) -> dict:
    task = _creator_task(client, user_id, task_id, TaskStatus.APPLIED, "accept")

    def accept(tx):
        tx.task_developer.update(
            where={"id": task["task_developer"]["id"]},
            data={"accepted_at": utcnow()},
        )
        move_status(tx, task_id, TaskStatus.APPLIED, TaskStatus.IN_PROGRESS)
        return tx.task.find_unique(where={"id": task_id}, include={"task_developer": True})

    accepted = client.transaction(accept)
    logger.info("task %s: developer %s accepted", task_id, task["task_developer"]["developer_id"])
    return accepted


def _withdraw(client, task_id, task_developer_id):
    def withdraw(tx):
        tx.task_developer.delete(where={"id": task_developer_id})
        move_status(tx, task_id, TaskStatus.APPLIED, TaskStatus.OPEN)

    client.transaction(withdraw)


def reject_developer(client, user_id: str, task_id: str) -> None:
    task = _creator_task(client, user_id, task_id, TaskStatus.APPLIED, "reject")
    _withdraw(client, task_id, task["task_developer"]["id"])
    logger.info("task %s: developer %s rejected", task_id, task["task_developer"]["developer_id"])


def cancel_task_application(client, user_id: str, task_id: str) -> None:
    task = client.task.find_first(
        where={
            "id": task_id,
            "task_developer": {"is": {"developer_id": user_id}},
            "status": TaskStatus.APPLIED,
            "deleted_at": None,
        },
        include={"task_developer": True},
    )
    if task is None:
        raise NotFoundError("Application not found or can no longer be cancelled")
    _withdraw(client, task_id, task["task_developer"]["id"])
    logger.info("task %s: developer %s withdrew", task_id, user_id)


def submit_task_for_approval(client, user_id: str, task_id: str) -> dict:
    task = client.task.find_first(where={
        "id": task_id,
        "task_developer": {"is": {"developer_id": user_id}},
        "status": TaskStatus.IN_PROGRESS,
        "deleted_at": None,
    })
    if task is None:
        raise NotFoundError("Task not found or no permission to submit")

    updated = client.task.update(where={"id": task_id}, data={"status": TaskStatus.PENDING_APPROVAL})
    logger.info("task %s submitted for approval", task_id)
    return updated


def approve_task_completion(client, user_id: str, task_id: str, release_tx_hash: str | None = None) -> dict:
    task = _creator_task(client, user_id, task_id, TaskStatus.PENDING_APPROVAL, "approve")
    developer = task["task_developer"]
    fee, payout = platform_fee(task["value_in_wei"])

    def approve(tx):
        move_status(tx, task_id, TaskStatus.PENDING_APPROVAL, TaskStatus.COMPLETED)
        tx.blockchain_transaction.create_many(data=[
            {
                "task_id": task_id,
                "user_id": developer["developer_id"],
                "type": TransactionType.RELEASE,
                "status": TransactionStatus.PENDING,
                "tx_hash": release_tx_hash,
                "value_in_wei": payout,
                "network_id": developer["network_id"],
            },
            {
                "task_id": task_id,
                "user_id": user_id,
                "type": TransactionType.PLATFORM_FEE,
                "status": TransactionStatus.PENDING,
                "tx_hash": release_tx_hash,
                "value_in_wei": fee,
                "network_id": developer["network_id"],
            },
        ])
        return tx.task.find_unique(where={"id": task_id}, include={"transactions": True})

    approved = client.transaction(approve)
    logger.info("task %s approved, releasing %s wei to %s", task_id, payout, developer["wallet_address"])
    return approved


def _submitted_task(client, user_id, task_id, action):
    task = client.task.find_first(where={
        "id": task_id,
        "creator_id": user_id,
        "status": TaskStatus.PENDING_APPROVAL,
        "deleted_at": None,
    })
    if task is None:
        raise NotFoundError(f"Task not found or no permission to {action}")
    return task


def request_task_revision(client, user_id: str, task_id: str, pr_number: int, feedback: str) -> dict:
    """Send submitted work back to the developer for changes."""
    _submitted_task(client, user_id, task_id, "request a revision")
    move_status(client, task_id, TaskStatus.PENDING_APPROVAL, TaskStatus.IN_PROGRESS)
    logger.info("task %s: revision requested on PR #%s", task_id, pr_number)
    return client.task.find_unique(where={"id": task_id}, include={"task_developer": True})


def reject_task_submission(client, user_id: str, task_id: str, pr_number: int, feedback: str) -> dict:
    """Reject submitted work; the task is cancelled and the deposit goes back to the creator."""
    _submitted_task(client, user_id, task_id, "reject")
    move_status(client, task_id, TaskStatus.PENDING_APPROVAL, TaskStatus.CANCELLED)
    logger.info("task %s: submission rejected on PR #%s", task_id, pr_number)
    return client.task.find_unique(where={"id": task_id}, include={"task_developer": True})


def review_comment(kind: str, feedback: str) -> str:
    if kind == "revision":
        return f"## Changes requested\n\n{feedback}\n\nPush your fixes to this pull request when ready."
    return f"## Submission rejected\n\n{feedback}\n\nThe client cancelled this task."
