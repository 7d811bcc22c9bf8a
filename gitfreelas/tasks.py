"""Task services: creation, listing, status changes and the payment ledger."""

import logging

from .config import DEFAULT_NETWORK_ID
from .errors import NotFoundError, PermissionDeniedError, ServiceError
from .models import TaskStatus, TransactionStatus, TransactionType, utcnow
from .schemas import CreateTaskRequest, TaskFilters
from .web3 import ether_to_wei

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50
RECENT_TRANSACTIONS = 5

PUBLIC_USER = {"select": {"id": True, "name": True, "email": True, "image": True}}

TASK_INCLUDE = {
    "creator": PUBLIC_USER,
    "task_developer": {"include": {"developer": PUBLIC_USER}},
    "repository": True,
    "transactions": {"order_by": {"created_at": "desc"}},
}

_SORT_ORDER = {
    "newest": {"created_at": "desc"},
    "oldest": {"created_at": "asc"},
    "deadline_soon": {"deadline": "asc"},
}


def build_task_filters(filters: TaskFilters | None) -> dict:
    """Where-dict for listing; soft-deleted tasks are always excluded.

    Value bounds are applied separately because wei amounts are strings.
    """
    where = {"deleted_at": None}
    if filters is None:
        return where

    if filters.status:
        where["status"] = {"in": list(filters.status)}
    if filters.deadline_from or filters.deadline_to:
        where["deadline"] = {}
        if filters.deadline_from:
            where["deadline"]["gte"] = filters.deadline_from
        if filters.deadline_to:
            where["deadline"]["lte"] = filters.deadline_to
    if filters.creator_id:
        where["creator_id"] = filters.creator_id
    if filters.search:
        where["OR"] = [
            {"title": {"contains": filters.search, "mode": "insensitive"}},
            {"description": {"contains": filters.search, "mode": "insensitive"}},
        ]
    return where


def build_task_order_by(sort: str | None) -> dict:
    return _SORT_ORDER.get(sort, _SORT_ORDER["newest"])


def _in_value_range(value_in_wei: str, filters: TaskFilters | None) -> bool:
    if filters is None:
        return True
    value = int(value_in_wei)
    if filters.min_value and value < int(filters.min_value):
        return False
    if filters.max_value and value > int(filters.max_value):
        return False
    return True


def create_task(client, user_id: str, request: CreateTaskRequest) -> dict:
    value_in_wei = ether_to_wei(request.value_in_ether)

    def create(tx):
        task = tx.task.create(
            data={
                "title": request.title,
                "description": request.description,
                "requirements": request.requirements,
                "links": request.links,
                "attachments": request.attachments,
                "value_in_wei": value_in_wei,
                "deadline": request.deadline,
                "allow_overdue": request.allow_overdue,
                "contract_task_id": request.contract_tx_hash,
                "status": TaskStatus.OPEN,
                "creator": {"connect": {"id": user_id}},
            },
            include={"creator": PUBLIC_USER},
        )
        if request.contract_tx_hash:
            tx.blockchain_transaction.create(data={
                "task_id": task["id"],
                "user_id": user_id,
                "type": TransactionType.DEPOSIT,
                "status": TransactionStatus.CONFIRMED,
                "tx_hash": request.contract_tx_hash,
                "value_in_wei": value_in_wei,
                "network_id": DEFAULT_NETWORK_ID,
                "confirmed_at": utcnow(),
            })
        return task

    task = client.transaction(create)
    logger.info("task %s created by %s (%s wei)", task["id"], user_id, value_in_wei)
    return task


def get_task_by_id(client, task_id: str) -> dict | None:
    return client.task.find_first(
        where={"id": task_id, "deleted_at": None},
        include=TASK_INCLUDE,
    )


def get_tasks(client, filters: TaskFilters | None = None, sort: str | None = None,
              page: int = 1, limit: int = 10) -> dict:
    page = max(page, 1)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    where = build_task_filters(filters)
    skip = (page - 1) * limit
    include = dict(TASK_INCLUDE, transactions={
        "order_by": {"created_at": "desc"},
        "take": RECENT_TRANSACTIONS,
    })

    by_value = sort in ("highest_value", "lowest_value")
    has_range = filters is not None and (filters.min_value or filters.max_value)
    if not (by_value or has_range):
        tasks = client.task.find_many(
            where=where, order_by=build_task_order_by(sort), skip=skip, take=limit, include=include,
        )
        total = client.task.count(where=where)
        return {"tasks": tasks, "total": total, "page": page, "limit": limit}

    # Wei amounts are compared as integers, so the window is picked in Python
    candidates = client.task.find_many(
        where=where,
        order_by=build_task_order_by(None if by_value else sort),
        select={"id": True, "value_in_wei": True},
    )
    candidates = [c for c in candidates if _in_value_range(c["value_in_wei"], filters)]
    if by_value:
        candidates.sort(key=lambda c: int(c["value_in_wei"]), reverse=sort == "highest_value")
    window = [c["id"] for c in candidates[skip:skip + limit]]

    tasks = client.task.find_many(where={"id": {"in": window}}, include=include)
    position = {task_id: index for index, task_id in enumerate(window)}
    tasks.sort(key=lambda task: position[task["id"]])
    return {"tasks": tasks, "total": len(candidates), "page": page, "limit": limit}


def get_my_tasks(client, user_id: str) -> dict:
    created = client.task.find_many(
        where={"creator_id": user_id, "deleted_at": None},
        include=TASK_INCLUDE,
        order_by={"created_at": "desc"},
    )
    applied = client.task.find_many(
        where={"task_developer": {"is": {"developer_id": user_id}}, "deleted_at": None},
        include=TASK_INCLUDE,
        order_by={"created_at": "desc"},
    )
    return {"created_tasks": created, "applied_tasks": applied}


def update_task_status(client, user_id: str, task_id: str, status: TaskStatus) -> dict:
    task = client.task.find_first(where={"id": task_id, "deleted_at": None})
    if task is None:
        raise NotFoundError("Task not found")
    if task["creator_id"] != user_id:
        raise PermissionDeniedError("Only the task creator can change its status")

    updated = client.task.update(where={"id": task_id}, data={"status": status})
    logger.info("task %s status %s -> %s", task_id, task["status"].value, TaskStatus(status).value)
    return updated


def delete_task(client, user_id: str, task_id: str) -> None:
    """Soft delete; only the creator may delete, and only while OPEN."""
    task = client.task.find_first(where={
        "id": task_id,
        "creator_id": user_id,
        "status": TaskStatus.OPEN,
        "deleted_at": None,
    })
    if task is None:
        raise NotFoundError("Task not found, not yours, or can no longer be deleted")

    client.task.update(where={"id": task_id}, data={"deleted_at": utcnow()})
    logger.info("task %s soft-deleted", task_id)


def record_transaction(client, task_id: str, type: TransactionType, value_in_wei: str, user_id=None,
                       tx_hash=None, status=TransactionStatus.PENDING, network_id=DEFAULT_NETWORK_ID) -> dict:
    if not str(value_in_wei).isdigit():
        raise ServiceError(f"Invalid wei amount: {value_in_wei!r}")
    return client.blockchain_transaction.create(data={
        "task_id": task_id,
        "user_id": user_id,
        "type": type,
        "status": status,
        "tx_hash": tx_hash,
        "value_in_wei": value_in_wei,
        "network_id": network_id,
    })


def confirm_transaction(client, transaction_id: str, success: bool, block_number=None, gas_used=None,
                        error_message=None) -> dict:
    transaction = client.blockchain_transaction.find_unique(where={"id": transaction_id})
    if transaction is None:
        raise NotFoundError("Transaction not found")
    if transaction["status"] != TransactionStatus.PENDING:
        raise ServiceError(f"Transaction is already {transaction['status'].value}")

    data = {
        "status": TransactionStatus.CONFIRMED if success else TransactionStatus.FAILED,
        "block_number": block_number,
        "gas_used": gas_used,
    }
    if success:
        data["confirmed_at"] = utcnow()
    else:
        data["error_message"] = error_message or "Transaction reverted"
    return client.blockchain_transaction.update(where={"id": transaction_id}, data=data)
