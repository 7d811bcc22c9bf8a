"""Client writes, aggregates, transactions, middleware and raw SQL."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from gitfreelas.client import Client, QueryParams, TransactionIsolationLevel, _is_transient
from gitfreelas.errors import (
    ForeignKeyConstraintError,
    QueryValidationError,
    RecordNotFoundError,
    TransactionError,
    TransactionTimeoutError,
    UniqueConstraintError,
)
from gitfreelas.models import TaskStatus, TransactionStatus, TransactionType, utcnow

WALLET = "0x" + "ab" * 20


def _ledger(task_id: str, value: str, **fields) -> dict:
    data = {"task_id": task_id, "type": TransactionType.DEPOSIT, "value_in_wei": value, "network_id": "1"}
    data.update(fields)
    return data


# Create / read

def test_create_applies_defaults(client) -> None:
    user = client.user.create(data={"name": "alice", "email": "alice@example.com"})
    assert len(user["id"]) == 32
    assert user["email_verified"] is False
    assert user["created_at"] is not None


def test_find_unique_or_throw(client, make_user) -> None:
    user = make_user()
    assert client.user.find_unique_or_throw(where={"email": user["email"]})["id"] == user["id"]
    with pytest.raises(RecordNotFoundError):
        client.user.find_unique_or_throw(where={"email": "nobody@example.com"})
    with pytest.raises(RecordNotFoundError):
        client.user.find_first_or_throw(where={"name": "nobody"})


def test_unique_violation_reports_target(client, make_user) -> None:
    user = make_user()
    with pytest.raises(UniqueConstraintError) as excinfo:
        client.user.create(data={"name": "dup", "email": user["email"]})
    assert excinfo.value.target == ["email"]
    assert excinfo.value.model == "user"


def test_foreign_key_violation(client) -> None:
    with pytest.raises(ForeignKeyConstraintError):
        client.session.create(data={"token": "t", "user_id": "missing", "expires_at": utcnow()})


def test_unknown_data_field(client) -> None:
    with pytest.raises(QueryValidationError, match="Unknown argument `nickname`"):
        client.user.create(data={"name": "a", "email": "a@example.com", "nickname": "x"})


# Nested writes

def test_create_with_connect_and_nested_children(client, make_user) -> None:
    creator = make_user()
    task = client.task.create(
        data={
            "title": "Nested",
            "description": "Created with children",
            "value_in_wei": "5",
            "deadline": utcnow() + timedelta(days=3),
            "creator": {"connect": {"id": creator["id"]}},
            "transactions": {"create": [_ledger_nested("5"), _ledger_nested("6")]},
            "repository": {"create": {"repository_name": "repo", "repository_url": "https://github.com/x/repo"}},
        },
        include={"transactions": {"order_by": {"value_in_wei": "asc"}}, "repository": True, "creator": True},
    )
    assert task["creator"]["id"] == creator["id"]
    assert [tx["value_in_wei"] for tx in task["transactions"]] == ["5", "6"]
    assert task["repository"]["task_id"] == task["id"]


def _ledger_nested(value: str) -> dict:
    return {"type": TransactionType.DEPOSIT, "value_in_wei": value, "network_id": "1"}


def test_connect_missing_parent(client) -> None:
    with pytest.raises(RecordNotFoundError):
        client.session.create(data={"token": "t", "expires_at": utcnow(), "user": {"connect": {"id": "missing"}}})


def test_connect_or_create(client) -> None:
    data = {
        "token": "t1",
        "expires_at": utcnow(),
        "user": {"connect_or_create": {
            "where": {"email": "new@example.com"},
            "create": {"name": "new", "email": "new@example.com"},
        }},
    }
    first = client.session.create(data=data)
    second = client.session.create(data=dict(data, token="t2"))
    assert first["user_id"] == second["user_id"]
    assert client.user.count() == 1


def test_update_nested_delete_and_disconnect(client, make_user, make_task) -> None:
    creator = make_user()
    developer = make_user()
    task = make_task(creator)
    client.task_developer.create(data={"task_id": task["id"], "developer_id": developer["id"], "wallet_address": WALLET})
    client.blockchain_transaction.create(data=_ledger(task["id"], "1", user_id=developer["id"]))

    client.task.update(where={"id": task["id"]}, data={"task_developer": {"delete": True}})
    assert client.task_developer.count() == 0

    client.user.update(where={"id": developer["id"]}, data={"transactions": {"disconnect": True}})
    assert client.blockchain_transaction.find_first()["user_id"] is None


def test_disconnect_required_relation_is_rejected(client, make_user, make_task) -> None:
    creator = make_user()
    make_task(creator)
    with pytest.raises(QueryValidationError, match="required relation"):
        client.user.update(where={"id": creator["id"]}, data={"created_tasks": {"disconnect": True}})


# Updates

def test_atomic_number_operations(client, make_user, make_task) -> None:
    repo_task = make_task(make_user())
    repo = client.task_repository.create(data={
        "task_id": repo_task["id"], "repository_name": "r", "repository_url": "u", "github_repo_id": 10,
    })
    where = {"id": repo["id"]}
    assert client.task_repository.update(where=where, data={"github_repo_id": {"increment": 5}})["github_repo_id"] == 15
    assert client.task_repository.update(where=where, data={"github_repo_id": {"decrement": 3}})["github_repo_id"] == 12
    assert client.task_repository.update(where=where, data={"github_repo_id": {"multiply": 2}})["github_repo_id"] == 24
    assert client.task_repository.update(where=where, data={"github_repo_id": {"divide": 5}})["github_repo_id"] == 4
    assert client.task_repository.update(where=where, data={"github_repo_id": {"set": 1}})["github_repo_id"] == 1


def test_number_operations_need_numeric_fields(client, make_user) -> None:
    user = make_user()
    with pytest.raises(QueryValidationError, match="numeric"):
        client.user.update(where={"id": user["id"]}, data={"name": {"increment": 1}})


def test_update_missing_record(client) -> None:
    with pytest.raises(RecordNotFoundError):
        client.user.update(where={"id": "missing"}, data={"name": "x"})


def test_update_many_and_delete_many(client, make_user, make_task) -> None:
    creator = make_user()
    for _ in range(3):
        make_task(creator)
    make_task(creator, status=TaskStatus.COMPLETED)

    result = client.task.update_many(where={"status": TaskStatus.OPEN}, data={"status": TaskStatus.CANCELLED})
    assert result == {"count": 3}
    assert client.task.count(where={"status": TaskStatus.CANCELLED}) == 3

    assert client.task.delete_many(where={"status": TaskStatus.CANCELLED}) == {"count": 3}
    assert client.task.count() == 1


def test_upsert(client) -> None:
    where = {"email": "up@example.com"}
    created = client.user.upsert(where=where, create={"name": "first", "email": "up@example.com"}, update={"name": "second"})
    updated = client.user.upsert(where=where, create={"name": "first", "email": "up@example.com"}, update={"name": "second"})
    assert created["name"] == "first"
    assert updated["name"] == "second"
    assert created["id"] == updated["id"]


def test_delete_returns_record_and_cascades(client, make_user, make_session) -> None:
    user = make_user()
    make_session(user)
    deleted = client.user.delete(where={"id": user["id"]})
    assert deleted["id"] == user["id"]
    assert client.session.count() == 0


def test_delete_restricted_by_foreign_key(client, make_user, make_task) -> None:
    creator = make_user()
    make_task(creator)
    with pytest.raises(ForeignKeyConstraintError):
        client.user.delete(where={"id": creator["id"]})


def test_create_many_skip_duplicates(client, make_user) -> None:
    existing = make_user()
    result = client.user.create_many(
        data=[
            {"name": "a", "email": existing["email"]},
            {"name": "b", "email": "b@example.com"},
            {"name": "c", "email": "b@example.com"},
        ],
        skip_duplicates=True,
    )
    assert result == {"count": 1}
    assert client.user.count() == 2

    with pytest.raises(UniqueConstraintError):
        client.user.create_many(data=[{"name": "d", "email": "b@example.com"}])


# Aggregates

@pytest.fixture
def ledger(client, make_user, make_task):
    alice = make_user("alice")
    task = make_task(alice)
    client.blockchain_transaction.create_many(data=[
        _ledger(task["id"], "10", block_number=100, status=TransactionStatus.CONFIRMED),
        _ledger(task["id"], "20", block_number=200, status=TransactionStatus.CONFIRMED),
        _ledger(task["id"], "30", block_number=None, status=TransactionStatus.PENDING),
        _ledger(task["id"], "40", block_number=300, status=TransactionStatus.FAILED, type=TransactionType.REFUND),
    ])
    return task


def test_count_with_select(client, ledger) -> None:
    assert client.blockchain_transaction.count() == 4
    assert client.blockchain_transaction.count(select={"_all": True, "block_number": True}) == {
        "_all": 4,
        "block_number": 3,
    }
    assert client.blockchain_transaction.count(take=2) == 2


def test_aggregate(client, ledger) -> None:
    result = client.blockchain_transaction.aggregate(
        _count={"_all": True},
        _sum={"block_number": True},
        _avg={"block_number": True},
        _min={"block_number": True, "value_in_wei": True},
        _max={"block_number": True},
    )
    assert result["_count"] == {"_all": 4}
    assert result["_sum"] == {"block_number": 600}
    assert result["_avg"] == {"block_number": 200}
    assert result["_min"] == {"block_number": 100, "value_in_wei": "10"}
    assert result["_max"] == {"block_number": 300}


def test_aggregate_over_empty_set(client, ledger) -> None:
    result = client.blockchain_transaction.aggregate(where={"value_in_wei": "none"}, _sum={"block_number": True}, _count=True)
    assert result == {"_sum": {"block_number": None}, "_count": 0}


def test_sum_needs_numeric_field(client, ledger) -> None:
    with pytest.raises(QueryValidationError, match="numeric"):
        client.blockchain_transaction.aggregate(_sum={"value_in_wei": True})


def test_group_by_with_having_and_order(client, ledger) -> None:
    groups = client.blockchain_transaction.group_by(
        by=["status"],
        _count={"_all": True},
        _sum={"block_number": True},
        order_by={"status": "asc"},
    )
    assert groups == [
        {"status": TransactionStatus.CONFIRMED, "_count": {"_all": 2}, "_sum": {"block_number": 300}},
        {"status": TransactionStatus.FAILED, "_count": {"_all": 1}, "_sum": {"block_number": 300}},
        {"status": TransactionStatus.PENDING, "_count": {"_all": 1}, "_sum": {"block_number": None}},
    ]

    groups = client.blockchain_transaction.group_by(
        by="type",
        having={"block_number": {"_count": {"gt": 1}}},
        _count={"_all": True},
    )
    assert groups == [{"type": TransactionType.DEPOSIT, "_count": {"_all": 3}}]


def test_having_field_must_be_grouped(client, ledger) -> None:
    with pytest.raises(QueryValidationError, match="having"):
        client.blockchain_transaction.group_by(by=["status"], having={"type": TransactionType.DEPOSIT})


# Transactions

def test_transaction_commits(client) -> None:
    def register(tx):
        user = tx.user.create(data={"name": "a", "email": "a@example.com"})
        tx.session.create(data={"token": "t", "user_id": user["id"], "expires_at": utcnow()})
        return user

    user = client.transaction(register)
    assert client.session.find_first()["user_id"] == user["id"]


def test_transaction_rolls_back_on_error(client) -> None:
    def register(tx):
        tx.user.create(data={"name": "a", "email": "a@example.com"})
        raise ValueError("boom")

    with pytest.raises(ValueError):
        client.transaction(register)
    assert client.user.count() == 0


def test_transaction_rolls_back_on_constraint_error(client, make_user) -> None:
    existing = make_user()

    def register(tx):
        tx.user.create(data={"name": "a", "email": "a@example.com"})
        tx.user.create(data={"name": "b", "email": existing["email"]})

    with pytest.raises(UniqueConstraintError):
        client.transaction(register)
    assert client.user.count() == 1


def test_batch_transaction(client) -> None:
    results = client.transaction([
        lambda tx: tx.user.create(data={"name": "a", "email": "a@example.com"}),
        lambda tx: tx.user.count(),
    ])
    assert results[1] == 1


def test_nested_transaction_is_rejected(client) -> None:
    with pytest.raises(TransactionError, match="Nested"):
        client.transaction(lambda tx: tx.transaction(lambda inner: None))


def test_transaction_timeout_rolls_back(client, monkeypatch) -> None:
    # start, connection acquired, callback finished
    ticks = iter([0.0, 0.0, 10.0])
    monkeypatch.setattr("gitfreelas.client.time", SimpleNamespace(monotonic=lambda: next(ticks)))

    with pytest.raises(TransactionTimeoutError):
        client.transaction(lambda tx: tx.user.create(data={"name": "a", "email": "a@example.com"}), timeout=100)
    assert client.user.count() == 0


def test_isolation_level_is_validated(client) -> None:
    with pytest.raises(TransactionError, match="isolation level"):
        client.transaction(lambda tx: None, isolation_level="Chaotic")
    assert client.transaction(lambda tx: "ok", isolation_level=TransactionIsolationLevel.SERIALIZABLE) == "ok"


def test_transient_errors_are_retried(client) -> None:
    locked = OperationalError("INSERT", {}, Exception("database is locked"))
    assert _is_transient(locked)
    fn = MagicMock(side_effect=[locked, "done"])
    assert client.transaction(fn) == "done"
    assert fn.call_count == 2


# Middleware and raw SQL

def test_middleware_sees_and_rewrites_queries(client, make_user) -> None:
    make_user("alice")
    seen: list[QueryParams] = []

    def audit(params, call_next):
        seen.append(params)
        return call_next(params)

    def live_only(params, call_next):
        if params.model == "task" and params.action == "find_many":
            where = params.args.get("where") or {}
            params.args["where"] = {"AND": [where, {"deleted_at": None}]}
        return call_next(params)

    client.use(audit).use(live_only)
    creator = client.user.find_first()
    client.task.create(data={
        "title": "gone", "description": "d", "value_in_wei": "1", "deadline": utcnow(),
        "creator_id": creator["id"], "deleted_at": utcnow(),
    })
    assert client.task.find_many() == []
    assert [(p.model, p.action) for p in seen] == [("user", "find_first"), ("task", "create"), ("task", "find_many")]


def test_middleware_applies_inside_transactions(client) -> None:
    actions = []
    client.use(lambda params, call_next: actions.append(params.action) or call_next(params))
    client.transaction(lambda tx: tx.user.count())
    assert actions == ["count"]


def test_raw_queries(client, make_user) -> None:
    make_user("alice")
    rows = client.query_raw("SELECT name FROM users WHERE name = :name", name="alice")
    assert rows == [{"name": "alice"}]
    assert client.execute_raw("UPDATE users SET role = :role", role="admin") == 1
    assert client.user.find_first()["role"] == "admin"


def test_disconnect_keeps_client_usable() -> None:
    db = Client(url="sqlite://").connect()
    assert db.user.count() == 0
    db.disconnect()


def test_middleware_added_in_transaction_stays_there(client) -> None:
    seen = []

    def record(params, call_next):
        seen.append(params.action)
        return call_next(params)

    def run(tx):
        tx.use(record)
        return tx.user.count()

    client.transaction(run)
    client.user.count()
    assert seen == ["count"]


def test_transaction_max_wait(client, monkeypatch) -> None:
    # start, connection acquired
    ticks = iter([0.0, 5.0])
    monkeypatch.setattr("gitfreelas.client.time", SimpleNamespace(monotonic=lambda: next(ticks)))
    fn = MagicMock()

    with pytest.raises(TransactionError, match="Unable to start a transaction"):
        client.transaction(fn, max_wait=100)
    fn.assert_not_called()


def test_isolation_level_reaches_the_connection(client) -> None:
    def level(tx):
        return tx._session.connection().get_isolation_level()

    assert client.transaction(level, isolation_level=TransactionIsolationLevel.READ_UNCOMMITTED) == "READ UNCOMMITTED"
    assert client.transaction(level, isolation_level="Serializable") == "SERIALIZABLE"
