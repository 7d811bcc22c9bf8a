"""Shared fixtures: an in-memory client plus user and task factories."""

from __future__ import annotations

from datetime import timedelta
from itertools import count

import pytest

from gitfreelas.client import Client
from gitfreelas.models import TaskStatus, utcnow


_sequence = count(1)


@pytest.fixture
def client():
    db = Client(url="sqlite://")
    db.create_all()
    yield db
    db.disconnect()


@pytest.fixture
def make_user(client):
    def make(name: str | None = None, **fields) -> dict:
        n = next(_sequence)
        data = {"name": name or f"user{n}", "email": f"user{n}@example.com"}
        data.update(fields)
        return client.user.create(data=data)

    return make


@pytest.fixture
def make_task(client):
    def make(creator: dict, **fields) -> dict:
        data = {
            "title": "Build an API",
            "description": "A REST API for the bounty board",
            "value_in_wei": "1000000000000000000",
            "deadline": utcnow() + timedelta(days=7),
            "status": TaskStatus.OPEN,
            "creator_id": creator["id"],
        }
        data.update(fields)
        return client.task.create(data=data)

    return make


@pytest.fixture
def make_session(client):
    def make(user: dict, token: str = "token", expires_in: timedelta = timedelta(hours=1)) -> dict:
        return client.session.create(data={
            "token": token,
            "user_id": user["id"],
            "expires_at": utcnow() + expires_in,
        })

    return make
