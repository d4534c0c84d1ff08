"""Shared fixtures: an in-memory store, a recording notifier and common actors."""

from __future__ import annotations

from datetime import date
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio

from incentra.collaborators import Actor
from incentra.database import SCHEMA_SQL
from incentra.models import PolicyCreate, PolicyScope
from incentra.policy_store import add_policy


async def _memory_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await db.executescript(SCHEMA_SQL)
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.commit()
    return db


@pytest_asyncio.fixture()
async def db():
    conn = await _memory_db()
    try:
        yield conn
    finally:
        await conn.close()


class RecordingSink:
    """Notification sink that keeps every message in memory."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        reference_type: str = "",
        reference_id: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.sent.append({
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "metadata": metadata or {},
        })

    def types_for(self, user_id: str) -> list[str]:
        return [m["type"] for m in self.sent if m["user_id"] == user_id]


class FailingSink:
    async def notify(self, *args: Any, **kwargs: Any) -> None:
        raise RuntimeError("mail server down")


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def failing_sink() -> FailingSink:
    return FailingSink()


@pytest.fixture()
def faculty() -> Actor:
    return Actor(id="fac-1", uid="F001", role="faculty")


@pytest.fixture()
def student() -> Actor:
    return Actor(id="stu-1", uid="S001", role="student")


@pytest.fixture()
def mentor() -> Actor:
    return Actor(id="fac-9", uid="F009", role="faculty")


@pytest.fixture()
def reviewer() -> Actor:
    return Actor(id="rev-1", uid="R001", role="staff", capabilities=frozenset({"research_review"}))


@pytest.fixture()
def approver() -> Actor:
    return Actor(id="app-1", uid="A001", role="staff", capabilities=frozenset({"research_approve"}))


@pytest.fixture()
def policy_admin() -> Actor:
    return Actor(id="admin-1", uid="P001", role="staff", capabilities=frozenset({"policy_manage"}))


@pytest_asyncio.fixture()
async def research_policy(db):
    """An open-ended research paper policy with a 40/40 role split."""
    admin = Actor(id="seed-admin", role="staff", capabilities=frozenset({"policy_manage"}))
    return await add_policy(db, admin, PolicyCreate(
        policy_name="Research Paper 2020",
        scope=PolicyScope.RESEARCH_PAPER,
        effective_from=date(2020, 1, 1),
        first_author_percentage=40,
        corresponding_author_percentage=40,
    ))
