"""Status history and review records: append-only logs of workflow decisions.

Rows are never updated or deleted. Writes happen inside the caller's
transaction, so a failed operation leaves no orphan history behind.
"""

from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from incentra.database import from_json, to_json
from incentra.models import EntityType, Review, ReviewDecision, StatusHistoryEntry

logger = logging.getLogger(__name__)


def _status_value(status: Any) -> str | None:
    if status is None:
        return None
    return getattr(status, "value", status)


def _row_to_entry(row: aiosqlite.Row | dict[str, Any]) -> StatusHistoryEntry:
    d = dict(row)
    d["metadata"] = from_json(d.get("metadata")) or {}
    return StatusHistoryEntry(**d)


async def record_status_change(
    db: aiosqlite.Connection,
    entity_type: EntityType,
    entity_id: str,
    from_status: Any,
    to_status: Any,
    changed_by: str = "",
    comments: str = "",
    metadata: dict[str, Any] | None = None,
) -> StatusHistoryEntry:
    """Append one transition. Does not commit."""
    entry = StatusHistoryEntry(
        entity_type=entity_type,
        entity_id=entity_id,
        from_status=_status_value(from_status),
        to_status=_status_value(to_status),
        changed_by=changed_by,
        comments=comments or "",
        metadata=metadata or {},
    )
    await db.execute(
        """
        INSERT INTO status_history
            (history_id, entity_type, entity_id, from_status, to_status, changed_by, comments, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.history_id,
            entry.entity_type.value,
            entry.entity_id,
            entry.from_status,
            entry.to_status,
            entry.changed_by,
            entry.comments,
            to_json(entry.metadata),
            entry.created_at.isoformat(),
        ),
    )
    logger.info(
        "status change entity_type=%s entity_id=%s from=%s to=%s actor=%s",
        entry.entity_type.value,
        entry.entity_id,
        entry.from_status,
        entry.to_status,
        entry.changed_by,
    )
    return entry


async def get_status_history(
    db: aiosqlite.Connection,
    entity_type: EntityType,
    entity_id: str,
) -> list[StatusHistoryEntry]:
    """All transitions of one entity, oldest first."""
    async with db.execute(
        """
        SELECT * FROM status_history
        WHERE entity_type = ? AND entity_id = ?
        ORDER BY created_at ASC, rowid ASC
        """,
        (entity_type.value, entity_id),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_entry(r) for r in rows]


# ---------------------------------------------------------------------------
# Review records
# ---------------------------------------------------------------------------

def _row_to_review(row: aiosqlite.Row | dict[str, Any]) -> Review:
    d = dict(row)
    d["edits"] = from_json(d.get("edits")) or {}
    return Review(**d)


async def insert_review(
    db: aiosqlite.Connection,
    entity_type: EntityType,
    entity_id: str,
    reviewer_id: str,
    reviewer_role: str,
    decision: ReviewDecision | str,
    comments: str = "",
    edits: dict[str, Any] | None = None,
) -> Review:
    """Write an immutable review decision. Does not commit."""
    review = Review(
        entity_type=entity_type,
        entity_id=entity_id,
        reviewer_id=reviewer_id,
        reviewer_role=reviewer_role,
        decision=ReviewDecision(decision),
        comments=comments or "",
        edits=edits or {},
    )
    await db.execute(
        """
        INSERT INTO reviews
            (review_id, entity_type, entity_id, reviewer_id, reviewer_role, decision, comments, edits, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            review.review_id,
            review.entity_type.value,
            review.entity_id,
            review.reviewer_id,
            review.reviewer_role,
            review.decision.value,
            review.comments,
            to_json(review.edits),
            review.created_at.isoformat(),
        ),
    )
    return review


async def get_reviews(
    db: aiosqlite.Connection,
    entity_type: EntityType,
    entity_id: str,
) -> list[Review]:
    """All review decisions on one entity, oldest first."""
    async with db.execute(
        """
        SELECT * FROM reviews
        WHERE entity_type = ? AND entity_id = ?
        ORDER BY created_at ASC, rowid ASC
        """,
        (entity_type.value, entity_id),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_review(r) for r in rows]
