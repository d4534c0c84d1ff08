"""Notification service: best-effort in-app notifications.

Notifications are sent after the primary transaction commits. A failed
delivery is logged and dropped; it never rolls back or fails the
operation that triggered it.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import aiosqlite

from incentra.collaborators import NotificationSink
from incentra.database import from_json, to_json
from incentra.models import Notification

logger = logging.getLogger(__name__)


class DatabaseNotificationSink:
    """Stores notifications in the ``notifications`` table.

    Each write commits on its own, so call it only outside an open
    ``transaction`` block.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

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
        note = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            reference_type=reference_type,
            reference_id=reference_id,
            metadata=metadata or {},
        )
        try:
            await self.db.execute(
                """
                INSERT INTO notifications
                    (notification_id, user_id, type, title, message, reference_type, reference_id, metadata, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    note.notification_id,
                    note.user_id,
                    note.type,
                    note.title,
                    note.message,
                    note.reference_type,
                    note.reference_id,
                    to_json(note.metadata),
                    note.created_at.isoformat(),
                ),
            )
            await self.db.commit()
        except Exception as exc:
            logger.warning("notification delivery failed user_id=%s type=%s: %s", user_id, type, exc)


async def dispatch(
    sink: NotificationSink | None,
    recipients: Iterable[str | None],
    type: str,
    title: str,
    message: str,
    reference_type: str = "",
    reference_id: str = "",
    metadata: dict[str, Any] | None = None,
) -> int:
    """Fan a notification out to each distinct recipient. Returns how many were attempted."""
    if sink is None:
        return 0
    sent = 0
    seen: set[str] = set()
    for user_id in recipients:
        if not user_id or user_id in seen:
            continue
        seen.add(user_id)
        try:
            await sink.notify(user_id, type, title, message, reference_type, reference_id, metadata)
        except Exception as exc:
            logger.warning("notification delivery failed user_id=%s type=%s: %s", user_id, type, exc)
        sent += 1
    return sent


def _row_to_notification(row: aiosqlite.Row | dict[str, Any]) -> Notification:
    d = dict(row)
    d["metadata"] = from_json(d.get("metadata")) or {}
    d["is_read"] = bool(d["is_read"])
    return Notification(**d)


async def list_notifications(
    db: aiosqlite.Connection, user_id: str, unread_only: bool = False, limit: int = 50
) -> list[Notification]:
    query = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        query += " AND is_read = 0"
    query += " ORDER BY created_at DESC LIMIT ?"
    async with db.execute(query, (user_id, limit)) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_notification(r) for r in rows]


async def mark_read(db: aiosqlite.Connection, user_id: str, notification_id: str) -> bool:
    cursor = await db.execute(
        "UPDATE notifications SET is_read = 1 WHERE notification_id = ? AND user_id = ?",
        (notification_id, user_id),
    )
    await db.commit()
    return cursor.rowcount > 0
