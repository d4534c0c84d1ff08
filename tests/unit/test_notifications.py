"""Notification fan-out and the database-backed sink."""

from __future__ import annotations

import logging

import pytest

from incentra.notification_service import DatabaseNotificationSink, dispatch, list_notifications, mark_read


@pytest.mark.asyncio
async def test_dispatch_skips_empty_and_duplicate_recipients(sink):
    sent = await dispatch(sink, ["u1", None, "u2", "u1", ""], "hello", "Hi", "Body", "contribution", "c-1")
    assert sent == 2
    assert [m["user_id"] for m in sink.sent] == ["u1", "u2"]
    assert sink.sent[0]["reference_id"] == "c-1"


@pytest.mark.asyncio
async def test_dispatch_without_sink_is_a_no_op():
    assert await dispatch(None, ["u1"], "hello", "Hi", "Body") == 0


@pytest.mark.asyncio
async def test_failed_delivery_is_logged_not_raised(failing_sink, caplog):
    with caplog.at_level(logging.WARNING, logger="incentra.notification_service"):
        sent = await dispatch(failing_sink, ["u1", "u2"], "hello", "Hi", "Body")
    assert sent == 2
    assert "mail server down" in caplog.text


@pytest.mark.asyncio
async def test_database_sink_stores_and_marks_read(db):
    sink = DatabaseNotificationSink(db)
    await dispatch(sink, ["u1"], "research_approved", "Approved", "Done", "contribution", "c-1", {"amount": 5})
    await dispatch(sink, ["u1"], "research_rejected", "Rejected", "No")
    await dispatch(sink, ["u2"], "research_approved", "Approved", "Done")

    notes = await list_notifications(db, "u1")
    assert {n.type for n in notes} == {"research_approved", "research_rejected"}
    approved = next(n for n in notes if n.type == "research_approved")
    assert approved.metadata == {"amount": 5}
    assert approved.is_read is False

    assert await mark_read(db, "u2", approved.notification_id) is False
    assert await mark_read(db, "u1", approved.notification_id) is True
    unread = await list_notifications(db, "u1", unread_only=True)
    assert [n.type for n in unread] == ["research_rejected"]
