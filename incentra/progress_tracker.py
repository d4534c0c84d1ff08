"""Progress tracker: pre-submission progress of a paper, book, chapter or conference talk.

Status flow: writing <-> communicated -> submitted -> {rejected, accepted} -> published.
A rejected piece may restart at writing, communicated or submitted. A
transition to the current status is a monthly progress report. Once
published, the tracker can be linked to exactly one contribution.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from incentra.collaborators import Actor, Capability
from incentra.contribution_service import get_contribution, save_contribution
from incentra.database import from_json, generate_tracking_number, iso, to_json, transaction
from incentra.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from incentra.history_service import get_status_history, record_status_change
from incentra.models import (
    Contribution,
    EntityType,
    ProgressTracker,
    StatusHistoryEntry,
    TrackerCreate,
    TrackerStatus,
    TrackerTransition,
    TrackerUpdate,
    TrackerType,
)

logger = logging.getLogger(__name__)

TRACKER_TRANSITIONS: dict[TrackerStatus, frozenset[TrackerStatus]] = {
    TrackerStatus.WRITING: frozenset({TrackerStatus.WRITING, TrackerStatus.COMMUNICATED}),
    TrackerStatus.COMMUNICATED: frozenset({
        TrackerStatus.COMMUNICATED,
        TrackerStatus.WRITING,
        TrackerStatus.SUBMITTED,
        TrackerStatus.REJECTED,
    }),
    TrackerStatus.SUBMITTED: frozenset({TrackerStatus.SUBMITTED, TrackerStatus.REJECTED, TrackerStatus.ACCEPTED}),
    TrackerStatus.REJECTED: frozenset({TrackerStatus.WRITING, TrackerStatus.COMMUNICATED, TrackerStatus.SUBMITTED}),
    TrackerStatus.ACCEPTED: frozenset({TrackerStatus.ACCEPTED, TrackerStatus.PUBLISHED}),
    TrackerStatus.PUBLISHED: frozenset({TrackerStatus.PUBLISHED}),
}

INITIAL_STATUSES = (TrackerStatus.WRITING, TrackerStatus.COMMUNICATED)
MONTHLY_REPORT_PREFIX = "Monthly Report: "


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_tracker(row: aiosqlite.Row | dict[str, Any]) -> ProgressTracker:
    d = dict(row)
    d["type_data"] = from_json(d.get("type_data")) or {}
    return ProgressTracker(**d)


async def _load(db: aiosqlite.Connection, tracker_id: str) -> ProgressTracker:
    async with db.execute("SELECT * FROM progress_trackers WHERE tracker_id = ?", (tracker_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("progress_tracker", tracker_id)
    return _row_to_tracker(row)


async def _save(db: aiosqlite.Connection, t: ProgressTracker) -> None:
    t.updated_at = _now()
    await db.execute(
        """
        UPDATE progress_trackers SET
            title = ?, current_status = ?, type_data = ?, expected_completion_date = ?,
            actual_completion_date = ?, research_contribution_id = ?, notes = ?, updated_at = ?
        WHERE tracker_id = ?
        """,
        (
            t.title, t.current_status.value, to_json(t.type_data), iso(t.expected_completion_date),
            iso(t.actual_completion_date), t.research_contribution_id, t.notes,
            t.updated_at.isoformat(), t.tracker_id,
        ),
    )


def _require_owner(actor: Actor, t: ProgressTracker) -> None:
    if actor.id != t.user_id:
        raise PermissionDeniedError("You can only manage your own trackers", details={"guard": "owner"})


def _require_unlinked(t: ProgressTracker, attempted: str) -> None:
    if t.research_contribution_id:
        raise StateError(
            "Tracker is linked to a contribution and can no longer change",
            current_status=t.current_status.value,
            attempted=attempted,
        )


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

async def create_tracker(db: aiosqlite.Connection, actor: Actor, payload: TrackerCreate) -> ProgressTracker:
    if payload.initial_status not in INITIAL_STATUSES:
        raise ValidationError(
            "A tracker starts as writing or communicated",
            field="initial_status",
            allowed_values=[s.value for s in INITIAL_STATUSES],
        )
    t = ProgressTracker(
        user_id=actor.id,
        tracker_type=payload.tracker_type,
        title=payload.title,
        current_status=payload.initial_status,
        type_data=payload.type_data,
        school_id=payload.school_id,
        department_id=payload.department_id,
        expected_completion_date=payload.expected_completion_date,
        notes=payload.notes,
    )
    async with transaction(db):
        t.tracking_number = await generate_tracking_number(db, t.tracker_type)
        await db.execute(
            """
            INSERT INTO progress_trackers (
                tracker_id, tracking_number, user_id, tracker_type, title, current_status, type_data,
                school_id, department_id, expected_completion_date, notes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                t.tracker_id, t.tracking_number, t.user_id, t.tracker_type.value, t.title,
                t.current_status.value, to_json(t.type_data), t.school_id, t.department_id,
                iso(t.expected_completion_date), t.notes, t.created_at.isoformat(),
                t.updated_at.isoformat(),
            ),
        )
        await record_status_change(
            db, EntityType.PROGRESS_TRACKER, t.tracker_id, None, t.current_status,
            changed_by=actor.id, comments="Tracker created",
        )
    return t


async def get_tracker(db: aiosqlite.Connection, actor: Actor, tracker_id: str) -> ProgressTracker:
    t = await _load(db, tracker_id)
    if actor.id != t.user_id and not actor.has_permission(Capability.RESEARCH_REVIEW):
        raise PermissionDeniedError("You can only view your own trackers", details={"guard": "owner"})
    return t


async def list_trackers(
    db: aiosqlite.Connection,
    actor: Actor,
    status: TrackerStatus | None = None,
    tracker_type: TrackerType | None = None,
) -> list[ProgressTracker]:
    query = "SELECT * FROM progress_trackers WHERE user_id = ?"
    params: list[Any] = [actor.id]
    if status:
        query += " AND current_status = ?"
        params.append(status.value)
    if tracker_type:
        query += " AND tracker_type = ?"
        params.append(tracker_type.value)
    query += " ORDER BY updated_at DESC"
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_tracker(r) for r in rows]


async def get_tracker_history(
    db: aiosqlite.Connection, actor: Actor, tracker_id: str
) -> list[StatusHistoryEntry]:
    await get_tracker(db, actor, tracker_id)
    return await get_status_history(db, EntityType.PROGRESS_TRACKER, tracker_id)


async def update_tracker(
    db: aiosqlite.Connection, actor: Actor, tracker_id: str, patch: TrackerUpdate
) -> ProgressTracker:
    """Edit title, notes, dates or type data. ``type_data`` is shallow-merged."""
    t = await _load(db, tracker_id)
    _require_owner(actor, t)
    _require_unlinked(t, "update")
    changes = patch.model_dump(exclude_unset=True)
    if "type_data" in changes:
        t.type_data = {**t.type_data, **(changes.pop("type_data") or {})}
    for field, value in changes.items():
        if value is not None:
            setattr(t, field, value)
    async with transaction(db):
        await _save(db, t)
    return t


async def delete_tracker(db: aiosqlite.Connection, actor: Actor, tracker_id: str) -> None:
    t = await _load(db, tracker_id)
    _require_owner(actor, t)
    _require_unlinked(t, "delete")
    async with transaction(db):
        await db.execute("DELETE FROM progress_trackers WHERE tracker_id = ?", (tracker_id,))
    logger.info("tracker deleted tracker_id=%s by=%s", tracker_id, actor.id)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def transition_tracker(
    db: aiosqlite.Connection, actor: Actor, tracker_id: str, move: TrackerTransition
) -> ProgressTracker:
    """Move the tracker along a listed edge and merge ``status_data`` into its type data."""
    t = await _load(db, tracker_id)
    _require_owner(actor, t)
    allowed = TRACKER_TRANSITIONS[t.current_status]
    if move.to_status not in allowed:
        raise InvalidTransitionError(
            "progress_tracker", t.current_status.value, move.to_status.value, sorted(s.value for s in allowed)
        )

    from_status = t.current_status
    monthly = from_status == move.to_status
    notes = f"{MONTHLY_REPORT_PREFIX}{move.notes or 'Progress update'}" if monthly else move.notes
    t.current_status = move.to_status
    t.type_data = {**t.type_data, **move.status_data}
    if move.to_status == TrackerStatus.PUBLISHED and t.actual_completion_date is None:
        t.actual_completion_date = (move.reported_date or _now().date())

    async with transaction(db):
        await _save(db, t)
        await record_status_change(
            db, EntityType.PROGRESS_TRACKER, t.tracker_id, from_status, move.to_status,
            changed_by=actor.id,
            comments=notes,
            metadata={
                "status_data": move.status_data,
                "reported_date": iso(move.reported_date or _now().date()),
                "monthly_report": monthly,
            },
        )
    return t


# ---------------------------------------------------------------------------
# Submission hand-off
# ---------------------------------------------------------------------------

def _require_ready_for_submission(actor: Actor, t: ProgressTracker) -> None:
    _require_owner(actor, t)
    if t.current_status != TrackerStatus.PUBLISHED:
        raise StateError(
            "Only published research can be submitted for incentive",
            current_status=t.current_status.value,
            attempted="submit_for_incentive",
        )
    if t.research_contribution_id:
        raise StateError(
            "Tracker is already linked to a contribution",
            current_status=t.current_status.value,
            attempted="submit_for_incentive",
            details={"contribution_id": t.research_contribution_id},
        )


async def submission_prefill(db: aiosqlite.Connection, actor: Actor, tracker_id: str) -> dict[str, Any]:
    """Contribution form data drawn from a published tracker and its history."""
    t = await _load(db, tracker_id)
    _require_ready_for_submission(actor, t)
    history = await get_status_history(db, EntityType.PROGRESS_TRACKER, tracker_id)
    return {
        **t.type_data,
        "tracker_id": t.tracker_id,
        "tracking_number": t.tracking_number,
        "publication_type": t.tracker_type.value,
        "title": t.title,
        "school_id": t.school_id,
        "department_id": t.department_id,
        "progress_history": [h.model_dump(mode="json") for h in history],
    }


async def link_to_contribution(
    db: aiosqlite.Connection, actor: Actor, tracker_id: str, contribution_id: str
) -> tuple[ProgressTracker, Contribution]:
    """Link a published tracker to the owner's contribution. Both records keep the link."""
    t = await _load(db, tracker_id)
    _require_ready_for_submission(actor, t)
    c = await get_contribution(db, contribution_id)
    if c.applicant_id != actor.id:
        raise PermissionDeniedError("Contribution does not belong to you", details={"guard": "owner"})
    if c.progress_tracker_id and c.progress_tracker_id != tracker_id:
        raise StateError(
            "Contribution is already linked to another tracker",
            current_status=c.status.value,
            attempted="link",
        )
    t.research_contribution_id = contribution_id
    c.progress_tracker_id = tracker_id
    async with transaction(db):
        await _save(db, t)
        await save_contribution(db, c)
    logger.info("tracker linked tracker_id=%s contribution_id=%s", tracker_id, contribution_id)
    return t, c


async def tracker_stats(db: aiosqlite.Connection, actor: Actor) -> dict[str, Any]:
    """Counts of the actor's trackers by status and by type."""
    async with db.execute(
        """
        SELECT current_status, tracker_type, COUNT(*) AS n FROM progress_trackers
        WHERE user_id = ? GROUP BY current_status, tracker_type
        """,
        (actor.id,),
    ) as cursor:
        rows = await cursor.fetchall()
    by_status: dict[str, int] = {}
    by_type: dict[str, int] = {}
    for r in rows:
        by_status[r["current_status"]] = by_status.get(r["current_status"], 0) + r["n"]
        by_type[r["tracker_type"]] = by_type.get(r["tracker_type"], 0) + r["n"]
    return {"by_status": by_status, "by_type": by_type, "total": sum(by_status.values())}
