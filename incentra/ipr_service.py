"""IPR service: patent, copyright, trademark and design filings.

Flow: submitted -> under_drd_review -> [changes_required -> resubmitted]
-> recommended_to_head -> drd_head_approved -> submitted_to_govt
-> govt_application_filed -> published

Inventors are credited once, with an equal floor-divided split of the
flat per-type amount, when the configured milestone is reached.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any

import aiosqlite

from incentra.author_composition import applicant_kind_for
from incentra.collaborators import Actor, Capability, NotificationSink
from incentra.config import IncentiveDefaults, settings
from incentra.database import (
    from_json,
    generate_application_number,
    iso,
    to_json,
    transaction,
)
from incentra.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from incentra.history_service import insert_review, record_status_change
from incentra.incentive_engine import ipr_pool, split_ipr_incentive
from incentra.models import (
    AuthorKind,
    EntityType,
    InventorRole,
    IprApplication,
    IprContributor,
    IprCreate,
    IprShare,
    IprStatus,
    PolicyScope,
    ReviewDecision,
)
from incentra.notification_service import dispatch
from incentra.policy_store import find_active_policy

logger = logging.getLogger(__name__)

IPR_TRANSITIONS: dict[IprStatus, frozenset[IprStatus]] = {
    IprStatus.DRAFT: frozenset({IprStatus.SUBMITTED, IprStatus.PENDING_MENTOR_APPROVAL}),
    IprStatus.PENDING_MENTOR_APPROVAL: frozenset({IprStatus.SUBMITTED, IprStatus.CHANGES_REQUIRED}),
    IprStatus.SUBMITTED: frozenset({IprStatus.UNDER_DRD_REVIEW, IprStatus.DRD_REJECTED}),
    IprStatus.RESUBMITTED: frozenset({IprStatus.UNDER_DRD_REVIEW, IprStatus.DRD_REJECTED}),
    IprStatus.UNDER_DRD_REVIEW: frozenset({
        IprStatus.RECOMMENDED_TO_HEAD,
        IprStatus.CHANGES_REQUIRED,
        IprStatus.DRD_REJECTED,
    }),
    IprStatus.CHANGES_REQUIRED: frozenset({IprStatus.RESUBMITTED, IprStatus.PENDING_MENTOR_APPROVAL}),
    IprStatus.RECOMMENDED_TO_HEAD: frozenset({
        IprStatus.DRD_HEAD_APPROVED,
        IprStatus.SUBMITTED_TO_GOVT,
        IprStatus.CHANGES_REQUIRED,
        IprStatus.DRD_REJECTED,
    }),
    IprStatus.DRD_HEAD_APPROVED: frozenset({IprStatus.SUBMITTED_TO_GOVT}),
    IprStatus.SUBMITTED_TO_GOVT: frozenset({IprStatus.GOVT_APPLICATION_FILED, IprStatus.GOVT_REJECTED}),
    IprStatus.GOVT_APPLICATION_FILED: frozenset({IprStatus.PUBLISHED, IprStatus.GOVT_REJECTED}),
}

DRD_QUEUE_STATUSES = (
    IprStatus.SUBMITTED,
    IprStatus.RESUBMITTED,
    IprStatus.UNDER_DRD_REVIEW,
    IprStatus.RECOMMENDED_TO_HEAD,
    IprStatus.DRD_HEAD_APPROVED,
    IprStatus.SUBMITTED_TO_GOVT,
    IprStatus.GOVT_APPLICATION_FILED,
)

INVENTOR_ROLES = frozenset({InventorRole.PRIMARY_INVENTOR, InventorRole.INVENTOR, InventorRole.CO_INVENTOR})

_DRD_DECISIONS = {
    ReviewDecision.RECOMMENDED: IprStatus.RECOMMENDED_TO_HEAD,
    ReviewDecision.CHANGES_REQUIRED: IprStatus.CHANGES_REQUIRED,
    ReviewDecision.REJECTED: IprStatus.DRD_REJECTED,
}

_STATUS_MESSAGES = {
    IprStatus.RECOMMENDED_TO_HEAD: ("IPR Application Recommended", "'{title}' was recommended to the DRD head"),
    IprStatus.CHANGES_REQUIRED: ("Changes Required for IPR Application", "The reviewer requested changes to '{title}'"),
    IprStatus.DRD_REJECTED: ("IPR Application Rejected", "'{title}' was rejected by DRD"),
    IprStatus.DRD_HEAD_APPROVED: ("IPR Application Approved", "'{title}' was approved and is ready for government filing"),
    IprStatus.SUBMITTED_TO_GOVT: ("Submitted to Government", "'{title}' was submitted for government filing"),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Row conversion and persistence
# ---------------------------------------------------------------------------

def _row_to_contributor(row: aiosqlite.Row | dict[str, Any]) -> IprContributor:
    return IprContributor(**dict(row))


def _row_to_application(row: aiosqlite.Row | dict[str, Any], contributors: list[IprContributor]) -> IprApplication:
    d = dict(row)
    d["sdg_goals"] = from_json(d.get("sdg_goals")) or []
    d["contributors"] = contributors
    return IprApplication(**d)


async def _load_contributors(db: aiosqlite.Connection, ipr_id: str) -> list[IprContributor]:
    async with db.execute(
        "SELECT * FROM ipr_contributors WHERE ipr_id = ? ORDER BY rowid", (ipr_id,)
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_contributor(r) for r in rows]


async def get_ipr_application(db: aiosqlite.Connection, ipr_id: str) -> IprApplication:
    async with db.execute("SELECT * FROM ipr_applications WHERE ipr_id = ?", (ipr_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("ipr_application", ipr_id)
    return _row_to_application(row, await _load_contributors(db, ipr_id))


async def list_ipr_applications(
    db: aiosqlite.Connection,
    applicant_id: str | None = None,
    status: IprStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[IprApplication]:
    clauses: list[str] = []
    params: list[Any] = []
    if applicant_id:
        clauses.append("applicant_id = ?")
        params.append(applicant_id)
    if status:
        clauses.append("status = ?")
        params.append(status.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with db.execute(
        f"SELECT * FROM ipr_applications {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
        [*params, limit, offset],
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_application(r, await _load_contributors(db, r["ipr_id"])) for r in rows]


async def _insert_application(db: aiosqlite.Connection, app: IprApplication) -> None:
    await db.execute(
        """
        INSERT INTO ipr_applications (
            ipr_id, application_number, applicant_id, applicant_uid, applicant_kind, mentor_uid,
            school_id, title, description, ipr_type, project_type, filing_type, sdg_goals, status,
            revision_count, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            app.ipr_id, app.application_number, app.applicant_id, app.applicant_uid,
            app.applicant_kind.value, app.mentor_uid, app.school_id, app.title, app.description,
            app.ipr_type.value, app.project_type.value, app.filing_type.value,
            to_json(app.sdg_goals), app.status.value, app.revision_count,
            app.created_at.isoformat(), app.updated_at.isoformat(),
        ),
    )
    await db.executemany(
        """
        INSERT INTO ipr_contributors (contributor_id, ipr_id, user_id, name, email, role, author_kind)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (c.contributor_id, app.ipr_id, c.user_id, c.name, c.email, c.role.value, c.author_kind.value)
            for c in app.contributors
        ],
    )


async def save_ipr_application(db: aiosqlite.Connection, app: IprApplication) -> None:
    """Write every mutable column of ``app``. Does not commit."""
    app.updated_at = _now()
    await db.execute(
        """
        UPDATE ipr_applications SET
            title = ?, description = ?, ipr_type = ?, project_type = ?, filing_type = ?,
            sdg_goals = ?, status = ?, current_reviewer_id = ?, govt_application_id = ?,
            govt_filing_date = ?, publication_id = ?, publication_date = ?,
            govt_rejection_reference = ?, incentive_amount = ?, points_awarded = ?,
            incentive_credited_at = ?, revision_count = ?, updated_at = ?, submitted_at = ?,
            completed_at = ?
        WHERE ipr_id = ?
        """,
        (
            app.title, app.description, app.ipr_type.value, app.project_type.value,
            app.filing_type.value, to_json(app.sdg_goals), app.status.value,
            app.current_reviewer_id, app.govt_application_id, iso(app.govt_filing_date),
            app.publication_id, iso(app.publication_date), app.govt_rejection_reference,
            app.incentive_amount, app.points_awarded, iso(app.incentive_credited_at),
            app.revision_count, app.updated_at.isoformat(), iso(app.submitted_at),
            iso(app.completed_at), app.ipr_id,
        ),
    )


async def apply_ipr_transition(
    db: aiosqlite.Connection,
    app: IprApplication,
    to_status: IprStatus,
    actor: Actor,
    comments: str = "",
    metadata: dict[str, Any] | None = None,
) -> IprApplication:
    """Move ``app`` along a listed edge, persist it and append history. Does not commit."""
    allowed = IPR_TRANSITIONS.get(app.status, frozenset())
    if to_status not in allowed:
        raise InvalidTransitionError(
            "ipr_application", app.status.value, to_status.value, sorted(s.value for s in allowed)
        )
    from_status = app.status
    app.status = to_status
    await save_ipr_application(db, app)
    await record_status_change(
        db, EntityType.IPR_APPLICATION, app.ipr_id, from_status, to_status,
        changed_by=actor.id, comments=comments, metadata=metadata,
    )
    return app


# ---------------------------------------------------------------------------
# Guards and recipients
# ---------------------------------------------------------------------------

def _require_applicant(actor: Actor, app: IprApplication) -> None:
    if actor.id != app.applicant_id:
        raise PermissionDeniedError("Only the applicant can do this", details={"guard": "applicant"})


def _require_mentor(actor: Actor, app: IprApplication) -> None:
    if not app.mentor_uid or actor.uid != app.mentor_uid:
        raise PermissionDeniedError("Only the assigned mentor can do this", details={"guard": "mentor"})


def _require_status(app: IprApplication, allowed: tuple[IprStatus, ...], attempted: str) -> None:
    if app.status not in allowed:
        raise StateError(
            f"Cannot {attempted.replace('_', ' ')} an IPR application in status: {app.status.value}",
            current_status=app.status.value,
            attempted=attempted,
        )


def _require_school_access(actor: Actor, app: IprApplication) -> None:
    """DRD members act only on their assigned schools. The DRD head sees all."""
    if actor.has_permission(Capability.DRD_HEAD):
        return
    actor.require(Capability.DRD_REVIEW)
    if app.school_id and app.school_id not in actor.school_ids:
        raise PermissionDeniedError(
            "Application belongs to a school outside your assignment",
            capability=Capability.DRD_REVIEW.value,
            details={"school_id": app.school_id},
        )


def _require_comments(comments: str | None) -> str:
    if not comments or not comments.strip():
        raise ValidationError("Comments are required", field="comments")
    return comments.strip()


def contributor_user_ids(app: IprApplication) -> list[str]:
    """Applicant first, then every contributor with an account."""
    return [app.applicant_id, *(c.user_id for c in app.contributors if c.user_id)]


async def _notify_contributors(
    notifier: NotificationSink | None,
    app: IprApplication,
    type: str,
    title: str,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> int:
    return await dispatch(
        notifier, contributor_user_ids(app), type, title, message,
        "ipr_application", app.ipr_id, metadata,
    )


# ---------------------------------------------------------------------------
# Applicant side
# ---------------------------------------------------------------------------

async def create_ipr_application(
    db: aiosqlite.Connection,
    actor: Actor,
    payload: IprCreate,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    app = IprApplication(
        applicant_id=actor.id,
        applicant_uid=actor.uid or None,
        applicant_kind=applicant_kind_for(actor.role),
        mentor_uid=payload.mentor_uid,
        school_id=payload.school_id,
        title=payload.title,
        description=payload.description,
        ipr_type=payload.ipr_type,
        project_type=payload.project_type,
        filing_type=payload.filing_type,
        sdg_goals=payload.sdg_goals,
    )
    app.contributors = [
        IprContributor(
            ipr_id=app.ipr_id,
            user_id=c.user_id,
            name=c.name,
            email=c.email,
            role=c.role,
            author_kind=c.author_kind,
        )
        for c in payload.contributors
    ]
    async with transaction(db):
        app.application_number = await generate_application_number(db, PolicyScope.IPR)
        await _insert_application(db, app)
        await record_status_change(
            db, EntityType.IPR_APPLICATION, app.ipr_id, None, app.status, changed_by=actor.id
        )

    await dispatch(
        notifier,
        [c.user_id for c in app.contributors if c.user_id != actor.id],
        "ipr_contributor_added", "Added to an IPR application",
        f"You were added as a contributor on '{app.title}' ({app.application_number})",
        "ipr_application", app.ipr_id,
    )
    return app


async def submit_ipr_application(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    """Submit a draft. A student applicant with a mentor goes to the mentor first."""
    app = await get_ipr_application(db, ipr_id)
    _require_applicant(actor, app)
    _require_status(app, (IprStatus.DRAFT,), "submit")
    to_mentor = app.applicant_kind == AuthorKind.INTERNAL_STUDENT and bool(app.mentor_uid)
    app.submitted_at = _now()
    async with transaction(db):
        await apply_ipr_transition(
            db, app, IprStatus.PENDING_MENTOR_APPROVAL if to_mentor else IprStatus.SUBMITTED, actor
        )

    if to_mentor:
        await dispatch(
            notifier, [app.mentor_uid], "ipr_mentor_approval", "Mentor approval requested",
            f"'{app.title}' ({app.application_number}) is waiting for your approval",
            "ipr_application", app.ipr_id,
        )
    else:
        await _notify_contributors(
            notifier, app, "ipr_submitted", "IPR Application Submitted",
            f"'{app.title}' ({app.application_number}) was submitted to DRD",
        )
    return app


async def mentor_approve_ipr(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    comments: str = "",
    notifier: NotificationSink | None = None,
) -> IprApplication:
    app = await get_ipr_application(db, ipr_id)
    _require_mentor(actor, app)
    _require_status(app, (IprStatus.PENDING_MENTOR_APPROVAL,), "mentor_approve")
    async with transaction(db):
        await apply_ipr_transition(
            db, app, IprStatus.SUBMITTED, actor, comments, {"action": "mentor_approved"}
        )
    await dispatch(
        notifier, [app.applicant_id], "ipr_mentor_approved", "Mentor approved",
        f"Your mentor approved '{app.title}'. It is now with DRD.",
        "ipr_application", app.ipr_id,
    )
    return app


async def mentor_reject_ipr(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    comments: str,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    comments = _require_comments(comments)
    app = await get_ipr_application(db, ipr_id)
    _require_mentor(actor, app)
    _require_status(app, (IprStatus.PENDING_MENTOR_APPROVAL,), "mentor_reject")
    async with transaction(db):
        await insert_review(
            db, EntityType.IPR_APPLICATION, app.ipr_id, actor.id, "mentor",
            ReviewDecision.CHANGES_REQUIRED, comments,
        )
        await apply_ipr_transition(
            db, app, IprStatus.CHANGES_REQUIRED, actor, comments, {"action": "mentor_rejected"}
        )
    await dispatch(
        notifier, [app.applicant_id], "ipr_mentor_rejected", "Changes requested by mentor",
        comments, "ipr_application", app.ipr_id,
    )
    return app


async def resubmit_ipr(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    app = await get_ipr_application(db, ipr_id)
    _require_applicant(actor, app)
    _require_status(app, (IprStatus.CHANGES_REQUIRED,), "resubmit")
    async with db.execute(
        "SELECT COUNT(*) FROM edit_suggestions WHERE target_type = 'ipr_application' AND target_id = ? AND status = 'pending'",
        (ipr_id,),
    ) as cursor:
        pending = (await cursor.fetchone())[0]
    if pending:
        raise StateError(
            f"{pending} suggestion(s) still need a response",
            current_status=app.status.value, attempted="resubmit",
        )
    app.revision_count += 1
    async with transaction(db):
        await apply_ipr_transition(db, app, IprStatus.RESUBMITTED, actor)
    await dispatch(
        notifier, [app.current_reviewer_id], "ipr_resubmitted", "IPR Application Resubmitted",
        f"'{app.title}' ({app.application_number}) was resubmitted",
        "ipr_application", app.ipr_id,
    )
    return app


# ---------------------------------------------------------------------------
# DRD side
# ---------------------------------------------------------------------------

async def list_drd_queue(
    db: aiosqlite.Connection,
    actor: Actor,
    status: IprStatus | None = None,
) -> list[IprApplication]:
    """Applications in the DRD pipeline visible to ``actor``."""
    statuses = [status] if status else list(DRD_QUEUE_STATUSES)
    query = f"SELECT * FROM ipr_applications WHERE status IN ({', '.join('?' for _ in statuses)})"
    params: list[Any] = [s.value for s in statuses]
    if not actor.has_permission(Capability.DRD_HEAD):
        actor.require(Capability.DRD_REVIEW)
        if not actor.school_ids:
            return []
        schools = sorted(actor.school_ids)
        query += f" AND school_id IN ({', '.join('?' for _ in schools)})"
        params.extend(schools)
    query += " ORDER BY submitted_at ASC, created_at ASC"
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_application(r, await _load_contributors(db, r["ipr_id"])) for r in rows]


async def assign_drd_reviewer(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    reviewer_id: str | None = None,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    """Put an application under DRD review. Members may only assign themselves."""
    app = await get_ipr_application(db, ipr_id)
    _require_school_access(actor, app)
    reviewer_id = reviewer_id or actor.id
    if reviewer_id != actor.id and not actor.has_permission(Capability.DRD_HEAD):
        raise PermissionDeniedError("Only the DRD head can assign other reviewers", capability=Capability.DRD_HEAD.value)
    _require_status(app, (IprStatus.SUBMITTED, IprStatus.RESUBMITTED), "assign_reviewer")
    app.current_reviewer_id = reviewer_id
    async with transaction(db):
        await apply_ipr_transition(
            db, app, IprStatus.UNDER_DRD_REVIEW, actor, f"Assigned to reviewer: {reviewer_id}"
        )
    if reviewer_id != actor.id:
        await dispatch(
            notifier, [reviewer_id], "ipr_review_assigned", "IPR Review Assigned",
            f"'{app.title}' ({app.application_number}) was assigned to you for review",
            "ipr_application", app.ipr_id,
        )
    return app


async def submit_drd_review(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    decision: ReviewDecision | str,
    comments: str = "",
    edits: dict[str, Any] | None = None,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    """Record a DRD member's decision: recommended, changes_required or rejected."""
    try:
        decision = ReviewDecision(decision)
    except ValueError:
        decision = None
    if decision not in _DRD_DECISIONS:
        raise ValidationError(
            "Invalid decision",
            field="decision",
            allowed_values=[d.value for d in _DRD_DECISIONS],
        )
    app = await get_ipr_application(db, ipr_id)
    _require_school_access(actor, app)
    _require_status(app, (IprStatus.UNDER_DRD_REVIEW,), "review")
    if decision != ReviewDecision.RECOMMENDED:
        comments = _require_comments(comments)

    new_status = _DRD_DECISIONS[decision]
    async with transaction(db):
        await insert_review(
            db, EntityType.IPR_APPLICATION, app.ipr_id, actor.id, "drd_member",
            decision, comments, edits,
        )
        await apply_ipr_transition(db, app, new_status, actor, comments or f"DRD review: {decision.value}")

    title, message = _STATUS_MESSAGES[new_status]
    await _notify_contributors(
        notifier, app, "ipr_status_change", title, message.format(title=app.title),
        {"new_status": new_status.value, "decision": decision.value},
    )
    return app


async def recommend_to_head(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    comments: str = "",
    notifier: NotificationSink | None = None,
) -> IprApplication:
    return await submit_drd_review(db, actor, ipr_id, ReviewDecision.RECOMMENDED, comments, notifier=notifier)


async def head_approve(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    comments: str = "",
    notifier: NotificationSink | None = None,
) -> IprApplication:
    actor.require(Capability.DRD_HEAD)
    app = await get_ipr_application(db, ipr_id)
    _require_status(app, (IprStatus.RECOMMENDED_TO_HEAD,), "approve")
    async with transaction(db):
        await insert_review(
            db, EntityType.IPR_APPLICATION, app.ipr_id, actor.id, "drd_head",
            ReviewDecision.APPROVED, comments,
        )
        await apply_ipr_transition(db, app, IprStatus.DRD_HEAD_APPROVED, actor, comments or "Approved by DRD head")
    title, message = _STATUS_MESSAGES[IprStatus.DRD_HEAD_APPROVED]
    await _notify_contributors(notifier, app, "ipr_status_change", title, message.format(title=app.title))
    return app


async def submit_to_govt(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    comments: str = "",
    notifier: NotificationSink | None = None,
) -> IprApplication:
    """Hand an approved application over for government filing."""
    if not (actor.has_permission(Capability.DRD_HEAD) or actor.has_permission(Capability.IPR_GOVT_FILING)):
        raise PermissionDeniedError("Missing permission: drd_head", capability=Capability.DRD_HEAD.value)
    app = await get_ipr_application(db, ipr_id)
    _require_status(app, (IprStatus.RECOMMENDED_TO_HEAD, IprStatus.DRD_HEAD_APPROVED), "submit_to_govt")
    async with transaction(db):
        await apply_ipr_transition(db, app, IprStatus.SUBMITTED_TO_GOVT, actor, comments or "Submitted for government filing")
    title, message = _STATUS_MESSAGES[IprStatus.SUBMITTED_TO_GOVT]
    await _notify_contributors(notifier, app, "ipr_status_change", title, message.format(title=app.title))
    return app


async def final_rejection(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    comments: str,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    actor.require(Capability.DRD_HEAD)
    comments = _require_comments(comments)
    app = await get_ipr_application(db, ipr_id)
    async with transaction(db):
        await insert_review(
            db, EntityType.IPR_APPLICATION, app.ipr_id, actor.id, "drd_head",
            ReviewDecision.REJECTED, comments,
        )
        await apply_ipr_transition(db, app, IprStatus.DRD_REJECTED, actor, comments)
    title, message = _STATUS_MESSAGES[IprStatus.DRD_REJECTED]
    await _notify_contributors(
        notifier, app, "ipr_status_change", title, message.format(title=app.title),
        {"reason": comments},
    )
    return app


# ---------------------------------------------------------------------------
# Government filing and crediting
# ---------------------------------------------------------------------------

def _inventor_ids(app: IprApplication) -> list[str]:
    ids = [c.user_id for c in app.contributors if c.role in INVENTOR_ROLES and c.user_id]
    if app.applicant_id not in ids:
        ids.append(app.applicant_id)
    return list(dict.fromkeys(ids))


async def credit_inventors(
    db: aiosqlite.Connection,
    app: IprApplication,
    defaults: IncentiveDefaults | None = None,
) -> IprShare | None:
    """Split the flat per-type amount equally across inventors. Call inside a transaction.

    Returns None when the application was already credited.
    """
    if app.incentive_credited_at is not None:
        return None
    as_of = app.publication_date or app.govt_filing_date
    policy = await find_active_policy(db, PolicyScope.IPR, app.ipr_type.value, as_of)
    pool = ipr_pool(app.ipr_type, policy, defaults or settings.incentives)
    share = split_ipr_incentive(pool.amount, pool.points, len(_inventor_ids(app)))
    app.incentive_amount = share.per_inventor_incentive
    app.points_awarded = share.per_inventor_points
    app.incentive_credited_at = _now()
    await save_ipr_application(db, app)
    logger.info(
        "ipr incentive credited ipr_id=%s inventors=%s per_inventor=%s points=%s",
        app.ipr_id, share.inventor_count, share.per_inventor_incentive, share.per_inventor_points,
    )
    return share


async def _notify_credited(notifier: NotificationSink | None, app: IprApplication, share: IprShare) -> None:
    await _notify_contributors(
        notifier, app, "incentive_credited", "Incentive Credited",
        f"{share.per_inventor_incentive} and {share.per_inventor_points} research points were "
        f"credited to each inventor of '{app.title}'",
        {
            "incentive_amount": share.per_inventor_incentive,
            "points_awarded": share.per_inventor_points,
            "total_inventors": share.inventor_count,
        },
    )


async def add_govt_application_id(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    govt_application_id: str,
    filing_date: date | None = None,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    actor.require(Capability.IPR_GOVT_FILING)
    if not govt_application_id or not govt_application_id.strip():
        raise ValidationError("Government application ID is required", field="govt_application_id")
    app = await get_ipr_application(db, ipr_id)
    _require_status(app, (IprStatus.SUBMITTED_TO_GOVT,), "add_govt_application_id")
    app.govt_application_id = govt_application_id.strip()
    app.govt_filing_date = filing_date or _now().date()

    share = None
    async with transaction(db):
        await apply_ipr_transition(
            db, app, IprStatus.GOVT_APPLICATION_FILED, actor,
            f"Government application ID added: {app.govt_application_id}",
            {"govt_application_id": app.govt_application_id},
        )
        if settings.workflow.ipr_credit_trigger == "govt_filing":
            share = await credit_inventors(db, app)

    await _notify_contributors(
        notifier, app, "ipr_govt_filed", "Government Application Filed",
        f"'{app.title}' was filed with the government. Application ID: {app.govt_application_id}",
        {"govt_application_id": app.govt_application_id},
    )
    if share is not None:
        await _notify_credited(notifier, app, share)
    return app


async def mark_govt_rejected(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    comments: str,
    notifier: NotificationSink | None = None,
) -> IprApplication:
    actor.require(Capability.IPR_GOVT_FILING)
    comments = _require_comments(comments)
    app = await get_ipr_application(db, ipr_id)
    _require_status(app, (IprStatus.SUBMITTED_TO_GOVT, IprStatus.GOVT_APPLICATION_FILED), "mark_govt_rejected")
    async with transaction(db):
        await apply_ipr_transition(db, app, IprStatus.GOVT_REJECTED, actor, comments)
    await _notify_contributors(
        notifier, app, "ipr_govt_rejected", "IPR Application Rejected by Government",
        f"'{app.title}' was rejected by the government. {comments}",
    )
    return app


async def add_publication_id(
    db: aiosqlite.Connection,
    actor: Actor,
    ipr_id: str,
    publication_id: str,
    publication_date: date | None = None,
    comments: str = "",
    notifier: NotificationSink | None = None,
) -> IprApplication:
    """Record the grant publication and credit inventors.

    On a government-rejected application the value is stored as the
    rejection reference instead, and nothing is credited.
    """
    actor.require(Capability.IPR_GOVT_FILING)
    if not publication_id or not publication_id.strip():
        raise ValidationError("Publication ID or rejection reference is required", field="publication_id")
    publication_id = publication_id.strip()
    app = await get_ipr_application(db, ipr_id)

    if app.status == IprStatus.GOVT_REJECTED:
        app.govt_rejection_reference = publication_id
        async with transaction(db):
            await save_ipr_application(db, app)
            await record_status_change(
                db, EntityType.IPR_APPLICATION, app.ipr_id, app.status, app.status,
                changed_by=actor.id,
                comments=f"Rejection reference added: {publication_id}. {comments}".strip(),
                metadata={"rejection_reference": publication_id},
            )
        await dispatch(
            notifier, [app.applicant_id], "ipr_govt_rejected", "IPR Application Rejected by Government",
            f"'{app.title}' was rejected by the government. Rejection reference: {publication_id}",
            "ipr_application", app.ipr_id, {"rejection_reference": publication_id},
        )
        return app

    _require_status(app, (IprStatus.GOVT_APPLICATION_FILED,), "add_publication_id")
    app.publication_id = publication_id
    app.publication_date = publication_date or _now().date()
    app.completed_at = _now()
    share = None
    async with transaction(db):
        await apply_ipr_transition(
            db, app, IprStatus.PUBLISHED, actor,
            comments or f"Publication ID added: {publication_id}",
            {"publication_id": publication_id},
        )
        # credit_inventors is a no-op when the filing milestone already credited
        share = await credit_inventors(db, app)

    await _notify_contributors(
        notifier, app, "ipr_published", "IPR Published",
        f"'{app.title}' has been published. Publication ID: {publication_id}",
        {"publication_id": publication_id},
    )
    if share is not None:
        await _notify_credited(notifier, app, share)
    return app
