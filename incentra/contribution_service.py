"""Contribution service: research contribution CRUD, submission and recalculation.

This service owns the contribution record from draft through submission.
Every mutation that touches the pool runs the incentive engine for the
pool and for every author row inside one transaction, so pool totals and
shares can never disagree.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from incentra.author_composition import (
    analyze_authors,
    applicant_kind_for,
    normalize_author_role,
    validate_author_roles,
)
from incentra.collaborators import Actor, BlobObject, BlobStore, NotificationSink
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
from incentra.incentive_engine import calculate_incentive, calculate_pool, resolve_outcome
from incentra.models import (
    POOL_AFFECTING_FIELDS,
    Author,
    AuthorInput,
    AuthorKind,
    AuthorRole,
    ConferencePaperDetails,
    ConferenceSubType,
    Contribution,
    ContributionCreate,
    ContributionStatus,
    ContributionUpdate,
    EntityType,
    GrantDetails,
    IncentivePolicy,
    IndexingCategory,
    PublicationDetails,
    PublicationType,
    ResearchPaperDetails,
)
from incentra.notification_service import dispatch
from incentra.policy_store import find_active_policy, require_role_percentages

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = frozenset({
    ContributionStatus.DRAFT,
    ContributionStatus.CHANGES_REQUIRED,
    ContributionStatus.RESUBMITTED,
})

REVIEWABLE_STATUSES = frozenset({
    ContributionStatus.SUBMITTED,
    ContributionStatus.UNDER_REVIEW,
    ContributionStatus.RESUBMITTED,
})

TRANSITIONS: dict[ContributionStatus, frozenset[ContributionStatus]] = {
    ContributionStatus.DRAFT: frozenset({
        ContributionStatus.SUBMITTED,
        ContributionStatus.PENDING_MENTOR_APPROVAL,
    }),
    ContributionStatus.PENDING_MENTOR_APPROVAL: frozenset({
        ContributionStatus.SUBMITTED,
        ContributionStatus.CHANGES_REQUIRED,
    }),
    ContributionStatus.SUBMITTED: frozenset({
        ContributionStatus.UNDER_REVIEW,
        ContributionStatus.CHANGES_REQUIRED,
        ContributionStatus.APPROVED,
        ContributionStatus.REJECTED,
    }),
    ContributionStatus.UNDER_REVIEW: frozenset({
        ContributionStatus.UNDER_REVIEW,
        ContributionStatus.CHANGES_REQUIRED,
        ContributionStatus.APPROVED,
        ContributionStatus.REJECTED,
    }),
    ContributionStatus.RESUBMITTED: frozenset({
        ContributionStatus.UNDER_REVIEW,
        ContributionStatus.CHANGES_REQUIRED,
        ContributionStatus.APPROVED,
        ContributionStatus.REJECTED,
    }),
    ContributionStatus.CHANGES_REQUIRED: frozenset({
        ContributionStatus.RESUBMITTED,
        ContributionStatus.PENDING_MENTOR_APPROVAL,
    }),
    ContributionStatus.APPROVED: frozenset({ContributionStatus.COMPLETED}),
}

_details_adapter: TypeAdapter[Any] = TypeAdapter(PublicationDetails)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_author(row: aiosqlite.Row | dict[str, Any]) -> Author:
    return Author(**dict(row))


def _row_to_contribution(row: aiosqlite.Row | dict[str, Any], authors: list[Author]) -> Contribution:
    d = dict(row)
    d.pop("publication_type", None)
    d["details"] = from_json(d.get("details")) or {}
    d["document_keys"] = from_json(d.get("document_keys")) or []
    d["authors"] = authors
    return Contribution(**d)


async def _load_authors(db: aiosqlite.Connection, contribution_id: str) -> list[Author]:
    async with db.execute(
        """
        SELECT * FROM contribution_authors WHERE contribution_id = ?
        ORDER BY author_position IS NULL, author_position, rowid
        """,
        (contribution_id,),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_author(r) for r in rows]


async def get_contribution(db: aiosqlite.Connection, contribution_id: str) -> Contribution:
    async with db.execute(
        "SELECT * FROM contributions WHERE contribution_id = ?", (contribution_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("contribution", contribution_id)
    return _row_to_contribution(row, await _load_authors(db, contribution_id))


async def list_contributions(
    db: aiosqlite.Connection,
    applicant_id: str | None = None,
    status: ContributionStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Contribution]:
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
        f"SELECT * FROM contributions {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
        [*params, limit, offset],
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_contribution(r, await _load_authors(db, r["contribution_id"])) for r in rows]


# ---------------------------------------------------------------------------
# Persistence helpers (never commit)
# ---------------------------------------------------------------------------

async def _insert_contribution(db: aiosqlite.Connection, c: Contribution) -> None:
    await db.execute(
        """
        INSERT INTO contributions (
            contribution_id, application_number, applicant_id, applicant_uid, applicant_kind,
            mentor_uid, school_id, department_id, title, publication_type, publication_date,
            details, status, calculated_incentive_amount, calculated_points, incentive_amount,
            points_awarded, current_reviewer_id, revision_count, document_keys,
            progress_tracker_id, created_at, updated_at, submitted_at, approved_at, completed_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            c.contribution_id, c.application_number, c.applicant_id, c.applicant_uid,
            c.applicant_kind.value, c.mentor_uid, c.school_id, c.department_id, c.title,
            c.publication_type.value, iso(c.publication_date), to_json(c.details), c.status.value,
            c.calculated_incentive_amount, c.calculated_points, c.incentive_amount,
            c.points_awarded, c.current_reviewer_id, c.revision_count, to_json(c.document_keys),
            c.progress_tracker_id, c.created_at.isoformat(), c.updated_at.isoformat(),
            iso(c.submitted_at), iso(c.approved_at), iso(c.completed_at),
        ),
    )


async def save_contribution(db: aiosqlite.Connection, c: Contribution) -> None:
    """Write every mutable column of ``c``. Does not commit."""
    c.updated_at = _now()
    await db.execute(
        """
        UPDATE contributions SET
            mentor_uid = ?, title = ?, publication_date = ?, details = ?, status = ?,
            calculated_incentive_amount = ?, calculated_points = ?, incentive_amount = ?,
            points_awarded = ?, current_reviewer_id = ?, revision_count = ?, document_keys = ?,
            progress_tracker_id = ?, updated_at = ?, submitted_at = ?, approved_at = ?, completed_at = ?
        WHERE contribution_id = ?
        """,
        (
            c.mentor_uid, c.title, iso(c.publication_date), to_json(c.details), c.status.value,
            c.calculated_incentive_amount, c.calculated_points, c.incentive_amount,
            c.points_awarded, c.current_reviewer_id, c.revision_count, to_json(c.document_keys),
            c.progress_tracker_id, c.updated_at.isoformat(), iso(c.submitted_at),
            iso(c.approved_at), iso(c.completed_at), c.contribution_id,
        ),
    )


async def _replace_authors(db: aiosqlite.Connection, c: Contribution) -> None:
    await db.execute("DELETE FROM contribution_authors WHERE contribution_id = ?", (c.contribution_id,))
    await db.executemany(
        """
        INSERT INTO contribution_authors (
            author_id, contribution_id, user_id, uid, name, email, affiliation,
            author_kind, author_role, author_position, incentive_share, points_share
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                a.author_id, c.contribution_id, a.user_id, a.uid, a.name, a.email, a.affiliation,
                a.author_kind.value, a.author_role.value, a.author_position,
                a.incentive_share, a.points_share,
            )
            for a in c.authors
        ],
    )


async def _save_author_shares(db: aiosqlite.Connection, c: Contribution) -> None:
    await db.executemany(
        "UPDATE contribution_authors SET incentive_share = ?, points_share = ? WHERE author_id = ?",
        [(a.incentive_share, a.points_share, a.author_id) for a in c.authors],
    )


async def apply_transition(
    db: aiosqlite.Connection,
    c: Contribution,
    to_status: ContributionStatus,
    actor: Actor,
    comments: str = "",
    metadata: dict[str, Any] | None = None,
) -> Contribution:
    """Move ``c`` along a listed edge, persist it and append history. Does not commit."""
    allowed = TRANSITIONS.get(c.status, frozenset())
    if to_status not in allowed:
        raise InvalidTransitionError(
            "contribution", c.status.value, to_status.value, sorted(s.value for s in allowed)
        )
    from_status = c.status
    c.status = to_status
    await save_contribution(db, c)
    await record_status_change(
        db, EntityType.CONTRIBUTION, c.contribution_id, from_status, to_status,
        changed_by=actor.id, comments=comments, metadata=metadata,
    )
    return c


# ---------------------------------------------------------------------------
# Details validation and merging
# ---------------------------------------------------------------------------

def parse_details(data: dict[str, Any]) -> Any:
    """Validate a details mapping into its publication variant."""
    try:
        return _details_adapter.validate_python(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if not isinstance(p, int)) or None
        if field and "." in field:
            field = field.split(".", 1)[1]
        raise ValidationError(first.get("msg", "Invalid details"), field=field) from exc


def validate_details(details: Any) -> Any:
    """Enforce the per-category input rules. Returns the details with derived defaults filled."""
    if not isinstance(details, (ResearchPaperDetails, GrantDetails)):
        return details

    categories = set(details.indexing_categories)
    updates: dict[str, Any] = {}
    if IndexingCategory.SCOPUS in categories:
        if details.quartile is None:
            raise ValidationError("Quartile is required for Scopus", field="quartile")
        if details.impact_factor is None:
            raise ValidationError("Impact factor is required for Scopus", field="impact_factor")
    if IndexingCategory.SCIE_WOS in categories and details.sjr is None:
        raise ValidationError("SJR is required for SCIE/WoS", field="sjr")

    rating = details.naas_rating
    if IndexingCategory.NAAS_RATING_6_PLUS in categories:
        if rating is None or not 6 <= rating <= 10:
            raise ValidationError("NAAS rating must be between 6 and 10", field="naas_rating")
    elif rating is not None and rating > 10:
        raise ValidationError("NAAS rating must not exceed 10", field="naas_rating")

    if IndexingCategory.SUBSIDIARY_IF_ABOVE_20 in categories:
        subsidiary = details.subsidiary_impact_factor
        if subsidiary is None:
            subsidiary = details.impact_factor
            updates["subsidiary_impact_factor"] = subsidiary
        if subsidiary is None or subsidiary <= 20:
            raise ValidationError(
                "Subsidiary journals require an impact factor above 20",
                field="subsidiary_impact_factor",
            )
    return details.model_copy(update=updates) if updates else details


def merge_patch(
    existing: dict[str, Any], derived: dict[str, Any], explicit: dict[str, Any]
) -> dict[str, Any]:
    """Combine three layers with precedence explicit > derived > existing."""
    merged = dict(existing)
    merged.update(derived)
    merged.update(explicit)
    return merged


def _derived_detail_fields(existing: dict[str, Any], explicit: dict[str, Any]) -> dict[str, Any]:
    derived: dict[str, Any] = {}
    if "impact_factor" in explicit and "subsidiary_impact_factor" not in explicit:
        categories = explicit.get("indexing_categories", existing.get("indexing_categories")) or []
        if IndexingCategory.SUBSIDIARY_IF_ABOVE_20.value in [getattr(c, "value", c) for c in categories]:
            derived["subsidiary_impact_factor"] = explicit["impact_factor"]
    return derived


def pool_fields_changed(before: dict[str, Any], after: dict[str, Any]) -> bool:
    return any(before.get(f) != after.get(f) for f in POOL_AFFECTING_FIELDS)


# ---------------------------------------------------------------------------
# Authors
# ---------------------------------------------------------------------------

def build_authors(
    actor: Actor,
    applicant_kind: AuthorKind,
    inputs: list[AuthorInput],
    applicant_role: str | None = "first_author",
    applicant_is_corresponding: bool = False,
    applicant_position: int | None = None,
    contribution_id: str = "",
) -> list[Author]:
    """Turn author inputs into rows with the applicant folded in.

    An input carrying the applicant's ``user_id`` stands for the applicant and
    takes the applicant's own kind, whatever the input declared;
    otherwise the applicant is added first. A sole author holds both roles.
    """
    authors = [
        Author(
            contribution_id=contribution_id,
            user_id=i.user_id,
            uid=i.uid,
            name=i.name,
            email=i.email,
            affiliation=i.affiliation,
            author_kind=applicant_kind if i.user_id == actor.id else i.author_kind,
            author_role=normalize_author_role(i.author_role, i.is_corresponding),
            author_position=i.author_position,
        )
        for i in inputs
    ]
    if not any(a.user_id == actor.id for a in authors):
        authors.insert(0, Author(
            contribution_id=contribution_id,
            user_id=actor.id,
            uid=actor.uid or None,
            name=actor.uid or actor.id,
            author_kind=applicant_kind,
            author_role=normalize_author_role(applicant_role, applicant_is_corresponding),
            author_position=applicant_position,
        ))
    if len(authors) == 1:
        authors[0].author_role = AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR
    validate_author_roles(authors)
    return authors


# ---------------------------------------------------------------------------
# Recalculation
# ---------------------------------------------------------------------------

def policy_key(c: Contribution) -> tuple[PublicationType, str | None]:
    """(scope, sub_type) used to look up the contribution's policy."""
    sub_type = None
    if isinstance(c.details, ConferencePaperDetails) and c.details.conference_sub_type is not None:
        sub_type = c.details.conference_sub_type.value
    return c.publication_type, sub_type


def _split_percentages(c: Contribution, policy: IncentivePolicy | None, defaults: IncentiveDefaults) -> tuple[float, float]:
    if c.publication_type in (PublicationType.RESEARCH_PAPER, PublicationType.GRANT_PROPOSAL):
        return require_role_percentages(policy, c.publication_type)
    if (
        isinstance(c.details, ConferencePaperDetails)
        and c.details.conference_sub_type == ConferenceSubType.PAPER_INDEXED_SCOPUS
    ):
        if policy is None:
            return defaults.conference.first_author_percentage, defaults.conference.corresponding_author_percentage
        return require_role_percentages(policy, c.publication_type)
    # Equal-split and flat types never read role percentages.
    return 0.0, 0.0


async def calculate_contribution(
    db: aiosqlite.Connection, c: Contribution, defaults: IncentiveDefaults | None = None
) -> Contribution:
    """Recompute the pool and every author's share in memory."""
    defaults = defaults or settings.incentives
    scope, sub_type = policy_key(c)
    policy = await find_active_policy(db, scope, sub_type, c.publication_date)
    pool = calculate_pool(c.details, policy, defaults)
    c.calculated_incentive_amount = pool.amount
    c.calculated_points = pool.points

    if pool.amount == 0 and pool.points == 0:
        for author in c.authors:
            author.incentive_share = 0
            author.points_share = 0
        return c

    first, corresponding = _split_percentages(c, policy, defaults)
    composition = analyze_authors(c.authors, first, corresponding)
    for author in c.authors:
        result = calculate_incentive(c.details, policy, composition.context_for(author), defaults)
        outcome = resolve_outcome(
            result,
            pool=pool,
            context=f"contribution_id={c.contribution_id} author_id={author.author_id}",
        )
        author.incentive_share = outcome.incentive_amount
        author.points_share = outcome.points
    return c


async def recalculate_contribution(
    db: aiosqlite.Connection, c: Contribution, defaults: IncentiveDefaults | None = None
) -> Contribution:
    """Recompute and persist pool totals and author shares. Call inside a transaction."""
    await calculate_contribution(db, c, defaults)
    await save_contribution(db, c)
    await _save_author_shares(db, c)
    return c


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def require_applicant(actor: Actor, c: Contribution) -> None:
    if actor.id != c.applicant_id:
        raise PermissionDeniedError("Only the applicant can do this", details={"guard": "applicant"})


def require_editable(c: Contribution) -> None:
    if c.status not in EDITABLE_STATUSES:
        raise StateError(
            f"Contribution cannot be edited while {c.status.value}",
            current_status=c.status.value,
            attempted="edit",
        )


def require_mentor(actor: Actor, mentor_uid: str | None) -> None:
    if not mentor_uid or actor.uid != mentor_uid:
        raise PermissionDeniedError("Only the assigned mentor can do this", details={"guard": "mentor"})


def internal_user_ids(c: Contribution) -> list[str]:
    return [a.user_id for a in c.authors if a.is_internal and a.user_id]


# ---------------------------------------------------------------------------
# Create / update / delete
# ---------------------------------------------------------------------------

async def create_contribution(
    db: aiosqlite.Connection,
    actor: Actor,
    payload: ContributionCreate,
    notifier: NotificationSink | None = None,
) -> Contribution:
    """Create a draft with its authors, application number and computed shares."""
    details = validate_details(payload.details)
    c = Contribution(
        applicant_id=actor.id,
        applicant_uid=actor.uid or None,
        applicant_kind=applicant_kind_for(actor.role),
        mentor_uid=payload.mentor_uid,
        school_id=payload.school_id,
        department_id=payload.department_id,
        title=payload.title,
        publication_date=payload.publication_date,
        details=details,
    )
    c.authors = build_authors(
        actor,
        c.applicant_kind,
        payload.authors,
        payload.applicant_role,
        payload.applicant_is_corresponding,
        payload.applicant_position,
        contribution_id=c.contribution_id,
    )

    async with transaction(db):
        c.application_number = await generate_application_number(db, c.publication_type)
        await calculate_contribution(db, c)
        await _insert_contribution(db, c)
        await _replace_authors(db, c)
        await record_status_change(
            db, EntityType.CONTRIBUTION, c.contribution_id, None, c.status, changed_by=actor.id
        )

    await dispatch(
        notifier,
        [uid for uid in internal_user_ids(c) if uid != actor.id],
        "contribution_author_added",
        "Added as an author",
        f"You were added as an author on '{c.title}' ({c.application_number})",
        "contribution",
        c.contribution_id,
    )
    return c


async def update_contribution(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    patch: ContributionUpdate,
    notifier: NotificationSink | None = None,
) -> Contribution:
    """Apply a partial update, recalculating when a pool-affecting field or the authors change."""
    c = await get_contribution(db, contribution_id)
    require_applicant(actor, c)
    require_editable(c)

    explicit = patch.model_dump(exclude_unset=True)
    before = {**c.details.model_dump(mode="json"), "publication_date": iso(c.publication_date)}

    details_patch = explicit.pop("details", None) or {}
    requested_type = details_patch.get("publication_type")
    if requested_type is not None and requested_type != c.publication_type.value:
        raise ValidationError("Publication type cannot change", field="publication_type")
    existing_details = c.details.model_dump(mode="json")
    merged = merge_patch(
        existing_details,
        _derived_detail_fields(existing_details, details_patch),
        details_patch,
    )
    c.details = validate_details(parse_details(merged))

    for field in ("title", "publication_date", "mentor_uid"):
        if field in explicit:
            setattr(c, field, explicit[field])

    previous_ids = set(internal_user_ids(c))
    authors_replaced = any(
        k in explicit
        for k in ("authors", "applicant_role", "applicant_is_corresponding", "applicant_position")
    )
    if authors_replaced:
        applicant = next((a for a in c.authors if a.user_id == c.applicant_id), None)
        c.authors = build_authors(
            actor,
            c.applicant_kind,
            patch.authors if patch.authors is not None else [
                AuthorInput(**a.model_dump(mode="json", include=set(AuthorInput.model_fields)))
                for a in c.authors if a.user_id != c.applicant_id
            ],
            patch.applicant_role or (applicant.author_role.value if applicant else "first_author"),
            bool(patch.applicant_is_corresponding),
            patch.applicant_position if "applicant_position" in explicit else (
                applicant.author_position if applicant else None
            ),
            contribution_id=c.contribution_id,
        )

    after = {**c.details.model_dump(mode="json"), "publication_date": iso(c.publication_date)}
    async with transaction(db):
        if authors_replaced:
            await _replace_authors(db, c)
        if authors_replaced or pool_fields_changed(before, after):
            await recalculate_contribution(db, c)
        else:
            await save_contribution(db, c)

    added = [uid for uid in internal_user_ids(c) if uid not in previous_ids and uid != actor.id]
    await dispatch(
        notifier, added, "contribution_author_added", "Added as an author",
        f"You were added as an author on '{c.title}' ({c.application_number})",
        "contribution", c.contribution_id,
    )
    return c


async def delete_contribution(db: aiosqlite.Connection, actor: Actor, contribution_id: str) -> None:
    c = await get_contribution(db, contribution_id)
    require_applicant(actor, c)
    if c.status != ContributionStatus.DRAFT:
        raise StateError("Only drafts can be deleted", current_status=c.status.value, attempted="delete")
    async with transaction(db):
        await db.execute("DELETE FROM contribution_authors WHERE contribution_id = ?", (contribution_id,))
        await db.execute("DELETE FROM contributions WHERE contribution_id = ?", (contribution_id,))
    logger.info("contribution deleted contribution_id=%s by=%s", contribution_id, actor.id)


# ---------------------------------------------------------------------------
# Submission chain
# ---------------------------------------------------------------------------

async def submit_contribution(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    notifier: NotificationSink | None = None,
) -> Contribution:
    """Submit a draft. A student applicant with a mentor goes to the mentor first."""
    c = await get_contribution(db, contribution_id)
    require_applicant(actor, c)
    if c.status != ContributionStatus.DRAFT:
        raise StateError("Only drafts can be submitted", current_status=c.status.value, attempted="submit")
    c.details = validate_details(c.details)

    to_mentor = c.applicant_kind == AuthorKind.INTERNAL_STUDENT and bool(c.mentor_uid)
    target = ContributionStatus.PENDING_MENTOR_APPROVAL if to_mentor else ContributionStatus.SUBMITTED
    async with transaction(db):
        await calculate_contribution(db, c)
        await _save_author_shares(db, c)
        c.submitted_at = _now()
        await apply_transition(db, c, target, actor)

    if to_mentor:
        await dispatch(
            notifier, [c.mentor_uid], "contribution_mentor_approval",
            "Mentor approval requested",
            f"'{c.title}' ({c.application_number}) is waiting for your approval",
            "contribution", c.contribution_id,
        )
    else:
        await dispatch(
            notifier, [c.applicant_id], "contribution_submitted", "Contribution submitted",
            f"'{c.title}' ({c.application_number}) was submitted for review",
            "contribution", c.contribution_id,
        )
    return c


async def mentor_approve_contribution(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    comments: str = "",
    notifier: NotificationSink | None = None,
) -> Contribution:
    c = await get_contribution(db, contribution_id)
    require_mentor(actor, c.mentor_uid)
    if c.status != ContributionStatus.PENDING_MENTOR_APPROVAL:
        raise StateError(
            "Contribution is not awaiting mentor approval",
            current_status=c.status.value, attempted="mentor_approve",
        )
    async with transaction(db):
        await apply_transition(
            db, c, ContributionStatus.SUBMITTED, actor, comments, {"action": "mentor_approved"}
        )
    await dispatch(
        notifier, [c.applicant_id], "contribution_mentor_approved", "Mentor approved",
        f"Your mentor approved '{c.title}'. It is now submitted for review.",
        "contribution", c.contribution_id,
    )
    return c


async def mentor_reject_contribution(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    comments: str,
    notifier: NotificationSink | None = None,
) -> Contribution:
    """Send the contribution back to the applicant. Comments are required."""
    if not comments or not comments.strip():
        raise ValidationError("Comments are required when rejecting", field="comments")
    c = await get_contribution(db, contribution_id)
    require_mentor(actor, c.mentor_uid)
    if c.status != ContributionStatus.PENDING_MENTOR_APPROVAL:
        raise StateError(
            "Contribution is not awaiting mentor approval",
            current_status=c.status.value, attempted="mentor_reject",
        )
    async with transaction(db):
        await insert_review(
            db, EntityType.CONTRIBUTION, c.contribution_id, actor.id, "mentor",
            "changes_required", comments,
        )
        await apply_transition(
            db, c, ContributionStatus.CHANGES_REQUIRED, actor, comments, {"action": "mentor_rejected"}
        )
    await dispatch(
        notifier, [c.applicant_id], "contribution_mentor_rejected", "Changes requested by mentor",
        comments, "contribution", c.contribution_id,
    )
    return c


async def resubmit_contribution(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    notifier: NotificationSink | None = None,
) -> Contribution:
    c = await get_contribution(db, contribution_id)
    require_applicant(actor, c)
    if c.status != ContributionStatus.CHANGES_REQUIRED:
        raise StateError(
            "Only contributions needing changes can be resubmitted",
            current_status=c.status.value, attempted="resubmit",
        )
    async with db.execute(
        "SELECT COUNT(*) FROM edit_suggestions WHERE target_type = 'contribution' AND target_id = ? AND status = 'pending'",
        (contribution_id,),
    ) as cursor:
        pending = (await cursor.fetchone())[0]
    if pending:
        raise StateError(
            f"{pending} suggestion(s) still need a response",
            current_status=c.status.value, attempted="resubmit",
        )

    async with transaction(db):
        c.revision_count += 1
        await calculate_contribution(db, c)
        await _save_author_shares(db, c)
        await apply_transition(db, c, ContributionStatus.RESUBMITTED, actor)

    await dispatch(
        notifier, [c.current_reviewer_id], "contribution_resubmitted", "Contribution resubmitted",
        f"'{c.title}' ({c.application_number}) was resubmitted",
        "contribution", c.contribution_id,
    )
    return c


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

async def attach_document(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    blob_store: BlobStore,
    data: bytes,
    filename: str,
    mime_type: str = "",
) -> Contribution:
    """Upload a supporting document and record its key on the contribution."""
    c = await get_contribution(db, contribution_id)
    require_applicant(actor, c)
    require_editable(c)
    ref = await blob_store.upload(data, "contributions", actor.id, filename, mime_type)
    c.document_keys.append(ref.key)
    async with transaction(db):
        await save_contribution(db, c)
    return c


async def read_document(blob_store: BlobStore, key: str) -> BlobObject:
    return await blob_store.download(key)
