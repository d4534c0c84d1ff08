"""Review service: the reviewer and approver side of the research workflow.

Flow: submitted -> under_review -> [changes_required -> resubmitted] -> approved -> completed

Recommendation is advisory and needs ``research_review``. Approval is
final, needs ``research_approve`` and credits every internal author in
the same transaction that records the decision.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from incentra.collaborators import Actor, Capability, NotificationSink, PermissionOracle
from incentra.contribution_service import (
    REVIEWABLE_STATUSES,
    apply_transition,
    get_contribution,
    recalculate_contribution,
)
from incentra.database import transaction
from incentra.errors import PermissionDeniedError, StateError, ValidationError
from incentra.history_service import get_reviews, insert_review
from incentra.models import (
    Contribution,
    ContributionStatus,
    EntityType,
    PublicationType,
    ReviewDecision,
    SuggestionCreate,
    SuggestionTarget,
)
from incentra.notification_service import dispatch
from incentra.suggestion_service import insert_suggestions

logger = logging.getLogger(__name__)

__all__ = [
    "approve_contribution",
    "get_reviews",
    "list_pending_reviews",
    "mark_completed",
    "publication_type_label",
    "recommend_for_approval",
    "reject_contribution",
    "request_changes",
    "review_statistics",
    "start_review",
]

_TYPE_LABELS = {
    PublicationType.RESEARCH_PAPER: "Research Paper",
    PublicationType.BOOK: "Book",
    PublicationType.BOOK_CHAPTER: "Book Chapter",
    PublicationType.CONFERENCE_PAPER: "Conference Paper",
    PublicationType.GRANT_PROPOSAL: "Grant",
}


def publication_type_label(publication_type: PublicationType | str) -> str:
    """Human label used in notification titles."""
    try:
        return _TYPE_LABELS[PublicationType(publication_type)]
    except ValueError:
        return "Publication"


def _require_reviewable(c: Contribution, attempted: str) -> None:
    if c.status not in REVIEWABLE_STATUSES:
        raise StateError(
            f"Cannot {attempted.replace('_', ' ')} a contribution in status: {c.status.value}",
            current_status=c.status.value,
            attempted=attempted,
        )


def _require_not_applicant(actor: Actor, c: Contribution) -> None:
    if actor.id == c.applicant_id:
        raise PermissionDeniedError("Applicants cannot review their own contribution", details={"guard": "reviewer"})


# ---------------------------------------------------------------------------
# Reviewer actions
# ---------------------------------------------------------------------------

async def start_review(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    notifier: NotificationSink | None = None,
) -> Contribution:
    actor.require(Capability.RESEARCH_REVIEW)
    c = await get_contribution(db, contribution_id)
    _require_not_applicant(actor, c)
    if c.status not in (ContributionStatus.SUBMITTED, ContributionStatus.RESUBMITTED):
        raise StateError(
            f"Cannot start review for contribution in status: {c.status.value}",
            current_status=c.status.value,
            attempted="start_review",
        )
    c.current_reviewer_id = actor.id
    async with transaction(db):
        await apply_transition(db, c, ContributionStatus.UNDER_REVIEW, actor, "Review started")

    label = publication_type_label(c.publication_type)
    await dispatch(
        notifier, [c.applicant_id], "research_under_review", f"{label} Under Review",
        f"Your {label.lower()} '{c.title}' is now under review",
        "contribution", c.contribution_id,
    )
    return c


async def request_changes(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    comments: str,
    suggestions: list[SuggestionCreate] | None = None,
    notifier: NotificationSink | None = None,
) -> Contribution:
    """Send the contribution back with comments and optional field suggestions."""
    actor.require(Capability.RESEARCH_REVIEW)
    c = await get_contribution(db, contribution_id)
    _require_not_applicant(actor, c)
    _require_reviewable(c, "request_changes")
    if not (comments and comments.strip()) and not suggestions:
        raise ValidationError("Comments or suggestions are required", field="comments")

    edits = {s.field_name: s.suggested_value for s in suggestions or []}
    c.current_reviewer_id = c.current_reviewer_id or actor.id
    async with transaction(db):
        await insert_review(
            db, EntityType.CONTRIBUTION, c.contribution_id, actor.id, "reviewer",
            ReviewDecision.CHANGES_REQUIRED, comments, edits,
        )
        if suggestions:
            await insert_suggestions(db, actor, SuggestionTarget.CONTRIBUTION, c, suggestions)
        await apply_transition(db, c, ContributionStatus.CHANGES_REQUIRED, actor, comments)

    label = publication_type_label(c.publication_type)
    await dispatch(
        notifier, [c.applicant_id], "research_changes_required", "Changes Requested",
        f"The reviewer requested changes to your {label.lower()} '{c.title}'",
        "contribution", c.contribution_id,
        {"suggestion_count": len(suggestions or [])},
    )
    return c


async def recommend_for_approval(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    comments: str = "",
    notifier: NotificationSink | None = None,
    oracle: PermissionOracle | None = None,
) -> Contribution:
    """Advisory recommendation. The contribution stays under review for the approver."""
    actor.require(Capability.RESEARCH_REVIEW)
    c = await get_contribution(db, contribution_id)
    _require_not_applicant(actor, c)
    _require_reviewable(c, "recommend")
    c.current_reviewer_id = c.current_reviewer_id or actor.id
    async with transaction(db):
        await insert_review(
            db, EntityType.CONTRIBUTION, c.contribution_id, actor.id, "reviewer",
            ReviewDecision.RECOMMENDED, comments,
        )
        await apply_transition(
            db, c, ContributionStatus.UNDER_REVIEW, actor,
            comments or "Recommended for approval",
            {"action": "recommended_for_approval"},
        )

    approvers = oracle.holders_of(Capability.RESEARCH_APPROVE) if oracle else []
    label = publication_type_label(c.publication_type)
    await dispatch(
        notifier, [a for a in approvers if a != actor.id], "research_recommended",
        f"{label} Recommended",
        f"'{c.title}' ({c.application_number}) was recommended for approval",
        "contribution", c.contribution_id,
    )
    return c


# ---------------------------------------------------------------------------
# Approver actions
# ---------------------------------------------------------------------------

async def approve_contribution(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    comments: str = "",
    notifier: NotificationSink | None = None,
) -> Contribution:
    """Approve and credit every internal author.

    Shares are recomputed against the policy in force for the publication
    date. A missing role-percentage configuration raises and nothing is
    written.
    """
    actor.require(Capability.RESEARCH_APPROVE)
    c = await get_contribution(db, contribution_id)
    _require_not_applicant(actor, c)
    _require_reviewable(c, "approve")
    recommenders = [
        r.reviewer_id
        for r in await get_reviews(db, EntityType.CONTRIBUTION, contribution_id)
        if r.decision == ReviewDecision.RECOMMENDED
    ]

    async with transaction(db):
        await recalculate_contribution(db, c)
        internal = [a for a in c.authors if a.is_internal]
        c.incentive_amount = sum(a.incentive_share for a in internal)
        c.points_awarded = sum(a.points_share for a in internal)
        c.approved_at = datetime.now(timezone.utc)
        await insert_review(
            db, EntityType.CONTRIBUTION, c.contribution_id, actor.id, "approver",
            ReviewDecision.APPROVED, comments,
        )
        await apply_transition(
            db, c, ContributionStatus.APPROVED, actor,
            comments or "Approved. Incentives credited by author role",
            {"incentive_amount": c.incentive_amount, "points_awarded": c.points_awarded},
        )
    logger.info(
        "contribution approved contribution_id=%s incentive=%s points=%s",
        c.contribution_id, c.incentive_amount, c.points_awarded,
    )

    label = publication_type_label(c.publication_type)
    for author in c.authors:
        if author.is_internal and author.user_id and (author.incentive_share or author.points_share):
            await dispatch(
                notifier, [author.user_id], "research_incentive_credited", "Incentive Credited",
                f"'{c.title}' was approved: {author.incentive_share} incentive and "
                f"{author.points_share} points credited to you",
                "contribution", c.contribution_id,
                {"incentive_amount": author.incentive_share, "points": author.points_share},
            )
    await dispatch(
        notifier, [c.applicant_id], "research_approved", f"{label} Approved",
        f"Your {label.lower()} '{c.title}' has been approved",
        "contribution", c.contribution_id,
    )
    await dispatch(
        notifier, recommenders, "research_recommendation_approved", "Your Recommendation Approved",
        f"Your recommended {label.lower()} '{c.title}' has been approved",
        "contribution", c.contribution_id,
    )
    return c


async def reject_contribution(
    db: aiosqlite.Connection,
    actor: Actor,
    contribution_id: str,
    comments: str = "",
    notifier: NotificationSink | None = None,
) -> Contribution:
    if not (actor.has_permission(Capability.RESEARCH_REVIEW) or actor.has_permission(Capability.RESEARCH_APPROVE)):
        raise PermissionDeniedError(
            "Missing permission: research_review", capability=Capability.RESEARCH_REVIEW.value
        )
    c = await get_contribution(db, contribution_id)
    _require_not_applicant(actor, c)
    _require_reviewable(c, "reject")
    async with transaction(db):
        await insert_review(
            db, EntityType.CONTRIBUTION, c.contribution_id, actor.id, "reviewer",
            ReviewDecision.REJECTED, comments,
        )
        await apply_transition(db, c, ContributionStatus.REJECTED, actor, comments or "Rejected")

    label = publication_type_label(c.publication_type)
    await dispatch(
        notifier, [c.applicant_id], "research_rejected", f"{label} Rejected",
        f"Your {label.lower()} '{c.title}' has been rejected. Reason: {comments or 'Not specified'}",
        "contribution", c.contribution_id,
    )
    return c


async def mark_completed(db: aiosqlite.Connection, actor: Actor, contribution_id: str) -> Contribution:
    actor.require(Capability.RESEARCH_APPROVE)
    c = await get_contribution(db, contribution_id)
    if c.status != ContributionStatus.APPROVED:
        raise StateError(
            "Can only mark approved contributions as completed",
            current_status=c.status.value,
            attempted="complete",
        )
    c.completed_at = datetime.now(timezone.utc)
    async with transaction(db):
        await apply_transition(db, c, ContributionStatus.COMPLETED, actor, "Process completed")
    return c


# ---------------------------------------------------------------------------
# Queues and statistics
# ---------------------------------------------------------------------------

async def list_pending_reviews(
    db: aiosqlite.Connection,
    actor: Actor,
    publication_type: PublicationType | None = None,
) -> list[dict[str, Any]]:
    """Reviewable contributions with a flag for those already recommended."""
    if not (actor.has_permission(Capability.RESEARCH_REVIEW) or actor.has_permission(Capability.RESEARCH_APPROVE)):
        raise PermissionDeniedError(
            "Missing permission: research_review", capability=Capability.RESEARCH_REVIEW.value
        )
    statuses = [s.value for s in REVIEWABLE_STATUSES]
    query = f"""
        SELECT c.contribution_id, c.application_number, c.title, c.publication_type, c.status,
               c.school_id, c.submitted_at,
               EXISTS (
                   SELECT 1 FROM reviews r
                   WHERE r.entity_type = 'contribution' AND r.entity_id = c.contribution_id
                     AND r.decision = 'recommended'
               ) AS is_recommended
        FROM contributions c
        WHERE c.status IN ({', '.join('?' for _ in statuses)}) AND c.applicant_id != ?
    """
    params: list[Any] = [*statuses, actor.id]
    if publication_type:
        query += " AND c.publication_type = ?"
        params.append(publication_type.value)
    query += " ORDER BY c.submitted_at ASC"
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [{**dict(r), "is_recommended": bool(r["is_recommended"])} for r in rows]


async def review_statistics(
    db: aiosqlite.Connection,
    school_id: str | None = None,
    publication_type: PublicationType | None = None,
) -> dict[str, Any]:
    """Counts by status and type, plus credited totals for approved work."""
    clauses: list[str] = []
    params: list[Any] = []
    if school_id:
        clauses.append("school_id = ?")
        params.append(school_id)
    if publication_type:
        clauses.append("publication_type = ?")
        params.append(publication_type.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    async with db.execute(
        f"SELECT status, COUNT(*) AS n FROM contributions {where} GROUP BY status", params
    ) as cursor:
        by_status = {r["status"]: r["n"] for r in await cursor.fetchall()}
    async with db.execute(
        f"SELECT publication_type, COUNT(*) AS n FROM contributions {where} GROUP BY publication_type", params
    ) as cursor:
        by_type = {r["publication_type"]: r["n"] for r in await cursor.fetchall()}

    credited = " AND ".join([*clauses, "status IN ('approved', 'completed')"])
    async with db.execute(
        f"""
        SELECT COUNT(*) AS n, COALESCE(SUM(incentive_amount), 0) AS incentives,
               COALESCE(SUM(points_awarded), 0) AS points
        FROM contributions WHERE {credited}
        """,
        params,
    ) as cursor:
        totals = await cursor.fetchone()

    return {
        "by_status": by_status,
        "by_publication_type": by_type,
        "totals": {
            "approved": totals["n"],
            "total_incentives": totals["incentives"],
            "total_points": totals["points"],
        },
    }
