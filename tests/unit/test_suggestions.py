"""Edit suggestions: proposing, responding, batch resolution and re-entry."""

from __future__ import annotations

import pytest

from incentra.collaborators import Actor
from incentra.contribution_service import (
    create_contribution,
    get_contribution,
    mentor_approve_contribution,
    resubmit_contribution,
    submit_contribution,
)
from incentra.errors import PermissionDeniedError, StateError, ValidationError
from incentra.models import (
    AuthorInput,
    AuthorKind,
    ContributionCreate,
    ContributionStatus,
    IndexingCategory,
    ResearchPaperDetails,
    SuggestionCreate,
    SuggestionOrigin,
    SuggestionResponse,
    SuggestionStatus,
    SuggestionTarget,
)
from incentra.review_service import request_changes, start_review
from incentra.suggestion_service import (
    coerce_field_value,
    create_mentor_suggestions,
    create_suggestion,
    get_suggestion,
    list_suggestions,
    respond_in_batch,
    respond_to_suggestion,
)

CONTRIBUTION = SuggestionTarget.CONTRIBUTION


async def _under_review(db, applicant: Actor, reviewer: Actor, **extra) -> str:
    c = await create_contribution(db, applicant, ContributionCreate(
        title="Microbial consortia for soil health",
        details=ResearchPaperDetails(indexing_categories=[IndexingCategory.SCOPUS], quartile="Q1", impact_factor=2.5),
        applicant_role="first",
        applicant_is_corresponding=True,
        authors=[AuthorInput(name="Dr. External", author_kind=AuthorKind.EXTERNAL_ACADEMIC)],
        **extra,
    ))
    await submit_contribution(db, applicant, c.contribution_id)
    if reviewer is not None:
        await start_review(db, reviewer, c.contribution_id)
    return c.contribution_id


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

def test_coerce_quartile_spellings():
    assert coerce_field_value("quartile", "top1").value == "Top 1%"
    assert coerce_field_value("quartile", "Q3").value == "Q3"


def test_coerce_rejects_unknown_quartile_with_allowed_values():
    with pytest.raises(ValidationError) as excinfo:
        coerce_field_value("quartile", "Q9")
    assert excinfo.value.field == "quartile"
    assert excinfo.value.allowed_values == ["Top 1%", "Top 5%", "Q1", "Q2", "Q3", "Q4"]


def test_coerce_list_and_scalar_fields():
    assert [c.value for c in coerce_field_value("indexing_categories", "scopus, pubmed")] == ["scopus", "pubmed"]
    assert coerce_field_value("sdg_goals", "3,7") == [3, 7]
    assert coerce_field_value("impact_factor", "4.25") == 4.25
    assert coerce_field_value("is_international", "Yes") is True
    assert coerce_field_value("publication_date", "2024-05-01").isoformat() == "2024-05-01"
    assert coerce_field_value("title", "New title") == "New title"


def test_coerce_rejects_bad_numbers_and_booleans():
    with pytest.raises(ValidationError):
        coerce_field_value("impact_factor", "high")
    with pytest.raises(ValidationError):
        coerce_field_value("best_paper_award", "maybe")


# ---------------------------------------------------------------------------
# Creating suggestions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_suggestion_moves_target_to_changes_required(db, faculty, reviewer, sink, research_policy):
    cid = await _under_review(db, faculty, reviewer)
    suggestion = await create_suggestion(
        db, reviewer, CONTRIBUTION, cid,
        SuggestionCreate(field_name="journal_name", suggested_value="Soil Biology"), notifier=sink,
    )
    assert suggestion.status == SuggestionStatus.PENDING
    assert suggestion.origin == SuggestionOrigin.REVIEWER
    assert suggestion.original_value == ""

    c = await get_contribution(db, cid)
    assert c.status == ContributionStatus.CHANGES_REQUIRED
    assert sink.types_for(faculty.id) == ["edit_suggestion"]


@pytest.mark.asyncio
async def test_create_suggestion_rejects_unknown_field(db, faculty, reviewer, research_policy):
    cid = await _under_review(db, faculty, reviewer)
    with pytest.raises(ValidationError) as excinfo:
        await create_suggestion(db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="status", suggested_value="approved"))
    assert "quartile" in excinfo.value.allowed_values


@pytest.mark.asyncio
async def test_create_suggestion_requires_reviewable_status(db, faculty, reviewer, research_policy):
    c = await create_contribution(db, faculty, ContributionCreate(
        title="Draft",
        details=ResearchPaperDetails(indexing_categories=[IndexingCategory.SCOPUS], quartile="Q1", impact_factor=1),
    ))
    with pytest.raises(StateError):
        await create_suggestion(
            db, reviewer, CONTRIBUTION, c.contribution_id, SuggestionCreate(field_name="title", suggested_value="X")
        )


@pytest.mark.asyncio
async def test_applicant_cannot_suggest_on_own_record(db, research_policy):
    applicant = Actor(id="fac-7", uid="F007", capabilities=frozenset({"research_review"}))
    other_reviewer = Actor(id="rev-2", capabilities=frozenset({"research_review"}))
    cid = await _under_review(db, applicant, other_reviewer)
    with pytest.raises(PermissionDeniedError):
        await create_suggestion(db, applicant, CONTRIBUTION, cid, SuggestionCreate(field_name="title", suggested_value="X"))


# ---------------------------------------------------------------------------
# Responding
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_accepting_invalid_quartile_leaves_suggestion_pending(db, faculty, reviewer, research_policy):
    cid = await _under_review(db, faculty, reviewer)
    suggestion = await create_suggestion(
        db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="quartile", suggested_value="Q9")
    )

    with pytest.raises(ValidationError) as excinfo:
        await respond_to_suggestion(db, faculty, suggestion.suggestion_id, "accept")
    assert "Q1" in excinfo.value.allowed_values

    stored = await get_suggestion(db, suggestion.suggestion_id)
    assert stored.status == SuggestionStatus.PENDING
    c = await get_contribution(db, cid)
    assert c.details.quartile.value == "Q1"
    assert c.status == ContributionStatus.CHANGES_REQUIRED


@pytest.mark.asyncio
async def test_accepting_pool_field_recalculates_and_resubmits(db, faculty, reviewer, sink, research_policy):
    cid = await _under_review(db, faculty, reviewer)
    suggestion = await create_suggestion(
        db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="quartile", suggested_value="q2")
    )
    resolved = await respond_to_suggestion(db, faculty, suggestion.suggestion_id, "accept", "Agreed", notifier=sink)
    assert resolved.status == SuggestionStatus.ACCEPTED
    assert resolved.resolved_at is not None

    c = await get_contribution(db, cid)
    assert c.details.quartile.value == "Q2"
    assert c.calculated_incentive_amount == 30_000
    assert c.authors[0].incentive_share == 24_000
    assert c.status == ContributionStatus.RESUBMITTED
    assert c.revision_count == 1
    assert sink.types_for(reviewer.id) == ["suggestions_resolved"]


@pytest.mark.asyncio
async def test_rejecting_leaves_field_unchanged(db, faculty, reviewer, research_policy):
    cid = await _under_review(db, faculty, reviewer)
    suggestion = await create_suggestion(
        db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="title", suggested_value="Shorter title")
    )
    await respond_to_suggestion(db, faculty, suggestion.suggestion_id, "reject", "Title is fine")
    c = await get_contribution(db, cid)
    assert c.title == "Microbial consortia for soil health"
    assert c.status == ContributionStatus.RESUBMITTED


@pytest.mark.asyncio
async def test_target_stays_in_changes_required_while_suggestions_pend(db, faculty, reviewer, research_policy):
    cid = await _under_review(db, faculty, reviewer)
    first = await create_suggestion(
        db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="title", suggested_value="T1")
    )
    await create_suggestion(db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="doi", suggested_value="10.1/x"))

    await respond_to_suggestion(db, faculty, first.suggestion_id, "accept")
    c = await get_contribution(db, cid)
    assert c.status == ContributionStatus.CHANGES_REQUIRED
    assert c.title == "T1"

    with pytest.raises(StateError):
        await resubmit_contribution(db, faculty, cid)


@pytest.mark.asyncio
async def test_only_applicant_responds_and_only_once(db, faculty, reviewer, research_policy):
    cid = await _under_review(db, faculty, reviewer)
    suggestion = await create_suggestion(
        db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="title", suggested_value="T1")
    )
    with pytest.raises(PermissionDeniedError):
        await respond_to_suggestion(db, reviewer, suggestion.suggestion_id, "accept")
    with pytest.raises(ValidationError):
        await respond_to_suggestion(db, faculty, suggestion.suggestion_id, "maybe")

    await respond_to_suggestion(db, faculty, suggestion.suggestion_id, "accept")
    with pytest.raises(StateError):
        await respond_to_suggestion(db, faculty, suggestion.suggestion_id, "reject")


@pytest.mark.asyncio
async def test_batch_validates_everything_before_applying(db, faculty, reviewer, research_policy):
    cid = await _under_review(db, faculty, reviewer)
    good = await create_suggestion(
        db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="title", suggested_value="Better title")
    )
    bad = await create_suggestion(
        db, reviewer, CONTRIBUTION, cid, SuggestionCreate(field_name="quartile", suggested_value="Q9")
    )

    with pytest.raises(ValidationError):
        await respond_in_batch(db, faculty, [
            SuggestionResponse(suggestion_id=good.suggestion_id, action="accept"),
            SuggestionResponse(suggestion_id=bad.suggestion_id, action="accept"),
        ])
    pending = await list_suggestions(db, CONTRIBUTION, cid, SuggestionStatus.PENDING)
    assert {s.suggestion_id for s in pending} == {good.suggestion_id, bad.suggestion_id}
    assert (await get_contribution(db, cid)).title == "Microbial consortia for soil health"

    resolved = await respond_in_batch(db, faculty, [
        SuggestionResponse(suggestion_id=good.suggestion_id, action="accept"),
        SuggestionResponse(suggestion_id=bad.suggestion_id, action="reject", response="Q1 is right"),
    ])
    assert [s.status for s in resolved] == [SuggestionStatus.ACCEPTED, SuggestionStatus.REJECTED]
    c = await get_contribution(db, cid)
    assert c.title == "Better title"
    assert c.status == ContributionStatus.RESUBMITTED


@pytest.mark.asyncio
async def test_batch_rejects_duplicates_and_empty(db, faculty):
    with pytest.raises(ValidationError):
        await respond_in_batch(db, faculty, [])
    with pytest.raises(ValidationError):
        await respond_in_batch(db, faculty, [
            SuggestionResponse(suggestion_id="s-1", action="accept"),
            SuggestionResponse(suggestion_id="s-1", action="reject"),
        ])


# ---------------------------------------------------------------------------
# Mentor round
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mentor_suggestions_return_to_mentor(db, student, mentor, faculty, sink, research_policy):
    cid = await _under_review(db, student, None, mentor_uid=mentor.uid)
    assert (await get_contribution(db, cid)).status == ContributionStatus.PENDING_MENTOR_APPROVAL

    with pytest.raises(PermissionDeniedError):
        await create_mentor_suggestions(
            db, faculty, CONTRIBUTION, cid, [SuggestionCreate(field_name="title", suggested_value="X")]
        )

    (suggestion,) = await create_mentor_suggestions(
        db, mentor, CONTRIBUTION, cid,
        [SuggestionCreate(field_name="title", suggested_value="Consortia and soil health")],
    )
    assert suggestion.origin == SuggestionOrigin.MENTOR
    assert (await get_contribution(db, cid)).status == ContributionStatus.CHANGES_REQUIRED

    await respond_to_suggestion(db, student, suggestion.suggestion_id, "accept", notifier=sink)
    c = await get_contribution(db, cid)
    assert c.status == ContributionStatus.PENDING_MENTOR_APPROVAL
    assert c.title == "Consortia and soil health"
    assert sink.types_for(mentor.uid) == ["suggestions_resolved"]


@pytest.mark.asyncio
async def test_reviewer_round_after_mentor_round_resubmits(db, student, mentor, reviewer, research_policy):
    cid = await _under_review(db, student, None, mentor_uid=mentor.uid)
    (first,) = await create_mentor_suggestions(
        db, mentor, CONTRIBUTION, cid, [SuggestionCreate(field_name="doi", suggested_value="10.1/a")]
    )
    await respond_to_suggestion(db, student, first.suggestion_id, "accept")

    await mentor_approve_contribution(db, mentor, cid)
    await start_review(db, reviewer, cid)
    await request_changes(
        db, reviewer, cid, "One more fix", [SuggestionCreate(field_name="doi", suggested_value="10.1/b")]
    )
    (second,) = await list_suggestions(db, CONTRIBUTION, cid, SuggestionStatus.PENDING)
    assert second.review_round == 1

    await respond_to_suggestion(db, student, second.suggestion_id, "accept")
    c = await get_contribution(db, cid)
    assert c.status == ContributionStatus.RESUBMITTED
    assert c.details.doi == "10.1/b"
    assert c.revision_count == 2
