"""Progress trackers: status flow, monthly reports and contribution hand-off."""

from __future__ import annotations

import re
from datetime import date

import pytest

from incentra.collaborators import Actor
from incentra.contribution_service import create_contribution, get_contribution
from incentra.errors import InvalidTransitionError, PermissionDeniedError, StateError, ValidationError
from incentra.models import (
    BookDetails,
    ContributionCreate,
    TrackerCreate,
    TrackerStatus,
    TrackerTransition,
    TrackerType,
    TrackerUpdate,
)
from incentra.progress_tracker import (
    create_tracker,
    delete_tracker,
    get_tracker,
    get_tracker_history,
    link_to_contribution,
    list_trackers,
    submission_prefill,
    tracker_stats,
    transition_tracker,
    update_tracker,
)


async def _tracker(db, owner: Actor, **overrides):
    fields = dict(
        tracker_type=TrackerType.RESEARCH_PAPER,
        title="Drip irrigation and soil carbon",
        initial_status=TrackerStatus.WRITING,
        type_data={"target_journal": "Geoderma"},
        school_id="eng",
    )
    fields.update(overrides)
    return await create_tracker(db, owner, TrackerCreate(**fields))


async def _move(db, owner: Actor, tracker_id: str, *statuses: TrackerStatus, **extra):
    t = None
    for status in statuses:
        t = await transition_tracker(db, owner, tracker_id, TrackerTransition(to_status=status, **extra))
    return t


async def _published(db, owner: Actor, **overrides):
    t = await _tracker(db, owner, **overrides)
    return await _move(
        db, owner, t.tracker_id,
        TrackerStatus.COMMUNICATED, TrackerStatus.SUBMITTED, TrackerStatus.ACCEPTED, TrackerStatus.PUBLISHED,
    )


@pytest.mark.asyncio
async def test_create_assigns_tracking_number_and_history(db, faculty):
    t = await _tracker(db, faculty)
    assert re.fullmatch(r"TRP-\d{6}-0001", t.tracking_number)
    assert t.current_status == TrackerStatus.WRITING

    (entry,) = await get_tracker_history(db, faculty, t.tracker_id)
    assert entry.from_status is None
    assert entry.to_status == "writing"
    assert entry.comments == "Tracker created"


@pytest.mark.asyncio
async def test_tracking_numbers_follow_type_prefix(db, faculty):
    book = await _tracker(db, faculty, tracker_type=TrackerType.BOOK)
    chapter = await _tracker(db, faculty, tracker_type=TrackerType.BOOK_CHAPTER)
    assert book.tracking_number.startswith("TBK-")
    assert chapter.tracking_number.startswith("TBC-")


@pytest.mark.asyncio
async def test_initial_status_must_be_early_stage(db, faculty):
    with pytest.raises(ValidationError) as excinfo:
        await _tracker(db, faculty, initial_status=TrackerStatus.ACCEPTED)
    assert excinfo.value.allowed_values == ["writing", "communicated"]


@pytest.mark.asyncio
async def test_transition_merges_status_data(db, faculty):
    t = await _tracker(db, faculty)
    moved = await transition_tracker(db, faculty, t.tracker_id, TrackerTransition(
        to_status=TrackerStatus.COMMUNICATED, status_data={"manuscript_id": "GEO-123"},
    ))
    assert moved.current_status == TrackerStatus.COMMUNICATED
    assert moved.type_data == {"target_journal": "Geoderma", "manuscript_id": "GEO-123"}


@pytest.mark.asyncio
async def test_unlisted_transition_is_refused(db, faculty):
    t = await _tracker(db, faculty)
    with pytest.raises(InvalidTransitionError) as excinfo:
        await transition_tracker(db, faculty, t.tracker_id, TrackerTransition(to_status=TrackerStatus.PUBLISHED))
    assert excinfo.value.details["allowed"] == ["communicated", "writing"]


@pytest.mark.asyncio
async def test_rejected_cannot_jump_to_published(db, faculty):
    t = await _tracker(db, faculty, initial_status=TrackerStatus.COMMUNICATED)
    await _move(db, faculty, t.tracker_id, TrackerStatus.SUBMITTED, TrackerStatus.REJECTED)
    with pytest.raises(StateError):
        await _move(db, faculty, t.tracker_id, TrackerStatus.PUBLISHED)
    restarted = await _move(db, faculty, t.tracker_id, TrackerStatus.WRITING)
    assert restarted.current_status == TrackerStatus.WRITING


@pytest.mark.asyncio
async def test_same_status_is_a_monthly_report(db, faculty):
    t = await _tracker(db, faculty)
    await transition_tracker(db, faculty, t.tracker_id, TrackerTransition(
        to_status=TrackerStatus.WRITING, notes="Finished the methods section",
    ))
    await transition_tracker(db, faculty, t.tracker_id, TrackerTransition(to_status=TrackerStatus.WRITING))

    history = await get_tracker_history(db, faculty, t.tracker_id)
    assert [h.comments for h in history[1:]] == [
        "Monthly Report: Finished the methods section",
        "Monthly Report: Progress update",
    ]
    assert history[1].metadata["monthly_report"] is True


@pytest.mark.asyncio
async def test_publishing_sets_completion_date(db, faculty):
    t = await _tracker(db, faculty)
    await _move(db, faculty, t.tracker_id, TrackerStatus.COMMUNICATED, TrackerStatus.SUBMITTED, TrackerStatus.ACCEPTED)
    published = await transition_tracker(db, faculty, t.tracker_id, TrackerTransition(
        to_status=TrackerStatus.PUBLISHED, reported_date=date(2025, 2, 14),
    ))
    assert published.actual_completion_date == date(2025, 2, 14)


@pytest.mark.asyncio
async def test_only_owner_transitions(db, faculty, student):
    t = await _tracker(db, faculty)
    with pytest.raises(PermissionDeniedError):
        await _move(db, student, t.tracker_id, TrackerStatus.COMMUNICATED)


@pytest.mark.asyncio
async def test_reviewer_can_read_but_others_cannot(db, faculty, student, reviewer):
    t = await _tracker(db, faculty)
    assert (await get_tracker(db, reviewer, t.tracker_id)).tracker_id == t.tracker_id
    with pytest.raises(PermissionDeniedError):
        await get_tracker(db, student, t.tracker_id)


@pytest.mark.asyncio
async def test_update_merges_type_data(db, faculty):
    t = await _tracker(db, faculty)
    updated = await update_tracker(db, faculty, t.tracker_id, TrackerUpdate(
        title="Drip irrigation, soil carbon and yield", type_data={"co_authors": 3},
    ))
    assert updated.title == "Drip irrigation, soil carbon and yield"
    assert updated.type_data == {"target_journal": "Geoderma", "co_authors": 3}
    assert updated.notes == ""


@pytest.mark.asyncio
async def test_list_and_delete(db, faculty, student):
    mine = await _tracker(db, faculty)
    await _tracker(db, faculty, tracker_type=TrackerType.BOOK, initial_status=TrackerStatus.COMMUNICATED)
    await _tracker(db, student)

    assert len(await list_trackers(db, faculty)) == 2
    writing = await list_trackers(db, faculty, status=TrackerStatus.WRITING)
    assert [t.tracker_id for t in writing] == [mine.tracker_id]

    await delete_tracker(db, faculty, mine.tracker_id)
    assert len(await list_trackers(db, faculty)) == 1


@pytest.mark.asyncio
async def test_prefill_requires_published(db, faculty):
    t = await _tracker(db, faculty)
    with pytest.raises(StateError):
        await submission_prefill(db, faculty, t.tracker_id)


@pytest.mark.asyncio
async def test_prefill_carries_type_data_and_history(db, faculty):
    t = await _published(db, faculty)
    data = await submission_prefill(db, faculty, t.tracker_id)
    assert data["publication_type"] == "research_paper"
    assert data["target_journal"] == "Geoderma"
    assert data["tracking_number"] == t.tracking_number
    assert [h["to_status"] for h in data["progress_history"]] == [
        "writing", "communicated", "submitted", "accepted", "published",
    ]


@pytest.mark.asyncio
async def test_link_to_contribution_records_both_sides(db, faculty):
    t = await _published(db, faculty, tracker_type=TrackerType.BOOK)
    c = await create_contribution(db, faculty, ContributionCreate(title="A book", details=BookDetails()))

    linked, contribution = await link_to_contribution(db, faculty, t.tracker_id, c.contribution_id)
    assert linked.research_contribution_id == c.contribution_id
    assert (await get_contribution(db, c.contribution_id)).progress_tracker_id == t.tracker_id
    assert contribution.progress_tracker_id == t.tracker_id

    with pytest.raises(StateError):
        await link_to_contribution(db, faculty, t.tracker_id, c.contribution_id)
    with pytest.raises(StateError):
        await update_tracker(db, faculty, t.tracker_id, TrackerUpdate(notes="late edit"))


@pytest.mark.asyncio
async def test_contribution_takes_only_one_tracker(db, faculty):
    first = await _published(db, faculty, tracker_type=TrackerType.BOOK)
    second = await _published(db, faculty, tracker_type=TrackerType.BOOK)
    c = await create_contribution(db, faculty, ContributionCreate(title="A book", details=BookDetails()))
    await link_to_contribution(db, faculty, first.tracker_id, c.contribution_id)
    with pytest.raises(StateError):
        await link_to_contribution(db, faculty, second.tracker_id, c.contribution_id)


@pytest.mark.asyncio
async def test_cannot_link_someone_elses_contribution(db, faculty, student):
    t = await _published(db, faculty, tracker_type=TrackerType.BOOK)
    c = await create_contribution(db, student, ContributionCreate(title="Their book", details=BookDetails()))
    with pytest.raises(PermissionDeniedError):
        await link_to_contribution(db, faculty, t.tracker_id, c.contribution_id)


@pytest.mark.asyncio
async def test_tracker_stats(db, faculty):
    await _tracker(db, faculty)
    await _tracker(db, faculty)
    await _tracker(db, faculty, tracker_type=TrackerType.CONFERENCE_PAPER, initial_status=TrackerStatus.COMMUNICATED)

    stats = await tracker_stats(db, faculty)
    assert stats["total"] == 3
    assert stats["by_status"] == {"writing": 2, "communicated": 1}
    assert stats["by_type"] == {"research_paper": 2, "conference_paper": 1}
