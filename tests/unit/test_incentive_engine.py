"""Incentive engine: pool derivation and per-author share rules."""

from __future__ import annotations

import logging
from datetime import date

import pytest

from incentra import incentive_engine
from incentra.errors import ConfigurationError
from incentra.incentive_engine import (
    calculate_incentive,
    calculate_pool,
    ipr_pool,
    resolve_outcome,
    round_half_up,
    split_ipr_incentive,
)
from incentra.models import (
    AuthorRole,
    AuthorShareContext,
    BookChapterDetails,
    BookDetails,
    BookIndexing,
    BookType,
    CalculationFault,
    CalculationOutcome,
    ConferenceLevel,
    ConferenceLocation,
    ConferencePaperDetails,
    ConferenceSubType,
    DistributionMethod,
    GrantDetails,
    IncentivePolicy,
    IndexingCategory,
    IprType,
    PolicyScope,
    PoolAmount,
    Quartile,
    ResearchPaperDetails,
)


def _research_policy(**overrides) -> IncentivePolicy:
    fields = dict(
        policy_name="Research 2024",
        scope=PolicyScope.RESEARCH_PAPER,
        effective_from=date(2024, 1, 1),
        first_author_percentage=40,
        corresponding_author_percentage=40,
    )
    fields.update(overrides)
    return IncentivePolicy(**fields)


def _scopus_q1() -> ResearchPaperDetails:
    return ResearchPaperDetails(
        indexing_categories=[IndexingCategory.SCOPUS], quartile="Q1", impact_factor=3.2
    )


def _ctx(role: AuthorRole, **kwargs) -> AuthorShareContext:
    return AuthorShareContext(author_role=role, **kwargs)


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------

def test_round_half_up_rounds_halves_away_from_zero():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.4999) == 2
    assert round_half_up(12500) == 12500


# ---------------------------------------------------------------------------
# Pools
# ---------------------------------------------------------------------------

def test_scopus_pool_uses_quartile_table():
    pool = calculate_pool(_scopus_q1(), None)
    assert pool == PoolAmount(amount=50_000, points=50)


def test_policy_quartile_table_overrides_defaults():
    policy = _research_policy(quartile_incentives=[
        {"quartile": q, "incentive_amount": 1_000 * (i + 1), "points": i + 1}
        for i, q in enumerate(Quartile)
    ])
    pool = calculate_pool(_scopus_q1(), policy)
    assert pool == PoolAmount(amount=3_000, points=3)


def test_highest_single_category_wins_and_categories_never_sum():
    details = ResearchPaperDetails(
        indexing_categories=[IndexingCategory.PUBMED, IndexingCategory.SCOPUS, IndexingCategory.IN_HOUSE_JOURNAL],
        quartile=Quartile.Q2,
        impact_factor=1.0,
    )
    assert calculate_pool(details, None) == PoolAmount(amount=30_000, points=30)

    details = details.model_copy(update={
        "indexing_categories": [IndexingCategory.SCOPUS, IndexingCategory.NATURE_SCIENCE_LANCET_CELL_NEJM],
    })
    assert calculate_pool(details, None) == PoolAmount(amount=200_000, points=100)


def test_sjr_band_lookup():
    details = ResearchPaperDetails(indexing_categories=[IndexingCategory.SCIE_WOS], sjr=1.5)
    assert calculate_pool(details, None) == PoolAmount(amount=30_000, points=30)
    assert calculate_pool(details.model_copy(update={"sjr": 2.4}), None).amount == 50_000


def test_naas_rating_below_six_pays_nothing():
    details = ResearchPaperDetails(indexing_categories=[IndexingCategory.NAAS_RATING_6_PLUS], naas_rating=5.5)
    assert calculate_pool(details, None) == PoolAmount()
    assert calculate_pool(details.model_copy(update={"naas_rating": 8.5}), None).amount == 20_000


def test_subsidiary_category_requires_impact_factor_above_twenty():
    details = ResearchPaperDetails(
        indexing_categories=[IndexingCategory.SUBSIDIARY_IF_ABOVE_20], subsidiary_impact_factor=20
    )
    assert calculate_pool(details, None).amount == 0
    assert calculate_pool(details.model_copy(update={"subsidiary_impact_factor": 21.5}), None).amount == 100_000


def test_grant_uses_research_tables():
    details = GrantDetails(indexing_categories=[IndexingCategory.SCOPUS], quartile="top1")
    assert calculate_pool(details, None) == PoolAmount(amount=75_000, points=75)


def test_book_pool_adds_indexing_and_international_bonuses():
    details = BookDetails(book_type=BookType.AUTHORED, indexing=BookIndexing.SCOPUS_INDEXED, is_international=True)
    assert calculate_pool(details, None) == PoolAmount(amount=65_000, points=50)

    chapter = BookChapterDetails(book_type=BookType.EDITED, indexing=BookIndexing.IN_HOUSE_PRESS)
    assert calculate_pool(chapter, None) == PoolAmount(amount=42_000, points=40)


def test_conference_flat_defaults_by_level():
    national = ConferencePaperDetails(
        conference_sub_type=ConferenceSubType.PAPER_NOT_INDEXED, conference_type=ConferenceLevel.NATIONAL
    )
    abroad = national.model_copy(update={"conference_held_location": ConferenceLocation.ABROAD})
    assert calculate_pool(national, None) == PoolAmount(amount=10_000, points=10)
    assert calculate_pool(abroad, None) == PoolAmount(amount=15_000, points=15)


def test_conference_without_sub_type_has_empty_pool():
    assert calculate_pool(ConferencePaperDetails(), None) == PoolAmount()


def test_conference_policy_flat_amount_plus_bonuses():
    policy = IncentivePolicy(
        policy_name="Organizers",
        scope=PolicyScope.CONFERENCE_PAPER,
        sub_type="organizer_coordinator_member",
        effective_from=date(2024, 1, 1),
        flat_incentive_amount=6_000,
        flat_points=6,
        international_bonus=4_000,
        best_paper_award_bonus=1_000,
    )
    details = ConferencePaperDetails(
        conference_sub_type=ConferenceSubType.ORGANIZER_COORDINATOR_MEMBER,
        conference_type=ConferenceLevel.INTERNATIONAL,
        best_paper_award=True,
    )
    assert calculate_pool(details, policy) == PoolAmount(amount=11_000, points=6)

    with_points = policy.model_copy(update={"international_points_bonus": 4})
    assert calculate_pool(details, with_points) == PoolAmount(amount=11_000, points=10)
    national = details.model_copy(update={"conference_type": ConferenceLevel.NATIONAL})
    assert calculate_pool(national, with_points) == PoolAmount(amount=7_000, points=6)


def test_ipr_pool_prefers_policy_base_amount():
    assert ipr_pool(IprType.COPYRIGHT, None) == PoolAmount(amount=15_000, points=20)
    policy = IncentivePolicy(
        policy_name="Patents",
        scope=PolicyScope.IPR,
        sub_type="patent",
        effective_from=date(2024, 1, 1),
        base_incentive_amount=70_000,
        base_points=60,
    )
    assert ipr_pool(IprType.PATENT, policy) == PoolAmount(amount=70_000, points=60)


# ---------------------------------------------------------------------------
# Research shares
# ---------------------------------------------------------------------------

def test_first_and_corresponding_author_with_one_external_co_author():
    ctx = _ctx(
        AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR,
        total_authors=2,
        co_author_count=1,
    )
    outcome = calculate_incentive(_scopus_q1(), _research_policy(), ctx)
    assert isinstance(outcome, CalculationOutcome)
    assert outcome.total_pool_amount == 50_000
    assert outcome.incentive_amount == 40_000
    assert outcome.points == 40


def test_external_author_gets_nothing_but_pool_is_reported():
    ctx = _ctx(AuthorRole.CO_AUTHOR, is_internal=False, total_authors=3, co_author_count=1)
    outcome = calculate_incentive(_scopus_q1(), _research_policy(), ctx)
    assert outcome.incentive_amount == 0
    assert outcome.points == 0
    assert outcome.total_pool_amount == 50_000
    assert outcome.total_pool_points == 50


def test_sole_author_receives_whole_pool():
    outcome = calculate_incentive(
        _scopus_q1(), _research_policy(), _ctx(AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR, total_authors=1)
    )
    assert (outcome.incentive_amount, outcome.points) == (50_000, 50)


def test_two_authors_without_co_authors_split_evenly():
    policy = _research_policy(first_author_percentage=35, corresponding_author_percentage=30)
    first = calculate_incentive(_scopus_q1(), policy, _ctx(AuthorRole.FIRST_AUTHOR, total_authors=2))
    corresponding = calculate_incentive(
        _scopus_q1(), policy, _ctx(AuthorRole.CORRESPONDING_AUTHOR, total_authors=2)
    )
    assert first.incentive_amount == corresponding.incentive_amount == 25_000


def test_student_earns_money_but_no_points():
    outcome = calculate_incentive(
        _scopus_q1(),
        _research_policy(),
        _ctx(AuthorRole.FIRST_AUTHOR, is_student=True, total_authors=3, co_author_count=2, internal_co_author_count=2),
    )
    assert outcome.incentive_amount == 20_000
    assert outcome.points == 0


def test_internal_shares_never_exceed_pool():
    # Internal first author, external corresponding author, one faculty and one student co-author.
    policy = _research_policy()
    base = dict(
        total_authors=4,
        co_author_count=2,
        internal_co_author_count=2,
        internal_employee_co_author_count=1,
        external_first_corresponding_pct=40,
    )
    shares = [
        calculate_incentive(_scopus_q1(), policy, _ctx(AuthorRole.FIRST_AUTHOR, **base)),
        calculate_incentive(_scopus_q1(), policy, _ctx(AuthorRole.CO_AUTHOR, **base)),
        calculate_incentive(_scopus_q1(), policy, _ctx(AuthorRole.CO_AUTHOR, is_student=True, **base)),
    ]
    amounts = [s.incentive_amount for s in shares]
    points = [s.points for s in shares]
    assert amounts == [20_000, 5_000, 5_000]
    assert points == [20, 10, 0]
    assert sum(amounts) <= 50_000
    assert sum(points) <= 50


def test_external_sole_corresponding_percentage_is_forfeited():
    ctx = _ctx(AuthorRole.FIRST_AUTHOR, total_authors=1, external_first_corresponding_pct=40)
    outcome = calculate_incentive(_scopus_q1(), _research_policy(), ctx)
    assert outcome.incentive_amount == 30_000


def test_calculation_is_deterministic():
    ctx = _ctx(AuthorRole.CO_AUTHOR, total_authors=3, co_author_count=1, internal_co_author_count=1,
               internal_employee_co_author_count=1)
    first = calculate_incentive(_scopus_q1(), _research_policy(), ctx)
    second = calculate_incentive(_scopus_q1(), _research_policy(), ctx)
    assert first == second


def test_research_without_policy_percentages_raises_configuration_error():
    ctx = _ctx(AuthorRole.FIRST_AUTHOR, total_authors=2, co_author_count=1)
    with pytest.raises(ConfigurationError):
        calculate_incentive(_scopus_q1(), None, ctx)

    incomplete = _research_policy(corresponding_author_percentage=None)
    with pytest.raises(ConfigurationError) as excinfo:
        calculate_incentive(_scopus_q1(), incomplete, ctx)
    assert excinfo.value.details["policy_scope"] == "research_paper"


def test_research_with_empty_pool_is_zero_without_policy():
    details = ResearchPaperDetails(indexing_categories=[IndexingCategory.UGC])
    outcome = calculate_incentive(details, None, _ctx(AuthorRole.FIRST_AUTHOR, total_authors=1))
    assert outcome.incentive_amount == 0
    assert outcome.total_pool_amount == 0


def test_position_based_split_and_cutoff():
    policy = _research_policy(distribution_method=DistributionMethod.POSITION_BASED)
    second = calculate_incentive(
        _scopus_q1(), policy, _ctx(AuthorRole.CO_AUTHOR, author_position=2, total_authors=6)
    )
    assert (second.incentive_amount, second.points) == (12_500, 13)

    sixth = calculate_incentive(
        _scopus_q1(), policy, _ctx(AuthorRole.CO_AUTHOR, author_position=6, total_authors=6)
    )
    unknown = calculate_incentive(_scopus_q1(), policy, _ctx(AuthorRole.CO_AUTHOR, total_authors=6))
    assert sixth.incentive_amount == 0
    assert unknown.incentive_amount == 0
    assert sixth.total_pool_amount == 50_000


def test_policy_position_table_overrides_default():
    policy = _research_policy(
        distribution_method=DistributionMethod.POSITION_BASED,
        position_percentages={1: 50, 2: 20, 3: 10, 4: 10, 5: 10},
    )
    outcome = calculate_incentive(
        _scopus_q1(), policy, _ctx(AuthorRole.FIRST_AUTHOR, author_position=1, total_authors=2)
    )
    assert outcome.incentive_amount == 25_000


# ---------------------------------------------------------------------------
# Books and conferences
# ---------------------------------------------------------------------------

def test_book_splits_equally_among_all_authors():
    details = BookDetails(book_type=BookType.AUTHORED, indexing=BookIndexing.SCOPUS_INDEXED, is_international=True)
    outcome = calculate_incentive(details, None, _ctx(AuthorRole.CO_AUTHOR, total_authors=2))
    assert (outcome.incentive_amount, outcome.points) == (32_500, 25)


def test_keynote_international_pays_full_amount():
    details = ConferencePaperDetails(
        conference_sub_type=ConferenceSubType.KEYNOTE_SPEAKER_INVITED_TALKS,
        conference_type=ConferenceLevel.INTERNATIONAL,
    )
    outcome = calculate_incentive(details, None, _ctx(AuthorRole.FIRST_AUTHOR, total_authors=3))
    assert (outcome.incentive_amount, outcome.points) == (20_000, 20)


def test_conference_paper_not_indexed_splits_equally():
    details = ConferencePaperDetails(conference_sub_type=ConferenceSubType.PAPER_NOT_INDEXED)
    outcome = calculate_incentive(details, None, _ctx(AuthorRole.CO_AUTHOR, total_authors=2))
    assert (outcome.incentive_amount, outcome.points) == (5_000, 5)


def test_scopus_conference_uses_default_role_percentages():
    details = ConferencePaperDetails(
        conference_sub_type=ConferenceSubType.PAPER_INDEXED_SCOPUS, proceedings_quartile="q1"
    )
    outcome = calculate_incentive(
        details, None, _ctx(AuthorRole.FIRST_AUTHOR, total_authors=3, co_author_count=2)
    )
    assert outcome.total_pool_amount == 40_000
    assert outcome.incentive_amount == 16_000


def test_conference_without_sub_type_is_zero():
    outcome = calculate_incentive(ConferencePaperDetails(), None, _ctx(AuthorRole.FIRST_AUTHOR))
    assert outcome.incentive_amount == 0
    assert "sub-type" in outcome.note


# ---------------------------------------------------------------------------
# Faults
# ---------------------------------------------------------------------------

def test_unexpected_error_becomes_fault_and_resolves_to_zero(monkeypatch, caplog):
    def _boom(*args, **kwargs):
        raise RuntimeError("table corrupted")

    monkeypatch.setattr(incentive_engine, "_research_pool", _boom)
    result = calculate_incentive(_scopus_q1(), _research_policy(), _ctx(AuthorRole.FIRST_AUTHOR))
    assert isinstance(result, CalculationFault)
    assert result.error_type == "RuntimeError"
    assert result.reason == "table corrupted"
    assert result.author_role == "first_author"

    with caplog.at_level(logging.ERROR, logger="incentra.incentive_engine"):
        outcome = resolve_outcome(result, pool=PoolAmount(amount=50_000, points=50), context="RP-2024-0001")
    assert outcome.incentive_amount == 0
    assert outcome.total_pool_amount == 50_000
    assert "table corrupted" in caplog.text


def test_resolve_outcome_passes_success_through():
    outcome = CalculationOutcome(total_pool_amount=10, incentive_amount=5)
    assert resolve_outcome(outcome) is outcome


# ---------------------------------------------------------------------------
# IPR split
# ---------------------------------------------------------------------------

def test_ipr_split_floors_each_share():
    share = split_ipr_incentive(50_000, 50, 3)
    assert share.per_inventor_incentive == 16_666
    assert share.per_inventor_points == 16
    assert share.inventor_count == 3


def test_ipr_split_with_no_inventors_counts_one():
    share = split_ipr_incentive(15_000, 20, 0)
    assert share.per_inventor_incentive == 15_000
    assert share.inventor_count == 1
