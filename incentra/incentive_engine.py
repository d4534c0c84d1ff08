"""Incentive calculation engine: deterministic pool and share math.

Every function here is pure. The caller resolves the policy for the
publication date first and passes it in (or None to use the documented
defaults). ``calculate_incentive`` never raises for unexpected failures:
it returns a ``CalculationFault`` and lets the orchestration layer decide
to degrade to zero via ``resolve_outcome``. ``ConfigurationError`` is the
exception that always propagates.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from incentra.config import IncentiveDefaults, settings
from incentra.errors import ConfigurationError
from incentra.models import (
    AuthorRole,
    AuthorShareContext,
    BookChapterDetails,
    BookDetails,
    BookType,
    CalculationFault,
    CalculationOutcome,
    ConferencePaperDetails,
    ConferenceSubType,
    DistributionMethod,
    GrantDetails,
    IncentivePolicy,
    IndexingCategory,
    IprShare,
    IprType,
    PoolAmount,
    PublicationType,
    Quartile,
    ResearchPaperDetails,
    normalize_quartile,
)
from incentra.policy_store import require_role_percentages

logger = logging.getLogger(__name__)

__all__ = [
    "calculate_incentive",
    "calculate_pool",
    "ipr_pool",
    "normalize_quartile",
    "resolve_outcome",
    "round_half_up",
    "split_ipr_incentive",
]

_HUNDRED = Decimal(100)
_FULL_AMOUNT_SUB_TYPES = (
    ConferenceSubType.KEYNOTE_SPEAKER_INVITED_TALKS,
    ConferenceSubType.ORGANIZER_COORDINATOR_MEMBER,
)


def round_half_up(value: Any) -> int:
    """Round to the nearest integer unit, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _share(total: int, percentage: Decimal) -> int:
    return round_half_up(Decimal(total) * percentage / _HUNDRED)


# ---------------------------------------------------------------------------
# Pool derivation
# ---------------------------------------------------------------------------

def _quartile_lookup(
    quartile: Quartile | None, policy: IncentivePolicy | None, table: dict[str, Any]
) -> PoolAmount:
    if quartile is None:
        return PoolAmount()
    if policy is not None and policy.quartile_incentives:
        for row in policy.quartile_incentives:
            if row.quartile == quartile:
                return PoolAmount(amount=row.incentive_amount, points=row.points)
        return PoolAmount()
    match = table.get(quartile.value)
    if match is None:
        return PoolAmount()
    return PoolAmount(amount=match.incentive_amount, points=match.points)


def _band_lookup(value: float, bands: list[tuple[float, float, int, int]]) -> PoolAmount:
    for low, high, amount, points in bands:
        if low <= value <= high:
            return PoolAmount(amount=amount, points=points)
    return PoolAmount()


def _category_bonus(category: str, policy: IncentivePolicy | None, defaults: IncentiveDefaults) -> PoolAmount:
    if policy is not None and policy.category_bonuses:
        for bonus in policy.category_bonuses:
            if bonus.category == category:
                return PoolAmount(amount=bonus.incentive_amount, points=bonus.points)
        return PoolAmount()
    match = defaults.research.category_bonuses.get(category)
    if match is None:
        return PoolAmount()
    return PoolAmount(amount=match.incentive_amount, points=match.points)


def _policy_bands(bands: list, fallback: list[tuple[float, float, int, int]]) -> list[tuple[float, float, int, int]]:
    if not bands:
        return fallback
    return [(b.min_value, b.max_value, b.incentive_amount, b.points) for b in bands]


def category_value(
    category: IndexingCategory,
    details: ResearchPaperDetails | GrantDetails,
    policy: IncentivePolicy | None,
    defaults: IncentiveDefaults,
) -> PoolAmount:
    """What one indexing category alone would pay."""
    research = defaults.research
    if category == IndexingCategory.SCOPUS:
        return _quartile_lookup(details.quartile, policy, research.quartile_incentives)
    if category == IndexingCategory.SCIE_WOS:
        if not details.sjr:
            return PoolAmount()
        bands = _policy_bands(policy.sjr_ranges if policy else [], research.sjr_ranges)
        return _band_lookup(details.sjr, bands)
    if category == IndexingCategory.NAAS_RATING_6_PLUS:
        rating = details.naas_rating
        if not rating or rating < 6:
            return PoolAmount()
        bands = _policy_bands(policy.naas_rating_incentives if policy else [], research.naas_rating_bands)
        found = _band_lookup(rating, bands)
        if found.amount:
            return found
        return _category_bonus(category.value, policy, defaults)
    if category == IndexingCategory.SUBSIDIARY_IF_ABOVE_20:
        if not details.subsidiary_impact_factor or details.subsidiary_impact_factor <= 20:
            return PoolAmount()
        return _category_bonus(category.value, policy, defaults)
    return _category_bonus(category.value, policy, defaults)


def _research_pool(
    details: ResearchPaperDetails | GrantDetails, policy: IncentivePolicy | None, defaults: IncentiveDefaults
) -> PoolAmount:
    # Highest single category wins; categories are never summed.
    best = PoolAmount()
    for category in details.indexing_categories:
        value = category_value(category, details, policy, defaults)
        if value.amount > best.amount:
            best = value
    return best


def _book_pool(
    details: BookDetails | BookChapterDetails, policy: IncentivePolicy | None, defaults: IncentiveDefaults
) -> PoolAmount:
    book = defaults.book_chapter if isinstance(details, BookChapterDetails) else defaults.book
    authored = details.book_type == BookType.AUTHORED
    if authored:
        amount, points = book.authored_incentive_amount, book.authored_points
        if policy is not None and policy.authored_incentive_amount is not None:
            amount = policy.authored_incentive_amount
            points = policy.authored_points or 0
    else:
        amount, points = book.edited_incentive_amount, book.edited_points
        if policy is not None and policy.edited_incentive_amount is not None:
            amount = policy.edited_incentive_amount
            points = policy.edited_points or 0

    bonuses = policy.indexing_bonuses if policy is not None and policy.indexing_bonuses else book.indexing_bonuses
    if details.indexing is not None:
        amount += bonuses.get(details.indexing.value, 0)
    if details.is_international:
        amount += policy.international_bonus if policy is not None else book.international_bonus
        if policy is not None:
            points += policy.international_points_bonus
    return PoolAmount(amount=amount, points=points)


def _conference_pool(
    details: ConferencePaperDetails, policy: IncentivePolicy | None, defaults: IncentiveDefaults
) -> PoolAmount:
    sub_type = details.conference_sub_type
    if sub_type is None:
        return PoolAmount()
    conference = defaults.conference

    if sub_type == ConferenceSubType.PAPER_INDEXED_SCOPUS:
        pool = _quartile_lookup(details.proceedings_quartile, policy, conference.quartile_incentives)
        amount, points = pool.amount, pool.points
    elif policy is not None:
        amount, points = policy.flat_incentive_amount or 0, policy.flat_points or 0
    else:
        levels = conference.flat_incentives.get(sub_type.value) or conference.flat_incentives["paper_not_indexed"]
        level = levels["international" if details.is_international else "national"]
        amount, points = level.incentive_amount, level.points

    if policy is not None:
        if details.is_international:
            amount += policy.international_bonus
            points += policy.international_points_bonus
        if details.best_paper_award:
            amount += policy.best_paper_award_bonus
    return PoolAmount(amount=amount, points=points)


_POOL_RULES: dict[type, Callable[..., PoolAmount]] = {
    ResearchPaperDetails: _research_pool,
    GrantDetails: _research_pool,
    BookDetails: _book_pool,
    BookChapterDetails: _book_pool,
    ConferencePaperDetails: _conference_pool,
}


def calculate_pool(details: Any, policy: IncentivePolicy | None, defaults: IncentiveDefaults | None = None) -> PoolAmount:
    """Total amount and points a contribution earns before division."""
    rule = _POOL_RULES[type(details)]
    return rule(details, policy, defaults or settings.incentives)


def ipr_pool(ipr_type: IprType, policy: IncentivePolicy | None, defaults: IncentiveDefaults | None = None) -> PoolAmount:
    """Flat per-type IPR incentive: the policy base amount or the documented default."""
    if policy is not None and policy.base_incentive_amount is not None:
        return PoolAmount(amount=policy.base_incentive_amount, points=policy.base_points or 0)
    fallback = (defaults or settings.incentives).ipr.get(ipr_type.value)
    if fallback is None:
        return PoolAmount()
    return PoolAmount(amount=fallback.incentive_amount, points=fallback.points)


# ---------------------------------------------------------------------------
# Share rules
# ---------------------------------------------------------------------------

def _role_percentages(author: AuthorShareContext, first: float, corresponding: float) -> tuple[Decimal, Decimal]:
    """(money percentage, points percentage) for one author under role-based splitting."""
    first_pct = Decimal(str(first))
    corresponding_pct = Decimal(str(corresponding))
    co_total = _HUNDRED - first_pct - corresponding_pct

    if author.total_authors == 1:
        pct = _HUNDRED - Decimal(str(author.external_first_corresponding_pct))
        return pct, pct
    if author.total_authors == 2 and author.internal_co_author_count == 0 and author.co_author_count == 0:
        return Decimal(50), Decimal(50)
    if author.author_role == AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR:
        pct = first_pct + corresponding_pct
        return pct, pct
    if author.author_role == AuthorRole.FIRST_AUTHOR:
        return first_pct, first_pct
    if author.author_role == AuthorRole.CORRESPONDING_AUTHOR:
        return corresponding_pct, corresponding_pct

    # Co-authors split the remainder among internal co-authors; points among employees only.
    money = co_total / max(author.internal_co_author_count, 1)
    points = co_total / max(author.internal_employee_co_author_count, 1)
    return money, points


def _outcome(pool: PoolAmount, author: AuthorShareContext, amount: int, points: int, note: str = "") -> CalculationOutcome:
    return CalculationOutcome(
        total_pool_amount=pool.amount,
        total_pool_points=pool.points,
        incentive_amount=amount,
        points=0 if author.is_student else points,
        note=note,
    )


def _split_by_role(pool: PoolAmount, author: AuthorShareContext, first: float, corresponding: float) -> CalculationOutcome:
    money_pct, points_pct = _role_percentages(author, first, corresponding)
    return _outcome(
        pool,
        author,
        _share(pool.amount, money_pct),
        _share(pool.points, points_pct),
        note=f"role {author.author_role.value}: {money_pct:.2f}%",
    )


def _split_equally(pool: PoolAmount, author: AuthorShareContext) -> CalculationOutcome:
    count = max(author.total_authors, 1)
    return _outcome(
        pool,
        author,
        round_half_up(Decimal(pool.amount) / count),
        round_half_up(Decimal(pool.points) / count),
        note=f"equal split across {count} authors",
    )


def _conference_percentages(policy: IncentivePolicy | None, defaults: IncentiveDefaults) -> tuple[float, float]:
    if policy is None:
        return defaults.conference.first_author_percentage, defaults.conference.corresponding_author_percentage
    return require_role_percentages(policy, PublicationType.CONFERENCE_PAPER)


def _calculate_book(details, policy, author, defaults) -> CalculationOutcome:
    pool = _book_pool(details, policy, defaults)
    if not author.is_internal:
        return CalculationOutcome.zero(pool, note="external author")
    return _split_equally(pool, author)


def _calculate_conference(details, policy, author, defaults) -> CalculationOutcome:
    pool = _conference_pool(details, policy, defaults)
    if not author.is_internal:
        return CalculationOutcome.zero(pool, note="external author")
    sub_type = details.conference_sub_type
    if sub_type is None:
        return CalculationOutcome.zero(pool, note="conference sub-type not selected")
    if sub_type == ConferenceSubType.PAPER_INDEXED_SCOPUS:
        if pool.amount == 0:
            return CalculationOutcome.zero(pool, note="no matching quartile")
        first, corresponding = _conference_percentages(policy, defaults)
        return _split_by_role(pool, author, first, corresponding)
    if sub_type in _FULL_AMOUNT_SUB_TYPES:
        return _outcome(pool, author, pool.amount, pool.points, note="full amount to presenter")
    return _split_equally(pool, author)


def _calculate_research(details, policy, author, defaults) -> CalculationOutcome:
    pool = _research_pool(details, policy, defaults)
    if not author.is_internal:
        return CalculationOutcome.zero(pool, note="external author")

    method = policy.distribution_method if policy is not None else DistributionMethod.ROLE_BASED
    position_based = method == DistributionMethod.POSITION_BASED
    if position_based and (author.author_position is None or author.author_position >= 6):
        return CalculationOutcome.zero(pool, note="position outside 1-5")
    if pool.amount == 0:
        return CalculationOutcome.zero(pool, note="no matching category")

    first, corresponding = require_role_percentages(policy, PublicationType(details.publication_type))
    if not position_based:
        return _split_by_role(pool, author, first, corresponding)

    table = policy.position_percentages or defaults.research.position_percentages
    pct = table.get(author.author_position)
    if pct is None:
        pct = defaults.research.position_percentages.get(author.author_position, 0)
    pct = Decimal(str(pct))
    return _outcome(
        pool,
        author,
        _share(pool.amount, pct),
        _share(pool.points, pct),
        note=f"position {author.author_position}: {pct:.2f}%",
    )


_SHARE_RULES: dict[type, Callable[..., CalculationOutcome]] = {
    ResearchPaperDetails: _calculate_research,
    GrantDetails: _calculate_research,
    BookDetails: _calculate_book,
    BookChapterDetails: _calculate_book,
    ConferencePaperDetails: _calculate_conference,
}


def calculate_incentive(
    details: Any,
    policy: IncentivePolicy | None,
    author: AuthorShareContext,
    defaults: IncentiveDefaults | None = None,
) -> CalculationOutcome | CalculationFault:
    """Pool totals plus this author's personal share.

    Returns a ``CalculationFault`` instead of raising when something
    unexpected goes wrong. ``ConfigurationError`` always propagates.
    """
    try:
        rule = _SHARE_RULES[type(details)]
        return rule(details, policy, author, defaults or settings.incentives)
    except ConfigurationError:
        raise
    except Exception as exc:
        return CalculationFault(
            reason=str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
            publication_type=str(getattr(details, "publication_type", "")),
            author_role=author.author_role.value,
        )


def resolve_outcome(
    result: CalculationOutcome | CalculationFault,
    *,
    pool: PoolAmount | None = None,
    context: str = "",
) -> CalculationOutcome:
    """Degrade a fault to a zero share, loudly."""
    if isinstance(result, CalculationOutcome):
        return result
    logger.error(
        "incentive calculation fault %s publication_type=%s author_role=%s error=%s: %s",
        context,
        result.publication_type,
        result.author_role,
        result.error_type,
        result.reason,
    )
    return CalculationOutcome.zero(pool, note=f"calculation fault: {result.reason}")


def split_ipr_incentive(amount: int, points: int, inventor_count: int) -> IprShare:
    """Equal floor-divided split of an IPR incentive."""
    count = max(inventor_count, 1)
    return IprShare(
        total_incentive=amount,
        total_points=points,
        per_inventor_incentive=amount // count,
        per_inventor_points=points // count,
        inventor_count=count,
    )
