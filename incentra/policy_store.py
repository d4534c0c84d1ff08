"""Policy store: versioned, time-bounded incentive policies.

Lookup picks the single active row whose validity window covers the date
in question, preferring the latest ``effective_from``. Policies are added,
never edited in place; adding one that overlaps an older window closes or
retires the older row instead.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

import aiosqlite

from incentra.collaborators import Actor, Capability
from incentra.config import IncentiveDefaults, settings
from incentra.database import from_json, iso, to_json, transaction
from incentra.errors import ConfigurationError, NotFoundError, ValidationError
from incentra.models import (
    CategoryBonus,
    ConferenceSubType,
    DistributionMethod,
    IncentivePolicy,
    IprType,
    PolicyCreate,
    PolicyRules,
    PolicyScope,
    Quartile,
    QuartileIncentive,
    RangeIncentive,
)

logger = logging.getLogger(__name__)

_RULE_FIELDS = tuple(PolicyRules.model_fields)


def _today() -> date:
    return datetime.now(timezone.utc).date()


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _row_to_policy(row: aiosqlite.Row | dict[str, Any]) -> IncentivePolicy:
    d = dict(row)
    rules = from_json(d.pop("rules", None)) or {}
    d["is_active"] = bool(d["is_active"])
    return IncentivePolicy(**rules, **d)


def _rules_json(policy: PolicyRules) -> str:
    return to_json(policy.model_dump(mode="json", include=set(_RULE_FIELDS)))


async def _insert_policy(db: aiosqlite.Connection, policy: IncentivePolicy) -> None:
    await db.execute(
        """
        INSERT INTO policies
            (policy_id, policy_name, scope, sub_type, effective_from, effective_to,
             is_active, rules, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            policy.policy_id,
            policy.policy_name,
            policy.scope.value,
            policy.sub_type,
            iso(policy.effective_from),
            iso(policy.effective_to),
            int(policy.is_active),
            _rules_json(policy),
            policy.created_by,
            policy.created_at.isoformat(),
        ),
    )


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

async def find_active_policy(
    db: aiosqlite.Connection,
    scope: PolicyScope | str,
    sub_type: str | None = None,
    as_of: date | None = None,
) -> IncentivePolicy | None:
    """The active policy covering ``as_of`` with the latest ``effective_from``.

    With a ``sub_type``, a row for that sub-type wins over a scope-wide row.
    Returns None when nothing matches; the caller decides whether to fall
    back to documented defaults or fail.
    """
    scope_value = getattr(scope, "value", scope)
    on = iso(as_of or _today())
    query = """
        SELECT * FROM policies
        WHERE scope = ? AND is_active = 1
          AND effective_from <= ?
          AND (effective_to IS NULL OR effective_to >= ?)
    """
    params: list[Any] = [scope_value, on, on]
    if sub_type:
        query += " AND (sub_type = ? OR sub_type IS NULL) ORDER BY sub_type IS NULL ASC, effective_from DESC"
        params.append(sub_type)
    else:
        query += " AND sub_type IS NULL ORDER BY effective_from DESC"
    query += ", created_at DESC LIMIT 1"

    async with db.execute(query, params) as cursor:
        row = await cursor.fetchone()
    return _row_to_policy(row) if row else None


def require_role_percentages(policy: IncentivePolicy | None, scope: PolicyScope | str) -> tuple[float, float]:
    """First and corresponding percentages, or ``ConfigurationError`` if either is absent."""
    scope_value = getattr(scope, "value", scope)
    if policy is None:
        raise ConfigurationError(
            f"No active {scope_value} policy configures author percentages",
            policy_scope=scope_value,
        )
    if policy.first_author_percentage is None or policy.corresponding_author_percentage is None:
        raise ConfigurationError(
            f"Policy '{policy.policy_name}' is missing first/corresponding author percentages",
            policy_scope=scope_value,
            details={"policy_id": policy.policy_id},
        )
    return policy.first_author_percentage, policy.corresponding_author_percentage


async def get_policy(db: aiosqlite.Connection, policy_id: str) -> IncentivePolicy:
    async with db.execute("SELECT * FROM policies WHERE policy_id = ?", (policy_id,)) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("policy", policy_id)
    return _row_to_policy(row)


async def list_policies(
    db: aiosqlite.Connection,
    scope: PolicyScope | str | None = None,
    active_only: bool = False,
) -> list[IncentivePolicy]:
    clauses: list[str] = []
    params: list[Any] = []
    if scope:
        clauses.append("scope = ?")
        params.append(getattr(scope, "value", scope))
    if active_only:
        clauses.append("is_active = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with db.execute(
        f"SELECT * FROM policies {where} ORDER BY scope, sub_type, effective_from DESC", params
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_policy(r) for r in rows]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_SUB_TYPES: dict[PolicyScope, list[str]] = {
    PolicyScope.CONFERENCE_PAPER: [m.value for m in ConferenceSubType],
    PolicyScope.IPR: [m.value for m in IprType],
}


def validate_policy(payload: PolicyCreate) -> None:
    """Reject rule sets that would produce inconsistent payouts."""
    if payload.effective_to is not None and payload.effective_to < payload.effective_from:
        raise ValidationError("effective_to must not precede effective_from", field="effective_to")

    allowed = _SUB_TYPES.get(payload.scope)
    if payload.sub_type is not None:
        if allowed is None:
            raise ValidationError(f"Scope '{payload.scope.value}' takes no sub-type", field="sub_type")
        if payload.sub_type not in allowed:
            raise ValidationError(
                f"Invalid sub-type '{payload.sub_type}'", field="sub_type", allowed_values=allowed
            )

    first = payload.first_author_percentage
    corresponding = payload.corresponding_author_percentage
    if first is not None and corresponding is not None and first + corresponding > 100:
        raise ValidationError(
            "First and corresponding author percentages must not exceed 100",
            field="first_author_percentage",
        )
    if payload.scope in (PolicyScope.RESEARCH_PAPER, PolicyScope.GRANT_PROPOSAL) and (
        first is None or corresponding is None
    ):
        raise ValidationError(
            "Research policies must set first and corresponding author percentages",
            field="first_author_percentage",
        )

    positions = payload.position_percentages
    if any(p < 1 or p > 5 for p in positions):
        raise ValidationError("Position percentages cover positions 1 to 5 only", field="position_percentages")
    if sum(positions.values()) > 100:
        raise ValidationError("Position percentages must not exceed 100 in total", field="position_percentages")
    if payload.distribution_method == DistributionMethod.POSITION_BASED and payload.scope != PolicyScope.RESEARCH_PAPER:
        raise ValidationError(
            "Position-based distribution applies to research papers only", field="distribution_method"
        )

    if payload.quartile_incentives:
        given = [q.quartile for q in payload.quartile_incentives]
        if sorted(given, key=list(Quartile).index) != list(Quartile):
            raise ValidationError(
                "Quartile table must list each quartile exactly once",
                field="quartile_incentives",
                allowed_values=[q.value for q in Quartile],
            )

    for name in ("sjr_ranges", "naas_rating_incentives"):
        for band in getattr(payload, name):
            if band.min_value > band.max_value:
                raise ValidationError(f"Band minimum exceeds maximum in {name}", field=name)


# ---------------------------------------------------------------------------
# Adding policies
# ---------------------------------------------------------------------------

async def _adjust_overlaps(db: aiosqlite.Connection, new: IncentivePolicy) -> None:
    """Close or retire active rows of the same scope and sub-type that overlap ``new``."""
    async with db.execute(
        "SELECT * FROM policies WHERE scope = ? AND sub_type IS ? AND is_active = 1",
        (new.scope.value, new.sub_type),
    ) as cursor:
        rows = await cursor.fetchall()

    for existing in (_row_to_policy(r) for r in rows):
        starts_before_end = new.effective_to is None or existing.effective_from <= new.effective_to
        ends_after_start = existing.effective_to is None or existing.effective_to >= new.effective_from
        if not (starts_before_end and ends_after_start):
            continue

        if existing.effective_from < new.effective_from:
            closed_on = new.effective_from - timedelta(days=1)
            await db.execute(
                "UPDATE policies SET effective_to = ? WHERE policy_id = ?",
                (iso(closed_on), existing.policy_id),
            )
            logger.info(
                "policy window closed policy_id=%s effective_to=%s superseded_by=%s",
                existing.policy_id, closed_on, new.policy_id,
            )
        elif new.effective_to is None or (
            existing.effective_to is not None and existing.effective_to <= new.effective_to
        ):
            await db.execute("UPDATE policies SET is_active = 0 WHERE policy_id = ?", (existing.policy_id,))
            logger.info(
                "policy deactivated policy_id=%s covered_by=%s", existing.policy_id, new.policy_id
            )
        else:
            opens_on = new.effective_to + timedelta(days=1)
            await db.execute(
                "UPDATE policies SET effective_from = ? WHERE policy_id = ?",
                (iso(opens_on), existing.policy_id),
            )
            logger.info(
                "policy window deferred policy_id=%s effective_from=%s after=%s",
                existing.policy_id, opens_on, new.policy_id,
            )


async def add_policy(db: aiosqlite.Connection, actor: Actor, payload: PolicyCreate) -> IncentivePolicy:
    """Validate and store a new policy, adjusting any overlapping windows."""
    actor.require(Capability.POLICY_MANAGE)
    validate_policy(payload)
    policy = IncentivePolicy(**payload.model_dump(), created_by=actor.id)
    async with transaction(db):
        await _adjust_overlaps(db, policy)
        await _insert_policy(db, policy)
    return policy


async def deactivate_policy(db: aiosqlite.Connection, actor: Actor, policy_id: str) -> IncentivePolicy:
    actor.require(Capability.POLICY_MANAGE)
    policy = await get_policy(db, policy_id)
    async with transaction(db):
        await db.execute("UPDATE policies SET is_active = 0 WHERE policy_id = ?", (policy_id,))
    logger.info("policy deactivated policy_id=%s by=%s", policy_id, actor.id)
    return policy.model_copy(update={"is_active": False})


# ---------------------------------------------------------------------------
# Seeding from documented defaults
# ---------------------------------------------------------------------------

def default_policy_rows(
    first_author_percentage: float,
    corresponding_author_percentage: float,
    effective_from: date = date(2024, 1, 1),
    defaults: IncentiveDefaults | None = None,
) -> list[PolicyCreate]:
    """Render the documented default tables as policy payloads.

    Author percentages for research papers and grants have no documented
    default, so the caller supplies them.
    """
    defaults = defaults or settings.incentives
    research = defaults.research
    research_rules = dict(
        first_author_percentage=first_author_percentage,
        corresponding_author_percentage=corresponding_author_percentage,
        position_percentages=dict(research.position_percentages),
        quartile_incentives=[
            QuartileIncentive(quartile=q, incentive_amount=v.incentive_amount, points=v.points)
            for q, v in research.quartile_incentives.items()
        ],
        sjr_ranges=[RangeIncentive(min_value=a, max_value=b, incentive_amount=c, points=d) for a, b, c, d in research.sjr_ranges],
        naas_rating_incentives=[
            RangeIncentive(min_value=a, max_value=b, incentive_amount=c, points=d) for a, b, c, d in research.naas_rating_bands
        ],
        category_bonuses=[
            CategoryBonus(category=k, incentive_amount=v.incentive_amount, points=v.points)
            for k, v in research.category_bonuses.items()
        ],
    )
    rows = [
        PolicyCreate(policy_name="Research Paper - Default", scope=PolicyScope.RESEARCH_PAPER,
                     effective_from=effective_from, **research_rules),
        PolicyCreate(policy_name="Grant Proposal - Default", scope=PolicyScope.GRANT_PROPOSAL,
                     effective_from=effective_from, **research_rules),
    ]

    for scope, book in ((PolicyScope.BOOK, defaults.book), (PolicyScope.BOOK_CHAPTER, defaults.book_chapter)):
        rows.append(PolicyCreate(
            policy_name=f"{scope.value.replace('_', ' ').title()} - Default",
            scope=scope,
            effective_from=effective_from,
            authored_incentive_amount=book.authored_incentive_amount,
            authored_points=book.authored_points,
            edited_incentive_amount=book.edited_incentive_amount,
            edited_points=book.edited_points,
            indexing_bonuses=dict(book.indexing_bonuses),
            international_bonus=book.international_bonus,
        ))

    conference = defaults.conference
    rows.append(PolicyCreate(
        policy_name="Conference Paper (Scopus) - Default",
        scope=PolicyScope.CONFERENCE_PAPER,
        sub_type=ConferenceSubType.PAPER_INDEXED_SCOPUS.value,
        effective_from=effective_from,
        first_author_percentage=conference.first_author_percentage,
        corresponding_author_percentage=conference.corresponding_author_percentage,
        quartile_incentives=[
            QuartileIncentive(quartile=q, incentive_amount=v.incentive_amount, points=v.points)
            for q, v in conference.quartile_incentives.items()
        ],
    ))
    for sub_type, levels in conference.flat_incentives.items():
        national, international = levels["national"], levels["international"]
        rows.append(PolicyCreate(
            policy_name=f"Conference ({sub_type}) - Default",
            scope=PolicyScope.CONFERENCE_PAPER,
            sub_type=sub_type,
            effective_from=effective_from,
            flat_incentive_amount=national.incentive_amount,
            flat_points=national.points,
            international_bonus=international.incentive_amount - national.incentive_amount,
            international_points_bonus=international.points - national.points,
        ))

    for ipr_type, value in defaults.ipr.items():
        rows.append(PolicyCreate(
            policy_name=f"IPR ({ipr_type}) - Default",
            scope=PolicyScope.IPR,
            sub_type=ipr_type,
            effective_from=effective_from,
            base_incentive_amount=value.incentive_amount,
            base_points=value.points,
        ))
    return rows
