"""Edit suggestions: field-level changes proposed by reviewers and mentors.

Only the applicant resolves a suggestion. Accepting one writes the field,
recalculates the incentive when the field feeds the pool, and once the
last pending suggestion on a target resolves, moves the target back into
review (or back to the mentor when the mentor asked for the changes).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import aiosqlite

from incentra import contribution_service, ipr_service
from incentra.collaborators import Actor, Capability, NotificationSink
from incentra.database import from_json, to_json, transaction
from incentra.errors import NotFoundError, PermissionDeniedError, StateError, ValidationError
from incentra.models import (
    BOOLEAN_FIELDS,
    DATE_FIELDS,
    FIELD_ENUMS,
    FLOAT_FIELDS,
    INTEGER_FIELDS,
    LIST_FIELDS,
    POOL_AFFECTING_FIELDS,
    ContributionStatus,
    EditSuggestion,
    IprStatus,
    Quartile,
    SuggestionCreate,
    SuggestionOrigin,
    SuggestionResponse,
    SuggestionStatus,
    SuggestionTarget,
    allowed_values,
    normalize_quartile,
)
from incentra.notification_service import dispatch

logger = logging.getLogger(__name__)

_TRUE = {"yes", "y", "true", "1"}
_FALSE = {"no", "n", "false", "0"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

def _coerce_enum(field_name: str, enum_cls: type[Enum], raw: Any) -> Enum:
    if enum_cls is Quartile:
        quartile = normalize_quartile(raw)
        if quartile is not None:
            return quartile
    else:
        try:
            return enum_cls(raw)
        except ValueError:
            key = str(raw).strip().lower().replace("-", "_").replace(" ", "_")
            for member in enum_cls:
                if member.value == key:
                    return member
    raise ValidationError(
        f"Invalid value '{raw}' for {field_name}",
        field=field_name,
        allowed_values=allowed_values(field_name),
    )


def _coerce_scalar(field_name: str, raw: Any) -> Any:
    enum_cls = FIELD_ENUMS.get(field_name)
    if enum_cls is not None:
        return _coerce_enum(field_name, enum_cls, raw)
    try:
        if field_name in INTEGER_FIELDS:
            return int(str(raw).strip())
        if field_name in FLOAT_FIELDS:
            return float(str(raw).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid number '{raw}' for {field_name}", field=field_name) from exc
    if field_name in BOOLEAN_FIELDS:
        if isinstance(raw, bool):
            return raw
        key = str(raw).strip().lower()
        if key in _TRUE:
            return True
        if key in _FALSE:
            return False
        raise ValidationError(
            f"Invalid yes/no value '{raw}' for {field_name}",
            field=field_name,
            allowed_values=["yes", "no"],
        )
    if field_name in DATE_FIELDS:
        if isinstance(raw, date):
            return raw
        try:
            return date.fromisoformat(str(raw).strip())
        except ValueError as exc:
            raise ValidationError(f"Invalid date '{raw}' for {field_name}", field=field_name) from exc
    return raw


def coerce_field_value(field_name: str, raw: Any) -> Any:
    """Validate and convert a suggested value for ``field_name``.

    List fields accept a comma-separated string. Enum fields must match the
    registry; quartiles accept any display spelling.
    """
    if field_name in LIST_FIELDS:
        if isinstance(raw, str):
            items = [part.strip() for part in raw.split(",") if part.strip()]
        elif isinstance(raw, (list, tuple)):
            items = list(raw)
        else:
            items = [raw]
        return [_coerce_scalar(field_name, item) for item in items]
    return _coerce_scalar(field_name, raw)


# ---------------------------------------------------------------------------
# Target adapters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _TargetAdapter:
    """How the suggestion workflow reads, writes and moves one kind of target."""

    load: Callable[[aiosqlite.Connection, str], Awaitable[Any]]
    save: Callable[[aiosqlite.Connection, Any], Awaitable[None]]
    transition: Callable[..., Awaitable[Any]]
    review_capability: Capability
    reviewable: frozenset
    changes_required: Enum
    resubmitted: Enum
    pending_mentor: Enum
    fields: Callable[[Any], frozenset[str]]
    read_field: Callable[[Any, str], Any]
    write_field: Callable[[Any, str, Any], None]
    recalculate: Callable[[aiosqlite.Connection, Any], Awaitable[Any]] | None = None


def _target_id(target: Any) -> str:
    return getattr(target, "contribution_id", None) or target.ipr_id


_CONTRIBUTION_TOP_FIELDS = frozenset({"title", "publication_date"})


def _contribution_fields(c: Any) -> frozenset[str]:
    return _CONTRIBUTION_TOP_FIELDS | (frozenset(type(c.details).model_fields) - {"publication_type"})


def _read_contribution_field(c: Any, field_name: str) -> Any:
    if field_name in _CONTRIBUTION_TOP_FIELDS:
        return getattr(c, field_name)
    return getattr(c.details, field_name, None)


def _write_contribution_field(c: Any, field_name: str, value: Any) -> None:
    if field_name in _CONTRIBUTION_TOP_FIELDS:
        setattr(c, field_name, value)
        return
    data = c.details.model_dump()
    data[field_name] = value
    c.details = contribution_service.validate_details(contribution_service.parse_details(data))


_IPR_FIELDS = frozenset({"title", "description", "ipr_type", "project_type", "filing_type", "sdg_goals"})


def _write_ipr_field(app: Any, field_name: str, value: Any) -> None:
    setattr(app, field_name, value)


ADAPTERS: dict[SuggestionTarget, _TargetAdapter] = {
    SuggestionTarget.CONTRIBUTION: _TargetAdapter(
        load=contribution_service.get_contribution,
        save=contribution_service.save_contribution,
        transition=contribution_service.apply_transition,
        review_capability=Capability.RESEARCH_REVIEW,
        reviewable=contribution_service.REVIEWABLE_STATUSES | {ContributionStatus.CHANGES_REQUIRED},
        changes_required=ContributionStatus.CHANGES_REQUIRED,
        resubmitted=ContributionStatus.RESUBMITTED,
        pending_mentor=ContributionStatus.PENDING_MENTOR_APPROVAL,
        fields=_contribution_fields,
        read_field=_read_contribution_field,
        write_field=_write_contribution_field,
        recalculate=contribution_service.recalculate_contribution,
    ),
    SuggestionTarget.IPR_APPLICATION: _TargetAdapter(
        load=ipr_service.get_ipr_application,
        save=ipr_service.save_ipr_application,
        transition=ipr_service.apply_ipr_transition,
        review_capability=Capability.DRD_REVIEW,
        reviewable=frozenset({
            IprStatus.UNDER_DRD_REVIEW,
            IprStatus.RECOMMENDED_TO_HEAD,
            IprStatus.CHANGES_REQUIRED,
        }),
        changes_required=IprStatus.CHANGES_REQUIRED,
        resubmitted=IprStatus.RESUBMITTED,
        pending_mentor=IprStatus.PENDING_MENTOR_APPROVAL,
        fields=lambda app: _IPR_FIELDS,
        read_field=getattr,
        write_field=_write_ipr_field,
    ),
}


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

def _row_to_suggestion(row: aiosqlite.Row | dict[str, Any]) -> EditSuggestion:
    d = dict(row)
    d["original_value"] = from_json(d.get("original_value"))
    d["suggested_value"] = from_json(d.get("suggested_value"))
    d["applicant_response"] = d.get("applicant_response") or ""
    return EditSuggestion(**d)


async def get_suggestion(db: aiosqlite.Connection, suggestion_id: str) -> EditSuggestion:
    async with db.execute(
        "SELECT * FROM edit_suggestions WHERE suggestion_id = ?", (suggestion_id,)
    ) as cursor:
        row = await cursor.fetchone()
    if row is None:
        raise NotFoundError("suggestion", suggestion_id)
    return _row_to_suggestion(row)


async def list_suggestions(
    db: aiosqlite.Connection,
    target_type: SuggestionTarget,
    target_id: str,
    status: SuggestionStatus | None = None,
) -> list[EditSuggestion]:
    query = "SELECT * FROM edit_suggestions WHERE target_type = ? AND target_id = ?"
    params: list[Any] = [target_type.value, target_id]
    if status:
        query += " AND status = ?"
        params.append(status.value)
    query += " ORDER BY created_at ASC, rowid ASC"
    async with db.execute(query, params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_suggestion(r) for r in rows]


async def count_pending(db: aiosqlite.Connection, target_type: SuggestionTarget, target_id: str) -> int:
    async with db.execute(
        "SELECT COUNT(*) FROM edit_suggestions WHERE target_type = ? AND target_id = ? AND status = 'pending'",
        (target_type.value, target_id),
    ) as cursor:
        return (await cursor.fetchone())[0]


async def insert_suggestions(
    db: aiosqlite.Connection,
    actor: Actor,
    target_type: SuggestionTarget,
    target: Any,
    payloads: list[SuggestionCreate],
    origin: SuggestionOrigin = SuggestionOrigin.REVIEWER,
) -> list[EditSuggestion]:
    """Validate and insert suggestions against ``target``. Does not commit.

    Suggested values are checked against the field registry only when the
    applicant accepts them.
    """
    adapter = ADAPTERS[target_type]
    editable = adapter.fields(target)
    created: list[EditSuggestion] = []
    for payload in payloads:
        if not payload.field_name or payload.suggested_value is None or payload.suggested_value == "":
            raise ValidationError("field_name and suggested_value are required", field="field_name")
        if payload.field_name not in editable:
            raise ValidationError(
                f"Field '{payload.field_name}' cannot be edited by suggestion",
                field="field_name",
                allowed_values=sorted(editable),
            )
        suggestion = EditSuggestion(
            target_type=target_type,
            target_id=_target_id(target),
            field_name=payload.field_name,
            original_value=adapter.read_field(target, payload.field_name),
            suggested_value=payload.suggested_value,
            note=payload.note,
            origin=origin,
            proposer_id=actor.id,
            review_round=target.revision_count,
        )
        await db.execute(
            """
            INSERT INTO edit_suggestions (
                suggestion_id, target_type, target_id, field_name, original_value, suggested_value,
                note, status, origin, proposer_id, review_round, applicant_response, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                suggestion.suggestion_id, suggestion.target_type.value, suggestion.target_id,
                suggestion.field_name, to_json(suggestion.original_value),
                to_json(suggestion.suggested_value), suggestion.note, suggestion.status.value,
                suggestion.origin.value, suggestion.proposer_id, suggestion.review_round,
                suggestion.applicant_response, suggestion.created_at.isoformat(),
            ),
        )
        created.append(suggestion)
    return created


# ---------------------------------------------------------------------------
# Creating suggestions
# ---------------------------------------------------------------------------

async def create_suggestion(
    db: aiosqlite.Connection,
    actor: Actor,
    target_type: SuggestionTarget,
    target_id: str,
    payload: SuggestionCreate,
    notifier: NotificationSink | None = None,
) -> EditSuggestion:
    """Propose one change as a reviewer, moving the target to changes_required."""
    adapter = ADAPTERS[target_type]
    actor.require(adapter.review_capability)
    target = await adapter.load(db, target_id)
    if actor.id == target.applicant_id:
        raise PermissionDeniedError("Applicants cannot suggest edits to their own record", details={"guard": "reviewer"})
    if target.status not in adapter.reviewable:
        raise StateError(
            f"Cannot suggest edits while {target.status.value}",
            current_status=target.status.value,
            attempted="suggest",
        )

    async with transaction(db):
        (suggestion,) = await insert_suggestions(db, actor, target_type, target, [payload])
        if target.status != adapter.changes_required:
            await adapter.transition(
                db, target, adapter.changes_required, actor,
                f"Edit suggested for {payload.field_name}",
                {"action": "suggestion_created", "suggestion_id": suggestion.suggestion_id},
            )
        pending = await count_pending(db, target_type, target_id)

    await dispatch(
        notifier, [target.applicant_id], "edit_suggestion", "Edit Suggested",
        f"A reviewer suggested a change to {payload.field_name} on '{target.title}' "
        f"({pending} pending)",
        target_type.value, target_id, {"suggestion_id": suggestion.suggestion_id},
    )
    return suggestion


async def create_mentor_suggestions(
    db: aiosqlite.Connection,
    actor: Actor,
    target_type: SuggestionTarget,
    target_id: str,
    payloads: list[SuggestionCreate],
    notifier: NotificationSink | None = None,
) -> list[EditSuggestion]:
    """Mentor-origin suggestions on a record awaiting mentor approval."""
    adapter = ADAPTERS[target_type]
    target = await adapter.load(db, target_id)
    if not target.mentor_uid or actor.uid != target.mentor_uid:
        raise PermissionDeniedError("Only the assigned mentor can do this", details={"guard": "mentor"})
    if target.status != adapter.pending_mentor:
        raise StateError(
            "Record is not awaiting mentor approval",
            current_status=target.status.value,
            attempted="mentor_suggest",
        )
    if not payloads:
        raise ValidationError("At least one suggestion is required", field="suggestions")

    async with transaction(db):
        created = await insert_suggestions(db, actor, target_type, target, payloads, SuggestionOrigin.MENTOR)
        await adapter.transition(
            db, target, adapter.changes_required, actor,
            f"Mentor suggested {len(created)} edit(s)",
            {"action": "mentor_suggestions", "count": len(created)},
        )

    await dispatch(
        notifier, [target.applicant_id], "edit_suggestion", "Mentor Suggested Edits",
        f"Your mentor suggested {len(created)} change(s) to '{target.title}'",
        target_type.value, target_id,
    )
    return created


# ---------------------------------------------------------------------------
# Responding
# ---------------------------------------------------------------------------

def _parse_action(action: str) -> SuggestionStatus:
    key = (action or "").strip().lower()
    if key in ("accept", "accepted"):
        return SuggestionStatus.ACCEPTED
    if key in ("reject", "rejected"):
        return SuggestionStatus.REJECTED
    raise ValidationError("Invalid action", field="action", allowed_values=["accept", "reject"])


async def _check_response(
    db: aiosqlite.Connection, actor: Actor, suggestion: EditSuggestion, action: str
) -> tuple[SuggestionStatus, Any]:
    """Validate one response without writing. Returns the new status and the coerced value."""
    outcome = _parse_action(action)
    if suggestion.status != SuggestionStatus.PENDING:
        raise StateError(
            "Suggestion has already been resolved",
            current_status=suggestion.status.value,
            attempted="respond",
        )
    target = await ADAPTERS[suggestion.target_type].load(db, suggestion.target_id)
    if actor.id != target.applicant_id:
        raise PermissionDeniedError("Only the applicant can respond to suggestions", details={"guard": "applicant"})
    value = None
    if outcome == SuggestionStatus.ACCEPTED:
        value = coerce_field_value(suggestion.field_name, suggestion.suggested_value)
    return outcome, value


async def _resolve(
    db: aiosqlite.Connection,
    suggestion: EditSuggestion,
    outcome: SuggestionStatus,
    value: Any,
    response: str,
) -> None:
    adapter = ADAPTERS[suggestion.target_type]
    if outcome == SuggestionStatus.ACCEPTED:
        target = await adapter.load(db, suggestion.target_id)
        adapter.write_field(target, suggestion.field_name, value)
        if adapter.recalculate is not None and suggestion.field_name in POOL_AFFECTING_FIELDS:
            await adapter.recalculate(db, target)
        else:
            await adapter.save(db, target)
    suggestion.status = outcome
    suggestion.applicant_response = response or ""
    suggestion.resolved_at = _now()
    await db.execute(
        """
        UPDATE edit_suggestions SET status = ?, applicant_response = ?, resolved_at = ?
        WHERE suggestion_id = ?
        """,
        (suggestion.status.value, suggestion.applicant_response, suggestion.resolved_at.isoformat(), suggestion.suggestion_id),
    )


async def _settle_target(
    db: aiosqlite.Connection, actor: Actor, target_type: SuggestionTarget, target_id: str
) -> tuple[Any, Enum | None]:
    """Move the target back once nothing is pending. Returns the target and its new status."""
    adapter = ADAPTERS[target_type]
    target = await adapter.load(db, target_id)
    if target.status != adapter.changes_required or await count_pending(db, target_type, target_id):
        return target, None
    async with db.execute(
        """
        SELECT COUNT(*) FROM edit_suggestions
        WHERE target_type = ? AND target_id = ? AND origin = 'mentor' AND review_round = ?
        """,
        (target_type.value, target_id, target.revision_count),
    ) as cursor:
        mentor_round = (await cursor.fetchone())[0] > 0
    to_status = adapter.pending_mentor if mentor_round else adapter.resubmitted
    target.revision_count += 1
    await adapter.transition(
        db, target, to_status, actor, "All suggestions resolved",
        {"action": "suggestions_resolved", "mentor_round": mentor_round},
    )
    return target, to_status


async def _notify_settled(
    notifier: NotificationSink | None, target_type: SuggestionTarget, target: Any, to_status: Enum
) -> None:
    adapter = ADAPTERS[target_type]
    if to_status == adapter.pending_mentor:
        recipient, title = target.mentor_uid, "Mentor approval requested"
    else:
        recipient, title = target.current_reviewer_id, "Suggestions resolved"
    await dispatch(
        notifier, [recipient], "suggestions_resolved", title,
        f"All suggestions on '{target.title}' were resolved; it is now {to_status.value}",
        target_type.value, _target_id(target),
    )


async def respond_to_suggestion(
    db: aiosqlite.Connection,
    actor: Actor,
    suggestion_id: str,
    action: str,
    response: str | None = None,
    notifier: NotificationSink | None = None,
) -> EditSuggestion:
    """Accept or reject one suggestion. Any failure leaves it pending."""
    suggestion = await get_suggestion(db, suggestion_id)
    async with transaction(db):
        outcome, value = await _check_response(db, actor, suggestion, action)
        await _resolve(db, suggestion, outcome, value, response or "")
        target, to_status = await _settle_target(db, actor, suggestion.target_type, suggestion.target_id)

    if to_status is not None:
        await _notify_settled(notifier, suggestion.target_type, target, to_status)
    return suggestion


async def respond_in_batch(
    db: aiosqlite.Connection,
    actor: Actor,
    responses: list[SuggestionResponse],
    notifier: NotificationSink | None = None,
) -> list[EditSuggestion]:
    """Resolve several suggestions at once. Every item is validated before any is applied."""
    if not responses:
        raise ValidationError("No responses given", field="responses")
    ids = [r.suggestion_id for r in responses]
    if len(ids) != len(set(ids)):
        raise ValidationError("Each suggestion may appear only once", field="suggestion_id")

    checked: list[tuple[EditSuggestion, SuggestionStatus, Any, str]] = []
    for item in responses:
        suggestion = await get_suggestion(db, item.suggestion_id)
        outcome, value = await _check_response(db, actor, suggestion, item.action)
        checked.append((suggestion, outcome, value, item.response))

    settled: list[tuple[SuggestionTarget, Any, Enum]] = []
    async with transaction(db):
        for suggestion, outcome, value, response in checked:
            await _resolve(db, suggestion, outcome, value, response)
        targets = dict.fromkeys((s.target_type, s.target_id) for s, *_ in checked)
        for target_type, target_id in targets:
            target, to_status = await _settle_target(db, actor, target_type, target_id)
            if to_status is not None:
                settled.append((target_type, target, to_status))

    for target_type, target, to_status in settled:
        await _notify_settled(notifier, target_type, target, to_status)
    logger.info("suggestions resolved in batch count=%s by=%s", len(checked), actor.id)
    return [s for s, *_ in checked]
