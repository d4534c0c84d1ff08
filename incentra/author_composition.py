"""Author composition: classify a contribution's authors for split math.

The applicant is folded in as an ordinary author before analysis, so
every count here already includes them.
"""

from __future__ import annotations

from typing import Iterable

from incentra.errors import ConfigurationError, ValidationError
from incentra.models import (
    AUTHOR_CATEGORIES,
    Author,
    AuthorCategory,
    AuthorComposition,
    AuthorKind,
    AuthorRole,
)

_ROLE_ALIASES = {
    "first": AuthorRole.FIRST_AUTHOR,
    "first_author": AuthorRole.FIRST_AUTHOR,
    "corresponding": AuthorRole.CORRESPONDING_AUTHOR,
    "corresponding_author": AuthorRole.CORRESPONDING_AUTHOR,
    "first_and_corresponding": AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR,
    "first_and_corresponding_author": AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR,
    "co": AuthorRole.CO_AUTHOR,
    "co_author": AuthorRole.CO_AUTHOR,
    "coauthor": AuthorRole.CO_AUTHOR,
}


def normalize_author_role(raw: str | AuthorRole | None, is_corresponding: bool = False) -> AuthorRole:
    """Map a role alias to ``AuthorRole``. A first author flagged corresponding holds both roles."""
    if isinstance(raw, AuthorRole):
        role = raw
    else:
        key = (raw or "co_author").strip().lower().replace("-", "_").replace(" ", "_")
        role = _ROLE_ALIASES.get(key)
        if role is None:
            raise ValidationError(
                f"Invalid author role '{raw}'",
                field="author_role",
                allowed_values=[r.value for r in AuthorRole],
            )
    if is_corresponding:
        if role == AuthorRole.FIRST_AUTHOR:
            return AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR
        if role == AuthorRole.CO_AUTHOR:
            return AuthorRole.CORRESPONDING_AUTHOR
    return role


def applicant_kind_for(role: str | None) -> AuthorKind:
    """Author kind of an applicant from their account role."""
    if role == "student":
        return AuthorKind.INTERNAL_STUDENT
    if role == "staff":
        return AuthorKind.INTERNAL_STAFF
    return AuthorKind.INTERNAL_FACULTY


def author_category_for(kind: AuthorKind) -> AuthorCategory:
    return AUTHOR_CATEGORIES[kind]


def validate_author_roles(authors: Iterable[Author]) -> None:
    """Reject author lists whose role percentages would sum past the pool."""
    authors = list(authors)
    firsts = sum(
        1 for a in authors
        if a.author_role in (AuthorRole.FIRST_AUTHOR, AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR)
    )
    correspondings = sum(
        1 for a in authors
        if a.author_role in (AuthorRole.CORRESPONDING_AUTHOR, AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR)
    )
    if firsts > 1:
        raise ValidationError("Only one author may be the first author", field="author_role")
    if correspondings > 1:
        raise ValidationError("Only one author may be the corresponding author", field="author_role")

    positions = [a.author_position for a in authors if a.author_position is not None]
    if len(positions) != len(set(positions)):
        raise ValidationError("Author positions must be unique", field="author_position")


def analyze_authors(
    authors: Iterable[Author],
    first_pct: float | None,
    corresponding_pct: float | None,
) -> AuthorComposition:
    """Count internal/external authors and the role percentage forfeited to externals.

    An external first or corresponding author forfeits the percentage that
    role would have earned. External co-authors forfeit nothing: their part
    of the co-author remainder is redistributed among internal co-authors.
    """
    if first_pct is None or corresponding_pct is None:
        raise ConfigurationError("Author percentages are required to analyse authors")

    composition = AuthorComposition()
    for author in authors:
        role = author.author_role
        if author.is_internal:
            composition.internal_count += 1
            if role == AuthorRole.CO_AUTHOR:
                composition.internal_co_author_count += 1
                if not author.is_student:
                    composition.internal_employee_co_author_count += 1
            continue

        composition.external_count += 1
        if role == AuthorRole.CO_AUTHOR:
            composition.external_co_author_count += 1
        elif role == AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR:
            composition.external_first_corresponding_pct += first_pct + corresponding_pct
        elif role == AuthorRole.FIRST_AUTHOR:
            composition.external_first_corresponding_pct += first_pct
        elif role == AuthorRole.CORRESPONDING_AUTHOR:
            composition.external_first_corresponding_pct += corresponding_pct
    return composition
