"""Author role normalization and composition counts."""

from __future__ import annotations

import pytest

from incentra.author_composition import (
    analyze_authors,
    applicant_kind_for,
    normalize_author_role,
    validate_author_roles,
)
from incentra.errors import ConfigurationError, ValidationError
from incentra.models import Author, AuthorKind, AuthorRole


def _author(name: str, kind: AuthorKind, role: AuthorRole, position: int | None = None) -> Author:
    return Author(name=name, author_kind=kind, author_role=role, author_position=position)


@pytest.mark.parametrize(
    "raw, corresponding, expected",
    [
        ("first", False, AuthorRole.FIRST_AUTHOR),
        ("First Author", False, AuthorRole.FIRST_AUTHOR),
        ("first", True, AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR),
        ("co", False, AuthorRole.CO_AUTHOR),
        ("co-author", True, AuthorRole.CORRESPONDING_AUTHOR),
        ("corresponding", False, AuthorRole.CORRESPONDING_AUTHOR),
        (None, False, AuthorRole.CO_AUTHOR),
    ],
)
def test_normalize_author_role_aliases(raw, corresponding, expected):
    assert normalize_author_role(raw, corresponding) == expected


def test_normalize_author_role_rejects_unknown_alias():
    with pytest.raises(ValidationError) as excinfo:
        normalize_author_role("editor")
    assert excinfo.value.field == "author_role"
    assert "co_author" in excinfo.value.allowed_values


def test_applicant_kind_follows_account_role():
    assert applicant_kind_for("student") == AuthorKind.INTERNAL_STUDENT
    assert applicant_kind_for("staff") == AuthorKind.INTERNAL_STAFF
    assert applicant_kind_for("faculty") == AuthorKind.INTERNAL_FACULTY
    assert applicant_kind_for(None) == AuthorKind.INTERNAL_FACULTY


def test_author_category_and_internal_flag_are_derived():
    student = _author("S", AuthorKind.INTERNAL_STUDENT, AuthorRole.CO_AUTHOR)
    industry = _author("I", AuthorKind.EXTERNAL_INDUSTRY, AuthorRole.CO_AUTHOR)
    assert student.is_internal is True
    assert student.author_category.value == "student"
    assert industry.is_internal is False
    assert industry.author_category.value == "industry"


def test_validate_author_roles_rejects_two_first_authors():
    authors = [
        _author("A", AuthorKind.INTERNAL_FACULTY, AuthorRole.FIRST_AUTHOR),
        _author("B", AuthorKind.EXTERNAL_ACADEMIC, AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR),
    ]
    with pytest.raises(ValidationError):
        validate_author_roles(authors)


def test_validate_author_roles_rejects_two_corresponding_authors():
    authors = [
        _author("A", AuthorKind.INTERNAL_FACULTY, AuthorRole.CORRESPONDING_AUTHOR),
        _author("B", AuthorKind.EXTERNAL_ACADEMIC, AuthorRole.CORRESPONDING_AUTHOR),
    ]
    with pytest.raises(ValidationError):
        validate_author_roles(authors)


def test_validate_author_roles_rejects_duplicate_positions():
    authors = [
        _author("A", AuthorKind.INTERNAL_FACULTY, AuthorRole.FIRST_AUTHOR, position=1),
        _author("B", AuthorKind.INTERNAL_FACULTY, AuthorRole.CO_AUTHOR, position=1),
    ]
    with pytest.raises(ValidationError) as excinfo:
        validate_author_roles(authors)
    assert excinfo.value.field == "author_position"


def test_analyze_authors_counts_and_forfeits():
    authors = [
        _author("First", AuthorKind.INTERNAL_FACULTY, AuthorRole.FIRST_AUTHOR),
        _author("Corr", AuthorKind.EXTERNAL_ACADEMIC, AuthorRole.CORRESPONDING_AUTHOR),
        _author("Co1", AuthorKind.INTERNAL_FACULTY, AuthorRole.CO_AUTHOR),
        _author("Co2", AuthorKind.INTERNAL_STUDENT, AuthorRole.CO_AUTHOR),
        _author("Co3", AuthorKind.EXTERNAL_INDUSTRY, AuthorRole.CO_AUTHOR),
    ]
    composition = analyze_authors(authors, 40, 30)
    assert composition.internal_count == 3
    assert composition.external_count == 2
    assert composition.total_count == 5
    assert composition.internal_co_author_count == 2
    assert composition.internal_employee_co_author_count == 1
    assert composition.external_co_author_count == 1
    assert composition.co_author_count == 3
    assert composition.external_first_corresponding_pct == 30
    assert composition.has_external_first_or_corresponding


def test_external_first_and_corresponding_forfeits_both_percentages():
    authors = [_author("X", AuthorKind.EXTERNAL_OTHER, AuthorRole.FIRST_AND_CORRESPONDING_AUTHOR)]
    assert analyze_authors(authors, 40, 40).external_first_corresponding_pct == 80


def test_analyze_authors_requires_percentages():
    with pytest.raises(ConfigurationError):
        analyze_authors([], None, 40)


def test_context_for_carries_composition_counts():
    first = _author("First", AuthorKind.INTERNAL_STUDENT, AuthorRole.FIRST_AUTHOR, position=1)
    co = _author("Co", AuthorKind.INTERNAL_FACULTY, AuthorRole.CO_AUTHOR, position=2)
    composition = analyze_authors([first, co], 40, 40)
    ctx = composition.context_for(first)
    assert ctx.is_student is True
    assert ctx.is_internal is True
    assert ctx.author_position == 1
    assert ctx.total_authors == 2
    assert ctx.internal_co_author_count == 1
