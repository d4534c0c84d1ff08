"""Unit tests for domain models."""

from datetime import date

import pytest
from pydantic import ValidationError as PydanticValidationError

from incentra.models import (
    Author,
    AuthorCategory,
    AuthorKind,
    AuthorRole,
    BookDetails,
    ConferenceLocation,
    ConferencePaperDetails,
    ContributionCreate,
    ContributionStatus,
    IncentivePolicy,
    InventorRole,
    IprContributorInput,
    PolicyScope,
    PublicationType,
    Quartile,
    QuartileIncentive,
    ResearchPaperDetails,
    allowed_values,
    normalize_quartile,
)


class TestQuartiles:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("top1", Quartile.TOP_1),
            ("Top 1%", Quartile.TOP_1),
            ("top_1_", Quartile.TOP_1),
            ("TOP5", Quartile.TOP_5),
            (" q2 ", Quartile.Q2),
            (Quartile.Q4, Quartile.Q4),
        ],
    )
    def test_spellings_normalize(self, raw, expected):
        assert normalize_quartile(raw) == expected

    def test_unknown_or_empty(self):
        assert normalize_quartile("Q9") is None
        assert normalize_quartile("") is None
        assert normalize_quartile(None) is None

    def test_details_normalize_on_parse(self):
        details = ResearchPaperDetails(quartile="top_5")
        assert details.quartile == Quartile.TOP_5

    def test_details_reject_unknown_quartile(self):
        with pytest.raises(PydanticValidationError):
            ResearchPaperDetails(quartile="Q9")

    def test_policy_table_rows_normalize(self):
        row = QuartileIncentive(quartile="q1", incentive_amount=50_000, points=50)
        assert row.quartile == Quartile.Q1


class TestPublicationDetails:
    def test_discriminator_picks_detail_model(self):
        payload = ContributionCreate(
            title="Proceedings paper",
            details={"publication_type": "conference_paper", "conference_held_location": "abroad"},
        )
        assert isinstance(payload.details, ConferencePaperDetails)
        assert payload.details.conference_held_location == ConferenceLocation.ABROAD
        assert payload.details.is_international

    def test_unknown_publication_type_rejected(self):
        with pytest.raises(PydanticValidationError):
            ContributionCreate(title="X", details={"publication_type": "poster"})

    def test_book_defaults(self):
        details = BookDetails()
        assert details.book_type.value == "authored"
        assert details.indexing is None
        assert details.is_international is False

    def test_negative_impact_factor_rejected(self):
        with pytest.raises(PydanticValidationError):
            ResearchPaperDetails(impact_factor=-1)


class TestAuthors:
    def test_internal_and_category_derived_from_kind(self):
        author = Author(name="A", author_kind=AuthorKind.INTERNAL_STAFF, author_role=AuthorRole.CO_AUTHOR)
        assert author.is_internal
        assert author.author_category == AuthorCategory.FACULTY
        assert not author.is_student

    def test_external_author(self):
        author = Author(name="B", author_kind=AuthorKind.EXTERNAL_INDUSTRY, author_role=AuthorRole.FIRST_AUTHOR)
        assert not author.is_internal
        dumped = author.model_dump()
        assert dumped["author_category"] == "industry"
        assert dumped["is_internal"] is False

    @pytest.mark.parametrize("raw", ["co-inventor", "Co_Inventor", " co-inventor "])
    def test_inventor_role_spellings(self, raw):
        assert IprContributorInput(name="C", role=raw).role == InventorRole.CO_INVENTOR


class TestPolicyModels:
    def _policy(self, **overrides):
        fields = dict(
            policy_name="P",
            scope=PolicyScope.BOOK,
            effective_from=date(2024, 1, 1),
            effective_to=date(2024, 12, 31),
        )
        fields.update(overrides)
        return IncentivePolicy(**fields)

    def test_covers_window_inclusive(self):
        policy = self._policy()
        assert policy.covers(date(2024, 1, 1))
        assert policy.covers(date(2024, 12, 31))
        assert not policy.covers(date(2023, 12, 31))
        assert not policy.covers(date(2025, 1, 1))

    def test_open_ended_window(self):
        assert self._policy(effective_to=None).covers(date(2099, 1, 1))

    def test_percentage_bounds(self):
        with pytest.raises(PydanticValidationError):
            self._policy(first_author_percentage=120)


class TestRegistry:
    def test_enum_fields_list_values(self):
        assert allowed_values("quartile") == ["Top 1%", "Top 5%", "Q1", "Q2", "Q3", "Q4"]
        assert "abroad" in allowed_values("conference_held_location")

    def test_free_field_has_no_values(self):
        assert allowed_values("journal_name") == []

    def test_status_values(self):
        assert {s.value for s in ContributionStatus} >= {
            "draft", "submitted", "pending_mentor_approval", "under_review",
            "changes_required", "resubmitted", "approved", "completed", "rejected",
        }
        assert {p.value for p in PublicationType} == {
            "research_paper", "book", "book_chapter", "conference_paper", "grant_proposal",
        }
