"""Domain models for Incentra.

Every entity in the system is defined here as a Pydantic v2 model.
These models are shared across services, storage and the REST API. The
enum registry at the bottom is the single source of allowed values for
field-level validation.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, computed_field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PublicationType(str, Enum):
    """Kinds of research output that earn incentives."""

    RESEARCH_PAPER = "research_paper"
    BOOK = "book"
    BOOK_CHAPTER = "book_chapter"
    CONFERENCE_PAPER = "conference_paper"
    GRANT_PROPOSAL = "grant_proposal"


class PolicyScope(str, Enum):
    """What a policy row applies to: a publication type, or IPR filings."""

    RESEARCH_PAPER = "research_paper"
    BOOK = "book"
    BOOK_CHAPTER = "book_chapter"
    CONFERENCE_PAPER = "conference_paper"
    GRANT_PROPOSAL = "grant_proposal"
    IPR = "ipr"


class ContributionStatus(str, Enum):
    """Research contribution workflow states."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING_MENTOR_APPROVAL = "pending_mentor_approval"
    UNDER_REVIEW = "under_review"
    CHANGES_REQUIRED = "changes_required"
    RESUBMITTED = "resubmitted"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    DEAN_REJECTED = "dean_rejected"  # legacy rows only


class IprStatus(str, Enum):
    """IPR filing workflow states, through government filing."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING_MENTOR_APPROVAL = "pending_mentor_approval"
    UNDER_DRD_REVIEW = "under_drd_review"
    CHANGES_REQUIRED = "changes_required"
    RESUBMITTED = "resubmitted"
    RECOMMENDED_TO_HEAD = "recommended_to_head"
    DRD_HEAD_APPROVED = "drd_head_approved"
    SUBMITTED_TO_GOVT = "submitted_to_govt"
    GOVT_APPLICATION_FILED = "govt_application_filed"
    PUBLISHED = "published"
    DRD_REJECTED = "drd_rejected"
    GOVT_REJECTED = "govt_rejected"


class AuthorRole(str, Enum):
    """Authorship role on a publication."""

    FIRST_AUTHOR = "first_author"
    CORRESPONDING_AUTHOR = "corresponding_author"
    FIRST_AND_CORRESPONDING_AUTHOR = "first_and_corresponding_author"
    CO_AUTHOR = "co_author"


class AuthorKind(str, Enum):
    """Affiliation of an author. Internal kinds share the ``internal_`` prefix."""

    INTERNAL_FACULTY = "internal_faculty"
    INTERNAL_STAFF = "internal_staff"
    INTERNAL_STUDENT = "internal_student"
    EXTERNAL_ACADEMIC = "external_academic"
    EXTERNAL_INDUSTRY = "external_industry"
    EXTERNAL_OTHER = "external_other"


class AuthorCategory(str, Enum):
    FACULTY = "faculty"
    STUDENT = "student"
    ACADEMIC = "academic"
    INDUSTRY = "industry"
    OTHER = "other"


class DistributionMethod(str, Enum):
    """How a research-paper pool is divided among authors."""

    ROLE_BASED = "author_role_based"
    POSITION_BASED = "author_position_based"


class Quartile(str, Enum):
    """Journal or proceedings quartile. Values are the display labels used in policy tables."""

    TOP_1 = "Top 1%"
    TOP_5 = "Top 5%"
    Q1 = "Q1"
    Q2 = "Q2"
    Q3 = "Q3"
    Q4 = "Q4"


class IndexingCategory(str, Enum):
    """Journal indexing categories a research paper may claim."""

    SCOPUS = "scopus"
    SCIE_WOS = "scie_wos"
    NAAS_RATING_6_PLUS = "naas_rating_6_plus"
    SUBSIDIARY_IF_ABOVE_20 = "subsidiary_if_above_20"
    NATURE_SCIENCE_LANCET_CELL_NEJM = "nature_science_lancet_cell_nejm"
    PUBMED = "pubmed"
    UGC = "ugc"
    ABDC_SCOPUS_WOS = "abdc_scopus_wos"
    IN_HOUSE_JOURNAL = "in_house_journal"
    CASE_CENTRE_UK = "case_centre_uk"


class BookType(str, Enum):
    AUTHORED = "authored"
    EDITED = "edited"


class BookIndexing(str, Enum):
    SCOPUS_INDEXED = "scopus_indexed"
    NON_INDEXED = "non_indexed"
    IN_HOUSE_PRESS = "in_house_press"


class ConferenceSubType(str, Enum):
    PAPER_INDEXED_SCOPUS = "paper_indexed_scopus"
    PAPER_NOT_INDEXED = "paper_not_indexed"
    KEYNOTE_SPEAKER_INVITED_TALKS = "keynote_speaker_invited_talks"
    ORGANIZER_COORDINATOR_MEMBER = "organizer_coordinator_member"


class ConferenceLevel(str, Enum):
    NATIONAL = "national"
    INTERNATIONAL = "international"


class ConferenceLocation(str, Enum):
    DOMESTIC = "domestic"
    ABROAD = "abroad"


class ReviewDecision(str, Enum):
    """Decisions recorded on immutable review records."""

    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUIRED = "changes_required"
    RECOMMENDED = "recommended"


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class SuggestionOrigin(str, Enum):
    """Who proposed an edit suggestion; decides the re-entry state once all resolve."""

    REVIEWER = "reviewer"
    MENTOR = "mentor"


class EntityType(str, Enum):
    """Record kinds that carry status history and reviews."""

    CONTRIBUTION = "contribution"
    IPR_APPLICATION = "ipr_application"
    PROGRESS_TRACKER = "progress_tracker"


class TrackerType(str, Enum):
    RESEARCH_PAPER = "research_paper"
    BOOK = "book"
    BOOK_CHAPTER = "book_chapter"
    CONFERENCE_PAPER = "conference_paper"


class TrackerStatus(str, Enum):
    """Pre-submission progress states."""

    WRITING = "writing"
    COMMUNICATED = "communicated"
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    ACCEPTED = "accepted"
    PUBLISHED = "published"


class IprType(str, Enum):
    PATENT = "patent"
    COPYRIGHT = "copyright"
    TRADEMARK = "trademark"
    DESIGN = "design"


class ProjectType(str, Enum):
    PHD = "phd"
    PG_PROJECT = "pg_project"
    UG_PROJECT = "ug_project"
    FACULTY_RESEARCH = "faculty_research"
    INDUSTRY_COLLABORATION = "industry_collaboration"
    ANY_OTHER = "any_other"


class FilingType(str, Enum):
    PROVISIONAL = "provisional"
    COMPLETE = "complete"


class InventorRole(str, Enum):
    """Contributor roles on an IPR filing. All but CONTRIBUTOR share the incentive."""

    PRIMARY_INVENTOR = "primary_inventor"
    INVENTOR = "inventor"
    CO_INVENTOR = "co_inventor"
    CONTRIBUTOR = "contributor"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


_QUARTILE_ALIASES = {
    "top1": Quartile.TOP_1,
    "top 1%": Quartile.TOP_1,
    "top_1_": Quartile.TOP_1,
    "top_1": Quartile.TOP_1,
    "top5": Quartile.TOP_5,
    "top 5%": Quartile.TOP_5,
    "top_5_": Quartile.TOP_5,
    "top_5": Quartile.TOP_5,
    "q1": Quartile.Q1,
    "q2": Quartile.Q2,
    "q3": Quartile.Q3,
    "q4": Quartile.Q4,
}


def normalize_quartile(raw: Any) -> Quartile | None:
    """Map any accepted spelling (``top1``, ``Top 1%``, ``top_1_``, ``q2``...) to a Quartile."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, Quartile):
        return raw
    return _QUARTILE_ALIASES.get(str(raw).strip().lower())


def _quartile_before(value: Any) -> Any:
    if value is None or value == "":
        return None
    # Unknown spellings pass through untouched so the enum rejects them.
    return normalize_quartile(value) or value


# ---------------------------------------------------------------------------
# Publication details (tagged union)
# ---------------------------------------------------------------------------

class _CategoryFields(BaseModel):
    """Journal-ranking inputs shared by research papers and grants."""

    indexing_categories: list[IndexingCategory] = Field(default_factory=list)
    quartile: Quartile | None = None
    impact_factor: float | None = Field(default=None, ge=0)
    sjr: float | None = Field(default=None, ge=0)
    naas_rating: float | None = Field(default=None, ge=0)
    subsidiary_impact_factor: float | None = Field(default=None, ge=0)

    @field_validator("quartile", mode="before")
    @classmethod
    def _normalize_quartile(cls, value: Any) -> Any:
        return _quartile_before(value)


class ResearchPaperDetails(_CategoryFields):
    publication_type: Literal["research_paper"] = "research_paper"
    journal_name: str = ""
    doi: str = ""


class GrantDetails(_CategoryFields):
    publication_type: Literal["grant_proposal"] = "grant_proposal"
    funding_agency: str = ""
    sanctioned_amount: float | None = Field(default=None, ge=0)


class _BookFields(BaseModel):
    book_type: BookType = BookType.AUTHORED
    indexing: BookIndexing | None = None
    is_international: bool = False
    publisher_name: str = ""
    isbn: str = ""


class BookDetails(_BookFields):
    publication_type: Literal["book"] = "book"


class BookChapterDetails(_BookFields):
    publication_type: Literal["book_chapter"] = "book_chapter"
    book_title: str = ""
    chapter_title: str = ""


class ConferencePaperDetails(BaseModel):
    publication_type: Literal["conference_paper"] = "conference_paper"
    conference_sub_type: ConferenceSubType | None = None  # None while a draft is incomplete
    proceedings_quartile: Quartile | None = None
    conference_type: ConferenceLevel | None = None
    conference_held_location: ConferenceLocation | None = None
    best_paper_award: bool = False
    conference_name: str = ""

    @field_validator("proceedings_quartile", mode="before")
    @classmethod
    def _normalize_quartile(cls, value: Any) -> Any:
        return _quartile_before(value)

    @property
    def is_international(self) -> bool:
        return (
            self.conference_type == ConferenceLevel.INTERNATIONAL
            or self.conference_held_location == ConferenceLocation.ABROAD
        )


PublicationDetails = Annotated[
    Union[ResearchPaperDetails, BookDetails, BookChapterDetails, ConferencePaperDetails, GrantDetails],
    Field(discriminator="publication_type"),
]

# Fields whose change alters the incentive pool and forces a recalculation.
POOL_AFFECTING_FIELDS = frozenset({
    "publication_date",
    "indexing_categories",
    "quartile",
    "impact_factor",
    "sjr",
    "naas_rating",
    "subsidiary_impact_factor",
    "book_type",
    "indexing",
    "is_international",
    "conference_sub_type",
    "proceedings_quartile",
    "conference_type",
    "conference_held_location",
    "best_paper_award",
})


# ---------------------------------------------------------------------------
# Authors
# ---------------------------------------------------------------------------

AUTHOR_CATEGORIES = {
    AuthorKind.INTERNAL_FACULTY: AuthorCategory.FACULTY,
    AuthorKind.INTERNAL_STAFF: AuthorCategory.FACULTY,
    AuthorKind.INTERNAL_STUDENT: AuthorCategory.STUDENT,
    AuthorKind.EXTERNAL_ACADEMIC: AuthorCategory.ACADEMIC,
    AuthorKind.EXTERNAL_INDUSTRY: AuthorCategory.INDUSTRY,
    AuthorKind.EXTERNAL_OTHER: AuthorCategory.OTHER,
}


class Author(BaseModel):
    """One contributor on a research contribution, with their computed share."""

    author_id: str = Field(default_factory=_uuid)
    contribution_id: str = ""
    user_id: str | None = None  # set for internal users with accounts
    uid: str | None = None
    name: str
    email: str = ""
    affiliation: str = ""
    author_kind: AuthorKind
    author_role: AuthorRole
    author_position: int | None = Field(default=None, ge=1)
    incentive_share: int = 0
    points_share: int = 0

    @computed_field
    @property
    def is_internal(self) -> bool:
        return self.author_kind.value.startswith("internal_")

    @computed_field
    @property
    def author_category(self) -> AuthorCategory:
        return AUTHOR_CATEGORIES[self.author_kind]

    @property
    def is_student(self) -> bool:
        return self.author_kind == AuthorKind.INTERNAL_STUDENT


class AuthorInput(BaseModel):
    """Payload for one author. ``author_role`` accepts short aliases (first, co, corresponding)."""

    name: str = Field(min_length=1, max_length=256)
    user_id: str | None = None
    uid: str | None = None
    email: str = ""
    affiliation: str = ""
    author_kind: AuthorKind = AuthorKind.EXTERNAL_ACADEMIC
    author_role: str = "co_author"
    is_corresponding: bool = False
    author_position: int | None = Field(default=None, ge=1)


class AuthorComposition(BaseModel):
    """Aggregate counts over a contribution's authors, used for split math."""

    internal_count: int = 0
    external_count: int = 0
    internal_co_author_count: int = 0
    external_co_author_count: int = 0
    internal_employee_co_author_count: int = 0  # internal co-authors excluding students
    external_first_corresponding_pct: float = 0.0

    @property
    def total_count(self) -> int:
        return self.internal_count + self.external_count

    @property
    def co_author_count(self) -> int:
        return self.internal_co_author_count + self.external_co_author_count

    @property
    def has_external_first_or_corresponding(self) -> bool:
        return self.external_first_corresponding_pct > 0

    def context_for(self, author: Author) -> AuthorShareContext:
        """Build the engine inputs for one author of this composition."""
        return AuthorShareContext(
            author_role=author.author_role,
            is_student=author.is_student,
            is_internal=author.is_internal,
            author_position=author.author_position,
            total_authors=self.total_count,
            co_author_count=self.co_author_count,
            internal_co_author_count=self.internal_co_author_count,
            internal_employee_co_author_count=self.internal_employee_co_author_count,
            external_first_corresponding_pct=self.external_first_corresponding_pct,
        )


class AuthorShareContext(BaseModel):
    """Everything the engine needs to know about the author whose share is computed."""

    author_role: AuthorRole
    is_student: bool = False
    is_internal: bool = True
    author_position: int | None = None
    total_authors: int = Field(default=1, ge=0)
    co_author_count: int = 0
    internal_co_author_count: int = 0
    internal_employee_co_author_count: int = 0
    external_first_corresponding_pct: float = 0.0


# ---------------------------------------------------------------------------
# Calculation results
# ---------------------------------------------------------------------------

class PoolAmount(BaseModel):
    """Total money and points a contribution earns before division."""

    amount: int = 0
    points: int = 0


class CalculationOutcome(BaseModel):
    """Successful engine result: the pool plus one author's personal share."""

    total_pool_amount: int = 0
    total_pool_points: int = 0
    incentive_amount: int = 0
    points: int = 0
    note: str = ""

    @classmethod
    def zero(cls, pool: PoolAmount | None = None, note: str = "") -> CalculationOutcome:
        pool = pool or PoolAmount()
        return cls(total_pool_amount=pool.amount, total_pool_points=pool.points, note=note)


class CalculationFault(BaseModel):
    """Error arm of the engine result: an unexpected failure inside the calculation."""

    reason: str
    error_type: str = ""
    publication_type: str = ""
    author_role: str = ""


class IprShare(BaseModel):
    """Equal split of an IPR incentive across inventors."""

    total_incentive: int
    total_points: int
    per_inventor_incentive: int
    per_inventor_points: int
    inventor_count: int


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

class QuartileIncentive(BaseModel):
    quartile: Quartile
    incentive_amount: int = Field(ge=0)
    points: int = Field(ge=0)

    @field_validator("quartile", mode="before")
    @classmethod
    def _normalize_quartile(cls, value: Any) -> Any:
        return _quartile_before(value)


class RangeIncentive(BaseModel):
    """A closed numeric band (SJR, NAAS rating) and what it pays."""

    min_value: float
    max_value: float
    incentive_amount: int = Field(ge=0)
    points: int = Field(ge=0)


class CategoryBonus(BaseModel):
    category: str
    incentive_amount: int = Field(ge=0)
    points: int = Field(ge=0)


class PolicyRules(BaseModel):
    """The rule tables of a policy. Which fields matter depends on the scope."""

    distribution_method: DistributionMethod = DistributionMethod.ROLE_BASED
    first_author_percentage: float | None = Field(default=None, ge=0, le=100)
    corresponding_author_percentage: float | None = Field(default=None, ge=0, le=100)
    position_percentages: dict[int, float] = Field(default_factory=dict)

    # Research paper / grant
    quartile_incentives: list[QuartileIncentive] = Field(default_factory=list)
    sjr_ranges: list[RangeIncentive] = Field(default_factory=list)
    naas_rating_incentives: list[RangeIncentive] = Field(default_factory=list)
    category_bonuses: list[CategoryBonus] = Field(default_factory=list)

    # Book / book chapter
    authored_incentive_amount: int | None = None
    authored_points: int | None = None
    edited_incentive_amount: int | None = None
    edited_points: int | None = None
    indexing_bonuses: dict[str, int] = Field(default_factory=dict)

    # Conference
    flat_incentive_amount: int | None = None
    flat_points: int | None = None
    best_paper_award_bonus: int = 0

    # Shared bonuses
    international_bonus: int = 0
    international_points_bonus: int = 0

    # IPR
    base_incentive_amount: int | None = None
    base_points: int | None = None


class IncentivePolicy(PolicyRules):
    """A versioned, time-bounded rule set. Never edited once referenced."""

    policy_id: str = Field(default_factory=_uuid)
    policy_name: str
    scope: PolicyScope
    sub_type: str | None = None  # conference sub-type or IPR type
    effective_from: date
    effective_to: date | None = None
    is_active: bool = True
    created_by: str = ""
    created_at: datetime = Field(default_factory=_now)

    def covers(self, as_of: date) -> bool:
        """True when ``as_of`` falls inside this policy's validity window."""
        if self.effective_from > as_of:
            return False
        return self.effective_to is None or self.effective_to >= as_of


class PolicyCreate(PolicyRules):
    """Payload for adding a policy."""

    policy_name: str = Field(min_length=1, max_length=200)
    scope: PolicyScope
    sub_type: str | None = None
    effective_from: date
    effective_to: date | None = None


# ---------------------------------------------------------------------------
# Contribution
# ---------------------------------------------------------------------------

class Contribution(BaseModel):
    """A research output under institutional review."""

    contribution_id: str = Field(default_factory=_uuid)
    application_number: str = ""
    applicant_id: str
    applicant_uid: str | None = None
    applicant_kind: AuthorKind = AuthorKind.INTERNAL_FACULTY
    mentor_uid: str | None = None
    school_id: str | None = None
    department_id: str | None = None
    title: str
    publication_date: date | None = None
    details: PublicationDetails
    status: ContributionStatus = ContributionStatus.DRAFT

    # Pool totals, never an individual share
    calculated_incentive_amount: int = 0
    calculated_points: int = 0

    # Sum of internal shares credited on approval
    incentive_amount: int = 0
    points_awarded: int = 0

    current_reviewer_id: str | None = None
    revision_count: int = 0
    document_keys: list[str] = Field(default_factory=list)
    progress_tracker_id: str | None = None
    authors: list[Author] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def publication_type(self) -> PublicationType:
        return PublicationType(self.details.publication_type)


class ContributionCreate(BaseModel):
    """Payload for creating a draft contribution."""

    title: str = Field(min_length=1, max_length=500)
    publication_date: date | None = None
    details: PublicationDetails
    applicant_role: str = "first_author"
    applicant_is_corresponding: bool = False
    applicant_position: int | None = Field(default=None, ge=1)
    authors: list[AuthorInput] = Field(default_factory=list)
    mentor_uid: str | None = None
    school_id: str | None = None
    department_id: str | None = None


class ContributionUpdate(BaseModel):
    """Partial update. ``details`` holds only the detail fields being changed."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    publication_date: date | None = None
    details: dict[str, Any] | None = None
    applicant_role: str | None = None
    applicant_is_corresponding: bool | None = None
    applicant_position: int | None = Field(default=None, ge=1)
    authors: list[AuthorInput] | None = None
    mentor_uid: str | None = None


# ---------------------------------------------------------------------------
# Reviews, history, suggestions
# ---------------------------------------------------------------------------

class Review(BaseModel):
    """An immutable review decision."""

    review_id: str = Field(default_factory=_uuid)
    entity_type: EntityType
    entity_id: str
    reviewer_id: str
    reviewer_role: str = ""
    decision: ReviewDecision
    comments: str = ""
    edits: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class StatusHistoryEntry(BaseModel):
    """One append-only status transition."""

    history_id: str = Field(default_factory=_uuid)
    entity_type: EntityType
    entity_id: str
    from_status: str | None = None
    to_status: str
    changed_by: str = ""
    comments: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class SuggestionTarget(str, Enum):
    CONTRIBUTION = "contribution"
    IPR_APPLICATION = "ipr_application"


class EditSuggestion(BaseModel):
    """A proposed field-level change, resolved only by the applicant."""

    suggestion_id: str = Field(default_factory=_uuid)
    target_type: SuggestionTarget
    target_id: str
    field_name: str
    original_value: Any = None
    suggested_value: Any = None
    note: str = ""
    status: SuggestionStatus = SuggestionStatus.PENDING
    origin: SuggestionOrigin = SuggestionOrigin.REVIEWER
    proposer_id: str
    review_round: int = 0
    applicant_response: str = ""
    created_at: datetime = Field(default_factory=_now)
    resolved_at: datetime | None = None


class SuggestionCreate(BaseModel):
    field_name: str = ""
    suggested_value: Any = None
    note: str = ""


class SuggestionResponse(BaseModel):
    suggestion_id: str
    action: str  # accept | reject
    response: str = ""


# ---------------------------------------------------------------------------
# IPR
# ---------------------------------------------------------------------------

def _inventor_role_before(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace("-", "_")
    return value


class IprContributor(BaseModel):
    contributor_id: str = Field(default_factory=_uuid)
    ipr_id: str = ""
    user_id: str | None = None
    name: str
    email: str = ""
    role: InventorRole = InventorRole.INVENTOR
    author_kind: AuthorKind = AuthorKind.INTERNAL_FACULTY

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        return _inventor_role_before(value)


class IprContributorInput(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    user_id: str | None = None
    email: str = ""
    role: InventorRole = InventorRole.INVENTOR  # accepts "co-inventor" style spellings
    author_kind: AuthorKind = AuthorKind.INTERNAL_FACULTY

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        return _inventor_role_before(value)


class IprApplication(BaseModel):
    """A patent, copyright, trademark or design filing moving through DRD and government review."""

    ipr_id: str = Field(default_factory=_uuid)
    application_number: str = ""
    applicant_id: str
    applicant_uid: str | None = None
    applicant_kind: AuthorKind = AuthorKind.INTERNAL_FACULTY
    mentor_uid: str | None = None
    school_id: str | None = None
    title: str
    description: str = ""
    ipr_type: IprType
    project_type: ProjectType = ProjectType.FACULTY_RESEARCH
    filing_type: FilingType = FilingType.PROVISIONAL
    sdg_goals: list[int] = Field(default_factory=list)
    status: IprStatus = IprStatus.DRAFT
    current_reviewer_id: str | None = None
    govt_application_id: str | None = None
    govt_filing_date: date | None = None
    publication_id: str | None = None
    publication_date: date | None = None
    govt_rejection_reference: str | None = None
    incentive_amount: int = 0  # per-inventor share
    points_awarded: int = 0
    incentive_credited_at: datetime | None = None
    revision_count: int = 0
    contributors: list[IprContributor] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    submitted_at: datetime | None = None
    completed_at: datetime | None = None


class IprCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    ipr_type: IprType
    project_type: ProjectType = ProjectType.FACULTY_RESEARCH
    filing_type: FilingType = FilingType.PROVISIONAL
    sdg_goals: list[int] = Field(default_factory=list)
    contributors: list[IprContributorInput] = Field(default_factory=list)
    mentor_uid: str | None = None
    school_id: str | None = None


# ---------------------------------------------------------------------------
# Progress tracker
# ---------------------------------------------------------------------------

class ProgressTracker(BaseModel):
    """Pre-submission progress of a piece of research, linkable once published."""

    tracker_id: str = Field(default_factory=_uuid)
    tracking_number: str = ""
    user_id: str
    tracker_type: TrackerType
    title: str
    current_status: TrackerStatus = TrackerStatus.COMMUNICATED
    type_data: dict[str, Any] = Field(default_factory=dict)
    school_id: str | None = None
    department_id: str | None = None
    expected_completion_date: date | None = None
    actual_completion_date: date | None = None
    research_contribution_id: str | None = None
    notes: str = ""
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class TrackerCreate(BaseModel):
    tracker_type: TrackerType
    title: str = Field(min_length=1, max_length=500)
    initial_status: TrackerStatus = TrackerStatus.COMMUNICATED
    type_data: dict[str, Any] = Field(default_factory=dict)
    school_id: str | None = None
    department_id: str | None = None
    expected_completion_date: date | None = None
    notes: str = ""


class TrackerUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    type_data: dict[str, Any] | None = None
    expected_completion_date: date | None = None
    notes: str | None = None


class TrackerTransition(BaseModel):
    to_status: TrackerStatus
    status_data: dict[str, Any] = Field(default_factory=dict)
    notes: str = ""
    reported_date: date | None = None


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class Notification(BaseModel):
    notification_id: str = Field(default_factory=_uuid)
    user_id: str
    type: str
    title: str
    message: str
    reference_type: str = ""
    reference_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Field registry for field-level edits
# ---------------------------------------------------------------------------

FIELD_ENUMS: dict[str, type[Enum]] = {
    "quartile": Quartile,
    "proceedings_quartile": Quartile,
    "indexing_categories": IndexingCategory,
    "book_type": BookType,
    "indexing": BookIndexing,
    "conference_sub_type": ConferenceSubType,
    "conference_type": ConferenceLevel,
    "conference_held_location": ConferenceLocation,
    "ipr_type": IprType,
    "project_type": ProjectType,
    "filing_type": FilingType,
}

LIST_FIELDS = frozenset({"indexing_categories", "sdg_goals"})
INTEGER_FIELDS = frozenset({"sdg_goals"})
FLOAT_FIELDS = frozenset({"impact_factor", "sjr", "naas_rating", "subsidiary_impact_factor", "sanctioned_amount"})
BOOLEAN_FIELDS = frozenset({"is_international", "best_paper_award"})
DATE_FIELDS = frozenset({"publication_date"})


def allowed_values(field_name: str) -> list[str]:
    """Allowed values for an enum-backed field, or an empty list for free fields."""
    enum_cls = FIELD_ENUMS.get(field_name)
    if enum_cls is None:
        return []
    return [member.value for member in enum_cls]
