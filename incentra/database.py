"""Storage layer: SQLite via aiosqlite.

Provides:
- async SQLite connection via aiosqlite
- schema creation
- the ``transaction`` unit-of-work helper
- application numbers (RP-YYYY-NNNN) and tracking numbers (TRP-YYYYMM-NNNN)
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator

import aiosqlite

from incentra.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# SQLite Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
-- Shared counter for application and tracking numbers
CREATE TABLE IF NOT EXISTS application_sequence (
    prefix   TEXT NOT NULL,
    period   TEXT NOT NULL,
    seq      INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (prefix, period)
);

-- Versioned incentive policies; rule tables live in the rules column
CREATE TABLE IF NOT EXISTS policies (
    policy_id       TEXT PRIMARY KEY,
    policy_name     TEXT NOT NULL,
    scope           TEXT NOT NULL,
    sub_type        TEXT,
    effective_from  TEXT NOT NULL,
    effective_to    TEXT,
    is_active       INTEGER NOT NULL DEFAULT 1,
    rules           TEXT NOT NULL DEFAULT '{}',
    created_by      TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_policies_scope ON policies(scope, sub_type, is_active);

-- Research contributions
CREATE TABLE IF NOT EXISTS contributions (
    contribution_id             TEXT PRIMARY KEY,
    application_number          TEXT NOT NULL UNIQUE,
    applicant_id                TEXT NOT NULL,
    applicant_uid               TEXT,
    applicant_kind              TEXT NOT NULL,
    mentor_uid                  TEXT,
    school_id                   TEXT,
    department_id               TEXT,
    title                       TEXT NOT NULL,
    publication_type            TEXT NOT NULL,
    publication_date            TEXT,
    details                     TEXT NOT NULL DEFAULT '{}',
    status                      TEXT NOT NULL DEFAULT 'draft',
    calculated_incentive_amount INTEGER NOT NULL DEFAULT 0,
    calculated_points           INTEGER NOT NULL DEFAULT 0,
    incentive_amount            INTEGER NOT NULL DEFAULT 0,
    points_awarded              INTEGER NOT NULL DEFAULT 0,
    current_reviewer_id         TEXT,
    revision_count              INTEGER NOT NULL DEFAULT 0,
    document_keys               TEXT NOT NULL DEFAULT '[]',
    progress_tracker_id         TEXT,
    created_at                  TEXT NOT NULL,
    updated_at                  TEXT NOT NULL,
    submitted_at                TEXT,
    approved_at                 TEXT,
    completed_at                TEXT
);

CREATE INDEX IF NOT EXISTS idx_contributions_applicant ON contributions(applicant_id);
CREATE INDEX IF NOT EXISTS idx_contributions_status ON contributions(status);

CREATE TABLE IF NOT EXISTS contribution_authors (
    author_id        TEXT PRIMARY KEY,
    contribution_id  TEXT NOT NULL,
    user_id          TEXT,
    uid              TEXT,
    name             TEXT NOT NULL,
    email            TEXT NOT NULL DEFAULT '',
    affiliation      TEXT NOT NULL DEFAULT '',
    author_kind      TEXT NOT NULL,
    author_role      TEXT NOT NULL,
    author_position  INTEGER,
    incentive_share  INTEGER NOT NULL DEFAULT 0,
    points_share     INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (contribution_id) REFERENCES contributions(contribution_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_authors_contribution ON contribution_authors(contribution_id);

-- IPR filings
CREATE TABLE IF NOT EXISTS ipr_applications (
    ipr_id                   TEXT PRIMARY KEY,
    application_number       TEXT NOT NULL UNIQUE,
    applicant_id             TEXT NOT NULL,
    applicant_uid            TEXT,
    applicant_kind           TEXT NOT NULL,
    mentor_uid               TEXT,
    school_id                TEXT,
    title                    TEXT NOT NULL,
    description              TEXT NOT NULL DEFAULT '',
    ipr_type                 TEXT NOT NULL,
    project_type             TEXT NOT NULL,
    filing_type              TEXT NOT NULL,
    sdg_goals                TEXT NOT NULL DEFAULT '[]',
    status                   TEXT NOT NULL DEFAULT 'draft',
    current_reviewer_id      TEXT,
    govt_application_id      TEXT,
    govt_filing_date         TEXT,
    publication_id           TEXT,
    publication_date         TEXT,
    govt_rejection_reference TEXT,
    incentive_amount         INTEGER NOT NULL DEFAULT 0,
    points_awarded           INTEGER NOT NULL DEFAULT 0,
    incentive_credited_at    TEXT,
    revision_count           INTEGER NOT NULL DEFAULT 0,
    created_at               TEXT NOT NULL,
    updated_at               TEXT NOT NULL,
    submitted_at             TEXT,
    completed_at             TEXT
);

CREATE INDEX IF NOT EXISTS idx_ipr_status ON ipr_applications(status);

CREATE TABLE IF NOT EXISTS ipr_contributors (
    contributor_id TEXT PRIMARY KEY,
    ipr_id         TEXT NOT NULL,
    user_id        TEXT,
    name           TEXT NOT NULL,
    email          TEXT NOT NULL DEFAULT '',
    role           TEXT NOT NULL,
    author_kind    TEXT NOT NULL,
    FOREIGN KEY (ipr_id) REFERENCES ipr_applications(ipr_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_ipr_contributors ON ipr_contributors(ipr_id);

-- Review decisions (immutable)
CREATE TABLE IF NOT EXISTS reviews (
    review_id      TEXT PRIMARY KEY,
    entity_type    TEXT NOT NULL,
    entity_id      TEXT NOT NULL,
    reviewer_id    TEXT NOT NULL,
    reviewer_role  TEXT NOT NULL DEFAULT '',
    decision       TEXT NOT NULL,
    comments       TEXT NOT NULL DEFAULT '',
    edits          TEXT NOT NULL DEFAULT '{}',
    created_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reviews_entity ON reviews(entity_type, entity_id);

-- Status history (append-only)
CREATE TABLE IF NOT EXISTS status_history (
    history_id   TEXT PRIMARY KEY,
    entity_type  TEXT NOT NULL,
    entity_id    TEXT NOT NULL,
    from_status  TEXT,
    to_status    TEXT NOT NULL,
    changed_by   TEXT NOT NULL DEFAULT '',
    comments     TEXT NOT NULL DEFAULT '',
    metadata     TEXT NOT NULL DEFAULT '{}',
    created_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_history_entity ON status_history(entity_type, entity_id);

-- Field-level edit suggestions
CREATE TABLE IF NOT EXISTS edit_suggestions (
    suggestion_id      TEXT PRIMARY KEY,
    target_type        TEXT NOT NULL,
    target_id          TEXT NOT NULL,
    field_name         TEXT NOT NULL,
    original_value     TEXT,
    suggested_value    TEXT,
    note               TEXT NOT NULL DEFAULT '',
    status             TEXT NOT NULL DEFAULT 'pending',
    origin             TEXT NOT NULL DEFAULT 'reviewer',
    proposer_id        TEXT NOT NULL,
    review_round       INTEGER NOT NULL DEFAULT 0,
    applicant_response TEXT NOT NULL DEFAULT '',
    created_at         TEXT NOT NULL,
    resolved_at        TEXT
);

CREATE INDEX IF NOT EXISTS idx_suggestions_target ON edit_suggestions(target_type, target_id, status);

-- Pre-submission progress trackers
CREATE TABLE IF NOT EXISTS progress_trackers (
    tracker_id                TEXT PRIMARY KEY,
    tracking_number           TEXT NOT NULL UNIQUE,
    user_id                   TEXT NOT NULL,
    tracker_type              TEXT NOT NULL,
    title                     TEXT NOT NULL,
    current_status            TEXT NOT NULL,
    type_data                 TEXT NOT NULL DEFAULT '{}',
    school_id                 TEXT,
    department_id             TEXT,
    expected_completion_date  TEXT,
    actual_completion_date    TEXT,
    research_contribution_id  TEXT,
    notes                     TEXT NOT NULL DEFAULT '',
    created_at                TEXT NOT NULL,
    updated_at                TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trackers_user ON progress_trackers(user_id);

-- In-app notifications
CREATE TABLE IF NOT EXISTS notifications (
    notification_id TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    type            TEXT NOT NULL,
    title           TEXT NOT NULL,
    message         TEXT NOT NULL,
    reference_type  TEXT NOT NULL DEFAULT '',
    reference_id    TEXT NOT NULL DEFAULT '',
    metadata        TEXT NOT NULL DEFAULT '{}',
    is_read         INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read);
"""


async def get_db() -> aiosqlite.Connection:
    """Open the SQLite database and ensure schema exists."""
    settings.ensure_dirs()
    db = await aiosqlite.connect(str(settings.db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON;")
    await db.execute("PRAGMA journal_mode = WAL;")
    await db.execute("PRAGMA synchronous = NORMAL;")
    await db.execute("PRAGMA busy_timeout = 5000;")
    await db.execute("PRAGMA temp_store = MEMORY;")
    await db.executescript(SCHEMA_SQL)
    await db.commit()
    return db


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Unit of work: commit when the block exits cleanly, roll back otherwise.

    Helpers called inside the block must not commit themselves.
    """
    try:
        yield db
    except BaseException:
        await db.rollback()
        raise
    else:
        await db.commit()


# ---------------------------------------------------------------------------
# Application and tracking numbers
# ---------------------------------------------------------------------------

APPLICATION_PREFIXES = {
    "research_paper": "RP",
    "book": "BK",
    "book_chapter": "BC",
    "conference_paper": "CP",
    "grant_proposal": "GP",
    "ipr": "IPR",
}
DEFAULT_APPLICATION_PREFIX = "RC"

TRACKING_PREFIXES = {
    "research_paper": "TRP",
    "book": "TBK",
    "book_chapter": "TBC",
    "conference_paper": "TCP",
    "grant_proposal": "TGP",
}
DEFAULT_TRACKING_PREFIX = "TRK"


def _today() -> date:
    return datetime.now(timezone.utc).date()


async def next_sequence(db: aiosqlite.Connection, prefix: str, period: str) -> int:
    """Increment and return the counter for ``(prefix, period)``. Does not commit."""
    await db.execute(
        """INSERT INTO application_sequence (prefix, period, seq) VALUES (?, ?, 1)
           ON CONFLICT(prefix, period) DO UPDATE SET seq = seq + 1""",
        (prefix, period),
    )
    async with db.execute(
        "SELECT seq FROM application_sequence WHERE prefix = ? AND period = ?",
        (prefix, period),
    ) as cursor:
        row = await cursor.fetchone()
    return int(row[0])


def _value(kind: Any) -> str:
    return getattr(kind, "value", kind) or ""


async def generate_application_number(
    db: aiosqlite.Connection, publication_type: Any, today: date | None = None
) -> str:
    """Next application number for a type: ``{prefix}-{YYYY}-{seq}``."""
    prefix = APPLICATION_PREFIXES.get(_value(publication_type), DEFAULT_APPLICATION_PREFIX)
    year = f"{(today or _today()).year:04d}"
    seq = await next_sequence(db, prefix, year)
    return f"{prefix}-{year}-{seq:0{settings.workflow.sequence_width}d}"


async def generate_tracking_number(
    db: aiosqlite.Connection, tracker_type: Any, today: date | None = None
) -> str:
    """Next tracking number for a tracker type: ``{prefix}-{YYYYMM}-{seq}``."""
    prefix = TRACKING_PREFIXES.get(_value(tracker_type), DEFAULT_TRACKING_PREFIX)
    today = today or _today()
    period = f"{today.year:04d}{today.month:02d}"
    seq = await next_sequence(db, prefix, period)
    return f"{prefix}-{period}-{seq:0{settings.workflow.sequence_width}d}"


# ---------------------------------------------------------------------------
# JSON helpers for SQLite columns that store serialised data
# ---------------------------------------------------------------------------

def _json_default(obj: Any) -> Any:
    """Custom JSON serialiser that handles Pydantic models, enums and dates."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "value"):
        return obj.value
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    return str(obj)


def to_json(obj: Any) -> str:
    """Serialise a Python object for storage in a TEXT column."""
    return json.dumps(obj, default=_json_default)


def from_json(text: str | None) -> Any:
    """Deserialise a TEXT column back to a Python object."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text


def iso(value: date | datetime | None) -> str | None:
    """Date or datetime to an ISO string column value."""
    return value.isoformat() if value is not None else None
