"""Incentra configuration: all tuneable settings in one place."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_csv(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    vals = [v.strip() for v in raw.split(",") if v.strip()]
    return vals if vals else default


def _default_data_dir() -> Path:
    """Resolve the data directory: $INCENTRA_DATA or ./data."""
    env = os.environ.get("INCENTRA_DATA")
    if env:
        return Path(env)
    return Path(__file__).resolve().parent.parent / "data"


# ---------------------------------------------------------------------------
# Documented fallback incentive tables
# ---------------------------------------------------------------------------

class AmountPoints(BaseModel):
    """A monetary amount paired with academic points."""

    incentive_amount: int = Field(ge=0)
    points: int = Field(ge=0)


class BookDefaults(BaseModel):
    """Fallback values for books and book chapters with no policy row."""

    authored_incentive_amount: int = 50_000
    authored_points: int = 50
    edited_incentive_amount: int = 40_000
    edited_points: int = 40
    indexing_bonuses: dict[str, int] = Field(
        default_factory=lambda: {"scopus_indexed": 10_000, "non_indexed": 0, "in_house_press": 2_000}
    )
    international_bonus: int = 5_000


def _conference_quartiles() -> dict[str, AmountPoints]:
    return {
        "Top 1%": AmountPoints(incentive_amount=60_000, points=60),
        "Top 5%": AmountPoints(incentive_amount=50_000, points=50),
        "Q1": AmountPoints(incentive_amount=40_000, points=40),
        "Q2": AmountPoints(incentive_amount=25_000, points=25),
        "Q3": AmountPoints(incentive_amount=12_000, points=12),
        "Q4": AmountPoints(incentive_amount=5_000, points=5),
    }


def _conference_flat() -> dict[str, dict[str, AmountPoints]]:
    return {
        "paper_not_indexed": {
            "national": AmountPoints(incentive_amount=10_000, points=10),
            "international": AmountPoints(incentive_amount=15_000, points=15),
        },
        "keynote_speaker_invited_talks": {
            "national": AmountPoints(incentive_amount=10_000, points=10),
            "international": AmountPoints(incentive_amount=20_000, points=20),
        },
        "organizer_coordinator_member": {
            "national": AmountPoints(incentive_amount=5_000, points=5),
            "international": AmountPoints(incentive_amount=10_000, points=10),
        },
    }


class ConferenceDefaults(BaseModel):
    """Fallback values for conference papers with no policy row."""

    quartile_incentives: dict[str, AmountPoints] = Field(default_factory=_conference_quartiles)
    first_author_percentage: float = 40
    corresponding_author_percentage: float = 40
    flat_incentives: dict[str, dict[str, AmountPoints]] = Field(default_factory=_conference_flat)


def _research_quartiles() -> dict[str, AmountPoints]:
    return {
        "Top 1%": AmountPoints(incentive_amount=75_000, points=75),
        "Top 5%": AmountPoints(incentive_amount=60_000, points=60),
        "Q1": AmountPoints(incentive_amount=50_000, points=50),
        "Q2": AmountPoints(incentive_amount=30_000, points=30),
        "Q3": AmountPoints(incentive_amount=15_000, points=15),
        "Q4": AmountPoints(incentive_amount=5_000, points=5),
    }


def _sjr_ranges() -> list[tuple[float, float, int, int]]:
    # (min, max, amount, points)
    return [
        (2.0, 999.0, 50_000, 50),
        (1.0, 1.99, 30_000, 30),
        (0.5, 0.99, 15_000, 15),
        (0.0, 0.49, 5_000, 5),
    ]


def _naas_bands() -> list[tuple[float, float, int, int]]:
    return [
        (10.0, 20.0, 30_000, 30),
        (8.0, 9.99, 20_000, 20),
        (6.0, 7.99, 10_000, 10),
    ]


def _category_bonuses() -> dict[str, AmountPoints]:
    return {
        "nature_science_lancet_cell_nejm": AmountPoints(incentive_amount=200_000, points=100),
        "subsidiary_if_above_20": AmountPoints(incentive_amount=100_000, points=50),
        "pubmed": AmountPoints(incentive_amount=15_000, points=15),
        "abdc_scopus_wos": AmountPoints(incentive_amount=20_000, points=20),
        "in_house_journal": AmountPoints(incentive_amount=5_000, points=5),
        "case_centre_uk": AmountPoints(incentive_amount=8_000, points=8),
    }


class ResearchDefaults(BaseModel):
    """Fallback tables for research papers and grants.

    Role percentages have no default here; they must come from a policy row.
    """

    quartile_incentives: dict[str, AmountPoints] = Field(default_factory=_research_quartiles)
    sjr_ranges: list[tuple[float, float, int, int]] = Field(default_factory=_sjr_ranges)
    naas_rating_bands: list[tuple[float, float, int, int]] = Field(default_factory=_naas_bands)
    category_bonuses: dict[str, AmountPoints] = Field(default_factory=_category_bonuses)
    position_percentages: dict[int, float] = Field(
        default_factory=lambda: {1: 40, 2: 25, 3: 15, 4: 12, 5: 8}
    )


def _ipr_flat() -> dict[str, AmountPoints]:
    return {
        "patent": AmountPoints(incentive_amount=50_000, points=50),
        "copyright": AmountPoints(incentive_amount=15_000, points=20),
        "trademark": AmountPoints(incentive_amount=10_000, points=15),
        "design": AmountPoints(incentive_amount=20_000, points=25),
    }


class IncentiveDefaults(BaseModel):
    """Every documented default used when no policy row matches."""

    book: BookDefaults = Field(default_factory=BookDefaults)
    book_chapter: BookDefaults = Field(default_factory=BookDefaults)
    conference: ConferenceDefaults = Field(default_factory=ConferenceDefaults)
    research: ResearchDefaults = Field(default_factory=ResearchDefaults)
    ipr: dict[str, AmountPoints] = Field(default_factory=_ipr_flat)


# ---------------------------------------------------------------------------
# Runtime sections
# ---------------------------------------------------------------------------

class WorkflowConfig(BaseModel):
    """Knobs for the review workflows."""

    ipr_credit_trigger: str = Field(
        default_factory=lambda: os.environ.get("INCENTRA_IPR_CREDIT_TRIGGER", "publication"),
        description="publication | govt_filing: the IPR milestone that credits inventors",
    )
    sequence_width: int = Field(default=4, ge=3, description="Zero-padding of application sequences")


class SecurityConfig(BaseModel):
    """Authentication and authorization settings."""

    api_keys_json: str = Field(
        default_factory=lambda: os.environ.get("INCENTRA_API_KEYS_JSON", ""),
        description=(
            "JSON list of key records: "
            "[{\"key\":\"...\",\"user_id\":\"...\",\"uid\":\"...\",\"role\":\"faculty|student|staff\","
            "\"capabilities\":[...],\"school_ids\":[...]}]"
        ),
    )


class ServerConfig(BaseModel):
    """Network settings."""

    host: str = Field(default_factory=lambda: os.environ.get("INCENTRA_HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: _env_int("INCENTRA_PORT", 8000))
    cors_origins: list[str] = Field(
        default_factory=lambda: _env_csv("INCENTRA_CORS_ORIGINS", []),
    )
    log_level: str = Field(default_factory=lambda: os.environ.get("INCENTRA_LOG_LEVEL", "info"))
    max_page_size: int = Field(default=200, ge=1)
    max_request_bytes: int = Field(
        default_factory=lambda: _env_int("INCENTRA_MAX_REQUEST_BYTES", 20 * 1024 * 1024),
        description="Largest accepted request body, document uploads included",
    )


class Config(BaseModel):
    """Top-level Incentra configuration."""

    environment: str = Field(default_factory=lambda: os.environ.get("INCENTRA_ENV", "development"))
    data_dir: Path = Field(default_factory=_default_data_dir)
    db_filename: str = Field(default="incentra.db")
    blobs_dir_name: str = Field(default="blobs")
    incentives: IncentiveDefaults = Field(default_factory=IncentiveDefaults)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @property
    def blob_path(self) -> Path:
        return self.data_dir / self.blobs_dir_name

    def ensure_dirs(self) -> None:
        """Create data directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.blob_path.mkdir(parents=True, exist_ok=True)


# Singleton, importable everywhere as `from incentra.config import settings`
settings = Config()
