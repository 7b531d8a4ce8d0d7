"""Data models for the vacancy analyzer."""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Optional
from urllib.parse import urlparse, parse_qs, urlencode

# Query params that never identify a vacancy (DOU adds ?from=... to links)
_TRACKING_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "utm_term",
                    "utm_content", "from", "source", "ref", "src", "trk"}


def canonical_url(url: str) -> str:
    """Normalize a vacancy URL into its dedup key.

    - Lowercase the hostname
    - Strip tracking parameters (utm_*, from, ref, etc.)
    - Keep the path exactly, including DOU's trailing slash
    """
    url = url.strip()
    if not url:
        return ""
    parsed = urlparse(url)

    hostname = (parsed.hostname or "").lower()

    query_params = parse_qs(parsed.query, keep_blank_values=True)
    filtered_params = {
        k: v for k, v in query_params.items()
        if k.lower() not in _TRACKING_PARAMS
    }
    clean_query = urlencode(filtered_params, doseq=True) if filtered_params else ""

    scheme = parsed.scheme or "https"
    normalized = f"{scheme}://{hostname}{parsed.path}"
    if clean_query:
        normalized += f"?{clean_query}"

    return normalized


class Category(str, Enum):
    BACKEND = "Backend"
    FRONTEND = "Frontend"
    FULLSTACK = "Fullstack"
    DESKTOP = "Desktop"
    DEVOPS = "DevOps"
    QA = "QA"
    MOBILE = "Mobile"
    GAMEDEV = "GameDev"
    DATA_SCIENCE = "DataScience"
    SECURITY = "Security"
    OTHER = "Other"


class ExperienceLevel(str, Enum):
    JUNIOR = "Junior"
    MIDDLE = "Middle"
    SENIOR = "Senior"
    LEAD = "Lead"
    UNSPECIFIED = "Unspecified"


class EnglishLevel(str, Enum):
    NO_ENGLISH = "NoEnglish"
    BEGINNER = "Beginner"
    ELEMENTARY = "Elementary"
    PRE_INTERMEDIATE = "PreIntermediate"
    INTERMEDIATE = "Intermediate"
    UPPER_INTERMEDIATE = "UpperIntermediate"
    ADVANCED = "Advanced"
    PROFICIENT = "Proficient"
    NATIVE = "Native"
    UNSPECIFIED = "Unspecified"


class ClassificationStatus(str, Enum):
    """Terminal states of classifying one posting."""

    CLASSIFIED = "Classified"
    FALLBACK = "FallbackClassified"
    ERROR = "ErrorClassified"


class Criterion(str, Enum):
    """Keys of the simplified criteria map used for statistics."""

    MODERN_STACK = "ModernStack"
    MIDDLE_LEVEL = "MiddleLevel"
    ACCEPTABLE_ENGLISH = "AcceptableEnglish"
    NO_TIME_TRACKER = "NoTimeTracker"
    BACKEND_SUITABLE = "BackendSuitable"


@dataclass(frozen=True)
class Posting:
    """Immutable facts scraped from one vacancy listing.

    The URL is the identity of a posting across runs.
    """

    title: str
    company: str
    url: str
    description: str = ""
    published_date: Optional[date] = None
    salary: str = ""
    is_remote: bool = False
    location: str = ""

    def to_dict(self) -> dict:
        d = asdict(self)
        d["published_date"] = self.published_date.isoformat() if self.published_date else None
        return d

    def __repr__(self) -> str:
        return (
            f"Posting(title={self.title!r}, company={self.company!r}, "
            f"url={self.url!r})"
        )


@dataclass
class AnalysisResult:
    """The five judged aspects folded into one record."""

    category: Category = Category.OTHER
    experience_level: ExperienceLevel = ExperienceLevel.UNSPECIFIED
    years_of_experience_text: Optional[str] = None
    english_level: EnglishLevel = EnglishLevel.UNSPECIFIED
    is_modern_stack: bool = False
    is_middle_level: bool = False
    has_acceptable_english: bool = False
    has_no_time_tracker: bool = True
    is_backend_suitable: bool = False
    match_score: int = 0
    detected_technologies: list[str] = field(default_factory=list)
    analysis_reason: str = ""
    status: ClassificationStatus = ClassificationStatus.CLASSIFIED

    @property
    def criteria(self) -> dict[Criterion, bool]:
        """Simplified criteria map. Statistics only, never used for matching."""
        return {
            Criterion.MODERN_STACK: self.is_modern_stack,
            Criterion.MIDDLE_LEVEL: self.is_middle_level,
            Criterion.ACCEPTABLE_ENGLISH: self.has_acceptable_english,
            Criterion.NO_TIME_TRACKER: self.has_no_time_tracker,
            Criterion.BACKEND_SUITABLE: self.is_backend_suitable,
        }

    def to_dict(self) -> dict:
        d = asdict(self)
        for key in ("category", "experience_level", "english_level", "status"):
            d[key] = d[key].value
        d["criteria"] = {k.value: v for k, v in self.criteria.items()}
        return d


@dataclass(frozen=True)
class PostingRecord:
    """A stored posting plus its lifecycle flags.

    ``analysis`` is either None or a complete AnalysisResult; the store
    never hands out a partially classified record. ``is_new`` tracks
    pending classification only; ``reviewed_at`` records when the user
    last acknowledged the classified result.
    """

    id: int
    posting: Posting
    created_at: datetime
    is_new: bool
    is_active: bool
    last_classified_at: Optional[datetime] = None
    analysis: Optional[AnalysisResult] = None
    reviewed_at: Optional[datetime] = None

    @property
    def url(self) -> str:
        return self.posting.url

    @property
    def is_classified(self) -> bool:
        return self.last_classified_at is not None

    @property
    def is_reviewed(self) -> bool:
        return self.reviewed_at is not None


@dataclass(frozen=True)
class CountHistorySnapshot:
    """One append-only row of the per-cycle counters."""

    check_time: datetime
    total: int
    active: int
    new: int
    deactivated_this_cycle: int
    matching: int
    match_percentage: float
    id: Optional[int] = None


@dataclass(frozen=True)
class ApplicationMark:
    """Whether the user has responded to a vacancy."""

    vacancy_url: str
    title: str
    company: str
    has_responded: bool
    responded_at: Optional[datetime] = None
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None
