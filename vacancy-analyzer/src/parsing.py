"""Tolerant parsing of judge output.

Models wrap their JSON in commentary, markdown fences, or both, and now
and then put raw newlines inside string values. Parsing goes:

1. Extract the first balanced ``{...}`` block, skipping braces that sit
   inside string literals
2. Escape raw control characters inside string literals
3. ``json.loads`` the result
4. Look keys up case-insensitively and normalize enum values through the
   SYNONYMS allow-list

Anything that still fails raises ParseError.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from src.errors import ParseError
from src.models import Category, EnglishLevel, ExperienceLevel
from src import prompts

logger = logging.getLogger(__name__)


# ── Aspect result shapes ────────────────────────────────────────────────────


@dataclass
class CategoryJudgement:
    category: Category = Category.OTHER
    confidence: int = 0
    reasoning: str = ""


@dataclass
class TechnologyJudgement:
    is_modern_stack: bool = False
    detected_technologies: list[str] = field(default_factory=list)
    technology_score: int = 0
    reasoning: str = ""


@dataclass
class ExperienceJudgement:
    experience_level: ExperienceLevel = ExperienceLevel.UNSPECIFIED
    years_of_experience: Optional[str] = None
    is_middle_level: bool = False
    experience_score: int = 0
    reasoning: str = ""


@dataclass
class EnglishJudgement:
    english_level: EnglishLevel = EnglishLevel.UNSPECIFIED
    has_acceptable_english: bool = False
    english_score: int = 0
    reasoning: str = ""


@dataclass
class SuitabilityJudgement:
    is_backend_suitable: bool = False
    has_no_time_tracker: bool = True
    match_score: int = 0
    analysis_reason: str = ""


# ── Synonym allow-list ──────────────────────────────────────────────────────

# Keys are compared after lowercasing and collapsing whitespace.
_NOT_SPECIFIED = {
    "не вказано": "Unspecified",
    "не зазначено": "Unspecified",
    "не указано": "Unspecified",
    "невідомо": "Unspecified",
    "not specified": "Unspecified",
    "not mentioned": "Unspecified",
    "unknown": "Unspecified",
    "none": "Unspecified",
    "n/a": "Unspecified",
    "na": "Unspecified",
    "": "Unspecified",
}

SYNONYMS: dict[str, dict[str, str]] = {
    "category": {
        "back-end": "Backend",
        "back end": "Backend",
        "server-side": "Backend",
        "front-end": "Frontend",
        "front end": "Frontend",
        "full-stack": "Fullstack",
        "full stack": "Fullstack",
        "fullstack developer": "Fullstack",
        "dev ops": "DevOps",
        "sre": "DevOps",
        "qa automation": "QA",
        "testing": "QA",
        "game dev": "GameDev",
        "gamedev": "GameDev",
        "gaming": "GameDev",
        "data science": "DataScience",
        "data": "DataScience",
        "ml": "DataScience",
        "machine learning": "DataScience",
        "cybersecurity": "Security",
        "infosec": "Security",
        "mobile development": "Mobile",
        "desktop development": "Desktop",
        "не вказано": "Other",
        "інше": "Other",
        "": "Other",
    },
    "experience": {
        **_NOT_SPECIFIED,
        "jun": "Junior",
        "junior+": "Junior",
        "trainee": "Junior",
        "intern": "Junior",
        "mid": "Middle",
        "mid-level": "Middle",
        "middle+": "Middle",
        "intermediate": "Middle",
        "strong middle": "Middle",
        "sr": "Senior",
        "sr.": "Senior",
        "senior+": "Senior",
        "team lead": "Lead",
        "tech lead": "Lead",
        "teamlead": "Lead",
        "techlead": "Lead",
        "principal": "Lead",
        "architect": "Lead",
    },
    "english": {
        **_NOT_SPECIFIED,
        "no english": "NoEnglish",
        "not required": "NoEnglish",
        "a1": "Beginner",
        "a2": "Elementary",
        "b1-": "PreIntermediate",
        "pre-intermediate": "PreIntermediate",
        "pre intermediate": "PreIntermediate",
        "b1": "Intermediate",
        "b1+": "Intermediate",
        "b2": "UpperIntermediate",
        "b2+": "UpperIntermediate",
        "upper-intermediate": "UpperIntermediate",
        "upper intermediate": "UpperIntermediate",
        "c1": "Advanced",
        "c2": "Proficient",
        "fluent": "Proficient",
        "native speaker": "Native",
    },
}

_ENUM_DEFAULTS = {
    "category": Category.OTHER,
    "experience": ExperienceLevel.UNSPECIFIED,
    "english": EnglishLevel.UNSPECIFIED,
}


def _squash(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip().lower())


def normalize_enum(kind: str, value: Any, enum_cls: type[Enum]) -> Enum:
    """Map a judge-supplied label onto ``enum_cls`` via exact match or SYNONYMS."""
    default = _ENUM_DEFAULTS[kind]
    if value is None:
        return default
    text = _squash(str(value))

    # Exact enum value, ignoring case and separators ("Upper_Intermediate")
    compact = re.sub(r"[\s_\-]", "", text)
    for member in enum_cls:
        if member.value.lower() == compact:
            return member

    canonical = SYNONYMS[kind].get(text)
    if canonical is not None:
        return enum_cls(canonical)

    logger.debug("Unrecognized %s value %r, using %s", kind, value, default.value)
    return default


# ── JSON extraction ─────────────────────────────────────────────────────────


def extract_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` substring of ``text``.

    Braces inside string literals do not count toward the balance.
    Raises ParseError when no complete object is present.
    """
    if not text:
        raise ParseError("Judge returned an empty response", text or "")

    start = text.find("{")
    if start == -1:
        raise ParseError("No JSON object in judge response", text)

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]

    raise ParseError("Unbalanced JSON object in judge response", text)


_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


def escape_control_chars(json_text: str) -> str:
    """Escape raw control characters that appear inside string literals."""
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in json_text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ord(ch) < 0x20:
                out.append(_CONTROL_ESCAPES.get(ch, f"\\u{ord(ch):04x}"))
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def load_json_object(text: str) -> dict[str, Any]:
    """Extract, repair and decode the judge's JSON object."""
    snippet = escape_control_chars(extract_json_object(text))

    def reject_constant(name: str):
        raise ParseError(f"Non-finite number {name} in judge response", text)

    try:
        data = json.loads(snippet, parse_constant=reject_constant)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON in judge response: {exc}", text) from exc
    if not isinstance(data, dict):
        raise ParseError("Judge response JSON is not an object", text)
    return data


# ── Field coercion ──────────────────────────────────────────────────────────


class _Fields:
    """Case-insensitive view over a decoded JSON object."""

    def __init__(self, data: dict[str, Any]):
        self._data = {str(k).lower(): v for k, v in data.items()}

    def get(self, *names: str, default: Any = None) -> Any:
        for name in names:
            key = name.lower()
            if key in self._data and self._data[key] is not None:
                return self._data[key]
        return default

    def boolean(self, *names: str, default: bool = False) -> bool:
        value = self.get(*names)
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "yes", "так", "1"):
                return True
            if lowered in ("false", "no", "ні", "0"):
                return False
        return default

    def score(self, *names: str) -> int:
        """A 0-100 score; non-numeric values become 0, non-finite ones a ParseError."""
        value = self.get(*names)
        if isinstance(value, bool):
            return 0
        if isinstance(value, str):
            match = re.search(r"-?\d+(\.\d+)?", value)
            value = float(match.group()) if match else 0
        if not isinstance(value, (int, float)):
            return 0
        if isinstance(value, float) and not math.isfinite(value):
            raise ParseError(f"Score {names[0]} is not a finite number: {value!r}")
        return max(0, min(100, int(round(value))))

    def text(self, *names: str) -> str:
        value = self.get(*names, default="")
        return value.strip() if isinstance(value, str) else str(value)

    def string_list(self, *names: str) -> list[str]:
        value = self.get(*names, default=[])
        if isinstance(value, str):
            value = re.split(r"[,;]", value)
        if not isinstance(value, list):
            return []
        items: list[str] = []
        for item in value:
            item_text = str(item).strip()
            if item_text and item_text not in items:
                items.append(item_text)
        return items


# ── Aspect parsers ──────────────────────────────────────────────────────────


def parse_category(text: str) -> CategoryJudgement:
    f = _Fields(load_json_object(text))
    return CategoryJudgement(
        category=normalize_enum("category", f.get("VacancyCategory", "Category"), Category),
        confidence=f.score("Confidence"),
        reasoning=f.text("Reasoning"),
    )


def parse_technology(text: str) -> TechnologyJudgement:
    f = _Fields(load_json_object(text))
    return TechnologyJudgement(
        is_modern_stack=f.boolean("IsModernStack"),
        detected_technologies=f.string_list("DetectedTechnologies", "Technologies"),
        technology_score=f.score("TechnologyScore"),
        reasoning=f.text("Reasoning"),
    )


def parse_experience(text: str) -> ExperienceJudgement:
    f = _Fields(load_json_object(text))

    years = f.get("DetectedYearsOfExperience", "YearsOfExperience")
    if years is not None:
        years = str(years).strip()
        if _squash(years) in _NOT_SPECIFIED:
            years = None

    return ExperienceJudgement(
        experience_level=normalize_enum(
            "experience", f.get("DetectedExperienceLevel", "ExperienceLevel"), ExperienceLevel
        ),
        years_of_experience=years,
        is_middle_level=f.boolean("IsMiddleLevel"),
        experience_score=f.score("ExperienceScore"),
        reasoning=f.text("Reasoning"),
    )


def parse_english(text: str) -> EnglishJudgement:
    f = _Fields(load_json_object(text))
    return EnglishJudgement(
        english_level=normalize_enum(
            "english", f.get("DetectedEnglishLevel", "EnglishLevel"), EnglishLevel
        ),
        has_acceptable_english=f.boolean("HasAcceptableEnglish"),
        english_score=f.score("EnglishScore"),
        reasoning=f.text("Reasoning"),
    )


def parse_suitability(text: str) -> SuitabilityJudgement:
    f = _Fields(load_json_object(text))
    return SuitabilityJudgement(
        is_backend_suitable=f.boolean("IsBackendSuitable"),
        has_no_time_tracker=f.boolean("HasNoTimeTracker", default=True),
        match_score=f.score("MatchScore"),
        analysis_reason=f.text("AnalysisReason", "Reasoning"),
    )


PARSERS: dict[str, Callable[[str], Any]] = {
    prompts.CATEGORY: parse_category,
    prompts.TECHNOLOGY: parse_technology,
    prompts.EXPERIENCE: parse_experience,
    prompts.ENGLISH: parse_english,
    prompts.SUITABILITY: parse_suitability,
}
