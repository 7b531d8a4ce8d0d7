"""Matcher module for the vacancy analyzer.

Applies the fixed suitability rubric to classified vacancies. The rubric
looks only at the analysis record and makes no LLM calls:

1. Not backend suitable                 -> rejected
2. Fullstack with match_score below 70  -> rejected
3. Senior or Lead level                 -> rejected (regardless of score)
4. Neither flagged middle level nor Middle/Unspecified level -> rejected
5. Otherwise                            -> match

Modern stack, acceptable English and the absence of a time tracker earn
bonus points that are reported alongside the decision but never change it.

Also builds the match report, the aggregate statistics and the explicit
filters the CLI uses to select records.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, NamedTuple, Optional

from src.models import (
    AnalysisResult,
    Category,
    Criterion,
    ExperienceLevel,
    PostingRecord,
)

logger = logging.getLogger(__name__)

FULLSTACK_MIN_SCORE = 70
MAX_BONUS = 4


class RejectionReason(Enum):
    """Why a vacancy failed the rubric."""

    NOT_BACKEND = "REJECTED_NOT_BACKEND"
    FULLSTACK_LOW_SCORE = "REJECTED_FULLSTACK_LOW_SCORE"
    TOO_SENIOR = "REJECTED_TOO_SENIOR"
    NOT_MIDDLE = "REJECTED_NOT_MIDDLE"


class MatchDecision(NamedTuple):
    """Rubric outcome for a single analysis."""

    matched: bool
    reason: RejectionReason | None = None
    bonus: int = 0
    notes: tuple[str, ...] = ()


# ── Rubric ──────────────────────────────────────────────────────────────────


def _rubric(analysis: AnalysisResult) -> tuple[RejectionReason | None, list[str]]:
    notes: list[str] = []

    if not analysis.is_backend_suitable:
        return RejectionReason.NOT_BACKEND, ["Not backend suitable"]
    notes.append("Backend suitable")

    if analysis.category == Category.FULLSTACK:
        if analysis.match_score < FULLSTACK_MIN_SCORE:
            notes.append(f"Fullstack with weak backend focus (score {analysis.match_score})")
            return RejectionReason.FULLSTACK_LOW_SCORE, notes
        notes.append(f"Fullstack with strong backend focus (score {analysis.match_score})")

    level = analysis.experience_level
    if level in (ExperienceLevel.SENIOR, ExperienceLevel.LEAD):
        notes.append(f"{level.value} level position")
        return RejectionReason.TOO_SENIOR, notes

    if not analysis.is_middle_level and level not in (
        ExperienceLevel.MIDDLE, ExperienceLevel.UNSPECIFIED
    ):
        notes.append(f"Not suitable for Middle level ({level.value})")
        return RejectionReason.NOT_MIDDLE, notes
    notes.append("Suitable for Middle level")

    return None, notes


def is_match(analysis: AnalysisResult) -> bool:
    """True when the analysis passes every step of the rubric."""
    reason, _ = _rubric(analysis)
    return reason is None


def bonus_score(analysis: AnalysisResult) -> tuple[int, list[str]]:
    """Informational bonus: modern stack +2, English +1, no time tracker +1."""
    bonus = 0
    notes: list[str] = []

    if analysis.is_modern_stack:
        bonus += 2
        notes.append("Modern stack (+2)")
    else:
        notes.append("Not modern stack")

    if analysis.has_acceptable_english:
        bonus += 1
        notes.append("Acceptable English (+1)")
    else:
        notes.append("English level may be insufficient")

    if analysis.has_no_time_tracker:
        bonus += 1
        notes.append("No time tracker (+1)")
    else:
        notes.append("Has time tracker requirement")

    return bonus, notes


def explain_match(analysis: AnalysisResult) -> MatchDecision:
    """Decision plus readable reasons. Bonus is only computed for matches."""
    reason, notes = _rubric(analysis)
    if reason is not None:
        logger.debug("Match result: False (%s). %s", reason.value, ", ".join(notes))
        return MatchDecision(False, reason, 0, tuple(notes))

    bonus, bonus_notes = bonus_score(analysis)
    notes.extend(bonus_notes)
    logger.debug("Match result: True. Bonus %d/%d. %s", bonus, MAX_BONUS, ", ".join(notes))
    return MatchDecision(True, None, bonus, tuple(notes))


# ── Report ──────────────────────────────────────────────────────────────────


@dataclass
class AnalysisReport:
    total: int = 0
    matching: int = 0
    match_percentage: float = 0.0
    matches: list[PostingRecord] = field(default_factory=list)


def build_report(records: Iterable[PostingRecord]) -> AnalysisReport:
    """Summarize classified records against the rubric.

    Unclassified records are ignored. Matches are ordered by descending
    match_score; ties keep the input (creation) order.
    """
    classified = [r for r in records if r.analysis is not None]
    matches = [r for r in classified if is_match(r.analysis)]
    matches.sort(key=lambda r: -r.analysis.match_score)

    total = len(classified)
    percentage = (len(matches) * 100.0 / total) if total else 0.0

    return AnalysisReport(
        total=total,
        matching=len(matches),
        match_percentage=round(percentage, 2),
        matches=matches,
    )


# ── Statistics ──────────────────────────────────────────────────────────────


@dataclass
class VacancyStatistics:
    total: int = 0
    with_modern_tech: int = 0
    with_time_tracker: int = 0
    with_desktop_apps: int = 0
    with_frontend: int = 0
    junior_level: int = 0
    middle_level: int = 0
    senior_level: int = 0  # Senior and Lead together
    unspecified_level: int = 0
    categories: dict[str, int] = field(default_factory=dict)
    technologies: dict[str, int] = field(default_factory=dict)
    years_requirements: dict[str, int] = field(default_factory=dict)
    criteria: dict[str, int] = field(default_factory=dict)
    modern_vacancies: list[PostingRecord] = field(default_factory=list)


def build_statistics(records: Iterable[PostingRecord]) -> VacancyStatistics:
    """Aggregate counters over classified records."""
    classified = [r for r in records if r.analysis is not None]
    stats = VacancyStatistics(total=len(classified))

    categories: Counter[str] = Counter()
    technologies: Counter[str] = Counter()
    years: Counter[str] = Counter()
    criteria: Counter[str] = Counter({c.value: 0 for c in Criterion})

    for record in classified:
        analysis = record.analysis

        categories[analysis.category.value] += 1
        technologies.update(analysis.detected_technologies)
        if analysis.years_of_experience_text:
            years[analysis.years_of_experience_text] += 1

        if analysis.is_modern_stack:
            stats.with_modern_tech += 1
        if not analysis.has_no_time_tracker:
            stats.with_time_tracker += 1
        if analysis.category == Category.DESKTOP:
            stats.with_desktop_apps += 1
        elif analysis.category == Category.FRONTEND:
            stats.with_frontend += 1

        level = analysis.experience_level
        if level == ExperienceLevel.JUNIOR:
            stats.junior_level += 1
        elif level == ExperienceLevel.MIDDLE:
            stats.middle_level += 1
        elif level in (ExperienceLevel.SENIOR, ExperienceLevel.LEAD):
            stats.senior_level += 1
        else:
            stats.unspecified_level += 1

        for criterion, value in analysis.criteria.items():
            if value:
                criteria[criterion.value] += 1

    stats.categories = dict(categories.most_common())
    stats.technologies = dict(technologies.most_common())
    stats.years_requirements = dict(years.most_common())
    stats.criteria = dict(criteria)
    stats.modern_vacancies = sorted(
        (r for r in classified if r.analysis.is_modern_stack),
        key=lambda r: -r.analysis.match_score,
    )
    return stats


# ── Filtering ───────────────────────────────────────────────────────────────


def filter_records(
    records: Iterable[PostingRecord],
    category: Optional[Category | str] = None,
    only_matches: bool = False,
    only_new: bool = False,
    only_active: bool = False,
    only_unreviewed: bool = False,
) -> list[PostingRecord]:
    """Select records by explicit criteria. Category compares case-insensitively.

    ``only_unreviewed`` keeps classified records not yet marked as reviewed.
    """
    if isinstance(category, Category):
        wanted = category.value.lower()
    elif category:
        wanted = category.lower()
    else:
        wanted = None

    selected = []
    for record in records:
        if only_active and not record.is_active:
            continue
        if only_new and not record.is_new:
            continue
        if only_unreviewed and (not record.is_classified or record.is_reviewed):
            continue
        if wanted is not None:
            if record.analysis is None or record.analysis.category.value.lower() != wanted:
                continue
        if only_matches and (record.analysis is None or not is_match(record.analysis)):
            continue
        selected.append(record)
    return selected
