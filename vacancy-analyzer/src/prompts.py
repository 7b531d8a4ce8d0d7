"""Prompt templates for the five classification aspects.

Templates use ``{placeholder}`` markers that are substituted in a single
regex pass, so the literal JSON braces in the examples below need no
escaping and markers inside scraped text are left as they are. Supported
placeholders: {title}, {company}, {description}, {location}, {experience},
{englishLevel}.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from src.models import Posting

logger = logging.getLogger(__name__)

# Aspect keys, in the order results are folded
CATEGORY = "category"
TECHNOLOGY = "technology"
EXPERIENCE = "experience"
ENGLISH = "english"
SUITABILITY = "suitability"

ASPECTS = (CATEGORY, TECHNOLOGY, EXPERIENCE, ENGLISH, SUITABILITY)


@dataclass(frozen=True)
class AspectPrompt:
    system: str
    user: str

    def render(self, posting: Posting) -> str:
        return render_template(self.user, posting)


DEFAULT_PROMPTS: dict[str, AspectPrompt] = {
    CATEGORY: AspectPrompt(
        system=(
            "You are an expert at categorizing IT job vacancies. "
            "Determine the job category based on the description and requirements."
        ),
        user=(
            "Categorize the vacancy:\n\n"
            "Title: {title}\n"
            "Description: {description}\n\n"
            "Determine the category (Backend/Frontend/Fullstack/Desktop/DevOps/QA/"
            "Mobile/GameDev/DataScience/Security/Other) and return JSON: "
            '{"VacancyCategory": "category", "Confidence": number_0_100, '
            '"Reasoning": "explanation"}'
        ),
    ),
    TECHNOLOGY: AspectPrompt(
        system=(
            "You are an expert at analyzing technologies in IT job vacancies. "
            "Determine if the technology stack is modern."
        ),
        user=(
            "Analyze technologies:\n\n"
            "Vacancy: {title}\n"
            "Description: {description}\n\n"
            "Determine:\n"
            "- IsModernStack (is it modern stack with .NET 6+, Core, latest frameworks)\n"
            "- DetectedTechnologies (list of technologies)\n"
            "- TechnologyScore (0-100)\n\n"
            'JSON: {"IsModernStack": boolean, "DetectedTechnologies": ["tech1", "tech2"], '
            '"TechnologyScore": number, "Reasoning": "explanation"}'
        ),
    ),
    EXPERIENCE: AspectPrompt(
        system=(
            "You are an expert at analyzing experience requirements in IT job vacancies. "
            "Determine the experience level and whether it fits a Middle developer."
        ),
        user=(
            "Analyze experience requirements:\n\n"
            "Vacancy: {title}\n"
            "Experience: {experience}\n"
            "Description: {description}\n\n"
            "Determine:\n"
            "- DetectedExperienceLevel (Junior/Middle/Senior/Lead/Unspecified)\n"
            "- DetectedYearsOfExperience (the required years as written, e.g. \"3+\", or null)\n"
            "- IsMiddleLevel (does it suit a Middle developer with 3+ years)\n\n"
            'JSON: {"DetectedExperienceLevel": "level", "DetectedYearsOfExperience": "years", '
            '"IsMiddleLevel": boolean, "ExperienceScore": number_0_100, '
            '"Reasoning": "explanation"}'
        ),
    ),
    ENGLISH: AspectPrompt(
        system=(
            "You are an expert at analyzing English language requirements in IT job "
            "vacancies. Evaluate if B1 level is acceptable."
        ),
        user=(
            "Analyze English requirements:\n\n"
            "Vacancy: {title}\n"
            "English: {englishLevel}\n"
            "Description: {description}\n\n"
            "Determine:\n"
            "- DetectedEnglishLevel: use EXACTLY one of these values: Beginner, Elementary, "
            "PreIntermediate, Intermediate, UpperIntermediate, Advanced, Proficient, Unspecified\n"
            "- HasAcceptableEnglish (is B1 level acceptable)\n\n"
            'JSON: {"DetectedEnglishLevel": "EXACT_VALUE", "HasAcceptableEnglish": boolean, '
            '"EnglishScore": number_0_100, "Reasoning": "explanation"}'
        ),
    ),
    SUITABILITY: AspectPrompt(
        system=(
            "You are an expert at evaluating job vacancy suitability for Middle .NET "
            "Backend developer with 3+ years of experience. IMPORTANT: candidate is NOT "
            "considering Senior/Lead positions and is NOT a Fullstack developer."
        ),
        user=(
            "Evaluate suitability for Middle .NET Backend developer:\n\n"
            "Vacancy: {title}\n"
            "Company: {company}\n"
            "Description: {description}\n"
            "Location: {location}\n\n"
            "Determine:\n"
            "- IsBackendSuitable: true only if this is pure Backend position or Fullstack "
            "with strong Backend focus (NOT Frontend-focused)\n"
            "- HasNoTimeTracker: false if there are mentions of time tracking, work hours "
            "tracking\n"
            "- MatchScore: 0-100 (reduce for Senior/Lead requirements, Fullstack without "
            "Backend focus, Frontend tasks)\n\n"
            'JSON: {"IsBackendSuitable": boolean, "HasNoTimeTracker": boolean, '
            '"MatchScore": number_0_100, "AnalysisReason": "detailed explanation with '
            'justification of scores"}'
        ),
    ),
}


# ── Listing hints ───────────────────────────────────────────────────────────

# Checked in order; the first keyword found wins
_EXPERIENCE_KEYWORDS = [
    (("junior", "джуніор"), "Junior"),
    (("middle", "мідл"), "Middle"),
    (("senior", "сеньйор", "lead"), "Senior"),
]

_ENGLISH_KEYWORDS = [
    ("upper-intermediate", "Upper-Intermediate"),
    ("upper intermediate", "Upper-Intermediate"),
    ("pre-intermediate", "Pre-Intermediate"),
    ("pre intermediate", "Pre-Intermediate"),
    ("intermediate", "Intermediate"),
    ("advanced", "Advanced"),
    ("b2", "B2"),
    ("b1", "B1"),
    ("c1", "C1"),
]


def experience_hint(posting: Posting) -> str:
    """Rough experience level spotted in the title or description."""
    text = f"{posting.title} {posting.description}".lower()
    for keywords, level in _EXPERIENCE_KEYWORDS:
        if any(kw in text for kw in keywords):
            return level
    return "Not specified"


def english_hint(posting: Posting) -> str:
    """Rough English requirement spotted in the title or description."""
    text = f"{posting.title} {posting.description}".lower()
    for keyword, level in _ENGLISH_KEYWORDS:
        if keyword in text:
            return level
    return "Not specified"


# ── Rendering ───────────────────────────────────────────────────────────────


_PLACEHOLDER = re.compile(r"\{(title|company|description|location|experience|englishLevel)\}")


def render_template(template: str, posting: Posting) -> str:
    """Substitute posting fields into a template."""
    values = {
        "title": posting.title,
        "company": posting.company,
        "description": posting.description,
        "location": posting.location,
        "experience": experience_hint(posting),
        "englishLevel": english_hint(posting),
    }

    # One pass, so markers inside substituted text stay literal
    def substitute(match: re.Match) -> str:
        return values[match.group(1)] or ""

    return _PLACEHOLDER.sub(substitute, template)


def load_prompts(overrides: dict[str, dict[str, str]] | None = None) -> dict[str, AspectPrompt]:
    """Default prompts with per-aspect overrides from config applied."""
    prompts = dict(DEFAULT_PROMPTS)
    for aspect, override in (overrides or {}).items():
        if aspect not in prompts:
            logger.warning("Ignoring prompt override for unknown aspect '%s'", aspect)
            continue
        if not isinstance(override, dict):
            logger.warning("Prompt override for '%s' must be a mapping, ignoring", aspect)
            continue
        base = prompts[aspect]
        prompts[aspect] = AspectPrompt(
            system=override.get("system") or base.system,
            user=override.get("user") or base.user,
        )
        logger.debug("Using overridden prompt for aspect '%s'", aspect)
    return prompts
