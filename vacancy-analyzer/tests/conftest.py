"""Shared fixtures: an in-memory store and posting/analysis factories."""

import pytest

from src.models import (
    AnalysisResult,
    Category,
    ClassificationStatus,
    EnglishLevel,
    ExperienceLevel,
    Posting,
)
from src.storage import VacancyStore


@pytest.fixture
def store():
    store = VacancyStore.from_url("sqlite://")
    yield store
    store.close()


def make_posting(n: int = 1, **overrides) -> Posting:
    fields = {
        "title": f".NET Developer #{n}",
        "company": f"Company {n}",
        "url": f"https://jobs.dou.ua/companies/company-{n}/vacancies/{1000 + n}/",
        "description": "ASP.NET Core, EF Core, PostgreSQL, Docker. 3+ years. English B1.",
        "location": "Київ, віддалено",
        "is_remote": True,
    }
    fields.update(overrides)
    return Posting(**fields)


def make_analysis(**overrides) -> AnalysisResult:
    fields = {
        "category": Category.BACKEND,
        "experience_level": ExperienceLevel.MIDDLE,
        "years_of_experience_text": "3+",
        "english_level": EnglishLevel.INTERMEDIATE,
        "is_modern_stack": True,
        "is_middle_level": True,
        "has_acceptable_english": True,
        "has_no_time_tracker": True,
        "is_backend_suitable": True,
        "match_score": 80,
        "detected_technologies": ["ASP.NET Core", "EF Core", "PostgreSQL"],
        "analysis_reason": "Category: backend service",
        "status": ClassificationStatus.CLASSIFIED,
    }
    fields.update(overrides)
    return AnalysisResult(**fields)
