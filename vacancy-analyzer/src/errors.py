"""Exception taxonomy for the vacancy analyzer.

Classification errors are raised by the completion client and the judge
output parser, and are always absorbed by the classifier into fallback or
error results. Storage and source errors propagate and abort the run.
"""

from __future__ import annotations


class VacancyAnalyzerError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(VacancyAnalyzerError):
    """Configuration is missing or invalid."""


class SourceError(VacancyAnalyzerError):
    """The listing source could not be read."""


# ── Classification ──────────────────────────────────────────────────────────


class ClassificationError(VacancyAnalyzerError):
    """Base class for failures while judging a single aspect."""


class TransientClassificationError(ClassificationError):
    """Overload, rate limit or network hiccup. Safe to retry."""


class PermanentClassificationError(ClassificationError):
    """Auth failure, bad request or malformed envelope. Not retried."""


class ParseError(ClassificationError):
    """Judge output contained no usable JSON object."""

    def __init__(self, message: str, text: str = ""):
        super().__init__(message)
        self.text = text


# ── Storage ─────────────────────────────────────────────────────────────────


class StorageError(VacancyAnalyzerError):
    """Base class for persistence failures."""


class StorageConflict(StorageError):
    """A unique constraint was hit by a concurrent insert."""

    def __init__(self, url: str):
        super().__init__(f"Vacancy already stored: {url}")
        self.url = url


class StorageFatal(StorageError):
    """A write or read failed in a way that must abort the run."""
