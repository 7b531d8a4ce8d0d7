"""Five-aspect vacancy classifier.

Each posting is judged independently on category, technology stack,
experience, English and overall suitability. The five judge calls run
in a small thread pool; each call is tagged Ok, Fallback or Error, and
the results are folded in fixed aspect order regardless of which call
finished first.

Retry policy per aspect:
  - TransientClassificationError or ParseError: retry with exponential
    backoff (base_delay * 2**attempt), up to max_retries retries
  - PermanentClassificationError: stop immediately, tag Error
  - retries exhausted: tag Fallback

classify() never raises for a model failure. If any aspect is not Ok the
whole posting gets the conservative fallback analysis, marked
ErrorClassified when a permanent error was involved and
FallbackClassified otherwise.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from src.config import ClassificationConfig
from src.errors import (
    ParseError,
    PermanentClassificationError,
    TransientClassificationError,
)
from src.models import AnalysisResult, ClassificationStatus, Posting
from src.parsing import (
    PARSERS,
    CategoryJudgement,
    EnglishJudgement,
    ExperienceJudgement,
    SuitabilityJudgement,
    TechnologyJudgement,
)
from src.prompts import (
    ASPECTS,
    CATEGORY,
    ENGLISH,
    EXPERIENCE,
    SUITABILITY,
    TECHNOLOGY,
    AspectPrompt,
    load_prompts,
)

logger = logging.getLogger(__name__)

FALLBACK_REASON = "analysis unavailable"

# Labels used when joining per-aspect reasoning
ASPECT_LABELS = {
    CATEGORY: "Category",
    TECHNOLOGY: "Technology",
    EXPERIENCE: "Experience",
    ENGLISH: "English",
    SUITABILITY: "Suitability",
}


class AspectOutcome(str, Enum):
    OK = "Ok"
    FALLBACK = "Fallback"
    ERROR = "Error"


@dataclass
class AspectResult:
    """Outcome of judging one aspect of one posting."""

    aspect: str
    outcome: AspectOutcome
    value: Any = None
    error: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == AspectOutcome.OK


class VacancyClassifier:
    """Turns a Posting into an AnalysisResult using a completion client."""

    def __init__(
        self,
        client,
        prompts: Optional[dict[str, AspectPrompt]] = None,
        max_retries: int = 3,
        base_delay_seconds: float = 2.0,
        aspect_concurrency: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.prompts = prompts or load_prompts()
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.aspect_concurrency = max(1, aspect_concurrency)
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        client,
        config: ClassificationConfig,
        prompt_overrides: Optional[dict[str, dict[str, str]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "VacancyClassifier":
        return cls(
            client,
            prompts=load_prompts(prompt_overrides),
            max_retries=config.max_retries,
            base_delay_seconds=config.base_delay_seconds,
            aspect_concurrency=config.aspect_concurrency,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def classify(self, posting: Posting) -> AnalysisResult:
        """Judge all five aspects of a posting and fold them into one result."""
        workers = min(self.aspect_concurrency, len(ASPECTS))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="aspect") as pool:
            futures = {
                aspect: pool.submit(self.judge_aspect, aspect, posting)
                for aspect in ASPECTS
            }
            results = [futures[aspect].result() for aspect in ASPECTS]

        analysis = fold_results(results)
        if analysis.status == ClassificationStatus.CLASSIFIED:
            logger.debug(
                "Classified '%s': %s, %s, score=%d",
                posting.title, analysis.category.value,
                analysis.experience_level.value, analysis.match_score,
            )
        else:
            logger.warning(
                "Classification of '%s' ended as %s: %s",
                posting.title, analysis.status.value, analysis.analysis_reason,
            )
        return analysis

    def judge_aspect(self, aspect: str, posting: Posting) -> AspectResult:
        """Run one judge call with retries. Never raises for model failures."""
        prompt = self.prompts[aspect]
        parser = PARSERS[aspect]
        user_prompt = prompt.render(posting)
        last_error = ""

        for attempt in range(self.max_retries + 1):
            try:
                text = self.client.complete(prompt.system, user_prompt)
                value = parser(text)
                return AspectResult(aspect, AspectOutcome.OK, value=value, attempts=attempt + 1)
            except PermanentClassificationError as exc:
                logger.error(
                    "%s judge failed permanently for '%s': %s", aspect, posting.title, exc
                )
                return AspectResult(
                    aspect, AspectOutcome.ERROR, error=str(exc), attempts=attempt + 1
                )
            except (TransientClassificationError, ParseError) as exc:
                last_error = str(exc)
                if attempt >= self.max_retries:
                    break
                delay = self.base_delay_seconds * (2 ** attempt)
                logger.warning(
                    "%s judge attempt %d/%d for '%s' failed (%s), retrying in %.1fs",
                    aspect, attempt + 1, self.max_retries + 1, posting.title, exc, delay,
                )
                self._sleep(delay)
            except Exception as exc:
                logger.exception("Unexpected error judging %s for '%s'", aspect, posting.title)
                return AspectResult(
                    aspect, AspectOutcome.ERROR, error=str(exc) or type(exc).__name__,
                    attempts=attempt + 1,
                )

        logger.warning(
            "%s judge gave up on '%s' after %d attempts: %s",
            aspect, posting.title, self.max_retries + 1, last_error,
        )
        return AspectResult(
            aspect, AspectOutcome.FALLBACK, error=last_error, attempts=self.max_retries + 1
        )


# ── Folding ─────────────────────────────────────────────────────────────────


def fallback_analysis(status: ClassificationStatus, detail: str = "") -> AnalysisResult:
    """Conservative result used when any aspect could not be judged."""
    reason = f"{FALLBACK_REASON}: {detail}" if detail else FALLBACK_REASON
    return AnalysisResult(
        is_modern_stack=False,
        is_middle_level=False,
        has_acceptable_english=False,
        has_no_time_tracker=True,
        is_backend_suitable=False,
        match_score=0,
        detected_technologies=[],
        analysis_reason=reason,
        status=status,
    )


def fold_results(results: list[AspectResult]) -> AnalysisResult:
    """Merge per-aspect results, given in ASPECTS order, into one AnalysisResult."""
    failed = [r for r in results if not r.ok]
    if failed:
        status = (
            ClassificationStatus.ERROR
            if any(r.outcome == AspectOutcome.ERROR for r in failed)
            else ClassificationStatus.FALLBACK
        )
        detail = "; ".join(f"{ASPECT_LABELS[r.aspect]}: {r.error}" for r in failed)
        return fallback_analysis(status, detail)

    by_aspect = {r.aspect: r.value for r in results}
    category: CategoryJudgement = by_aspect[CATEGORY]
    technology: TechnologyJudgement = by_aspect[TECHNOLOGY]
    experience: ExperienceJudgement = by_aspect[EXPERIENCE]
    english: EnglishJudgement = by_aspect[ENGLISH]
    suitability: SuitabilityJudgement = by_aspect[SUITABILITY]

    reasons = [
        (CATEGORY, category.reasoning),
        (TECHNOLOGY, technology.reasoning),
        (EXPERIENCE, experience.reasoning),
        (ENGLISH, english.reasoning),
        (SUITABILITY, suitability.analysis_reason),
    ]
    combined = " | ".join(f"{ASPECT_LABELS[a]}: {text}" for a, text in reasons if text)

    return AnalysisResult(
        category=category.category,
        experience_level=experience.experience_level,
        years_of_experience_text=experience.years_of_experience,
        english_level=english.english_level,
        is_modern_stack=technology.is_modern_stack,
        is_middle_level=experience.is_middle_level,
        has_acceptable_english=english.has_acceptable_english,
        has_no_time_tracker=suitability.has_no_time_tracker,
        is_backend_suitable=suitability.is_backend_suitable,
        match_score=suitability.match_score,
        detected_technologies=list(technology.detected_technologies),
        analysis_reason=combined,
        status=ClassificationStatus.CLASSIFIED,
    )
