"""Analysis pipeline orchestrator.

One run of the pipeline:
  1. Scan the listing source, skipping detail pages for urls already stored
  2. Recompute activity from the complete live url set
  3. Persist postings never seen before
  4. Classify every unclassified posting, in parallel, saving each result
     as soon as it completes
  5. Build the match report and append a history snapshot

Per-posting classification failures end up as fallback/error analyses and
never stop the run. StorageFatal and SourceError abort it after being
reported to the progress sink.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Iterator, Optional

from src.classifier import VacancyClassifier, fallback_analysis
from src.config import PipelineConfig
from src.errors import ConfigError, SourceError, StorageFatal
from src.matcher import AnalysisReport, build_report
from src.models import ClassificationStatus, CountHistorySnapshot, PostingRecord
from src.notify import (
    PROGRESS_ACTIVITY,
    PROGRESS_ANALYSIS_START,
    PROGRESS_DONE,
    PROGRESS_SAVE,
    PROGRESS_SCAN,
    PROGRESS_STATISTICS,
    ProgressSink,
    analysis_percent,
    safe_report,
)
from src.scrapers.base import BaseScraper
from src.scrapers.dou import DouScraper
from src.storage import VacancyStore

logger = logging.getLogger(__name__)

# Map scraper_type strings to classes
SCRAPER_REGISTRY: dict[str, type[BaseScraper]] = {
    "dou": DouScraper,
}


def build_scraper(config: PipelineConfig) -> BaseScraper:
    source = config.source
    scraper_cls = SCRAPER_REGISTRY.get(source.scraper_type)
    if not scraper_cls:
        raise ConfigError(
            f"Unknown scraper type '{source.scraper_type}' for source '{source.name}'"
        )
    logger.info("Initialized scraper: %s (%s)", source.name, source.scraper_type)
    return scraper_cls(source, config)


@dataclass
class RunSummary:
    """Counters for one pipeline run."""

    live: int = 0
    new: int = 0
    deactivated: int = 0
    classified: int = 0
    fallback: int = 0
    errored: int = 0
    cancelled: bool = False
    report: AnalysisReport = field(default_factory=AnalysisReport)
    snapshot: Optional[CountHistorySnapshot] = None

    @property
    def processed(self) -> int:
        return self.classified + self.fallback + self.errored


class AnalysisPipeline:
    """Wires a source, a store and a classifier into one run."""

    def __init__(
        self,
        store: VacancyStore,
        source: BaseScraper,
        classifier: VacancyClassifier,
        concurrency: int = 4,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.store = store
        self.source = source
        self.classifier = classifier
        self.concurrency = max(1, concurrency)
        self.progress = progress
        self.cancel_event = cancel_event or threading.Event()
        self._last_percent = 0

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        store: VacancyStore,
        client,
        progress: Optional[ProgressSink] = None,
    ) -> "AnalysisPipeline":
        classifier = VacancyClassifier.from_config(
            client, config.classification, prompt_overrides=config.prompts
        )
        return cls(
            store,
            build_scraper(config),
            classifier,
            concurrency=config.classification.concurrency,
            progress=progress,
        )

    def cancel(self) -> None:
        """Stop submitting postings; in-flight ones still finish and are saved."""
        if not self.cancel_event.is_set():
            logger.warning("Cancellation requested, finishing in-flight vacancies")
        self.cancel_event.set()

    def _report(self, message: str, percent: int) -> None:
        self._last_percent = percent
        safe_report(self.progress, message, percent)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run(self, limit: Optional[int] = None) -> RunSummary:
        """Execute one full cycle and return its counters."""
        try:
            return self._run(limit)
        except (StorageFatal, SourceError) as exc:
            logger.error("Run aborted: %s", exc)
            self._report(f"Error: {exc}", self._last_percent)
            raise

    def _run(self, limit: Optional[int]) -> RunSummary:
        summary = RunSummary()

        self._report("Scanning vacancy listing...", PROGRESS_SCAN)
        known = self.store.known_urls()
        if limit is None:
            scan = self.source.scan(known)
        else:
            scan = self.source.scan(known, limit=limit)
        summary.live = len(scan.live_urls)

        new_postings, _ = self.store.partition_by_existence(scan.postings)

        self._report(f"Updating activity for {summary.live} listed vacancies...", PROGRESS_ACTIVITY)
        summary.deactivated = self.store.recompute_activity(scan.live_urls)

        self._report(f"Saving {len(new_postings)} new vacancies...", PROGRESS_SAVE)
        saved = self.store.persist_new(new_postings)
        summary.new = len(saved)

        pending = self.store.fetch_unclassified()
        self._classify_into(summary, pending)

        self._report("Building statistics...", PROGRESS_STATISTICS)
        summary.report = build_report(self.store.fetch_classified())
        summary.snapshot = self.store.append_history_snapshot(
            total=self.store.count_all(),
            active=self.store.count_active(),
            new=summary.new,
            deactivated_this_cycle=summary.deactivated,
            matching=summary.report.matching,
            match_percentage=summary.report.match_percentage,
        )

        self._finish(summary)
        return summary

    def reanalyze(self) -> RunSummary:
        """Forget every classification and judge all active vacancies again."""
        try:
            summary = RunSummary()
            self._report("Resetting classification...", PROGRESS_SAVE)
            self.store.reset_classification()

            pending = self.store.fetch_unclassified(active_only=True)
            self._classify_into(summary, pending)

            self._report("Building statistics...", PROGRESS_STATISTICS)
            summary.report = build_report(self.store.fetch_classified())
            self._finish(summary)
            return summary
        except StorageFatal as exc:
            logger.error("Reanalysis aborted: %s", exc)
            self._report(f"Error: {exc}", self._last_percent)
            raise

    def _finish(self, summary: RunSummary) -> None:
        report = summary.report
        status = "cancelled" if summary.cancelled else "complete"
        logger.info(
            "Run %s: %d new, %d deactivated, %d classified (%d fallback, %d error), "
            "%d/%d matching (%.1f%%)",
            status, summary.new, summary.deactivated, summary.classified,
            summary.fallback, summary.errored, report.matching, report.total,
            report.match_percentage,
        )
        self._report(
            f"Analysis {status}: {report.matching} of {report.total} vacancies match",
            PROGRESS_DONE,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _classify_into(self, summary: RunSummary, records: list[PostingRecord]) -> None:
        total = len(records)
        self._report(f"Analyzing {total} vacancies...", PROGRESS_ANALYSIS_START)
        if not total:
            return

        counts = self.classify_records(records)
        summary.classified += counts[ClassificationStatus.CLASSIFIED]
        summary.fallback += counts[ClassificationStatus.FALLBACK]
        summary.errored += counts[ClassificationStatus.ERROR]
        summary.cancelled = sum(counts.values()) < total

    def classify_records(self, records: list[PostingRecord]) -> Counter:
        """Classify records in parallel, persisting on this thread as each completes.

        Returns a Counter of terminal statuses. Postings not yet submitted
        when the cancel event is set stay unclassified.
        """
        counts: Counter = Counter()
        total = len(records)
        processed = 0
        queue: Iterator[PostingRecord] = iter(records)
        in_flight: dict[Future, PostingRecord] = {}

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="classify") as pool:

            def submit_next() -> bool:
                if self.cancel_event.is_set():
                    return False
                record = next(queue, None)
                if record is None:
                    return False
                in_flight[pool.submit(self.classifier.classify, record.posting)] = record
                return True

            for _ in range(self.concurrency):
                if not submit_next():
                    break

            # A StorageFatal from apply_classification leaves this loop; the pool
            # then waits for in-flight postings without submitting more.
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    record = in_flight.pop(future)
                    analysis = self._result_of(future, record)
                    self.store.apply_classification(record.id, analysis)
                    counts[analysis.status] += 1
                    processed += 1

                    title = record.posting.title
                    if len(title) > 50:
                        title = title[:47] + "..."
                    self._report(
                        f"Analyzed {processed}/{total}: {title}",
                        analysis_percent(processed, total),
                    )
                    submit_next()

        if processed < total:
            logger.warning(
                "Classification stopped early: %d of %d vacancies left unclassified",
                total - processed, total,
            )
        return counts

    @staticmethod
    def _result_of(future: Future, record: PostingRecord):
        try:
            return future.result()
        except Exception as exc:
            logger.exception("Classifier crashed on '%s'", record.posting.title)
            return fallback_analysis(ClassificationStatus.ERROR, str(exc) or type(exc).__name__)
