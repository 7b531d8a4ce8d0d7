"""Tests for the analysis pipeline orchestrator.

The source and classifier are replaced with in-process fakes; the store
is a real in-memory SQLite database.
"""

import threading

import pytest

from src.config import PipelineConfig, ScraperConfig
from src.discovery import AnalysisPipeline, build_scraper
from src.errors import ConfigError, SourceError, StorageFatal
from src.models import Category, ClassificationStatus
from src.notify import RecordingProgressSink
from src.scrapers.base import ScanResult
from src.scrapers.dou import DouScraper

from conftest import make_analysis, make_posting


class FakeSource:
    """Lists a fixed set of postings, honouring known urls like a real scraper."""

    def __init__(self, postings):
        self.postings = list(postings)
        self.calls = []
        self.error = None

    def scan(self, known_urls, limit=None):
        self.calls.append((set(known_urls), limit))
        if self.error is not None:
            raise self.error
        unknown = [p for p in self.postings if p.url not in known_urls]
        if limit is not None:
            unknown = unknown[:limit]
        return ScanResult(postings=unknown, live_urls={p.url for p in self.postings})


class FakeClassifier:
    def __init__(self, analysis=None, fail_on=(), on_call=None):
        self.analysis = analysis or make_analysis()
        self.fail_on = set(fail_on)
        self.on_call = on_call
        self.seen = []
        self._lock = threading.Lock()

    def classify(self, posting):
        with self._lock:
            self.seen.append(posting.url)
        if self.on_call is not None:
            self.on_call(posting)
        if posting.url in self.fail_on:
            raise RuntimeError("judge exploded")
        return self.analysis


@pytest.fixture
def postings():
    return [make_posting(n) for n in range(1, 4)]


@pytest.fixture
def source(postings):
    return FakeSource(postings)


@pytest.fixture
def sink():
    return RecordingProgressSink()


def make_pipeline(store, source, classifier=None, **kwargs):
    return AnalysisPipeline(store, source, classifier or FakeClassifier(), **kwargs)


# ── Full runs ───────────────────────────────────────────────────────────────


class TestRun:

    def test_first_run_persists_and_classifies(self, store, source):
        summary = make_pipeline(store, source).run()

        assert summary.live == 3
        assert summary.new == 3
        assert summary.classified == 3
        assert summary.processed == 3
        assert not summary.cancelled
        assert summary.report.total == 3
        assert summary.report.matching == 3
        assert store.count_new() == 0
        assert store.count_classified() == 3

    def test_second_run_is_idempotent(self, store, source):
        classifier = FakeClassifier()
        pipeline = make_pipeline(store, source, classifier)
        pipeline.run()
        summary = pipeline.run()

        assert summary.new == 0
        assert summary.processed == 0
        assert store.count_all() == 3
        assert len(classifier.seen) == 3
        # Second scan was told about every stored url
        assert source.calls[1][0] == {p.url for p in source.postings}

    def test_history_snapshot_per_run(self, store, source):
        pipeline = make_pipeline(store, source)
        first = pipeline.run().snapshot

        source.postings = source.postings[:2]
        second = pipeline.run().snapshot

        assert (first.total, first.active, first.new, first.deactivated_this_cycle) == (3, 3, 3, 0)
        assert (second.total, second.active, second.new, second.deactivated_this_cycle) == (3, 2, 0, 1)
        assert second.matching == 3
        assert second.match_percentage == 100.0
        assert [s.id for s in store.fetch_history()] == [second.id, first.id]

    def test_deactivation(self, store, source, postings):
        pipeline = make_pipeline(store, source)
        pipeline.run()

        source.postings = postings[1:]
        summary = pipeline.run()

        assert summary.deactivated == 1
        assert store.get_by_url(postings[0].url).is_active is False
        assert store.count_active() == 2

    def test_limit_caps_new_vacancies(self, store, source):
        pipeline = make_pipeline(store, source)

        summary = pipeline.run(limit=1)
        assert summary.new == 1
        assert summary.live == 3
        assert source.calls[0][1] == 1

        summary = pipeline.run()
        assert summary.new == 2
        assert store.count_classified() == 3

    def test_classifier_crash_is_stored_as_error(self, store, source, postings):
        classifier = FakeClassifier(fail_on={postings[1].url})
        summary = make_pipeline(store, source, classifier).run()

        assert summary.classified == 2
        assert summary.errored == 1
        record = store.get_by_url(postings[1].url)
        assert record.analysis.status == ClassificationStatus.ERROR
        assert "judge exploded" in record.analysis.analysis_reason
        assert record.is_new is False
        assert summary.report.matching == 2

    def test_parallel_classification(self, store):
        many = FakeSource([make_posting(n) for n in range(1, 21)])
        summary = make_pipeline(store, many, concurrency=4).run()

        assert summary.classified == 20
        assert store.count_new() == 0


# ── Progress ────────────────────────────────────────────────────────────────


class TestProgress:

    def test_percent_milestones(self, store, source, sink):
        make_pipeline(store, source, progress=sink).run()

        percents = sink.percents
        assert percents[0] == 10
        assert percents[-1] == 100
        assert percents == sorted(percents)
        for milestone in (20, 25, 30, 90):
            assert milestone in percents
        analyzed = [m for m, _ in sink.events if m.startswith("Analyzed ")]
        assert len(analyzed) == 3
        assert analyzed[-1].startswith("Analyzed 3/3")

    def test_failing_sink_does_not_affect_run(self, store, source):
        def broken(message, percent):
            raise ValueError("display gone")

        summary = make_pipeline(store, source, progress=broken).run()

        assert summary.classified == 3
        assert store.count_classified() == 3
        assert len(store.fetch_history()) == 1


# ── Cancellation and failures ───────────────────────────────────────────────


class TestCancellation:

    def test_cancel_leaves_rest_unclassified(self, store, source):
        pipeline = None

        def cancel_after_first(posting):
            pipeline.cancel()

        classifier = FakeClassifier(on_call=cancel_after_first)
        pipeline = make_pipeline(store, source, classifier, concurrency=1)
        summary = pipeline.run()

        assert summary.cancelled
        assert summary.classified == 1
        assert store.count_classified() == 1
        assert store.count_new() == 2
        # Already-persisted work survives; the snapshot is still written
        assert len(store.fetch_history()) == 1

    def test_remaining_vacancies_classified_next_run(self, store, source):
        first = make_pipeline(store, source, FakeClassifier(), cancel_event=threading.Event())
        first.cancel_event.set()
        summary = first.run()
        assert summary.processed == 0
        assert summary.cancelled

        summary = make_pipeline(store, source).run()
        assert summary.new == 0
        assert summary.classified == 3


class TestFailures:

    def test_source_error_aborts_before_writing(self, store, source, sink):
        source.error = SourceError("listing unavailable")

        with pytest.raises(SourceError):
            make_pipeline(store, source, progress=sink).run()

        assert store.count_all() == 0
        assert store.fetch_history() == []
        assert sink.events[-1][0].startswith("Error:")

    def test_storage_fatal_propagates(self, store, source, sink, monkeypatch):
        def broken_write(record_id, analysis):
            raise StorageFatal("disk full")

        monkeypatch.setattr(store, "apply_classification", broken_write)
        pipeline = make_pipeline(store, source, progress=sink, concurrency=1)

        with pytest.raises(StorageFatal):
            pipeline.run()

        assert sink.events[-1][0] == "Error: disk full"
        assert store.fetch_history() == []

    def test_pipeline_usable_after_storage_fatal(self, store, source, monkeypatch):
        def broken_write(record_id, analysis):
            raise StorageFatal("disk full")

        pipeline = make_pipeline(store, source, concurrency=1)
        monkeypatch.setattr(store, "apply_classification", broken_write)
        with pytest.raises(StorageFatal):
            pipeline.run()
        monkeypatch.undo()

        assert not pipeline.cancel_event.is_set()
        summary = pipeline.run()
        assert summary.classified == 3
        assert not summary.cancelled

    def test_source_error_keeps_stored_vacancies_active(self, store, source):
        pipeline = make_pipeline(store, source)
        pipeline.run()

        source.error = SourceError("listing contained no vacancies")
        with pytest.raises(SourceError):
            pipeline.run()

        assert store.count_active() == 3
        assert len(store.fetch_history()) == 1


# ── Reanalysis ──────────────────────────────────────────────────────────────


class TestReanalyze:

    def test_rejudges_active_vacancies_only(self, store, source, postings):
        make_pipeline(store, source).run()
        source.postings = postings[:2]
        make_pipeline(store, source).run()

        weak = make_analysis(category=Category.FULLSTACK, match_score=40)
        classifier = FakeClassifier(analysis=weak)
        summary = make_pipeline(store, source, classifier).reanalyze()

        assert summary.classified == 2
        assert sorted(classifier.seen) == sorted(p.url for p in postings[:2])
        assert summary.report.total == 2
        assert summary.report.matching == 0
        # Inactive vacancy was reset but not re-judged
        inactive = store.get_by_url(postings[2].url)
        assert inactive.analysis is None
        assert inactive.is_new is True

    def test_appends_no_history(self, store, source):
        make_pipeline(store, source).run()
        make_pipeline(store, source).reanalyze()
        assert len(store.fetch_history()) == 1


# ── Wiring ──────────────────────────────────────────────────────────────────


def test_build_scraper_known_type():
    assert isinstance(build_scraper(PipelineConfig()), DouScraper)


def test_build_scraper_unknown_type():
    config = PipelineConfig(source=ScraperConfig(name="x", scraper_type="djinni"))
    with pytest.raises(ConfigError, match="djinni"):
        build_scraper(config)


def test_from_config(store):
    config = PipelineConfig()
    config.classification.concurrency = 2
    pipeline = AnalysisPipeline.from_config(config, store, client=object())

    assert isinstance(pipeline.source, DouScraper)
    assert pipeline.concurrency == 2
    assert pipeline.classifier.max_retries == 3
