"""Entry point for the vacancy analyzer.

Usage:
    python -m src.main run                    # scan, classify, report, record history
    python -m src.main run --limit 5          # only take 5 new vacancies this time
    python -m src.main run --dry-run          # validate config without scraping
    python -m src.main reanalyze              # re-judge every active vacancy
    python -m src.main report --show 20       # matches from stored data
    python -m src.main list --new             # vacancies awaiting classification
    python -m src.main stats                  # counters and statistics
    python -m src.main history --limit 10     # per-run count history
    python -m src.main mark-reviewed | reset | clear --yes
    python -m src.main apply URL --notes "sent CV"
    python -m src.main --config my.yaml ...   # use custom config
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from src.config import PipelineConfig, load_config
from src.discovery import AnalysisPipeline, RunSummary
from src.errors import ConfigError, SourceError, StorageFatal
from src.llm import create_client
from src.matcher import (
    AnalysisReport,
    build_report,
    build_statistics,
    explain_match,
    filter_records,
)
from src.models import PostingRecord, canonical_url
from src.notify import LoggingProgressSink
from src.storage import VacancyStore

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the pipeline."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="DOU.ua vacancy analyzer: discover .NET vacancies, classify them "
        "with a language model and track the ones worth applying to."
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override the database URL from config",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug-level logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one full pipeline cycle")
    run.add_argument("--limit", type=int, default=None,
                     help="Take at most N new vacancies this cycle")
    run.add_argument("--dry-run", action="store_true",
                     help="Load config and show the source without scraping")

    sub.add_parser("reanalyze", help="Reset classification and re-judge active vacancies")

    report = sub.add_parser("report", help="Print the match report")
    report.add_argument("--active-only", action="store_true",
                        help="Only count vacancies still listed on the source")
    report.add_argument("--category", type=str, default=None,
                        help="Only count vacancies of this category (e.g. Backend)")
    report.add_argument("--show", type=int, default=10,
                        help="How many matches to print (default: 10)")

    lst = sub.add_parser("list", help="List stored vacancies")
    lst.add_argument("--category", type=str, default=None)
    lst.add_argument("--matches", action="store_true", help="Only rubric matches")
    lst.add_argument("--new", action="store_true", help="Only vacancies awaiting classification")
    lst.add_argument("--unreviewed", action="store_true",
                     help="Only classified vacancies not yet marked as reviewed")
    lst.add_argument("--active-only", action="store_true")
    lst.add_argument("--show", type=int, default=50)

    sub.add_parser("stats", help="Print database counters and statistics")

    history = sub.add_parser("history", help="Print count history snapshots")
    history.add_argument("--limit", type=int, default=None,
                         help="Number of snapshots (default: history_limit from config)")

    sub.add_parser("mark-reviewed", help="Mark every classified vacancy as reviewed")
    sub.add_parser("reset", help="Forget every classification")

    clear = sub.add_parser("clear", help="Delete all vacancies and history")
    clear.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    apply = sub.add_parser("apply", help="Toggle the 'responded' mark for a vacancy")
    apply.add_argument("url", type=str)
    apply.add_argument("--notes", type=str, default=None)

    return parser.parse_args(argv)


# ── Output helpers ──────────────────────────────────────────────────────────


def _format_record(record: PostingRecord) -> str:
    posting = record.posting
    flags = []
    if not record.is_active:
        flags.append("inactive")
    if record.is_new:
        flags.append("new")
    elif not record.is_reviewed:
        flags.append("unreviewed")
    line = f"{posting.title} @ {posting.company or '?'}"
    if flags:
        line += f" [{', '.join(flags)}]"
    if record.analysis is not None:
        a = record.analysis
        line += (
            f"\n    {a.category.value}, {a.experience_level.value}, "
            f"English {a.english_level.value}, score {a.match_score}"
        )
        if a.detected_technologies:
            line += f"\n    Tech: {', '.join(a.detected_technologies[:8])}"
    line += f"\n    {posting.url}"
    return line


def print_report(report: AnalysisReport, show: int) -> None:
    print(f"Classified vacancies: {report.total}")
    print(f"Matching vacancies:   {report.matching} ({report.match_percentage:.1f}%)")
    if not report.matches:
        return
    print()
    for index, record in enumerate(report.matches[:show], start=1):
        decision = explain_match(record.analysis)
        print(f"{index:>3}. {_format_record(record)}")
        print(f"    Bonus {decision.bonus}/4: {'; '.join(decision.notes)}")
    if len(report.matches) > show:
        print(f"... and {len(report.matches) - show} more")


def print_summary(summary: RunSummary) -> None:
    print(
        f"Listed: {summary.live}  New: {summary.new}  Deactivated: {summary.deactivated}  "
        f"Classified: {summary.classified}  Fallback: {summary.fallback}  "
        f"Errors: {summary.errored}"
    )
    if summary.cancelled:
        print("Cancelled: remaining vacancies will be classified on the next run.")


# ── Commands ────────────────────────────────────────────────────────────────


def _install_cancel_handler(pipeline: AnalysisPipeline) -> None:
    def handler(signum, frame):
        pipeline.cancel()

    signal.signal(signal.SIGINT, handler)


def cmd_run(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    if args.dry_run:
        src = config.source
        logger.info("=== Dry Run ===")
        logger.info("  source %s (type=%s) %s", src.name, src.scraper_type, src.url)
        logger.info("  llm %s model=%s", config.llm.provider, config.llm.model)
        logger.info("  database %s (%d vacancies stored)", config.database_url, store.count_all())
        logger.info("Dry run complete, no scraping performed.")
        return 0

    pipeline = AnalysisPipeline.from_config(
        config, store, create_client(config.llm), progress=LoggingProgressSink()
    )
    _install_cancel_handler(pipeline)
    summary = pipeline.run(limit=args.limit)
    print_summary(summary)
    print()
    print_report(summary.report, show=10)
    return 0


def cmd_reanalyze(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    pipeline = AnalysisPipeline.from_config(
        config, store, create_client(config.llm), progress=LoggingProgressSink()
    )
    _install_cancel_handler(pipeline)
    summary = pipeline.reanalyze()
    print_summary(summary)
    return 0


def cmd_report(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    records = store.fetch_classified(active_only=args.active_only)
    if args.category:
        records = filter_records(records, category=args.category)
    print_report(build_report(records), show=args.show)
    return 0


def cmd_list(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    records = filter_records(
        store.fetch_all(),
        category=args.category,
        only_matches=args.matches,
        only_new=args.new,
        only_active=args.active_only,
        only_unreviewed=args.unreviewed,
    )
    for record in records[:args.show]:
        print(_format_record(record))
    print(f"{len(records)} vacancies")
    return 0


def cmd_stats(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    print(f"Total:      {store.count_all()}")
    print(f"Active:     {store.count_active()}")
    print(f"New:        {store.count_new()}")
    print(f"Classified: {store.count_classified()}")
    print(f"Unreviewed: {store.count_unreviewed()}")

    stats = build_statistics(store.fetch_classified())
    if not stats.total:
        return 0

    print()
    print(f"Modern stack:  {stats.with_modern_tech}")
    print(f"Time tracker:  {stats.with_time_tracker}")
    print(
        f"Levels:        junior {stats.junior_level}, middle {stats.middle_level}, "
        f"senior+lead {stats.senior_level}, unspecified {stats.unspecified_level}"
    )
    print("Categories:    " + ", ".join(f"{k} {v}" for k, v in stats.categories.items()))
    print("Criteria:      " + ", ".join(f"{k} {v}" for k, v in stats.criteria.items()))
    if stats.years_requirements:
        print("Years:         " + ", ".join(
            f"{k} {v}" for k, v in stats.years_requirements.items()
        ))
    if stats.technologies:
        top = list(stats.technologies.items())[:15]
        print("Technologies:  " + ", ".join(f"{k} {v}" for k, v in top))
    return 0


def cmd_history(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    limit = args.limit or config.history_limit
    snapshots = store.fetch_history(limit=limit)
    if not snapshots:
        print("No history yet.")
        return 0
    print(f"{'checked at':<20} {'total':>6} {'active':>6} {'new':>5} {'gone':>5} {'match':>6} {'%':>6}")
    for s in snapshots:
        print(
            f"{s.check_time:%Y-%m-%d %H:%M:%S} {s.total:>6} {s.active:>6} {s.new:>5} "
            f"{s.deactivated_this_cycle:>5} {s.matching:>6} {s.match_percentage:>6.1f}"
        )
    return 0


def cmd_mark_reviewed(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    print(f"Marked {store.mark_all_reviewed()} vacancies as reviewed.")
    return 0


def cmd_reset(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    print(f"Reset classification for {store.reset_classification()} vacancies.")
    return 0


def cmd_clear(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    if not args.yes:
        answer = input(f"Delete all {store.count_all()} vacancies and history? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return 0
    print(f"Deleted {store.clear_all()} vacancies.")
    return 0


def cmd_apply(args: argparse.Namespace, config: PipelineConfig, store: VacancyStore) -> int:
    url = canonical_url(args.url)
    record = store.get_by_url(url)
    title = record.posting.title if record else ""
    company = record.posting.company if record else ""
    if record is None:
        logger.warning("Vacancy %s is not in the database, tracking it anyway", url)

    mark = store.toggle_application(url, title=title, company=company, notes=args.notes)
    state = "responded" if mark.has_responded else "not responded"
    print(f"{mark.title or url}: marked as {state}")
    return 0


COMMANDS = {
    "run": cmd_run,
    "reanalyze": cmd_reanalyze,
    "report": cmd_report,
    "list": cmd_list,
    "stats": cmd_stats,
    "history": cmd_history,
    "mark-reviewed": cmd_mark_reviewed,
    "reset": cmd_reset,
    "clear": cmd_clear,
    "apply": cmd_apply,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        setup_logging("INFO")
        logger.error("Invalid configuration: %s", exc)
        return 1

    log_level = "DEBUG" if args.verbose else config.log_level
    setup_logging(log_level)

    if args.database_url:
        config.database_url = args.database_url

    store = None
    try:
        store = VacancyStore.from_url(config.database_url)
        return COMMANDS[args.command](args, config, store)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
    except SourceError as exc:
        logger.error("Could not read the vacancy source: %s", exc)
    except StorageFatal as exc:
        logger.error("Database error: %s", exc)
    finally:
        if store is not None:
            store.close()
    return 1


if __name__ == "__main__":
    sys.exit(main())
