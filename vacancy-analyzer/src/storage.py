"""Storage module for the vacancy analyzer.

Owns the canonical vacancy records, keyed by URL, plus two side tables:

1. **Vacancies** (`vacancies`)
   - One row per URL ever seen; the URL column carries a unique constraint
   - Created on first sighting, mutated by classification and by the
     activity recompute, deleted only by an explicit wipe

2. **Count history** (`vacancy_count_history`)
   - Append-only log of per-cycle counters

3. **Applications** (`vacancy_applications`)
   - Whether the user responded to a vacancy, toggled by hand

Every public method runs in its own transaction. Readers get immutable
PostingRecord snapshots, so nobody ever sees a half-written
classification. Unique-constraint races on insert are resolved by
re-reading the winner; anything else that goes wrong with the database
is raised as StorageFatal.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterable, Iterator

from sqlalchemy import func, select, update, delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.db import (
    CLASSIFICATION_COLUMNS,
    ApplicationRow,
    CountHistoryRow,
    VacancyRow,
    create_db_engine,
    utcnow,
)
from src.errors import StorageConflict, StorageFatal
from src.models import (
    AnalysisResult,
    ApplicationMark,
    Category,
    ClassificationStatus,
    CountHistorySnapshot,
    EnglishLevel,
    ExperienceLevel,
    Posting,
    PostingRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 30


class VacancyStore:
    """Dedup and persistence layer over a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> "VacancyStore":
        try:
            engine = create_db_engine(database_url)
        except SQLAlchemyError as exc:
            raise StorageFatal(f"Could not open database {database_url}: {exc}") from exc
        return cls(engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _transaction(self, what: str) -> Iterator[Session]:
        """Session scoped to one transaction; database errors become StorageFatal."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Storage failure during %s: %s", what, exc)
            raise StorageFatal(f"Storage failure during {what}: {exc}") from exc
        finally:
            session.close()

    # ── Dedup ───────────────────────────────────────────────────────────────

    def known_urls(self) -> set[str]:
        """Every URL the store has ever recorded."""
        with self._transaction("known_urls") as session:
            return set(session.scalars(select(VacancyRow.url)).all())

    def partition_by_existence(
        self, raw_postings: Iterable[Posting]
    ) -> tuple[list[Posting], set[str]]:
        """Split scraped postings into not-yet-stored ones and the known-url set.

        Duplicates inside the batch collapse to their first occurrence.
        """
        known = self.known_urls()
        new_postings: list[Posting] = []
        batch_urls: set[str] = set()

        for posting in raw_postings:
            if not posting.url or posting.url in known or posting.url in batch_urls:
                continue
            batch_urls.add(posting.url)
            new_postings.append(posting)

        logger.debug(
            "Partitioned postings: %d new, %d known urls", len(new_postings), len(known)
        )
        return new_postings, known

    def persist_new(self, postings: Iterable[Posting]) -> list[PostingRecord]:
        """Insert each posting in its own transaction.

        If another writer got there first, the existing record is re-read
        and returned in place of the insert.
        """
        records: list[PostingRecord] = []
        inserted = 0

        for posting in postings:
            try:
                records.append(self._insert_one(posting))
                inserted += 1
            except StorageConflict:
                existing = self._reread_after_conflict(posting.url)
                logger.warning(
                    "Vacancy inserted concurrently, using stored copy: %s (id=%d)",
                    posting.title, existing.id,
                )
                records.append(existing)
            except StorageFatal:
                # One retry through a fresh read handles a transient lock
                existing = self.get_by_url(posting.url)
                if existing is not None:
                    records.append(existing)
                    continue
                try:
                    records.append(self._insert_one(posting))
                    inserted += 1
                except StorageConflict:
                    records.append(self._reread_after_conflict(posting.url))

        logger.info("Persisted %d new vacancies (%d processed)", inserted, len(records))
        return records

    def _insert_one(self, posting: Posting) -> PostingRecord:
        try:
            with self._transaction("insert vacancy") as session:
                row = VacancyRow(
                    title=posting.title,
                    company=posting.company,
                    description=posting.description,
                    url=posting.url,
                    published_date=posting.published_date,
                    salary=posting.salary,
                    is_remote=posting.is_remote,
                    location=posting.location,
                    created_at=utcnow(),
                    is_new=True,
                    is_active=True,
                    last_classified_at=None,
                    reviewed_at=None,
                )
                session.add(row)
                session.flush()
                record = _to_record(row)
        except IntegrityError as exc:
            raise StorageConflict(posting.url) from exc
        logger.debug("Inserted vacancy %s (id=%d)", posting.url, record.id)
        return record

    def _reread_after_conflict(self, url: str) -> PostingRecord:
        existing = self.get_by_url(url)
        if existing is None:
            raise StorageFatal(f"Unique constraint hit for {url} but no row found on re-read")
        return existing

    # ── Activity ────────────────────────────────────────────────────────────

    def recompute_activity(self, current_urls: Iterable[str]) -> int:
        """Deactivate every active vacancy missing from the live url set.

        Never reactivates anything.
        """
        live = list(set(current_urls))
        with self._transaction("recompute_activity") as session:
            result = session.execute(
                update(VacancyRow)
                .where(VacancyRow.is_active.is_(True))
                .where(VacancyRow.url.not_in(live))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            deactivated = result.rowcount or 0

        if deactivated:
            logger.info("Deactivated %d vacancies that are no longer listed", deactivated)
        return deactivated

    # ── Read-only projections ───────────────────────────────────────────────

    def _fetch(self, what: str, *criteria) -> list[PostingRecord]:
        stmt = select(VacancyRow).order_by(VacancyRow.created_at, VacancyRow.id)
        for criterion in criteria:
            stmt = stmt.where(criterion)
        with self._transaction(what) as session:
            return [_to_record(row) for row in session.scalars(stmt).all()]

    def _count(self, what: str, *criteria) -> int:
        stmt = select(func.count(VacancyRow.id))
        for criterion in criteria:
            stmt = stmt.where(criterion)
        with self._transaction(what) as session:
            return int(session.scalar(stmt) or 0)

    def fetch_all(self) -> list[PostingRecord]:
        return self._fetch("fetch_all")

    def fetch_unclassified(self, active_only: bool = False) -> list[PostingRecord]:
        criteria = [VacancyRow.last_classified_at.is_(None)]
        if active_only:
            criteria.append(VacancyRow.is_active.is_(True))
        return self._fetch("fetch_unclassified", *criteria)

    def fetch_classified(self, active_only: bool = False) -> list[PostingRecord]:
        criteria = [VacancyRow.last_classified_at.is_not(None)]
        if active_only:
            criteria.append(VacancyRow.is_active.is_(True))
        return self._fetch("fetch_classified", *criteria)

    def fetch_active(self) -> list[PostingRecord]:
        return self._fetch("fetch_active", VacancyRow.is_active.is_(True))

    def fetch_new(self) -> list[PostingRecord]:
        return self._fetch("fetch_new", VacancyRow.is_new.is_(True), VacancyRow.is_active.is_(True))

    def fetch_unreviewed(self) -> list[PostingRecord]:
        """Active classified vacancies the user has not marked as reviewed."""
        return self._fetch(
            "fetch_unreviewed",
            VacancyRow.last_classified_at.is_not(None),
            VacancyRow.reviewed_at.is_(None),
            VacancyRow.is_active.is_(True),
        )

    def get_by_url(self, url: str) -> PostingRecord | None:
        with self._transaction("get_by_url") as session:
            row = session.scalars(select(VacancyRow).where(VacancyRow.url == url)).first()
            return _to_record(row) if row is not None else None

    def count_all(self) -> int:
        return self._count("count_all")

    def count_active(self) -> int:
        return self._count("count_active", VacancyRow.is_active.is_(True))

    def count_new(self) -> int:
        return self._count("count_new", VacancyRow.is_new.is_(True))

    def count_classified(self) -> int:
        return self._count("count_classified", VacancyRow.last_classified_at.is_not(None))

    def count_unreviewed(self) -> int:
        return self._count(
            "count_unreviewed",
            VacancyRow.last_classified_at.is_not(None),
            VacancyRow.reviewed_at.is_(None),
        )

    # ── Classification ──────────────────────────────────────────────────────

    def apply_classification(self, record_id: int, analysis: AnalysisResult) -> PostingRecord:
        """Write every classification field at once and clear the new flag.

        A failed write is retried once after re-reading the row.
        """
        try:
            return self._apply_classification_once(record_id, analysis)
        except StorageFatal as exc:
            logger.warning("Retrying classification write for id=%d: %s", record_id, exc)
            return self._apply_classification_once(record_id, analysis)

    def _apply_classification_once(self, record_id: int, analysis: AnalysisResult) -> PostingRecord:
        values = _analysis_to_columns(analysis)
        with self._transaction("apply_classification") as session:
            row = session.get(VacancyRow, record_id)
            if row is None:
                raise StorageFatal(f"Vacancy id={record_id} vanished before classification was saved")
            for column, value in values.items():
                setattr(row, column, value)
            row.last_classified_at = utcnow()
            row.is_new = False
            session.flush()
            return _to_record(row)

    def reset_classification(self) -> int:
        """Null every classification field so all vacancies get re-judged.

        is_new goes back to true together with last_classified_at.
        """
        values = {column: None for column in CLASSIFICATION_COLUMNS}
        values.update(last_classified_at=None, is_new=True, reviewed_at=None)
        with self._transaction("reset_classification") as session:
            result = session.execute(
                update(VacancyRow)
                .where(VacancyRow.last_classified_at.is_not(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
        logger.info("Reset classification for %d vacancies", count)
        return count

    # ── Administrative ──────────────────────────────────────────────────────

    def mark_all_reviewed(self) -> int:
        """Stamp reviewed_at on every classified vacancy not yet reviewed.

        is_new is left alone: it tracks pending classification, and
        unclassified vacancies have nothing to review yet.
        """
        with self._transaction("mark_all_reviewed") as session:
            result = session.execute(
                update(VacancyRow)
                .where(VacancyRow.last_classified_at.is_not(None))
                .where(VacancyRow.reviewed_at.is_(None))
                .values(reviewed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
        logger.info("Marked %d vacancies as reviewed", count)
        return count

    def clear_all(self) -> int:
        """Delete every vacancy and history row. Application marks survive."""
        with self._transaction("clear_all") as session:
            count = int(session.scalar(select(func.count(VacancyRow.id))) or 0)
            session.execute(delete(VacancyRow))
            session.execute(delete(CountHistoryRow))
        logger.info("Cleared %d vacancies from database", count)
        return count

    # ── History ─────────────────────────────────────────────────────────────

    def append_history_snapshot(
        self,
        total: int,
        active: int,
        new: int,
        deactivated_this_cycle: int,
        matching: int,
        match_percentage: float,
    ) -> CountHistorySnapshot:
        with self._transaction("append_history_snapshot") as session:
            row = CountHistoryRow(
                check_time=utcnow(),
                total=total,
                active=active,
                new=new,
                deactivated_this_cycle=deactivated_this_cycle,
                matching=matching,
                match_percentage=round(float(match_percentage), 2),
            )
            session.add(row)
            session.flush()
            snapshot = _to_snapshot(row)

        logger.info(
            "Recorded history: total=%d active=%d new=%d deactivated=%d matching=%d (%.1f%%)",
            total, active, new, deactivated_this_cycle, matching, match_percentage,
        )
        return snapshot

    def fetch_history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> list[CountHistorySnapshot]:
        """Newest snapshots first."""
        stmt = (
            select(CountHistoryRow)
            .order_by(CountHistoryRow.check_time.desc(), CountHistoryRow.id.desc())
            .limit(limit)
        )
        with self._transaction("fetch_history") as session:
            return [_to_snapshot(row) for row in session.scalars(stmt).all()]

    # ── Applications ────────────────────────────────────────────────────────

    def toggle_application(
        self, url: str, title: str = "", company: str = "", notes: str | None = None
    ) -> ApplicationMark:
        """Flip the responded mark for a vacancy, creating it on first use."""
        now = utcnow()
        with self._transaction("toggle_application") as session:
            row = session.scalars(
                select(ApplicationRow).where(ApplicationRow.vacancy_url == url)
            ).first()
            if row is None:
                row = ApplicationRow(
                    vacancy_url=url,
                    title=title,
                    company=company,
                    has_responded=True,
                    responded_at=now,
                    notes=notes,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            else:
                row.has_responded = not row.has_responded
                row.responded_at = now if row.has_responded else None
                row.updated_at = now
                if notes is not None:
                    row.notes = notes
            session.flush()
            return _to_mark(row)

    def fetch_applications(self) -> list[ApplicationMark]:
        stmt = select(ApplicationRow).order_by(ApplicationRow.updated_at.desc())
        with self._transaction("fetch_applications") as session:
            return [_to_mark(row) for row in session.scalars(stmt).all()]


# ── Row mapping ─────────────────────────────────────────────────────────────


def _analysis_to_columns(analysis: AnalysisResult) -> dict:
    return {
        "classification_status": analysis.status.value,
        "category": analysis.category.value,
        "experience_level": analysis.experience_level.value,
        "years_of_experience_text": analysis.years_of_experience_text,
        "english_level": analysis.english_level.value,
        "is_modern_stack": analysis.is_modern_stack,
        "is_middle_level": analysis.is_middle_level,
        "has_acceptable_english": analysis.has_acceptable_english,
        "has_no_time_tracker": analysis.has_no_time_tracker,
        "is_backend_suitable": analysis.is_backend_suitable,
        "match_score": int(analysis.match_score),
        "detected_technologies": list(analysis.detected_technologies),
        "analysis_reason": analysis.analysis_reason,
    }


def _to_record(row: VacancyRow) -> PostingRecord:
    posting = Posting(
        title=row.title,
        company=row.company,
        url=row.url,
        description=row.description,
        published_date=row.published_date,
        salary=row.salary,
        is_remote=row.is_remote,
        location=row.location,
    )

    analysis = None
    if row.last_classified_at is not None:
        analysis = AnalysisResult(
            category=Category(row.category or Category.OTHER.value),
            experience_level=ExperienceLevel(row.experience_level or ExperienceLevel.UNSPECIFIED.value),
            years_of_experience_text=row.years_of_experience_text,
            english_level=EnglishLevel(row.english_level or EnglishLevel.UNSPECIFIED.value),
            is_modern_stack=bool(row.is_modern_stack),
            is_middle_level=bool(row.is_middle_level),
            has_acceptable_english=bool(row.has_acceptable_english),
            has_no_time_tracker=True if row.has_no_time_tracker is None else row.has_no_time_tracker,
            is_backend_suitable=bool(row.is_backend_suitable),
            match_score=row.match_score or 0,
            detected_technologies=list(row.detected_technologies or []),
            analysis_reason=row.analysis_reason or "",
            status=ClassificationStatus(row.classification_status or ClassificationStatus.CLASSIFIED.value),
        )

    return PostingRecord(
        id=row.id,
        posting=posting,
        created_at=row.created_at,
        is_new=row.is_new,
        is_active=row.is_active,
        last_classified_at=row.last_classified_at,
        analysis=analysis,
        reviewed_at=row.reviewed_at,
    )


def _to_snapshot(row: CountHistoryRow) -> CountHistorySnapshot:
    return CountHistorySnapshot(
        id=row.id,
        check_time=row.check_time,
        total=row.total,
        active=row.active,
        new=row.new,
        deactivated_this_cycle=row.deactivated_this_cycle,
        matching=row.matching,
        match_percentage=row.match_percentage,
    )


def _to_mark(row: ApplicationRow) -> ApplicationMark:
    return ApplicationMark(
        vacancy_url=row.vacancy_url,
        title=row.title,
        company=row.company,
        has_responded=row.has_responded,
        responded_at=row.responded_at,
        notes=row.notes,
        updated_at=row.updated_at,
    )
