"""SQLAlchemy tables and engine setup for the vacancy store."""

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class VacancyRow(Base):
    """One stored posting. ``url`` is the dedup key."""

    __tablename__ = "vacancies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Scraped facts
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    company: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True, index=True)
    published_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    salary: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_remote: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    location: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    # Lifecycle
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    is_new: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    last_classified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Classification (all null until classified)
    classification_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    experience_level: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    years_of_experience_text: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    english_level: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    is_modern_stack: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    is_middle_level: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    has_acceptable_english: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    has_no_time_tracker: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    is_backend_suitable: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    match_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    detected_technologies: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    analysis_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<VacancyRow(id={self.id}, title={self.title!r}, url={self.url!r})>"


# Every column that apply/reset classification touches, in one place.
CLASSIFICATION_COLUMNS = (
    "classification_status",
    "category",
    "experience_level",
    "years_of_experience_text",
    "english_level",
    "is_modern_stack",
    "is_middle_level",
    "has_acceptable_english",
    "has_no_time_tracker",
    "is_backend_suitable",
    "match_score",
    "detected_technologies",
    "analysis_reason",
)


class CountHistoryRow(Base):
    """Append-only per-cycle counters."""

    __tablename__ = "vacancy_count_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    check_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[int] = mapped_column(Integer, nullable=False)
    new: Mapped[int] = mapped_column(Integer, nullable=False)
    deactivated_this_cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    matching: Mapped[int] = mapped_column(Integer, nullable=False)
    match_percentage: Mapped[float] = mapped_column(Float, nullable=False)


class ApplicationRow(Base):
    """Tracks whether the user responded to a vacancy."""

    __tablename__ = "vacancy_applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vacancy_url: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    company: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    has_responded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine and make sure the tables exist.

    In-memory SQLite shares one connection so every session sees the
    same database. File-backed SQLite gets its parent directory created.
    """
    url = make_url(database_url)
    kwargs: dict = {"echo": echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, **kwargs)

    if url.get_backend_name() == "sqlite":
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    Base.metadata.create_all(engine)
    return engine
