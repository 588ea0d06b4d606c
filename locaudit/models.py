from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from locaudit.utils import utcnow


class Base(DeclarativeBase):
    pass


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    base_url: Mapped[str] = mapped_column(String(500), default="")
    source_locale: Mapped[str] = mapped_column(String(35), nullable=False)
    target_locales_json: Mapped[str] = mapped_column(Text, default="[]")
    rubric_config_json: Mapped[str] = mapped_column(Text, default="{}")
    custom_rules: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    schedule: Mapped[Schedule | None] = relationship("Schedule", back_populates="project", cascade="all, delete-orphan", uselist=False)
    tracked_urls: Mapped[list[TrackedUrl]] = relationship("TrackedUrl", back_populates="project", cascade="all, delete-orphan", order_by="TrackedUrl.id")
    audits: Mapped[list[Audit]] = relationship("Audit", back_populates="project", cascade="all, delete-orphan")
    failures: Mapped[list[ScheduleFailure]] = relationship("ScheduleFailure", back_populates="project", cascade="all, delete-orphan")


class Schedule(Base):
    __tablename__ = "schedules"
    __table_args__ = (UniqueConstraint("project_id", name="uq_schedules_project"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    frequency: Mapped[str] = mapped_column(String(10), nullable=False)  # daily | weekly | monthly
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0=Sunday .. 6=Saturday
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 1..31
    time_of_day: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM local
    # Instants are naive UTC
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    project: Mapped[Project] = relationship("Project", back_populates="schedule")


class TrackedUrl(Base):
    __tablename__ = "tracked_urls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    accept_language: Mapped[str | None] = mapped_column(String(200), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    project: Mapped[Project] = relationship("Project", back_populates="tracked_urls")


class Audit(Base):
    """One finished audit. Rows are inserted and deleted, never updated."""
    __tablename__ = "audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    input_type: Mapped[str] = mapped_column(String(10), nullable=False)  # url | file
    input_ref: Mapped[str] = mapped_column(String(2000), nullable=False)
    extracted_text: Mapped[str] = mapped_column(Text, default="")
    category_results_json: Mapped[str] = mapped_column(Text, default="[]")
    final_score: Mapped[int] = mapped_column(Integer, nullable=False)
    html_snapshot: Mapped[str] = mapped_column(Text, default="")
    rubric_weights_json: Mapped[str] = mapped_column(Text, default="{}")
    schedule_run_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    project: Mapped[Project] = relationship("Project", back_populates="audits")


class ScheduleFailure(Base):
    """A tracked URL that failed during a scheduled run, with the error text."""
    __tablename__ = "schedule_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    schedule_run_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    project: Mapped[Project] = relationship("Project", back_populates="failures")
