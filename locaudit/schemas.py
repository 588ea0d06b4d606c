"""Pydantic request/response schemas for the locaudit API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from locaudit.recurrence import parse_time_of_day


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    source_locale: str = Field(min_length=1)
    target_locales: list[str] = []
    rubric_config: dict[str, Any] | None = None
    custom_rules: str = ""
    base_url: str = ""


class ProjectUpdate(BaseModel):
    name: str | None = None
    base_url: str | None = None
    source_locale: str | None = None
    target_locales: list[str] | None = None
    rubric_config: dict[str, Any] | None = None
    custom_rules: str | None = None


class ProjectOut(BaseModel):
    id: int
    name: str
    base_url: str
    source_locale: str
    target_locales: list[str]
    rubric_config: dict[str, int]
    custom_rules: str
    created_at: str | None = None


class ScheduleConfig(BaseModel):
    enabled: bool = True
    frequency: Literal["daily", "weekly", "monthly"]
    day_of_week: int | None = Field(None, ge=0, le=6)
    day_of_month: int | None = Field(None, ge=1, le=31)
    time_of_day: str

    @field_validator("time_of_day")
    @classmethod
    def _check_time(cls, v: str) -> str:
        hour, minute = parse_time_of_day(v)
        return f"{hour:02d}:{minute:02d}"


class ScheduleOut(BaseModel):
    id: int
    project_id: int
    enabled: bool
    frequency: str
    day_of_week: int | None = None
    day_of_month: int | None = None
    time_of_day: str
    last_run_at: str | None = None
    next_run_at: str | None = None


class TrackedUrlCreate(BaseModel):
    url: str = Field(min_length=1)
    user_agent: str | None = None
    accept_language: str | None = None


class TrackedUrlToggle(BaseModel):
    enabled: bool


class TrackedUrlOut(BaseModel):
    id: int
    project_id: int
    url: str
    user_agent: str | None = None
    accept_language: str | None = None
    enabled: bool
    created_at: str | None = None


class UrlAuditRequest(BaseModel):
    url: str = Field(min_length=1)
    user_agent: str | None = None
    accept_language: str | None = None


class AuditOut(BaseModel):
    id: int
    project_id: int
    input_type: str
    input_ref: str
    final_score: int
    schedule_run_id: str | None = None
    created_at: str | None = None


class AuditDetail(AuditOut):
    category_results: list[dict[str, Any]] = []
    category_scores: dict[str, int] = {}
    rubric_weights: dict[str, int] = {}
    extracted_text: str = ""


class AuditRunOut(BaseModel):
    audit_id: int
    category_results: list[dict[str, Any]]
    category_scores: dict[str, int]
    final_score: int
    all_issues: list[dict[str, Any]]
    rubric_weights: dict[str, int]


class RunNowOut(BaseModel):
    ran: bool
    schedule_run_id: str | None = None
    completed: int = 0
    failed: int = 0
    next_run_at: str | None = None


class ScheduleRunOut(BaseModel):
    schedule_run_id: str
    audit_count: int
    failed_count: int
    average_score: float | None = None
    started_at: str | None = None
    finished_at: str | None = None
    failures: list[dict[str, Any]] = []
