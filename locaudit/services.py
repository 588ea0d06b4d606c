"""Shared business logic for the locaudit API, CLI and scheduler."""
from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, tzinfo
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from locaudit.config import DEFAULT_RUBRIC
from locaudit.fetcher import EmptyPageError, FetchResult, fetch_page
from locaudit.importer import file_to_text
from locaudit.models import Audit, Project, Schedule, ScheduleFailure, TrackedUrl
from locaudit.recurrence import next_run_utc, validate_recurrence
from locaudit.scorer import AuditInput, AuditResult, Evaluator, normalize_rubric, recompute_final_score, run_audit
from locaudit.utils import json_parse, utcnow

log = logging.getLogger(__name__)

FetchFn = Callable[..., Awaitable[FetchResult]]

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

PROJECT_UPDATABLE_FIELDS = ("name", "base_url", "source_locale", "custom_rules")

SCHEDULE_FIELDS = (
    "id", "project_id", "enabled", "frequency", "day_of_week", "day_of_month",
    "time_of_day",
)

TRACKED_URL_FIELDS = ("id", "project_id", "url", "user_agent", "accept_language", "enabled")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def project_target_locale(project: Project) -> str:
    locales = json_parse(project.target_locales_json, [])
    if isinstance(locales, list) and locales:
        return str(locales[0])
    return "unknown"


def project_rubric(project: Project) -> dict[str, int]:
    return normalize_rubric(json_parse(project.rubric_config_json, {}))


def project_summary(project: Project) -> dict[str, Any]:
    return {
        "id": project.id, "name": project.name, "base_url": project.base_url,
        "source_locale": project.source_locale,
        "target_locales": json_parse(project.target_locales_json, []),
        "rubric_config": project_rubric(project),
        "custom_rules": project.custom_rules,
        "created_at": _iso(project.created_at),
    }


def schedule_summary(schedule: Schedule) -> dict[str, Any]:
    return {
        **{f: getattr(schedule, f) for f in SCHEDULE_FIELDS},
        "last_run_at": _iso(schedule.last_run_at),
        "next_run_at": _iso(schedule.next_run_at),
    }


def tracked_url_summary(tracked: TrackedUrl) -> dict[str, Any]:
    return {
        **{f: getattr(tracked, f) for f in TRACKED_URL_FIELDS},
        "created_at": _iso(tracked.created_at),
    }


def audit_summary(audit: Audit) -> dict[str, Any]:
    return {
        "id": audit.id, "project_id": audit.project_id,
        "input_type": audit.input_type, "input_ref": audit.input_ref,
        "final_score": audit.final_score,
        "schedule_run_id": audit.schedule_run_id,
        "created_at": _iso(audit.created_at),
    }


def audit_detail(audit: Audit) -> dict[str, Any]:
    category_results = json_parse(audit.category_results_json, [])
    base = audit_summary(audit)
    base.update({
        "category_results": category_results,
        "category_scores": {r.get("category"): r.get("score") for r in category_results},
        "rubric_weights": json_parse(audit.rubric_weights_json, {}),
        "extracted_text": audit.extracted_text,
    })
    return base


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def get_entity(session: Session, model, entity_id: int):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def create_project(
    session: Session,
    *,
    name: str,
    source_locale: str,
    target_locales: list[str] | None = None,
    rubric_config: dict[str, Any] | None = None,
    custom_rules: str = "",
    base_url: str = "",
    default_rubric: dict[str, int] | None = None,
) -> Project:
    """Create a project (caller must commit). Falls back to the default rubric."""
    rubric = normalize_rubric(rubric_config if rubric_config is not None else (default_rubric or DEFAULT_RUBRIC))
    project = Project(
        name=name.strip(), base_url=base_url or "", source_locale=source_locale.strip(),
        target_locales_json=json.dumps(list(target_locales or [])),
        rubric_config_json=json.dumps(rubric),
        custom_rules=custom_rules or "",
    )
    session.add(project)
    session.flush()
    return project


def update_project(project: Project, updates: dict[str, Any]) -> Project:
    apply_updates(project, updates, PROJECT_UPDATABLE_FIELDS)
    if updates.get("target_locales") is not None:
        project.target_locales_json = json.dumps(list(updates["target_locales"]))
    if updates.get("rubric_config") is not None:
        project.rubric_config_json = json.dumps(normalize_rubric(updates["rubric_config"]))
    return project


def list_projects(session: Session) -> list[Project]:
    return list(session.execute(select(Project).order_by(Project.created_at.desc(), Project.id.desc())).scalars())


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def get_schedule(session: Session, project_id: int) -> Schedule | None:
    return session.execute(select(Schedule).where(Schedule.project_id == project_id)).scalars().first()


def upsert_schedule(
    session: Session,
    project_id: int,
    *,
    frequency: str,
    time_of_day: str,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    enabled: bool = True,
    tz: tzinfo,
    now: datetime | None = None,
) -> Schedule:
    """Create or replace the project's schedule and compute its next run (caller must commit)."""
    validate_recurrence(frequency, day_of_week, day_of_month, time_of_day)
    now = now or utcnow()
    next_run_at = next_run_utc(frequency, day_of_week, day_of_month, time_of_day, now, tz)

    schedule = get_schedule(session, project_id)
    if schedule is None:
        schedule = Schedule(project_id=project_id, created_at=now)
        session.add(schedule)
    schedule.enabled = enabled
    schedule.frequency = frequency
    schedule.day_of_week = day_of_week
    schedule.day_of_month = day_of_month
    schedule.time_of_day = time_of_day
    schedule.next_run_at = next_run_at
    session.flush()
    return schedule


def delete_schedule(session: Session, project_id: int) -> bool:
    schedule = get_schedule(session, project_id)
    if schedule is None:
        return False
    session.delete(schedule)
    return True


# ---------------------------------------------------------------------------
# Tracked URLs
# ---------------------------------------------------------------------------


def list_tracked_urls(session: Session, project_id: int, *, enabled_only: bool = False) -> list[TrackedUrl]:
    query = select(TrackedUrl).where(TrackedUrl.project_id == project_id)
    if enabled_only:
        query = query.where(TrackedUrl.enabled.is_(True))
    return list(session.execute(query.order_by(TrackedUrl.created_at, TrackedUrl.id)).scalars())


def add_tracked_url(
    session: Session, project_id: int, url: str,
    user_agent: str | None = None, accept_language: str | None = None,
) -> TrackedUrl:
    url = url.strip()
    if not url:
        raise ValueError("URL must not be empty")
    tracked = TrackedUrl(
        project_id=project_id, url=url,
        user_agent=user_agent or None, accept_language=accept_language or None,
        enabled=True,
    )
    session.add(tracked)
    session.flush()
    return tracked


def set_tracked_url_enabled(tracked: TrackedUrl, enabled: bool) -> TrackedUrl:
    tracked.enabled = bool(enabled)
    return tracked


# ---------------------------------------------------------------------------
# Audits
# ---------------------------------------------------------------------------


def audit_input_for(project: Project, text: str, evaluator: Evaluator) -> AuditInput:
    """Self-comparison audit input: the extracted text is both source and target."""
    return AuditInput(
        source_locale=project.source_locale,
        target_locale=project_target_locale(project),
        source_text=text,
        target_text=text,
        rubric=project_rubric(project),
        evaluator=evaluator,
        custom_rules=project.custom_rules or "",
    )


def build_audit_row(
    project_id: int,
    input_type: str,
    input_ref: str,
    text: str,
    result: AuditResult,
    *,
    html_snapshot: str = "",
    schedule_run_id: str | None = None,
    created_at: datetime | None = None,
) -> Audit:
    return Audit(
        project_id=project_id,
        input_type=input_type,
        input_ref=input_ref,
        extracted_text=text,
        category_results_json=json.dumps([r.to_dict() for r in result.category_results]),
        final_score=result.final_score,
        html_snapshot=html_snapshot,
        rubric_weights_json=json.dumps(result.rubric_weights),
        schedule_run_id=schedule_run_id,
        created_at=created_at or utcnow(),
    )


async def fetch_for_audit(
    url: str,
    user_agent: str | None = None,
    accept_language: str | None = None,
    fetch: FetchFn = fetch_page,
) -> FetchResult:
    fetched = await fetch(url, user_agent=user_agent, accept_language=accept_language)
    if not (fetched.text or "").strip():
        raise EmptyPageError(f"No text extracted from {url}")
    return fetched


async def run_url_audit(
    session: Session,
    project: Project,
    url: str,
    evaluator: Evaluator,
    *,
    user_agent: str | None = None,
    accept_language: str | None = None,
    fetch: FetchFn = fetch_page,
) -> tuple[Audit, AuditResult]:
    """Fetch, extract and score one page on demand (caller must commit).

    Fetch, extraction and scoring errors propagate unchanged.
    """
    fetched = await fetch_for_audit(url, user_agent, accept_language, fetch)
    result = await run_audit(audit_input_for(project, fetched.text, evaluator))
    audit = build_audit_row(project.id, "url", url, fetched.text, result, html_snapshot=fetched.html)
    session.add(audit)
    session.flush()
    return audit, result


async def run_file_audit(
    session: Session,
    project: Project,
    filename: str,
    raw: str,
    file_type: str,
    evaluator: Evaluator,
) -> tuple[Audit, AuditResult]:
    """Score an uploaded JSON/CSV/HTML translation file (caller must commit)."""
    text, html_snapshot = file_to_text(raw, file_type)
    if not text.strip():
        raise ValueError(f"No translatable text found in {filename}")
    result = await run_audit(audit_input_for(project, text, evaluator))
    audit = build_audit_row(project.id, "file", filename, text, result, html_snapshot=html_snapshot)
    session.add(audit)
    session.flush()
    return audit, result


def list_audits(session: Session, project_id: int) -> list[Audit]:
    return list(session.execute(
        select(Audit).where(Audit.project_id == project_id)
        .order_by(Audit.created_at.desc(), Audit.id.desc())
    ).scalars())


def recompute_audit_score(audit: Audit) -> int:
    """Recompute an audit's final score from its stored results and weight snapshot."""
    return recompute_final_score(
        json_parse(audit.category_results_json, []),
        json_parse(audit.rubric_weights_json, {}),
    )


# ---------------------------------------------------------------------------
# Scheduled run summaries
# ---------------------------------------------------------------------------


def run_summaries(session: Session, project_id: int) -> list[dict[str, Any]]:
    """Aggregate audits and failures per schedule run, newest run first."""
    audits = session.execute(
        select(Audit).where(Audit.project_id == project_id, Audit.schedule_run_id.is_not(None))
    ).scalars().all()
    failures = session.execute(
        select(ScheduleFailure).where(ScheduleFailure.project_id == project_id)
    ).scalars().all()

    runs: dict[str, dict[str, Any]] = {}

    def _run(run_id: str) -> dict[str, Any]:
        return runs.setdefault(run_id, {"scores": [], "failures": [], "instants": []})

    for a in audits:
        entry = _run(a.schedule_run_id)  # type: ignore[arg-type]
        entry["scores"].append(a.final_score)
        entry["instants"].append(a.created_at)
    for f in failures:
        entry = _run(f.schedule_run_id)
        entry["failures"].append({"url": f.url, "error": f.error, "created_at": _iso(f.created_at)})
        entry["instants"].append(f.created_at)

    out: list[dict[str, Any]] = []
    for run_id, entry in runs.items():
        scores = entry["scores"]
        out.append({
            "schedule_run_id": run_id,
            "audit_count": len(scores),
            "failed_count": len(entry["failures"]),
            "average_score": round(sum(scores) / len(scores), 1) if scores else None,
            "started_at": _iso(min(entry["instants"])),
            "finished_at": _iso(max(entry["instants"])),
            "failures": entry["failures"],
        })
    out.sort(key=lambda r: r["started_at"] or "", reverse=True)
    return out
