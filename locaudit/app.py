from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Generator

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from locaudit import services
from locaudit.config import Settings, get_settings
from locaudit.db import Database
from locaudit.evaluator import LLMCallError, LLMClient
from locaudit.fetcher import FetchError, FetchResult, fetcher_for
from locaudit.models import Audit, Project, TrackedUrl
from locaudit.notifier import build_notifier
from locaudit.recurrence import resolve_timezone
from locaudit.scheduler import Scheduler
from locaudit.schemas import (
    AuditDetail,
    AuditOut,
    AuditRunOut,
    ProjectCreate,
    ProjectOut,
    ProjectUpdate,
    RunNowOut,
    ScheduleConfig,
    ScheduleOut,
    ScheduleRunOut,
    TrackedUrlCreate,
    TrackedUrlOut,
    TrackedUrlToggle,
    UrlAuditRequest,
)
from locaudit.scorer import AuditProgress, Evaluator, iter_audit

log = logging.getLogger(__name__)

router = APIRouter()


def create_app(
    settings: Settings | None = None,
    *,
    db: Database | None = None,
    scheduler: Scheduler | None = None,
    evaluator_factory: Callable[[], Evaluator] | None = None,
    fetch: Callable[..., Awaitable[FetchResult]] | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the API with its database and scheduler wired in.

    Collaborators not passed in are built from *settings*. The scheduler's
    timer lives exactly as long as the application.
    """
    settings = settings or get_settings()
    owns_db = db is None
    db = db or Database(settings.database_url)
    evaluator_factory = evaluator_factory or (lambda: LLMClient.from_settings(settings))
    fetch = fetch or fetcher_for(settings)
    tz = resolve_timezone(settings.timezone)
    if scheduler is None:
        scheduler = Scheduler(
            db, evaluator_factory,
            fetch=fetch,
            notifier=build_notifier(settings),
            poll_interval=settings.poll_interval_seconds,
            tz=tz,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            scheduler.start()
        try:
            yield
        finally:
            scheduler.stop()
            if owns_db:
                db.dispose()

    app = FastAPI(
        title="locaudit",
        version="0.1.0",
        description=(
            "Translation quality audits for web pages. Register pages under a project, "
            "schedule recurring audits, and score each page on accuracy, fluency, "
            "completeness and tone with a weighted LLM rubric."
        ),
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Projects", "description": "Locales, rubric weights and custom rules."},
            {"name": "Schedules", "description": "Recurrence, tracked URLs and run-now."},
            {"name": "Audits", "description": "On-demand audits and audit history. Requires an LLM API key."},
        ],
    )
    app.state.settings = settings
    app.state.db = db
    app.state.scheduler = scheduler
    app.state.evaluator_factory = evaluator_factory
    app.state.fetch = fetch
    app.state.tz = tz
    app.include_router(router)
    return app


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session(request: Request) -> Generator[Session, None, None]:
    yield from request.app.state.db.session_generator()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _make_evaluator(request: Request) -> Evaluator:
    try:
        return request.app.state.evaluator_factory()
    except Exception as exc:
        raise HTTPException(502, f"LLM client unavailable: {exc}") from exc


def _audit_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, FetchError):
        return HTTPException(502, f"Fetch failed: {exc}")
    if isinstance(exc, LLMCallError):
        return HTTPException(502, f"Scoring failed: {exc}")
    return HTTPException(422, str(exc))


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@router.get("/api/projects", response_model=list[ProjectOut], tags=["Projects"], summary="List projects, newest first")
async def list_projects(session: Session = Depends(db_session)):
    return [services.project_summary(p) for p in services.list_projects(session)]


@router.post("/api/projects", response_model=ProjectOut, status_code=201, tags=["Projects"], summary="Create a project")
async def create_project(body: ProjectCreate, request: Request, session: Session = Depends(db_session)):
    try:
        project = services.create_project(
            session, name=body.name, source_locale=body.source_locale,
            target_locales=body.target_locales, rubric_config=body.rubric_config,
            custom_rules=body.custom_rules, base_url=body.base_url,
            default_rubric=request.app.state.settings.default_rubric,
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    session.commit()
    return services.project_summary(project)


@router.get("/api/projects/{project_id}", response_model=ProjectOut, tags=["Projects"], summary="Get a project")
async def get_project(project_id: int, session: Session = Depends(db_session)):
    return services.project_summary(_get_or_404(session, Project, project_id, "Project"))


@router.put("/api/projects/{project_id}", response_model=ProjectOut, tags=["Projects"],
            summary="Update project fields (partial update, null fields ignored)")
async def update_project(project_id: int, body: ProjectUpdate, session: Session = Depends(db_session)):
    project = _get_or_404(session, Project, project_id, "Project")
    try:
        services.update_project(project, body.model_dump())
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    session.commit()
    return services.project_summary(project)


@router.delete("/api/projects/{project_id}", tags=["Projects"],
               summary="Delete a project with its schedule, tracked URLs and audits")
async def delete_project(project_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, Project, project_id, "Project"))
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Schedules
# ---------------------------------------------------------------------------


@router.get("/api/projects/{project_id}/schedule", response_model=ScheduleOut | None, tags=["Schedules"],
            summary="Get the project's schedule (null when none)")
async def get_schedule(project_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    schedule = services.get_schedule(session, project_id)
    return services.schedule_summary(schedule) if schedule else None


@router.put("/api/projects/{project_id}/schedule", response_model=ScheduleOut, tags=["Schedules"],
            summary="Create or replace the project's schedule")
async def upsert_schedule(project_id: int, body: ScheduleConfig, request: Request,
                          session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    try:
        schedule = services.upsert_schedule(
            session, project_id,
            frequency=body.frequency, time_of_day=body.time_of_day,
            day_of_week=body.day_of_week, day_of_month=body.day_of_month,
            enabled=body.enabled, tz=request.app.state.tz,
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    session.commit()
    return services.schedule_summary(schedule)


@router.delete("/api/projects/{project_id}/schedule", tags=["Schedules"], summary="Delete the project's schedule")
async def delete_schedule(project_id: int, session: Session = Depends(db_session)):
    if not services.delete_schedule(session, project_id):
        raise HTTPException(404, "Schedule not found")
    session.commit()
    return {"ok": True}


@router.post("/api/projects/{project_id}/schedule/run", response_model=RunNowOut, tags=["Schedules"],
             summary="Run the project's enabled schedule now (no-op without one)")
async def run_now(project_id: int, request: Request, session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    summary = await request.app.state.scheduler.run_project_now(project_id)
    if summary is None:
        return {"ran": False}
    return {
        "ran": True, "schedule_run_id": summary.schedule_run_id,
        "completed": summary.completed, "failed": summary.failed,
        "next_run_at": summary.next_run_at.isoformat(),
    }


@router.get("/api/projects/{project_id}/runs", response_model=list[ScheduleRunOut], tags=["Schedules"],
            summary="Per-run aggregates of scheduled audits, with failure details")
async def list_runs(project_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    return services.run_summaries(session, project_id)


@router.get("/api/projects/{project_id}/tracked-urls", response_model=list[TrackedUrlOut], tags=["Schedules"],
            summary="List tracked URLs in creation order")
async def list_tracked_urls(project_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    return [services.tracked_url_summary(t) for t in services.list_tracked_urls(session, project_id)]


@router.post("/api/projects/{project_id}/tracked-urls", response_model=TrackedUrlOut, status_code=201,
             tags=["Schedules"], summary="Track a URL for scheduled audits")
async def add_tracked_url(project_id: int, body: TrackedUrlCreate, session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    try:
        tracked = services.add_tracked_url(session, project_id, body.url, body.user_agent, body.accept_language)
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    session.commit()
    return services.tracked_url_summary(tracked)


@router.put("/api/tracked-urls/{url_id}", response_model=TrackedUrlOut, tags=["Schedules"],
            summary="Enable or disable a tracked URL")
async def toggle_tracked_url(url_id: int, body: TrackedUrlToggle, session: Session = Depends(db_session)):
    tracked = _get_or_404(session, TrackedUrl, url_id, "Tracked URL")
    services.set_tracked_url_enabled(tracked, body.enabled)
    session.commit()
    return services.tracked_url_summary(tracked)


@router.delete("/api/tracked-urls/{url_id}", tags=["Schedules"], summary="Stop tracking a URL")
async def delete_tracked_url(url_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, TrackedUrl, url_id, "Tracked URL"))
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Audits
# ---------------------------------------------------------------------------


@router.post("/api/projects/{project_id}/audits/url/stream", tags=["Audits"],
             summary="Audit one page with SSE progress events")
async def audit_url_stream(project_id: int, body: UrlAuditRequest, request: Request,
                           session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    evaluator = _make_evaluator(request)
    db: Database = request.app.state.db
    fetch = request.app.state.fetch

    async def stream():
        stream_session = db.session()
        try:
            project = services.get_entity(stream_session, Project, project_id)
            if project is None:
                yield _sse({"type": "error", "message": "Project not found"})
                return
            fetched = await services.fetch_for_audit(body.url, body.user_agent, body.accept_language, fetch)
            result = None
            async for event in iter_audit(services.audit_input_for(project, fetched.text, evaluator)):
                if isinstance(event, AuditProgress):
                    yield _sse(event.to_dict())
                else:
                    result = event
            audit = services.build_audit_row(
                project_id, "url", body.url, fetched.text, result, html_snapshot=fetched.html,
            )
            stream_session.add(audit)
            stream_session.commit()
            yield _sse({"type": "complete", "audit_id": audit.id, **result.to_dict()})
        except (FetchError, LLMCallError, ValueError) as exc:
            stream_session.rollback()
            log.warning("Streaming audit of %s failed: %s", body.url, exc)
            yield _sse({"type": "error", "message": str(exc)})
        finally:
            stream_session.close()

    return StreamingResponse(stream(), media_type="text/event-stream")


@router.post("/api/projects/{project_id}/audits/url", response_model=AuditRunOut, tags=["Audits"],
             summary="Fetch, extract and score one page now")
async def audit_url(project_id: int, body: UrlAuditRequest, request: Request,
                    session: Session = Depends(db_session)):
    project = _get_or_404(session, Project, project_id, "Project")
    evaluator = _make_evaluator(request)
    try:
        audit, result = await services.run_url_audit(
            session, project, body.url, evaluator,
            user_agent=body.user_agent, accept_language=body.accept_language,
            fetch=request.app.state.fetch,
        )
    except (FetchError, LLMCallError, ValueError) as exc:
        raise _audit_http_error(exc) from exc
    session.commit()
    return {"audit_id": audit.id, **result.to_dict()}


@router.post("/api/projects/{project_id}/audits/file", response_model=AuditRunOut, tags=["Audits"],
             summary="Score an uploaded JSON, CSV or HTML translation file")
async def audit_file(
    project_id: int,
    request: Request,
    file: UploadFile = File(...),
    file_type: str = Form(...),
    session: Session = Depends(db_session),
):
    project = _get_or_404(session, Project, project_id, "Project")
    raw = (await file.read()).decode("utf-8", errors="replace")
    evaluator = _make_evaluator(request)
    try:
        audit, result = await services.run_file_audit(
            session, project, file.filename or "upload", raw, file_type, evaluator,
        )
    except (LLMCallError, ValueError) as exc:
        raise _audit_http_error(exc) from exc
    session.commit()
    return {"audit_id": audit.id, **result.to_dict()}


@router.get("/api/projects/{project_id}/audits", response_model=list[AuditOut], tags=["Audits"],
            summary="Audit history for a project, newest first")
async def list_audits(project_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Project, project_id, "Project")
    return [services.audit_summary(a) for a in services.list_audits(session, project_id)]


@router.get("/api/audits/{audit_id}", response_model=AuditDetail, tags=["Audits"], summary="Get one audit with category results")
async def get_audit(audit_id: int, session: Session = Depends(db_session)):
    return services.audit_detail(_get_or_404(session, Audit, audit_id, "Audit"))


@router.delete("/api/audits/{audit_id}", tags=["Audits"], summary="Delete an audit")
async def delete_audit(audit_id: int, session: Session = Depends(db_session)):
    session.delete(_get_or_404(session, Audit, audit_id, "Audit"))
    session.commit()
    return {"ok": True}


@router.get("/api/scheduler", tags=["Schedules"], summary="Scheduler status")
async def scheduler_status(request: Request):
    scheduler: Scheduler = request.app.state.scheduler
    return {"running": scheduler.running, "poll_interval_seconds": scheduler.poll_interval}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    uvicorn.run("locaudit.app:create_app", factory=True, host="127.0.0.1", port=8002)


if __name__ == "__main__":
    main()
