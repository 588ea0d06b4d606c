"""Recurring audits: find due schedules and fan out over their tracked URLs.

One ``Scheduler`` is built by the process entry point and shared by the API
and CLI. ``start()`` installs a repeating APScheduler job that calls
``tick()`` every poll interval; each tick runs due schedules one at a time,
and each run audits the project's enabled URLs one at a time, which bounds
how many pages are fetched concurrently.

Failure isolation is per URL: a fetch, extraction or scoring error is logged,
counted and stored as a ``ScheduleFailure`` and the run moves on. Whatever
happens to the URLs, the schedule advances to its next slot afterwards.

A schedule never runs twice at once: manual ``run_project_now`` calls and
timer ticks share an in-flight set, and a request for a schedule that is
already running returns ``None``.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, tzinfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select

from locaudit import services
from locaudit.config import Settings
from locaudit.db import Database
from locaudit.evaluator import LLMClient
from locaudit.fetcher import FetchResult, fetch_page, fetcher_for
from locaudit.models import Project, Schedule, ScheduleFailure, TrackedUrl
from locaudit.notifier import Notifier, safe_notify
from locaudit.recurrence import next_run_utc, resolve_timezone
from locaudit.scorer import Evaluator, run_audit
from locaudit.utils import utcnow

log = logging.getLogger(__name__)

TICK_JOB_ID = "locaudit-scheduler-tick"
DEFAULT_POLL_INTERVAL = 60


@dataclass
class RunSummary:
    schedule_id: int
    project_id: int
    schedule_run_id: str
    completed: int
    failed: int
    next_run_at: datetime


@dataclass
class _RunPlan:
    """Plain values copied out of the session before any awaiting starts."""
    schedule_id: int
    project_id: int
    frequency: str
    day_of_week: int | None
    day_of_month: int | None
    time_of_day: str
    targets: list[tuple[str, str | None, str | None]]


def notification_text(completed: int, failed: int) -> tuple[str, str]:
    title = "Scheduled audit complete" if failed == 0 else "Scheduled audit finished with errors"
    body = f"{completed} URL{'' if completed == 1 else 's'} audited"
    if failed > 0:
        body += f", {failed} failed"
    return title, body + "."


class Scheduler:
    def __init__(
        self,
        db: Database,
        evaluator_factory: Callable[[], Evaluator],
        *,
        fetch: Callable[..., Awaitable[FetchResult]] = fetch_page,
        notifier: Notifier | None = None,
        poll_interval: int = DEFAULT_POLL_INTERVAL,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.poll_interval = poll_interval
        self.tz = tz or resolve_timezone(None)
        self._evaluator_factory = evaluator_factory
        self._fetch = fetch
        self._notifier = notifier
        self._clock = clock
        self._timer: AsyncIOScheduler | None = None
        self._in_flight: set[int] = set()
        self._guard = asyncio.Lock()

    @classmethod
    def from_settings(cls, db: Database, settings: Settings, notifier: Notifier | None = None) -> Scheduler:
        return cls(
            db,
            functools.partial(LLMClient.from_settings, settings),
            fetch=fetcher_for(settings),
            notifier=notifier,
            poll_interval=settings.poll_interval_seconds,
            tz=resolve_timezone(settings.timezone),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        """Install the repeating tick. Must be called from a running event loop."""
        if self._timer is not None:
            log.debug("Scheduler already started")
            return
        timer = AsyncIOScheduler(timezone="UTC")
        timer.add_job(
            self.tick, "interval", seconds=self.poll_interval, id=TICK_JOB_ID,
            max_instances=1, coalesce=True, replace_existing=True,
        )
        timer.start()
        self._timer = timer
        log.info("Scheduler started (poll every %ss)", self.poll_interval)

    def stop(self) -> None:
        """Stop future ticks. A run already in progress is not interrupted."""
        if self._timer is None:
            return
        self._timer.shutdown(wait=False)
        self._timer = None
        log.info("Scheduler stopped")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def tick(self) -> list[RunSummary]:
        """Run every enabled schedule whose next run is due, sequentially.

        Never raises: an error in one schedule is logged and the rest still run.
        """
        summaries: list[RunSummary] = []
        try:
            now = self._clock()
            with self.db.session_scope() as session:
                due_ids = list(session.execute(
                    select(Schedule.id)
                    .where(Schedule.enabled.is_(True), Schedule.next_run_at <= now)
                    .order_by(Schedule.next_run_at, Schedule.id)
                ).scalars())
        except Exception:
            log.exception("Scheduler tick failed while loading due schedules")
            return summaries

        log.debug("Tick at %s: %d due schedule(s)", now.isoformat(), len(due_ids))
        for schedule_id in due_ids:
            try:
                summary = await self.run_schedule(schedule_id)
            except Exception:
                log.exception("Scheduled run for schedule %s failed", schedule_id)
                continue
            if summary is not None:
                summaries.append(summary)
        return summaries

    async def run_project_now(self, project_id: int) -> RunSummary | None:
        """Run the project's enabled schedule immediately, due or not.

        Returns None without doing anything when the project has no enabled
        schedule.
        """
        with self.db.session_scope() as session:
            schedule_id = session.execute(
                select(Schedule.id).where(Schedule.project_id == project_id, Schedule.enabled.is_(True))
            ).scalars().first()
        if schedule_id is None:
            log.info("Run-now for project %s ignored: no enabled schedule", project_id)
            return None
        return await self.run_schedule(schedule_id)

    async def run_schedule(self, schedule: Schedule | int) -> RunSummary | None:
        schedule_id = schedule if isinstance(schedule, int) else schedule.id
        async with self._guard:
            if schedule_id in self._in_flight:
                log.info("Schedule %s is already running, skipping", schedule_id)
                return None
            self._in_flight.add(schedule_id)
        try:
            return await self._execute(schedule_id)
        finally:
            self._in_flight.discard(schedule_id)

    # ------------------------------------------------------------------
    # Batch run
    # ------------------------------------------------------------------

    def _plan(self, schedule_id: int) -> tuple[_RunPlan, Project] | None:
        with self.db.session_scope() as session:
            schedule = session.get(Schedule, schedule_id)
            if schedule is None:
                return None
            tracked = session.execute(
                select(TrackedUrl)
                .where(TrackedUrl.project_id == schedule.project_id, TrackedUrl.enabled.is_(True))
                .order_by(TrackedUrl.created_at, TrackedUrl.id)
            ).scalars().all()
            if not tracked:
                log.info("Schedule %s has no enabled tracked URLs, not advancing", schedule_id)
                return None
            project = session.get(Project, schedule.project_id)
            if project is None:
                log.warning("Schedule %s points at missing project %s", schedule_id, schedule.project_id)
                return None
            plan = _RunPlan(
                schedule_id=schedule.id,
                project_id=project.id,
                frequency=schedule.frequency,
                day_of_week=schedule.day_of_week,
                day_of_month=schedule.day_of_month,
                time_of_day=schedule.time_of_day,
                targets=[(t.url, t.user_agent, t.accept_language) for t in tracked],
            )
            session.expunge(project)
            return plan, project

    async def _execute(self, schedule_id: int) -> RunSummary | None:
        planned = self._plan(schedule_id)
        if planned is None:
            return None
        plan, project = planned

        run_id = uuid.uuid4().hex
        log.info("Scheduled run %s: project %s, %d URL(s)", run_id, plan.project_id, len(plan.targets))

        evaluator: Evaluator | None = None
        completed = failed = 0
        for url, user_agent, accept_language in plan.targets:
            try:
                if evaluator is None:
                    evaluator = self._evaluator_factory()
                fetched = await services.fetch_for_audit(url, user_agent, accept_language, self._fetch)
                result = await run_audit(services.audit_input_for(project, fetched.text, evaluator))
                with self.db.session_scope() as session:
                    session.add(services.build_audit_row(
                        plan.project_id, "url", url, fetched.text, result,
                        html_snapshot=fetched.html,
                        schedule_run_id=run_id,
                        created_at=self._clock(),
                    ))
                completed += 1
            except Exception as exc:
                failed += 1
                log.warning("Scheduled audit of %s failed: %s", url, exc)
                self._record_failure(plan.project_id, run_id, url, exc)

        now = self._clock()
        next_run_at = next_run_utc(
            plan.frequency, plan.day_of_week, plan.day_of_month, plan.time_of_day, now, self.tz,
        )
        with self.db.session_scope() as session:
            schedule = session.get(Schedule, plan.schedule_id)
            if schedule is not None:
                schedule.last_run_at = now
                schedule.next_run_at = next_run_at

        log.info(
            "Scheduled run %s finished: %d completed, %d failed, next run %s",
            run_id, completed, failed, next_run_at.isoformat(),
        )
        title, body = notification_text(completed, failed)
        await safe_notify(self._notifier, title, body)

        return RunSummary(
            schedule_id=plan.schedule_id,
            project_id=plan.project_id,
            schedule_run_id=run_id,
            completed=completed,
            failed=failed,
            next_run_at=next_run_at,
        )

    def _record_failure(self, project_id: int, run_id: str, url: str, exc: Exception) -> None:
        try:
            with self.db.session_scope() as session:
                session.add(ScheduleFailure(
                    project_id=project_id, schedule_run_id=run_id, url=url,
                    error=f"{type(exc).__name__}: {exc}"[:2000],
                    created_at=self._clock(),
                ))
        except Exception:
            log.exception("Could not record failure for %s", url)
