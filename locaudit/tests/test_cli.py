from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch
from zoneinfo import ZoneInfo

import httpx
import pytest
from sqlalchemy import select
from typer.testing import CliRunner

from locaudit import services
from locaudit.cli import app
from locaudit.config import get_settings
from locaudit.db import Database
from locaudit.evaluator import LLMClient
from locaudit.fetcher import FetchResult
from locaudit.models import Audit

runner = CliRunner()


class ConstantEvaluator:
    async def evaluate(self, prompt: str):
        return {"score": 70, "issues": []}


@pytest.fixture()
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "cli.db"
    monkeypatch.setenv("LOCAUDIT_DB", str(path))
    monkeypatch.setenv("LOCAUDIT_TZ", "Europe/Berlin")
    monkeypatch.setenv("LOCAUDIT_LOG_LEVEL", "ERROR")
    monkeypatch.delenv("LOCAUDIT_WEBHOOK_URL", raising=False)
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


def _seed(db_path, *, with_schedule: bool) -> int:
    db = Database(f"sqlite:///{db_path}")
    try:
        with db.session_scope() as session:
            project = services.create_project(session, name="Shop", source_locale="en", target_locales=["de"])
            services.add_tracked_url(session, project.id, "https://shop.example/de")
            if with_schedule:
                services.upsert_schedule(
                    session, project.id, frequency="daily", time_of_day="09:00", tz=ZoneInfo("Europe/Berlin"),
                )
            return project.id
    finally:
        db.dispose()


def _audit_count(db_path, project_id: int) -> int:
    db = Database(f"sqlite:///{db_path}")
    try:
        with db.session_scope() as session:
            return len(session.execute(select(Audit).where(Audit.project_id == project_id)).scalars().all())
    finally:
        db.dispose()


def test_next_run_reads_naive_reference_in_configured_zone(db_path) -> None:
    result = runner.invoke(app, ["--json", "next-run", "--frequency", "daily", "--time", "09:00",
                                 "--from", "2024-01-10T10:00"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["from"] == "2024-01-10T10:00:00+01:00"
    assert payload["next_run_at"] == "2024-01-11T09:00:00+01:00"


def test_next_run_weekly_uses_sunday_numbering(db_path) -> None:
    # 2024-01-10 is a Wednesday; 0 is Sunday
    result = runner.invoke(app, ["--json", "next-run", "--frequency", "weekly", "--day-of-week", "0",
                                 "--time", "08:00", "--from", "2024-01-10T10:00"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["next_run_at"] == "2024-01-14T08:00:00+01:00"


@pytest.mark.parametrize("args", [
    ["--frequency", "daily", "--time", "25:00"],
    ["--frequency", "hourly", "--time", "09:00"],
    ["--frequency", "daily", "--time", "09:00", "--from", "yesterday"],
])
def test_next_run_bad_parameters(db_path, args) -> None:
    result = runner.invoke(app, ["--json", "next-run", *args])
    assert result.exit_code == 2


def test_run_now_without_schedule(db_path) -> None:
    project_id = _seed(db_path, with_schedule=False)

    result = runner.invoke(app, ["--json", "run-now", str(project_id)])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"ran": False, "project_id": project_id}
    assert _audit_count(db_path, project_id) == 0


def test_run_now_with_schedule(db_path) -> None:
    project_id = _seed(db_path, with_schedule=True)
    page = FetchResult(url="https://shop.example/de", final_url="https://shop.example/de", status_code=200,
                       html="<p>Willkommen</p>", title="", text="Willkommen")

    with patch("locaudit.fetcher.fetch_page", new_callable=AsyncMock, return_value=page), \
            patch.object(LLMClient, "from_settings", return_value=ConstantEvaluator()):
        result = runner.invoke(app, ["--json", "run-now", str(project_id)])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["ran"] is True
    assert (payload["completed"], payload["failed"]) == (1, 0)
    assert payload["schedule_run_id"]
    assert _audit_count(db_path, project_id) == 1


def test_run_now_via_api(db_path) -> None:
    body = {"ran": True, "schedule_run_id": "abc", "completed": 2, "failed": 0,
            "next_run_at": "2024-01-11T08:00:00"}
    request = httpx.Request("POST", "http://localhost:8002/api/projects/7/schedule/run")

    with patch("locaudit.cli.httpx.post", return_value=httpx.Response(200, json=body, request=request)) as post:
        result = runner.invoke(app, ["--json", "run-now", "7", "--api-url", "http://localhost:8002/"])

    assert result.exit_code == 0
    assert post.call_args.args[0] == "http://localhost:8002/api/projects/7/schedule/run"
    assert json.loads(result.stdout) == {"project_id": 7, **body}


def test_run_now_via_api_error(db_path) -> None:
    request = httpx.Request("POST", "http://localhost:8002/api/projects/7/schedule/run")

    with patch("locaudit.cli.httpx.post", return_value=httpx.Response(404, request=request)):
        result = runner.invoke(app, ["--json", "run-now", "7", "--api-url", "http://localhost:8002"])

    assert result.exit_code == 1
