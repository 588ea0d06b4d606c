"""Tests for the service layer, file importers, page text extraction and notifiers."""
from __future__ import annotations

import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch
from zoneinfo import ZoneInfo

import httpx
import pytest
from sqlalchemy import select

from locaudit import services
from locaudit.config import Settings
from locaudit.db import Database
from locaudit.fetcher import EmptyPageError, FetchError, extract_sections, extract_text, fetch_page, fetcher_for
from locaudit.importer import file_to_text, parse_csv_translations, parse_json_translations
from locaudit.models import Audit, Project, ScheduleFailure, TrackedUrl
from locaudit.notifier import LogNotifier, WebhookNotifier, build_notifier, safe_notify

UTC_ZONE = ZoneInfo("UTC")


class FixedEvaluator:
    def __init__(self, scores: dict[str, int]):
        self.scores = scores

    async def evaluate(self, prompt: str):
        for category, score in self.scores.items():
            if f"Evaluation focus: {category.upper()}:" in prompt:
                return {"score": score, "issues": []}
        return {"score": 0, "issues": []}


@pytest.fixture()
def db():
    database = Database("sqlite://")
    yield database
    database.dispose()


@pytest.fixture()
def session(db):
    sess = db.session()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def project(session) -> Project:
    p = services.create_project(session, name="Docs", source_locale="en", target_locales=["ja"])
    session.commit()
    return p


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class TestProjects:
    def test_create_uses_default_rubric(self, project):
        summary = services.project_summary(project)
        assert summary["rubric_config"] == {"accuracy": 40, "fluency": 20, "completeness": 30, "tone": 10}
        assert summary["target_locales"] == ["ja"]
        assert summary["custom_rules"] == ""

    def test_default_rubric_matches_settings(self, project):
        settings = Settings()
        assert services.project_rubric(project) == settings.default_rubric
        settings.default_rubric["tone"] = 99
        assert Settings().default_rubric["tone"] == 10

    def test_create_with_custom_rubric(self, session):
        p = services.create_project(
            session, name="X", source_locale="en",
            rubric_config={"accuracy": {"weight": 3}, "tone": 1},
        )
        assert services.project_rubric(p) == {"accuracy": 3, "fluency": 0, "completeness": 0, "tone": 1}

    def test_create_rejects_negative_weight(self, session):
        with pytest.raises(ValueError):
            services.create_project(session, name="X", source_locale="en", rubric_config={"accuracy": -5})

    def test_update_is_partial(self, session, project):
        services.update_project(project, {"name": "Docs v2", "source_locale": None, "target_locales": ["ko", "ja"]})
        session.commit()
        assert project.name == "Docs v2"
        assert project.source_locale == "en"
        assert services.project_target_locale(project) == "ko"

    def test_target_locale_fallback(self, session):
        p = services.create_project(session, name="X", source_locale="en")
        assert services.project_target_locale(p) == "unknown"

    def test_delete_cascades(self, db, session, project):
        services.add_tracked_url(session, project.id, "https://a.example")
        services.upsert_schedule(session, project.id, frequency="daily", time_of_day="09:00", tz=UTC_ZONE)
        session.commit()
        session.delete(project)
        session.commit()
        assert session.execute(select(TrackedUrl)).scalars().all() == []
        assert services.get_schedule(session, project.id) is None


# ---------------------------------------------------------------------------
# Schedules & tracked URLs
# ---------------------------------------------------------------------------


class TestSchedules:
    def test_upsert_creates_then_replaces(self, session, project):
        now = datetime(2024, 1, 10, 10, 0)
        first = services.upsert_schedule(
            session, project.id, frequency="weekly", day_of_week=1, time_of_day="09:00", tz=UTC_ZONE, now=now,
        )
        assert first.next_run_at == datetime(2024, 1, 15, 9, 0)

        second = services.upsert_schedule(
            session, project.id, frequency="monthly", day_of_month=31, time_of_day="18:00", tz=UTC_ZONE, now=now,
        )
        assert second.id == first.id
        assert second.frequency == "monthly"
        assert second.next_run_at == datetime(2024, 1, 31, 18, 0)

    def test_upsert_validates(self, session, project):
        with pytest.raises(ValueError):
            services.upsert_schedule(session, project.id, frequency="yearly", time_of_day="09:00", tz=UTC_ZONE)

    def test_delete(self, session, project):
        assert services.delete_schedule(session, project.id) is False
        services.upsert_schedule(session, project.id, frequency="daily", time_of_day="09:00", tz=UTC_ZONE)
        assert services.delete_schedule(session, project.id) is True

    def test_tracked_urls(self, session, project):
        a = services.add_tracked_url(session, project.id, "  https://a.example  ", accept_language="ja-JP")
        b = services.add_tracked_url(session, project.id, "https://b.example")
        services.set_tracked_url_enabled(b, False)
        session.commit()
        assert a.url == "https://a.example"
        assert [t.url for t in services.list_tracked_urls(session, project.id)] == ["https://a.example", "https://b.example"]
        assert [t.id for t in services.list_tracked_urls(session, project.id, enabled_only=True)] == [a.id]
        assert services.tracked_url_summary(a)["accept_language"] == "ja-JP"

    def test_empty_tracked_url_rejected(self, session, project):
        with pytest.raises(ValueError):
            services.add_tracked_url(session, project.id, "   ")


# ---------------------------------------------------------------------------
# Audits
# ---------------------------------------------------------------------------


class TestAudits:
    @pytest.mark.asyncio
    async def test_url_audit(self, session, project):
        fetch = AsyncMock(return_value=MagicMock(text="Hello\nWorld", html="<p>Hello</p><p>World</p>"))
        evaluator = FixedEvaluator({"accuracy": 80, "fluency": 60, "completeness": 100, "tone": 40})

        audit, result = await services.run_url_audit(session, project, "https://a.example", evaluator, fetch=fetch)
        session.commit()

        assert result.final_score == 78
        assert audit.schedule_run_id is None
        assert audit.html_snapshot == "<p>Hello</p><p>World</p>"
        detail = services.audit_detail(audit)
        assert detail["category_scores"]["completeness"] == 100
        assert detail["rubric_weights"] == {"accuracy": 40, "fluency": 20, "completeness": 30, "tone": 10}
        fetch.assert_awaited_once_with("https://a.example", user_agent=None, accept_language=None)

    @pytest.mark.asyncio
    async def test_url_audit_errors_propagate(self, session, project):
        fetch = AsyncMock(side_effect=FetchError("HTTP 404"))
        with pytest.raises(FetchError):
            await services.run_url_audit(session, project, "https://a.example", FixedEvaluator({}), fetch=fetch)

    @pytest.mark.asyncio
    async def test_url_audit_empty_text(self, session, project):
        fetch = AsyncMock(return_value=MagicMock(text="  ", html=""))
        with pytest.raises(EmptyPageError):
            await services.run_url_audit(session, project, "https://a.example", FixedEvaluator({}), fetch=fetch)

    @pytest.mark.asyncio
    async def test_file_audit(self, session, project):
        raw = json.dumps({"nav": {"home": "ホーム"}, "cta": "購入"})
        audit, result = await services.run_file_audit(
            session, project, "ja.json", raw, "json", FixedEvaluator({"accuracy": 90, "fluency": 90, "completeness": 90, "tone": 90}),
        )
        assert audit.input_type == "file"
        assert audit.input_ref == "ja.json"
        assert audit.extracted_text == "nav.home: ホーム\ncta: 購入"
        assert result.final_score == 90

    @pytest.mark.asyncio
    async def test_file_audit_without_text(self, session, project):
        with pytest.raises(ValueError, match="No translatable text"):
            await services.run_file_audit(session, project, "empty.json", "{}", "json", FixedEvaluator({}))

    @pytest.mark.asyncio
    async def test_recompute_after_rubric_change(self, session, project):
        fetch = AsyncMock(return_value=MagicMock(text="Hi", html=""))
        evaluator = FixedEvaluator({"accuracy": 93, "fluency": 41, "completeness": 77, "tone": 5})
        audit, _ = await services.run_url_audit(session, project, "https://a.example", evaluator, fetch=fetch)
        session.commit()
        services.update_project(project, {"rubric_config": {"tone": 100}})
        session.commit()
        assert services.recompute_audit_score(audit) == audit.final_score

    def test_list_audits_newest_first(self, session, project):
        for i, ts in enumerate([datetime(2024, 1, 1), datetime(2024, 3, 1), datetime(2024, 2, 1)]):
            session.add(Audit(project_id=project.id, input_type="url", input_ref=f"u{i}", final_score=i, created_at=ts))
        session.commit()
        assert [a.input_ref for a in services.list_audits(session, project.id)] == ["u1", "u2", "u0"]


class TestRunSummaries:
    def test_groups_by_run(self, session, project):
        t0 = datetime(2024, 1, 10, 9, 0)
        t1 = datetime(2024, 1, 10, 9, 5)
        for ref, score, run_id, ts in [
            ("a", 80, "run1", t0), ("b", 71, "run1", t1), ("c", 50, "run2", datetime(2024, 1, 11, 9, 0)),
            ("adhoc", 10, None, t0),
        ]:
            session.add(Audit(project_id=project.id, input_type="url", input_ref=ref,
                              final_score=score, schedule_run_id=run_id, created_at=ts))
        session.add(ScheduleFailure(project_id=project.id, schedule_run_id="run1", url="d",
                                    error="FetchError: HTTP 500", created_at=datetime(2024, 1, 10, 9, 7)))
        session.commit()

        runs = services.run_summaries(session, project.id)

        assert [r["schedule_run_id"] for r in runs] == ["run2", "run1"]
        run1 = runs[1]
        assert run1["audit_count"] == 2
        assert run1["failed_count"] == 1
        assert run1["average_score"] == 75.5
        assert run1["started_at"] == t0.isoformat()
        assert run1["finished_at"] == datetime(2024, 1, 10, 9, 7).isoformat()
        assert run1["failures"][0]["url"] == "d"

    def test_failure_only_run(self, session, project):
        session.add(ScheduleFailure(project_id=project.id, schedule_run_id="r", url="x", error="e"))
        session.commit()
        [run] = services.run_summaries(session, project.id)
        assert run["audit_count"] == 0 and run["average_score"] is None


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------


class TestImporter:
    def test_json_flattening_keeps_string_leaves(self):
        pairs = parse_json_translations('{"a": {"b": "x", "n": 3, "l": ["y"]}, "c": "z"}')
        assert [(p.key, p.value) for p in pairs] == [("a.b", "x"), ("c", "z")]

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
    def test_json_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_json_translations(raw)

    def test_csv_with_key_column_and_bom(self):
        raw = "\ufeffkey,value\nnav.home,Startseite\n\n,\ncta,Kaufen\n"
        pairs = parse_csv_translations(raw)
        assert [(p.key, p.value) for p in pairs] == [("nav.home", "Startseite"), ("cta", "Kaufen")]

    def test_csv_first_column_as_key(self):
        pairs = parse_csv_translations("id,value\n1,Eins\n")
        assert [(p.key, p.value) for p in pairs] == [("1", "Eins")]

    def test_csv_requires_value_column(self):
        with pytest.raises(ValueError, match="value column"):
            parse_csv_translations("key,text\na,b\n")

    def test_html_file_keeps_snapshot(self):
        raw = "<html><body><h1>Titel</h1><p>Ein Absatz</p></body></html>"
        text, snapshot = file_to_text(raw, "HTML")
        assert text == "Titel\nEin Absatz"
        assert snapshot == raw

    def test_unknown_file_type(self):
        with pytest.raises(ValueError, match="Unsupported file type"):
            file_to_text("x", "xlsx")


# ---------------------------------------------------------------------------
# Page text extraction & fetching
# ---------------------------------------------------------------------------

PAGE = """
<html><head><title>Shop</title><style>.x{}</style></head>
<body>
  <header><nav><a href="/">Start</a><a href="/shop">Laden</a></nav></header>
  <h1>Willkommen</h1>
  <script>var hidden = "nope";</script>
  <div><p>Unsere Produkte sind die besten.</p><p>ok</p></div>
  <button>Jetzt kaufen</button>
  <input type="submit" value="Absenden">
  <p>Unsere Produkte sind die besten.</p>
</body></html>
"""


class TestExtraction:
    def test_sections(self):
        sections = extract_sections(PAGE)
        assert sections.navigation == ["Start", "Laden"]
        assert sections.headings == ["Willkommen"]
        assert sections.cta_buttons == ["Jetzt kaufen", "Absenden"]
        assert "ok" not in sections.body
        assert all("nope" not in s for s in sections.body)

    def test_text_is_deduplicated(self):
        text = extract_text(PAGE)
        assert text.count("Unsere Produkte sind die besten.") == 1
        assert text.splitlines()[:3] == ["Start", "Laden", "Willkommen"]

    @pytest.mark.parametrize("raw", ["", "   ", "<script>only()</script>"])
    def test_empty_input(self, raw):
        assert extract_text(raw) == ""


def _mock_transport(status: int, body: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=body, headers={"content-type": "text/html"})
    return httpx.MockTransport(handler)


class TestFetchPage:
    @pytest.mark.asyncio
    async def test_success_and_scheme_added(self):
        real_client = httpx.AsyncClient
        seen = {}

        def client_factory(**kwargs):
            seen.update(kwargs)
            return real_client(transport=_mock_transport(200, PAGE), **kwargs)

        with patch("locaudit.fetcher.httpx.AsyncClient", side_effect=client_factory):
            result = await fetch_page("shop.example", user_agent="Bot/1", accept_language="de")

        assert result.url == "https://shop.example"
        assert result.title == "Shop"
        assert "Willkommen" in result.text
        assert seen["headers"] == {"User-Agent": "Bot/1", "Accept-Language": "de"}

    @pytest.mark.asyncio
    async def test_default_user_agent_matches_settings(self):
        real_client = httpx.AsyncClient
        seen = {}

        def client_factory(**kwargs):
            seen.update(kwargs)
            return real_client(transport=_mock_transport(200, PAGE), **kwargs)

        with patch("locaudit.fetcher.httpx.AsyncClient", side_effect=client_factory):
            await fetch_page("https://shop.example")

        assert seen["headers"] == {"User-Agent": Settings().user_agent}
        assert seen["timeout"] == httpx.Timeout(Settings().fetch_timeout_seconds)

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        real_client = httpx.AsyncClient
        with patch("locaudit.fetcher.httpx.AsyncClient",
                   side_effect=lambda **kw: real_client(transport=_mock_transport(404, "nope"), **kw)):
            with pytest.raises(FetchError, match="HTTP 404"):
                await fetch_page("https://shop.example/missing")

    @pytest.mark.asyncio
    async def test_empty_page(self):
        real_client = httpx.AsyncClient
        with patch("locaudit.fetcher.httpx.AsyncClient",
                   side_effect=lambda **kw: real_client(transport=_mock_transport(200, "<html></html>"), **kw)):
            with pytest.raises(EmptyPageError):
                await fetch_page("https://shop.example/blank")

    @pytest.mark.asyncio
    async def test_fetcher_for_applies_settings(self):
        settings = Settings(user_agent="Configured/1", max_text_chars=5, fetch_timeout_seconds=3.0)
        with patch("locaudit.fetcher.fetch_page", new_callable=AsyncMock) as mock_fetch:
            await fetcher_for(settings)("https://a.example", accept_language="fr")
        mock_fetch.assert_awaited_once_with(
            "https://a.example", user_agent="Configured/1", accept_language="fr", timeout=3.0, max_text=5,
        )


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------


class TestNotifiers:
    def test_build_notifier(self):
        assert isinstance(build_notifier(Settings(notify_webhook_url="")), LogNotifier)
        webhook = build_notifier(Settings(notify_webhook_url="https://hooks.example/x"))
        assert isinstance(webhook, WebhookNotifier)
        assert webhook.url == "https://hooks.example/x"

    @pytest.mark.asyncio
    async def test_safe_notify_swallows_errors(self):
        notifier = MagicMock()
        notifier.notify = AsyncMock(side_effect=httpx.ConnectError("refused"))
        await safe_notify(notifier, "title", "body")
        notifier.notify.assert_awaited_once_with("title", "body")

    @pytest.mark.asyncio
    async def test_safe_notify_without_backend(self):
        await safe_notify(None, "title", "body")
