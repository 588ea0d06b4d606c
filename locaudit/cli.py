from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

import httpx
import typer
import uvicorn
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from locaudit.config import get_settings
from locaudit.db import Database
from locaudit.notifier import build_notifier
from locaudit.recurrence import compute_next_run, resolve_timezone, validate_recurrence
from locaudit.scheduler import Scheduler

app = typer.Typer(help="Scheduled translation quality audits for web pages")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.getLevelName(get_settings().log_level)
        if not isinstance(level, int):
            level = logging.INFO
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    settings = get_settings()
    db = Database(settings.database_url)
    db.dispose()
    _print("init-db", {"status": "ok", "database": str(settings.database_path)}, ctx)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8002, help="Bind port."),
) -> None:
    """Run the API with the scheduler polling in the background."""
    uvicorn.run("locaudit.app:create_app", factory=True, host=host, port=port, log_config=None)


def _run_now_via_api(api_url: str, project_id: int) -> dict[str, Any]:
    url = f"{api_url.rstrip('/')}/api/projects/{project_id}/schedule/run"
    try:
        resp = httpx.post(url, timeout=None)
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        console.print(f"[red]Server rejected run-now: HTTP {exc.response.status_code}[/red]")
        raise typer.Exit(code=1) from exc
    except httpx.HTTPError as exc:
        console.print(f"[red]Could not reach {api_url}: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    return resp.json()


@app.command("run-now")
def run_now_command(
    ctx: typer.Context,
    project_id: int = typer.Argument(..., help="Project whose schedule should run."),
    api_url: str | None = typer.Option(
        None, "--api-url",
        help="Base URL of a running `locaudit serve`; the run then goes through its scheduler.",
    ),
) -> None:
    """Run a project's enabled schedule once, due or not.

    Without --api-url the run happens in this process. Its in-flight guard is
    separate from a running server's, so a concurrent server tick may audit
    the same schedule. Pass --api-url while a server is running.
    """
    if api_url:
        _print("run-now", {"project_id": project_id, **_run_now_via_api(api_url, project_id)}, ctx)
        return

    settings = get_settings()
    db = Database(settings.database_url)
    scheduler = Scheduler.from_settings(db, settings, notifier=build_notifier(settings))
    try:
        summary = asyncio.run(scheduler.run_project_now(project_id))
    finally:
        db.dispose()

    if summary is None:
        _print("run-now", {"ran": False, "project_id": project_id}, ctx)
        return
    _print("run-now", {
        "ran": True,
        "project_id": project_id,
        "schedule_run_id": summary.schedule_run_id,
        "completed": summary.completed,
        "failed": summary.failed,
        "next_run_at": summary.next_run_at.isoformat(),
    }, ctx)


@app.command("next-run")
def next_run_command(
    ctx: typer.Context,
    frequency: str = typer.Option(..., help="daily, weekly or monthly."),
    time_of_day: str = typer.Option(..., "--time", help="HH:MM in the configured timezone."),
    day_of_week: int | None = typer.Option(None, "--day-of-week", help="0=Sunday .. 6=Saturday (weekly)."),
    day_of_month: int | None = typer.Option(None, "--day-of-month", help="1-31 (monthly)."),
    from_: str | None = typer.Option(None, "--from", help="ISO reference instant (default: now)."),
) -> None:
    """Print the next occurrence of a recurrence after a reference instant."""
    try:
        validate_recurrence(frequency, day_of_week, day_of_month, time_of_day)
        reference = datetime.fromisoformat(from_) if from_ else None
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    tz = resolve_timezone(get_settings().timezone)
    if reference is not None and reference.tzinfo is None:
        reference = reference.replace(tzinfo=tz)
    next_run = compute_next_run(frequency, day_of_week, day_of_month, time_of_day, reference, tz)
    _print("next-run", {
        "frequency": frequency,
        "from": reference.isoformat() if reference else None,
        "next_run_at": next_run.isoformat(),
    }, ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
