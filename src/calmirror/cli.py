"""CLI entrypoint for calmirror.

Commands
- sync:          reconcile all sync-enabled calendars (incremental, or --full)
- calendars:     list cached calendars (optional last_modified cursor, paging)
- events:        list cached events of one calendar
- agenda:        cached events of displayed calendars around now
- set-flags:     toggle sync/display/edit on a calendar (local only)
- create-event / update-event / delete-event: remote-first edits mirrored into the cache
- login:         one-time OAuth consent, writes the token store

Notes
- Configuration precedence: CLI > ENV (CALMIRROR__) > YAML file, see config loader.
- Exit codes: 0 ok, 1 rejected input, 2 partial sync, 3 fatal.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import typer
from dateutil import parser as dtparser

from .config import AppConfig, load_config
from .errors import CalendarMirrorError, CalendarNotFoundError, LocalStoreError, RemoteFatal
from .logging import setup_logging
from .models import Calendar, Event, EventInput
from .services.flags import CalendarFlagService
from .store import CacheStores
from .sync.orchestrator import Orchestrator, Session
from .utils.timezones import ensure_tz, utc_now

app = typer.Typer(add_completion=False, help="Mirror Google calendars into a local SQLite cache")

T = TypeVar("T")

_CONFIG_OPT = typer.Option(
    None, "--config", "-c", help="Path to YAML config file.", show_default=False
)
_VERBOSE_OPT = typer.Option(
    False, "--verbose", "-v", help="Set log level to DEBUG (overrides config.logging.level)."
)


def _load(config: Path | None, verbose: bool) -> AppConfig:
    overrides: dict[str, Any] = {"logging": {"level": "DEBUG"}} if verbose else {}
    try:
        cfg = load_config(file_path=str(config) if config else None, cli_overrides=overrides)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=3) from e
    setup_logging(level=cfg.logging.level, json=cfg.logging.as_json)
    return cfg


def _when(value: str | None, cfg: AppConfig) -> datetime | None:
    if value is None:
        return None
    try:
        dt = dtparser.isoparse(value)
    except ValueError as e:
        raise typer.BadParameter(f"not an ISO 8601 date/time: {value!r}") from e
    return ensure_tz(dt, cfg.sync.default_timezone)


def _print_calendar(cal: Calendar) -> None:
    flags = "".join(c if on else "-" for c, on in (("s", cal.sync), ("d", cal.display), ("e", cal.edit)))
    typer.echo(f"{flags}  {cal.calendar_name}  {cal.gcal_id}  {cal.gcal_timezone or ''}".rstrip())


def _print_event(ev: Event, calendar_name: str | None = None) -> None:
    prefix = f"[{calendar_name}] " if calendar_name else ""
    where = f" @ {ev.location_name}" if ev.location_name else ""
    typer.echo(
        f"{ev.start_time.isoformat()} - {ev.end_time.isoformat()}  {prefix}{ev.name}{where}  ({ev.event_id})"
    )


@contextmanager
def _stores(cfg: AppConfig) -> Iterator[CacheStores]:
    """Open the cache for a read/flag command; store failures exit 3 without a traceback."""
    try:
        stores = Orchestrator(cfg).open_stores()
    except LocalStoreError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=3) from e
    with stores:
        try:
            yield stores
        except LocalStoreError as e:
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(code=3) from e


def _with_session(cfg: AppConfig, fn: Callable[[Session], Awaitable[T]]) -> T:
    async def _go() -> T:
        async with Orchestrator(cfg).session() as s:
            return await fn(s)

    try:
        return asyncio.run(_go())
    except (RemoteFatal, LocalStoreError) as e:
        typer.echo(f"fatal: {e}", err=True)
        raise typer.Exit(code=3) from e
    except CalendarMirrorError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    except RuntimeError as e:
        # missing credentials or token
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=3) from e


@app.command(help="Reconcile all sync-enabled calendars into the cache.")
def sync(
    config: Path | None = _CONFIG_OPT,
    full: bool = typer.Option(
        False, "--full", help="Use the full window instead of the incremental one.", show_default=False
    ),
    verbose: bool = _VERBOSE_OPT,
) -> None:
    cfg = _load(config, verbose)
    exit_code, summary = Orchestrator(cfg).run("full" if full else "incremental")
    agg = summary.aggregate()
    typer.echo(
        f"calmirror sync summary ({summary.mode}): calendars={len(summary.calendars)} "
        f"fetched={agg['fetched']} added={agg['added']} updated={agg['updated']} "
        f"deleted={agg['deleted']} unchanged={agg['unchanged']} skipped={agg['skipped']} "
        f"failed={agg['failed']}"
    )
    for gcal_id in summary.failed_calendars:
        typer.echo(f"  failed: {gcal_id}: {summary.calendars[gcal_id].error}", err=True)
    if summary.discovery_error:
        typer.echo(f"  calendar discovery failed: {summary.discovery_error}", err=True)
    raise typer.Exit(code=exit_code)


@app.command(help="List cached calendars.")
def calendars(
    config: Path | None = _CONFIG_OPT,
    min_modified: str | None = typer.Option(
        None, "--min-modified", help="Only rows written at or after this time.", show_default=False
    ),
    offset: int = typer.Option(0, "--offset", min=0),
    limit: int | None = typer.Option(None, "--limit", min=1, show_default=False),
    verbose: bool = _VERBOSE_OPT,
) -> None:
    cfg = _load(config, verbose)
    with _stores(cfg) as stores:
        for cal in stores.calendars.list_calendars(
            min_modified=_when(min_modified, cfg), offset=offset, limit=limit
        ):
            _print_calendar(cal)


@app.command(help="List cached events of one calendar.")
def events(
    calendar_name: str = typer.Argument(..., help="Local calendar alias."),
    config: Path | None = _CONFIG_OPT,
    start: str | None = typer.Option(None, "--start", show_default=False),
    end: str | None = typer.Option(None, "--end", show_default=False),
    verbose: bool = _VERBOSE_OPT,
) -> None:
    cfg = _load(config, verbose)
    with _stores(cfg) as stores:
        try:
            rows = stores.events.list_events(
                calendar_name, start=_when(start, cfg), end=_when(end, cfg)
            )
        except CalendarNotFoundError as e:
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(code=1) from e
    for ev in rows:
        _print_event(ev)


@app.command(help="Cached events of displayed calendars around now.")
def agenda(
    config: Path | None = _CONFIG_OPT,
    verbose: bool = _VERBOSE_OPT,
) -> None:
    cfg = _load(config, verbose)
    now = utc_now()
    with _stores(cfg) as stores:
        names = {c.gcal_id: c.calendar_name for c in stores.calendars.list_displayed()}
        rows = stores.events.list_agenda(
            now - timedelta(days=cfg.sync.agenda_past_days),
            now + timedelta(days=cfg.sync.agenda_future_days),
        )
    for ev in rows:
        _print_event(ev, names.get(ev.gcal_id))


@app.command("set-flags", help="Toggle calendar flags locally.")
def set_flags(
    gcal_id: str = typer.Argument(...),
    config: Path | None = _CONFIG_OPT,
    sync_flag: bool | None = typer.Option(None, "--sync/--no-sync", show_default=False),
    display: bool | None = typer.Option(None, "--display/--no-display", show_default=False),
    edit: bool | None = typer.Option(None, "--edit/--no-edit", show_default=False),
    verbose: bool = _VERBOSE_OPT,
) -> None:
    cfg = _load(config, verbose)
    with _stores(cfg) as stores:
        try:
            cal = CalendarFlagService(stores.calendars).set_flags(
                gcal_id, sync=sync_flag, display=display, edit=edit
            )
        except CalendarNotFoundError as e:
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(code=1) from e
    _print_calendar(cal)


def _event_input(
    cfg: AppConfig,
    gcal_id: str,
    name: str,
    start: str,
    end: str,
    url: str | None,
    description: str | None,
    location: str | None,
    lat: float | None,
    lon: float | None,
) -> EventInput:
    return EventInput(
        gcal_id=gcal_id,
        name=name,
        start=_when(start, cfg),  # type: ignore[arg-type]
        end=_when(end, cfg),  # type: ignore[arg-type]
        url=url,
        description=description,
        location_name=location,
        location_lat=lat,
        location_lon=lon,
    )


@app.command("create-event", help="Create an event remotely and mirror it.")
def create_event(
    gcal_id: str = typer.Argument(...),
    name: str = typer.Argument(...),
    start: str = typer.Option(..., "--start"),
    end: str = typer.Option(..., "--end"),
    url: str | None = typer.Option(None, "--url", show_default=False),
    description: str | None = typer.Option(None, "--description", show_default=False),
    location: str | None = typer.Option(None, "--location", show_default=False),
    lat: float | None = typer.Option(None, "--lat", show_default=False),
    lon: float | None = typer.Option(None, "--lon", show_default=False),
    config: Path | None = _CONFIG_OPT,
    verbose: bool = _VERBOSE_OPT,
) -> None:
    cfg = _load(config, verbose)
    data = _event_input(cfg, gcal_id, name, start, end, url, description, location, lat, lon)
    ev = _with_session(cfg, lambda s: s.mutations.create_event(data))
    _print_event(ev)


@app.command("update-event", help="Replace an event remotely and mirror it.")
def update_event(
    gcal_id: str = typer.Argument(...),
    event_id: str = typer.Argument(...),
    name: str = typer.Argument(...),
    start: str = typer.Option(..., "--start"),
    end: str = typer.Option(..., "--end"),
    url: str | None = typer.Option(None, "--url", show_default=False),
    description: str | None = typer.Option(None, "--description", show_default=False),
    location: str | None = typer.Option(None, "--location", show_default=False),
    lat: float | None = typer.Option(None, "--lat", show_default=False),
    lon: float | None = typer.Option(None, "--lon", show_default=False),
    config: Path | None = _CONFIG_OPT,
    verbose: bool = _VERBOSE_OPT,
) -> None:
    cfg = _load(config, verbose)
    data = _event_input(cfg, gcal_id, name, start, end, url, description, location, lat, lon)
    ev = _with_session(cfg, lambda s: s.mutations.update_event(gcal_id, event_id, data))
    _print_event(ev)


@app.command("delete-event", help="Delete an event remotely and from the cache.")
def delete_event(
    gcal_id: str = typer.Argument(...),
    event_id: str = typer.Argument(...),
    config: Path | None = _CONFIG_OPT,
    verbose: bool = _VERBOSE_OPT,
) -> None:
    cfg = _load(config, verbose)
    removed = _with_session(cfg, lambda s: s.mutations.delete_event(gcal_id, event_id))
    typer.echo(f"deleted {event_id}" + ("" if removed else " (was not cached)"))


@app.command(help="Authorize calmirror against Google (opens a browser once).")
def login(
    config: Path | None = _CONFIG_OPT,
    verbose: bool = _VERBOSE_OPT,
) -> None:
    from .google.auth import get_credentials

    cfg = _load(config, verbose)
    try:
        get_credentials(cfg.google, allow_interactive=True)
    except (ValueError, FileNotFoundError) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=3) from e
    typer.echo(f"token stored at {cfg.google.token_store}")


if __name__ == "__main__":  # pragma: no cover
    app()
