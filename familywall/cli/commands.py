"""FamilyWall CLI commands for calendar management and manual sync."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from familywall.modules.calendar.errors import CalendarSyncError
from familywall.modules.calendar.models import CalendarConfiguration, SyncOutcome

T = TypeVar("T")

# Create Typer app
app = typer.Typer(help="FamilyWall calendar sync CLI", no_args_is_help=True)
console = Console()

# Calendars subcommand
calendars_app = typer.Typer(help="Manage calendars", no_args_is_help=True)
app.add_typer(calendars_app, name="calendars")

# Events subcommand
events_app = typer.Typer(help="Browse cached events", no_args_is_help=True)
app.add_typer(events_app, name="events")


def _run(action: Callable[..., Awaitable[T]]) -> T:
    """Run ``action(orchestrator)`` against an initialized database."""
    from familywall.database import close_db, init_db
    from familywall.logging_config import setup_logging
    from familywall.orchestrator import Orchestrator

    async def _main() -> T:
        setup_logging()
        await init_db()
        try:
            return await action(Orchestrator())
        finally:
            await close_db()

    try:
        return asyncio.run(_main())
    except CalendarSyncError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


def _calendar_table(calendars: list[CalendarConfiguration], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Source")
    table.add_column("Color")
    table.add_column("Order", justify="right")
    table.add_column("Enabled")
    table.add_column("Interval", justify="right")
    table.add_column("Last sync", style="dim")
    for cal in calendars:
        table.add_row(
            str(cal.id) if cal.id is not None else "-",
            cal.name,
            cal.source,
            f"[{cal.color}]■[/] {cal.color}",
            str(cal.display_order),
            "[green]✓[/green]" if cal.is_enabled else "[red]✗[/red]",
            f"{cal.sync_interval_minutes} min",
            cal.last_sync_at.strftime("%Y-%m-%d %H:%M") if cal.last_sync_at else "never",
        )
    return table


@calendars_app.command("list")
def calendars_list() -> None:
    """List configured calendars."""
    calendars = _run(lambda orch: orch.registry.list_calendars())
    if not calendars:
        console.print("[yellow]No calendars configured. Try: familywall-cli calendars discover Graph[/yellow]")
        return
    console.print(_calendar_table(calendars, "Calendars"))


@calendars_app.command("discover")
def calendars_discover(
    source: str = typer.Argument(..., help="Source tag (Graph, ICS)"),
    add: bool = typer.Option(False, "--add", "-a", help="Add every discovered calendar that is not configured yet"),
) -> None:
    """Discover calendars offered by a source."""

    async def _discover(orch) -> tuple[list[CalendarConfiguration], int]:
        found = await orch.registry.discover(source)
        added = 0
        if add:
            for calendar in found:
                if await orch.registry.get_by_calendar_id(calendar.calendar_id, source=calendar.source):
                    continue
                await orch.registry.add(calendar)
                added += 1
        return found, added

    found, added = _run(_discover)
    if not found:
        console.print(f"[yellow]No calendars found for {source}[/yellow]")
        return
    console.print(_calendar_table(found, f"Calendars offered by {source}"))
    if add:
        console.print(f"[green]✓ Added {added} calendar(s)[/green]")


@calendars_app.command("add")
def calendars_add(
    source: str = typer.Argument(..., help="Source tag (Graph, ICS)"),
    calendar_id: str = typer.Argument(..., help="Provider calendar id (the feed URL for ICS)"),
    name: str = typer.Option(..., "--name", "-n", help="Display name"),
    color: str = typer.Option("#3788D8", "--color", "-c", help="Display color (#RRGGBB)"),
    interval: int = typer.Option(15, "--interval", "-i", min=1, help="Sync interval in minutes"),
    future_days: int = typer.Option(90, "--future-days", min=1, help="Days ahead to sync"),
    past_events: bool = typer.Option(False, "--past-events", help="Also sync recent past events"),
) -> None:
    """Add a calendar by id."""
    calendar = CalendarConfiguration(
        calendar_id=calendar_id,
        source=source,
        name=name,
        color=color,
        sync_interval_minutes=interval,
        future_days_to_sync=future_days,
        sync_past_events=past_events,
    )
    try:
        stored = _run(lambda orch: orch.registry.add(calendar))
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Added calendar '{stored.name}' (ID: {stored.id})[/green]")


def _set_enabled(ids: list[int], enabled: bool) -> None:
    count = _run(lambda orch: orch.registry.set_enabled_many(ids, enabled))
    verb = "Enabled" if enabled else "Disabled"
    console.print(f"[green]✓ {verb} {count} calendar(s)[/green]")


@calendars_app.command("enable")
def calendars_enable(ids: list[int] = typer.Argument(..., help="Calendar IDs")) -> None:
    """Enable calendars."""
    _set_enabled(ids, True)


@calendars_app.command("disable")
def calendars_disable(ids: list[int] = typer.Argument(..., help="Calendar IDs")) -> None:
    """Disable calendars. Their cached events stay but are hidden."""
    _set_enabled(ids, False)


@calendars_app.command("color")
def calendars_color(
    calendar_id: int = typer.Argument(..., help="Calendar ID"),
    color: str = typer.Argument(..., help="Color as #RRGGBB"),
) -> None:
    """Change a calendar's display color."""
    try:
        calendar = _run(lambda orch: orch.registry.set_color(calendar_id, color))
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    if calendar is None:
        console.print(f"[red]Calendar not found: {calendar_id}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ {calendar.name} is now {calendar.color}[/green]")


@calendars_app.command("reorder")
def calendars_reorder(ids: list[int] = typer.Argument(..., help="Calendar IDs in display order")) -> None:
    """Set the display order of calendars."""
    count = _run(lambda orch: orch.registry.reorder(ids))
    console.print(f"[green]✓ Reordered {count} calendar(s)[/green]")


@calendars_app.command("delete")
def calendars_delete(
    calendar_id: int = typer.Argument(..., help="Calendar ID"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Delete a calendar and all of its cached events."""
    if not force and not typer.confirm(f"Delete calendar {calendar_id} and its cached events?"):
        console.print("Cancelled.")
        return
    deleted = _run(lambda orch: orch.registry.delete(calendar_id))
    if not deleted:
        console.print(f"[red]Calendar not found: {calendar_id}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Deleted calendar {calendar_id}[/green]")


_OUTCOME_STYLE = {
    SyncOutcome.SYNCED: "green",
    SyncOutcome.SKIPPED_AUTH: "yellow",
    SyncOutcome.SKIPPED_CONFIG: "yellow",
    SyncOutcome.SKIPPED_EMPTY: "yellow",
    SyncOutcome.FAILED: "red",
}


@app.command()
def sync() -> None:
    """Sync all enabled calendars now."""
    report = _run(lambda orch: orch.sync.trigger_manual_sync())
    if not report.results:
        console.print("[yellow]No enabled calendars to sync[/yellow]")
        return

    table = Table(title="Calendar sync")
    table.add_column("Calendar", style="cyan")
    table.add_column("Source")
    table.add_column("Outcome")
    table.add_column("Fetched", justify="right")
    table.add_column("+", justify="right")
    table.add_column("~", justify="right")
    table.add_column("-", justify="right")
    table.add_column("Error", style="dim")
    for result in report.results:
        style = _OUTCOME_STYLE.get(result.outcome, "white")
        table.add_row(
            result.name or result.calendar_id,
            result.source,
            f"[{style}]{result.outcome}[/{style}]",
            str(result.fetched),
            str(result.inserted),
            str(result.updated),
            str(result.deleted),
            result.error or "",
        )
    console.print(table)
    console.print(f"\n[bold]{report.synced}[/bold] synced, [bold]{report.failed}[/bold] failed")


@events_app.command("upcoming")
def events_upcoming(
    count: int = typer.Option(10, "--count", "-n", min=1, help="Number of events"),
) -> None:
    """Show the next upcoming events from the local cache."""

    async def _upcoming(orch):
        events = await orch.events.get_upcoming_events(count)
        names = {(c.source, c.calendar_id): c.name for c in await orch.registry.list_calendars()}
        return events, names

    events, names = _run(_upcoming)
    if not events:
        console.print("[yellow]No upcoming events[/yellow]")
        return

    table = Table(title="Upcoming events")
    table.add_column("When", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Calendar")
    table.add_column("Location")
    for event in events:
        when = event.start.strftime("%a %d %b") if event.is_all_day else event.start.strftime("%a %d %b %H:%M")
        title = f"🎂 {event.title}" if event.is_birthday else event.title
        table.add_row(when, title, names.get((event.source, event.calendar_id), event.calendar_id), event.location or "")
    console.print(table)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port"),
) -> None:
    """Start the API server with background sync."""
    import uvicorn

    from familywall.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "familywall.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.familywall_log_level.lower(),
    )


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
