"""
ams2stats CLI - Command Line Interface for AMS2 server stats

Provides commands for:
- Importing stats snapshots into the store
- Summarizing a snapshot without touching the store
- Browsing servers, sessions, results and players
- Maintaining the store (deleting servers, manual results)
"""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ams2stats import __version__
from ams2stats.core.config import (
    AppConfig,
    generate_default_config,
    get_config,
    load_config,
    set_config,
    setup_logging,
)
from ams2stats.core.errors import StatsError
from ams2stats.core.parser import (
    StatsSnapshot,
    format_distance,
    format_lap_time,
)
from ams2stats.infra.database import DatabaseManager, get_db, set_db
from ams2stats.infra.queries import ManualResultInput, StatsQueryService
from ams2stats.pipeline.importer import StatsImporter

app = typer.Typer(
    name="ams2stats",
    help="Archive and query Automobilista 2 dedicated server stats",
    add_completion=False,
)
console = Console()

logger = logging.getLogger(__name__)


def _config() -> AppConfig:
    return get_config()


def _db() -> DatabaseManager:
    return get_db()


def _queries() -> StatsQueryService:
    return StatsQueryService(_db())


def _fail(error: Exception | str) -> NoReturn:
    console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(1)


def _fmt_epoch(epoch: int | None) -> str:
    if not epoch:
        return "-"
    return datetime.fromtimestamp(epoch, UTC).strftime("%Y-%m-%d %H:%M")


def _fmt_iso(value: str | None) -> str:
    return value[:16].replace("T", " ") if value else "-"


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]ams2stats[/bold blue] v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True, help="Show version and exit"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable verbose output"),
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite database path (overrides config)"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (.yaml, .toml, .json)"
    ),
) -> None:
    """ams2stats - AMS2 dedicated server stats archive"""
    config = load_config(config_file)
    if verbose:
        config.logging.level = "DEBUG"
    if db:
        config.database.path = str(db)
    setup_logging(config.logging)
    set_config(config)
    # Reopen against this invocation's config
    set_db(None)


# =============================================================================
# Import
# =============================================================================


@app.command("import")
def import_cmd(
    stats_file: Path = typer.Argument(
        ..., help="Path to sms_stats_data.json", exists=True, dir_okay=False, resolve_path=True
    ),
    server_id: Optional[str] = typer.Option(
        None, "--server-id", "-s", help="Server identifier (defaults to the in-file server name)"
    ),
) -> None:
    """Import a stats snapshot into the database."""
    config = _config()
    try:
        importer = StatsImporter(_db(), config.importer)
        result = importer.import_file(stats_file, server_identifier=server_id)
    except StatsError as e:
        _fail(e)

    status_color = {"success": "green", "partial": "yellow", "error": "red"}[result.status]

    table = Table(title=f"Import: {result.server_name}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Server ID", str(result.server_id))
    table.add_row("Sessions in file", str(result.sessions_in_file))
    table.add_row("Imported", str(result.imported))
    table.add_row("Updated", str(result.updated))
    table.add_row("Skipped", str(result.skipped))
    table.add_row("Status", f"[{status_color}]{result.status}[/{status_color}]")
    console.print(table)

    for error in result.errors:
        console.print(f"[red]Session {error.session_index}:[/red] {error.error}")

    if result.status == "error":
        raise typer.Exit(1)


@app.command()
def summary(
    stats_file: Path = typer.Argument(
        ..., help="Path to sms_stats_data.json", exists=True, dir_okay=False, resolve_path=True
    ),
) -> None:
    """Summarize a snapshot file without importing it."""
    try:
        snapshot = StatsSnapshot.from_file(stats_file, strip=_config().importer.strip_comments)
    except StatsError as e:
        _fail(e)

    stats = snapshot.get_session_stats()
    console.print(
        Panel(
            f"[bold]{snapshot.server_name}[/bold]\n"
            f"Uptime: {snapshot.get_formatted_uptime()}\n"
            f"Sessions: {stats['total_sessions']}  Lobbies: {stats['total_lobbies']}\n"
            f"Players: {len(snapshot.players)}  Distance: {snapshot.get_formatted_total_distance()}",
            title="Server",
        )
    )

    players = Table(title="Top Players (distance)")
    players.add_column("Player", style="cyan")
    players.add_column("Joins", justify="right")
    players.add_column("Finishes", justify="right")
    players.add_column("Distance", justify="right")
    for p in snapshot.get_player_leaderboard("distance")[:10]:
        players.add_row(p.name, str(p.race_joins), str(p.race_finishes), format_distance(p.total_distance))
    console.print(players)

    tracks = Table(title="Track Usage")
    tracks.add_column("Track", justify="right")
    tracks.add_column("Sessions", justify="right")
    tracks.add_column("Distance", justify="right")
    for t in sorted(snapshot.get_track_usage(), key=lambda t: t["sessions"], reverse=True):
        tracks.add_row(str(t["track_id"]), str(t["sessions"]), format_distance(t["distance"]))
    console.print(tracks)

    sessions = Table(title="Recent Sessions")
    sessions.add_column("#", justify="right")
    sessions.add_column("Started")
    sessions.add_column("Track", justify="right")
    sessions.add_column("Stages")
    sessions.add_column("Finished")
    for s in snapshot.get_recent_sessions(_config().query.recent_sessions):
        sessions.add_row(
            str(s.index),
            _fmt_epoch(s.start_time),
            str(s.track_id),
            ", ".join(s.stages),
            "yes" if s.finished else "no",
        )
    console.print(sessions)


# =============================================================================
# Browse
# =============================================================================


@app.command()
def servers() -> None:
    """List imported servers."""
    rows = _queries().get_servers()
    if not rows:
        console.print("[yellow]No servers imported yet[/yellow]")
        return

    table = Table(title="Servers")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Identifier")
    table.add_column("Sessions", justify="right")
    table.add_column("Players", justify="right")
    table.add_column("Last import")
    for s in rows:
        table.add_row(
            str(s["id"]),
            s["name"],
            s["identifier"],
            str(s["session_count"]),
            str(s["player_count"]),
            _fmt_iso(s["last_imported_at"]),
        )
    console.print(table)


@app.command()
def sessions(
    server_id: int = typer.Argument(..., help="Server ID"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Page size"),
    offset: int = typer.Option(0, "--offset", help="Rows to skip"),
    with_results: bool = typer.Option(False, "--with-results", help="Only sessions with results"),
) -> None:
    """List a server's sessions, newest first."""
    page_size = limit or _config().query.page_size
    rows = _queries().get_sessions(server_id, limit=page_size, offset=offset, has_results=with_results)

    table = Table(title=f"Sessions (server {server_id})")
    table.add_column("ID", justify="right")
    table.add_column("#", justify="right")
    table.add_column("Started")
    table.add_column("Track", justify="right")
    table.add_column("Stages")
    table.add_column("Drivers", justify="right")
    table.add_column("Results")
    for s in rows:
        table.add_row(
            str(s["id"]),
            str(s["session_index"]),
            _fmt_epoch(s["start_time"]),
            str(s["track_id"]),
            ", ".join(s["stage_names"]),
            str(s["participant_count"]),
            "yes" if s["has_results"] else "",
        )
    console.print(table)


def _results_table(title: str, results: list[dict]) -> Table:
    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("Pos", justify="right")
    table.add_column("Driver", style="cyan")
    table.add_column("Best lap", justify="right")
    table.add_column("Laps", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("State")
    for r in results:
        table.add_row(
            str(r["id"]),
            str(r["position"]),
            r["name"] + (" [dim](manual)[/dim]" if r["is_manual"] else ""),
            format_lap_time(r["fastest_lap_time"]),
            str(r["laps_completed"]),
            format_lap_time(r["total_time"]),
            r["state"] or "",
        )
    return table


@app.command()
def results(
    session_id: int = typer.Argument(..., help="Session ID (from the sessions command)"),
    stage: Optional[str] = typer.Option(None, "--stage", help="Only this stage (e.g. race1)"),
) -> None:
    """Show a session's stage results."""
    queries = _queries()
    if stage:
        grouped = {stage: queries.get_stage_results(session_id, stage)}
    else:
        grouped = queries.get_all_session_results(session_id)

    if not any(grouped.values()):
        console.print(f"[yellow]No results for session {session_id}[/yellow]")
        return
    for stage_name, rows in grouped.items():
        console.print(_results_table(stage_name, rows))


@app.command()
def player(
    steam_id: str = typer.Argument(..., help="Steam ID"),
    server_id: Optional[int] = typer.Option(None, "--server", help="Restrict history to a server"),
) -> None:
    """Show a player's profile and result history."""
    queries = _queries()
    profile = queries.get_player(steam_id)
    if profile is None:
        _fail(f"Player {steam_id} not found")

    console.print(
        Panel(
            f"[bold]{profile['name']}[/bold] ({profile['steam_id']})\n"
            f"First seen: {_fmt_epoch(profile['first_seen'])}  "
            f"Last seen: {_fmt_epoch(profile['last_seen'])}\n"
            f"Joins: {profile['race_joins']}  Finishes: {profile['race_finishes']}  "
            f"Distance: {format_distance(profile['total_distance'])}",
            title="Player",
        )
    )

    table = Table(title="Results")
    table.add_column("Session", justify="right")
    table.add_column("Started")
    table.add_column("Stage")
    table.add_column("Track", justify="right")
    table.add_column("Pos", justify="right")
    table.add_column("Best lap", justify="right")
    table.add_column("State")
    for r in queries.get_player_result_history(steam_id, server_id):
        table.add_row(
            str(r["session_index"]),
            _fmt_epoch(r["session_start_time"]),
            r["stage_name"],
            str(r["track_id"]),
            str(r["position"]),
            format_lap_time(r["fastest_lap_time"]),
            r["state"] or "",
        )
    console.print(table)


@app.command("best-laps")
def best_laps(
    steam_id: str = typer.Argument(..., help="Steam ID"),
    server_id: Optional[int] = typer.Option(None, "--server", help="Restrict to a server"),
) -> None:
    """Show a player's best lap on each track."""
    rows = _queries().get_player_best_laps(steam_id, server_id)

    table = Table(title=f"Best laps: {steam_id}")
    table.add_column("Track", justify="right")
    table.add_column("Best lap", justify="right", style="green")
    table.add_column("Session", justify="right")
    table.add_column("Stage")
    table.add_column("Date")
    for r in rows:
        table.add_row(
            str(r["track_id"]),
            format_lap_time(r["best_lap_time"]),
            str(r["session_index"]),
            r["stage_name"],
            _fmt_epoch(r["session_start_time"]),
        )
    console.print(table)


@app.command()
def leaderboard(
    server_id: int = typer.Argument(..., help="Server ID"),
    sort_by: str = typer.Option("distance", "--sort", "-s", help="distance, joins or finishes"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of players"),
) -> None:
    """Rank a server's players."""
    try:
        rows = _queries().get_leaderboard(server_id, sort_by=sort_by, limit=limit)
    except ValueError as e:
        _fail(e)

    table = Table(title=f"Leaderboard by {sort_by}")
    table.add_column("#", justify="right")
    table.add_column("Player", style="cyan")
    table.add_column(sort_by.capitalize(), justify="right")
    for r in rows:
        value = format_distance(r["value"]) if sort_by == "distance" else str(r["value"])
        table.add_row(str(r["rank"]), r["name"], value)
    console.print(table)


@app.command()
def history(
    server_id: int = typer.Argument(..., help="Server ID"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Number of imports"),
) -> None:
    """Show a server's import log."""
    rows = _queries().get_import_history(server_id, limit or _config().query.import_history_limit)

    table = Table(title=f"Imports (server {server_id})")
    table.add_column("When")
    table.add_column("In file", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Status")
    for r in rows:
        table.add_row(
            _fmt_iso(r["imported_at"]),
            str(r["sessions_in_file"]),
            str(r["sessions_imported"]),
            str(r["sessions_updated"]),
            str(r["sessions_skipped"]),
            r["status"],
        )
    console.print(table)


# =============================================================================
# Maintenance
# =============================================================================


@app.command("delete-server")
def delete_server(
    server_id: int = typer.Argument(..., help="Server ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete a server and all data imported for it."""
    queries = _queries()
    server = queries.get_server(server_id)
    if server is None:
        _fail(f"Server {server_id} not found")

    if not yes:
        typer.confirm(
            f"Delete '{server['name']}' and its {server['session_count']} sessions?", abort=True
        )

    try:
        queries.delete_server(server_id)
    except StatsError as e:
        _fail(e)
    console.print(f"[green]Deleted server {server_id}[/green]")


@app.command("add-result")
def add_result(
    session_id: int = typer.Argument(..., help="Session ID"),
    stage: str = typer.Argument(..., help="Stage name (e.g. race1)"),
    name: str = typer.Argument(..., help="Driver name"),
    position: int = typer.Option(..., "--position", "-p", help="Finishing position"),
    state: str = typer.Option("Finished", "--state", help="Result state"),
    laps: int = typer.Option(0, "--laps", help="Laps completed"),
    total_time: int = typer.Option(0, "--total-time", help="Total time in ms"),
    fastest_lap: Optional[int] = typer.Option(None, "--fastest-lap", help="Fastest lap in ms"),
    steam_id: Optional[str] = typer.Option(None, "--steam-id", help="Driver's Steam ID"),
    vehicle_id: int = typer.Option(0, "--vehicle-id", help="Vehicle ID"),
) -> None:
    """Add a manually entered result to a stage."""
    params = ManualResultInput(
        session_id=session_id,
        stage_name=stage,
        name=name,
        position=position,
        state=state,
        laps_completed=laps,
        total_time=total_time,
        steam_id=steam_id,
        fastest_lap_time=fastest_lap,
        vehicle_id=vehicle_id,
    )
    try:
        row = _queries().insert_manual_result(params)
    except StatsError as e:
        _fail(e)
    console.print(f"[green]Added result {row['id']}[/green] ({name}, P{position} in {stage})")


@app.command("remove-result")
def remove_result(result_id: int = typer.Argument(..., help="Result ID")) -> None:
    """Remove a manually entered result."""
    try:
        _queries().delete_manual_result(result_id)
    except StatsError as e:
        _fail(e)
    console.print(f"[green]Removed result {result_id}[/green]")


@app.command("init-config")
def init_config(
    path: Path = typer.Argument(Path("ams2stats.yaml"), help="Where to write the config"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
) -> None:
    """Write a default configuration file."""
    if path.exists() and not force:
        _fail(f"{path} already exists (use --force to overwrite)")
    try:
        generate_default_config(path)
    except ValueError as e:
        _fail(e)
    console.print(f"[green]Wrote {path}[/green]")


if __name__ == "__main__":
    app()
