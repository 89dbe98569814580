import json
import os
import subprocess
import sys
from typing import Any, Callable, Dict, Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import settings
from presence_engine import GpsCoordinate, PresenceEngine, PresenceError
from presence_engine.database import initialize_database

APP_NAME = "Library Presence CLI"

console = Console()

OUTPUT_MODES = ("plain", "json", "rich")

_state: Dict[str, Any] = {
    "output": "plain",
    "db_file": settings.database_file,
    "engine": None,
}


def get_engine() -> PresenceEngine:
    """Engine for the selected database file, rebuilt when the file changes."""
    engine = _state["engine"]
    if engine is None or engine.db_file != _state["db_file"]:
        engine = PresenceEngine(
            _state["db_file"],
            config_ttl=settings.config_cache_ttl,
            reader_cache_ttl=settings.reader_cache_ttl,
        )
        _state["engine"] = engine
    return engine


def _emit(data: Any, plain: Callable[[Any], None], rich_view: Optional[Callable[[Any], None]] = None) -> None:
    mode = _state["output"]
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False, default=str))
    elif mode == "rich" and rich_view is not None:
        rich_view(data)
    else:
        plain(data)


def _fail(exc: PresenceError) -> None:
    if _state["output"] == "json":
        print(json.dumps(exc.to_dict(), ensure_ascii=False, default=str))
    else:
        console.print(f"[bold red]{exc.error}:[/] {exc.message}")
    raise typer.Exit(code=1)


def _parse_value(raw: str) -> Any:
    """Interpret a command-line value as JSON when possible (numbers, booleans, lists)."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# --- Typer CLI app ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: str = typer.Option("plain", "--output", "-o", help="Output format: plain | json | rich"),
    db_file: str = typer.Option(settings.database_file, "--db-file", envvar="LIBRARY_DB_FILE",
                                help="SQLite database file"),
):
    """Global options for every command."""
    if output not in OUTPUT_MODES:
        raise typer.BadParameter(f"output must be one of {', '.join(OUTPUT_MODES)}")
    _state["output"] = output
    _state["db_file"] = db_file


@app.command("init-db")
def cli_init_db():
    """Create tables and seed the default configuration."""
    initialize_database(_state["db_file"])
    print(f"Database initialised: {_state['db_file']}")


@app.command("mode")
def cli_mode():
    """Show the active scan mode."""
    info = get_engine().mode_info()

    def plain(data):
        print(f"Mode: {data['mode']} ({data['scan_mode']})")
        print(f"Reader mapping required: {'yes' if data['require_reader_mapping'] else 'no'}")

    def rich_view(data):
        console.print(Panel(
            f"[bold]{data['mode']}[/] ({data['scan_mode']})\n"
            f"demo_mode={data['demo_mode']}  production_mode_enabled={data['production_mode_enabled']}",
            title="Scan mode",
            border_style="cyan",
        ))

    _emit(info, plain, rich_view)


@app.command("config")
def cli_config(
    action: str = typer.Argument(..., help="Action: list, get, set"),
    key: Optional[str] = typer.Argument(None, help="Configuration key"),
    value: Optional[str] = typer.Argument(None, help="New value (JSON literals are parsed)"),
):
    """Inspect or change library configuration."""
    engine = get_engine()

    if action == "list":
        values = engine.config.get_all()

        def plain(data):
            for name in sorted(data):
                print(f"{name} = {data[name]!r}")

        def rich_view(data):
            table = Table(title="Library configuration", box=box.SIMPLE, header_style="bold cyan")
            table.add_column("Key", style="magenta")
            table.add_column("Value")
            for name in sorted(data):
                table.add_row(name, repr(data[name]))
            console.print(table)

        _emit(values, plain, rich_view)

    elif action == "get":
        if not key:
            console.print("[red]Usage: config get KEY[/]")
            raise typer.Exit(code=2)
        current = engine.config.get(key)
        if current is None:
            console.print(f"[yellow]Unknown configuration key: {key}[/]")
            raise typer.Exit(code=1)
        _emit({"key": key, "value": current}, lambda data: print(f"{key} = {data['value']!r}"))

    elif action == "set":
        if not key or value is None:
            console.print("[red]Usage: config set KEY VALUE[/]")
            raise typer.Exit(code=2)
        try:
            stored = engine.config.set(key, _parse_value(value))
        except PresenceError as e:
            _fail(e)
        _emit({"key": key, "value": stored}, lambda data: print(f"Updated {key} = {data['value']!r}"))

    else:
        print(f"Unknown action: {action}")
        print("Available actions: list, get, set")
        raise typer.Exit(code=2)


@app.command("score")
def cli_score(
    lat: Optional[float] = typer.Option(None, "--lat", help="Latitude (default: library center)"),
    lng: Optional[float] = typer.Option(None, "--lng", help="Longitude (default: library center)"),
    wifi: Optional[str] = typer.Option(None, "--wifi", help="Connected Wi-Fi SSID"),
    speed: Optional[float] = typer.Option(None, "--speed", help="Speed in km/h"),
):
    """Score a position without logging an entry."""
    engine = get_engine()
    center = engine.config.library_center()
    try:
        coordinate = GpsCoordinate(
            lat if lat is not None else center.latitude,
            lng if lng is not None else center.longitude,
        )
    except PresenceError as e:
        _fail(e)
    breakdown = engine.scorer.score(coordinate, wifi, speed).to_dict()

    def plain(data):
        details = data["details"]
        print(f"Total: {data['total']}")
        print(f"GPS: {data['gps']}  WiFi: {data['wifi']}  Motion: {data['motion']}")
        print(f"Distance: {details['distance_meters']}m ({details['zone']})")

    def rich_view(data):
        table = Table(title="Entry confidence", box=box.ROUNDED, header_style="bold cyan")
        table.add_column("Signal")
        table.add_column("Points", justify="right")
        for signal in ("gps", "wifi", "motion"):
            table.add_row(signal, str(data[signal]))
        table.add_row("[bold]total[/]", f"[bold]{data['total']}[/]")
        console.print(table)
        console.print(f"[dim]{data['details']['distance_meters']}m from center, {data['details']['zone']} zone[/]")

    _emit(breakdown, plain, rich_view)


@app.command("readers")
def cli_readers():
    """List fixed RFID readers with their health."""
    engine = get_engine()
    readers = engine.locations.list_readers()

    def plain(data):
        if not data:
            print("No readers registered.")
            return
        for reader in data:
            print(f"{reader['reader_code']}  shelf={reader['shelf_code'] or '-'}  {reader['status']['health']}")

    def rich_view(data):
        table = Table(title="RFID readers", show_lines=True, header_style="bold cyan")
        table.add_column("Code", style="magenta", no_wrap=True)
        table.add_column("Shelf")
        table.add_column("Active")
        table.add_column("Health")
        table.add_column("Scans", justify="right")
        for reader in data:
            status = reader["status"]
            table.add_row(
                reader["reader_code"],
                reader["shelf_code"] or "-",
                "yes" if status["is_active"] else "no",
                status["health"],
                str(status["last_scan_count"]),
            )
        console.print(table)

    _emit(readers, plain, rich_view)


@app.command("occupancy")
def cli_occupancy():
    """Show who is currently inside the library."""
    occupants = get_engine().entries.current_occupancy()

    def plain(data):
        print(f"Current occupancy: {len(data)}")
        for occupant in data:
            name = " ".join(filter(None, (occupant.get("first_name"), occupant.get("last_name"))))
            print(f"  user {occupant['user_id']} {name} since {occupant['entry_time']}")

    def rich_view(data):
        table = Table(title=f"Current occupancy: {len(data)}", header_style="bold cyan")
        table.add_column("User", justify="right")
        table.add_column("Name")
        table.add_column("Since")
        for occupant in data:
            name = " ".join(filter(None, (occupant.get("first_name"), occupant.get("last_name"))))
            table.add_row(str(occupant["user_id"]), name or "-", occupant["entry_time"])
        console.print(table)

    _emit(occupants, plain, rich_view)


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Start the HTTP API with uvicorn."""
    print(f"Starting presence API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    env = dict(os.environ, LIBRARY_DB_FILE=_state["db_file"])
    subprocess.run(args, env=env)


if __name__ == "__main__":
    app()
