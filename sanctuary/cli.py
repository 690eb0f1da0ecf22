from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from sanctuary.config import get_settings
from sanctuary.db import current_db_path, init_db, session_scope
from sanctuary.errors import SanctuaryError
from sanctuary.llm import LLMClient
from sanctuary.matching import generate_matches
from sanctuary.weights import BASELINE_WEIGHTS, get_adjusted_weights

app = typer.Typer(help="Sanctuary founder-mentor matching service")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
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
    if isinstance(value, float):
        return f"{value:.4f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, columns: list[str], rows: list[list[Any]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*(_format_scalar(v) for v in row))
    console.print(Panel(table, title=title, border_style=border_style))


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    """Create the SQLite database and tables."""
    init_db()
    path = str(current_db_path())
    if _wants_json(ctx):
        typer.echo(json.dumps({"database": path}))
    else:
        console.print(f"[green]Database ready[/green] at {path}")


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Bind address (default SANCTUARY_HOST)."),
    port: int | None = typer.Option(None, help="Port (default SANCTUARY_PORT)."),
    reload: bool = typer.Option(False, help="Auto-reload on code changes."),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("sanctuary.app:app", host=host or settings.host, port=port or settings.port, reload=reload)


@app.command()
def rematch(ctx: typer.Context, bottleneck_id: int = typer.Argument(..., help="Bottleneck to re-match.")) -> None:
    """Re-run matching for one bottleneck and print the top matches."""
    init_db()

    async def _run():
        with session_scope() as session:
            return await generate_matches(session, bottleneck_id, LLMClient())

    try:
        results = asyncio.run(_run())
    except SanctuaryError as exc:
        console.print(f"[red]Rematch failed:[/red] {exc.message}")
        raise typer.Exit(code=1) from exc

    if _wants_json(ctx):
        typer.echo(json.dumps([r.to_dict() for r in results], indent=2, ensure_ascii=False))
        return
    if not results:
        console.print("[yellow]No matches above threshold.[/yellow]")
        return
    _render_table(
        f"Bottleneck {bottleneck_id} · top matches",
        ["Match", "Mentor", "Experience", "Score", "Confidence"],
        [[r.match_id, r.mentor_name, r.experience_id, r.score, r.confidence] for r in results],
    )


@app.command()
def weights(ctx: typer.Context) -> None:
    """Show the feedback-adjusted dimension weights next to the baseline."""
    init_db()
    with session_scope() as session:
        current = get_adjusted_weights(session)
    if _wants_json(ctx):
        typer.echo(json.dumps({"baseline": BASELINE_WEIGHTS, "current": current}, indent=2))
        return
    _render_table(
        "Dimension weights",
        ["Dimension", "Baseline", "Current"],
        [[dim, BASELINE_WEIGHTS[dim], current[dim]] for dim in BASELINE_WEIGHTS],
        border_style="magenta",
    )


if __name__ == "__main__":
    app()
