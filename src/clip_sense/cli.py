"""CLI for ClipSense.

Commands:
    init-db                  - Create tables (and the vector extension)
    reset-db                 - Drop and recreate all tables
    recognize                - Identify a clip from an audio file and frames
    resolve <title>          - Look a title up in the local store
    import-title <query>     - Fetch a title from TMDB into the store
    add-dialogue <id> <file> - Add dialogue lines (one per line) to a title
    show-record <id>         - Show a stored title
    related <id>             - Similar titles and where to watch
    audits                   - List recent recognition decisions
    serve                    - Run the HTTP API
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import func, select

from clip_sense.db import async_session_factory, engine, init_db
from clip_sense.models import DialogueLine, DialogueSource, MediaRecord
from clip_sense.recognition import (
    CascadeEvent,
    MediaPayload,
    RecognitionFailure,
    RecognitionRequest,
    ThoroughnessPolicy,
)

app = typer.Typer(
    name="clip-sense",
    help="ClipSense: identify the movie or TV show a short video clip comes from",
    no_args_is_help=True,
)
console = Console()


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


@app.callback()
def main_options(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show debug logging")
    ] = False,
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


async def _find_record(identifier: str) -> MediaRecord | None:
    """Look a record up by numeric id or external id."""
    from clip_sense.recognition import CacheResolver

    resolver = CacheResolver(async_session_factory)
    if identifier.isdigit():
        return await resolver.get(int(identifier))
    return await resolver.get_by_external_id(identifier)


# ── Database ─────────────────────────────────────────────────────────────────


@app.command("init-db")
def init_database():
    """Initialize the database schema (creates tables if they don't exist)."""
    async def _init():
        await init_db()
        console.print("[green]Database initialized.[/green]")

    run_async(_init())


@app.command("reset-db")
def reset_database(
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Skip confirmation prompt")
    ] = False,
):
    """Drop all tables and recreate them.

    WARNING: This destroys all data!
    """
    if not force:
        confirm = typer.confirm("This will DELETE ALL DATA. Are you sure?", default=False)
        if not confirm:
            console.print("[yellow]Aborted.[/yellow]")
            raise typer.Exit(0)

    async def _reset():
        from clip_sense.models import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await init_db()
        console.print("[green]Database reset.[/green]")

    run_async(_reset())


# ── Recognition ──────────────────────────────────────────────────────────────


@app.command()
def recognize(
    audio: Annotated[
        Path | None, typer.Option("--audio", "-a", help="Audio track of the clip")
    ] = None,
    frames: Annotated[
        list[Path] | None, typer.Option("--frame", "-f", help="Still frame (repeatable, in order)")
    ] = None,
    policy: Annotated[
        str, typer.Option("--policy", "-p", help="standard, fast or thorough")
    ] = "standard",
    trace: Annotated[
        bool, typer.Option("--trace", help="Print every cascade transition")
    ] = False,
):
    """Identify the title a clip comes from."""
    paths = [p for p in [audio, *(frames or [])] if p is not None]
    for p in paths:
        if not p.is_file():
            console.print(f"[red]Error:[/red] File does not exist: {p}")
            raise typer.Exit(1)
    try:
        chosen = ThoroughnessPolicy.by_name(policy)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    media = MediaPayload(
        audio=audio.read_bytes() if audio else None,
        frames=tuple(f.read_bytes() for f in frames or []),
        filename=audio.name if audio else None,
    )

    def print_event(event: CascadeEvent) -> None:
        console.print(f"  [dim]{event.progress:>4.0%}[/dim] {event.state.value}")

    async def _recognize():
        from clip_sense.runtime import build_runtime

        await init_db()
        runtime = build_runtime(policy=chosen)
        try:
            outcome = await runtime.service.recognize(
                RecognitionRequest(media=media),
                observers=[print_event] if trace else (),
            )
        finally:
            await runtime.aclose()

        if isinstance(outcome, RecognitionFailure):
            lines = [
                f"[bold]Reason:[/bold] {outcome.reason.value}",
                f"[bold]Explanation:[/bold] {outcome.explanation}",
            ]
            if outcome.diagnostic_id:
                lines.append(f"[bold]Diagnostic:[/bold] {outcome.diagnostic_id}")
            console.print(Panel("\n".join(lines), title="Not recognized", border_style="red"))
        else:
            lines = [
                f"[bold]Title:[/bold] {outcome.record.display_title}",
                f"[bold]External ID:[/bold] {outcome.record.external_id}",
                f"[bold]Confidence:[/bold] {outcome.confidence:.2f}"
                + (" [yellow](low)[/yellow]" if outcome.low_confidence else ""),
                f"[bold]Strategy:[/bold] {outcome.strategy.value}",
                f"[bold]Signals:[/bold] {', '.join(outcome.signal_kinds) or '-'}",
                f"[bold]Explanation:[/bold] {outcome.explanation}",
            ]
            if outcome.correction:
                lines.append(f"[bold]Correction:[/bold] {outcome.correction}")
            console.print(Panel("\n".join(lines), title="Recognized", border_style="green"))

        if outcome.alternates:
            table = Table(title="Alternates")
            table.add_column("Title")
            table.add_column("Year", justify="right")
            table.add_column("Confidence", justify="right")
            for alt in outcome.alternates:
                table.add_row(alt.title, str(alt.year or "-"), f"{alt.confidence:.2f}")
            console.print(table)
        console.print(f"[dim]{outcome.processing_ms} ms[/dim]")

    run_async(_recognize())


# ── Store ────────────────────────────────────────────────────────────────────


@app.command()
def resolve(
    title: Annotated[str, typer.Argument(help="Title to look up")],
    year: Annotated[int | None, typer.Option("--year", "-y", help="Release year")] = None,
):
    """Resolve a title against the local store (exact, partial, then normalized)."""
    async def _resolve():
        from clip_sense.recognition import CacheResolver

        await init_db()
        record = await CacheResolver(async_session_factory).resolve(title, year)
        if record is None:
            console.print(f"[yellow]No stored title matches {title!r}.[/yellow]")
            raise typer.Exit(1)
        console.print(
            f"[green]{record.record_id}[/green] {record.display_title} ({record.external_id})"
        )

    run_async(_resolve())


@app.command("import-title")
def import_title(
    query: Annotated[str, typer.Argument(help="Title to search, or an external id")],
    year: Annotated[int | None, typer.Option("--year", "-y", help="Release year")] = None,
):
    """Fetch a title from TMDB and store it (idempotent)."""
    async def _import():
        from clip_sense.clients import TMDBClient
        from clip_sense.config import settings
        from clip_sense.recognition import CacheResolver

        if not settings.tmdb_api_key:
            console.print("[red]Error:[/red] TMDB_API_KEY is not set")
            raise typer.Exit(1)

        await init_db()
        tmdb = TMDBClient()
        try:
            if query.startswith("tmdb:"):
                external = await tmdb.get_by_external_id(query)
            else:
                found = await tmdb.search_title(query, year)
                external = found[0] if found else None
        finally:
            await tmdb.aclose()

        if external is None:
            console.print(f"[yellow]TMDB has nothing for {query!r}.[/yellow]")
            raise typer.Exit(1)
        record = await CacheResolver(async_session_factory).create_if_absent(external)
        console.print(
            f"[green]{record.record_id}[/green] {record.display_title} ({record.external_id})"
        )

    run_async(_import())


@app.command("add-dialogue")
def add_dialogue(
    record: Annotated[str, typer.Argument(help="Record id or external id")],
    path: Annotated[Path, typer.Argument(help="Text file, one dialogue line per line")],
    source: Annotated[
        DialogueSource, typer.Option("--source", "-s", help="Where the lines came from")
    ] = DialogueSource.MANUAL,
    embed: Annotated[
        bool, typer.Option("--embed/--no-embed", help="Embed lines for semantic search")
    ] = True,
):
    """Add dialogue lines for a stored title."""
    if not path.is_file():
        console.print(f"[red]Error:[/red] File does not exist: {path}")
        raise typer.Exit(1)

    async def _add():
        from clip_sense.clients import EmbeddingClient
        from clip_sense.corpus import SqlDialogueCorpus

        await init_db()
        found = await _find_record(record)
        if found is None:
            console.print(f"[red]Error:[/red] No stored title: {record}")
            raise typer.Exit(1)
        corpus = SqlDialogueCorpus(async_session_factory, EmbeddingClient() if embed else None)
        lines = path.read_text(encoding="utf-8").splitlines()
        count = await corpus.add_dialogue(found.record_id, lines, source=source)
        console.print(f"[green]Added {count} line(s)[/green] to {found.display_title}")

    run_async(_add())


@app.command("show-record")
def show_record(
    identifier: Annotated[str, typer.Argument(help="Record id or external id")],
):
    """Show details for a stored title."""
    async def _show():
        await init_db()
        record = await _find_record(identifier)
        if record is None:
            console.print(f"[red]Error:[/red] Record not found: {identifier}")
            raise typer.Exit(1)

        async with async_session_factory() as session:
            stmt = (
                select(func.count())
                .select_from(DialogueLine)
                .where(DialogueLine.record_id == record.record_id)
            )
            line_count = (await session.execute(stmt)).scalar()

        panel_content = [
            f"[bold]ID:[/bold] {record.record_id}",
            f"[bold]External ID:[/bold] {record.external_id}",
            f"[bold]Title:[/bold] {record.display_title}",
            f"[bold]Type:[/bold] {record.media_type.value}",
        ]
        if record.imdb_id:
            panel_content.append(f"[bold]IMDb:[/bold] {record.imdb_id}")
        if record.overview:
            panel_content.append(f"[bold]Overview:[/bold] {record.overview}")
        panel_content.append(f"[bold]Dialogue lines:[/bold] {line_count}")
        panel_content.append(f"[bold]Created:[/bold] {record.created_at}")
        console.print(Panel("\n".join(panel_content), title="Record Details"))

        if record.artifacts:
            table = Table(title="Cached Artifacts")
            table.add_column("Kind")
            table.add_column("Fetched")
            for kind, entry in sorted(record.artifacts.items()):
                table.add_row(kind, str(entry.get("fetched_at", "-")))
            console.print(table)

    run_async(_show())


@app.command()
def related(
    identifier: Annotated[str, typer.Argument(help="Record id or external id")],
    country: Annotated[
        str, typer.Option("--country", "-c", help="Country for watch providers")
    ] = "US",
):
    """Show similar titles and where a stored title can be watched."""
    async def _related():
        from clip_sense.clients import TMDBClient
        from clip_sense.config import settings
        from clip_sense.errors import CapabilityUnavailable
        from clip_sense.recognition import CacheResolver, RelatedTitles

        await init_db()
        record = await _find_record(identifier)
        if record is None:
            console.print(f"[red]Error:[/red] Record not found: {identifier}")
            raise typer.Exit(1)

        tmdb = TMDBClient() if settings.tmdb_api_key else None
        titles = RelatedTitles(CacheResolver(async_session_factory), tmdb)
        try:
            similar = await titles.similar(record)
            availability = await titles.availability(record, country)
        except CapabilityUnavailable:
            console.print("[red]Error:[/red] Nothing cached and TMDB_API_KEY is not set")
            raise typer.Exit(1) from None
        finally:
            if tmdb is not None:
                await tmdb.aclose()

        table = Table(title=f"Similar to {record.display_title}")
        table.add_column("ID", style="dim")
        table.add_column("Title")
        table.add_column("External ID")
        for other in similar:
            table.add_row(str(other.record_id), other.display_title, other.external_id)
        console.print(table)

        if not availability.providers:
            console.print(f"[yellow]No watch providers in {availability.country}.[/yellow]")
            return
        providers = Table(title=f"Where to watch ({availability.country})")
        providers.add_column("Provider")
        providers.add_column("Offer")
        for provider in availability.providers:
            providers.add_row(provider.name, provider.offer)
        console.print(providers)

    run_async(_related())


@app.command()
def audits(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Rows to show")] = 20,
):
    """List recent recognition decisions."""
    async def _audits():
        from clip_sense.recognition import AuditLog

        await init_db()
        rows = await AuditLog(async_session_factory).recent(limit)
        if not rows:
            console.print("[yellow]No recognition audits yet.[/yellow]")
            return

        table = Table(title="Recent Recognitions")
        table.add_column("When")
        table.add_column("Request")
        table.add_column("Outcome")
        table.add_column("Record", justify="right")
        table.add_column("Confidence", justify="right")
        table.add_column("Signals")
        table.add_column("ms", justify="right")
        for row in rows:
            outcome = row.outcome.value if row.failure_reason is None else row.failure_reason
            table.add_row(
                f"{row.created_at:%Y-%m-%d %H:%M:%S}",
                row.request_id[:12],
                outcome + (" (low)" if row.low_confidence else ""),
                str(row.record_id or "-"),
                f"{row.confidence:.2f}" if row.confidence is not None else "-",
                ", ".join(row.signal_kinds or []) or "-",
                str(row.processing_ms or "-"),
            )
        console.print(table)

    run_async(_audits())


# ── Server ───────────────────────────────────────────────────────────────────


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Bind port")] = 8000,
):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("clip_sense.app:create_app", factory=True, host=host, port=port)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
