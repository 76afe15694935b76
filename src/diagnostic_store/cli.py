"""CLI for diagnostic-store.

Commands:
    put <owner> <type> <path>  - Store a file (or stdin) as a blob
    get <owner> <type>         - Print or save a reassembled blob
    list <owner>               - List blobs stored for an owner
    inspect <owner>            - Show chunk-set completeness per data type
    delete <owner>             - Delete every fragment stored for an owner
    init-db                    - Create tables for the SQL backend
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from diagnostic_store.config import settings
from diagnostic_store.errors import ChunkStoreError
from diagnostic_store.records import SqlRecordStore, create_record_store
from diagnostic_store.store import ChunkedBlobStore

app = typer.Typer(
    name="diagnostic-store",
    help="Chunked storage for oversized diagnostic run payloads",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


@asynccontextmanager
async def open_store() -> AsyncIterator[ChunkedBlobStore]:
    """Open the configured record store and wrap it in a blob store."""
    records = create_record_store(settings)
    try:
        yield ChunkedBlobStore(records)
    finally:
        await records.aclose()


def _fail(error: Exception) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {error}")
    return typer.Exit(1)


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show debug logging")
    ] = False,
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.command()
def put(
    owner_id: Annotated[str, typer.Argument(help="Owner key, e.g. a diagnostic run id")],
    data_type: Annotated[str, typer.Argument(help="Data type tag, e.g. 'modules'")],
    path: Annotated[str, typer.Argument(help="File to store, or '-' for stdin")],
):
    """Store a text payload, chunking it if it is too large for one record."""
    if path == "-":
        content = sys.stdin.read()
    else:
        file_path = Path(path)
        if not file_path.is_file():
            err_console.print(f"[red]Error:[/red] Path does not exist: {path}")
            raise typer.Exit(1)
        content = file_path.read_text(encoding="utf-8")

    async def _put() -> list[str]:
        async with open_store() as store:
            return await store.store(owner_id, data_type, content)

    try:
        ids = run_async(_put())
    except (ChunkStoreError, ValueError) as e:
        raise _fail(e) from None

    label = "record" if len(ids) == 1 else "chunks"
    console.print(f"[green]OK[/green] {owner_id}/{data_type} → {len(ids)} {label}")
    for record_id in ids:
        console.print(f"  • {record_id}")


@app.command()
def get(
    owner_id: Annotated[str, typer.Argument(help="Owner key")],
    data_type: Annotated[str, typer.Argument(help="Data type tag")],
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write to a file instead of stdout")
    ] = None,
):
    """Fetch and reassemble one blob."""

    async def _get():
        async with open_store() as store:
            return await store.fetch_one(owner_id, data_type)

    try:
        blob = run_async(_get())
    except ChunkStoreError as e:
        raise _fail(e) from None

    if blob is None:
        err_console.print(f"[red]Error:[/red] No '{data_type}' blob for {owner_id}")
        raise typer.Exit(1)

    if output:
        output.write_text(blob.content, encoding="utf-8")
        err_console.print(f"[green]OK[/green] Wrote {blob.size_kb:.1f} KB to {output}")
    else:
        typer.echo(blob.content, nl=False)


@app.command("list")
def list_blobs(
    owner_id: Annotated[str, typer.Argument(help="Owner key")],
):
    """List the blobs stored for an owner."""

    async def _list():
        async with open_store() as store:
            return await store.fetch_all(owner_id)

    try:
        blobs = run_async(_list())
    except ChunkStoreError as e:
        raise _fail(e) from None

    if not blobs:
        console.print(f"[yellow]No blobs stored for {owner_id}.[/yellow]")
        return

    table = Table(title=f"Blobs for {owner_id}")
    table.add_column("Data Type")
    table.add_column("Size (KB)", justify="right")
    table.add_column("Characters", justify="right")
    for blob in sorted(blobs, key=lambda b: b.data_type):
        table.add_row(blob.data_type, f"{blob.size_kb:,.2f}", f"{len(blob.content):,}")
    console.print(table)


@app.command()
def inspect(
    owner_id: Annotated[str, typer.Argument(help="Owner key")],
):
    """Show chunk-set completeness for each data type of an owner."""

    async def _inspect():
        async with open_store() as store:
            return await store.inspect(owner_id)

    try:
        reports = run_async(_inspect())
    except ChunkStoreError as e:
        raise _fail(e) from None

    if not reports:
        console.print(f"[yellow]No fragments stored for {owner_id}.[/yellow]")
        return

    table = Table(title=f"Fragments for {owner_id}")
    table.add_column("Data Type")
    table.add_column("Records", justify="right")
    table.add_column("Chunks")
    table.add_column("Missing")
    table.add_column("Duplicates")
    table.add_column("Stale", justify="right")
    table.add_column("Status")
    for report in sorted(reports, key=lambda r: r.data_type):
        if report.whole_blob:
            chunks = "whole"
        else:
            chunks = f"{len(report.present)}/{report.expected or '?'}"
        status = "[green]complete[/green]" if report.complete else "[red]incomplete[/red]"
        table.add_row(
            report.data_type,
            str(report.fragment_count),
            chunks,
            ", ".join(str(n) for n in report.missing) or "-",
            ", ".join(report.duplicate_labels) or "-",
            str(report.stale_whole_blobs),
            status,
        )
    console.print(table)


@app.command()
def delete(
    owner_id: Annotated[str, typer.Argument(help="Owner key")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
):
    """Delete every fragment stored for an owner."""
    if not yes:
        typer.confirm(f"Delete all diagnostic details for {owner_id}?", abort=True)

    async def _delete():
        async with open_store() as store:
            await store.delete_all(owner_id)
            return await store.fetch_all(owner_id)

    try:
        remaining = run_async(_delete())
    except ChunkStoreError as e:
        raise _fail(e) from None

    if remaining:
        console.print(
            Panel(
                "\n".join(f"• {blob.data_type}" for blob in remaining),
                title=f"[yellow]{len(remaining)} blob(s) still present[/yellow]",
            )
        )
        raise typer.Exit(1)
    console.print(f"[green]OK[/green] Deleted all fragments for {owner_id}")


@app.command("init-db")
def init_db():
    """Create the records table (SQL backend only)."""
    if settings.backend != "sql":
        console.print("[yellow]init-db only applies to the SQL backend (BACKEND=sql).[/yellow]")
        raise typer.Exit(0)

    async def _init():
        async with SqlRecordStore(database_url=settings.database_url) as records:
            await records.init()

    run_async(_init())
    console.print(f"[green]OK[/green] Initialized {settings.database_url}")
