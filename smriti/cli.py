"""
CLI interface for the history index.

Usage:
    smriti search "rust guide"
    smriti rebuild
    smriti import ~/Downloads/History --format chrome
    smriti meta https://ex.com/a -k lang -d "A guide to Rust"
    smriti status
    smriti serve            # JSON-lines request router on stdin/stdout
"""

import json
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

import typer
from typing_extensions import Annotated

from .api import HistoryIndex
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import IndexedItem

# Configure quiet mode by default
# Set SMRITI_VERBOSE=1 to enable debug mode via environment
if os.environ.get("SMRITI_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"smriti {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="smriti",
    help="Local search over your browsing history.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="SMRITI_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local search over your browsing history."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="SMRITI_STORE_PATH",
        help="Path to the store directory (default: ~/.smriti/)"
    )
]


def _get_index(store: Optional[Path]) -> HistoryIndex:
    """Open the index, reporting failures as a clean CLI error."""
    import atexit

    actual_store = store if store is not None else _get_store_override()
    try:
        index = HistoryIndex(actual_store)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(index.close)
    return index


def _format_time(ms: int) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _format_item(item: IndexedItem) -> str:
    title = item.title or item.url
    return f"{_format_time(item.last_visit)}  {item.visit_count:>4}x  {title}\n    {item.url}"


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search text")],
    store: StoreOption = None,
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n",
        help="Maximum results (default from config)",
    )] = None,
):
    """Search indexed history, most relevant first."""
    index = _get_index(store)
    hits = index.search_hits(query, limit=limit)
    if _get_json_output():
        typer.echo(json.dumps([hit.to_dict() for hit in hits], indent=2))
        return
    if not hits:
        typer.echo("No matches")
        return
    for hit in hits:
        typer.echo(_format_item(hit.item))


@app.command()
def rebuild(
    store: StoreOption = None,
):
    """Re-ingest the configured history source now."""
    index = _get_index(store)
    report = index.rebuild()
    if _get_json_output():
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    typer.echo(
        f"{report.fetched} records: {report.created} new, {report.updated} updated, "
        f"{report.unchanged} unchanged, {len(report.skipped)} skipped"
    )
    if report.timed_out:
        typer.echo("History source timed out; no new items this pass", err=True)


@app.command("import")
def import_history(
    source: Annotated[Path, typer.Argument(
        help="History file: Chrome 'History', Firefox 'places.sqlite', or JSON lines",
        exists=True, dir_okay=False,
    )],
    fmt: Annotated[str, typer.Option(
        "--format", "-f",
        help="chrome, firefox or jsonl",
    )] = "jsonl",
    store: StoreOption = None,
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Most recent entries to import",
    )] = 50_000,
):
    """Import history records from a browser database or export."""
    from .config import ProviderConfig
    from .errors import HistorySourceError
    from .history import create_history_source

    try:
        history = create_history_source(ProviderConfig(fmt, {"path": str(source)}))
        records = history.search("", limit)
    except (ValueError, HistorySourceError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    index = _get_index(store)
    report = index.import_records(records)
    if _get_json_output():
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    typer.echo(
        f"Imported {report.fetched} records: {report.created} new, "
        f"{report.updated} updated, {len(report.skipped)} skipped"
    )


@app.command()
def meta(
    url: Annotated[str, typer.Argument(help="Page URL")],
    description: Annotated[Optional[str], typer.Option(
        "--description", "-d",
        help="Page description",
    )] = None,
    keyword: Annotated[Optional[list[str]], typer.Option(
        "--keyword", "-k",
        help="Keyword (repeatable)",
    )] = None,
    store: StoreOption = None,
):
    """Merge captured page metadata into the index."""
    from .errors import InvalidURLError

    index = _get_index(store)
    try:
        item = index.merge_metadata(url, description=description, keywords=keyword)
    except InvalidURLError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps(item.to_dict(), indent=2))
        return
    typer.echo(f"{item.url}: {len(item.meta_keywords)} keywords")


@app.command()
def status(
    store: StoreOption = None,
):
    """Show index size and ingestion state."""
    index = _get_index(store)
    info = index.status()
    if _get_json_output():
        typer.echo(json.dumps(info, indent=2))
        return
    typer.echo(f"Store:    {info['store']}")
    typer.echo(f"Items:    {info['count']}")
    typer.echo(f"History:  {info['history']}")
    typer.echo(f"Indexed:  {'yes' if info['indexedOnce'] else 'no'}"
               f" (version {info['lastIndexedVersion'] or '-'})")
    typer.echo(f"Last run: {_format_time(info['lastIngestAt'] or 0)}")


def serve_lines(index: HistoryIndex, stdin: TextIO, stdout: TextIO) -> int:
    """Answer one JSON request per input line with one JSON response line.

    Requests of type VISIT are fed to the visit channel and acknowledged.
    Returns the number of requests handled.
    """
    handled = 0
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            response = {"error": f"Invalid JSON: {e}"}
        else:
            if isinstance(request, dict) and request.get("type") == "VISIT":
                response = _handle_visit(index, request)
            else:
                response = index.handle(request)
        stdout.write(json.dumps(response) + "\n")
        stdout.flush()
        handled += 1
    return handled


def _handle_visit(index: HistoryIndex, request: dict) -> dict:
    from .types import VisitEvent

    url = request.get("url")
    if not isinstance(url, str) or not url:
        response = {"error": "VISIT.url is required"}
    else:
        index.visit(VisitEvent.from_mapping(request))
        response = {"status": "ok"}
    if request.get("id") is not None:
        response["id"] = request["id"]
    return response


@app.command()
def serve(
    store: StoreOption = None,
):
    """Serve requests as JSON lines on stdin/stdout until EOF."""
    index = _get_index(store)
    index.start()
    try:
        serve_lines(index, sys.stdin, sys.stdout)
    finally:
        index.drain()
        index.close()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="smriti CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
