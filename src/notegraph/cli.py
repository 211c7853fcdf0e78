#!/usr/bin/env python3
"""
ng: CLI for the notegraph link index

Usage:
    ng stats                       # Index summary
    ng backlinks notes/idea.md     # Who links here
    ng distance a.md b.md          # Hops between two notes
    ng validate                    # Broken link report
    ng watch                       # Keep the index current while editing
"""

from __future__ import annotations

import asyncio
import difflib
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any, NoReturn

import click
from click.exceptions import ClickException, UsageError

from . import __version__ as NOTEGRAPH_VERSION
from .backlinks import BacklinksProvider
from .config import ConfigurationError, load_notes_config, load_settings
from .indexer import FileSystemNoteSource, FileWatcher, LinkIndexService
from .models import LinkInstance, TextPosition, TextRange
from .resolver import LinkResolver
from .snapshot import IndexSnapshot


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


class NoteNotFoundError(Exception):
    """Raised when a path given on the command line is not an indexed note."""

    def __init__(self, path: str, suggestions: list[str]) -> None:
        self.path = path
        self.suggestions = suggestions
        super().__init__(f"Note not found: {path}")


# ─────────────────────────────────────────────────────────────────────────────
# Output Formatting
# ─────────────────────────────────────────────────────────────────────────────


def format_table(rows: list[dict], columns: list[str], max_widths: dict | None = None) -> str:
    """Format rows as a simple table."""
    if not rows:
        return ""

    max_widths = max_widths or {}

    def cell(row: dict, col: str) -> str:
        val = str(row.get(col, ""))
        limit = max_widths.get(col, 60)
        if len(val) > limit:
            val = val[: limit - 3] + "..."
        return val

    widths = {col: len(col) for col in columns}
    for row in rows:
        for col in columns:
            widths[col] = max(widths[col], len(cell(row, col)))

    lines = [
        "  ".join(col.upper().ljust(widths[col]) for col in columns),
        "  ".join("-" * widths[col] for col in columns),
    ]
    for row in rows:
        lines.append("  ".join(cell(row, col).ljust(widths[col]) for col in columns).rstrip())

    return "\n".join(lines)


def output(data, as_json: bool = False):
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


def format_json_error(code: str, message: str, details: dict | None = None) -> str:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return json.dumps(payload)


def _handle_error(ctx: click.Context, error: Exception, exit_code: int = 1) -> NoReturn:
    """Report an error as text or JSON (with --json-errors) and exit."""
    json_errors = ctx.obj.get("json_errors", False) if ctx.obj else False

    if isinstance(error, NoteNotFoundError):
        code, details = "NOTE_NOT_FOUND", {"suggestions": error.suggestions}
    elif isinstance(error, ConfigurationError):
        code, details = "CONFIGURATION_ERROR", None
    else:
        code, details = "INTERNAL_ERROR", None

    if json_errors:
        click.echo(format_json_error(code, str(error), details), err=True)
    else:
        click.echo(f"Error: {error}", err=True)
        if isinstance(error, NoteNotFoundError) and error.suggestions:
            click.echo("Did you mean:", err=True)
            for suggestion in error.suggestions:
                click.echo(f"  {suggestion}", err=True)

    sys.exit(exit_code)


# ─────────────────────────────────────────────────────────────────────────────
# Index Session
# ─────────────────────────────────────────────────────────────────────────────


class IndexSession:
    """A built index together with the resolver and provider kept in sync with it."""

    def __init__(self, service: LinkIndexService) -> None:
        self.service = service
        snapshot = service.get_index()
        self.provider = BacklinksProvider(snapshot)
        self.resolver = LinkResolver(
            snapshot,
            fuzzy_threshold=service.settings.fuzzy_threshold,
            candidate_limit=service.settings.candidate_limit,
        )
        self.subscription = service.on_index_changed(self._on_changed)

    def _on_changed(self, snapshot: IndexSnapshot) -> None:
        self.provider.update_index(snapshot)
        self.resolver.update_index(snapshot)

    @property
    def root(self) -> Path:
        return self.service.source.root

    def display(self, path: str | None) -> str:
        """Path relative to the notes root, for output."""
        if not path:
            return ""
        try:
            return str(Path(path).relative_to(self.root))
        except ValueError:
            return path

    def note(self, value: str) -> str:
        """Index key for a note given on the command line."""
        key = self.service.resolve_path(value)
        files = self.service.get_index().files
        if key in files:
            return key
        if not key.endswith(".md") and f"{key}.md" in files:
            return f"{key}.md"

        known = [self.display(path) for path in files]
        suggestions = difflib.get_close_matches(value, known, n=5, cutoff=0.6)
        raise NoteNotFoundError(value, suggestions)


def _open_session(ctx: click.Context, debounce: float | None = None) -> IndexSession:
    root = ctx.obj.get("root") if ctx.obj else None
    try:
        if root:
            notes_root = Path(root).resolve()
            settings = load_settings(notes_root)
        else:
            notes_root, settings = load_notes_config()
    except ConfigurationError as exc:
        _handle_error(ctx, exc)

    source = FileSystemNoteSource(notes_root, settings.exclude_dirs)
    service = LinkIndexService(source, settings, debounce_seconds=debounce)
    session = IndexSession(service)
    run_async(service.rebuild_index())
    return session


def _link_row(session: IndexSession, link: LinkInstance) -> dict[str, Any]:
    return {
        "title": link.title,
        "format": link.format,
        "target": session.display(link.target_file) if link.target_exists else "(broken)",
        "line": link.range.start.line + 1,
        "column": link.range.start.column + 1,
    }


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


class NoteGraphGroup(click.Group):
    """Click group with typo suggestions and JSON-formatted usage errors."""

    def resolve_command(self, ctx, args):
        """Override to suggest similar commands for typos."""
        try:
            return super().resolve_command(ctx, args)
        except UsageError as e:
            cmd_name = args[0] if args else ""
            if cmd_name and "No such command" in str(e):
                matches = difflib.get_close_matches(cmd_name, self.list_commands(ctx), n=1, cutoff=0.6)
                if matches:
                    raise UsageError(f"No such command '{cmd_name}'. Did you mean '{matches[0]}'?")
            raise

    def invoke(self, ctx):
        """Override invoke to format Click errors as JSON when requested."""
        try:
            return super().invoke(ctx)
        except ClickException as e:
            if ctx.params.get("json_errors"):
                click.echo(format_json_error("USAGE_ERROR", e.format_message()), err=True)
                raise SystemExit(1)
            raise


@click.group(cls=NoteGraphGroup)
@click.version_option(version=NOTEGRAPH_VERSION, prog_name="ng")
@click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False),
    envvar="NOTEGRAPH_NOTES_ROOT",
    help="Notes directory (default: from .notegraph.yaml)",
)
@click.option("--json-errors", "json_errors", is_flag=True, help="Output errors as JSON")
@click.option("--quiet", "-q", is_flag=True, envvar="NOTEGRAPH_QUIET", help="Only log errors")
@click.pass_context
def cli(ctx: click.Context, root: str | None, json_errors: bool, quiet: bool):
    """ng: bidirectional link index for Markdown notes.

    \b
    Examples:
      ng stats
      ng backlinks ideas/graph.md
      ng graph ideas/graph.md --depth=2
      ng resolve "Grpah Theory"
    """
    from ._logging import configure_logging, set_quiet_mode

    configure_logging()
    if quiet:
        set_quiet_mode(True)

    ctx.ensure_object(dict)
    ctx.obj["root"] = root
    ctx.obj["json_errors"] = json_errors


# ─────────────────────────────────────────────────────────────────────────────
# Query Commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx: click.Context, as_json: bool):
    """Show index statistics."""
    session = _open_session(ctx)
    result = session.service.get_stats()

    if as_json:
        output(result.model_dump(), as_json=True)
        return

    click.echo(f"Notes root: {session.root}")
    click.echo(f"Files:      {result.total_files}")
    click.echo(f"Links:      {result.total_links}")
    click.echo(f"Tags:       {result.total_tags}")
    click.echo(f"Build time: {result.last_build_time_ms:.0f}ms")


@cli.command()
@click.argument("path")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def backlinks(ctx: click.Context, path: str, as_json: bool):
    """List notes that link to PATH.

    \b
    Examples:
      ng backlinks ideas/graph.md
    """
    session = _open_session(ctx)
    try:
        target = session.note(path)
    except NoteNotFoundError as exc:
        _handle_error(ctx, exc)

    rows = [
        {
            "path": session.display(entry.path),
            "title": entry.metadata.title,
            "links": session.provider.count_links_between(entry.path, target),
        }
        for entry in session.provider.get_backlinks_for(target)
    ]

    if as_json:
        output(rows, as_json=True)
    elif not rows:
        click.echo("No backlinks found.")
    else:
        click.echo(format_table(rows, ["path", "title", "links"]))


@cli.command()
@click.argument("path")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def links(ctx: click.Context, path: str, as_json: bool):
    """List the outgoing links of PATH, broken ones included."""
    session = _open_session(ctx)
    try:
        source = session.note(path)
    except NoteNotFoundError as exc:
        _handle_error(ctx, exc)

    rows = [_link_row(session, link) for link in session.provider.get_links_from(source)]

    if as_json:
        output(rows, as_json=True)
    elif not rows:
        click.echo("No links found.")
    else:
        click.echo(format_table(rows, ["title", "format", "target", "line", "column"]))


@cli.command()
@click.argument("from_path")
@click.argument("to_path")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def distance(ctx: click.Context, from_path: str, to_path: str, as_json: bool):
    """Show the number of link hops between two notes."""
    session = _open_session(ctx)
    try:
        source = session.note(from_path)
        target = session.note(to_path)
    except NoteNotFoundError as exc:
        _handle_error(ctx, exc)

    hops = session.provider.get_distance(source, target)

    if as_json:
        output({"from": session.display(source), "to": session.display(target), "distance": hops}, as_json=True)
    elif hops < 0:
        click.echo("Not connected.")
    else:
        click.echo(f"{hops} hop{'s' if hops != 1 else ''}")


@cli.command()
@click.argument("path")
@click.option("--depth", "-d", type=click.IntRange(min=0), default=None, help="Maximum hops (default: unlimited)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def graph(ctx: click.Context, path: str, depth: int | None, as_json: bool):
    """List notes connected to PATH with their distance."""
    session = _open_session(ctx)
    try:
        root_note = session.note(path)
    except NoteNotFoundError as exc:
        _handle_error(ctx, exc)

    connected = session.provider.get_connected_graph(root_note, depth)
    rows = [{"path": session.display(note), "distance": hops} for note, hops in connected.items()]

    if as_json:
        output(rows, as_json=True)
    elif not rows:
        click.echo("No connected notes.")
    else:
        click.echo(format_table(rows, ["distance", "path"]))


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def broken(ctx: click.Context, as_json: bool):
    """List notes that contain broken links."""
    session = _open_session(ctx)
    rows = [
        {
            "path": session.display(entry.path),
            "broken": sum(1 for link in entry.outgoing_links if not link.target_exists),
        }
        for entry in session.provider.get_files_with_broken_links()
    ]

    if as_json:
        output(rows, as_json=True)
    elif not rows:
        click.echo("No broken links.")
    else:
        click.echo(format_table(rows, ["path", "broken"]))


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def validate(ctx: click.Context, as_json: bool):
    """Report valid and broken links with suggestions for each broken one."""
    session = _open_session(ctx)
    report = session.provider.validate_links()

    details = [
        {
            "source": session.display(item.source),
            "target": item.target,
            "line": item.link.range.start.line + 1,
            "suggestions": [
                session.display(entry.path) for entry in session.resolver.get_candidates(item.link.title)
            ],
        }
        for item in report.details
    ]

    if as_json:
        output({"valid": report.valid, "broken": report.broken, "details": details}, as_json=True)
        return

    click.echo(f"Valid links:  {report.valid}")
    click.echo(f"Broken links: {report.broken}")
    for item in details:
        hint = f"  (did you mean {', '.join(item['suggestions'])}?)" if item["suggestions"] else ""
        click.echo(f"  {item['source']}:{item['line']}  {item['target']}{hint}")


@cli.command()
@click.option("--min-count", default=1, type=click.IntRange(min=1), help="Minimum number of notes")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def tags(ctx: click.Context, min_count: int, as_json: bool):
    """List all tags with usage counts."""
    session = _open_session(ctx)
    result = session.service.get_tags(min_count=min_count)

    if as_json:
        output(
            [
                {"tag": summary.tag, "count": summary.count, "files": [session.display(f) for f in summary.files]}
                for summary in result
            ],
            as_json=True,
        )
        return

    if not result:
        click.echo("No tags found.")
        return

    for summary in result:
        click.echo(f"  #{summary.tag}: {summary.count}")


@cli.command()
@click.argument("title")
@click.option("--from", "from_path", default=None, help="Note containing the link (for relative paths)")
@click.option("--limit", "-n", default=5, type=click.IntRange(min=0), help="Max candidates")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def resolve(ctx: click.Context, title: str, from_path: str | None, limit: int, as_json: bool):
    """Show which note a link TITLE resolves to.

    \b
    Examples:
      ng resolve "Graph Theory"
      ng resolve ../drafts/intro.md --from=ideas/graph.md
    """
    session = _open_session(ctx)
    try:
        source = session.note(from_path) if from_path else str(session.root / "_")
    except NoteNotFoundError as exc:
        _handle_error(ctx, exc)

    origin = TextPosition(line=0, column=0)
    link = LinkInstance(
        title=title.strip(),
        source_file=source,
        range=TextRange(start=origin, end=origin),
        format="wikilink",
        display_text=title,
    )
    resolution = session.resolver.resolve_link(link, source)
    candidates = session.resolver.get_candidates(title, limit)
    payload = {
        "title": title,
        "target": session.display(resolution.target_file),
        "exists": resolution.exists,
        "candidates": [session.display(entry.path) for entry in candidates],
    }

    if as_json:
        output(payload, as_json=True)
        return

    click.echo(f"Target: {payload['target']}" if resolution.exists else "Target: (not found)")
    if payload["candidates"]:
        click.echo("Candidates:")
        for candidate in payload["candidates"]:
            click.echo(f"  {candidate}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def orphans(ctx: click.Context, as_json: bool):
    """List notes with no links in either direction."""
    session = _open_session(ctx)
    rows = [
        {"path": session.display(entry.path), "title": entry.metadata.title}
        for entry in session.provider.get_orphans()
    ]

    if as_json:
        output(rows, as_json=True)
    elif not rows:
        click.echo("No orphan notes.")
    else:
        click.echo(format_table(rows, ["path", "title"]))


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def check(ctx: click.Context, as_json: bool):
    """Verify index consistency (counters, backlinks, tags)."""
    session = _open_session(ctx)
    problems = session.service.check_invariants()

    if as_json:
        output({"ok": not problems, "problems": problems}, as_json=True)
    elif problems:
        for problem in problems:
            click.echo(f"  {problem}")
    else:
        click.echo("Index is consistent.")

    if problems:
        sys.exit(1)


# ─────────────────────────────────────────────────────────────────────────────
# Watch Command
# ─────────────────────────────────────────────────────────────────────────────


async def _watch(session: IndexSession) -> None:
    service = session.service

    def report(snapshot: IndexSnapshot) -> None:
        click.echo(
            f"Index updated: {snapshot.metadata.total_files} files, {snapshot.metadata.total_links} links"
        )

    service.on_index_changed(report)
    try:
        with FileWatcher(service):
            await asyncio.Event().wait()
    finally:
        service.close()


@cli.command()
@click.option("--debounce", type=click.FloatRange(min=0), default=None, help="Seconds to wait after an edit")
@click.pass_context
def watch(ctx: click.Context, debounce: float | None):
    """Keep the index current while notes change (Ctrl-C to stop)."""
    session = _open_session(ctx, debounce=debounce)
    summary = session.service.get_stats()
    click.echo(f"Watching {session.root} ({summary.total_files} files, {summary.total_links} links)")

    try:
        run_async(_watch(session))
    except KeyboardInterrupt:
        click.echo("Stopped.")


def main(argv: Sequence[str] | None = None) -> None:
    cli.main(args=argv, prog_name="ng")


if __name__ == "__main__":
    main()
