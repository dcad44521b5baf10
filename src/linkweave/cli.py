#!/usr/bin/env python3
"""
lw: CLI for linkweave

Usage:
    lw run                 # Embed, score, link and tag changed notes
    lw run --force         # Reprocess everything
    lw retry               # Retry failed batches only
    lw recalibrate         # Rebuild links from cached scores
    lw health              # Check cache/KB consistency
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn

import click

from . import __version__ as LINKWEAVE_VERSION
from .engine import CancellationToken
from .errors import ConfigurationError, LinkweaveError, RunCancelledError, RunInProgressError


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


def format_table(rows: list[dict], columns: list[str], max_widths: dict | None = None) -> str:
    """Format rows as a simple table."""
    if not rows:
        return ""

    max_widths = max_widths or {}

    def cell(row: dict, col: str) -> str:
        val = str(row.get(col, ""))
        limit = max_widths.get(col, 50)
        return val[: limit - 3] + "..." if len(val) > limit else val

    widths = {col: max([len(col), *(len(cell(row, col)) for row in rows)]) for col in columns}
    lines = [
        "  ".join(col.upper().ljust(widths[col]) for col in columns),
        "  ".join("-" * widths[col] for col in columns),
    ]
    for row in rows:
        lines.append("  ".join(cell(row, col).ljust(widths[col]) for col in columns))
    return "\n".join(lines)


def output(data: Any, as_json: bool = False) -> None:
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


def _handle_error(error: Exception, exit_code: int = 1) -> NoReturn:
    """Print an error (and hint, when the error carries one) and exit."""
    message = getattr(error, "message", None) or str(error)
    click.echo(f"Error: {message}", err=True)
    guidance = getattr(error, "guidance", None)
    if guidance:
        click.echo(f"Hint: {guidance}", err=True)
    sys.exit(exit_code)


def _open_workflow(ctx: click.Context):
    from .config import get_kb_root
    from .workflow import Workflow

    try:
        root = get_kb_root(ctx.obj.get("root"))
        if not root.is_dir():
            raise ConfigurationError(f"KB root does not exist: {root}")
        return Workflow(root)
    except ConfigurationError as exc:
        _handle_error(exc)


async def _cancellable(run: Callable[[CancellationToken], Awaitable[Any]]) -> Any:
    """Run with Ctrl-C mapped to cooperative cancellation between batches."""
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await run(token)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _print_summary(summary, as_json: bool) -> None:
    if as_json:
        output(summary.model_dump(), as_json=True)
        return
    click.echo(f"Documents scanned:  {summary.scanned}")
    click.echo(f"New or changed:     {summary.changed}")
    click.echo(f"Embedded:           {summary.embedded}")
    click.echo(f"Pairs scored:       {summary.scored_pairs}")
    click.echo(f"Links added:        {summary.links_added}")
    click.echo(f"Links removed:      {summary.links_removed}")
    click.echo(f"Documents tagged:   {summary.tagged}")
    if summary.failed_batches:
        click.echo(
            f"\n⚠ {summary.failed_batches} batches failed. Run `lw retry` to retry them.",
            err=True,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=LINKWEAVE_VERSION, prog_name="lw")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="LINKWEAVE_ROOT",
    help="KB root directory (default: nearest directory with .kbconfig)",
)
@click.pass_context
def cli(ctx: click.Context, root: Path | None):
    """lw: semantic link maintenance for a markdown knowledge base.

    \b
    Quick start:
      lw run                 # Process new and changed notes
      lw run --force         # Reprocess every note
      lw failures            # Show failed batches
      lw retry               # Retry only the failed batches
    """
    ctx.ensure_object(dict)
    ctx.obj["root"] = root


@cli.command()
@click.option("--force", is_flag=True, help="Reprocess all notes, ignoring cached scores")
@click.option("--no-tags", "no_tags", is_flag=True, help="Skip tag generation")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def run(ctx: click.Context, force: bool, no_tags: bool, as_json: bool):
    """Embed, score, link and tag notes.

    \b
    Examples:
      lw run
      lw run --force --no-tags
    """
    workflow = _open_workflow(ctx)
    try:
        with workflow:
            summary = run_async(
                _cancellable(lambda token: workflow.process(force=force, tag=not no_tags, token=token))
            )
    except RunCancelledError as exc:
        _handle_error(exc, exit_code=130)
    except (LinkweaveError, OSError) as exc:
        _handle_error(exc)
    _print_summary(summary, as_json)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def retry(ctx: click.Context, as_json: bool):
    """Retry only the batches recorded as failed."""
    workflow = _open_workflow(ctx)
    try:
        with workflow:
            summary = run_async(_cancellable(lambda token: workflow.retry_failures(token=token)))
    except RunCancelledError as exc:
        _handle_error(exc, exit_code=130)
    except (LinkweaveError, OSError) as exc:
        _handle_error(exc)
    _print_summary(summary, as_json)
    if not as_json and summary.unresolved_failures:
        click.echo(f"{summary.unresolved_failures} failure(s) still unresolved.", err=True)


@cli.command()
@click.pass_context
def recalibrate(ctx: click.Context):
    """Rebuild links from cached scores using the current thresholds."""
    workflow = _open_workflow(ctx)
    try:
        with workflow:
            summary = workflow.recalibrate_links()
    except (RunInProgressError, OSError) as exc:
        _handle_error(exc)
    click.echo(f"Links added: {summary.links_added}, removed: {summary.links_removed}")


@cli.command()
@click.pass_context
def clean(ctx: click.Context):
    """Forget notes whose files were deleted."""
    workflow = _open_workflow(ctx)
    try:
        with workflow:
            removed = workflow.clean_orphans()
    except (RunInProgressError, OSError) as exc:
        _handle_error(exc)
    click.echo(f"Removed {removed} orphaned note(s) from the cache")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def health(ctx: click.Context, as_json: bool):
    """Check consistency between the cache and the notes.

    Exits with status 1 when problems are found.
    """
    workflow = _open_workflow(ctx)
    with workflow:
        report = workflow.health_check()

    if as_json:
        output({**report.model_dump(), "healthy": report.healthy}, as_json=True)
    else:
        sections = [
            ("Cached notes whose file is gone", report.orphaned_documents, "lw clean"),
            ("Notes without note_id", report.missing_note_id, "lw run"),
            ("Notes without hash boundary", report.missing_boundary, "lw run"),
        ]
        for title, paths, fix in sections:
            if paths:
                click.echo(f"⚠ {title} ({len(paths)}):")
                for path in paths[:10]:
                    click.echo(f"  - {path}")
                click.echo(f"  Fix: {fix}")
            else:
                click.echo(f"✓ {title}: none")
        if report.unresolved_failures:
            click.echo(f"⚠ Unresolved failures: {report.unresolved_failures} (fix: lw retry)")
        else:
            click.echo("✓ No unresolved failures")

    if not report.healthy:
        sys.exit(1)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx: click.Context, as_json: bool):
    """Show cache statistics."""
    workflow = _open_workflow(ctx)
    with workflow:
        result = workflow.stats()

    if as_json:
        output(result.model_dump(), as_json=True)
        return
    click.echo(f"Notes:               {result.total_documents}")
    click.echo(f"Embeddings:          {result.total_embeddings}")
    click.echo(f"Scored pairs:        {result.total_scores}")
    click.echo(f"Managed links:       {result.total_links}")
    click.echo(f"Failures (open/all): {result.unresolved_failures}/{result.total_failures}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def failures(ctx: click.Context, as_json: bool):
    """List unresolved batch failures."""
    workflow = _open_workflow(ctx)
    with workflow:
        records = workflow.journal.get_unresolved_failures()

    if as_json:
        output([record.model_dump(mode="json") for record in records], as_json=True)
        return
    if not records:
        click.echo("No unresolved failures")
        return
    rows = [
        {
            "id": record.id,
            "type": record.operation_type,
            "batch": f"{record.batch.batch_number}/{record.batch.total_batches}",
            "items": len(record.batch.items),
            "error": record.error.message,
        }
        for record in records
    ]
    click.echo(format_table(rows, ["id", "type", "batch", "items", "error"], {"error": 60}))


@cli.command("clear-failures")
@click.confirmation_option(prompt="Discard all recorded failures?")
@click.pass_context
def clear_failures(ctx: click.Context):
    """Discard every recorded failure without retrying."""
    workflow = _open_workflow(ctx)
    with workflow:
        removed = workflow.journal.clear()
    click.echo(f"Cleared {removed} failure record(s)")


def main():
    """Entry point for lw CLI."""
    from ._logging import configure_logging

    configure_logging()
    cli()


if __name__ == "__main__":
    main()
