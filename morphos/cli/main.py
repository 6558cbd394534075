"""morphos CLI — run, inspect and undo self-evolution of a project tree."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from morphos import __version__
from morphos.cli.context import MorphosContext, configure_logging, run_async
from morphos.config import settings
from morphos.exceptions import CycleInProgressError, MorphosError, RollbackError

console = Console()

app = typer.Typer(
    name="morphos",
    help="morphos -- a self-modifying loop that evolves a codebase, safely.",
    no_args_is_help=True,
)


@app.callback()
def _main(
    log_level: str = typer.Option("", "--log-level", help="Override MORPHOS_LOG_LEVEL"),
):
    configure_logging(log_level or settings.log_level)


@app.command("analyze")
def analyze(
    limit: int = typer.Option(20, "--limit", "-n", help="Max components to show"),
):
    """Run self-analysis and show the most complex components."""
    from morphos.evolution.analysis import SelfAnalyzer

    ctx = MorphosContext.get()
    analyzer = SelfAnalyzer(ctx.files, coverage_floor=ctx.config.coverage_floor)

    try:
        analysis = run_async(analyzer.analyze())
    except MorphosError as e:
        console.print(f"[red]Analysis failed:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title=f"Components — {ctx.files.root}")
    table.add_column("Path", style="cyan")
    table.add_column("Lines", justify="right")
    table.add_column("Complexity", justify="right")
    table.add_column("Coverage", justify="right")
    table.add_column("Dependents", justify="right", style="dim")

    ranked = sorted(analysis.components, key=lambda c: c.complexity, reverse=True)
    for c in ranked[:limit]:
        table.add_row(
            c.path,
            str(c.size),
            str(c.complexity),
            f"{c.test_coverage * 100:.0f}%",
            str(len(c.dependents)),
        )
    console.print(table)

    console.print(Panel(
        f"Quality score: [bold]{analysis.code_quality_score:.1f}[/bold]/100\n"
        f"Maintainability: {analysis.maintainability_index:.1f}/100\n"
        f"Findings: {len(analysis.findings)}  Opportunities: {len(analysis.opportunities)}",
        title="Summary",
    ))


@app.command("run")
def run():
    """Run a single evolution cycle now."""
    ctx = MorphosContext.get()

    async def _run():
        await ctx.ensure_ready()
        try:
            return await ctx.engine.trigger_evolution()
        finally:
            await ctx.close()

    try:
        result = run_async(_run())
    except (CycleInProgressError, RollbackError) as e:
        console.print(f"[red]Evolution failed:[/red] {e}")
        raise typer.Exit(1)

    history = ctx.engine.history.cycles
    cycle = history[-1] if history else None
    status = cycle.status.value if cycle else "unknown"
    color = "green" if result.evolved else "yellow"
    console.print(
        f"[{color}]Cycle {status}[/{color}]: "
        f"{len(result.changes_applied)} mutation(s) applied, "
        f"{result.performance_improvement:+.2f}% performance"
    )
    if cycle and cycle.error:
        console.print(f"[dim]{cycle.error}[/dim]")
    for mutation in result.changes_applied:
        console.print(f"  [cyan]{mutation.type.value}[/cyan] {mutation.target} ({mutation.risk_level.value} risk)")

    report = ctx.engine.pipeline.last_report
    for rejection in report.rejected:
        console.print(f"  [dim]rejected {rejection.target}: {rejection.reason}[/dim]")


@app.command("start")
def start():
    """Run cycles on the adaptive schedule until interrupted."""
    ctx = MorphosContext.get()

    async def _start():
        await ctx.ensure_ready()
        try:
            await ctx.engine.start()
            console.print("[green]Evolution engine running.[/green] [dim]Press Ctrl+C to stop.[/dim]")
            while ctx.engine.is_running:
                await asyncio.sleep(1)
        finally:
            await ctx.engine.stop()
            await ctx.close()

    try:
        run_async(_start())
    except KeyboardInterrupt:
        console.print("\n[dim]Evolution engine stopped.[/dim]")


@app.command("backups")
def backups():
    """List persisted backups."""
    ctx = MorphosContext.get()
    run_async(ctx.backups.load())

    stored = ctx.backups.list()
    if not stored:
        console.print("[dim]No backups yet.[/dim]")
        return

    table = Table(title="Backups")
    table.add_column("ID", style="cyan")
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("Scope")
    table.add_column("Files", justify="right")
    for b in reversed(stored):
        table.add_row(
            b.id,
            b.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            b.metadata.scope,
            str(len(b.files)),
        )
    console.print(table)


@app.command("rollback")
def rollback(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Restore the project from the most recent backup."""
    ctx = MorphosContext.get()

    async def _rollback():
        await ctx.ensure_ready()
        try:
            return await ctx.safety.emergency_rollback()
        finally:
            await ctx.close()

    if not yes:
        typer.confirm(f"Restore {ctx.files.root} from the latest backup?", abort=True)

    try:
        backup = run_async(_rollback())
    except RollbackError as e:
        console.print(f"[red]Rollback failed:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Restored {len(backup.files)} file(s) from {backup.id}[/green]")


@app.command("incidents")
def incidents(
    limit: int = typer.Option(20, "--limit", "-n", help="Max incidents"),
):
    """Show recorded safety incidents."""
    ctx = MorphosContext.get()

    async def _load():
        await ctx.ensure_ready()
        try:
            return await ctx.incidents.load(limit=limit)
        finally:
            await ctx.close()

    found = run_async(_load())
    if not found:
        console.print("[dim]No safety incidents recorded.[/dim]")
        return

    table = Table(title="Safety incidents")
    table.add_column("When", style="dim", no_wrap=True)
    table.add_column("Type", style="cyan")
    table.add_column("Severity")
    table.add_column("Description")
    for i in found:
        table.add_row(
            i.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            i.type,
            i.severity.value,
            i.description[:120],
        )
    console.print(table)


@app.command("version")
def version():
    """Show the morphos version."""
    console.print(f"morphos {__version__}")
