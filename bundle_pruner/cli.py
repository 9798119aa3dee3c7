"""Typer-based CLI for Bundle Pruner."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .backup import BackupStore
from .classifier import RegexUsageClassifier
from .config import DEFAULTS, MODES
from .config_manager import (
    clear_optimizer_config,
    load_optimizer_config,
    load_protected,
    resolve_config,
    save_optimizer_value,
)
from .errors import FatalConfigError
from .manifest import load_manifest
from .models import UsageStatus
from .mutations import UnitSwapper
from .orchestrator import PhaseOrchestrator
from .report import build_report, render_markdown
from .run_store import RunStore
from .source_tree import SourceTree

console = Console()

app = typer.Typer(
    help="✂️  Bundle Pruner: stub out unused front-end components and verify the app still works.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

config_app = typer.Typer(
    help="⚙️  Configuration: show and edit optimizer defaults.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
app.add_typer(config_app, name="config")

_STATUS_STYLE = {
    UsageStatus.RENDERED: "green",
    UsageStatus.RARELY_USED: "yellow",
    UsageStatus.IMPORT_ONLY: "magenta",
    UsageStatus.UNREFERENCED: "red",
    UsageStatus.PROTECTED: "cyan",
}
_PHASE_STYLE = {"success": "green", "failed": "red", "partial": "yellow", "skipped": "dim"}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"Bundle Pruner v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output."),
):
    """Bundle Pruner: iterative, validated removal of unused components."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fatal(exc: FatalConfigError) -> None:
    console.print(f"[red]✗[/red] {exc}")
    raise typer.Exit(code=2)


def _overrides(**values: Any) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = list(value)
        overrides[key] = value
    return overrides


@app.command("analyze")
def analyze(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Front-end project root."),
    as_json: bool = typer.Option(False, "--json", help="Print the usage graph as JSON."),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Only show units with this status."),
    include_packages: bool = typer.Option(False, "--packages", help="Include package units."),
):
    """Classify components by how they are used, without changing anything."""
    root = project_path.resolve()
    try:
        cfg = resolve_config(root)
        protected = load_protected(cfg, root)
        manifest = load_manifest(root)
    except FatalConfigError as exc:
        _fatal(exc)

    classifier = RegexUsageClassifier(
        manifest=manifest,
        component_roots=cfg.component_roots,
        aliases=cfg.aliases,
        protected=protected,
        rarely_used_threshold=cfg.rarely_used_threshold,
        workers=cfg.workers,
    )
    graph = classifier.classify(SourceTree(root))

    if as_json:
        typer.echo(json.dumps(graph.to_dict(), indent=2))
        return

    units = list(graph.units.values()) if include_packages else graph.components()
    if status:
        try:
            wanted = UsageStatus(status)
        except ValueError:
            raise typer.BadParameter(f"Unknown status '{status}'. Use one of: {', '.join(s.value for s in UsageStatus)}")
        units = [u for u in graph.by_status(wanted) if include_packages or u.is_component]

    table = Table(title=f"Usage of {len(graph.components())} components", show_header=True)
    table.add_column("Unit", style="bold")
    table.add_column("Status")
    table.add_column("Uses", justify="right")
    table.add_column("Files", justify="right")
    table.add_column("Path", style="dim")
    for unit in units:
        style = _STATUS_STYLE.get(unit.status, "white")
        table.add_row(
            unit.name,
            f"[{style}]{unit.status.value}[/{style}]",
            str(unit.usage_count),
            str(len(unit.usage_sites)),
            unit.path or "package.json",
        )
    console.print(table)

    counts = graph.status_counts()
    summary = "  ".join(f"{name}: {count}" for name, count in counts.items())
    console.print(f"\n{summary}")
    console.print(f"Eligible for removal: [bold]{len(graph.eligible())}[/bold]")
    if graph.scan_errors:
        console.print(f"[yellow]⚠️  {len(graph.scan_errors)} file(s) could not be scanned[/yellow]")


def _print_report(report: Dict[str, Any]) -> None:
    table = Table(title="Phases", show_header=True)
    table.add_column("Phase", style="cyan")
    table.add_column("Status")
    table.add_column("Size (KB)", justify="right")
    table.add_column("Removed", justify="right")
    table.add_column("Restored", justify="right")
    table.add_column("Errors", justify="right")
    for phase in report.get("phases", []):
        style = _PHASE_STYLE.get(phase["status"], "white")
        table.add_row(
            phase["phase"],
            f"[{style}]{phase['status']}[/{style}]",
            f"{phase['size_kb']:.2f}",
            str(phase["removed"]),
            str(phase["restored"]),
            str(len(phase["errors"])),
        )
    console.print(table)

    totals = report.get("totals") or {}
    lines: List[str] = []
    if totals:
        lines.append(
            f"Bundle: {totals['size_before_kb']} KB → {totals['size_after_kb']} KB "
            f"([bold]{totals['size_percent']}%[/bold] smaller)"
        )
    lines.append(f"Components removed: {len(report.get('removed', []))}")
    if report.get("restored"):
        lines.append(f"Restored by recovery: {', '.join(report['restored'])}")
    if report.get("droppable_packages"):
        lines.append(f"Packages no longer imported: {', '.join(report['droppable_packages'])}")
    for rec in report.get("recommendations", []):
        lines.append(f"• {rec}")
    color = "green" if report.get("success") else "red"
    console.print(Panel("\n".join(lines), title=f"Run {report.get('run_id', '')}", border_style=color))


@app.command("optimize")
def optimize(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Front-end project root."),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help=f"Elimination mode: {', '.join(MODES)}."),
    phases: Optional[List[str]] = typer.Option(None, "--phase", "-p", help="Phase to run (repeatable)."),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", help="Recovery iteration bound."),
    protect: Optional[List[str]] = typer.Option(None, "--protect", help="Extra protected unit (repeatable)."),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Build/validation timeout in seconds."),
    check_level: Optional[str] = typer.Option(None, "--check", help="Probe level: build or full."),
    resume: Optional[str] = typer.Option(None, "--resume", help="Resume a previous run id."),
    preserve_backup: Optional[bool] = typer.Option(
        None, "--preserve-backup/--discard-backup", help="Keep originals under the run directory."
    ),
):
    """Run baseline, elimination, refinement and (if needed) recovery."""
    root = project_path.resolve()
    try:
        cfg = resolve_config(root, _overrides(
            mode=mode,
            phases=phases,
            max_iterations=max_iterations,
            validation_timeout=timeout,
            check_level=check_level,
            preserve_backup=preserve_backup,
        ))
        if protect:
            cfg.protected.extend(p for p in protect if p not in cfg.protected)
        orchestrator = PhaseOrchestrator(root, cfg, run_id=resume)
        console.print(f"[bold cyan]✂️  Optimising {root.name} ({cfg.mode} mode)...[/bold cyan]")
        summary = orchestrator.run()
    except FatalConfigError as exc:
        _fatal(exc)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted. Use 'bprune restore' with the run id to put originals back.[/yellow]")
        raise typer.Exit(code=130)

    _print_report(summary.report)
    if summary.report_path:
        console.print(f"[dim]Report written to {summary.report_path}[/dim]")
    if not summary.success:
        raise typer.Exit(code=1)


def _open_run(root: Path, run_id: Optional[str]) -> RunStore:
    store = RunStore(root, run_id) if run_id else RunStore.latest(root)
    if store is None or not store.exists():
        raise typer.BadParameter(f"No run '{run_id or 'latest'}' found in {root}")
    return store


@app.command("report")
def report(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Front-end project root."),
    run_id: Optional[str] = typer.Option(None, "--run", "-r", help="Run id (defaults to the latest)."),
    markdown: bool = typer.Option(False, "--markdown", help="Print the Markdown report."),
):
    """Re-aggregate the persisted phase results of a run."""
    store = _open_run(project_path.resolve(), run_id)
    results = store.load_phase_results()
    if not results:
        console.print(f"[yellow]Run {store.run_id} has no recorded phases.[/yellow]")
        raise typer.Exit(code=1)
    data = build_report(results, run_id=store.run_id, config=store.metadata().get("config"))
    if markdown:
        typer.echo(render_markdown(data))
    else:
        _print_report(data)


@app.command("runs")
def list_runs(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Front-end project root."),
):
    """List recorded runs for a project."""
    root = project_path.resolve()
    runs = RunStore.list_runs(root)
    if not runs:
        typer.echo("No runs recorded.")
        return
    for run_id in runs:
        store = RunStore(root, run_id)
        done = store.load_phase_result("done")
        state = done.status if done else "incomplete"
        typer.echo(f"{run_id}  {state}  stubbed={len(store.metadata().get('stubbed', []))}")


@app.command("restore")
def restore(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Front-end project root."),
    run_id: str = typer.Argument(..., help="Run whose backup should be written back."),
):
    """Write every backed-up original of a run back into the project."""
    root = project_path.resolve()
    store = _open_run(root, run_id)
    backup = BackupStore.load(store.backup_dir)
    if not len(backup):
        typer.echo(f"Run {run_id} has no preserved backup.")
        return
    swapper = UnitSwapper(SourceTree(root), backup)
    failed = swapper.restore_all(backup.identities())
    restored = len(backup) - len(failed)
    typer.echo(f"Restored {restored} unit(s) from run {run_id}.")
    store.update_metadata(stubbed=[])
    if failed:
        console.print(f"[red]✗[/red] Could not restore: {', '.join(failed)}")
        raise typer.Exit(code=1)


@config_app.command("show")
def config_show():
    """Show optimizer defaults merged with the global config file."""
    merged = dict(DEFAULTS)
    merged.update(load_optimizer_config())
    table = Table(show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key in sorted(merged):
        table.add_row(key, str(merged[key]))
    console.print(table)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Setting name, e.g. mode or max_iterations."),
    value: str = typer.Argument(..., help="New value; lists are comma-separated."),
):
    """Set an optimizer default in the global config file."""
    try:
        saved = save_optimizer_value(key, value)
    except KeyError:
        raise typer.BadParameter(f"Unknown setting '{key}'")
    except (ValueError, FatalConfigError) as exc:
        raise typer.BadParameter(str(exc))
    if not saved:
        console.print("[red]✗[/red] Could not write configuration file.")
        raise typer.Exit(code=1)
    typer.echo(f"Set {key} = {value}")


@config_app.command("reset")
def config_reset():
    """Remove optimizer settings from the global config file."""
    clear_optimizer_config()
    typer.echo("Optimizer settings reset to defaults.")


if __name__ == "__main__":
    app()
