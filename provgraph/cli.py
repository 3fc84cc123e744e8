"""
provgraph CLI entry point.
"""
import logging
import os
import sys
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from provgraph import __version__
from provgraph.config import load_settings
from provgraph.detect import detect_format
from provgraph.engine.evaluator import GraphEvaluator
from provgraph.errors import GraphError, ProvGraphError
from provgraph.graph.dependency import DependencyGraph
from provgraph.models.report import ApplyReport, Outcome, PlanEntry, RunStatus
from provgraph.parsers import terraform, yaml_graph
from provgraph.providers.memory import MemoryBackend, builtin_registry
from provgraph.reporters import json_reporter, markdown
from provgraph.state import StateStore

console = Console(stderr=True)

_STATUS_ORDER = ["APPLIED", "FAILED", "SKIPPED"]
_STATUS_COLORS = {
    "APPLIED": "green",
    "FAILED": "bold red",
    "SKIPPED": "dim",
}


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]provgraph[/bold cyan] [dim]v{__version__}[/dim]\n")


def _setup_logging(verbose: int, no_color: bool) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True, no_color=no_color), show_path=False)],
        force=True,
    )


def _collect_files(paths: Tuple[str, ...]) -> List[str]:
    """Expand directories into file paths."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, _, fnames in os.walk(p):
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return files


def _load_graph(file_paths: List[str]) -> DependencyGraph:
    graph = DependencyGraph()
    for fp in file_paths:
        fmt = detect_format(fp)
        if fmt == "hcl":
            terraform.parse_file(fp, graph)
        elif fmt == "yaml":
            yaml_graph.parse_file(fp, graph)
        else:
            console.print(f"[dim]Skipping unsupported file:[/dim] {fp}")
    return graph


def _print_plan_table(entries: List[PlanEntry], no_color: bool) -> None:
    tbl = Table(title="Apply Order", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Level", width=6)
    tbl.add_column("Resource", width=32)
    tbl.add_column("Kind", width=34)
    tbl.add_column("Depends on")
    for i, e in enumerate(entries, 1):
        tbl.add_row(str(i), str(e.level), e.node_id, e.kind, ", ".join(e.depends_on) or "-")
    Console(stderr=True, no_color=no_color).print(tbl)


def _print_summary_table(report: ApplyReport, no_color: bool) -> None:
    """Print a rich summary table to stderr."""
    tbl = Table(title="Apply Summary", show_header=True, header_style="bold")
    tbl.add_column("Resource", width=32)
    tbl.add_column("Status", width=9)
    tbl.add_column("Action", width=10)
    tbl.add_column("Detail")

    for n in report.nodes:
        color = _STATUS_COLORS.get(n.status.value, "") if not no_color else ""
        detail = n.error or n.reason or ""
        tbl.add_row(
            n.node_id,
            f"[{color}]{n.status.value}[/{color}]" if color else n.status.value,
            n.action or "-",
            detail[:80] + "…" if len(detail) > 80 else detail,
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _write(content: str, output: Optional[str], stderr: Console) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


def _fail(stderr: Console, label: str, exc: Exception) -> None:
    stderr.print(f"[red]{label}:[/red] {exc}")
    sys.exit(2)


_format_option = click.option(
    "--format", "output_format",
    type=click.Choice(["markdown", "json"], case_sensitive=False),
    default="markdown",
    show_default=True,
    help="Output format.",
)
_output_option = click.option(
    "--output", "-o",
    type=click.Path(),
    default=None,
    help="Write report to this file (default: stdout).",
)
_config_option = click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Settings file (default: ./provgraph.yaml when present).",
)
_no_color_option = click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable rich terminal color output.",
)
_verbose_option = click.option(
    "--verbose", "-v",
    count=True,
    help="Log progress (-v) or debug detail (-vv).",
)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """provgraph: dependency-ordered, idempotent resource provisioning."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_format_option
@_output_option
@_config_option
@_no_color_option
@_verbose_option
def plan(
    paths: Tuple[str, ...],
    output_format: str,
    output: Optional[str],
    config_path: Optional[str],
    no_color: bool,
    verbose: int,
) -> None:
    """
    Show the apply order and rendered inputs without calling any provider.

    PATHS can be files or directories; multiple values accepted.
    """
    _print_banner(no_color)
    _setup_logging(verbose, no_color)
    stderr = Console(stderr=True, no_color=no_color)
    source_label = ", ".join(paths)

    file_paths = _collect_files(paths)
    if not file_paths:
        stderr.print("[red]No files found.[/red]")
        sys.exit(2)

    try:
        settings = load_settings(config_path)
        graph = _load_graph(file_paths)
        evaluator = GraphEvaluator.from_settings(graph, builtin_registry(), settings)
        graph_plan = evaluator.plan()
    except GraphError as exc:
        _fail(stderr, "Graph error", exc)
    except ProvGraphError as exc:
        _fail(stderr, "Error", exc)

    if not len(graph):
        stderr.print("[yellow]No resources found in the provided paths.[/yellow]")
        sys.exit(0)

    entries = evaluator.plan_report(graph_plan)
    _print_plan_table(entries, no_color)

    if output_format.lower() == "json":
        content = json_reporter.build_plan_report(entries, source_label)
    else:
        content = markdown.build_plan_report(graph, graph_plan, entries, source_label)
    _write(content, output, stderr)
    sys.exit(0)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_format_option
@_output_option
@_config_option
@click.option("--workers", type=click.IntRange(min=1), default=None,
              help="Nodes of one level applied in parallel.")
@click.option("--max-attempts", type=click.IntRange(min=1), default=None,
              help="Attempts per node for retryable provider errors.")
@click.option("--state", "state_file", type=click.Path(), default=None,
              help="State file recording applied nodes.")
@click.option("--backend", "backend_file", type=click.Path(), default=None,
              help="File backing the built-in in-memory providers.")
@click.option("--no-state", is_flag=True, default=False,
              help="Do not read or write a state file.")
@click.option("--summary", is_flag=True, default=False,
              help="Print terminal summary table only, do not write a full report.")
@click.option("--ascii", is_flag=True, default=False,
              help="Use ASCII-only status indicators (no emojis).")
@_no_color_option
@_verbose_option
def apply(
    paths: Tuple[str, ...],
    output_format: str,
    output: Optional[str],
    config_path: Optional[str],
    workers: Optional[int],
    max_attempts: Optional[int],
    state_file: Optional[str],
    backend_file: Optional[str],
    no_state: bool,
    summary: bool,
    ascii: bool,
    no_color: bool,
    verbose: int,
) -> None:
    """
    Apply the resource graph in dependency order.

    PATHS can be files or directories; multiple values accepted.
    """
    _print_banner(no_color)
    _setup_logging(verbose, no_color)
    stderr = Console(stderr=True, no_color=no_color)
    source_label = ", ".join(paths)

    file_paths = _collect_files(paths)
    if not file_paths:
        stderr.print("[red]No files found.[/red]")
        sys.exit(2)

    # 1. Load and validate; nothing is applied if this fails
    try:
        settings = load_settings(config_path).override(
            workers=workers,
            max_attempts=max_attempts,
            state_file=state_file,
            backend_file=backend_file,
        )
        graph = _load_graph(file_paths)
        backend = MemoryBackend(settings.backend_file)
        state = None if no_state else StateStore(settings.state_file)
        evaluator = GraphEvaluator.from_settings(graph, builtin_registry(backend), settings, state)
        graph_plan = evaluator.plan()
    except GraphError as exc:
        _fail(stderr, "Graph error", exc)
    except ProvGraphError as exc:
        _fail(stderr, "Error", exc)

    if not len(graph):
        stderr.print("[yellow]No resources found in the provided paths.[/yellow]")
        sys.exit(0)

    stderr.print(f"Applying [bold]{len(graph)}[/bold] resources in {len(graph_plan.levels)} level(s).")

    # 2. Apply
    try:
        with stderr.status("[bold]Applying…"):
            report = evaluator.run()
    except ProvGraphError as exc:
        _fail(stderr, "Error", exc)
    finally:
        backend.save()

    counts = {o.value: len(report.by_outcome(o)) for o in Outcome}
    stderr.print(
        f"Run [bold]{report.status.value}[/bold]: "
        + "  ".join(
            f"[{_STATUS_COLORS[s]}]{s}: {counts[s]}[/{_STATUS_COLORS[s]}]"
            for s in _STATUS_ORDER
            if counts[s] > 0
        )
    )

    # 3. Terminal table when writing to a file, or when --summary is requested
    if summary or output:
        _print_summary_table(report, no_color)

    # 4. Report
    if not summary:
        if output_format.lower() == "json":
            content = json_reporter.build_apply_report(report, source_label)
        else:
            content = markdown.build_apply_report(graph, graph_plan, report, source_label, ascii_mode=ascii)
        _write(content, output, stderr)

    sys.exit(1 if report.status == RunStatus.ABORTED else 0)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
