"""
stackplan CLI entry point.
"""
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.table import Table

from stackplan import __version__, planner
from stackplan.config import ConfigError, Settings, load_settings
from stackplan.detect import detect_format
from stackplan.errors import GraphError, StackplanError, StateLockError
from stackplan.executor import Executor
from stackplan.graph import builder, resolver
from stackplan.graph.builder import ResourceGraph
from stackplan.models.plan import ApplyResult, OutcomeStatus, Plan
from stackplan.models.resource import Resource
from stackplan.providers import get_provider
from stackplan.reporters import html_reporter, json_reporter, markdown
from stackplan.store import FileStateStore

console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_GRAPH_ERROR = 2

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "replace": "magenta",
    "destroy": "red",
}

_STATUS_COLORS = {
    OutcomeStatus.SUCCEEDED.value: "green",
    OutcomeStatus.FAILED.value: "red",
    OutcomeStatus.NOT_ATTEMPTED.value: "dim",
}


def _parse_vars(pairs: Tuple[str, ...]) -> Dict[str, Any]:
    variables: Dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected NAME=VALUE, got '{pair}'", param_hint="--var")
        name, raw = pair.split("=", 1)
        # numbers and booleans keep their type, everything else stays a string
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        variables[name.strip()] = value if isinstance(value, (int, float, bool)) else raw
    return variables


def _load_declarations(paths: Tuple[str, ...], variables: Dict[str, Any]) -> List[Resource]:
    """
    Directories are read as one configuration (every .tf file plus manifests
    directly inside); files are read on their own.
    """
    from stackplan.parsers import manifest, terraform

    resources: List[Resource] = []
    for p in paths:
        if os.path.isdir(p):
            resources.extend(terraform.parse_directory(p, variables))
            for fname in sorted(os.listdir(p)):
                fp = os.path.join(p, fname)
                if os.path.isfile(fp) and detect_format(fp) == "manifest":
                    resources.extend(manifest.parse_file(fp))
        elif os.path.isfile(p):
            fmt = detect_format(p)
            if fmt == "terraform":
                resources.extend(terraform.parse_file(p, variables))
            elif fmt == "manifest":
                resources.extend(manifest.parse_file(p))
            else:
                console.print(f"[dim]Skipping unsupported file:[/dim] {p}")
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return resources


def _settings(config_path: Optional[str], state_dir: Optional[str], concurrency: Optional[int]) -> Settings:
    try:
        settings = load_settings(config_path)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(EXIT_GRAPH_ERROR)
    if state_dir:
        settings.state_dir = state_dir
    if concurrency:
        settings.concurrency = concurrency
    return settings


def _build_graph(paths: Tuple[str, ...], variables: Dict[str, Any], stderr: Console) -> ResourceGraph:
    with stderr.status(f"[bold]Reading {len(paths)} path(s)…"):
        try:
            resources = _load_declarations(paths, variables)
            graph = builder.build(resources)
            resolver.resolve(graph)
        except GraphError as exc:
            stderr.print(f"[red]Graph error:[/red] {exc}")
            sys.exit(EXIT_GRAPH_ERROR)
    if not len(graph):
        stderr.print("[yellow]No resources declared in the provided paths.[/yellow]")
    return graph


def _print_plan_table(plan: Plan, no_color: bool) -> None:
    out = Console(no_color=no_color)
    if plan.is_empty:
        out.print("[green]No changes.[/green] Infrastructure matches the declarations.")
        return

    tbl = Table(title="Execution Plan", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Layer", width=6)
    tbl.add_column("Action", width=9)
    tbl.add_column("Resource")
    tbl.add_column("Kind", width=16)
    tbl.add_column("Changed")

    for i, a in enumerate(plan, 1):
        color = _ACTION_COLORS.get(a.label, "")
        tbl.add_row(
            str(i),
            str(a.layer),
            f"[{color}]{a.label}[/{color}]" if color else a.label,
            a.key,
            a.kind.value,
            ", ".join(a.changed),
        )
    out.print(tbl)

    counts = plan.counts()
    out.print(
        f"Plan: [bold]{counts['create']}[/bold] to create, [bold]{counts['update']}[/bold] to update, "
        f"[bold]{counts['replace']}[/bold] to replace, [bold]{counts['destroy']}[/bold] to destroy."
    )


def _print_result(result: ApplyResult, stderr: Console) -> None:
    tbl = Table(title="Apply Result", show_header=True, header_style="bold")
    tbl.add_column("Action", width=9)
    tbl.add_column("Resource")
    tbl.add_column("Status", width=14)
    tbl.add_column("Error")
    for o in result.outcomes:
        color = _STATUS_COLORS[o.status.value]
        tbl.add_row(o.action.label, o.action.key, f"[{color}]{o.status.value}[/{color}]", o.error or "")
    stderr.print(tbl)

    stderr.print(
        f"[green]{len(result.succeeded)} succeeded[/green], "
        f"[red]{len(result.failed)} failed[/red], "
        f"{len(result.not_attempted)} not attempted."
    )
    if result.cancelled:
        stderr.print("[yellow]Run was cancelled;[/yellow] re-run to resume from the recorded state.")


def _write(content: str, output: Optional[str], stderr: Console) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


def _execute(
    plan: Plan,
    settings: Settings,
    store: FileStateStore,
    snapshot: dict,
    yes: bool,
    no_color: bool,
    output: Optional[str],
    source_label: str,
) -> None:
    stderr = Console(stderr=True, no_color=no_color)
    _print_plan_table(plan, no_color)
    if plan.is_empty:
        sys.exit(EXIT_OK)
    if not yes and not click.confirm("Apply these actions?", default=False, err=True):
        stderr.print("Apply cancelled; nothing was changed.")
        sys.exit(EXIT_OK)

    try:
        provider = get_provider(settings.provider, settings.provider_options)
    except (ValueError, TypeError) as exc:
        stderr.print(f"[red]Provider error:[/red] {exc}")
        sys.exit(EXIT_GRAPH_ERROR)

    executor = Executor(provider, store, concurrency=settings.concurrency, snapshot=snapshot)
    result = executor.apply(plan)
    _print_result(result, stderr)
    if output:
        _write(json_reporter.build_report(plan, source_label, result), output, stderr)
    sys.exit(EXIT_OK if result.ok else EXIT_FAILED)


def _options(*decorators):
    def wrap(fn):
        for decorator in reversed(decorators):
            fn = decorator(fn)
        return fn
    return wrap


_common_options = _options(
    click.option("--state-dir", type=click.Path(file_okay=False), default=None,
                 help="Directory holding one state file per resource."),
    click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
                 help="Settings file (default: ./stackplan.yaml when present)."),
    click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output."),
)

_graph_options = _options(
    click.argument("paths", nargs=-1, required=True, type=click.Path()),
    click.option("--var", "var_pairs", multiple=True, metavar="NAME=VALUE",
                 help="Set a variable; repeatable."),
)

_apply_options = _options(
    click.option("--concurrency", "-j", type=click.IntRange(min=1), default=None,
                 help="Maximum concurrent provider calls per layer."),
    click.option("--yes", "-y", is_flag=True, default=False, help="Skip the confirmation prompt."),
    click.option("--output", "-o", type=click.Path(), default=None,
                 help="Also write a JSON report of the run to this file."),
)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """stackplan: dependency-aware declarative resource orchestrator."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@_graph_options
@_common_options
@click.option(
    "--format", "output_format",
    type=click.Choice(["text", "json", "markdown", "html"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the plan to this file (default: stdout).")
def plan(
    paths: Tuple[str, ...],
    var_pairs: Tuple[str, ...],
    state_dir: Optional[str],
    config_path: Optional[str],
    no_color: bool,
    output_format: str,
    output: Optional[str],
) -> None:
    """
    Show the actions needed to reconcile state with the declarations.

    PATHS can be files or directories; multiple values accepted.
    """
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(config_path, state_dir, None)
    graph = _build_graph(paths, _parse_vars(var_pairs), stderr)

    try:
        the_plan = planner.generate(graph, FileStateStore(settings.state_dir).load(), settings.policies)
    except GraphError as exc:
        stderr.print(f"[red]Graph error:[/red] {exc}")
        sys.exit(EXIT_GRAPH_ERROR)
    except StackplanError as exc:
        stderr.print(f"[red]Error:[/red] {exc}")
        sys.exit(EXIT_FAILED)

    source_label = ", ".join(paths)
    fmt = output_format.lower()
    if fmt == "text":
        _print_plan_table(the_plan, no_color)
    elif fmt == "json":
        _write(json_reporter.build_report(the_plan, source_label), output, stderr)
    elif fmt == "html":
        _write(html_reporter.build_report(the_plan, graph, source_label), output, stderr)
    else:
        _write(markdown.build_report(the_plan, graph, source_label), output, stderr)
    sys.exit(EXIT_OK)


@cli.command()
@_graph_options
@_common_options
@_apply_options
def apply(
    paths: Tuple[str, ...],
    var_pairs: Tuple[str, ...],
    state_dir: Optional[str],
    config_path: Optional[str],
    no_color: bool,
    concurrency: Optional[int],
    yes: bool,
    output: Optional[str],
) -> None:
    """
    Plan and execute the changes declared in PATHS.

    Exit code 0 when every action succeeded, 1 on partial failure or
    cancellation, 2 when the declarations are invalid.
    """
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(config_path, state_dir, concurrency)
    graph = _build_graph(paths, _parse_vars(var_pairs), stderr)
    store = FileStateStore(settings.state_dir)

    try:
        with store.lock():
            snapshot = store.load()
            the_plan = planner.generate(graph, snapshot, settings.policies)
            _execute(the_plan, settings, store, snapshot, yes, no_color, output, ", ".join(paths))
    except StateLockError as exc:
        stderr.print(f"[red]State locked:[/red] {exc}")
        sys.exit(EXIT_FAILED)
    except GraphError as exc:
        stderr.print(f"[red]Graph error:[/red] {exc}")
        sys.exit(EXIT_GRAPH_ERROR)
    except StackplanError as exc:
        stderr.print(f"[red]Error:[/red] {exc}")
        sys.exit(EXIT_FAILED)


@cli.command()
@_common_options
@_apply_options
def destroy(
    state_dir: Optional[str],
    config_path: Optional[str],
    no_color: bool,
    concurrency: Optional[int],
    yes: bool,
    output: Optional[str],
) -> None:
    """
    Tear down everything recorded in state, dependents first.
    """
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(config_path, state_dir, concurrency)
    store = FileStateStore(settings.state_dir)

    try:
        with store.lock():
            snapshot = store.load()
            the_plan = planner.generate_teardown(snapshot)
            _execute(the_plan, settings, store, snapshot, yes, no_color, output, settings.state_dir)
    except StateLockError as exc:
        stderr.print(f"[red]State locked:[/red] {exc}")
        sys.exit(EXIT_FAILED)
    except GraphError as exc:
        stderr.print(f"[red]Graph error:[/red] {exc}")
        sys.exit(EXIT_GRAPH_ERROR)
    except StackplanError as exc:
        stderr.print(f"[red]Error:[/red] {exc}")
        sys.exit(EXIT_FAILED)


@cli.command()
@_graph_options
@click.option(
    "--format", "output_format",
    type=click.Choice(["layers", "mermaid"], case_sensitive=False),
    default="layers",
    show_default=True,
)
def graph(paths: Tuple[str, ...], var_pairs: Tuple[str, ...], output_format: str) -> None:
    """Print the dependency graph of PATHS."""
    the_graph = _build_graph(paths, _parse_vars(var_pairs), console)
    if output_format.lower() == "mermaid":
        click.echo(markdown.build_mermaid(the_graph))
        sys.exit(EXIT_OK)
    for depth, ids in enumerate(resolver.resolve(the_graph)):
        click.echo(f"layer {depth}:")
        for rid in ids:
            deps = the_graph.dependencies[rid]
            suffix = f"  <- {', '.join(deps)}" if deps else ""
            click.echo(f"  {rid}{suffix}")
    sys.exit(EXIT_OK)


@cli.command()
@_common_options
def state(state_dir: Optional[str], config_path: Optional[str], no_color: bool) -> None:
    """List the resources recorded in state."""
    settings = _settings(config_path, state_dir, None)
    try:
        snapshot = FileStateStore(settings.state_dir).load()
    except StackplanError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(EXIT_FAILED)

    if not snapshot:
        Console(no_color=no_color).print("State is empty.")
        sys.exit(EXIT_OK)

    tbl = Table(title=f"State ({settings.state_dir})", show_header=True, header_style="bold")
    tbl.add_column("Resource")
    tbl.add_column("Kind", width=16)
    tbl.add_column("Provider ID")
    tbl.add_column("Deposed", width=8)
    tbl.add_column("Updated")
    for s in snapshot.values():
        tbl.add_row(s.resource_id, s.kind, s.provider_id, str(len(s.deposed)), s.updated_at)
    Console(no_color=no_color).print(tbl)
    sys.exit(EXIT_OK)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
