"""Command-line interface for nameof accessor generation."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from nameofgen.generator.csharp import CORE_HINT_NAME, render_core
from nameofgen.generator.markers import MarkerError
from nameofgen.generator.pipeline import (
    GenerationPass,
    GeneratorOptions,
    PassResult,
    collect_targets,
)
from nameofgen.generator.resolver import SymbolResolver
from nameofgen.generator.runtime import ClrModuleLoader
from nameofgen.generator.source import SourceError, SourceProgram
from nameofgen.generator.types import AccessModifier, Exposure

RUNTIMES = ["coreclr", "mono", "netfx"]


def _pass_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by the commands that run a generation pass."""
    options = [
        click.argument(
            "sources", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path)
        ),
        click.option(
            "--reference",
            "-r",
            "references",
            multiple=True,
            type=click.Path(path_type=Path),
            help="Referenced assembly file (repeatable)",
        ),
        click.option(
            "--search-path",
            "search_paths",
            multiple=True,
            type=click.Path(path_type=Path),
            help="Extra folder to look for assemblies in (repeatable)",
        ),
        click.option(
            "--assembly-name", default="Program", help="Name of the assembly the sources build"
        ),
        click.option(
            "--assembly",
            type=click.Path(path_type=Path),
            default=None,
            help="Built assembly of the sources, for types not declared in them",
        ),
        click.option(
            "--marker",
            "-m",
            "markers",
            multiple=True,
            help='Extra GenerateNameof attribute, e.g. \'GenerateNameof("Ns.Type", assemblyName: "Lib")\'',
        ),
        click.option(
            "--internal",
            "internal",
            is_flag=True,
            default=False,
            help="Generate internal accessor classes unless a marker asks otherwise",
        ),
        click.option(
            "--exposure",
            type=click.Choice([e.value for e in Exposure]),
            default=Exposure.CHAIN.value,
            help="chain: a type is exposed only if all enclosing types are; declared: own visibility only",
        ),
        click.option("--jobs", "-j", default=1, type=click.IntRange(min=1), help="Parallel targets"),
        click.option(
            "--runtime",
            type=click.Choice(RUNTIMES),
            default=None,
            help="pythonnet runtime used to load assemblies",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _run_pass(
    sources: tuple[Path, ...],
    references: tuple[Path, ...],
    search_paths: tuple[Path, ...],
    assembly_name: str,
    assembly: Path | None,
    markers: tuple[str, ...],
    internal: bool,
    exposure: str,
    jobs: int,
    runtime: str | None,
    emit_core: bool = True,
) -> PassResult:
    try:
        program = SourceProgram.from_paths(sources, assembly_name)
        descriptors = collect_targets(program, markers)
    except (SourceError, MarkerError) as e:
        raise click.ClickException(str(e)) from e

    known_paths = [*references, *([assembly] if assembly else [])]
    loader = ClrModuleLoader(known_paths, runtime=runtime)
    resolver = SymbolResolver.create(
        program, loader, references=references, search_paths=search_paths, assembly=assembly
    )
    options = GeneratorOptions(
        access=AccessModifier.INTERNAL if internal else AccessModifier.PUBLIC,
        exposure=Exposure(exposure),
        jobs=jobs,
        emit_core=emit_core,
    )
    return GenerationPass(resolver, options).run(descriptors)


def _echo_diagnostics(result: PassResult) -> None:
    for diagnostic in result.diagnostics:
        click.echo(f"{diagnostic.severity} {diagnostic.id}: {diagnostic.message}", err=True)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show debug logging")
def cli(verbose: bool) -> None:
    """nameof accessor generator for non-accessible C# members."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@cli.command()
@_pass_options
@click.option("--output", "-o", "output_path", required=True, help="Output directory")
@click.option("--no-core", is_flag=True, default=False, help=f"Do not write {CORE_HINT_NAME}")
def gen(output_path: str, no_core: bool, **kwargs: Any) -> None:
    """Generate nameof accessors for the markers found in SOURCES."""
    result = _run_pass(**kwargs, emit_core=not no_core)

    output_dir = Path(output_path)
    output_dir.mkdir(parents=True, exist_ok=True)
    for unit in result.units:
        with open(output_dir / unit.hint_name, "w", encoding="utf-8") as f:
            f.write(unit.source)

    _echo_diagnostics(result)


@cli.command()
@click.option("--output", "-o", "output_file", default=None, help="Output file (default: stdout)")
def core(output_file: str | None) -> None:
    """Generate the nameof<T> marker type and the GenerateNameof attributes."""
    generated_file = render_core()
    if output_file is None:
        sys.stdout.write(generated_file)
        return
    with open(output_file, "w", encoding="utf-8") as f:
        f.write(generated_file)


@cli.command()
@_pass_options
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def info(output_json: bool, **kwargs: Any) -> None:
    """Show how each target in SOURCES resolves, without writing files."""
    result = _run_pass(**kwargs, emit_core=False)

    if output_json:
        _output_json(result)
    else:
        _output_plain(result)


def _output_json(result: PassResult) -> None:
    """Output pass results as JSON."""
    data = {
        "targets": [report.to_dict() for report in result.reports],
        "diagnostics": [diagnostic.to_dict() for diagnostic in result.diagnostics],
    }
    print(json.dumps(data, indent=2))


def _output_plain(result: PassResult) -> None:
    """Output pass results using rich text formatting."""
    console = Console()

    console.print("[bold cyan]Targets[/bold cyan]")
    table = Table(show_header=True, box=None, padding=(0, 2, 0, 0))
    table.add_column("Target", style="white")
    table.add_column("Status", style="green")
    table.add_column("Tier", style="dim")
    table.add_column("Members", style="yellow", justify="right")
    table.add_column("Containers", style="yellow", justify="right")
    table.add_column("File", style="dim")

    for report in result.reports:
        table.add_row(
            escape(report.target),
            report.status.value,
            report.tier.value if report.tier else "",
            str(report.member_count),
            str(report.container_count),
            report.hint_name or "",
        )
    console.print(table)

    if result.diagnostics:
        console.print()
        console.print("[bold cyan]Diagnostics[/bold cyan]")
        for diagnostic in result.diagnostics:
            style = "yellow" if diagnostic.severity == "warning" else "dim"
            console.print(
                f"[{style}]{diagnostic.severity} {diagnostic.id}[/{style}] {escape(diagnostic.message)}",
                markup=True,
                highlight=False,
            )


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
