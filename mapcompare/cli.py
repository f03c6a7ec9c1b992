"""CLI for mapcompare - compare concept maps from a workspace file."""

import json
import logging
from pathlib import Path
from typing import Annotated, Optional

from dotenv import load_dotenv
from pydantic import ValidationError
import typer

# Load .env file if present
load_dotenv()

from mapcompare.compare import DEFAULT_MAX_CONCURRENT, ComparisonService
from mapcompare.errors import ComparisonError
from mapcompare.llm import NormalizerConfig, run_async
from mapcompare.models import Caller, Comparison, ComparisonMode, Role
from mapcompare.store import load_workspace
from mapcompare.vocabulary import LLMVocabularyAdjuster, StaticVocabularyAdjuster

app = typer.Typer(
    name="mapcompare",
    help="Compare concept maps against each other and against a reference map.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load_config() -> NormalizerConfig:
    try:
        return NormalizerConfig()
    except ValidationError as e:
        typer.echo(f"Error: Invalid normalization service configuration:\n{e}", err=True)
        raise typer.Exit(1)


@app.command()
def compare(
    workspace: Annotated[
        Path,
        typer.Argument(help="YAML/JSON file with topics and maps"),
    ],
    topic: Annotated[
        str,
        typer.Option("--topic", "-t", help="Topic id all compared maps must belong to"),
    ],
    mode: Annotated[
        ComparisonMode,
        typer.Option("--mode", help="Comparison mode"),
    ] = ComparisonMode.PAIR,
    map_ids: Annotated[
        Optional[list[str]],
        typer.Option("--map", "-m", help="Map id (repeat for pair / partial_subset)"),
    ] = None,
    reference: Annotated[
        Optional[str],
        typer.Option("--reference", "-r", help="Reference map id (reference_to_all)"),
    ] = None,
    instructor: Annotated[
        str,
        typer.Option("--instructor", help="User id recorded as the comparison creator"),
    ] = "instructor",
    offline: Annotated[
        bool,
        typer.Option("--offline", help="Skip the normalization service (labels compared as written)"),
    ] = False,
    max_concurrent: Annotated[
        int,
        typer.Option("--max-concurrent", "-c", help="Max concurrent normalization calls"),
    ] = DEFAULT_MAX_CONCURRENT,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Output JSON file (default: stdout)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show progress info"),
    ] = False,
):
    """Run one comparison and write the resulting aggregate as JSON."""
    _configure_logging(verbose)

    if not workspace.exists():
        typer.echo(f"Error: Workspace file not found: {workspace}", err=True)
        raise typer.Exit(1)

    store = load_workspace(workspace)
    if verbose:
        typer.echo(f"Loaded {len(store.maps)} maps from {workspace}", err=True)

    adjuster = StaticVocabularyAdjuster() if offline else LLMVocabularyAdjuster(_load_config())
    service = ComparisonService(store, adjuster, max_concurrent=max_concurrent)
    caller = Caller(user_id=instructor, role=Role.INSTRUCTOR)
    map_ids = map_ids or []

    if mode == ComparisonMode.PAIR:
        if len(map_ids) != 2:
            typer.echo("Error: pair mode needs exactly two --map options", err=True)
            raise typer.Exit(1)
        operation = service.pair(caller, topic, map_ids[0], map_ids[1])
    elif mode == ComparisonMode.REFERENCE_TO_ALL:
        if not reference:
            typer.echo("Error: reference_to_all mode needs --reference", err=True)
            raise typer.Exit(1)
        operation = service.reference_to_all(caller, topic, reference)
    elif mode == ComparisonMode.ALL_VS_ALL:
        operation = service.all_vs_all(caller, topic)
    else:
        operation = service.partial_subset(caller, topic, map_ids)

    try:
        comparison = run_async(operation)
    except ComparisonError as e:
        typer.echo(f"Error [{e.code}]: {e.message}", err=True)
        raise typer.Exit(1)

    if verbose:
        typer.echo(f"Comparison {comparison.id}: {len(comparison.results)} result(s)", err=True)

    payload = comparison.model_dump_json(indent=2)
    if output:
        output.write_text(payload)
        if verbose:
            typer.echo(f"Results written to: {output}", err=True)
    else:
        typer.echo(payload)


@app.command()
def summary(
    results: Annotated[
        Path,
        typer.Argument(help="Path to a comparison JSON file"),
    ],
):
    """Show per-pair scores from a saved comparison."""
    if not results.exists():
        typer.echo(f"Error: Results file not found: {results}", err=True)
        raise typer.Exit(1)

    comparison = Comparison.model_validate(json.loads(results.read_text()))

    typer.echo(f"Comparison {comparison.id} ({comparison.mode.value})")
    typer.echo("=" * 40)
    typer.echo(f"Topic:    {comparison.topic_id}")
    typer.echo(f"Maps:     {', '.join(comparison.map_ids)}")
    typer.echo(f"Results:  {len(comparison.results)}")

    for r in comparison.results:
        typer.echo(f"\n{r.map1_id} vs {r.map2_id}: score {r.similarity_score:.2f}")
        typer.echo(f"  Matched nodes: {len(r.matched_nodes)}  links: {len(r.matched_links)}")
        typer.echo(
            f"  Unique nodes: {len(r.unique_nodes_map1)} / {len(r.unique_nodes_map2)}"
            f"  links: {len(r.unique_links_map1)} / {len(r.unique_links_map2)}"
        )


@app.command()
def check():
    """Probe the normalization service."""
    adjuster = LLMVocabularyAdjuster(_load_config())
    if run_async(adjuster.is_available()):
        typer.echo("available")
    else:
        typer.echo("unavailable")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
