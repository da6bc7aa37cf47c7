"""Typer-based CLI for building and querying the dbt-ui store."""

from __future__ import annotations

import json
import logging
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__, config
from .build import build as build_store
from .cli_groups import query_grp
from .errors import DbtUiError, NotFoundError, StoreOpenError
from .graph_export import export_dot, render_dot
from .models import BuildResult, ModelSummary, to_payload
from .query import DEFAULT_LIMIT, DEFAULT_SEARCH_LIMIT, MAX_DEPTH, MAX_LIMIT, QueryEngine
from .storage import StoreCache, StoreHandle, list_objects, table_counts

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    help="🧭 dbt-ui: compile a dbt manifest into SQLite and explore models, lineage and search.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.add_typer(query_grp, name="query")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"dbt-ui v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """dbt-ui: manifest-to-SQLite compiler with lineage and search queries."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


# ===================================================================
# Helpers
# ===================================================================


def _fail(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {escape(message)}")
    raise typer.Exit(code=1)


def _resolve_db(db: Optional[Path]) -> Path:
    return db.expanduser().resolve() if db else config.get_db_path()


@contextmanager
def _open_engine(db: Optional[Path]) -> Iterator[QueryEngine]:
    try:
        handle = StoreHandle.open(_resolve_db(db), readonly=True)
    except StoreOpenError as exc:
        _fail(f"{exc}\nRun 'dbt-ui build' first or set {config.DB_PATH_ENV}.")
    try:
        yield QueryEngine(handle)
    finally:
        handle.close()


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(to_payload(payload), indent=2))


def _print_build_result(result: BuildResult) -> None:
    typer.echo(f"Built SQLite store at {result.store_path}")
    typer.echo(f"- Models: {result.models}")
    typer.echo(f"- Columns: {result.columns}")
    typer.echo(f"- Edges: {result.edges}")
    typer.echo(f"- Search docs: {result.search_docs}")


def _summary_table(title: str, items: List[ModelSummary]) -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("Name", style="cyan")
    table.add_column("Schema")
    table.add_column("Package")
    table.add_column("Materialization")
    table.add_column("Tags", style="dim")
    for item in items:
        table.add_row(item.name, item.schema, item.package_name, item.materialization, ", ".join(item.tags))
    return table


# ===================================================================
# Build
# ===================================================================

ManifestOption = typer.Option(None, "--manifest", "-m", help="Path to manifest.json.")
OutOption = typer.Option(None, "--out", "-o", help="Output SQLite path.")


def _run_build(manifest: Optional[Path], out: Optional[Path]) -> BuildResult:
    manifest_path = manifest or config.get_manifest_path()
    out_path = out or config.get_db_path()
    try:
        return build_store(manifest_path, out_path)
    except DbtUiError as exc:
        _fail(str(exc))


@app.command("build")
def build(
    manifest: Optional[Path] = ManifestOption,
    out: Optional[Path] = OutOption,
):
    """Compile a dbt manifest into the SQLite store (full rebuild)."""
    _print_build_result(_run_build(manifest, out))


@app.command("generate")
def generate(
    manifest: Optional[Path] = ManifestOption,
    out: Optional[Path] = OutOption,
    skip_dbt: bool = typer.Option(False, "--skip-dbt", help="Do not run 'dbt docs generate' first."),
):
    """Run 'dbt docs generate', then build the store from its manifest."""
    if not skip_dbt:
        typer.echo("Running 'dbt docs generate'...")
        try:
            subprocess.run(["dbt", "docs", "generate"], check=True)
        except FileNotFoundError:
            _fail("'dbt' executable not found. Install dbt or pass --skip-dbt.")
        except subprocess.CalledProcessError as exc:
            _fail(f"'dbt docs generate' failed with exit code {exc.returncode}.")
    _print_build_result(_run_build(manifest, out))


@app.command("inspect")
def inspect_store(
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite store path."),
):
    """List store objects and row counts."""
    with _open_engine(db) as engine:
        typer.echo(f"SQLite path: {engine.handle.path}")
        table = Table(title="Objects")
        table.add_column("Name", style="cyan")
        table.add_column("Type")
        for obj in list_objects(engine.handle):
            table.add_row(obj["name"], obj["type"])
        console.print(table)
        for name, count in table_counts(engine.handle).items():
            typer.echo(f"{name}: {count}")


@app.command("serve")
def serve(
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite store path."),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port for the JSON API."),
):
    """Serve the read-only JSON API over the store."""
    import uvicorn

    from .server import create_app

    default_host, default_port = config.get_server_address()
    cache = StoreCache(db)
    try:
        cache.get()
    except StoreOpenError as exc:
        _fail(str(exc))

    url = f"http://{host or default_host}:{port or default_port}"
    console.print(f"\n[bold green]dbt-ui API[/bold green]")
    console.print(f"   Store: [cyan]{cache.path}[/cyan]")
    console.print(f"   URL:   [link={url}]{url}[/link]")
    console.print(f"\n   [dim]Press Ctrl+C to stop the server[/dim]\n")
    try:
        uvicorn.run(create_app(cache), host=host or default_host, port=port or default_port, log_level="warning")
    except KeyboardInterrupt:
        pass
    finally:
        cache.close()
        console.print("\n[dim]Server stopped.[/dim]")


# ===================================================================
# Query group
# ===================================================================

DbOption = typer.Option(None, "--db", help="SQLite store path (defaults to $DBT_UI_DB_PATH).")
JsonOption = typer.Option(False, "--json", help="Print JSON instead of tables.")


@query_grp.command("models")
def query_models(
    limit: int = typer.Option(DEFAULT_LIMIT, help=f"Page size (1-{MAX_LIMIT})."),
    offset: int = typer.Option(0, help="Rows to skip."),
    db: Optional[Path] = DbOption,
    as_json: bool = JsonOption,
):
    """List models by name with facets."""
    with _open_engine(db) as engine:
        page = engine.list_models(limit=limit, offset=offset)
    if as_json:
        _echo_json(page)
        return
    shown = f"{len(page.items)} of {page.total}"
    console.print(_summary_table(f"Models ({shown})", page.items))
    facets = page.facets
    typer.echo(f"Schemas: {', '.join(facets.schemas) or '-'}")
    typer.echo(f"Packages: {', '.join(facets.packages) or '-'}")
    typer.echo(f"Materializations: {', '.join(facets.materializations) or '-'}")
    typer.echo(f"Tags: {', '.join(facets.tags) or '-'}")


@query_grp.command("model")
def query_model(
    unique_id: str = typer.Argument(..., help="Model unique_id, e.g. model.shop.orders."),
    db: Optional[Path] = DbOption,
    as_json: bool = JsonOption,
):
    """Show one model with its columns."""
    with _open_engine(db) as engine:
        detail = engine.get_model(unique_id)
    if detail is None:
        _fail(str(NotFoundError(unique_id)))
    if as_json:
        _echo_json(detail)
        return
    typer.echo(f"{detail.name} ({detail.unique_id})")
    typer.echo(f"  Relation: {detail.database_name or '-'}.{detail.schema_name or '-'}.{detail.alias or detail.name}")
    typer.echo(f"  Materialized: {detail.materialized or '-'}")
    typer.echo(f"  Path: {detail.path or '-'}")
    typer.echo(f"  Tags: {', '.join(detail.tags) or '-'}")
    if detail.description:
        typer.echo(f"  {detail.description}")
    table = Table(title="Columns")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    for column in detail.columns:
        table.add_row(column.name, column.description or "")
    console.print(table)


@query_grp.command("lineage")
def query_lineage(
    unique_id: str = typer.Argument(..., help="Model unique_id."),
    depth: int = typer.Option(1, help=f"Hops to expand in both directions (1-{MAX_DEPTH})."),
    db: Optional[Path] = DbOption,
    as_json: bool = JsonOption,
):
    """Show direct upstream/downstream models and the lineage neighbourhood."""
    with _open_engine(db) as engine:
        lineage = engine.get_lineage(unique_id, depth=depth)
    if as_json:
        _echo_json(lineage)
        return
    console.print(_summary_table("Upstream", lineage.upstream))
    console.print(_summary_table("Downstream", lineage.downstream))
    typer.echo(f"Graph: {len(lineage.nodes)} nodes | {len(lineage.edges)} edges")
    for edge in lineage.edges:
        typer.echo(f"  {edge.source} -> {edge.target}")


@query_grp.command("search")
def query_search(
    query: str = typer.Argument(..., help="Substring to match in names, descriptions and tags."),
    limit: int = typer.Option(DEFAULT_SEARCH_LIMIT, help="Maximum number of matches."),
    db: Optional[Path] = DbOption,
    as_json: bool = JsonOption,
):
    """Search models and columns."""
    if not query.strip():
        if as_json:
            typer.echo(json.dumps({"results": []}))
        else:
            typer.echo("No matches.")
        return
    with _open_engine(db) as engine:
        hits = engine.search(query, limit=limit)
    if as_json:
        typer.echo(json.dumps({"results": to_payload(hits)}, indent=2))
        return
    if not hits:
        typer.echo("No matches.")
        return
    for hit in hits:
        typer.echo(f"[{hit.doc_type}] {hit.name}  ({hit.doc_id})")
        if hit.description:
            typer.echo(f"  {hit.description.splitlines()[0][:120]}")


@query_grp.command("graph")
def query_graph(
    db: Optional[Path] = DbOption,
):
    """Print every model and edge as JSON."""
    with _open_engine(db) as engine:
        _echo_json(engine.get_all_models_and_edges())


@query_grp.command("nav")
def query_nav(
    db: Optional[Path] = DbOption,
    as_json: bool = JsonOption,
):
    """Show models grouped by database and schema."""
    with _open_engine(db) as engine:
        tree = engine.database_tree()
    if as_json:
        typer.echo(json.dumps({"databases": to_payload(tree)}, indent=2))
        return
    for database in tree:
        typer.echo(database.name)
        for schema in database.schemas:
            typer.echo(f"  {schema.name}")
            for model in schema.models:
                typer.echo(f"    {model.name}")


@query_grp.command("export")
def query_export(
    focus: str = typer.Option("", "--focus", "-f", help="Export only the lineage of this model."),
    depth: int = typer.Option(2, help=f"Lineage depth when --focus is set (1-{MAX_DEPTH})."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output .dot file; stdout if omitted."),
    db: Optional[Path] = DbOption,
):
    """Export the full graph or one model's lineage as Graphviz DOT."""
    with _open_engine(db) as engine:
        graph = engine.get_lineage(focus, depth=depth) if focus else engine.get_all_models_and_edges()
    if output is None:
        typer.echo(render_dot(graph, focus=focus or None))
        return
    export_dot(graph, output, focus=focus or None)
    typer.echo(f"Exported graph to {output}")


if __name__ == "__main__":
    app()
