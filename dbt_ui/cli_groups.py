"""Command hierarchy groups for the CLI.

  dbt-ui build      compile manifest.json into the SQLite store
  dbt-ui query      read models, lineage and search from the store
  dbt-ui serve      JSON API over the store
"""

from __future__ import annotations

import typer

# ── Query group ─────────────────────────────────────────────
query_grp = typer.Typer(
    help="🔍 Query: models, lineage, search and navigation from a built store.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
