"""dbt-ui: compile a dbt manifest into SQLite and query models, lineage and search."""

__version__ = "0.3.0"
