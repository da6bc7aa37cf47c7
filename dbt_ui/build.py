"""Ingestion: compile a dbt manifest into the normalized SQLite store.

The store is populated in memory inside a single transaction (reset, then
models, columns, edges, search documents) and copied to its durable location
only after that transaction commits. A failed build therefore leaves the
previous store file untouched.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Union

from .errors import IngestionError
from .manifest import (
    Manifest,
    column_items,
    dependency_ids,
    load_manifest,
    normalize_tags,
    pick_materialized,
    pick_name,
    pick_path,
    pick_str,
    safe_json,
    select_models,
)
from .models import BuildResult, ColumnRow, EdgeRow, ModelRow, SearchDocRow
from .storage import StoreHandle, ensure_schema, reset_data, table_counts

logger = logging.getLogger(__name__)

COLUMN_DOC_SEPARATOR = "::"
DEPENDS_ON = "depends_on"

Node = Mapping[str, Any]


# ----------------------------------------------------------------------
# Row derivation
# ----------------------------------------------------------------------


def model_row(node: Node) -> ModelRow:
    return ModelRow(
        unique_id=node["unique_id"],
        name=pick_name(node),
        resource_type=node["resource_type"],
        package_name=pick_str(node, "package_name"),
        path=pick_path(node),
        database_name=pick_str(node, "database"),
        schema_name=pick_str(node, "schema"),
        alias=pick_str(node, "alias"),
        materialized=pick_materialized(node),
        description=pick_str(node, "description"),
        tags_json=safe_json(normalize_tags(node.get("tags"))),
        meta_json=safe_json(node.get("meta")),
        config_json=safe_json(node.get("config")),
    )


def column_rows(node: Node) -> List[ColumnRow]:
    return [
        ColumnRow(
            model_unique_id=node["unique_id"],
            name=name,
            description=pick_str(definition, "description"),
            meta_json=safe_json(definition.get("meta")),
        )
        for name, definition in column_items(node)
    ]


def edge_rows(node: Node) -> List[EdgeRow]:
    """One edge per dependency: ``node depends_on dep``."""
    return [EdgeRow(node["unique_id"], dep, DEPENDS_ON) for dep in dependency_ids(node)]


def search_doc_rows(node: Node) -> List[SearchDocRow]:
    """A ``model`` document plus one ``column`` document per declared column.

    Column documents reuse the parent's schema, package, path and tags.
    """
    unique_id = node["unique_id"]
    tags = " ".join(normalize_tags(node.get("tags")))
    schema_name = pick_str(node, "schema") or ""
    package_name = pick_str(node, "package_name") or ""
    path = pick_path(node) or ""

    docs = [
        SearchDocRow(
            doc_type="model",
            doc_id=unique_id,
            model_unique_id=unique_id,
            name=pick_name(node),
            description=pick_str(node, "description") or "",
            tags=tags,
            schema_name=schema_name,
            package_name=package_name,
            path=path,
        )
    ]
    for name, definition in column_items(node):
        docs.append(
            SearchDocRow(
                doc_type="column",
                doc_id=f"{unique_id}{COLUMN_DOC_SEPARATOR}{name}",
                model_unique_id=unique_id,
                name=name,
                description=pick_str(definition, "description") or "",
                tags=tags,
                schema_name=schema_name,
                package_name=package_name,
                path=path,
            )
        )
    return docs


# ----------------------------------------------------------------------
# Bulk insert passes
# ----------------------------------------------------------------------


def insert_models(handle: StoreHandle, nodes: Iterable[Node]) -> None:
    handle.executemany(
        """
        INSERT INTO model (
            unique_id, name, resource_type, package_name, path, database_name,
            schema_name, alias, materialized, description, tags_json, meta_json, config_json
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                r.unique_id, r.name, r.resource_type, r.package_name, r.path,
                r.database_name, r.schema_name, r.alias, r.materialized,
                r.description, r.tags_json, r.meta_json, r.config_json,
            )
            for r in map(model_row, nodes)
        ],
    )


def insert_columns(handle: StoreHandle, nodes: Iterable[Node]) -> None:
    handle.executemany(
        "INSERT INTO column_def (model_unique_id, name, description, meta_json) VALUES (?, ?, ?, ?)",
        [
            (c.model_unique_id, c.name, c.description, c.meta_json)
            for node in nodes
            for c in column_rows(node)
        ],
    )


def insert_edges(handle: StoreHandle, nodes: Iterable[Node]) -> None:
    # Duplicates collapse on the primary key.
    handle.executemany(
        "INSERT OR IGNORE INTO edge (src_unique_id, dst_unique_id, edge_type) VALUES (?, ?, ?)",
        [
            (e.src_unique_id, e.dst_unique_id, e.edge_type)
            for node in nodes
            for e in edge_rows(node)
        ],
    )


def insert_search_docs(handle: StoreHandle, nodes: Iterable[Node]) -> None:
    handle.executemany(
        """
        INSERT INTO search_doc (
            doc_type, doc_id, model_unique_id, name, description, tags,
            schema_name, package_name, path
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                d.doc_type, d.doc_id, d.model_unique_id, d.name, d.description,
                d.tags, d.schema_name, d.package_name, d.path,
            )
            for node in nodes
            for d in search_doc_rows(node)
        ],
    )


def populate(handle: StoreHandle, manifest: Manifest) -> None:
    """Replace the handle's contents with *manifest* in one transaction.

    Raises:
        IngestionError: any engine failure; the transaction is rolled back.
    """
    models = select_models(manifest)
    ensure_schema(handle)
    try:
        with handle.transaction():
            reset_data(handle)
            insert_models(handle, models)
            insert_columns(handle, models)
            insert_edges(handle, models)
            insert_search_docs(handle, models)
    except sqlite3.Error as exc:
        raise IngestionError(f"Build failed and was rolled back: {exc}") from exc


def build(manifest_path: Union[str, Path], store_path: Union[str, Path]) -> BuildResult:
    """Compile the manifest at *manifest_path* into the store at *store_path*."""
    manifest = load_manifest(manifest_path)
    logger.info("Building store %s from %s (%d nodes)", store_path, manifest_path, len(manifest.nodes))

    handle = StoreHandle.memory()
    try:
        populate(handle, manifest)
        counts = table_counts(handle)
        try:
            saved = handle.save(store_path)
        except (sqlite3.Error, OSError) as exc:
            raise IngestionError(f"Could not write store to {store_path}: {exc}") from exc
    finally:
        handle.close()

    result = BuildResult(
        store_path=saved,
        models=counts["model"],
        columns=counts["column_def"],
        edges=counts["edge"],
        search_docs=counts["search_doc"],
    )
    logger.info(
        "Built %s: %d models, %d columns, %d edges, %d search docs",
        saved, result.models, result.columns, result.edges, result.search_docs,
    )
    return result
