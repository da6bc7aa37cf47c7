"""Read-only queries over the normalized store.

Covers paginated listing with facets, point lookup, bounded-depth lineage,
the full-graph export, text search and the database/schema navigation tree.
Stored JSON encodings that fail to decode degrade to empty values, so one
corrupt row never breaks a listing.
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import unicodedata
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .models import (
    ColumnDetail,
    DatabaseEntry,
    Facets,
    GraphEdge,
    GraphExport,
    GraphNode,
    Lineage,
    ModelDetail,
    ModelPage,
    ModelSummary,
    NavModel,
    NavSchema,
    SearchHit,
)
from .storage import StoreHandle

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 200
MAX_OFFSET = 2**53 - 1
DEFAULT_DEPTH = 1
MAX_DEPTH = 4
DEFAULT_SEARCH_LIMIT = 50

DEFAULT_MATERIALIZATION = "view"
DEFAULT_RESOURCE_TYPE = "model"
DEFAULT_DATABASE = "default"
DEFAULT_SCHEMA = "public"

# Stays under SQLite's bound-parameter limit on older builds.
_IN_BATCH = 500

_SUMMARY_FIELDS = (
    "unique_id", "name", "description", "schema_name", "package_name",
    "materialized", "resource_type", "tags_json",
)
_SUMMARY_COLUMNS = ", ".join(_SUMMARY_FIELDS)


# ----------------------------------------------------------------------
# Input and field decoding
# ----------------------------------------------------------------------


def clamp_int(value: Any, fallback: int, lo: int, hi: Optional[int] = None) -> int:
    """Coerce *value* to an int within ``[lo, hi]``.

    Non-numeric input (``None``, ``"abc"``, NaN) yields *fallback*; numeric
    input out of range is clamped, so ``0`` becomes ``lo``.
    """
    if value is None or isinstance(value, bool):
        return fallback
    try:
        if isinstance(value, float):
            if math.isnan(value):
                return fallback
            n = int(value)
        elif isinstance(value, int):
            n = value
        else:
            n = int(str(value).strip())
    except (TypeError, ValueError, OverflowError):
        return fallback
    n = max(n, lo)
    if hi is not None:
        n = min(n, hi)
    return n


def parse_tags(tags_json: Optional[str]) -> List[str]:
    if not tags_json:
        return []
    try:
        parsed = json.loads(tags_json)
    except (TypeError, ValueError):
        return []
    if not isinstance(parsed, list):
        return []
    return [tag.strip() for tag in parsed if isinstance(tag, str) and tag.strip()]


def parse_object(payload: Optional[str]) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        parsed = json.loads(payload)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _char_class(char: str) -> int:
    category = unicodedata.category(char)
    if category[0] in "PSZC":
        return 0
    if category[0] == "N":
        return 1
    return 2


def tag_sort_key(tag: str) -> Tuple[List[Tuple[int, str]], str]:
    """Dictionary order close to ICU collation.

    Punctuation and symbols sort before digits, digits before letters.
    Comparison is case-insensitive, with lowercase before uppercase on ties.
    Accented letters are ordered by code point, not by base letter.
    """
    folded = tag.casefold()
    return [(_char_class(c), c) for c in folded], tag.swapcase()


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _batched(items: Sequence[str], size: int = _IN_BATCH) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _placeholders(items: Sequence[str]) -> str:
    return ",".join("?" * len(items))


def _summary(row: sqlite3.Row) -> ModelSummary:
    return ModelSummary(
        unique_id=row["unique_id"],
        name=row["name"],
        description=row["description"],
        schema=row["schema_name"] or "",
        package_name=row["package_name"] or "",
        materialization=row["materialized"] or DEFAULT_MATERIALIZATION,
        resource_type=row["resource_type"] or DEFAULT_RESOURCE_TYPE,
        tags=parse_tags(row["tags_json"]),
    )


def _graph_node(row: sqlite3.Row) -> GraphNode:
    return GraphNode(
        id=row["unique_id"],
        label=row["name"],
        schema=row["schema_name"] or "",
        package_name=row["package_name"] or "",
        materialization=row["materialized"] or DEFAULT_MATERIALIZATION,
        resource_type=row["resource_type"] or DEFAULT_RESOURCE_TYPE,
        tags=parse_tags(row["tags_json"]),
    )


# ===================================================================
# QueryEngine
# ===================================================================


class QueryEngine:
    """Stateless query operations over an open :class:`StoreHandle`."""

    def __init__(self, handle: StoreHandle) -> None:
        self.handle = handle

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_models(self, limit: Any = DEFAULT_LIMIT, offset: Any = 0) -> ModelPage:
        limit = clamp_int(limit, DEFAULT_LIMIT, 1, MAX_LIMIT)
        offset = clamp_int(offset, 0, 0, MAX_OFFSET)

        total = int(self.handle.scalar("SELECT COUNT(*) FROM model") or 0)
        rows = self.handle.query(
            f"SELECT {_SUMMARY_COLUMNS} FROM model ORDER BY name, unique_id LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return ModelPage(total=total, items=[_summary(r) for r in rows], facets=self.facets())

    def facets(self) -> Facets:
        def distinct(column: str) -> List[str]:
            rows = self.handle.query(
                f"SELECT DISTINCT {column} AS value FROM model "
                f"WHERE {column} IS NOT NULL AND {column} != '' ORDER BY {column}"
            )
            return [row["value"] for row in rows]

        tags: Set[str] = set()
        for row in self.handle.query("SELECT tags_json FROM model WHERE tags_json IS NOT NULL"):
            tags.update(parse_tags(row["tags_json"]))

        return Facets(
            tags=sorted(tags, key=tag_sort_key),
            schemas=distinct("schema_name"),
            packages=distinct("package_name"),
            materializations=distinct("materialized"),
        )

    # ------------------------------------------------------------------
    # Point lookup
    # ------------------------------------------------------------------

    def get_model(self, unique_id: str) -> Optional[ModelDetail]:
        """Full model row with decoded tags/meta/config and its columns; ``None`` if absent."""
        row = self.handle.query_one("SELECT * FROM model WHERE unique_id = ?", (unique_id,))
        if row is None:
            return None
        columns = self.handle.query(
            "SELECT name, description, meta_json FROM column_def "
            "WHERE model_unique_id = ? ORDER BY name",
            (unique_id,),
        )
        return ModelDetail(
            unique_id=row["unique_id"],
            name=row["name"],
            resource_type=row["resource_type"] or DEFAULT_RESOURCE_TYPE,
            package_name=row["package_name"],
            path=row["path"],
            database_name=row["database_name"],
            schema_name=row["schema_name"],
            alias=row["alias"],
            materialized=row["materialized"],
            description=row["description"],
            tags=parse_tags(row["tags_json"]),
            meta=parse_object(row["meta_json"]),
            config=parse_object(row["config_json"]),
            columns=[
                ColumnDetail(name=c["name"], description=c["description"], meta=parse_object(c["meta_json"]))
                for c in columns
            ],
        )

    # ------------------------------------------------------------------
    # Lineage
    # ------------------------------------------------------------------

    def get_lineage(self, unique_id: str, depth: Any = DEFAULT_DEPTH) -> Lineage:
        """Neighbourhood of *unique_id* within *depth* hops in either direction.

        ``nodes``/``edges`` come from a breadth-first walk that follows edges
        both as source and destination. ``upstream``/``downstream`` are only
        the direct neighbours, labelled by direction: with ``src depends_on
        dst``, upstream is what the node depends on and downstream is what
        depends on it.
        """
        depth = clamp_int(depth, DEFAULT_DEPTH, 1, MAX_DEPTH)
        visited, edges = self._walk(unique_id, depth)
        return Lineage(
            upstream=self._direct_neighbours(unique_id, upstream=True),
            downstream=self._direct_neighbours(unique_id, upstream=False),
            nodes=self._graph_nodes(visited),
            edges=edges,
        )

    def visited_ids(self, unique_id: str, depth: Any = DEFAULT_DEPTH) -> Set[str]:
        visited, _ = self._walk(unique_id, clamp_int(depth, DEFAULT_DEPTH, 1, MAX_DEPTH))
        return set(visited)

    def _walk(self, start: str, depth: int) -> Tuple[List[str], List[GraphEdge]]:
        visited: Set[str] = {start}
        order: List[str] = [start]
        seen_edges: Set[str] = set()
        edges: List[GraphEdge] = []
        frontier: List[str] = [start]

        for _ in range(depth):
            if not frontier:
                break
            next_frontier: List[str] = []
            for src, dst in self._edges_touching(frontier):
                key = f"{src}->{dst}"
                if key not in seen_edges:
                    seen_edges.add(key)
                    edges.append(GraphEdge(source=src, target=dst))
                for endpoint in (src, dst):
                    if endpoint not in visited:
                        visited.add(endpoint)
                        order.append(endpoint)
                        next_frontier.append(endpoint)
            frontier = next_frontier

        logger.debug("Lineage of %s at depth %d: %d nodes, %d edges", start, depth, len(order), len(edges))
        return order, edges

    def _edges_touching(self, ids: Sequence[str]) -> Iterable[Tuple[str, str]]:
        for batch in _batched(ids):
            marks = _placeholders(batch)
            for column in ("src_unique_id", "dst_unique_id"):
                rows = self.handle.query(
                    f"SELECT src_unique_id, dst_unique_id FROM edge WHERE {column} IN ({marks}) "
                    "ORDER BY src_unique_id, dst_unique_id",
                    tuple(batch),
                )
                for row in rows:
                    yield row["src_unique_id"], row["dst_unique_id"]

    def _graph_nodes(self, ids: Sequence[str]) -> List[GraphNode]:
        found: Dict[str, GraphNode] = {}
        for batch in _batched(ids):
            rows = self.handle.query(
                f"SELECT {_SUMMARY_COLUMNS} FROM model WHERE unique_id IN ({_placeholders(batch)})",
                tuple(batch),
            )
            for row in rows:
                found[row["unique_id"]] = _graph_node(row)
        # Ids without a model row (sources, seeds) stay edge-only.
        return [found[i] for i in ids if i in found]

    def _direct_neighbours(self, unique_id: str, upstream: bool) -> List[ModelSummary]:
        near, far = ("src_unique_id", "dst_unique_id") if upstream else ("dst_unique_id", "src_unique_id")
        rows = self.handle.query(
            f"SELECT DISTINCT {', '.join('m.' + c for c in _SUMMARY_FIELDS)} "
            f"FROM edge e JOIN model m ON e.{far} = m.unique_id "
            f"WHERE e.{near} = ? ORDER BY m.name, m.unique_id",
            (unique_id,),
        )
        return [_summary(r) for r in rows]

    # ------------------------------------------------------------------
    # Full graph
    # ------------------------------------------------------------------

    def get_all_models_and_edges(self) -> GraphExport:
        rows = self.handle.query(
            f"SELECT {_SUMMARY_COLUMNS} FROM model ORDER BY package_name, schema_name, name"
        )
        edge_rows = self.handle.query(
            "SELECT src_unique_id, dst_unique_id FROM edge ORDER BY src_unique_id, dst_unique_id"
        )
        nodes = [_graph_node(r) for r in rows]
        return GraphExport(
            nodes=nodes,
            edges=[GraphEdge(source=r["src_unique_id"], target=r["dst_unique_id"]) for r in edge_rows],
            models=[_summary(r) for r in rows],
            total=len(nodes),
        )

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: Optional[str], limit: Any = DEFAULT_SEARCH_LIMIT) -> List[SearchHit]:
        """Case-insensitive substring match over name, description and tags.

        A blank query returns ``[]`` without touching the store. Any other
        query is matched as given, surrounding whitespace included. Result
        order is whatever the engine yields.
        """
        if not isinstance(query, str) or not query.strip():
            return []
        limit = clamp_int(limit, DEFAULT_SEARCH_LIMIT, 1, MAX_LIMIT)
        term = f"%{escape_like(query.casefold())}%"
        rows = self.handle.query(
            """
            SELECT doc_type, doc_id, model_unique_id, name, description
            FROM search_doc
            WHERE casefold(name) LIKE ? ESCAPE '\\'
               OR casefold(description) LIKE ? ESCAPE '\\'
               OR casefold(tags) LIKE ? ESCAPE '\\'
            LIMIT ?
            """,
            (term, term, term, limit),
        )
        return [
            SearchHit(
                doc_type=r["doc_type"],
                doc_id=r["doc_id"],
                model_unique_id=r["model_unique_id"],
                name=r["name"],
                description=r["description"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def database_tree(self) -> List[DatabaseEntry]:
        """Models grouped by database, then schema."""
        rows = self.handle.query(
            "SELECT database_name, schema_name, unique_id, name FROM model "
            "ORDER BY database_name, schema_name, name"
        )
        tree: Dict[str, Dict[str, List[NavModel]]] = {}
        for row in rows:
            database = row["database_name"] or DEFAULT_DATABASE
            schema = row["schema_name"] or DEFAULT_SCHEMA
            tree.setdefault(database, {}).setdefault(schema, []).append(
                NavModel(unique_id=row["unique_id"], name=row["name"])
            )
        return [
            DatabaseEntry(
                name=database,
                schemas=[NavSchema(name=schema, models=models) for schema, models in schemas.items()],
            )
            for database, schemas in tree.items()
        ]
