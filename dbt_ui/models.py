"""Row and result data models used by the build and query layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


# ----------------------------------------------------------------------
# Store rows
# ----------------------------------------------------------------------


@dataclass
class ModelRow:
    unique_id: str
    name: str
    resource_type: str
    package_name: Optional[str]
    path: Optional[str]
    database_name: Optional[str]
    schema_name: Optional[str]
    alias: Optional[str]
    materialized: Optional[str]
    description: Optional[str]
    tags_json: Optional[str]
    meta_json: Optional[str]
    config_json: Optional[str]


@dataclass
class ColumnRow:
    model_unique_id: str
    name: str
    description: Optional[str]
    meta_json: Optional[str]


@dataclass
class EdgeRow:
    src_unique_id: str
    dst_unique_id: str
    edge_type: str = "depends_on"


@dataclass
class SearchDocRow:
    doc_type: str
    doc_id: str
    model_unique_id: str
    name: str
    description: str
    tags: str
    schema_name: str
    package_name: str
    path: str


@dataclass
class BuildResult:
    store_path: Path
    models: int
    columns: int
    edges: int
    search_docs: int


# ----------------------------------------------------------------------
# Query results
# ----------------------------------------------------------------------


@dataclass
class ModelSummary:
    unique_id: str
    name: str
    description: Optional[str]
    schema: str
    package_name: str
    materialization: str
    resource_type: str
    tags: List[str] = field(default_factory=list)


@dataclass
class Facets:
    tags: List[str] = field(default_factory=list)
    schemas: List[str] = field(default_factory=list)
    packages: List[str] = field(default_factory=list)
    materializations: List[str] = field(default_factory=list)


@dataclass
class ModelPage:
    total: int
    items: List[ModelSummary]
    facets: Facets


@dataclass
class ColumnDetail:
    name: str
    description: Optional[str]
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelDetail:
    unique_id: str
    name: str
    resource_type: str
    package_name: Optional[str]
    path: Optional[str]
    database_name: Optional[str]
    schema_name: Optional[str]
    alias: Optional[str]
    materialized: Optional[str]
    description: Optional[str]
    tags: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)
    columns: List[ColumnDetail] = field(default_factory=list)


@dataclass
class GraphNode:
    id: str
    label: str
    schema: str
    package_name: str
    materialization: str
    resource_type: str
    tags: List[str] = field(default_factory=list)


@dataclass
class GraphEdge:
    source: str
    target: str


@dataclass
class Lineage:
    upstream: List[ModelSummary] = field(default_factory=list)
    downstream: List[ModelSummary] = field(default_factory=list)
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)


@dataclass
class GraphExport:
    nodes: List[GraphNode]
    edges: List[GraphEdge]
    models: List[ModelSummary]
    total: int


@dataclass
class SearchHit:
    doc_type: str
    doc_id: str
    model_unique_id: str
    name: str
    description: str


@dataclass
class NavModel:
    unique_id: str
    name: str


@dataclass
class NavSchema:
    name: str
    models: List[NavModel] = field(default_factory=list)


@dataclass
class DatabaseEntry:
    name: str
    schemas: List[NavSchema] = field(default_factory=list)


def to_payload(obj: Any) -> Any:
    """Convert result dataclasses (or lists of them) to JSON-ready values."""
    if isinstance(obj, list):
        return [to_payload(item) for item in obj]
    if hasattr(obj, "__dataclass_fields__"):
        payload = asdict(obj)
        for key, value in payload.items():
            if isinstance(value, Path):
                payload[key] = str(value)
        return payload
    return obj
