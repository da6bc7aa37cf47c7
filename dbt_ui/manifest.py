"""Loading a dbt ``manifest.json`` and projecting its loosely-typed nodes.

Every field access on a manifest node goes through one of the small
extraction helpers below. Each returns an optional value with an explicit
default and never raises on unexpected shapes, so a single odd node cannot
abort a build.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import ManifestNotFoundError, ManifestParseError

logger = logging.getLogger(__name__)

MODEL_RESOURCE_TYPE = "model"


@dataclass
class Manifest:
    """Parsed manifest document: node mapping plus the sections we carry along."""

    nodes: Dict[str, Any] = field(default_factory=dict)
    sources: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


def load_manifest(path: Union[str, Path]) -> Manifest:
    """Read and parse a manifest file.

    Raises:
        ManifestNotFoundError: the file does not exist.
        ManifestParseError: the file is not JSON or has the wrong shape.
    """
    resolved = Path(path).expanduser().resolve()
    if not resolved.is_file():
        raise ManifestNotFoundError(str(resolved))
    try:
        payload = json.loads(resolved.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ManifestParseError(f"Manifest at {resolved} is not valid JSON: {exc}") from exc
    except OSError as exc:
        raise ManifestParseError(f"Manifest at {resolved} could not be read: {exc}") from exc
    return parse_manifest(payload, source=str(resolved))


def parse_manifest(payload: Any, source: str = "<manifest>") -> Manifest:
    if not isinstance(payload, dict):
        raise ManifestParseError(f"{source}: top level must be a JSON object")
    nodes = payload.get("nodes")
    if nodes is None:
        nodes = {}
    if not isinstance(nodes, dict):
        raise ManifestParseError(f"{source}: 'nodes' must be a JSON object")
    sources = payload.get("sources")
    metadata = payload.get("metadata")
    return Manifest(
        nodes=nodes,
        sources=sources if isinstance(sources, dict) else {},
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def is_model(node: Any) -> bool:
    return (
        isinstance(node, Mapping)
        and node.get("resource_type") == MODEL_RESOURCE_TYPE
        and isinstance(node.get("unique_id"), str)
    )


def select_models(manifest: Manifest) -> List[Mapping[str, Any]]:
    """Nodes with ``resource_type == "model"`` and a string ``unique_id``."""
    models = [node for node in manifest.nodes.values() if is_model(node)]
    skipped = len(manifest.nodes) - len(models)
    if skipped:
        logger.debug("Skipped %d non-model nodes", skipped)
    return models


# ----------------------------------------------------------------------
# Field extraction
# ----------------------------------------------------------------------


def pick_str(node: Any, key: str) -> Optional[str]:
    if not isinstance(node, Mapping):
        return None
    value = node.get(key)
    return value if isinstance(value, str) else None


def pick_name(node: Mapping[str, Any]) -> str:
    return pick_str(node, "name") or node["unique_id"]


def pick_path(node: Mapping[str, Any]) -> Optional[str]:
    """``original_file_path`` if non-empty, else ``path`` if non-empty."""
    for key in ("original_file_path", "path"):
        value = pick_str(node, key)
        if value:
            return value
    return None


def pick_materialized(node: Mapping[str, Any]) -> Optional[str]:
    return pick_str(node.get("config"), "materialized")


def normalize_tags(tags: Any) -> List[str]:
    """Keep string elements of a list, in order; anything else is ``[]``."""
    if not isinstance(tags, (list, tuple)):
        return []
    return [tag for tag in tags if isinstance(tag, str)]


def safe_json(value: Any) -> Optional[str]:
    """Serialize *value* to JSON; ``None`` or unserializable input gives ``None``."""
    if value is None:
        return None
    try:
        return json.dumps(value)
    except (TypeError, ValueError, RecursionError):
        return None


def column_items(node: Mapping[str, Any]) -> Iterator[Tuple[str, Mapping[str, Any]]]:
    """Yield ``(column name, definition)`` pairs; non-dict definitions become ``{}``."""
    columns = node.get("columns")
    if not isinstance(columns, Mapping):
        return
    for name, definition in columns.items():
        if not isinstance(name, str):
            continue
        yield name, definition if isinstance(definition, Mapping) else {}


def dependency_ids(node: Mapping[str, Any]) -> List[str]:
    """String entries of ``depends_on.nodes``."""
    depends_on = node.get("depends_on")
    if not isinstance(depends_on, Mapping):
        return []
    deps = depends_on.get("nodes")
    if not isinstance(deps, (list, tuple)):
        return []
    return [dep for dep in deps if isinstance(dep, str)]
