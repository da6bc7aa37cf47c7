"""Graph export helpers for Graphviz DOT output."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

from .models import GraphEdge, GraphExport, GraphNode, Lineage

_MATERIALIZATION_SHAPES = {
    "table": "box",
    "incremental": "box3d",
    "ephemeral": "ellipse",
    "view": "component",
}


def render_dot(graph: Union[Lineage, GraphExport], focus: Optional[str] = None) -> str:
    """Render nodes and edges as a DOT digraph.

    Edges point from a dependency to its consumer so the layout reads
    left-to-right in build order. Edge endpoints without a model row
    (sources, seeds) are drawn as dashed nodes.
    """
    nodes: List[GraphNode] = graph.nodes
    edges: List[GraphEdge] = graph.edges
    known = {node.id for node in nodes}

    lines = ["digraph Lineage {"]
    lines.append("  rankdir=LR;")
    lines.append('  node [fontname="Helvetica", fontsize=10];')

    for node in nodes:
        shape = _MATERIALIZATION_SHAPES.get(node.materialization, "box")
        label = _esc(node.label)
        if node.schema:
            label += "\\n" + _esc(node.schema)
        attrs = [f'label="{label}"', f"shape={shape}"]
        if focus and node.id == focus:
            attrs.append("style=filled")
            attrs.append('fillcolor="#ffe08a"')
        lines.append(f'  "{_esc(node.id)}" [{", ".join(attrs)}];')

    external = sorted(
        {e.target for e in edges if e.target not in known}
        | {e.source for e in edges if e.source not in known}
    )
    for node_id in external:
        lines.append(f'  "{_esc(node_id)}" [label="{_esc(node_id)}", shape=note, style=dashed];')

    for edge in edges:
        lines.append(f'  "{_esc(edge.target)}" -> "{_esc(edge.source)}";')

    lines.append("}")
    return "\n".join(lines)


def export_dot(graph: Union[Lineage, GraphExport], output_file: Path, focus: Optional[str] = None) -> None:
    output_file.parent.mkdir(parents=True, exist_ok=True)
    output_file.write_text(render_dot(graph, focus=focus), encoding="utf-8")


def _esc(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')
