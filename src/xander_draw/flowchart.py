"""
Flowchart Parser and Layout Engine
==================================

Local Mermaid flowchart support used when no external converter is available.

Handles ``graph``/``flowchart`` headers with a direction, node declarations
(``A[Rect]``, ``B(Round)``, ``C{Decision}``) and edges with the ``-->``,
``==>``, ``-.->`` and ``---`` connectors, optionally labelled ``-->|text|``
or inline (``-- text -->``, ``== text ==>``, ``-. text .->``).
Anything else is ignored, so unsupported syntax degrades to a partial diagram.

Example::

    graph TD
        A[Service A] --> B[Service B]
        B --> C[Database]
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from .shapes import ArrowShape, DiamondShape, EllipseShape, RectangleShape, compile_shapes

# Layout constants
NODE_WIDTH = 180
NODE_HEIGHT = 80
SPACING_X = 250
SPACING_Y = 150
ORIGIN_X = 100
ORIGIN_Y = 100
NODE_FILL = "#a5d8ff"

_HEADER_RE = re.compile(r"^(?:graph|flowchart)\s+(TD|TB|LR|RL|BT)\b", re.IGNORECASE)

_NODE = r"(\w+)(?:\[([^\]]*)\]|\(([^)]*)\)|\{([^}]*)\})?"
# Inline labels are tried before the bare connectors so "A -- yes --> B" is
# one labelled edge. Each alternative has one label group.
_CONNECTOR = (
    r"\s*(?:"
    r"--\s*([^-|>\s][^|>]*?)\s*-->"
    r"|==\s*([^=|>\s][^|>]*?)\s*==>"
    r"|-\.\s*([^-.|>\s][^|>]*?)\s*\.->"
    r"|(?:-+->|=+=>|-\.+->|--+)\s*(?:\|([^|]*)\|)?"
    r")\s*"
)
_LABEL_GROUPS = 4

_EDGE_RE = re.compile(r"\s*" + _NODE + _CONNECTOR + _NODE)
_LINK_RE = re.compile(_CONNECTOR + _NODE)
_NODE_DECL_RE = re.compile(r"^\s*(\w+)(?:\[([^\]]*)\]|\(([^)]*)\)|\{([^}]*)\})\s*;?\s*$")

_SKIP_PREFIXES = ("%%", "style ", "classDef ", "class ", "linkStyle ", "click ")


@dataclass
class ParsedNode:
    id: str
    label: str
    shape: str = "rectangle"


@dataclass
class ParsedEdge:
    source: str
    target: str
    label: Optional[str] = None


@dataclass
class Flowchart:
    nodes: list[ParsedNode] = field(default_factory=list)
    edges: list[ParsedEdge] = field(default_factory=list)
    horizontal: bool = False


# ============================================================================
# Parsing
# ============================================================================

def _clean_label(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        text = text[1:-1].strip()
    return text or None


def _make_node(node_id: str, rect: Optional[str], round_: Optional[str],
               diamond: Optional[str]) -> ParsedNode:
    if diamond is not None:
        shape, label = "diamond", diamond
    elif round_ is not None:
        shape, label = "ellipse", round_
    else:
        shape, label = "rectangle", rect
    return ParsedNode(id=node_id, label=_clean_label(label) or node_id, shape=shape)


def _link_label(match: re.Match, first: int) -> Optional[str]:
    for group in range(first, first + _LABEL_GROUPS):
        if match.group(group) is not None:
            return _clean_label(match.group(group))
    return None


def parse_flowchart(definition: str) -> Flowchart:
    """Parse a flowchart definition into nodes, edges and orientation.

    The first declaration of a node id wins; later redeclarations are ignored.
    """
    lines = [line.strip() for line in definition.splitlines()]
    lines = [line for line in lines if line]

    chart = Flowchart()
    if not lines:
        return chart

    header = _HEADER_RE.match(lines[0])
    if header:
        chart.horizontal = header.group(1).upper() in ("LR", "RL")
        lines = lines[1:]

    nodes: dict[str, ParsedNode] = {}

    def register(node: ParsedNode) -> None:
        if node.id not in nodes:
            nodes[node.id] = node

    for line in lines:
        if line.startswith(_SKIP_PREFIXES):
            continue

        # Anchored, so a connector inside a bracket label is not an edge
        edge = _EDGE_RE.match(line)
        if edge:
            source = _make_node(*edge.group(1, 2, 3, 4))
            target = _make_node(*edge.group(9, 10, 11, 12))
            register(source)
            register(target)
            chart.edges.append(ParsedEdge(source.id, target.id, _link_label(edge, 5)))

            # Chained links: A --> B --> C
            pos = edge.end()
            link = _LINK_RE.match(line, pos)
            while link:
                source = target
                target = _make_node(*link.group(5, 6, 7, 8))
                register(target)
                chart.edges.append(ParsedEdge(source.id, target.id, _link_label(link, 1)))
                pos = link.end()
                link = _LINK_RE.match(line, pos)
            continue

        decl = _NODE_DECL_RE.match(line)
        if decl:
            register(_make_node(decl.group(1), decl.group(2), decl.group(3), decl.group(4)))

    chart.nodes = list(nodes.values())
    return chart


# ============================================================================
# Layout
# ============================================================================

def compute_levels(nodes: list[ParsedNode], edges: list[ParsedEdge]) -> dict[str, int]:
    """Longest-path depth of each node from a parentless node.

    A node revisited while still on the active path counts as level 0, which
    keeps cyclic graphs finite. Self-edges are not treated as parents. Uses an
    explicit stack so deep chains do not hit the recursion limit.
    """
    parents: dict[str, list[str]] = {node.id: [] for node in nodes}
    for edge in edges:
        if edge.source == edge.target:
            continue
        incoming = parents.setdefault(edge.target, [])
        parents.setdefault(edge.source, [])
        if edge.source not in incoming:
            incoming.append(edge.source)

    levels: dict[str, int] = {}
    for node in nodes:
        if node.id in levels:
            continue

        on_path = {node.id}
        # Frame: [node id, parent iterator, best level so far]
        stack = [[node.id, iter(parents[node.id]), 0]]
        while stack:
            frame = stack[-1]
            for parent in frame[1]:
                if parent in levels:
                    frame[2] = max(frame[2], levels[parent] + 1)
                elif parent in on_path:
                    frame[2] = max(frame[2], 1)
                else:
                    on_path.add(parent)
                    stack.append([parent, iter(parents[parent]), 0])
                    break
            else:
                stack.pop()
                on_path.discard(frame[0])
                levels[frame[0]] = frame[2]
                if stack:
                    stack[-1][2] = max(stack[-1][2], frame[2] + 1)

    return levels


def layout_flowchart(nodes: list[ParsedNode], edges: list[ParsedEdge],
                     horizontal: bool = False) -> dict[str, tuple[float, float]]:
    """Assign grid positions by level, keeping first-seen order within a level."""
    levels = compute_levels(nodes, edges)

    groups: dict[int, list[str]] = {}
    for node in nodes:
        groups.setdefault(levels.get(node.id, 0), []).append(node.id)

    positions = {}
    for level, node_ids in groups.items():
        for index, node_id in enumerate(node_ids):
            if horizontal:
                positions[node_id] = (ORIGIN_X + level * SPACING_X, ORIGIN_Y + index * SPACING_Y)
            else:
                positions[node_id] = (ORIGIN_X + index * SPACING_X, ORIGIN_Y + level * SPACING_Y)
    return positions


_NODE_MODELS = {
    "rectangle": RectangleShape,
    "ellipse": EllipseShape,
    "diamond": DiamondShape,
}


def _edge_arrow(edge: ParsedEdge, positions: dict, horizontal: bool) -> ArrowShape:
    sx, sy = positions[edge.source]
    tx, ty = positions[edge.target]

    if horizontal:
        start = (sx + NODE_WIDTH, sy + NODE_HEIGHT / 2)
        end = (tx, ty + NODE_HEIGHT / 2)
    else:
        start = (sx + NODE_WIDTH / 2, sy + NODE_HEIGHT)
        end = (tx + NODE_WIDTH / 2, ty)

    if edge.source == edge.target:
        # Self-loop: zero-length arrow at the exit point
        end = start

    return ArrowShape(
        type="arrow",
        x=start[0],
        y=start[1],
        width=end[0] - start[0],
        height=end[1] - start[1],
        label=edge.label,
        start_binding=edge.source,
        end_binding=edge.target,
    )


def flowchart_to_shapes(chart: Flowchart) -> list:
    """Build positioned shape descriptors: one per node, then one arrow per edge."""
    positions = layout_flowchart(chart.nodes, chart.edges, chart.horizontal)

    shapes = []
    for node in chart.nodes:
        x, y = positions[node.id]
        shapes.append(_NODE_MODELS[node.shape](
            type=node.shape,
            id=node.id,
            x=x,
            y=y,
            width=NODE_WIDTH,
            height=NODE_HEIGHT,
            label=node.label,
            background_color=NODE_FILL,
            fill_style="solid",
        ))

    for edge in chart.edges:
        shapes.append(_edge_arrow(edge, positions, chart.horizontal))
    return shapes


def compile_flowchart(definition: str) -> list[dict]:
    """Parse, lay out and compile a flowchart definition into elements."""
    return compile_shapes(flowchart_to_shapes(parse_flowchart(definition)))
