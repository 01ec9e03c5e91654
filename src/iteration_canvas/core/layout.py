"""tree layout for the canvas.

roots on the left, each depth one column to the right. siblings are stacked
top to bottom and a parent is centred against the span of its children. root
groups are stacked vertically; anything not reachable from a root goes into
an overflow column below the last group.

layout is a pure function: it returns positions and never touches the graph.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from .config import (
    ARRANGE_GROUP_GAP,
    ARRANGE_START_X,
    ARRANGE_START_Y,
    ARRANGE_VERTICAL_GAP,
    DEFAULT_COMPONENT_NODE_HEIGHT,
    DEFAULT_COMPONENT_NODE_WIDTH,
    DEFAULT_ITERATION_NODE_HEIGHT,
    DEFAULT_ITERATION_NODE_WIDTH,
    ITERATION_HORIZONTAL_SPACING,
    ITERATION_VERTICAL_OFFSET,
    TREE_COLUMN_WIDTH,
)
from .models import CanvasEdge, CanvasNode, Position, RootNode, Size, hidden_descendants

SizeOf = Callable[[CanvasNode], Optional[Size]]


@dataclass(frozen=True)
class LayoutSettings:
    start_x: float = ARRANGE_START_X
    start_y: float = ARRANGE_START_Y
    column_width: float = TREE_COLUMN_WIDTH
    gap: float = ARRANGE_VERTICAL_GAP
    group_gap: float = ARRANGE_GROUP_GAP


DEFAULT_SETTINGS = LayoutSettings()


def estimate_size(node: CanvasNode) -> Size:
    """fixed size estimate for nodes that have not been measured."""
    if isinstance(node, RootNode):
        return Size(DEFAULT_COMPONENT_NODE_WIDTH, DEFAULT_COMPONENT_NODE_HEIGHT)
    return Size(DEFAULT_ITERATION_NODE_WIDTH, DEFAULT_ITERATION_NODE_HEIGHT)


def measured_size(node: CanvasNode) -> Optional[Size]:
    return node.size


@dataclass
class _Plan:
    visible: list[CanvasNode]
    roots: list[str]
    tree: dict[str, list[str]]
    heights: dict[str, float]
    own: dict[str, float]


def _plan(
    nodes: Sequence[CanvasNode],
    edges: Iterable[CanvasEdge],
    collapsed: Iterable[str],
    size_of: Optional[SizeOf],
    gap: float,
) -> _Plan:
    size_of = size_of or measured_size
    edges = list(edges)
    collapsed = set(collapsed)
    by_id = {n.id: n for n in nodes}

    hidden = hidden_descendants(edges, collapsed)
    visible = [n for n in nodes if n.id not in hidden]
    visible_ids = {n.id for n in visible}
    own = {n.id: (size_of(n) or estimate_size(n)).height for n in visible}

    # child adjacency among visible nodes; roots never become children
    children: dict[str, list[str]] = {}
    for edge in edges:
        if edge.source not in visible_ids or edge.target not in visible_ids:
            continue
        if edge.source in collapsed or isinstance(by_id[edge.target], RootNode):
            continue
        kids = children.setdefault(edge.source, [])
        if edge.target not in kids:
            kids.append(edge.target)
    for kids in children.values():
        # sort is stable, so equal indexes keep edge order
        kids.sort(key=lambda nid: getattr(by_id[nid], "iteration_index", 0) or 0)

    roots = [n.id for n in visible if isinstance(n, RootNode)]

    # depth first from each root. a child already marked visiting is either a
    # cycle back-edge or a second parent: it keeps its first claim and is
    # treated as absent (a leaf) under the later parent.
    tree: dict[str, list[str]] = {}
    visiting: set[str] = set()
    for root in roots:
        visiting.add(root)
        stack = [root]
        while stack:
            nid = stack.pop()
            kids = [c for c in children.get(nid, []) if c not in visiting]
            visiting.update(kids)
            tree[nid] = kids
            stack.extend(reversed(kids))

    # subtree heights in post-order, each node computed once
    heights: dict[str, float] = {}
    for root in roots:
        post: list[tuple[str, bool]] = [(root, False)]
        while post:
            nid, expanded = post.pop()
            if not expanded:
                post.append((nid, True))
                post.extend((k, False) for k in reversed(tree[nid]))
                continue
            kids = tree[nid]
            if kids:
                span = sum(heights[k] for k in kids) + gap * (len(kids) - 1)
                heights[nid] = max(own[nid], span)
            else:
                heights[nid] = own[nid]

    return _Plan(visible=visible, roots=roots, tree=tree, heights=heights, own=own)


def subtree_heights(
    nodes: Sequence[CanvasNode],
    edges: Iterable[CanvasEdge],
    collapsed: Iterable[str] = (),
    size_of: Optional[SizeOf] = None,
    settings: LayoutSettings = DEFAULT_SETTINGS,
) -> dict[str, float]:
    """vertical span of the subtree under every node reachable from a root."""
    return _plan(nodes, edges, collapsed, size_of, settings.gap).heights


def layout(
    nodes: Sequence[CanvasNode],
    edges: Iterable[CanvasEdge],
    collapsed: Iterable[str] = (),
    size_of: Optional[SizeOf] = None,
    settings: LayoutSettings = DEFAULT_SETTINGS,
) -> dict[str, Position]:
    """compute positions for every visible node.

    args:
        nodes: canvas nodes in canvas order (orders root groups and orphans)
        edges: parent -> child edges
        collapsed: ids whose descendants are hidden
        size_of: measured size lookup; falls back to estimate_size
        settings: spacing constants

    returns:
        node id -> top-left position. hidden nodes are omitted.
    """
    plan = _plan(nodes, edges, collapsed, size_of, settings.gap)
    tree, heights = plan.tree, plan.heights

    positions: dict[str, Position] = {}
    group_y = settings.start_y
    for root in plan.roots:
        stack: list[tuple[str, int, float]] = [(root, 0, group_y)]
        while stack:
            nid, depth, y0 = stack.pop()
            kids = tree[nid]
            x = settings.start_x + depth * settings.column_width
            if not kids:
                positions[nid] = Position(x, y0)
                continue
            span = sum(heights[k] for k in kids) + settings.gap * (len(kids) - 1)
            # children start at y0 unless the parent is taller than their span
            child_y = y0 + (heights[nid] - span) / 2
            positions[nid] = Position(x, child_y + span / 2 - plan.own[nid] / 2)
            for kid in kids:
                stack.append((kid, depth + 1, child_y))
                child_y += heights[kid] + settings.gap
        group_y += heights[root] + settings.group_gap

    # overflow column for nodes no root reaches, in canvas order
    orphan_x = settings.start_x + settings.column_width
    orphan_y = group_y
    for node in plan.visible:
        if node.id in positions:
            continue
        positions[node.id] = Position(orphan_x, orphan_y)
        orphan_y += plan.own[node.id] + settings.gap

    return positions


def provisional_position(parent: Position, ordinal: int, total: int) -> Position:
    """spread new iterations below their parent until the next full layout."""
    total = max(total, 1)
    start_x = parent.x - (total - 1) * ITERATION_HORIZONTAL_SPACING / 2
    return Position(
        x=start_x + (ordinal - 1) * ITERATION_HORIZONTAL_SPACING,
        y=parent.y + ITERATION_VERTICAL_OFFSET,
    )
