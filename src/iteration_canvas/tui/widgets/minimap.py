"""minimap widget: ascii tree of the canvas.

click a line to select that node. collapsed nodes show how many
descendants they hide; nodes with no parent on the canvas are listed
under an overflow heading.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from rich.text import Text
from textual.message import Message
from textual.widgets import Static

from ...core.models import CanvasGraph, CanvasNode, NodeKind, RootNode


@dataclass(frozen=True)
class TreeLine:
    """one rendered row. node_id is None for headings."""

    text: str
    node_id: Optional[str] = None
    kind: Optional[NodeKind] = None


def _sorted_children(graph: CanvasGraph, node_id: str) -> list[str]:
    kids = [k for k in graph.children_of(node_id) if k in graph]
    return sorted(kids, key=lambda k: getattr(graph.node(k), "iteration_index", 0) or 0)


def _label(node: CanvasNode) -> str:
    if isinstance(node, RootNode):
        return node.component_id
    if node.kind is NodeKind.PLACEHOLDER:
        return f"… {node.label}"
    return node.label


def render_tree_lines(graph: CanvasGraph, collapsed: Iterable[str] = ()) -> list[TreeLine]:
    """flatten the canvas into tree rows, roots first, then overflow.

    each node appears at most once, so cycles and second parents are safe.
    """
    collapsed = set(collapsed)
    hidden = graph.hidden_ids(collapsed)
    lines: list[TreeLine] = []
    seen: set[str] = set()

    def emit(node_id: str, prefix: str, connector: str) -> None:
        node = graph.node(node_id)
        text = f"{prefix}{connector}[{_label(node)}]"
        if node_id in collapsed:
            text += f" ▸ (+{len(graph.descendants(node_id))})"
        lines.append(TreeLine(text, node_id, node.kind))

    for root in graph.roots():
        seen.add(root.id)
        # (node id, its prefix, its connector, prefix for its children)
        work: list[tuple[str, str, str, str]] = [(root.id, "", "", "")]
        while work:
            node_id, prefix, connector, child_prefix = work.pop()
            emit(node_id, prefix, connector)
            if node_id in collapsed:
                continue
            kids = [
                k for k in _sorted_children(graph, node_id)
                if k not in seen and not isinstance(graph.node(k), RootNode)
            ]
            seen.update(kids)
            batch = []
            for i, kid in enumerate(kids):
                last = i == len(kids) - 1
                batch.append((kid, child_prefix, "└─" if last else "├─", child_prefix + ("  " if last else "│ ")))
            work.extend(reversed(batch))

    overflow = [n for n in graph.nodes if n.id not in seen and n.id not in hidden]
    if overflow:
        lines.append(TreeLine("(overflow)"))
        for node in overflow:
            emit(node.id, "", "· ")
    return lines


class NodeClicked(Message):
    """message emitted when a node is clicked in the minimap."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__()


class Minimap(Static):
    """ascii tree minimap of the canvas graph."""

    DEFAULT_CSS = """
    Minimap {
        height: 1fr;
        min-height: 5;
        padding: 1;
        border: solid $surface-lighten-2;
        overflow-y: auto;
    }
    """

    def __init__(self, graph: Optional[CanvasGraph] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.graph = graph or CanvasGraph()
        self.collapsed: set[str] = set()
        self.selected: Optional[str] = None
        self._lines: list[TreeLine] = []

    @property
    def node_ids(self) -> list[str]:
        """selectable ids in display order."""
        return [line.node_id for line in self._lines if line.node_id]

    def render(self) -> Text:
        """render the tree as ascii."""
        self._lines = render_tree_lines(self.graph, self.collapsed)
        if not self._lines:
            return Text("(empty canvas: type a component id below)", style="dim")

        text = Text()
        for line in self._lines:
            if line.node_id is None:
                style = "dim italic"
            elif line.node_id == self.selected:
                style = "bold cyan"
            elif line.kind is NodeKind.PLACEHOLDER:
                style = "italic yellow"
            elif line.kind is NodeKind.ROOT:
                style = "bold"
            else:
                style = ""
            text.append(line.text + "\n", style=style)
        return text

    def on_click(self, event) -> None:
        """handle click to select a node."""
        # border and padding take the first two rows
        row = event.y - 2
        if 0 <= row < len(self._lines) and self._lines[row].node_id:
            self.post_message(NodeClicked(self._lines[row].node_id))

    def refresh_graph(self, graph: CanvasGraph, collapsed: Iterable[str], selected: Optional[str]) -> None:
        """update with new canvas state."""
        self.graph = graph
        self.collapsed = set(collapsed)
        self.selected = selected
        self._lines = render_tree_lines(graph, self.collapsed)
        self.refresh()
