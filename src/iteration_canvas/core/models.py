"""canvas graph model.

a component root, the iterations generated from it, and placeholder
stand-ins for iterations a running job has not produced yet. every mutation
returns a new CanvasGraph; nodes are frozen and never changed in place.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, ClassVar, Iterable, Optional, Union


class NodeKind(Enum):
    ROOT = "root"                # the originating component
    ITERATION = "iteration"      # a generated file on disk
    PLACEHOLDER = "placeholder"  # stand-in while a job runs, never persisted


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Position:
        if not d:
            return cls()
        return cls(x=float(d.get("x", 0.0)), y=float(d.get("y", 0.0)))


@dataclass(frozen=True)
class Size:
    width: float
    height: float

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Optional[Size]:
        if not d:
            return None
        return cls(width=float(d["width"]), height=float(d["height"]))


@dataclass(frozen=True)
class RootNode:
    """a component placed on the canvas."""

    kind: ClassVar[NodeKind] = NodeKind.ROOT

    id: str
    component_id: str
    position: Position = field(default_factory=Position)
    size: Optional[Size] = None

    @property
    def parent_id(self) -> None:
        return None

    @property
    def label(self) -> str:
        return self.component_id


@dataclass(frozen=True)
class IterationNode:
    """a generated iteration. the id is the external iteration id (filename)."""

    kind: ClassVar[NodeKind] = NodeKind.ITERATION

    id: str
    parent_id: str
    component_name: str
    iteration_index: int
    position: Position = field(default_factory=Position)
    size: Optional[Size] = None
    mode: str = "unknown"
    description: str = ""

    @property
    def label(self) -> str:
        return f"{self.component_name} #{self.iteration_index}"


@dataclass(frozen=True)
class PlaceholderNode:
    """an iteration a running job has not produced yet."""

    kind: ClassVar[NodeKind] = NodeKind.PLACEHOLDER

    id: str
    parent_id: str
    component_name: str
    ordinal: int
    total: int
    position: Position = field(default_factory=Position)
    size: Optional[Size] = None

    @property
    def iteration_index(self) -> int:
        return self.ordinal

    @property
    def label(self) -> str:
        return f"generating {self.ordinal}/{self.total}"


CanvasNode = Union[RootNode, IterationNode, PlaceholderNode]


@dataclass(frozen=True)
class CanvasEdge:
    """directed parent -> child link."""

    source: str
    target: str

    @property
    def id(self) -> str:
        return f"edge_{self.source}_{self.target}"

    def to_dict(self) -> dict:
        return {"id": self.id, "source": self.source, "target": self.target}

    @classmethod
    def from_dict(cls, d: dict) -> CanvasEdge:
        return cls(source=d["source"], target=d["target"])


def node_to_dict(node: CanvasNode) -> dict:
    """serialize any node variant, tagged with its kind."""
    d = {
        "id": node.id,
        "kind": node.kind.value,
        "position": node.position.to_dict(),
        "size": node.size.to_dict() if node.size else None,
    }
    if isinstance(node, RootNode):
        d["component_id"] = node.component_id
    elif isinstance(node, IterationNode):
        d.update(
            parent_id=node.parent_id,
            component_name=node.component_name,
            iteration_index=node.iteration_index,
            mode=node.mode,
            description=node.description,
        )
    else:
        d.update(
            parent_id=node.parent_id,
            component_name=node.component_name,
            ordinal=node.ordinal,
            total=node.total,
        )
    return d


def node_from_dict(d: dict) -> CanvasNode:
    """deserialize a node written by node_to_dict."""
    kind = NodeKind(d["kind"])
    position = Position.from_dict(d.get("position"))
    size = Size.from_dict(d.get("size"))
    if kind is NodeKind.ROOT:
        return RootNode(id=d["id"], component_id=d["component_id"], position=position, size=size)
    if kind is NodeKind.ITERATION:
        return IterationNode(
            id=d["id"],
            parent_id=d["parent_id"],
            component_name=d.get("component_name", ""),
            iteration_index=int(d.get("iteration_index", 0)),
            position=position,
            size=size,
            mode=d.get("mode", "unknown"),
            description=d.get("description", ""),
        )
    return PlaceholderNode(
        id=d["id"],
        parent_id=d["parent_id"],
        component_name=d.get("component_name", ""),
        ordinal=int(d.get("ordinal", 1)),
        total=int(d.get("total", 1)),
        position=position,
        size=size,
    )


def children_map(edges: Iterable[CanvasEdge]) -> dict[str, list[str]]:
    """source -> targets, in edge order."""
    adjacency: dict[str, list[str]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source, []).append(edge.target)
    return adjacency


def hidden_descendants(edges: Iterable[CanvasEdge], collapsed: Iterable[str]) -> set[str]:
    """ids hidden because some ancestor is collapsed.

    the collapsed nodes themselves stay visible. cycle-safe.
    """
    adjacency = children_map(edges)
    hidden: set[str] = set()
    for root in collapsed:
        queue = deque(adjacency.get(root, []))
        while queue:
            nid = queue.popleft()
            if nid in hidden:
                continue
            hidden.add(nid)
            queue.extend(adjacency.get(nid, []))
    return hidden


@dataclass(frozen=True)
class CanvasGraph:
    """immutable snapshot of canvas nodes and edges."""

    nodes: tuple[CanvasNode, ...] = ()
    edges: tuple[CanvasEdge, ...] = ()
    _index: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        object.__setattr__(self, "_index", {n.id: n for n in self.nodes})

    # --- lookup ---

    def node(self, node_id: str) -> Optional[CanvasNode]:
        return self._index.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def __len__(self) -> int:
        return len(self.nodes)

    def roots(self) -> list[RootNode]:
        return [n for n in self.nodes if isinstance(n, RootNode)]

    def iterations(self) -> list[IterationNode]:
        return [n for n in self.nodes if isinstance(n, IterationNode)]

    def placeholders(self) -> list[PlaceholderNode]:
        return [n for n in self.nodes if isinstance(n, PlaceholderNode)]

    def children_of(self, node_id: str) -> list[str]:
        return [e.target for e in self.edges if e.source == node_id]

    def parent_of(self, node_id: str) -> Optional[str]:
        for edge in self.edges:
            if edge.target == node_id:
                return edge.source
        return None

    def descendants(self, node_id: str) -> list[str]:
        """breadth-first descendants along edges, cycle-safe."""
        adjacency = children_map(self.edges)
        ordered: list[str] = []
        visited = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for child in adjacency.get(current, []):
                if child not in visited:
                    visited.add(child)
                    ordered.append(child)
                    queue.append(child)
        return ordered

    # --- derived views ---

    def has_children(self, node_id: str) -> bool:
        return any(e.source == node_id for e in self.edges)

    def hidden_ids(self, collapsed: Iterable[str]) -> set[str]:
        return hidden_descendants(self.edges, collapsed)

    def is_orphan(self, node: CanvasNode) -> bool:
        """an iteration or placeholder whose parent is not on the canvas."""
        return node.parent_id is not None and node.parent_id not in self._index

    # --- mutations (each returns a new graph) ---

    def add_nodes(self, nodes: Iterable[CanvasNode]) -> CanvasGraph:
        """append nodes; a node with an existing id replaces the old one."""
        incoming = {n.id: n for n in nodes}
        kept = [incoming.pop(n.id) if n.id in incoming else n for n in self.nodes]
        return CanvasGraph(tuple(kept) + tuple(incoming.values()), self.edges)

    def add_edges(self, edges: Iterable[CanvasEdge]) -> CanvasGraph:
        """append edges, skipping duplicate source/target pairs."""
        existing = {(e.source, e.target) for e in self.edges}
        added: list[CanvasEdge] = []
        for edge in edges:
            if (edge.source, edge.target) not in existing:
                existing.add((edge.source, edge.target))
                added.append(edge)
        return CanvasGraph(self.nodes, self.edges + tuple(added))

    def remove_nodes(self, predicate: Callable[[CanvasNode], bool]) -> CanvasGraph:
        """drop matching nodes and every edge touching them."""
        kept = tuple(n for n in self.nodes if not predicate(n))
        ids = {n.id for n in kept}
        edges = tuple(e for e in self.edges if e.source in ids and e.target in ids)
        return CanvasGraph(kept, edges)

    def remove_edges(self, predicate: Callable[[CanvasEdge], bool]) -> CanvasGraph:
        return CanvasGraph(self.nodes, tuple(e for e in self.edges if not predicate(e)))

    def update_node_position(self, node_id: str, position: Position) -> CanvasGraph:
        return self.apply_positions({node_id: position})

    def apply_positions(self, positions: dict[str, Position]) -> CanvasGraph:
        """return a graph with positions replaced for the given ids."""
        if not positions:
            return self
        nodes = tuple(
            replace(n, position=positions[n.id]) if n.id in positions else n
            for n in self.nodes
        )
        return CanvasGraph(nodes, self.edges)

    def reparent(self, node_id: str, new_parent_id: Optional[str]) -> CanvasGraph:
        """move a node under a new parent, rewriting its incoming edge."""
        node = self._index.get(node_id)
        if node is None or isinstance(node, RootNode):
            return self
        graph = self.remove_edges(lambda e: e.target == node_id)
        if new_parent_id is None:
            # keep the stale parent id; layout treats it as an orphan
            return graph
        nodes = tuple(
            replace(n, parent_id=new_parent_id) if n.id == node_id else n for n in graph.nodes
        )
        return CanvasGraph(nodes, graph.edges).add_edges([CanvasEdge(new_parent_id, node_id)])

    def prune_edges(self) -> CanvasGraph:
        """drop edges whose endpoints do not both resolve."""
        return self.remove_edges(lambda e: e.source not in self._index or e.target not in self._index)

    # --- serialization ---

    def to_dict(self, include_placeholders: bool = False) -> dict:
        nodes = [n for n in self.nodes if include_placeholders or not isinstance(n, PlaceholderNode)]
        ids = {n.id for n in nodes}
        return {
            "nodes": [node_to_dict(n) for n in nodes],
            "edges": [e.to_dict() for e in self.edges if e.source in ids and e.target in ids],
        }

    @classmethod
    def from_dict(cls, d: dict) -> CanvasGraph:
        nodes = tuple(node_from_dict(nd) for nd in d.get("nodes", []))
        edges = tuple(CanvasEdge.from_dict(ed) for ed in d.get("edges", []))
        return cls(nodes, edges).prune_edges()

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> CanvasGraph:
        with open(path) as f:
            return cls.from_dict(json.load(f))
