"""tests for the canvas graph model."""

import dataclasses

import pytest

from iteration_canvas.core.models import (
    CanvasEdge,
    CanvasGraph,
    IterationNode,
    NodeKind,
    PlaceholderNode,
    Position,
    RootNode,
    Size,
    node_from_dict,
    node_to_dict,
)


A = "PricingCard.iteration-1.tsx"
B = "PricingCard.iteration-2.tsx"
C = "PricingCard.iteration-3.tsx"


class TestNodes:
    """tests for node variants."""

    def test_nodes_are_frozen(self):
        node = RootNode(id="node_1", component_id="pricing-card")
        with pytest.raises(dataclasses.FrozenInstanceError):
            node.component_id = "other"

    def test_kinds(self):
        assert RootNode(id="r", component_id="x").kind is NodeKind.ROOT
        assert IterationNode(id=A, parent_id="r", component_name="X", iteration_index=1).kind is NodeKind.ITERATION
        p = PlaceholderNode(id="placeholder_2", parent_id="r", component_name="x", ordinal=2, total=3)
        assert p.kind is NodeKind.PLACEHOLDER
        assert p.iteration_index == 2
        assert p.label == "generating 2/3"

    def test_root_has_no_parent(self):
        assert RootNode(id="r", component_id="x").parent_id is None

    def test_roundtrip_each_kind(self):
        nodes = [
            RootNode(id="node_1", component_id="pricing-card", position=Position(1, 2), size=Size(650, 450)),
            IterationNode(id=A, parent_id="node_1", component_name="PricingCard", iteration_index=1, mode="vibe", description="bold"),
            PlaceholderNode(id="placeholder_3", parent_id="node_1", component_name="pricing-card", ordinal=1, total=2),
        ]
        for node in nodes:
            assert node_from_dict(node_to_dict(node)) == node


class TestCanvasGraph:
    """tests for CanvasGraph snapshots."""

    def test_add_nodes_returns_new_graph(self, chain_graph):
        extra = IterationNode(id="Other.iteration-1.tsx", parent_id="node_1", component_name="Other", iteration_index=1)
        updated = chain_graph.add_nodes([extra])
        assert extra.id in updated
        assert extra.id not in chain_graph
        assert len(updated) == len(chain_graph) + 1

    def test_add_nodes_replaces_same_id(self, chain_graph):
        moved = dataclasses.replace(chain_graph.node(A), description="changed")
        updated = chain_graph.add_nodes([moved])
        assert len(updated) == len(chain_graph)
        assert updated.node(A).description == "changed"
        # order is preserved
        assert [n.id for n in updated.nodes] == [n.id for n in chain_graph.nodes]

    def test_add_edges_skips_duplicates(self, chain_graph):
        updated = chain_graph.add_edges([CanvasEdge("node_1", A), CanvasEdge("node_1", C)])
        assert len(updated.edges) == len(chain_graph.edges) + 1

    def test_remove_nodes_prunes_edges(self, chain_graph):
        updated = chain_graph.remove_nodes(lambda n: n.id == B)
        assert B not in updated
        assert all(B not in (e.source, e.target) for e in updated.edges)
        # C is kept, now an orphan
        assert C in updated
        assert updated.is_orphan(updated.node(C))

    def test_remove_edges(self, chain_graph):
        updated = chain_graph.remove_edges(lambda e: e.target == C)
        assert not updated.has_children(B)
        assert chain_graph.has_children(B)

    def test_update_node_position(self, chain_graph):
        updated = chain_graph.update_node_position(A, Position(10, 20))
        assert updated.node(A).position == Position(10, 20)
        assert chain_graph.node(A).position == Position()

    def test_children_parent_descendants(self, chain_graph):
        assert chain_graph.children_of("node_1") == [A]
        assert chain_graph.parent_of(C) == B
        assert chain_graph.parent_of("node_1") is None
        assert chain_graph.descendants(A) == [B, C]

    def test_has_children(self, chain_graph):
        assert chain_graph.has_children(A)
        assert not chain_graph.has_children(C)

    def test_hidden_ids(self, chain_graph):
        assert chain_graph.hidden_ids({A}) == {B, C}
        assert chain_graph.hidden_ids(set()) == set()

    def test_hidden_ids_cycle_safe(self):
        graph = CanvasGraph(
            nodes=(
                IterationNode(id=A, parent_id=B, component_name="P", iteration_index=1),
                IterationNode(id=B, parent_id=A, component_name="P", iteration_index=2),
            ),
            edges=(CanvasEdge(A, B), CanvasEdge(B, A)),
        )
        assert graph.hidden_ids({A}) == {A, B}

    def test_reparent(self, chain_graph):
        updated = chain_graph.reparent(C, A)
        assert updated.parent_of(C) == A
        assert updated.node(C).parent_id == A
        assert not updated.has_children(B)

    def test_reparent_ignores_roots(self, chain_graph):
        assert chain_graph.reparent("node_1", A) is chain_graph

    def test_roots_iterations_placeholders(self, chain_graph):
        ph = PlaceholderNode(id="placeholder_9", parent_id=C, component_name="pricing-card", ordinal=1, total=1)
        graph = chain_graph.add_nodes([ph])
        assert [n.id for n in graph.roots()] == ["node_1"]
        assert [n.id for n in graph.iterations()] == [A, B, C]
        assert [n.id for n in graph.placeholders()] == ["placeholder_9"]


class TestSerialization:
    """tests for graph persistence."""

    def test_to_dict_excludes_placeholders(self, chain_graph):
        ph = PlaceholderNode(id="placeholder_9", parent_id=C, component_name="pricing-card", ordinal=1, total=1)
        graph = chain_graph.add_nodes([ph]).add_edges([CanvasEdge(C, ph.id)])
        data = graph.to_dict()
        assert "placeholder_9" not in [n["id"] for n in data["nodes"]]
        assert all(e["target"] != "placeholder_9" for e in data["edges"])
        assert "placeholder_9" in [n["id"] for n in graph.to_dict(include_placeholders=True)["nodes"]]

    def test_from_dict_prunes_dangling_edges(self, chain_graph):
        data = chain_graph.to_dict()
        data["edges"].append({"source": "ghost", "target": A})
        graph = CanvasGraph.from_dict(data)
        assert len(graph.edges) == 3

    def test_edge_ids(self):
        assert CanvasEdge("a", "b").id == "edge_a_b"

    def test_save_and_load(self, chain_graph, temp_dir):
        path = temp_dir / "canvas.json"
        chain_graph.save(path)
        loaded = CanvasGraph.load(path)
        assert loaded.nodes == chain_graph.nodes
        assert loaded.edges == chain_graph.edges
