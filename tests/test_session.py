"""tests for canvas session state, config and service wiring."""

import json
import logging

import pytest

from iteration_canvas.core.config import CanvasConfig
from iteration_canvas.core.errors import NodeNotFoundError
from iteration_canvas.core.jobs import ClaudeJobRunner, MockJobRunner, SubprocessJobRunner
from iteration_canvas.core.models import (
    CanvasEdge,
    IterationNode,
    PlaceholderNode,
    Position,
)
from iteration_canvas.core.session import CanvasServices, CanvasSession


A = "PricingCard.iteration-1.tsx"
B = "PricingCard.iteration-2.tsx"


def with_chain(session):
    """add A -> B under node_1."""
    nodes = [
        IterationNode(id=A, parent_id="node_1", component_name="PricingCard", iteration_index=1),
        IterationNode(id=B, parent_id=A, component_name="PricingCard", iteration_index=2),
    ]
    session.commit(
        session.graph.add_nodes(nodes).add_edges(CanvasEdge(n.parent_id, n.id) for n in nodes),
        known_add=[A, B],
    )
    return session


class TestCanvasConfig:
    """tests for CanvasConfig."""

    def test_defaults(self, temp_dir):
        config = CanvasConfig(project_dir=temp_dir, state_dir=temp_dir / "state")
        assert config.iterations_dir == temp_dir / "src/app/playground/iterations"
        assert config.manifest_path.name == "tree.json"
        assert config.temp_dir == temp_dir / ".playground-temp"
        assert config.canvas_state_path == temp_dir / "state" / "canvas-state.json"

    def test_from_env(self, temp_dir, monkeypatch):
        monkeypatch.setenv("ITERATION_CANVAS_PROJECT_DIR", str(temp_dir))
        monkeypatch.setenv("ITERATION_CANVAS_POLL_INTERVAL", "5")
        monkeypatch.setenv("ITERATION_CANVAS_AGENT_COMMAND", "claude -p")
        config = CanvasConfig.from_env(poll_duration=60.0, state_dir=None)
        assert config.project_dir == temp_dir
        assert config.poll_interval == 5.0
        assert config.poll_duration == 60.0
        assert config.agent_command == ("claude", "-p")

    def test_from_env_rejects_bad_number(self, monkeypatch):
        monkeypatch.setenv("ITERATION_CANVAS_POLL_DURATION", "soon")
        with pytest.raises(ValueError):
            CanvasConfig.from_env()


class TestCanvasSession:
    """tests for CanvasSession."""

    def test_node_ids_increase(self, session):
        assert session.next_node_id() == "node_1"
        assert session.next_node_id("placeholder") == "placeholder_2"

    def test_place_root_stacks_below(self, session):
        first = session.place_root("hero")
        second = session.place_root("footer")
        assert first.position == Position(50, 50)
        # 50 + 450 high + 100 gap
        assert second.position == Position(50, 600)

    def test_commit_marks_dirty_and_notifies(self, root_session):
        calls = []
        root_session.dirty = False
        root_session.on_change = lambda: calls.append(1)
        with_chain(root_session)
        assert root_session.dirty
        assert calls == [1]
        assert root_session.known_ids == {A, B}

    def test_toggle_collapse(self, root_session):
        with_chain(root_session)
        assert root_session.toggle_collapse(A) is True
        assert root_session.hidden_ids() == {B}
        assert [n.id for n in root_session.visible_nodes()] == ["node_1", A]
        assert root_session.toggle_collapse(A) is False
        assert root_session.hidden_ids() == set()

    def test_toggle_collapse_missing(self, session):
        with pytest.raises(NodeNotFoundError):
            session.toggle_collapse("node_42")

    def test_commit_prunes_collapsed(self, root_session):
        with_chain(root_session)
        root_session.toggle_collapse(B)
        root_session.commit(root_session.graph.remove_nodes(lambda n: n.id == B))
        assert root_session.collapsed == set()

    def test_node_views(self, root_session):
        with_chain(root_session)
        root_session.toggle_collapse(A)
        views = {v["id"]: v for v in root_session.node_views()}
        assert views["node_1"]["has_children"]
        assert views["node_1"]["label"] == "pricing-card"
        assert views[A]["is_collapsed"]
        assert views[B]["hidden"]
        assert not views[B]["orphan"]

    def test_arrange(self, root_session, caplog):
        with_chain(root_session)
        lost = IterationNode(id="Hero.iteration-1.tsx", parent_id="node_9", component_name="Hero", iteration_index=1)
        root_session.commit(root_session.graph.add_nodes([lost]))
        root_session.commit(root_session.graph.update_node_position("node_1", Position(999, 999)))

        with caplog.at_level(logging.WARNING, logger="iteration_canvas.core.session"):
            positions = root_session.arrange()
        assert root_session.graph.node("node_1").position == positions["node_1"]
        assert positions["node_1"].x == 50
        assert positions[A].x == 550
        assert positions[B].x == 1050
        assert "Hero.iteration-1.tsx has no parent" in caplog.text

    def test_clear_keeps_counter(self, root_session):
        with_chain(root_session)
        root_session.toggle_collapse(A)
        root_session.clear()
        assert len(root_session.graph) == 0
        assert root_session.collapsed == set()
        assert root_session.known_ids == set()
        assert root_session.next_node_id() == "node_2"

    def test_save_and_load(self, root_session, temp_dir):
        with_chain(root_session)
        root_session.toggle_collapse(A)
        ph = PlaceholderNode(id="placeholder_5", parent_id=B, component_name="pricing-card", ordinal=1, total=1)
        root_session.commit(root_session.graph.add_nodes([ph]).add_edges([CanvasEdge(B, ph.id)]))
        path = temp_dir / "state" / "canvas.json"
        root_session.save(path)
        assert not root_session.dirty

        data = json.loads(path.read_text())
        assert data["version"] == 1
        assert "placeholder_5" not in [n["id"] for n in data["graph"]["nodes"]]

        loaded = CanvasSession()
        assert loaded.load(path) is True
        assert [n.id for n in loaded.graph.nodes] == ["node_1", A, B]
        assert loaded.collapsed == {A}
        assert loaded.known_ids == {A, B}
        assert loaded.next_node_id() == "node_2"
        assert not loaded.dirty

    def test_known_ids_include_loaded_iterations(self, root_session, temp_dir):
        with_chain(root_session)
        data = root_session.to_dict()
        data["known_ids"] = []
        loaded = CanvasSession()
        loaded.load_dict(data)
        assert loaded.known_ids == {A, B}

    def test_load_missing(self, session, temp_dir):
        assert session.load(temp_dir / "nope.json") is False

    def test_load_corrupt_resets(self, session, temp_dir):
        path = temp_dir / "canvas.json"
        path.write_text("{broken")
        session.place_root("hero")
        assert session.load(path) is False
        assert len(session.graph) == 0
        assert session.counter == 0


class TestCanvasServices:
    """tests for CanvasServices."""

    @pytest.fixture
    def config(self, temp_dir):
        return CanvasConfig(project_dir=temp_dir, state_dir=temp_dir / "state")

    def test_create_runners(self, config):
        assert isinstance(CanvasServices.create(config, "mock").runner, MockJobRunner)
        assert isinstance(CanvasServices.create(config, "claude").runner, ClaudeJobRunner)
        agent = CanvasServices.create(config, "agent").runner
        assert isinstance(agent, SubprocessJobRunner)
        assert agent.command == config.agent_command
        with pytest.raises(ValueError):
            CanvasServices.create(config, "carrier-pigeon")

    def test_wiring(self, config):
        services = CanvasServices(config, MockJobRunner())
        assert services.store.path == config.manifest_path
        assert services.lifecycle.iterations_dir == "src/app/playground/iterations"
        assert services.reconciler.poll_interval == config.poll_interval
        assert services.deletion.remove_files is not None

    def test_status(self, config):
        services = CanvasServices(config, MockJobRunner())
        services.session.place_root("hero")
        status = services.status()
        assert status == {
            "generation": "idle",
            "polling": False,
            "scanning": False,
            "roots": 1,
            "iterations": 0,
            "placeholders": 0,
            "collapsed": 0,
        }

    @pytest.mark.asyncio
    async def test_shutdown(self, config, scheduler):
        runner = MockJobRunner(hold=True)
        services = CanvasServices(config, runner, scheduler=scheduler)
        root = services.session.place_root("hero")
        await services.lifecycle.start(root.id, 2)
        await services.reconciler.start_polling()

        await services.shutdown()
        assert not services.lifecycle.is_generating
        assert not services.reconciler.is_polling
        assert len(services.session.graph) == 0
        assert len(runner.cancelled) == 1
