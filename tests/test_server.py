"""tests for the rest api."""

import time

import pytest
from fastapi.testclient import TestClient

from iteration_canvas.api import server
from iteration_canvas.api.server import AppState
from iteration_canvas.core.config import CanvasConfig
from iteration_canvas.core.errors import ModelListError
from iteration_canvas.core.jobs import MockJobRunner
from iteration_canvas.core.session import CanvasServices


def write_iteration(directory, name, source=None):
    body = "/**\n * @mode vibe\n * @description a variation\n"
    if source:
        body += f" * @source {source}\n"
    body += " */\n"
    directory.mkdir(parents=True, exist_ok=True)
    (directory / name).write_text(body)


@pytest.fixture
def runner():
    return MockJobRunner(hold=True)


@pytest.fixture
def app_state(temp_dir, scheduler, runner):
    config = CanvasConfig(project_dir=temp_dir, state_dir=temp_dir / "state")
    services = CanvasServices(config, runner, scheduler=scheduler)
    app_state = AppState(config=config, runner="mock", autosave_interval=0, services=services)
    original = server.state
    server.state = app_state
    yield app_state
    server.state = original


@pytest.fixture
def client(app_state):
    with TestClient(server.app) as client:
        yield client


def wait_for_idle(client, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get("/generate").json()
        if body["state"] == "idle":
            return body
        time.sleep(0.02)
    raise AssertionError("generation never finished")


class TestCanvasEndpoints:
    """tests for canvas endpoints."""

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_place_root(self, client):
        response = client.post("/canvas/roots", json={"component_id": "pricing-card"})
        assert response.status_code == 200
        node = response.json()
        assert node["id"] == "node_1"
        assert node["kind"] == "root"
        assert node["label"] == "pricing-card"
        assert node["position"] == {"x": 50, "y": 50}

        canvas = client.get("/canvas").json()
        assert [n["id"] for n in canvas["nodes"]] == ["node_1"]
        assert canvas["is_dirty"]

    def test_place_root_at_position(self, client):
        node = client.post("/canvas/roots", json={"component_id": "hero", "x": 10, "y": 20}).json()
        assert node["position"] == {"x": 10, "y": 20}

    def test_place_root_requires_id(self, client):
        assert client.post("/canvas/roots", json={"component_id": ""}).status_code == 422

    def test_collapse(self, client):
        client.post("/canvas/roots", json={"component_id": "hero"})
        assert client.post("/canvas/collapse/node_1").json() == {"id": "node_1", "collapsed": True}
        assert client.get("/canvas").json()["collapsed"] == ["node_1"]
        assert client.post("/canvas/collapse/node_1").json()["collapsed"] is False

    def test_collapse_missing(self, client):
        assert client.post("/canvas/collapse/node_9").status_code == 404

    def test_arrange(self, client):
        client.post("/canvas/roots", json={"component_id": "hero", "x": 700, "y": 700})
        canvas = client.post("/canvas/arrange").json()
        assert canvas["nodes"][0]["position"] == {"x": 50, "y": 50}

    def test_clear(self, client):
        client.post("/canvas/roots", json={"component_id": "hero"})
        assert client.post("/canvas/clear").json()["nodes"] == []

    def test_save(self, client, app_state):
        client.post("/canvas/roots", json={"component_id": "hero"})
        response = client.post("/canvas/save")
        assert response.status_code == 200
        assert app_state.state_path.exists()
        canvas = client.get("/canvas").json()
        assert not canvas["is_dirty"]
        assert canvas["last_saved_at"] is not None

    def test_status(self, client, app_state):
        client.post("/canvas/roots", json={"component_id": "hero"})
        body = client.get("/status").json()
        assert body["generation"] == "idle"
        assert body["roots"] == 1
        assert body["iterations_dir"] == str(app_state.config.iterations_dir)


class TestLifespan:
    """tests for startup recovery and shutdown save."""

    def test_saves_on_shutdown_and_recovers(self, app_state, temp_dir, scheduler):
        with TestClient(server.app) as client:
            client.post("/canvas/roots", json={"component_id": "hero"})
        assert app_state.state_path.exists()

        config = app_state.config
        services = CanvasServices(config, MockJobRunner(), scheduler=scheduler)
        server.state = AppState(config=config, autosave_interval=0, services=services)
        with TestClient(server.app) as client:
            nodes = client.get("/canvas").json()["nodes"]
        assert [n["component_id"] for n in nodes] == ["hero"]


class TestIterationEndpoints:
    """tests for listing, scanning and deletion."""

    def test_list_iterations(self, client, app_state):
        d = app_state.config.iterations_dir
        write_iteration(d, "Hero.iteration-2.tsx")
        write_iteration(d, "Hero.iteration-1.tsx")
        body = client.get("/iterations").json()
        assert [r["id"] for r in body] == ["Hero.iteration-1.tsx", "Hero.iteration-2.tsx"]
        assert body[0]["parent_ref"] == "hero"
        assert body[0]["mode"] == "vibe"

    def test_scan_adds_nodes(self, client, app_state):
        d = app_state.config.iterations_dir
        write_iteration(d, "Hero.iteration-1.tsx")
        write_iteration(d, "Hero.iteration-2.tsx", source="Hero.iteration-1.tsx")
        client.post("/canvas/roots", json={"component_id": "hero"})

        result = client.post("/scan").json()
        assert result["added"] == ["Hero.iteration-1.tsx", "Hero.iteration-2.tsx"]
        edges = {(e["source"], e["target"]) for e in client.get("/canvas").json()["edges"]}
        assert edges == {("node_1", "Hero.iteration-1.tsx"), ("Hero.iteration-1.tsx", "Hero.iteration-2.tsx")}
        assert not app_state.services.reconciler.is_polling

    def test_polling_start_stop(self, client):
        assert client.post("/polling/start").json() == {"polling": True}
        assert client.post("/polling/stop").json() == {"polling": False}

    def test_delete_reparent(self, client, app_state):
        d = app_state.config.iterations_dir
        write_iteration(d, "Hero.iteration-1.tsx")
        write_iteration(d, "Hero.iteration-2.tsx", source="Hero.iteration-1.tsx")
        client.post("/canvas/roots", json={"component_id": "hero"})
        client.post("/scan")

        response = client.request("DELETE", "/iterations", json={"id": "Hero.iteration-1.tsx", "mode": "reparent"})
        assert response.status_code == 200
        assert response.json() == {
            "deleted_ids": ["Hero.iteration-1.tsx"],
            "mode": "reparent",
            "removed_files": ["Hero.iteration-1.tsx"],
            "failed_files": [],
        }
        assert not (d / "Hero.iteration-1.tsx").exists()
        edges = [(e["source"], e["target"]) for e in client.get("/canvas").json()["edges"]]
        assert edges == [("node_1", "Hero.iteration-2.tsx")]

    def test_delete_cascade_default(self, client, app_state):
        d = app_state.config.iterations_dir
        write_iteration(d, "Hero.iteration-1.tsx")
        write_iteration(d, "Hero.iteration-2.tsx", source="Hero.iteration-1.tsx")
        client.post("/canvas/roots", json={"component_id": "hero"})
        client.post("/scan")

        body = client.request("DELETE", "/iterations", json={"id": "Hero.iteration-1.tsx"}).json()
        assert body["deleted_ids"] == ["Hero.iteration-1.tsx", "Hero.iteration-2.tsx"]
        assert list(d.glob("*.tsx")) == []

    def test_delete_reports_unremovable_files(self, client, app_state):
        d = app_state.config.iterations_dir
        write_iteration(d, "Hero.iteration-1.tsx")
        client.post("/canvas/roots", json={"component_id": "hero"})
        client.post("/scan")

        def remove(ids):
            raise PermissionError("read-only")

        app_state.services.deletion.remove_files = remove
        response = client.request("DELETE", "/iterations", json={"id": "Hero.iteration-1.tsx"})
        assert response.status_code == 200
        assert response.json()["failed_files"] == ["Hero.iteration-1.tsx"]
        assert [n["kind"] for n in client.get("/canvas").json()["nodes"]] == ["root"]

    def test_delete_errors(self, client):
        client.post("/canvas/roots", json={"component_id": "hero"})
        assert client.request("DELETE", "/iterations", json={"id": "node_1"}).status_code == 400
        assert client.request("DELETE", "/iterations", json={"id": "Hero.iteration-7.tsx"}).status_code == 404
        bad_mode = {"id": "Hero.iteration-7.tsx", "mode": "explode"}
        assert client.request("DELETE", "/iterations", json=bad_mode).status_code == 422


class TestGenerationEndpoints:
    """tests for starting, watching and cancelling generations."""

    def test_generate_and_cancel(self, client, runner):
        client.post("/canvas/roots", json={"component_id": "pricing-card"})

        response = client.post("/generate", json={"parent_node_id": "node_1", "count": 2})
        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "generating"
        assert len(body["placeholder_ids"]) == 2

        kinds = [n["kind"] for n in client.get("/canvas").json()["nodes"]]
        assert kinds.count("placeholder") == 2
        assert client.get("/status").json()["polling"] is True

        again = client.post("/generate", json={"parent_node_id": "node_1", "count": 1})
        assert again.status_code == 409

        assert client.delete("/generate").status_code == 200
        body = wait_for_idle(client)
        assert body["last_error"] == "generation cancelled"
        assert len(runner.cancelled) == 1
        kinds = [n["kind"] for n in client.get("/canvas").json()["nodes"]]
        assert kinds == ["root"]

    def test_generate_unknown_parent(self, client):
        response = client.post("/generate", json={"parent_node_id": "node_5", "count": 1})
        assert response.status_code == 404

    def test_generate_count_bounds(self, client):
        client.post("/canvas/roots", json={"component_id": "hero"})
        assert client.post("/generate", json={"parent_node_id": "node_1", "count": 0}).status_code == 422
        assert client.post("/generate", json={"parent_node_id": "node_1", "count": 5}).status_code == 422

    def test_cancel_when_idle(self, client):
        assert client.delete("/generate").status_code == 409

    def test_status_when_idle(self, client):
        body = client.get("/generate").json()
        assert body["state"] == "idle"
        assert body["placeholder_ids"] == []

    def test_chat_log_missing(self, client):
        assert client.get("/generate/chat-log").status_code == 404

    def test_chat_log_download(self, client, app_state):
        logs = app_state.config.temp_dir
        logs.mkdir(parents=True, exist_ok=True)
        (logs / "chat-hero-1.txt").write_text("=== Agent Output ===\nwrote Hero.iteration-1.tsx\n")
        response = client.get("/generate/chat-log")
        assert response.status_code == 200
        assert response.text.endswith("wrote Hero.iteration-1.tsx\n")
        assert response.headers["content-type"].startswith("text/plain")
        assert 'filename="chat-hero-1.txt"' in response.headers["content-disposition"]


class TestModelEndpoints:
    """tests for the model listing endpoint."""

    def test_list_models(self, client):
        body = client.get("/models").json()
        assert body["source"] == "mock"
        assert body["models"][0] == {"value": "", "label": "Auto (Default)"}

    def test_runner_without_models(self, client, app_state):
        app_state.services.runner = object()
        assert client.get("/models").status_code == 501

    def test_listing_failure(self, client, app_state):
        async def broken():
            raise ModelListError("cursor not found")

        app_state.services.runner.list_models = broken
        response = client.get("/models")
        assert response.status_code == 503
        assert "cursor not found" in response.json()["detail"]
