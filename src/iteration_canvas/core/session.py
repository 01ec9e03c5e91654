"""canvas session: the state one canvas owns, and the services wired to it."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Iterable, Optional

from .config import ARRANGE_GROUP_GAP, ARRANGE_START_X, ARRANGE_START_Y, CanvasConfig
from .deletion import DeletionEngine
from .errors import NodeNotFoundError
from .generation import GenerationLifecycle, ManifestRecorder
from .jobs import ClaudeJobRunner, JobRunner, MockJobRunner, SubprocessJobRunner
from .layout import DEFAULT_SETTINGS, LayoutSettings, estimate_size, layout
from .listing import DirectoryListingSource, ListingSource
from .logger import get_logger
from .manifest import ManifestStore
from .models import CanvasGraph, CanvasNode, Position, RootNode, node_to_dict
from .reconcile import Reconciler, ScanState
from .scheduler import AsyncioScheduler, Scheduler

logger = get_logger(__name__)

SESSION_VERSION = 1


class CanvasSession:
    """graph snapshot, collapsed set, known ids and the node id counter.

    every change goes through commit(), which swaps the snapshot in one step,
    marks the session dirty and calls on_change.
    """

    def __init__(
        self,
        on_change: Optional[Callable[[], None]] = None,
        settings: LayoutSettings = DEFAULT_SETTINGS,
    ):
        self.graph = CanvasGraph()
        self.collapsed: set[str] = set()
        self.known_ids: set[str] = set()
        self.counter = 0
        self.dirty = False
        self.on_change = on_change
        self.settings = settings

    def next_node_id(self, prefix: str = "node") -> str:
        self.counter += 1
        return f"{prefix}_{self.counter}"

    def commit(
        self,
        graph: CanvasGraph,
        known_add: Iterable[str] = (),
        known_remove: Iterable[str] = (),
    ) -> None:
        """replace the graph and adjust known ids. collapsed ids that no
        longer exist are dropped."""
        self.graph = graph
        self.known_ids.update(known_add)
        self.known_ids.difference_update(known_remove)
        self.collapsed = {nid for nid in self.collapsed if nid in graph}
        self._changed()

    def _changed(self) -> None:
        self.dirty = True
        if self.on_change is not None:
            self.on_change()

    # --- roots ---

    def place_root(self, component_id: str, position: Optional[Position] = None) -> RootNode:
        """put a component on the canvas. defaults to below everything else."""
        if position is None:
            position = self._next_root_position()
        node = RootNode(id=self.next_node_id(), component_id=component_id, position=position)
        self.commit(self.graph.add_nodes([node]))
        logger.info("placed root %s (%s)", node.id, component_id)
        return node

    def _next_root_position(self) -> Position:
        if not self.graph.nodes:
            return Position(ARRANGE_START_X, ARRANGE_START_Y)
        bottom = max(n.position.y + (n.size or estimate_size(n)).height for n in self.graph.nodes)
        return Position(ARRANGE_START_X, bottom + ARRANGE_GROUP_GAP)

    # --- collapse / views ---

    def toggle_collapse(self, node_id: str) -> bool:
        """flip collapse on a node. returns the new collapsed state."""
        if node_id not in self.graph:
            raise NodeNotFoundError(node_id)
        if node_id in self.collapsed:
            self.collapsed.discard(node_id)
        else:
            self.collapsed.add(node_id)
        self._changed()
        return node_id in self.collapsed

    def is_collapsed(self, node_id: str) -> bool:
        return node_id in self.collapsed

    def hidden_ids(self) -> set[str]:
        return self.graph.hidden_ids(self.collapsed)

    def visible_nodes(self) -> list[CanvasNode]:
        hidden = self.hidden_ids()
        return [n for n in self.graph.nodes if n.id not in hidden]

    def node_views(self) -> list[dict]:
        """nodes with computed flags, in canvas order."""
        hidden = self.hidden_ids()
        views = []
        for node in self.graph.nodes:
            d = node_to_dict(node)
            d.update(
                label=node.label,
                has_children=self.graph.has_children(node.id),
                is_collapsed=node.id in self.collapsed,
                hidden=node.id in hidden,
                orphan=self.graph.is_orphan(node),
            )
            views.append(d)
        return views

    # --- layout ---

    def arrange(self) -> dict[str, Position]:
        """run the tree layout and apply it."""
        graph = self.graph
        positions = layout(graph.nodes, graph.edges, self.collapsed, settings=self.settings)
        for node in graph.nodes:
            if node.id in positions and graph.is_orphan(node):
                logger.warning("%s has no parent on the canvas, placed in overflow column", node.id)
        self.commit(graph.apply_positions(positions))
        return positions

    # --- lifecycle ---

    def clear(self) -> None:
        """empty the canvas. the counter keeps counting so ids stay unique."""
        self.collapsed.clear()
        self.known_ids.clear()
        self.commit(CanvasGraph())

    def reset(self) -> None:
        """back to a fresh session (teardown)."""
        self.graph = CanvasGraph()
        self.collapsed = set()
        self.known_ids = set()
        self.counter = 0
        self.dirty = False

    # --- persistence ---

    def to_dict(self) -> dict:
        graph = self.graph.to_dict(include_placeholders=False)
        ids = {n["id"] for n in graph["nodes"]}
        return {
            "version": SESSION_VERSION,
            "counter": self.counter,
            "graph": graph,
            "collapsed": sorted(c for c in self.collapsed if c in ids),
            "known_ids": sorted(self.known_ids),
        }

    def load_dict(self, data: dict) -> None:
        self.graph = CanvasGraph.from_dict(data.get("graph", {}))
        self.collapsed = {c for c in data.get("collapsed", []) if c in self.graph}
        known = set(data.get("known_ids", []))
        self.known_ids = known | {n.id for n in self.graph.iterations()}
        self.counter = int(data.get("counter", 0))
        self.dirty = False

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        self.dirty = False

    def load(self, path: Path) -> bool:
        """load saved state. returns False (and keeps the empty session) on
        missing or unreadable files."""
        path = Path(path)
        if not path.exists():
            return False
        try:
            with open(path) as f:
                data = json.load(f)
            self.load_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("failed to load canvas state %s: %s", path, e)
            self.reset()
            return False
        logger.info("loaded canvas state from %s (%d nodes)", path, len(self.graph))
        return True


class CanvasServices:
    """a session with its reconciler, generation lifecycle and deletion engine."""

    def __init__(
        self,
        config: CanvasConfig,
        runner: JobRunner,
        source: Optional[ListingSource] = None,
        scheduler: Optional[Scheduler] = None,
        session: Optional[CanvasSession] = None,
    ):
        self.config = config
        self.session = session or CanvasSession()
        self.scheduler = scheduler or AsyncioScheduler()
        self.store = ManifestStore(config.manifest_path)
        self.source = source or DirectoryListingSource(config.iterations_dir, self.store)
        self.runner = runner

        self.reconciler = Reconciler(
            self.session,
            self.source,
            self.scheduler,
            poll_interval=config.poll_interval,
            poll_duration=config.poll_duration,
        )
        self.lifecycle = GenerationLifecycle(
            self.session,
            runner,
            self.reconciler,
            self.scheduler,
            recorder=ManifestRecorder(self.source, self.store),
            scan_delay=config.scan_delay,
            arrange_delay=config.arrange_delay,
            placeholder_arrange_delay=config.placeholder_arrange_delay,
            iterations_dir=_relative_dir(config),
        )
        remover = getattr(self.source, "remove_files", None)
        self.deletion = DeletionEngine(self.session, self.store, remove_files=remover)

    @classmethod
    def create(cls, config: CanvasConfig, runner_kind: str = "agent", **kwargs) -> CanvasServices:
        """build services with a named runner: agent, claude or mock."""
        if runner_kind == "mock":
            runner = MockJobRunner(delay=2.0, iterations_dir=config.iterations_dir)
        elif runner_kind == "claude":
            runner = ClaudeJobRunner(cwd=config.project_dir)
        elif runner_kind == "agent":
            runner = SubprocessJobRunner(
                config.agent_command,
                cwd=config.project_dir,
                temp_dir=config.temp_dir,
                models_command=config.models_command,
            )
        else:
            raise ValueError(f"unknown runner: {runner_kind}")
        return cls(config, runner, **kwargs)

    def clear(self) -> None:
        self.reconciler.stop_polling()
        self.session.clear()

    async def shutdown(self) -> None:
        """stop timers and jobs, then reset the session."""
        self.reconciler.stop_polling()
        await self.lifecycle.teardown()
        if isinstance(self.scheduler, AsyncioScheduler):
            self.scheduler.cancel_all()
        self.session.reset()

    def status(self) -> dict:
        graph = self.session.graph
        return {
            "generation": self.lifecycle.state.value,
            "polling": self.reconciler.is_polling,
            "scanning": self.reconciler.state is ScanState.SCANNING,
            "roots": len(graph.roots()),
            "iterations": len(graph.iterations()),
            "placeholders": len(graph.placeholders()),
            "collapsed": len(self.session.collapsed),
        }


def _relative_dir(config: CanvasConfig) -> str:
    try:
        return str(config.iterations_dir.relative_to(config.project_dir))
    except ValueError:
        return str(config.iterations_dir)
