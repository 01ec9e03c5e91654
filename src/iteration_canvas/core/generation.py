"""generation lifecycle: placeholders in, external job, cleanup, scan.

IDLE -> GENERATING on start(). the job's own terminal outcome moves it back:
success runs complete() and schedules a scan, failure runs fail(). cancel()
only asks the runner to stop; the state changes when the job reports back.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .config import DEFAULT_DEPTH, DEFAULT_ITERATIONS_DIR
from .errors import (
    GenerationFailedError,
    GenerationInProgressError,
    GenerationNotRunningError,
    InvalidIterationIdError,
    ListingFetchError,
    ManifestCycleError,
    ManifestWriteError,
    NodeNotFoundError,
)
from .jobs import JobHandle, JobOutcome, JobRunner, build_iteration_prompt
from .layout import layout, provisional_position
from .listing import ListingSource, component_id_from_name
from .logger import get_logger
from .manifest import ManifestStore
from .models import CanvasEdge, CanvasNode, PlaceholderNode, RootNode
from .scheduler import Scheduler, TimerHandle

if TYPE_CHECKING:
    from .reconcile import Reconciler
    from .session import CanvasSession

logger = get_logger(__name__)


class GenerationState(Enum):
    IDLE = "idle"
    GENERATING = "generating"


def format_duration(seconds: float) -> str:
    """elapsed time as `Xm:SSs`."""
    total = max(int(seconds), 0)
    return f"{total // 60}m:{total % 60:02d}s"


def parent_ref_for(node: CanvasNode) -> str:
    """manifest parent value for iterations generated from node."""
    if isinstance(node, RootNode):
        return node.component_id
    return node.id


@dataclass
class GenerationInfo:
    """metadata for the running generation."""

    parent_node_id: str
    parent_ref: str
    component_id: str
    count: int
    started_at: float
    placeholder_ids: list[str] = field(default_factory=list)
    model: Optional[str] = None
    handle: Optional[JobHandle] = None
    before_ids: Optional[set[str]] = None
    cancel_requested: bool = False


class ManifestRecorder:
    """registers iterations a successful job produced in the tree manifest."""

    def __init__(self, source: ListingSource, store: ManifestStore):
        self.source = source
        self.store = store

    async def snapshot(self) -> Optional[set[str]]:
        """ids currently listed, or None if the listing can't be read."""
        try:
            return {r.id for r in await self.source.list_iterations()}
        except (ListingFetchError, OSError) as e:
            logger.error("could not snapshot iterations before generation: %s", e)
            return None

    async def record(self, before: set[str], parent_ref: str) -> list[str]:
        """write a manifest entry for every id that appeared since before.

        raises ManifestWriteError if the manifest can't be saved.
        """
        try:
            after = await self.source.list_iterations()
        except (ListingFetchError, OSError) as e:
            logger.error("could not list iterations after generation: %s", e)
            return []

        new_ids = [r.id for r in after if r.id not in before]
        if not new_ids:
            return []

        manifest = await asyncio.to_thread(self.store.read)
        recorded: list[str] = []
        for iid in new_ids:
            try:
                manifest.set(iid, parent_ref)
            except ManifestCycleError as e:
                logger.warning("not recording %s: %s", iid, e)
                continue
            recorded.append(iid)
        if recorded:
            await asyncio.to_thread(self.store.write, manifest)
            logger.info("recorded %d new iterations under %s", len(recorded), parent_ref)
        return recorded


class GenerationLifecycle:
    """runs one generation at a time against a canvas session."""

    def __init__(
        self,
        session: CanvasSession,
        runner: JobRunner,
        reconciler: Reconciler,
        scheduler: Scheduler,
        recorder: Optional[ManifestRecorder] = None,
        scan_delay: float = 1.0,
        arrange_delay: float = 0.2,
        placeholder_arrange_delay: float = 0.1,
        iterations_dir: str = DEFAULT_ITERATIONS_DIR,
    ):
        self.session = session
        self.runner = runner
        self.reconciler = reconciler
        self.scheduler = scheduler
        self.recorder = recorder
        self.scan_delay = scan_delay
        self.arrange_delay = arrange_delay
        self.placeholder_arrange_delay = placeholder_arrange_delay
        self.iterations_dir = iterations_dir

        self.state = GenerationState.IDLE
        self.info: Optional[GenerationInfo] = None
        self.last_duration: Optional[str] = None
        self.last_error: Optional[str] = None
        self._watcher: Optional[asyncio.Task] = None
        self._timers: list[TimerHandle] = []

    @property
    def is_generating(self) -> bool:
        return self.state is GenerationState.GENERATING

    def elapsed(self) -> Optional[float]:
        if self.info is None:
            return None
        return self.scheduler.now() - self.info.started_at

    # --- start ---

    async def start(
        self,
        parent_node_id: str,
        count: int,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
        depth: str = DEFAULT_DEPTH,
        custom_instructions: Optional[str] = None,
    ) -> GenerationInfo:
        """insert placeholders under the parent and start the job.

        raises GenerationInProgressError while another generation runs and
        GenerationFailedError when the runner can't start the job.
        """
        if self.is_generating:
            raise GenerationInProgressError("a generation is already running")
        if count < 1:
            raise ValueError(f"count must be at least 1, got {count}")

        parent = self.session.graph.node(parent_node_id)
        if parent is None:
            raise NodeNotFoundError(parent_node_id)
        if isinstance(parent, PlaceholderNode):
            raise InvalidIterationIdError(f"cannot generate from placeholder {parent_node_id}")

        if isinstance(parent, RootNode):
            component_id = parent.component_id
        else:
            component_id = component_id_from_name(parent.component_name)

        info = GenerationInfo(
            parent_node_id=parent.id,
            parent_ref=parent_ref_for(parent),
            component_id=component_id,
            count=count,
            started_at=self.scheduler.now(),
            model=model,
        )
        info.placeholder_ids = self._insert_placeholders(parent, component_id, count)
        self.info = info
        self.state = GenerationState.GENERATING
        self.last_error = None
        self._later(self.placeholder_arrange_delay, self.session.arrange)
        logger.info("generating %d iterations of %s from %s", count, component_id, parent.id)

        if self.recorder is not None:
            info.before_ids = await self.recorder.snapshot()

        if prompt is None:
            source_path = parent.id if isinstance(parent, RootNode) else f"{self.iterations_dir}/{parent.id}"
            prompt = build_iteration_prompt(
                component_id,
                source_path,
                count,
                depth=depth,
                custom_instructions=custom_instructions,
                iterations_dir=self.iterations_dir,
                parent_ref=None if isinstance(parent, RootNode) else parent.id,
            )

        try:
            handle = await self.runner.start(prompt, count, component_id=component_id, model=model)
        except Exception as e:
            logger.exception("failed to start generation job")
            self.last_error = str(e)
            self._cleanup()
            raise GenerationFailedError(str(e)) from e

        info.handle = handle
        self._watcher = asyncio.ensure_future(self._watch(handle))
        if info.cancel_requested:
            await self.runner.cancel(handle)
        return info

    def _insert_placeholders(self, parent: CanvasNode, component_id: str, count: int) -> list[str]:
        graph = self.session.graph
        placeholders = [
            PlaceholderNode(
                id=self.session.next_node_id("placeholder"),
                parent_id=parent.id,
                component_name=component_id,
                ordinal=i,
                total=count,
            )
            for i in range(1, count + 1)
        ]
        edges = [CanvasEdge(parent.id, p.id) for p in placeholders]
        temp = graph.add_nodes(placeholders).add_edges(edges)

        # lay out a throwaway graph with the parent expanded so the
        # placeholders land roughly where the iterations will
        collapsed = self.session.collapsed - {parent.id}
        positions = layout(temp.nodes, temp.edges, collapsed, settings=self.session.settings)
        placed = {
            p.id: positions.get(p.id) or provisional_position(parent.position, p.ordinal, count)
            for p in placeholders
        }
        self.session.commit(graph.add_nodes(placeholders).add_edges(edges).apply_positions(placed))
        return [p.id for p in placeholders]

    # --- terminal transitions ---

    async def _watch(self, handle: JobHandle) -> JobOutcome:
        try:
            outcome = await handle.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("generation job raised")
            outcome = JobOutcome(success=False, error=str(e))

        if not self.is_generating or self.info is None or self.info.handle is not handle:
            return outcome
        if outcome.success:
            self.complete(outcome)
        else:
            self.fail(outcome.error or "generation failed")
        return outcome

    def complete(self, outcome: Optional[JobOutcome] = None) -> str:
        """job succeeded: clean up, go idle, scan after the grace delay.

        returns the formatted duration.
        """
        info = self._require_running()
        duration = format_duration(self.scheduler.now() - info.started_at)
        self.last_duration = duration
        self._cleanup()
        logger.info("generation complete in %s", duration)
        self._later(self.scan_delay, lambda: self._after_success(info))
        return duration

    def fail(self, reason: str) -> str:
        """job failed: clean up and go idle without scanning. returns the reason."""
        info = self._require_running()
        self.last_duration = format_duration(self.scheduler.now() - info.started_at)
        self.last_error = reason
        self._cleanup()
        logger.error("generation failed: %s", reason)
        return reason

    async def _after_success(self, info: GenerationInfo) -> None:
        if self.recorder is not None and info.before_ids is not None:
            try:
                new_ids = await self.recorder.record(info.before_ids, info.parent_ref)
            except ManifestWriteError as e:
                logger.error("could not record new iterations: %s", e)
                self.last_error = str(e)
                new_ids = []
            if new_ids:
                self.reconciler.hint_parent(new_ids, info.parent_node_id)
        await self.reconciler.scan(extend_window=False)
        self._later(self.arrange_delay, self.session.arrange)

    def _require_running(self) -> GenerationInfo:
        if not self.is_generating or self.info is None:
            raise GenerationNotRunningError("no generation is running")
        return self.info

    def _cleanup(self) -> None:
        info = self.info
        if info is not None and info.placeholder_ids:
            ids = set(info.placeholder_ids)
            graph = self.session.graph.remove_nodes(lambda n: n.id in ids)
            self.session.commit(graph)
        self.info = None
        self.state = GenerationState.IDLE

    # --- cancel / teardown ---

    async def cancel(self) -> None:
        """ask the job to stop. cleanup happens when the job reports back."""
        info = self._require_running()
        info.cancel_requested = True
        if info.handle is not None:
            logger.info("cancelling generation")
            await self.runner.cancel(info.handle)

    async def wait(self) -> Optional[JobOutcome]:
        """wait for the running job's outcome (None if nothing was started)."""
        if self._watcher is None:
            return None
        return await asyncio.shield(self._watcher)

    async def teardown(self) -> None:
        """stop timers, cancel any job and drop its placeholders."""
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        info = self.info
        if info is not None and info.handle is not None and not info.handle.done:
            await self.runner.cancel(info.handle)
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
        self._watcher = None
        if self.is_generating:
            self._cleanup()

    def _later(self, delay: float, callback) -> None:
        self._timers = [t for t in self._timers if not t.cancelled]
        self._timers.append(self.scheduler.call_later(delay, callback))

    # --- status ---

    def to_dict(self) -> dict:
        info = self.info
        elapsed = self.elapsed()
        return {
            "state": self.state.value,
            "parent_node_id": info.parent_node_id if info else None,
            "count": info.count if info else None,
            "placeholder_ids": list(info.placeholder_ids) if info else [],
            "elapsed": format_duration(elapsed) if elapsed is not None else None,
            "last_duration": self.last_duration,
            "last_error": self.last_error,
        }
