"""reconciliation loop: bring the canvas in line with iterations on disk.

a scan fetches the listing, finds ids the canvas has not seen, resolves a
parent node for each and adds them as one batch. polling runs scans on an
interval inside a watchdog window that every discovery extends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

from .errors import ListingFetchError
from .layout import provisional_position
from .listing import IterationRecord, ListingSource, component_id_from_name
from .logger import get_logger
from .models import CanvasEdge, CanvasGraph, CanvasNode, IterationNode, RootNode
from .scheduler import Scheduler, TimerHandle

if TYPE_CHECKING:
    from .session import CanvasSession

logger = get_logger(__name__)


class ScanState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"


@dataclass
class ScanResult:
    """outcome of one scan."""

    added: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # no resolvable parent yet
    failed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "added": self.added,
            "skipped": self.skipped,
            "failed": self.failed,
            "error": self.error,
        }


def root_candidates(record: IterationRecord) -> list[str]:
    """component ids a record might belong to, best guess first."""
    kebab = component_id_from_name(record.component_ref)
    candidates = []
    if record.parent_ref and record.parent_ref != record.source_ref:
        candidates.append(record.parent_ref)
    candidates.extend([kebab, record.component_ref.lower(), f"{kebab}-expanded", f"{kebab}-minimal"])
    unique: list[str] = []
    for c in candidates:
        if c and c not in unique:
            unique.append(c)
    return unique


def match_root(record: IterationRecord, roots: list[RootNode]) -> Optional[RootNode]:
    """best root node for a record by component id.

    exact matches beat substring matches. more than one root at the best tier
    is a collision: it is logged and the first root in canvas order wins.
    """
    candidates = root_candidates(record)
    exact = [r for r in roots if r.component_id in candidates]
    if exact:
        tier = exact
    else:
        tier = [r for r in roots if any(c in r.component_id for c in candidates)]
    if not tier:
        return None
    if len(tier) > 1:
        logger.warning(
            "ambiguous parent for %s: candidates %s, using %s",
            record.id,
            [f"{r.id}({r.component_id})" for r in tier],
            tier[0].id,
        )
    return tier[0]


class Reconciler:
    """scans the listing source and adds new iterations to the canvas."""

    def __init__(
        self,
        session: CanvasSession,
        source: ListingSource,
        scheduler: Scheduler,
        poll_interval: float,
        poll_duration: float,
    ):
        self.session = session
        self.source = source
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.poll_duration = poll_duration

        self._in_flight = 0
        self._interval: Optional[TimerHandle] = None
        self._watchdog: Optional[TimerHandle] = None
        self._polling = False
        # iteration id -> canvas node id that should parent it
        self._parent_hints: dict[str, str] = {}

    @property
    def state(self) -> ScanState:
        return ScanState.SCANNING if self._in_flight else ScanState.IDLE

    @property
    def is_polling(self) -> bool:
        return self._polling

    def hint_parent(self, iteration_ids: Iterable[str], node_id: str) -> None:
        """prefer node_id as the parent of these iterations when they appear."""
        for iid in iteration_ids:
            self._parent_hints[iid] = node_id

    # --- scanning ---

    async def scan(self, extend_window: bool = False) -> ScanResult:
        """fetch the listing and add iterations not seen before.

        a failed fetch leaves the canvas untouched and does not stop polling.
        """
        self._in_flight += 1
        try:
            try:
                records = await self.source.list_iterations()
            except (ListingFetchError, OSError) as e:
                logger.error("iteration scan failed: %s", e)
                return ScanResult(failed=True, error=str(e))
            # diff against state as it is now, after the await, so overlapping
            # scans can never add the same id twice
            result = self._apply(records)
        finally:
            self._in_flight -= 1

        if result.added and extend_window and self._polling:
            self._reset_watchdog()
        return result

    def _apply(self, records: list[IterationRecord]) -> ScanResult:
        graph = self.session.graph
        known = self.session.known_ids | {n.id for n in graph.iterations()}

        new: list[IterationRecord] = []
        seen: set[str] = set()
        for record in records:
            if record.id in known or record.id in seen:
                continue
            seen.add(record.id)
            new.append(record)

        if not new:
            logger.debug("scan found no new iterations")
            return ScanResult()

        totals: dict[str, int] = {}
        for record in records:
            totals[record.component_ref] = totals.get(record.component_ref, 0) + 1

        pending: dict[str, IterationNode] = {}
        unresolved = list(new)
        # repeat while progress is made so a child listed before its parent
        # (both new in this scan) still resolves
        while unresolved:
            progress = False
            remaining: list[IterationRecord] = []
            for record in unresolved:
                parent = self._resolve_parent(record, graph, pending, {r.id for r in unresolved})
                if parent is None:
                    remaining.append(record)
                    continue
                pending[record.id] = IterationNode(
                    id=record.id,
                    parent_id=parent.id,
                    component_name=record.component_ref,
                    iteration_index=record.iteration_index,
                    position=provisional_position(
                        parent.position, record.iteration_index, totals[record.component_ref]
                    ),
                    mode=record.mode,
                    description=record.description,
                )
                progress = True
            unresolved = remaining
            if not progress:
                break

        skipped = [r.id for r in unresolved]
        for record in unresolved:
            logger.info(
                "no parent on canvas for %s (parent %s), will retry next scan",
                record.id,
                record.source_ref or record.parent_ref,
            )

        if pending:
            nodes = list(pending.values())
            updated = graph.add_nodes(nodes).add_edges(CanvasEdge(n.parent_id, n.id) for n in nodes)
            self.session.commit(updated, known_add=pending.keys())
            for iid in pending:
                self._parent_hints.pop(iid, None)
            logger.info("added %d new iteration nodes", len(pending))

        return ScanResult(added=list(pending), skipped=skipped)

    def _resolve_parent(
        self,
        record: IterationRecord,
        graph: CanvasGraph,
        pending: dict[str, IterationNode],
        unresolved_ids: set[str],
    ) -> Optional[CanvasNode]:
        hinted = self._parent_hints.get(record.id)
        if hinted and hinted in graph:
            return graph.node(hinted)

        if record.source_ref:
            source = graph.node(record.source_ref)
            if source is not None and not isinstance(source, RootNode):
                return source
            if record.source_ref in pending:
                return pending[record.source_ref]
            if record.source_ref in unresolved_ids:
                # parent is new in this scan but not placed yet
                return None

        return match_root(record, graph.roots())

    # --- polling ---

    async def start_polling(self) -> None:
        """scan now, then every poll_interval until the watchdog expires."""
        if self._polling:
            return
        self._polling = True
        self._interval = self.scheduler.call_every(self.poll_interval, self._tick)
        self._reset_watchdog()
        logger.info("polling for iterations every %ss", self.poll_interval)
        await self.scan(extend_window=True)

    def stop_polling(self) -> None:
        """clear both timers. safe to call repeatedly."""
        if self._interval is not None:
            self._interval.cancel()
            self._interval = None
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        if self._polling:
            logger.info("polling stopped")
        self._polling = False

    async def fetch_now(self) -> ScanResult:
        """single scan that extends the watch window; does not start polling."""
        return await self.scan(extend_window=True)

    async def _tick(self) -> None:
        await self.scan(extend_window=True)

    def _reset_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
        self._watchdog = self.scheduler.call_later(self.poll_duration, self._watchdog_expired)

    def _watchdog_expired(self) -> None:
        logger.info("no new iterations for %ss", self.poll_duration)
        self._watchdog = None
        self.stop_polling()
