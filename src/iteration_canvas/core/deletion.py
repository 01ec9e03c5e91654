"""deleting iterations from the canvas and the tree manifest together.

the manifest is written first, from a copy. the canvas graph is only
swapped once the write has succeeded, so a failed write leaves both as
they were. files that can't be removed after a successful write are
reported in the result; the canvas and manifest still drop them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from .errors import FileRemovalError, InvalidIterationIdError, NodeNotFoundError
from .listing import validate_iteration_id
from .logger import get_logger
from .manifest import ManifestStore, TreeManifest
from .models import CanvasGraph, IterationNode, PlaceholderNode, RootNode

if TYPE_CHECKING:
    from .session import CanvasSession

logger = get_logger(__name__)

FileRemover = Callable[[Iterable[str]], list[str]]


class DeleteMode(str, Enum):
    CASCADE = "cascade"    # the node and all of its descendants
    REPARENT = "reparent"  # the node only; children move up to its parent


@dataclass
class DeletionResult:
    deleted_ids: list[str]
    mode: DeleteMode
    removed_files: list[str] = field(default_factory=list)
    failed_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "deleted_ids": self.deleted_ids,
            "mode": self.mode.value,
            "removed_files": self.removed_files,
            "failed_files": self.failed_files,
        }


class DeletionEngine:
    """cascade and reparent deletion over the canvas graph and manifest."""

    def __init__(
        self,
        session: CanvasSession,
        store: ManifestStore,
        remove_files: Optional[FileRemover] = None,
    ):
        self.session = session
        self.store = store
        self.remove_files = remove_files

    async def delete(self, iteration_id: str, mode: DeleteMode | str = DeleteMode.CASCADE) -> DeletionResult:
        """delete an iteration.

        raises NodeNotFoundError if neither the canvas nor the manifest knows
        the id, InvalidIterationIdError for roots, placeholders and ids that
        aren't safe filenames, and ManifestWriteError if the manifest can't
        be saved (nothing changes).
        """
        mode = DeleteMode(mode)
        node = self.session.graph.node(iteration_id)
        if isinstance(node, (RootNode, PlaceholderNode)):
            raise InvalidIterationIdError(f"{iteration_id} is a {node.kind.value} node, not an iteration")
        validate_iteration_id(iteration_id)

        manifest = await asyncio.to_thread(self.store.read)
        if node is None and iteration_id not in manifest:
            raise NodeNotFoundError(iteration_id)

        if mode is DeleteMode.CASCADE:
            return await self._cascade(iteration_id, manifest)
        return await self._reparent(iteration_id, manifest)

    async def _cascade(self, iteration_id: str, manifest: TreeManifest) -> DeletionResult:
        graph = self.session.graph
        deleted = [iteration_id] + manifest.walk_descendants(iteration_id)
        for nid in graph.descendants(iteration_id):
            if nid not in deleted and isinstance(graph.node(nid), IterationNode):
                deleted.append(nid)

        updated = manifest.copy()
        for iid in deleted:
            updated.remove(iid)
        await self._write(manifest, updated)
        removed_files, failed_files = await self._remove_files(deleted)

        # rebuild against the graph as it is after the write
        doomed = set(deleted)
        graph = self.session.graph.remove_nodes(lambda n: n.id in doomed)
        self.session.commit(graph, known_remove=doomed)
        logger.info("cascade-deleted %s (%d nodes)", iteration_id, len(deleted))
        return DeletionResult(deleted, DeleteMode.CASCADE, removed_files, failed_files)

    async def _reparent(self, iteration_id: str, manifest: TreeManifest) -> DeletionResult:
        canvas_parent = self._canvas_parent(self.session.graph, iteration_id)
        new_ref = manifest.get(iteration_id)
        if new_ref is None and canvas_parent is not None:
            parent_node = self.session.graph.node(canvas_parent)
            new_ref = parent_node.component_id if isinstance(parent_node, RootNode) else canvas_parent

        updated = manifest.copy()
        for child in manifest.children(iteration_id):
            if new_ref is None:
                # nothing to move up to; the listing falls back to the component id
                updated.remove(child)
            else:
                updated.set(child, new_ref)
        updated.remove(iteration_id)
        await self._write(manifest, updated)
        removed_files, failed_files = await self._remove_files([iteration_id])

        graph = self.session.graph
        canvas_parent = self._canvas_parent(graph, iteration_id)
        for child in graph.children_of(iteration_id):
            graph = graph.reparent(child, canvas_parent)
        graph = graph.remove_nodes(lambda n: n.id == iteration_id)
        self.session.commit(graph, known_remove={iteration_id})
        logger.info("deleted %s, children moved to %s", iteration_id, canvas_parent or new_ref)
        return DeletionResult([iteration_id], DeleteMode.REPARENT, removed_files, failed_files)

    @staticmethod
    def _canvas_parent(graph: CanvasGraph, node_id: str) -> Optional[str]:
        parent = graph.parent_of(node_id)
        if parent is not None:
            return parent
        node = graph.node(node_id)
        if node is not None and node.parent_id in graph:
            return node.parent_id
        return None

    async def _write(self, before: TreeManifest, after: TreeManifest) -> None:
        if after == before:
            return
        await asyncio.to_thread(self.store.write, after)

    async def _remove_files(self, ids: list[str]) -> tuple[list[str], list[str]]:
        """remove files for ids; returns (removed, failed) and never raises."""
        if self.remove_files is None:
            return [], []
        try:
            return await asyncio.to_thread(self.remove_files, ids), []
        except FileRemovalError as e:
            return e.removed, e.failed
        except OSError as e:
            logger.error("removing files for %s failed: %s", ", ".join(ids), e)
            return [], list(ids)
