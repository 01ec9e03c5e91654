"""tree manifest: durable iteration id -> parent id map.

the manifest is the source of truth for ancestry, independent of what is
currently on the canvas. parents are either another iteration id or a root
component id.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections import deque
from pathlib import Path
from typing import Iterator, Optional

from .errors import ManifestCycleError, ManifestWriteError
from .logger import get_logger

logger = get_logger(__name__)


class TreeManifest:
    """in-memory view of the manifest. insertion order is preserved."""

    def __init__(self, entries: Optional[dict[str, str]] = None):
        self._entries: dict[str, str] = dict(entries or {})

    def get(self, iteration_id: str) -> Optional[str]:
        """parent of an iteration, or None if it has no entry."""
        return self._entries.get(iteration_id)

    def set(self, iteration_id: str, parent: str) -> None:
        """upsert an entry, refusing any parent that would create a cycle."""
        if parent == iteration_id or iteration_id in self.ancestors(parent):
            raise ManifestCycleError(iteration_id, parent)
        self._entries[iteration_id] = parent

    def remove(self, iteration_id: str) -> bool:
        """drop an entry. children keep pointing at it until the caller moves them."""
        return self._entries.pop(iteration_id, None) is not None

    def ancestors(self, iteration_id: str) -> list[str]:
        """parent chain from nearest to farthest. stops on a revisit."""
        chain: list[str] = []
        seen = {iteration_id}
        current = self._entries.get(iteration_id)
        while current is not None and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self._entries.get(current)
        return chain

    def children(self, iteration_id: str) -> list[str]:
        """direct children in manifest order."""
        return [cid for cid, parent in self._entries.items() if parent == iteration_id]

    def walk_descendants(self, iteration_id: str) -> list[str]:
        """breadth-first descendants, excluding the id itself."""
        by_parent: dict[str, list[str]] = {}
        for cid, parent in self._entries.items():
            by_parent.setdefault(parent, []).append(cid)

        ordered: list[str] = []
        visited = {iteration_id}
        queue = deque([iteration_id])
        while queue:
            current = queue.popleft()
            for child in by_parent.get(current, []):
                if child in visited:
                    continue
                visited.add(child)
                ordered.append(child)
                queue.append(child)
        return ordered

    def descendants(self, iteration_id: str) -> set[str]:
        """every id whose parent chain reaches iteration_id."""
        return set(self.walk_descendants(iteration_id))

    def copy(self) -> TreeManifest:
        return TreeManifest(self._entries)

    def ids(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, iteration_id: object) -> bool:
        return iteration_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TreeManifest):
            return NotImplemented
        return self._entries == other._entries

    def to_dict(self) -> dict:
        """serialize as {id: {"parent": parent}}."""
        return {iid: {"parent": parent} for iid, parent in self._entries.items()}

    @classmethod
    def from_dict(cls, d: dict) -> TreeManifest:
        """deserialize, accepting {"parent": p} or bare string values.

        malformed entries are skipped.
        """
        entries: dict[str, str] = {}
        for iid, value in d.items():
            parent = value.get("parent") if isinstance(value, dict) else value
            if isinstance(iid, str) and isinstance(parent, str) and parent:
                entries[iid] = parent
            else:
                logger.warning("skipping malformed manifest entry %r: %r", iid, value)
        return cls(entries)


class ManifestStore:
    """json file backing for the manifest."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> TreeManifest:
        """load the manifest. missing or corrupt data reads as empty."""
        if not self.path.exists():
            return TreeManifest()
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("failed to read tree manifest %s: %s", self.path, e)
            return TreeManifest()
        if not isinstance(data, dict):
            logger.error("tree manifest %s is not an object, ignoring", self.path)
            return TreeManifest()
        return TreeManifest.from_dict(data)

    def write(self, manifest: TreeManifest) -> None:
        """persist the whole map atomically. raises ManifestWriteError."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".tree-", suffix=".json")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(manifest.to_dict(), f, indent=2)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise ManifestWriteError(f"failed to write tree manifest {self.path}: {e}") from e
