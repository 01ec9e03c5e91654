"""iteration listing: what generated iteration files exist on disk.

scans the iterations directory for `ComponentName.iteration-N.tsx` files,
reads their metadata comment, and joins the tree manifest so every record
knows its parent.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol, runtime_checkable

from .config import ITERATIONS_INDEX_FILENAME, TREE_MANIFEST_FILENAME
from .errors import FileRemovalError, InvalidIterationIdError, ListingFetchError
from .logger import get_logger
from .manifest import ManifestStore, TreeManifest

logger = get_logger(__name__)

# ids the canvas accepts: no path separators, no traversal
ITERATION_FILENAME_PATTERN = re.compile(r"^[A-Za-z0-9]+\.iteration-\d+\.tsx$")
ITERATION_FILENAME_PARSE_PATTERN = re.compile(r"^(.+)\.iteration-(\d+)\.tsx$")

MODE_PATTERN = re.compile(r"@mode\s+(Layout|Vibe)", re.IGNORECASE)
DESCRIPTION_PATTERN = re.compile(r"@description\s+(.+)")
SOURCE_PATTERN = re.compile(r"@source\s+(\S+)")


@dataclass(frozen=True)
class IterationRecord:
    """one iteration as reported by the listing source."""

    id: str                           # filename, stable external id
    component_ref: str                # component name from the filename
    iteration_index: int
    parent_ref: Optional[str] = None  # manifest parent, or derived component id
    source_ref: Optional[str] = None  # parent iteration id, when the parent is an iteration
    mode: str = "unknown"
    description: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@runtime_checkable
class ListingSource(Protocol):
    """idempotent, side-effect free listing of iterations."""

    async def list_iterations(self) -> list[IterationRecord]:
        ...


def component_id_from_name(component_name: str) -> str:
    """PricingCard -> pricing-card."""
    kebab = re.sub(r"([A-Z])", r"-\1", component_name).lower()
    kebab = re.sub(r"^-", "", kebab)
    return re.sub(r"\s+", "-", kebab)


def component_name_from_id(component_id: str) -> str:
    """pricing-card -> PricingCard."""
    return "".join(part[:1].upper() + part[1:] for part in component_id.split("-") if part)


def parse_iteration_filename(filename: str) -> Optional[tuple[str, int]]:
    """split `Name.iteration-N.tsx` into (Name, N)."""
    match = ITERATION_FILENAME_PARSE_PATTERN.match(filename)
    if not match:
        return None
    return match.group(1), int(match.group(2))


def is_iteration_id(ref: Optional[str]) -> bool:
    return bool(ref) and ITERATION_FILENAME_PARSE_PATTERN.match(ref) is not None


def validate_iteration_id(iteration_id: str) -> str:
    if not isinstance(iteration_id, str) or not ITERATION_FILENAME_PATTERN.match(iteration_id):
        raise InvalidIterationIdError(f"invalid iteration id: {iteration_id!r}")
    return iteration_id


def parse_metadata(content: str) -> dict:
    """read the @mode / @description / @source comment tags."""
    meta = {"mode": "unknown", "description": "", "source": None}
    mode = MODE_PATTERN.search(content)
    if mode:
        meta["mode"] = mode.group(1).lower()
    desc = DESCRIPTION_PATTERN.search(content)
    if desc:
        meta["description"] = desc.group(1).strip()
    source = SOURCE_PATTERN.search(content)
    if source:
        meta["source"] = source.group(1).strip()
    return meta


class DirectoryListingSource:
    """lists iteration files in a directory, joined with the tree manifest."""

    def __init__(self, iterations_dir: Path, manifest_store: Optional[ManifestStore] = None):
        self.iterations_dir = Path(iterations_dir)
        self.manifest_store = manifest_store

    async def list_iterations(self) -> list[IterationRecord]:
        return await asyncio.to_thread(self.scan)

    def scan(self) -> list[IterationRecord]:
        """synchronous scan. raises ListingFetchError if the directory can't be read."""
        if not self.iterations_dir.exists():
            return []
        try:
            filenames = sorted(p.name for p in self.iterations_dir.iterdir() if p.is_file())
        except OSError as e:
            raise ListingFetchError(f"failed to scan {self.iterations_dir}: {e}") from e

        manifest = self.manifest_store.read() if self.manifest_store else TreeManifest()

        records: list[IterationRecord] = []
        for filename in filenames:
            if filename in (ITERATIONS_INDEX_FILENAME, TREE_MANIFEST_FILENAME):
                continue
            record = self._record_for(filename, manifest)
            if record:
                records.append(record)

        records.sort(key=lambda r: (r.component_ref, r.iteration_index))
        return records

    def _record_for(self, filename: str, manifest: TreeManifest) -> Optional[IterationRecord]:
        parsed = parse_iteration_filename(filename)
        if not parsed:
            return None
        component_name, index = parsed
        if not ITERATION_FILENAME_PATTERN.match(filename):
            logger.warning("skipping %s: not a valid iteration id", filename)
            return None

        meta = {"mode": "unknown", "description": "", "source": None}
        try:
            meta = parse_metadata((self.iterations_dir / filename).read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            # metadata is optional, the file still counts
            logger.debug("could not read metadata from %s: %s", filename, e)

        parent_ref = manifest.get(filename) or meta["source"] or component_id_from_name(component_name)
        return IterationRecord(
            id=filename,
            component_ref=component_name,
            iteration_index=index,
            parent_ref=parent_ref,
            source_ref=parent_ref if is_iteration_id(parent_ref) else None,
            mode=meta["mode"],
            description=meta["description"],
        )

    def ids(self) -> set[str]:
        return {r.id for r in self.scan()}

    def remove_files(self, iteration_ids: Iterable[str]) -> list[str]:
        """delete iteration files. invalid ids and missing files are skipped.

        every file is attempted; raises FileRemovalError afterwards if any
        could not be deleted.
        """
        removed: list[str] = []
        failed: list[str] = []
        for iteration_id in iteration_ids:
            if not ITERATION_FILENAME_PATTERN.match(iteration_id):
                logger.warning("refusing to delete file for invalid id %r", iteration_id)
                continue
            path = self.iterations_dir / iteration_id
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("could not delete iteration file %s: %s", iteration_id, e)
                failed.append(iteration_id)
                continue
            removed.append(iteration_id)
            logger.info("deleted iteration file %s", iteration_id)
        if failed:
            raise FileRemovalError(removed, failed)
        return removed
