"""error taxonomy for iteration canvas."""

from __future__ import annotations


class IterationCanvasError(Exception):
    """base class for all canvas errors."""


class ManifestCycleError(IterationCanvasError, ValueError):
    """setting a parent would make an iteration its own ancestor."""

    def __init__(self, iteration_id: str, parent: str):
        self.iteration_id = iteration_id
        self.parent = parent
        super().__init__(f"cycle: {iteration_id} cannot have parent {parent}")


class ManifestWriteError(IterationCanvasError):
    """the tree manifest could not be persisted."""


class ListingFetchError(IterationCanvasError):
    """the iteration listing could not be read."""


class GenerationInProgressError(IterationCanvasError):
    """a generation is already running."""


class GenerationNotRunningError(IterationCanvasError):
    """no generation is running."""


class GenerationFailedError(IterationCanvasError):
    """the external job could not be started or failed."""


class NodeNotFoundError(IterationCanvasError, KeyError):
    """no canvas node or manifest entry with this id."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(node_id)

    def __str__(self) -> str:
        return f"node not found: {self.node_id}"


class InvalidIterationIdError(IterationCanvasError, ValueError):
    """id does not name a deletable iteration."""


class FileRemovalError(IterationCanvasError, OSError):
    """some iteration files could not be deleted from disk."""

    def __init__(self, removed: list[str], failed: list[str]):
        self.removed = removed
        self.failed = failed
        super().__init__(f"could not delete: {', '.join(failed)}")


class ModelListError(IterationCanvasError):
    """the agent cli could not list its models."""
