"""core primitives shared between frontends."""

from .config import CanvasConfig, get_state_dir
from .deletion import DeleteMode, DeletionEngine, DeletionResult
from .errors import (
    FileRemovalError,
    GenerationFailedError,
    GenerationInProgressError,
    GenerationNotRunningError,
    InvalidIterationIdError,
    IterationCanvasError,
    ListingFetchError,
    ManifestCycleError,
    ManifestWriteError,
    ModelListError,
    NodeNotFoundError,
)
from .generation import GenerationLifecycle, GenerationState, ManifestRecorder, format_duration
from .jobs import (
    ClaudeJobRunner,
    JobHandle,
    JobOutcome,
    JobRunner,
    MockJobRunner,
    ModelOption,
    SubprocessJobRunner,
    build_iteration_prompt,
    latest_chat_log,
    parse_models_output,
)
from .layout import LayoutSettings, layout, subtree_heights
from .listing import DirectoryListingSource, IterationRecord, ListingSource
from .manifest import ManifestStore, TreeManifest
from .models import (
    CanvasEdge,
    CanvasGraph,
    CanvasNode,
    IterationNode,
    NodeKind,
    PlaceholderNode,
    Position,
    RootNode,
    Size,
)
from .reconcile import Reconciler, ScanResult, ScanState
from .scheduler import AsyncioScheduler, ManualScheduler, Scheduler
from .session import CanvasServices, CanvasSession

__all__ = [
    # config
    "CanvasConfig",
    "get_state_dir",
    # errors
    "IterationCanvasError",
    "ManifestCycleError",
    "ManifestWriteError",
    "ListingFetchError",
    "GenerationInProgressError",
    "GenerationNotRunningError",
    "GenerationFailedError",
    "NodeNotFoundError",
    "InvalidIterationIdError",
    "FileRemovalError",
    "ModelListError",
    # model
    "NodeKind",
    "Position",
    "Size",
    "RootNode",
    "IterationNode",
    "PlaceholderNode",
    "CanvasNode",
    "CanvasEdge",
    "CanvasGraph",
    # manifest / listing
    "TreeManifest",
    "ManifestStore",
    "IterationRecord",
    "ListingSource",
    "DirectoryListingSource",
    # layout
    "LayoutSettings",
    "layout",
    "subtree_heights",
    # scheduling / reconcile
    "Scheduler",
    "AsyncioScheduler",
    "ManualScheduler",
    "Reconciler",
    "ScanResult",
    "ScanState",
    # generation
    "JobRunner",
    "JobHandle",
    "JobOutcome",
    "MockJobRunner",
    "SubprocessJobRunner",
    "ClaudeJobRunner",
    "build_iteration_prompt",
    "ModelOption",
    "parse_models_output",
    "latest_chat_log",
    "GenerationLifecycle",
    "GenerationState",
    "ManifestRecorder",
    "format_duration",
    # deletion / session
    "DeleteMode",
    "DeletionEngine",
    "DeletionResult",
    "CanvasSession",
    "CanvasServices",
]
