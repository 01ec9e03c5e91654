"""configuration for iteration canvas.

timing and layout constants plus the per-session path bundle.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


# --- timing (seconds) ---

POLL_INTERVAL = 10.0               # between polling scans
POLL_DURATION = 120.0              # watchdog window, reset on each discovery
POST_GENERATION_SCAN_DELAY = 1.0   # grace period before scanning after a job
POST_GENERATION_ARRANGE_DELAY = 0.2
PLACEHOLDER_ARRANGE_DELAY = 0.1
DEFAULT_AUTOSAVE_INTERVAL = 30
MODELS_CACHE_TTL = 300.0           # how long a model listing stays fresh
MODELS_COMMAND_TIMEOUT = 15.0


# --- layout (px) ---

ARRANGE_START_X = 50
ARRANGE_START_Y = 50
ARRANGE_VERTICAL_GAP = 60          # between siblings
ARRANGE_GROUP_GAP = 100            # between root groups
TREE_COLUMN_WIDTH = 500            # between depth columns

ITERATION_HORIZONTAL_SPACING = 420 # provisional placement below a parent
ITERATION_VERTICAL_OFFSET = 350

DEFAULT_ITERATION_NODE_WIDTH = 400
DEFAULT_ITERATION_NODE_HEIGHT = 300
DEFAULT_COMPONENT_NODE_WIDTH = 650
DEFAULT_COMPONENT_NODE_HEIGHT = 450


# --- generation ---

ITERATION_COUNT_OPTIONS = (1, 2, 3, 4)
DEFAULT_ITERATION_COUNT = 3
DEPTH_OPTIONS = {
    "shell": "Shell only",
    "1-level": "1 level deep",
    "all": "All levels",
}
DEFAULT_DEPTH = "shell"


# --- files ---

TREE_MANIFEST_FILENAME = "tree.json"
ITERATIONS_INDEX_FILENAME = "index.ts"
CANVAS_STATE_FILENAME = "canvas-state.json"
TEMP_DIR_RELATIVE = ".playground-temp"
GENERATION_LOCKFILE_FILENAME = "generation.lock"
DEFAULT_ITERATIONS_DIR = "src/app/playground/iterations"

ENV_PREFIX = "ITERATION_CANVAS_"


def get_state_dir() -> Path:
    """get the default canvas state directory."""
    state_dir = Path.home() / ".iteration-canvas"
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


@dataclass
class CanvasConfig:
    """paths and timings for one canvas session."""

    project_dir: Path = field(default_factory=Path.cwd)
    iterations_dir: Optional[Path] = None
    state_dir: Optional[Path] = None
    poll_interval: float = POLL_INTERVAL
    poll_duration: float = POLL_DURATION
    scan_delay: float = POST_GENERATION_SCAN_DELAY
    arrange_delay: float = POST_GENERATION_ARRANGE_DELAY
    placeholder_arrange_delay: float = PLACEHOLDER_ARRANGE_DELAY
    autosave_interval: int = DEFAULT_AUTOSAVE_INTERVAL
    agent_command: tuple[str, ...] = ("cursor", "agent", "--print", "--force")
    models_command: tuple[str, ...] = ("cursor", "agent", "models")

    def __post_init__(self) -> None:
        self.project_dir = Path(self.project_dir)
        if self.iterations_dir is None:
            self.iterations_dir = self.project_dir / DEFAULT_ITERATIONS_DIR
        self.iterations_dir = Path(self.iterations_dir)
        if self.state_dir is not None:
            self.state_dir = Path(self.state_dir)

    @property
    def manifest_path(self) -> Path:
        return self.iterations_dir / TREE_MANIFEST_FILENAME

    @property
    def temp_dir(self) -> Path:
        return self.project_dir / TEMP_DIR_RELATIVE

    @property
    def canvas_state_path(self) -> Path:
        state_dir = self.state_dir or get_state_dir()
        return state_dir / CANVAS_STATE_FILENAME

    @classmethod
    def from_env(cls, **overrides) -> CanvasConfig:
        """build config from ITERATION_CANVAS_* env vars, then explicit overrides.

        recognised: PROJECT_DIR, ITERATIONS_DIR, STATE_DIR, POLL_INTERVAL,
        POLL_DURATION, AGENT_COMMAND and MODELS_COMMAND (space separated).
        """
        env = os.environ
        values: dict = {}

        if env.get(f"{ENV_PREFIX}PROJECT_DIR"):
            values["project_dir"] = Path(env[f"{ENV_PREFIX}PROJECT_DIR"])
        if env.get(f"{ENV_PREFIX}ITERATIONS_DIR"):
            values["iterations_dir"] = Path(env[f"{ENV_PREFIX}ITERATIONS_DIR"])
        if env.get(f"{ENV_PREFIX}STATE_DIR"):
            values["state_dir"] = Path(env[f"{ENV_PREFIX}STATE_DIR"])
        for key in ("POLL_INTERVAL", "POLL_DURATION"):
            raw = env.get(f"{ENV_PREFIX}{key}")
            if raw:
                try:
                    values[key.lower()] = float(raw)
                except ValueError:
                    raise ValueError(f"invalid {ENV_PREFIX}{key}: {raw!r}") from None
        if env.get(f"{ENV_PREFIX}AGENT_COMMAND"):
            values["agent_command"] = tuple(env[f"{ENV_PREFIX}AGENT_COMMAND"].split())
        if env.get(f"{ENV_PREFIX}MODELS_COMMAND"):
            values["models_command"] = tuple(env[f"{ENV_PREFIX}MODELS_COMMAND"].split())

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
