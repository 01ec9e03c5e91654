"""fastapi server for iteration canvas.

exposes the canvas session, reconciliation and generation as REST
endpoints for a web frontend.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..core.config import (
    DEFAULT_AUTOSAVE_INTERVAL,
    DEFAULT_DEPTH,
    DEFAULT_ITERATION_COUNT,
    ITERATION_COUNT_OPTIONS,
    CanvasConfig,
)
from ..core.deletion import DeleteMode
from ..core.errors import (
    GenerationFailedError,
    GenerationInProgressError,
    GenerationNotRunningError,
    InvalidIterationIdError,
    IterationCanvasError,
    ListingFetchError,
    ManifestCycleError,
    ModelListError,
    NodeNotFoundError,
)
from ..core.jobs import latest_chat_log
from ..core.listing import IterationRecord
from ..core.logger import get_logger, setup_logging
from ..core.models import Position
from ..core.session import CanvasServices

logger = get_logger(__name__)


# --- pydantic models for api ---

class RootCreate(BaseModel):
    """request to place a component root."""
    component_id: str = Field(min_length=1)
    x: Optional[float] = None
    y: Optional[float] = None


class DeleteRequest(BaseModel):
    """request to delete an iteration."""
    id: str
    mode: DeleteMode = DeleteMode.CASCADE


class DeleteResponse(BaseModel):
    deleted_ids: list[str]
    mode: DeleteMode
    removed_files: list[str] = []
    failed_files: list[str] = []


class GenerateRequest(BaseModel):
    """request to generate iterations from a node."""
    parent_node_id: str
    count: int = Field(default=DEFAULT_ITERATION_COUNT, ge=1, le=max(ITERATION_COUNT_OPTIONS))
    prompt: Optional[str] = None
    model: Optional[str] = None
    depth: str = DEFAULT_DEPTH
    custom_instructions: Optional[str] = None


class IterationResponse(BaseModel):
    """iteration as reported by the listing source."""
    id: str
    component_ref: str
    iteration_index: int
    parent_ref: Optional[str] = None
    source_ref: Optional[str] = None
    mode: str = "unknown"
    description: str = ""

    @classmethod
    def from_record(cls, record: IterationRecord) -> "IterationResponse":
        return cls(**record.to_dict())


class NodeResponse(BaseModel):
    """canvas node with computed flags."""
    id: str
    kind: str
    label: str
    position: dict[str, float]
    size: Optional[dict[str, float]] = None
    parent_id: Optional[str] = None
    component_id: Optional[str] = None
    component_name: Optional[str] = None
    iteration_index: Optional[int] = None
    mode: Optional[str] = None
    description: Optional[str] = None
    ordinal: Optional[int] = None
    total: Optional[int] = None
    has_children: bool = False
    is_collapsed: bool = False
    hidden: bool = False
    orphan: bool = False


class EdgeResponse(BaseModel):
    id: str
    source: str
    target: str


class CanvasResponse(BaseModel):
    """canvas in api response."""
    nodes: list[NodeResponse]
    edges: list[EdgeResponse]
    collapsed: list[str]
    is_dirty: bool = False
    last_saved_at: Optional[str] = None


class GenerationResponse(BaseModel):
    state: str
    parent_node_id: Optional[str] = None
    count: Optional[int] = None
    placeholder_ids: list[str] = []
    elapsed: Optional[str] = None
    last_duration: Optional[str] = None
    last_error: Optional[str] = None


class ModelOptionResponse(BaseModel):
    value: str
    label: str


class ModelsResponse(BaseModel):
    """models the runner offers and where the list came from."""
    models: list[ModelOptionResponse]
    source: str


# --- app state ---

class AppState:
    """shared application state with auto-save and recovery."""

    def __init__(
        self,
        config: Optional[CanvasConfig] = None,
        runner: str = "agent",
        autosave_interval: int = DEFAULT_AUTOSAVE_INTERVAL,
        services: Optional[CanvasServices] = None,
    ):
        self.config = config or CanvasConfig.from_env()
        self.runner = runner
        self._services = services
        self._last_saved_at: Optional[str] = None

        self.autosave_interval = autosave_interval
        self._autosave_task: Optional[asyncio.Task] = None

    @property
    def services(self) -> CanvasServices:
        if self._services is None:
            self._services = CanvasServices.create(self.config, self.runner)
        return self._services

    @property
    def is_dirty(self) -> bool:
        return self.services.session.dirty

    def mark_clean(self) -> None:
        self.services.session.dirty = False
        self._last_saved_at = datetime.now().isoformat()

    @property
    def state_path(self) -> Path:
        return self.config.canvas_state_path

    def auto_save(self) -> bool:
        """save canvas state if dirty. returns True if saved."""
        if not self.is_dirty:
            return False
        try:
            self.services.session.save(self.state_path)
        except OSError as e:
            logger.error("auto-save to %s failed: %s", self.state_path, e)
            return False
        self.mark_clean()
        return True

    async def start_autosave(self) -> None:
        """start background auto-save task."""
        if self._autosave_task is not None or self.autosave_interval <= 0:
            return
        self._autosave_task = asyncio.create_task(self._autosave_loop())

    async def stop_autosave(self) -> None:
        """stop background auto-save task."""
        if self._autosave_task:
            self._autosave_task.cancel()
            try:
                await self._autosave_task
            except asyncio.CancelledError:
                pass
            self._autosave_task = None

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval)
            if self.auto_save():
                logger.debug("auto-saved canvas state")

    def recover(self) -> bool:
        """load the last saved canvas state. returns True if recovered."""
        return self.services.session.load(self.state_path)


state = AppState()


def _canvas_response() -> CanvasResponse:
    session = state.services.session
    return CanvasResponse(
        nodes=[NodeResponse(**view) for view in session.node_views()],
        edges=[EdgeResponse(**e.to_dict()) for e in session.graph.edges],
        collapsed=sorted(session.collapsed),
        is_dirty=session.dirty,
        last_saved_at=state._last_saved_at,
    )


def _http_error(e: IterationCanvasError) -> HTTPException:
    """map canvas errors to http statuses."""
    if isinstance(e, NodeNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (GenerationInProgressError, GenerationNotRunningError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (InvalidIterationIdError, ManifestCycleError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (ListingFetchError, ModelListError)):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, GenerationFailedError):
        return HTTPException(status_code=500, detail=f"generation failed: {e}")
    return HTTPException(status_code=500, detail=str(e))


# --- lifespan ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup: recover saved canvas and start auto-save
    state.recover()
    await state.start_autosave()
    yield
    # shutdown: save pending changes, then stop timers and jobs
    state.auto_save()
    await state.stop_autosave()
    await state.services.shutdown()


# --- app ---

app = FastAPI(
    title="iteration canvas api",
    description="REST API for exploring generated ui iterations as a tree",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- endpoints ---

@app.get("/health")
async def health():
    """health check."""
    return {"status": "ok"}


@app.get("/status")
async def status():
    """generation state, polling flag and node counts."""
    return {
        **state.services.status(),
        "is_dirty": state.is_dirty,
        "last_saved_at": state._last_saved_at,
        "autosave_interval": state.autosave_interval,
        "iterations_dir": str(state.config.iterations_dir),
    }


# --- iterations ---

@app.get("/iterations", response_model=list[IterationResponse])
async def list_iterations():
    """iterations on disk, sorted by component then index."""
    try:
        records = await state.services.source.list_iterations()
    except IterationCanvasError as e:
        raise _http_error(e) from e
    records = sorted(records, key=lambda r: (r.component_ref, r.iteration_index))
    return [IterationResponse.from_record(r) for r in records]


@app.delete("/iterations", response_model=DeleteResponse)
async def delete_iteration(req: DeleteRequest):
    """delete an iteration (cascade or reparent) and its files."""
    try:
        result = await state.services.deletion.delete(req.id, req.mode)
    except IterationCanvasError as e:
        raise _http_error(e) from e
    state.auto_save()
    return DeleteResponse(**result.to_dict())


# --- canvas ---

@app.get("/canvas", response_model=CanvasResponse)
async def get_canvas():
    return _canvas_response()


@app.post("/canvas/roots", response_model=NodeResponse)
async def place_root(req: RootCreate):
    """place a component on the canvas."""
    position = None
    if req.x is not None or req.y is not None:
        position = Position(req.x or 0.0, req.y or 0.0)
    node = state.services.session.place_root(req.component_id, position)
    view = next(v for v in state.services.session.node_views() if v["id"] == node.id)
    return NodeResponse(**view)


@app.post("/canvas/arrange", response_model=CanvasResponse)
async def arrange_canvas():
    """run the tree layout."""
    state.services.session.arrange()
    return _canvas_response()


@app.post("/canvas/collapse/{node_id}")
async def toggle_collapse(node_id: str):
    """collapse or expand a node's descendants."""
    try:
        collapsed = state.services.session.toggle_collapse(node_id)
    except NodeNotFoundError as e:
        raise _http_error(e) from e
    return {"id": node_id, "collapsed": collapsed}


@app.post("/canvas/clear", response_model=CanvasResponse)
async def clear_canvas():
    """stop polling and empty the canvas."""
    state.services.clear()
    return _canvas_response()


@app.post("/canvas/save")
async def save_canvas():
    """save canvas state now."""
    try:
        state.services.session.save(state.state_path)
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"save failed: {e}") from e
    state.mark_clean()
    return {"saved": str(state.state_path)}


# --- reconciliation ---

@app.post("/scan")
async def scan_now():
    """scan once, extending the polling window."""
    result = await state.services.reconciler.fetch_now()
    return result.to_dict()


@app.post("/polling/start")
async def start_polling():
    await state.services.reconciler.start_polling()
    return {"polling": state.services.reconciler.is_polling}


@app.post("/polling/stop")
async def stop_polling():
    state.services.reconciler.stop_polling()
    return {"polling": False}


# --- generation ---

@app.post("/generate", response_model=GenerationResponse)
async def start_generation(req: GenerateRequest):
    """start generating iterations from a node. 409 while one is running."""
    lifecycle = state.services.lifecycle
    try:
        await lifecycle.start(
            req.parent_node_id,
            req.count,
            prompt=req.prompt,
            model=req.model,
            depth=req.depth,
            custom_instructions=req.custom_instructions,
        )
    except IterationCanvasError as e:
        raise _http_error(e) from e
    # polling picks up files written while the job runs
    await state.services.reconciler.start_polling()
    return GenerationResponse(**lifecycle.to_dict())


@app.get("/generate", response_model=GenerationResponse)
async def generation_status():
    return GenerationResponse(**state.services.lifecycle.to_dict())


@app.delete("/generate", response_model=GenerationResponse)
async def cancel_generation():
    """ask the running job to stop."""
    lifecycle = state.services.lifecycle
    try:
        await lifecycle.cancel()
    except IterationCanvasError as e:
        raise _http_error(e) from e
    return GenerationResponse(**lifecycle.to_dict())


@app.get("/generate/chat-log", response_class=PlainTextResponse)
async def download_chat_log():
    """the newest agent chat log as a text download."""
    path = latest_chat_log(state.config.temp_dir)
    if path is None:
        raise HTTPException(status_code=404, detail="no chat logs available")
    try:
        content = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"could not read {path.name}: {e}") from e
    return PlainTextResponse(content, headers={"Content-Disposition": f'attachment; filename="{path.name}"'})


@app.get("/models", response_model=ModelsResponse)
async def list_models():
    """models the generation runner can use, cached by the runner."""
    list_runner_models = getattr(state.services.runner, "list_models", None)
    if list_runner_models is None:
        raise HTTPException(status_code=501, detail="this runner does not list models")
    try:
        models, source = await list_runner_models()
    except IterationCanvasError as e:
        raise _http_error(e) from e
    return ModelsResponse(models=[ModelOptionResponse(**m.to_dict()) for m in models], source=source)


# --- entrypoint ---

def main():
    """run the api server."""
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="iteration canvas api server")
    parser.add_argument("--host", default="127.0.0.1", help="host to bind")
    parser.add_argument("--port", "-p", type=int, default=8000, help="port to bind")
    parser.add_argument("--project-dir", "-d", help="project root (default: cwd)")
    parser.add_argument("--iterations-dir", help="iterations directory")
    parser.add_argument("--state-dir", help="where canvas state is saved")
    parser.add_argument("--runner", choices=["agent", "claude", "mock"], default="agent", help="generation runner")
    parser.add_argument("--mock", "-m", action="store_true", help="use mock runner")
    parser.add_argument("--poll-interval", type=float, help="seconds between scans while polling")
    parser.add_argument("--poll-duration", type=float, help="seconds without discoveries before polling stops")
    parser.add_argument("--reload", action="store_true", help="enable auto-reload")
    parser.add_argument(
        "--autosave-interval",
        type=int,
        default=DEFAULT_AUTOSAVE_INTERVAL,
        help=f"auto-save interval in seconds (default: {DEFAULT_AUTOSAVE_INTERVAL})"
    )
    parser.add_argument("--no-autosave", action="store_true", help="disable auto-save")
    parser.add_argument("--log-level", default="INFO", help="logging level")

    args = parser.parse_args()
    setup_logging(args.log_level)

    config = CanvasConfig.from_env(
        project_dir=Path(args.project_dir) if args.project_dir else None,
        iterations_dir=Path(args.iterations_dir) if args.iterations_dir else None,
        state_dir=Path(args.state_dir) if args.state_dir else None,
        poll_interval=args.poll_interval,
        poll_duration=args.poll_duration,
    )

    # configure state
    global state
    autosave = 0 if args.no_autosave else args.autosave_interval
    state = AppState(
        config=config,
        runner="mock" if args.mock else args.runner,
        autosave_interval=autosave,
    )

    uvicorn.run(
        "iteration_canvas.api.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
