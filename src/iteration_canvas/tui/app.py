"""iteration canvas: main textual application.

terminal frontend over the same canvas services the api server uses.
"""

from __future__ import annotations

from typing import Optional

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import Footer, Header, Input, Static

from ..core.config import DEFAULT_ITERATION_COUNT, CanvasConfig
from ..core.deletion import DeleteMode
from ..core.errors import IterationCanvasError
from ..core.logger import get_logger
from ..core.models import IterationNode
from ..core.session import CanvasServices, CanvasSession
from .widgets import Minimap, NodeClicked, Spinner

logger = get_logger(__name__)


class IterationCanvasApp(App):
    """main application."""

    TITLE = "iteration canvas"

    CSS = """
    Screen {
        layout: vertical;
    }

    #main-container {
        height: 1fr;
    }

    #status {
        height: auto;
        padding: 0 1;
        color: $text-muted;
    }

    #root-input {
        margin: 0 1;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "quit"),
        Binding("j", "select_next", "next", show=False),
        Binding("k", "select_prev", "prev", show=False),
        Binding("g", "generate", "generate"),
        Binding("x", "cancel", "cancel"),
        Binding("c", "collapse", "collapse"),
        Binding("a", "arrange", "arrange"),
        Binding("f", "scan", "scan"),
        Binding("p", "toggle_polling", "poll"),
        Binding("d", "delete", "delete"),
        Binding("D", "delete_reparent", "delete (keep children)"),
        Binding("s", "save", "save"),
    ]

    def __init__(
        self,
        config: Optional[CanvasConfig] = None,
        runner: str = "agent",
        count: int = DEFAULT_ITERATION_COUNT,
        services: Optional[CanvasServices] = None,
    ):
        super().__init__()
        self.config = config or CanvasConfig.from_env()
        self.count = count
        self.services = services or CanvasServices.create(
            self.config, runner, session=CanvasSession()
        )
        self.selected: Optional[str] = None

    @property
    def session(self) -> CanvasSession:
        return self.services.session

    def compose(self) -> ComposeResult:
        yield Header()
        with Vertical(id="main-container"):
            yield Spinner(id="spinner")
            yield Minimap(self.session.graph, id="minimap")
            yield Static("", id="status")
            yield Input(placeholder="component id to place (e.g. pricing-card)", id="root-input")
        yield Footer()

    async def on_mount(self) -> None:
        self.session.load(self.config.canvas_state_path)
        self.session.on_change = self._refresh_all
        self._refresh_all()
        if self.config.autosave_interval > 0:
            self.set_interval(self.config.autosave_interval, self._auto_save)
        self.set_interval(1.0, self._refresh_status)

    async def on_unmount(self) -> None:
        # save first, then stop timers and jobs
        self._auto_save()
        await self.services.shutdown()

    # --- rendering ---

    def _refresh_all(self) -> None:
        if self.selected and self.selected not in self.session.graph:
            self.selected = None
        minimap = self.query_one("#minimap", Minimap)
        minimap.refresh_graph(self.session.graph, self.session.collapsed, self.selected)
        self._refresh_status()

    def _refresh_status(self) -> None:
        status = self.services.status()
        lifecycle = self.services.lifecycle
        parts = [
            f"{status['roots']} roots",
            f"{status['iterations']} iterations",
            "polling" if status["polling"] else "idle",
        ]
        if lifecycle.last_duration and not lifecycle.is_generating:
            parts.append(f"last generation {lifecycle.last_duration}")
        if lifecycle.last_error:
            parts.append(f"error: {lifecycle.last_error}")
        self.query_one("#status", Static).update(" · ".join(parts))

    def _auto_save(self) -> None:
        if not self.session.dirty:
            return
        try:
            self.session.save(self.config.canvas_state_path)
        except OSError as e:
            self.notify(f"auto-save failed: {e}", severity="error")

    # --- selection ---

    def on_node_clicked(self, event: NodeClicked) -> None:
        self.selected = event.node_id
        self._refresh_all()

    def _move_selection(self, step: int) -> None:
        ids = self.query_one("#minimap", Minimap).node_ids
        if not ids:
            return
        if self.selected not in ids:
            self.selected = ids[0]
        else:
            self.selected = ids[(ids.index(self.selected) + step) % len(ids)]
        self._refresh_all()

    def action_select_next(self) -> None:
        self._move_selection(1)

    def action_select_prev(self) -> None:
        self._move_selection(-1)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        """place a root for the typed component id."""
        if event.input.id != "root-input":
            return
        component_id = event.value.strip()
        if not component_id:
            return
        node = self.session.place_root(component_id)
        self.selected = node.id
        event.input.value = ""
        self._refresh_all()

    # --- actions ---

    def action_arrange(self) -> None:
        self.session.arrange()

    def action_collapse(self) -> None:
        if not self.selected:
            self.notify("no node selected", severity="warning")
            return
        self.session.toggle_collapse(self.selected)

    async def action_scan(self) -> None:
        result = await self.services.reconciler.fetch_now()
        if result.failed:
            self.notify(f"scan failed: {result.error}", severity="error")
        elif result.added:
            self.notify(f"found {len(result.added)} new iterations")
            self.session.arrange()
        else:
            self.notify("no new iterations")

    async def action_toggle_polling(self) -> None:
        reconciler = self.services.reconciler
        if reconciler.is_polling:
            reconciler.stop_polling()
            self.notify("polling stopped")
        else:
            await reconciler.start_polling()
            self.notify(f"polling every {reconciler.poll_interval:g}s")
        self._refresh_status()

    async def action_generate(self) -> None:
        if not self.selected:
            self.notify("no node selected", severity="warning")
            return
        lifecycle = self.services.lifecycle
        try:
            await lifecycle.start(self.selected, self.count)
        except IterationCanvasError as e:
            self.notify(str(e), severity="error")
            return
        await self.services.reconciler.start_polling()
        self.query_one("#spinner", Spinner).start(f"generating {self.count} iterations")
        self.run_worker(self._await_generation(), exclusive=True, group="generation")

    async def _await_generation(self) -> None:
        outcome = await self.services.lifecycle.wait()
        self.query_one("#spinner", Spinner).stop()
        if outcome is None:
            return
        if outcome.success:
            self.notify(f"generation complete in {self.services.lifecycle.last_duration}")
        else:
            self.notify(f"generation failed: {outcome.error}", severity="error")
        self._refresh_status()

    async def action_cancel(self) -> None:
        try:
            await self.services.lifecycle.cancel()
        except IterationCanvasError as e:
            self.notify(str(e), severity="warning")
            return
        self.notify("cancelling generation...")

    async def action_delete(self) -> None:
        await self._delete(DeleteMode.CASCADE)

    async def action_delete_reparent(self) -> None:
        await self._delete(DeleteMode.REPARENT)

    async def _delete(self, mode: DeleteMode) -> None:
        node = self.session.graph.node(self.selected) if self.selected else None
        if not isinstance(node, IterationNode):
            self.notify("select an iteration to delete", severity="warning")
            return
        try:
            result = await self.services.deletion.delete(node.id, mode)
        except IterationCanvasError as e:
            self.notify(f"delete failed: {e}", severity="error")
            return
        self.notify(f"deleted {len(result.deleted_ids)} iteration(s)")
        self.session.arrange()

    def action_save(self) -> None:
        try:
            self.session.save(self.config.canvas_state_path)
        except OSError as e:
            self.notify(f"save failed: {e}", severity="error")
            return
        self.notify(f"saved to {self.config.canvas_state_path}")


def run(config: Optional[CanvasConfig] = None, runner: str = "agent", count: int = DEFAULT_ITERATION_COUNT) -> None:
    """run the iteration canvas tui."""
    app = IterationCanvasApp(config=config, runner=runner, count=count)
    app.run()
