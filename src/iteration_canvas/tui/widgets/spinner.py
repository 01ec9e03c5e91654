"""animated spinner shown while a generation runs."""

from __future__ import annotations

from textual.reactive import reactive
from textual.widgets import Static

from ...core.generation import format_duration

# spinner frames for animation
SPINNER_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]
PROGRESS_BAR_WIDTH = 30


class Spinner(Static):
    """animated spinner with a label and elapsed time."""

    DEFAULT_CSS = """
    Spinner {
        display: none;
        height: auto;
        padding: 1 2;
        background: $surface;
        border: tall $primary;
        text-align: center;
    }

    Spinner.visible {
        display: block;
    }
    """

    frame_index = reactive(0)
    elapsed = reactive(0.0)
    operation_name = reactive("")

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._timer = None

    def render(self) -> str:
        if not self.operation_name:
            return ""
        frame = SPINNER_FRAMES[self.frame_index % len(SPINNER_FRAMES)]

        bar = list("─" * PROGRESS_BAR_WIDTH)
        bar[self.frame_index % PROGRESS_BAR_WIDTH] = "█"

        return f"{frame} {self.operation_name} {frame}\n\n[{''.join(bar)}]\n\n{format_duration(self.elapsed)} elapsed"

    def start(self, operation_name: str) -> None:
        """start the spinner animation."""
        self.operation_name = operation_name
        self.elapsed = 0.0
        self.frame_index = 0
        self.add_class("visible")
        if self._timer is None:
            self._timer = self.set_interval(0.1, self._tick)

    def stop(self) -> None:
        """stop the spinner animation."""
        if self._timer:
            self._timer.stop()
            self._timer = None
        self.remove_class("visible")
        self.operation_name = ""

    def _tick(self) -> None:
        self.frame_index += 1
        self.elapsed += 0.1
