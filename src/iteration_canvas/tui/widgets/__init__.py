"""textual widgets for iteration canvas."""

from .minimap import Minimap, NodeClicked, TreeLine, render_tree_lines
from .spinner import Spinner

__all__ = [
    "Minimap",
    "NodeClicked",
    "TreeLine",
    "render_tree_lines",
    "Spinner",
]
