"""iteration canvas: explore ai-generated ui iterations as a tree."""

__version__ = "0.1.0"
