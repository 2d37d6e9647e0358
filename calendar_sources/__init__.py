"""Load calendar definitions from web, GitHub, sibling-extension and local sources."""

__version__ = "0.1.0"
