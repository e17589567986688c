"""hermit: pinned, content-addressed build environments."""

__version__ = "0.1.0"
