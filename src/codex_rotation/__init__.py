"""codex-rotation: multi-account OAuth credential rotation."""

__version__ = "0.1.0"
