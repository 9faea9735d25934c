"""Core utilities shared across codex-rotation."""
