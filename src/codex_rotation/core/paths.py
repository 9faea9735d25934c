"""Filesystem locations used by codex-rotation."""

from pathlib import Path


CONFIG_DIR_NAME = ".opencode"
ACCOUNTS_FILE_NAME = "openai-codex-accounts.json"


def get_config_dir() -> Path:
    """Get the per-user configuration directory.

    Returns:
        Path to ~/.opencode
    """
    return Path.home() / CONFIG_DIR_NAME


def get_storage_path() -> Path:
    """Get the default accounts file path.

    Returns:
        Path to ~/.opencode/openai-codex-accounts.json
    """
    return get_config_dir() / ACCOUNTS_FILE_NAME
