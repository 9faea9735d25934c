"""Exception hierarchy for codex-rotation.

All exceptions use proper exception chaining with the `from` keyword.
Recoverable conditions (missing or malformed account files) are not raised;
they degrade to "no prior state" inside the storage layer.
"""

from typing import Any


class CodexRotationError(Exception):
    """Base exception for all codex-rotation errors.

    Carries a human readable message plus structured details for logging.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(CodexRotationError):
    """Raised when configuration loading or validation fails."""


class AccountStorageError(CodexRotationError):
    """Base exception for account storage failures."""


class AccountStorageWriteError(AccountStorageError):
    """Raised when the account document cannot be written to disk."""

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message, details={"path": path})
        self.path = path


__all__ = [
    "AccountStorageError",
    "AccountStorageWriteError",
    "CodexRotationError",
    "ConfigurationError",
]
