"""Persistent storage for the rotation account document.

Loading is lenient: a missing, malformed or unsupported file is treated as
"no prior state" and never raised. Saving is strict: a failed write raises
``AccountStorageWriteError`` so lost rotation state is visible to the caller.
"""

import math
import threading
from pathlib import Path
from typing import Any

import orjson
from structlog import get_logger

from codex_rotation.config.settings import RotationSettings
from codex_rotation.core.paths import get_storage_path
from codex_rotation.exceptions import AccountStorageWriteError
from codex_rotation.rotation.accounts import (
    AccountDocument,
    clamp_active_index,
    deduplicate_accounts,
)
from codex_rotation.rotation.constants import STORAGE_VERSION


logger = get_logger(__name__)


def _is_supported_version(version: Any) -> bool:
    if isinstance(version, bool) or not isinstance(version, int | float):
        return False
    return math.isfinite(version) and version == STORAGE_VERSION


def normalize_document(document: AccountDocument) -> AccountDocument:
    """Return a deduplicated copy with ``active_index`` clamped into range."""
    accounts = deduplicate_accounts([account.copy() for account in document.accounts])
    return AccountDocument(
        accounts=accounts,
        active_index=clamp_active_index(document.active_index, len(accounts)),
    )


class AccountStorage:
    """JSON file storage for the account document.

    The store never keeps a reference to the documents it loads or saves.
    """

    def __init__(
        self, path: Path | None = None, *, dedupe_on_save: bool = True
    ) -> None:
        """Initialize storage with file path.

        Args:
            path: Path to the accounts file. Defaults to
                ~/.opencode/openai-codex-accounts.json
            dedupe_on_save: Deduplicate and clamp before every write
        """
        self._path = Path(path).expanduser() if path is not None else get_storage_path()
        self._dedupe_on_save = dedupe_on_save
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: RotationSettings) -> "AccountStorage":
        """Create storage at the configured path with the configured dedupe mode."""
        return cls(settings.accounts_path, dedupe_on_save=settings.dedupe_on_save)

    @property
    def path(self) -> Path:
        """Get the accounts file path."""
        return self._path

    def exists(self) -> bool:
        """Check if the accounts file exists."""
        return self._path.exists()

    def load(self) -> AccountDocument | None:
        """Load, validate and deduplicate the account document.

        Returns:
            The document, or None when there is no usable prior state
        """
        try:
            content = self._path.read_bytes()
        except FileNotFoundError:
            logger.debug("account_storage_not_found", path=str(self._path))
            return None
        except OSError as e:
            # Permissions, directories in the way, I/O errors
            logger.error(
                "account_storage_load_failed", path=str(self._path), error=str(e)
            )
            return None

        try:
            data = orjson.loads(content)
        except orjson.JSONDecodeError as e:
            logger.warning(
                "account_storage_invalid_format",
                path=str(self._path),
                reason="invalid_json",
                error=str(e),
            )
            return None

        if not isinstance(data, dict) or not isinstance(data.get("accounts"), list):
            logger.warning(
                "account_storage_invalid_format",
                path=str(self._path),
                reason="unexpected_structure",
            )
            return None

        if "version" in data and not _is_supported_version(data["version"]):
            logger.warning(
                "account_storage_unknown_version",
                path=str(self._path),
                version=data["version"],
                supported_version=STORAGE_VERSION,
            )
            return None

        document = normalize_document(AccountDocument.from_dict(data))

        logger.debug(
            "account_storage_loaded",
            path=str(self._path),
            count=len(document.accounts),
            active_index=document.active_index,
        )
        return document

    def save(self, document: AccountDocument) -> None:
        """Write the full document as pretty-printed JSON.

        The content goes to a sibling temporary file that then replaces the
        destination, so a crash never leaves a truncated accounts file.

        Args:
            document: Document to persist

        Raises:
            AccountStorageWriteError: If the document cannot be encoded or the
                file cannot be written
        """
        if self._dedupe_on_save:
            document = normalize_document(document)
        temp_path = self._path.with_name(f"{self._path.name}.tmp")

        with self._write_lock:
            try:
                content = orjson.dumps(document.to_dict(), option=orjson.OPT_INDENT_2)
                self._path.parent.mkdir(parents=True, exist_ok=True)
                temp_path.write_bytes(content)
                temp_path.replace(self._path)
            except (OSError, orjson.JSONEncodeError) as e:
                logger.error(
                    "account_storage_save_failed", path=str(self._path), error=str(e)
                )
                raise AccountStorageWriteError(
                    f"Failed to save accounts to {self._path}: {e}",
                    path=str(self._path),
                ) from e

        logger.debug(
            "account_storage_saved",
            path=str(self._path),
            count=len(document.accounts),
        )

    def clear(self) -> bool:
        """Delete the accounts file.

        Returns:
            True if the file is gone afterwards (including when it never
            existed), False if deletion failed
        """
        try:
            self._path.unlink()
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error(
                "account_storage_clear_failed", path=str(self._path), error=str(e)
            )
            return False

        logger.info("account_storage_cleared", path=str(self._path))
        return True
