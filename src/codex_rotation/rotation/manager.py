"""Rotation manager for multiple OAuth accounts.

Selects the account to use for each outbound call, fails over away from
accounts that are rate limited or cooling down, and persists every change
through ``AccountStorage``.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from structlog import get_logger

from codex_rotation.config.settings import RotationSettings
from codex_rotation.core.logging import setup_logging_from_settings
from codex_rotation.rotation.accounts import (
    AccountDocument,
    AccountRecord,
    CooldownReason,
    OAuthCredentials,
    SwitchReason,
    clamp_active_index,
    deduplicate_accounts,
    now_ms,
)
from codex_rotation.rotation.rate_limits import parse_retry_after
from codex_rotation.rotation.storage import AccountStorage


logger = get_logger(__name__)

Clock = Callable[[], int]


def _format_ms(timestamp: int | None) -> str | None:
    if not timestamp:
        return None
    try:
        return datetime.fromtimestamp(timestamp / 1000, tz=UTC).isoformat()
    except (OverflowError, OSError, ValueError):
        # Beyond what datetime can represent
        return None


class AccountManager:
    """Manages the live account list and the active index.

    Features:
    - Sticky selection: the active account is kept while it stays available
    - Failover to the next available account, wrapping around the list
    - Rate limit and cooldown windows derived from timestamps on each check
    - Serialized mutations with persistence after every change

    Mutating operations are coroutines guarded by one ``asyncio.Lock``. Read
    operations are synchronous, so on the event loop they always observe a
    fully applied mutation.
    """

    def __init__(
        self,
        fallback: OAuthCredentials | None = None,
        stored: AccountDocument | None = None,
        *,
        storage: AccountStorage | None = None,
        settings: RotationSettings | None = None,
        clock: Clock = now_ms,
    ):
        """Initialize the manager from stored state or a fallback credential.

        Args:
            fallback: Credentials from the external auth client, used to seed
                one account when nothing is stored
            stored: Previously loaded document
            storage: Where mutations are persisted (in-memory only if None)
            settings: Rotation settings (defaults from environment)
            clock: Returns the current time in epoch milliseconds
        """
        self._storage = storage
        self._settings = settings or RotationSettings()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._save_seq = 0
        self._saved_seq = 0

        self._accounts: list[AccountRecord] = []
        self._active_index = 0

        if stored is not None and stored.accounts:
            self._accounts = [account.copy() for account in stored.accounts]
            self._active_index = clamp_active_index(
                stored.active_index, len(self._accounts)
            )
            logger.info(
                "account_manager_loaded",
                count=len(self._accounts),
                active_index=self._active_index,
            )
        elif fallback is not None and fallback.refresh_token:
            now = self._clock()
            self._accounts = [
                AccountRecord(
                    refresh_token=fallback.refresh_token,
                    added_at=now,
                    last_used=now,
                    last_switch_reason=SwitchReason.INITIAL,
                )
            ]
            logger.info("account_manager_seeded_from_fallback")
        else:
            logger.info("account_manager_empty")

    @classmethod
    def from_storage(
        cls,
        storage: AccountStorage,
        fallback: OAuthCredentials | None = None,
        **kwargs: Any,
    ) -> "AccountManager":
        """Load the stored document and build a manager persisting to it."""
        return cls(fallback, storage.load(), storage=storage, **kwargs)

    @classmethod
    def from_settings(
        cls,
        settings: RotationSettings | None = None,
        fallback: OAuthCredentials | None = None,
        *,
        configure_logging: bool = True,
        clock: Clock = now_ms,
    ) -> "AccountManager":
        """Build a manager persisting to the configured accounts file.

        This is the startup path for applications: settings come from the
        environment when not given, logging is configured from them and the
        stored document is loaded through ``AccountStorage.from_settings``.

        Args:
            settings: Rotation settings (defaults from environment)
            fallback: Credentials used to seed one account if nothing is stored
            configure_logging: Apply ``log_level`` and ``log_json`` to structlog
            clock: Returns the current time in epoch milliseconds
        """
        settings = settings or RotationSettings()
        if configure_logging:
            setup_logging_from_settings(settings)
        return cls.from_storage(
            AccountStorage.from_settings(settings),
            fallback,
            settings=settings,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def active_index(self) -> int:
        return self._active_index

    def get_account_count(self) -> int:
        """Get total number of accounts."""
        return len(self._accounts)

    def get_current_account(self) -> AccountRecord | None:
        """Get a copy of the active account, or None if there are no accounts.

        Changes go through the recording methods, never through the copy.
        """
        if not self._accounts:
            return None
        return self._accounts[self._active_index].copy()

    def get_accounts(self) -> list[AccountRecord]:
        """Get copies of all accounts in storage order."""
        return [account.copy() for account in self._accounts]

    def get_min_wait_time(self) -> int:
        """Milliseconds until some account becomes available.

        Returns:
            0 if an account is available now or there are no accounts,
            otherwise the smallest remaining rate limit / cooldown window
        """
        if not self._accounts:
            return 0

        now = self._clock()
        if any(account.is_available(now) for account in self._accounts):
            return 0
        return min(account.wait_time(now) for account in self._accounts)

    def get_status(self) -> dict[str, Any]:
        """Get manager status for monitoring.

        Returns:
            Status dictionary with counts and account details (no tokens)
        """
        now = self._clock()
        return {
            "totalAccounts": len(self._accounts),
            "availableAccounts": sum(
                1 for account in self._accounts if account.is_available(now)
            ),
            "activeIndex": self._active_index,
            "minWaitTimeMs": self.get_min_wait_time(),
            "accounts": [
                {
                    "index": index,
                    "accountId": account.account_id,
                    "active": index == self._active_index,
                    "available": account.is_available(now),
                    "waitTimeMs": account.wait_time(now),
                    "lastUsed": _format_ms(account.last_used),
                    "lastSwitchReason": account.last_switch_reason,
                    "rateLimitedUntil": _format_ms(account.rate_limit_reset_time),
                    "coolingDownUntil": _format_ms(account.cooling_down_until),
                    "cooldownReason": account.cooldown_reason,
                }
                for index, account in enumerate(self._accounts)
            ],
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def get_current_or_next(self) -> AccountRecord | None:
        """Get the active account, failing over if it is unavailable.

        When no account is available the current one is returned unchanged;
        callers consult ``get_min_wait_time()`` before retrying.

        Returns:
            A copy of the account to use, or None if there are no accounts
        """
        async with self._lock:
            if not self._accounts:
                return None

            now = self._clock()
            current = self._accounts[self._active_index]
            if current.is_available(now):
                return current.copy()

            index = self._next_available_index(now)
            if index is None:
                logger.warning(
                    "all_accounts_unavailable",
                    total=len(self._accounts),
                    min_wait_ms=self.get_min_wait_time(),
                )
                return current.copy()

            reason = (
                SwitchReason.RATE_LIMIT
                if current.is_rate_limited(now)
                else SwitchReason.ROTATION
            )
            selected = self._accounts[index]
            selected.last_used = now
            selected.last_switch_reason = reason
            logger.info(
                "account_switched",
                from_index=self._active_index,
                to_index=index,
                account_id=selected.account_id,
                reason=str(reason),
            )
            self._active_index = index
            result = selected.copy()
            snapshot = self._snapshot()

        await self._persist(*snapshot)
        return result

    async def record_rate_limit(
        self,
        account: AccountRecord,
        reset_time: int | None = None,
        *,
        headers: dict[str, str] | None = None,
    ) -> bool:
        """Mark an account as rate limited until ``reset_time``.

        Args:
            account: Account that received the rate limit
            reset_time: Unix timestamp (ms) when the limit resets. Parsed from
                ``headers`` if omitted, else now + default_rate_limit_ms.
            headers: Optional response headers to parse retry-after

        Returns:
            True if the account was found and updated
        """
        async with self._lock:
            index = self._find_index(account.identity_key)
            if index is None:
                logger.warning(
                    "unknown_account_rate_limited", account_id=account.account_id
                )
                return False

            now = self._clock()
            if reset_time is None and headers:
                reset_time = parse_retry_after(headers, now)
            if reset_time is None:
                reset_time = now + self._settings.default_rate_limit_ms

            target = self._accounts[index]
            target.rate_limit_reset_time = reset_time
            logger.info(
                "account_rate_limited",
                index=index,
                account_id=target.account_id,
                reset_time=_format_ms(reset_time),
            )
            snapshot = self._snapshot()

        await self._persist(*snapshot)
        return True

    async def record_cooldown(
        self,
        account: AccountRecord,
        reason: CooldownReason,
        until: int | None = None,
    ) -> bool:
        """Put an account into cooldown after an auth failure or network error.

        Args:
            account: Account to cool down
            reason: Why the account is cooling down
            until: Unix timestamp (ms) when the cooldown ends, defaults to the
                configured cooldown for ``reason``

        Returns:
            True if the account was found and updated
        """
        async with self._lock:
            index = self._find_index(account.identity_key)
            if index is None:
                logger.warning(
                    "unknown_account_cooldown", account_id=account.account_id
                )
                return False

            reason = CooldownReason(reason)
            if until is None:
                until = self._clock() + self._cooldown_duration(reason)

            target = self._accounts[index]
            target.cooling_down_until = until
            target.cooldown_reason = reason
            logger.info(
                "account_cooling_down",
                index=index,
                account_id=target.account_id,
                reason=str(reason),
                until=_format_ms(until),
            )
            snapshot = self._snapshot()

        await self._persist(*snapshot)
        return True

    async def add_account(self, record: AccountRecord) -> None:
        """Add an account, replacing an older record with the same identity.

        Raises:
            ValueError: If the record has no refresh token
        """
        if not record.refresh_token:
            raise ValueError("refresh_token must be a non-empty string")

        async with self._lock:
            self._accounts.append(record.copy())
            self._rebuild()
            logger.info(
                "account_added",
                account_id=record.account_id,
                count=len(self._accounts),
            )
            snapshot = self._snapshot()

        await self._persist(*snapshot)

    async def remove_account(self, identity_or_token: str) -> bool:
        """Remove every account whose identity key or refresh token matches.

        Returns:
            True if at least one account was removed
        """
        async with self._lock:
            kept: list[AccountRecord] = []
            new_active = self._active_index
            for index, account in enumerate(self._accounts):
                if identity_or_token in (account.identity_key, account.refresh_token):
                    if index < self._active_index:
                        new_active -= 1
                    continue
                kept.append(account)

            removed = len(self._accounts) - len(kept)
            if not removed:
                logger.warning("account_not_found")
                return False

            self._accounts = kept
            self._active_index = clamp_active_index(new_active, len(kept))
            self._rebuild()
            logger.info("account_removed", removed=removed, count=len(kept))
            snapshot = self._snapshot()

        await self._persist(*snapshot)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_available_index(self, now: int) -> int | None:
        """Scan after the active index, wrapping around, for an available account."""
        count = len(self._accounts)
        for offset in range(1, count):
            index = (self._active_index + offset) % count
            if self._accounts[index].is_available(now):
                return index
        return None

    def _find_index(self, identity_key: str) -> int | None:
        for index, account in enumerate(self._accounts):
            if account.identity_key == identity_key:
                return index
        return None

    def _cooldown_duration(self, reason: CooldownReason) -> int:
        if reason is CooldownReason.AUTH_FAILURE:
            return self._settings.auth_failure_cooldown_ms
        return self._settings.network_error_cooldown_ms

    def _rebuild(self) -> None:
        """Deduplicate, keeping the active index on the same account if it survives.

        Must be called with the lock held.
        """
        active_key = (
            self._accounts[self._active_index].identity_key
            if self._active_index < len(self._accounts)
            else None
        )
        self._accounts = deduplicate_accounts(self._accounts)
        index = self._find_index(active_key) if active_key is not None else None
        self._active_index = clamp_active_index(
            index if index is not None else self._active_index, len(self._accounts)
        )

    def _snapshot(self) -> tuple[int, AccountDocument]:
        """Copy the current state for persistence.

        Must be called with the lock held.
        """
        self._save_seq += 1
        document = AccountDocument(
            accounts=[account.copy() for account in self._accounts],
            active_index=self._active_index,
        )
        return self._save_seq, document

    async def _persist(self, seq: int, document: AccountDocument) -> None:
        """Write a snapshot unless a newer one has already been written.

        Raises:
            AccountStorageWriteError: If the write fails
        """
        if self._storage is None:
            return

        async with self._save_lock:
            if seq <= self._saved_seq:
                logger.debug("account_snapshot_superseded", seq=seq)
                return
            await asyncio.to_thread(self._storage.save, document)
            self._saved_seq = seq
