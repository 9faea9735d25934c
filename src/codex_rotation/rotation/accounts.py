"""Account model and document helpers for multi-account rotation.

Defines the account records persisted in the accounts file, the document that
wraps them, and the deduplication rules that keep identity keys unique.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeVar

from codex_rotation.rotation.constants import (
    MAX_TIMESTAMP_MILLISECONDS,
    STORAGE_VERSION,
)


class SwitchReason(StrEnum):
    """Why an account most recently became active."""

    RATE_LIMIT = "rate-limit"
    INITIAL = "initial"
    ROTATION = "rotation"


class CooldownReason(StrEnum):
    """Why an account is deliberately skipped for a while."""

    AUTH_FAILURE = "auth-failure"
    NETWORK_ERROR = "network-error"


def now_ms() -> int:
    """Current wall-clock time as Unix epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def _as_int(value: Any) -> int | None:
    """Coerce a finite JSON number into an int, None if it is not one."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def _as_timestamp(value: Any) -> int | None:
    """Read an epoch millisecond timestamp, None if missing or out of range."""
    timestamp = _as_int(value)
    if timestamp is None or not 0 <= timestamp <= MAX_TIMESTAMP_MILLISECONDS:
        return None
    return timestamp


E = TypeVar("E", bound=StrEnum)


def _as_enum(enum_cls: type[E], value: Any) -> E | None:
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass
class OAuthCredentials:
    """OAuth credentials obtained from the external authorization client.

    Only used to seed the first account when nothing is stored yet.
    """

    access_token: str
    refresh_token: str
    expires_at: int  # Unix timestamp in milliseconds

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        return now_ms() >= self.expires_at

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthCredentials":
        """Create from either the auth client shape or the camelCase file shape.

        Raises:
            KeyError: If no refresh material is present
        """
        if "refresh" in data:
            return cls(
                access_token=data.get("access", ""),
                refresh_token=data["refresh"],
                expires_at=int(data.get("expires", 0)),
            )
        return cls(
            access_token=data.get("accessToken", ""),
            refresh_token=data["refreshToken"],
            expires_at=int(data.get("expiresAt", 0)),
        )


@dataclass
class AccountRecord:
    """A single account known to the rotation manager.

    Availability is never stored: it is derived from the rate limit and
    cooldown timestamps every time it is checked.
    """

    refresh_token: str
    account_id: str | None = None
    added_at: int = 0
    last_used: int = 0
    last_switch_reason: SwitchReason | None = None
    rate_limit_reset_time: int | None = None
    cooling_down_until: int | None = None
    cooldown_reason: CooldownReason | None = None

    @property
    def identity_key(self) -> str:
        """Key used to detect duplicates: account id if set, else the token."""
        return self.account_id or self.refresh_token

    def is_rate_limited(self, now: int) -> bool:
        reset = self.rate_limit_reset_time
        return reset is not None and now < reset

    def is_cooling_down(self, now: int) -> bool:
        return self.cooling_down_until is not None and now < self.cooling_down_until

    def is_available(self, now: int) -> bool:
        """Check if the account can be used at ``now``."""
        return not self.is_rate_limited(now) and not self.is_cooling_down(now)

    def wait_time(self, now: int) -> int:
        """Milliseconds until both the rate limit and the cooldown have passed."""
        blocked_until = max(
            self.rate_limit_reset_time or 0, self.cooling_down_until or 0
        )
        return max(0, blocked_until - now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        Unset optional fields are omitted.
        """
        data: dict[str, Any] = {}
        if self.account_id:
            data["accountId"] = self.account_id
        data["refreshToken"] = self.refresh_token
        data["addedAt"] = self.added_at
        data["lastUsed"] = self.last_used
        if self.last_switch_reason is not None:
            data["lastSwitchReason"] = str(self.last_switch_reason)
        if self.rate_limit_reset_time is not None:
            data["rateLimitResetTime"] = self.rate_limit_reset_time
        if self.cooling_down_until is not None:
            data["coolingDownUntil"] = self.cooling_down_until
        if self.cooldown_reason is not None:
            data["cooldownReason"] = str(self.cooldown_reason)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountRecord":
        """Create from dictionary loaded from JSON.

        Unknown keys are ignored and malformed optional values are dropped.

        Raises:
            ValueError: If refreshToken is missing or empty
        """
        refresh_token = data.get("refreshToken")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise ValueError("refreshToken must be a non-empty string")

        account_id = data.get("accountId")
        return cls(
            refresh_token=refresh_token,
            account_id=(
                account_id if isinstance(account_id, str) and account_id else None
            ),
            added_at=_as_timestamp(data.get("addedAt")) or 0,
            last_used=_as_timestamp(data.get("lastUsed")) or 0,
            last_switch_reason=_as_enum(SwitchReason, data.get("lastSwitchReason")),
            rate_limit_reset_time=_as_timestamp(data.get("rateLimitResetTime")),
            cooling_down_until=_as_timestamp(data.get("coolingDownUntil")),
            cooldown_reason=_as_enum(CooldownReason, data.get("cooldownReason")),
        )

    def copy(self) -> "AccountRecord":
        return replace(self)


@dataclass
class AccountDocument:
    """Represents the accounts file structure."""

    accounts: list[AccountRecord] = field(default_factory=list)
    active_index: int = 0
    version: int = STORAGE_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": STORAGE_VERSION,
            "accounts": [account.to_dict() for account in self.accounts],
            "activeIndex": self.active_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountDocument":
        """Create from an already validated dictionary.

        Records without usable refresh material are skipped; no deduplication
        or index clamping happens here.
        """
        accounts = []
        for entry in data.get("accounts", []):
            if not isinstance(entry, dict):
                continue
            try:
                accounts.append(AccountRecord.from_dict(entry))
            except ValueError:
                continue
        return cls(
            accounts=accounts,
            active_index=parse_active_index(data.get("activeIndex")),
        )

    def copy(self) -> "AccountDocument":
        """Deep copy so the caller never shares records with the original."""
        return AccountDocument(
            accounts=[account.copy() for account in self.accounts],
            active_index=self.active_index,
            version=self.version,
        )


def parse_active_index(value: Any) -> int:
    """Read a stored activeIndex, defaulting to 0 when unusable."""
    index = _as_int(value)
    return index if index is not None else 0


def clamp_active_index(active_index: int, count: int) -> int:
    """Clamp an index into ``[0, count - 1]``, or 0 for an empty list."""
    if count <= 0:
        return 0
    return max(0, min(active_index, count - 1))


def is_newer_or_equal(candidate: AccountRecord, current: AccountRecord) -> bool:
    """Check if ``candidate`` should replace ``current`` as the kept duplicate.

    Greater last_used wins, then greater added_at; full ties go to the
    candidate, which is the later record in input order.
    """
    if candidate.last_used != current.last_used:
        return candidate.last_used > current.last_used
    return candidate.added_at >= current.added_at


def select_newest_account(
    current: AccountRecord | None, candidate: AccountRecord
) -> AccountRecord:
    """Return whichever of two records sharing an identity key is newest."""
    if current is None or is_newer_or_equal(candidate, current):
        return candidate
    return current


def deduplicate_accounts(accounts: list[AccountRecord]) -> list[AccountRecord]:
    """Keep the newest record per identity key, preserving input order.

    Records with neither an account id nor a refresh token are dropped. The
    result is a stable subsequence of the input so positional indices stay
    meaningful.
    """
    key_to_index: dict[str, int] = {}

    for index, account in enumerate(accounts):
        key = account.identity_key
        if not key:
            continue

        existing_index = key_to_index.get(key)
        if existing_index is None or is_newer_or_equal(
            account, accounts[existing_index]
        ):
            key_to_index[key] = index

    indices_to_keep = set(key_to_index.values())
    return [
        account for index, account in enumerate(accounts) if index in indices_to_keep
    ]
