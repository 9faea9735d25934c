"""Multi-account rotation module for codex-rotation.

This module provides automatic rotation between multiple OAuth accounts
with rate limit failover, cooldown tracking and persistent state.
"""

from codex_rotation.rotation.accounts import (
    AccountDocument,
    AccountRecord,
    CooldownReason,
    OAuthCredentials,
    SwitchReason,
    deduplicate_accounts,
)
from codex_rotation.rotation.manager import AccountManager
from codex_rotation.rotation.rate_limits import is_rate_limit_error, parse_retry_after
from codex_rotation.rotation.storage import AccountStorage


__all__ = [
    "AccountDocument",
    "AccountManager",
    "AccountRecord",
    "AccountStorage",
    "CooldownReason",
    "OAuthCredentials",
    "SwitchReason",
    "deduplicate_accounts",
    "is_rate_limit_error",
    "parse_retry_after",
]
