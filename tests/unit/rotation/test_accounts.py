"""Tests for account records and deduplication."""

import pytest

from codex_rotation.rotation.accounts import (
    AccountDocument,
    AccountRecord,
    CooldownReason,
    OAuthCredentials,
    SwitchReason,
    clamp_active_index,
    deduplicate_accounts,
    parse_active_index,
    select_newest_account,
)


NOW = 1_700_000_000_000


def _record(
    token: str,
    *,
    account_id: str | None = None,
    last_used: int = 0,
    added_at: int = 0,
) -> AccountRecord:
    return AccountRecord(
        refresh_token=token,
        account_id=account_id,
        last_used=last_used,
        added_at=added_at,
    )


@pytest.mark.unit
class TestAccountRecord:
    """Tests for availability and serialization of a single account."""

    def test_identity_key_prefers_account_id(self) -> None:
        assert _record("token-1", account_id="acct-1").identity_key == "acct-1"
        assert _record("token-1").identity_key == "token-1"

    def test_available_without_windows(self) -> None:
        assert _record("token-1").is_available(NOW)

    def test_rate_limit_window(self) -> None:
        account = AccountRecord(refresh_token="t", rate_limit_reset_time=NOW + 1000)

        assert not account.is_available(NOW)
        assert not account.is_available(NOW + 999)
        assert account.is_available(NOW + 1000)

    def test_cooldown_window(self) -> None:
        account = AccountRecord(
            refresh_token="t",
            cooling_down_until=NOW + 500,
            cooldown_reason=CooldownReason.NETWORK_ERROR,
        )

        assert account.is_cooling_down(NOW)
        assert not account.is_available(NOW)
        assert account.is_available(NOW + 500)

    def test_wait_time_uses_later_window(self) -> None:
        account = AccountRecord(
            refresh_token="t",
            rate_limit_reset_time=NOW + 1000,
            cooling_down_until=NOW + 5000,
        )

        assert account.wait_time(NOW) == 5000
        assert account.wait_time(NOW + 10_000) == 0

    def test_to_dict_omits_unset_fields(self) -> None:
        data = AccountRecord(refresh_token="t", added_at=1, last_used=2).to_dict()

        assert data == {"refreshToken": "t", "addedAt": 1, "lastUsed": 2}

    def test_from_dict_round_trips_wire_names(self) -> None:
        data = {
            "accountId": "acct-1",
            "refreshToken": "token-1",
            "addedAt": 10,
            "lastUsed": 20,
            "lastSwitchReason": "rate-limit",
            "rateLimitResetTime": 30,
            "coolingDownUntil": 40,
            "cooldownReason": "auth-failure",
        }

        account = AccountRecord.from_dict(data)

        assert account.account_id == "acct-1"
        assert account.last_switch_reason is SwitchReason.RATE_LIMIT
        assert account.cooldown_reason is CooldownReason.AUTH_FAILURE
        assert account.to_dict() == data

    def test_from_dict_tolerates_unknown_and_malformed_fields(self) -> None:
        account = AccountRecord.from_dict(
            {
                "refreshToken": "token-1",
                "addedAt": "yesterday",
                "lastSwitchReason": "coffee-break",
                "rateLimitResetTime": None,
                "futureField": {"nested": True},
            }
        )

        assert account.added_at == 0
        assert account.last_switch_reason is None
        assert account.rate_limit_reset_time is None

    @pytest.mark.parametrize("value", [-1, 1e20, 2**53, 2**64])
    def test_from_dict_drops_out_of_range_timestamps(self, value: object) -> None:
        account = AccountRecord.from_dict(
            {
                "refreshToken": "token-1",
                "lastUsed": value,
                "rateLimitResetTime": value,
                "coolingDownUntil": value,
            }
        )

        assert account.last_used == 0
        assert account.rate_limit_reset_time is None
        assert account.cooling_down_until is None

    def test_from_dict_keeps_largest_exact_timestamp(self) -> None:
        account = AccountRecord.from_dict(
            {"refreshToken": "token-1", "rateLimitResetTime": 2**53 - 1}
        )

        assert account.rate_limit_reset_time == 2**53 - 1

    @pytest.mark.parametrize("token", [None, "", 42])
    def test_from_dict_rejects_missing_refresh_token(self, token: object) -> None:
        with pytest.raises(ValueError):
            AccountRecord.from_dict({"refreshToken": token})


@pytest.mark.unit
class TestDeduplicateAccounts:
    """Tests for identity-key deduplication."""

    def test_keeps_greater_last_used(self) -> None:
        older = _record("token-1", account_id="a", last_used=100)
        newer = _record("token-2", account_id="a", last_used=200)

        assert deduplicate_accounts([newer, older]) == [newer]
        assert deduplicate_accounts([older, newer]) == [newer]

    def test_equal_last_used_falls_back_to_added_at(self) -> None:
        first = _record("token-1", account_id="a", last_used=100, added_at=50)
        second = _record("token-2", account_id="a", last_used=100, added_at=10)

        assert deduplicate_accounts([first, second]) == [first]

    def test_full_tie_prefers_later_record(self) -> None:
        first = _record("token-1", account_id="a", last_used=100, added_at=10)
        second = _record("token-2", account_id="a", last_used=100, added_at=10)

        result = deduplicate_accounts([first, second])

        assert len(result) == 1
        assert result[0] is second

    def test_refresh_token_is_identity_without_account_id(self) -> None:
        first = _record("shared", last_used=1)
        second = _record("shared", last_used=2)
        other = _record("other")

        assert deduplicate_accounts([first, other, second]) == [other, second]

    def test_preserves_original_relative_order(self) -> None:
        a_old = _record("t1", account_id="a", last_used=1)
        b = _record("t2", account_id="b", last_used=5)
        c_new = _record("t3", account_id="c", last_used=9)
        a_new = _record("t4", account_id="a", last_used=7)
        c_old = _record("t5", account_id="c", last_used=3)

        result = deduplicate_accounts([a_old, b, c_new, a_new, c_old])

        assert result == [b, c_new, a_new]

    def test_drops_records_without_identity(self) -> None:
        assert deduplicate_accounts([_record("")]) == []

    def test_select_newest_account(self) -> None:
        current = _record("t", last_used=2)
        candidate = _record("t", last_used=1)

        assert select_newest_account(None, candidate) is candidate
        assert select_newest_account(current, candidate) is current


@pytest.mark.unit
class TestDocumentHelpers:
    """Tests for index parsing, clamping and document conversion."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(2, 2), (1.0, 1), (None, 0), ("1", 0), (True, 0), (float("inf"), 0)],
    )
    def test_parse_active_index(self, value: object, expected: int) -> None:
        assert parse_active_index(value) == expected

    @pytest.mark.parametrize(
        ("index", "count", "expected"),
        [(0, 0, 0), (5, 0, 0), (5, 3, 2), (-1, 3, 0), (1, 3, 1)],
    )
    def test_clamp_active_index(self, index: int, count: int, expected: int) -> None:
        assert clamp_active_index(index, count) == expected

    def test_document_from_dict_skips_invalid_records(self) -> None:
        document = AccountDocument.from_dict(
            {
                "version": 1,
                "activeIndex": 1,
                "accounts": [
                    {"refreshToken": "token-1"},
                    "not-an-object",
                    {"refreshToken": ""},
                    {"accountId": "no-token"},
                    {"refreshToken": "token-2"},
                ],
            }
        )

        assert [a.refresh_token for a in document.accounts] == ["token-1", "token-2"]
        assert document.active_index == 1

    def test_document_to_dict_is_versioned(self) -> None:
        document = AccountDocument(accounts=[_record("t")], active_index=0)

        assert document.to_dict() == {
            "version": 1,
            "accounts": [{"refreshToken": "t", "addedAt": 0, "lastUsed": 0}],
            "activeIndex": 0,
        }

    def test_document_copy_is_deep(self) -> None:
        document = AccountDocument(accounts=[_record("t")])
        clone = document.copy()
        clone.accounts[0].last_used = 99

        assert document.accounts[0].last_used == 0


@pytest.mark.unit
class TestOAuthCredentials:
    """Tests for the fallback credential shape."""

    def test_from_auth_client_shape(self) -> None:
        creds = OAuthCredentials.from_dict(
            {"type": "oauth", "access": "a", "refresh": "r", "expires": 123}
        )

        assert creds.refresh_token == "r"
        assert creds.access_token == "a"
        assert creds.expires_at == 123
        assert creds.is_expired

    def test_from_camel_case_shape(self) -> None:
        creds = OAuthCredentials.from_dict(
            {"accessToken": "a", "refreshToken": "r", "expiresAt": 9999999999999}
        )

        assert creds.refresh_token == "r"
        assert not creds.is_expired

    def test_missing_refresh_raises(self) -> None:
        with pytest.raises(KeyError):
            OAuthCredentials.from_dict({"access": "a"})
