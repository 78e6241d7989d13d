"""
Unit Tests for identity verification and account resolution

Tests cover:
1. Token verification into Verified / Unverified
2. Each resolution strategy on its own
3. Re-keying recovered accounts through the ledger
"""

import pytest
from datetime import datetime, timedelta, timezone

from points_dashboard.identity import (
    TokenIdentityVerifier,
    Unverified,
    Verified,
    issue_token,
    match_by_first_username,
    match_by_unique_username,
    match_by_user_id,
    match_by_username_in_company,
    resolve_account,
)
from points_dashboard.ledger import AccountLedger
from points_dashboard.models import Account, IdentityProfile
from points_dashboard.storage import InMemoryStorage


SECRET = "test-secret"
COMPANY_ID = "biz_test"
T = datetime(2025, 1, 1, tzinfo=timezone.utc)


def seeded_storage() -> InMemoryStorage:
    storage = InMemoryStorage()
    storage.create_account(Account(
        user_id="user_old", company_id=COMPANY_ID, username="localgang", points=120, created_at=T,
    ))
    storage.create_account(Account(
        user_id="user_elsewhere", company_id="biz_other", username="wanderer", points=7,
        created_at=T + timedelta(minutes=1),
    ))
    return storage


class TestTokenIdentityVerifier:
    """Tests for header token verification."""

    def test_valid_token(self):
        verifier = TokenIdentityVerifier(SECRET)
        token = issue_token("user_1", SECRET, username="alice", name="Alice", roles=["admin"])

        result = verifier.verify({"x-user-token": token})

        assert isinstance(result, Verified)
        assert result.user_id == "user_1"
        assert result.profile.username == "alice"
        assert result.profile.name == "Alice"
        assert result.profile.roles == ["admin"]

    def test_bearer_fallback(self):
        verifier = TokenIdentityVerifier(SECRET)
        token = issue_token("user_1", SECRET)

        result = verifier.verify({"authorization": f"Bearer {token}"})

        assert isinstance(result, Verified)
        assert result.profile == IdentityProfile()

    def test_custom_header_name(self):
        verifier = TokenIdentityVerifier(SECRET, header_name="X-Whop-User-Token")
        token = issue_token("user_1", SECRET)

        assert isinstance(verifier.verify({"x-whop-user-token": token}), Verified)

    def test_missing_token(self):
        result = TokenIdentityVerifier(SECRET).verify({})

        assert isinstance(result, Unverified)

    def test_wrong_signature(self):
        token = issue_token("user_1", "another-secret")

        result = TokenIdentityVerifier(SECRET).verify({"x-user-token": token})

        assert isinstance(result, Unverified)
        assert "Invalid" in result.reason

    def test_expired_token(self):
        token = issue_token("user_1", SECRET, expires_delta=timedelta(minutes=-5))

        assert isinstance(TokenIdentityVerifier(SECRET).verify({"x-user-token": token}), Unverified)

    def test_token_without_subject(self):
        token = issue_token("", SECRET)

        assert isinstance(TokenIdentityVerifier(SECRET).verify({"x-user-token": token}), Unverified)

    def test_malformed_roles_ignored(self):
        token = issue_token("user_1", SECRET, roles="admin")

        result = TokenIdentityVerifier(SECRET).verify({"x-user-token": token})

        assert isinstance(result, Verified)
        assert result.profile.roles == []


class TestResolutionStrategies:
    """Each strategy in isolation."""

    def test_match_by_user_id(self):
        storage = seeded_storage()

        hit = match_by_user_id(storage, "user_old", COMPANY_ID, IdentityProfile())
        miss = match_by_user_id(storage, "user_old", "biz_other", IdentityProfile())

        assert hit.points == 120
        assert miss is None

    def test_match_by_username_in_company(self):
        storage = seeded_storage()
        profile = IdentityProfile(username="localgang")

        assert match_by_username_in_company(storage, "user_new", COMPANY_ID, profile).user_id == "user_old"
        assert match_by_username_in_company(storage, "user_new", "biz_other", profile) is None

    def test_match_by_unique_username(self):
        storage = seeded_storage()
        profile = IdentityProfile(username="wanderer")

        assert match_by_unique_username(storage, "user_new", COMPANY_ID, profile).company_id == "biz_other"

        storage.create_account(Account(user_id="user_twin", company_id="biz_third", username="wanderer"))
        assert match_by_unique_username(storage, "user_new", COMPANY_ID, profile) is None

    def test_match_by_first_username_takes_oldest(self):
        storage = seeded_storage()
        storage.create_account(Account(
            user_id="user_twin", company_id="biz_third", username="wanderer", created_at=T + timedelta(days=1),
        ))

        hit = match_by_first_username(storage, "user_new", COMPANY_ID, IdentityProfile(username="wanderer"))

        assert hit.user_id == "user_elsewhere"

    def test_username_strategies_need_username(self):
        storage = seeded_storage()
        profile = IdentityProfile()

        for strategy in (match_by_username_in_company, match_by_unique_username, match_by_first_username):
            assert strategy(storage, "user_new", COMPANY_ID, profile) is None

    def test_resolve_account_order(self):
        """The id match wins over a username match."""
        storage = seeded_storage()
        storage.create_account(Account(user_id="user_new", company_id=COMPANY_ID, username="fresh"))

        hit = resolve_account(storage, "user_new", COMPANY_ID, IdentityProfile(username="localgang"))

        assert hit.user_id == "user_new"

    def test_resolve_account_no_hit(self):
        storage = seeded_storage()

        assert resolve_account(storage, "user_new", COMPANY_ID, IdentityProfile(username="nobody")) is None


class TestAccountRecovery:
    """Re-keying through get_or_create."""

    def test_rekey_within_company_keeps_balance(self):
        storage = seeded_storage()
        ledger = AccountLedger(storage, clock=lambda: T)

        account = ledger.get_or_create("user_new", COMPANY_ID, IdentityProfile(username="localgang"))

        assert account.key == ("user_new", COMPANY_ID)
        assert account.points == 120
        assert storage.get_account("user_old", COMPANY_ID) is None

    def test_rekey_across_companies(self):
        storage = seeded_storage()
        ledger = AccountLedger(storage, clock=lambda: T)

        account = ledger.get_or_create("user_new", COMPANY_ID, IdentityProfile(username="wanderer"))

        assert account.key == ("user_new", COMPANY_ID)
        assert account.points == 7
        assert storage.list_accounts("biz_other") == []

    def test_unknown_user_gets_new_account(self):
        storage = seeded_storage()
        ledger = AccountLedger(storage, clock=lambda: T)

        account = ledger.get_or_create("user_new", COMPANY_ID, IdentityProfile(username="newcomer"))

        assert account.points == 0
        assert account.created_at == T
        assert len(storage.list_accounts(COMPANY_ID)) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
