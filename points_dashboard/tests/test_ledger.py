"""
Unit Tests for the Account Ledger

Tests cover:
1. Lazy account creation
2. Conditional debits and the non-negative balance
3. Admin point overrides
4. Free-time window grants and status derivation
"""

import pytest
from datetime import datetime, timedelta, timezone

from points_dashboard.ledger import (
    AccountLedger,
    AccountNotFoundError,
    InsufficientPointsError,
    InvalidValueError,
    RequestAlreadyPendingError,
)
from points_dashboard.models import (
    Account,
    FreeTimeStatus,
    IdentityProfile,
    MembershipStatus,
)
from points_dashboard.storage import InMemoryStorage


# Test constants
COMPANY_ID = "biz_test"
USER_ID = "user_alice"
T = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_ledger() -> AccountLedger:
    return AccountLedger(InMemoryStorage(), clock=lambda: T)


def funded_account(ledger: AccountLedger, points: int) -> Account:
    account = ledger.get_or_create(USER_ID, COMPANY_ID)
    return ledger.set_points(account, points)


class TestGetOrCreate:
    """Tests for lazy account creation."""

    def test_creates_zero_balance_account(self):
        """First lookup creates an empty account."""
        ledger = make_ledger()

        account = ledger.get_or_create(USER_ID, COMPANY_ID)

        assert account.user_id == USER_ID
        assert account.company_id == COMPANY_ID
        assert account.points == 0
        assert account.roles == []
        assert account.membership_status == MembershipStatus.NONE
        assert account.freetime_start_date is None
        assert account.freetime_end_date is None

    def test_second_lookup_returns_same_account(self):
        """Repeated lookups do not reset the balance."""
        ledger = make_ledger()
        funded_account(ledger, 40)

        account = ledger.get_or_create(USER_ID, COMPANY_ID)

        assert account.points == 40
        assert len(ledger.list_accounts(COMPANY_ID)) == 1

    def test_profile_fills_new_account(self):
        """Identity defaults are copied onto a new account."""
        ledger = make_ledger()
        profile = IdentityProfile(username="alice", name="Alice", avatar_url="https://img/a.png", roles=["admin"])

        account = ledger.get_or_create(USER_ID, COMPANY_ID, profile)

        assert account.username == "alice"
        assert account.name == "Alice"
        assert account.avatar_url == "https://img/a.png"
        assert account.is_admin()

    def test_tenants_are_separate(self):
        """The same user id in another company is a different account."""
        ledger = make_ledger()
        funded_account(ledger, 10)

        other = ledger.get_or_create(USER_ID, "biz_other")

        assert other.points == 0
        assert len(ledger.list_accounts(COMPANY_ID)) == 1
        assert len(ledger.list_accounts("biz_other")) == 1

    def test_get_account_missing_raises(self):
        """Plain lookup does not create."""
        ledger = make_ledger()

        with pytest.raises(AccountNotFoundError):
            ledger.get_account("user_nobody", COMPANY_ID)


class TestDebit:
    """Tests for point debits."""

    def test_debit_decreases_points_only(self):
        """A successful debit changes nothing but the balance."""
        ledger = make_ledger()
        before = funded_account(ledger, 100)

        after = ledger.debit(before, 60)

        assert after.points == 40
        assert after.model_dump(exclude={"points"}) == before.model_dump(exclude={"points"})

    def test_debit_whole_balance(self):
        """Spending exactly the balance is allowed."""
        ledger = make_ledger()
        account = funded_account(ledger, 50)

        assert ledger.debit(account, 50).points == 0

    def test_insufficient_points(self):
        """Debiting more than the balance fails and reports both totals."""
        ledger = make_ledger()
        account = funded_account(ledger, 30)

        with pytest.raises(InsufficientPointsError) as exc_info:
            ledger.debit(account, 31)

        assert exc_info.value.current_points == 30
        assert exc_info.value.required_points == 31
        assert ledger.get_account(USER_ID, COMPANY_ID).points == 30

    def test_debit_uses_stored_balance(self):
        """A stale in-hand account cannot overspend."""
        ledger = make_ledger()
        stale = funded_account(ledger, 100)
        ledger.debit(stale, 60)

        with pytest.raises(InsufficientPointsError) as exc_info:
            ledger.debit(stale, 60)

        assert exc_info.value.current_points == 40

    def test_negative_debit_rejected(self):
        """Negative amounts would credit the account."""
        ledger = make_ledger()
        account = funded_account(ledger, 10)

        with pytest.raises(InvalidValueError):
            ledger.debit(account, -5)

    def test_reject_pending_guard(self):
        """Debits that start a request fail while one is pending."""
        ledger = make_ledger()
        account = funded_account(ledger, 100)
        ledger.debit(account, 10, changes={"membership_status": MembershipStatus.PENDING})

        with pytest.raises(RequestAlreadyPendingError):
            ledger.debit(account, 10, reject_pending=True)

        assert ledger.get_account(USER_ID, COMPANY_ID).points == 90

    def test_balance_never_negative(self):
        """Any mix of debits and overrides keeps points >= 0."""
        ledger = make_ledger()
        account = funded_account(ledger, 25)
        operations = [("debit", 10), ("debit", 20), ("set", 5), ("debit", 5), ("set", -1), ("debit", 1)]

        for op, value in operations:
            try:
                if op == "debit":
                    account = ledger.debit(account, value)
                else:
                    account = ledger.set_points(account, value)
            except (InsufficientPointsError, InvalidValueError):
                pass
            assert ledger.get_account(USER_ID, COMPANY_ID).points >= 0

        assert ledger.get_account(USER_ID, COMPANY_ID).points == 0


class TestSetPoints:
    """Tests for admin point overrides."""

    def test_set_points_overrides(self):
        ledger = make_ledger()
        account = funded_account(ledger, 500)

        assert ledger.set_points(account, 20).points == 20

    def test_negative_points_rejected(self):
        ledger = make_ledger()
        account = funded_account(ledger, 5)

        with pytest.raises(InvalidValueError):
            ledger.set_points(account, -1)

        assert ledger.get_account(USER_ID, COMPANY_ID).points == 5

    def test_missing_account(self):
        ledger = make_ledger()
        ghost = Account(user_id="user_ghost", company_id=COMPANY_ID)

        with pytest.raises(AccountNotFoundError):
            ledger.set_points(ghost, 10)


class TestFreeTimeWindow:
    """Tests for free-time grants and status."""

    def test_grant_sets_window(self):
        """A 7 day grant from T ends at T + 7 days."""
        ledger = make_ledger()
        account = ledger.get_or_create(USER_ID, COMPANY_ID)

        granted = ledger.grant_free_time_window(account, 7, start=T)

        assert granted.freetime_start_date == T
        assert granted.freetime_end_date == T + timedelta(days=7)

    def test_status_active_then_expired(self):
        ledger = make_ledger()
        account = ledger.grant_free_time_window(ledger.get_or_create(USER_ID, COMPANY_ID), 7, start=T)

        assert ledger.free_time_status(account, T + timedelta(days=1)) == FreeTimeStatus.ACTIVE
        assert ledger.free_time_status(account, T + timedelta(days=8)) == FreeTimeStatus.EXPIRED

    def test_status_boundaries(self):
        """Both window edges count as active."""
        ledger = make_ledger()
        account = ledger.grant_free_time_window(ledger.get_or_create(USER_ID, COMPANY_ID), 1, start=T)

        assert ledger.free_time_status(account, T) == FreeTimeStatus.ACTIVE
        assert ledger.free_time_status(account, T + timedelta(days=1)) == FreeTimeStatus.ACTIVE
        assert ledger.free_time_status(account, T + timedelta(days=1, seconds=1)) == FreeTimeStatus.EXPIRED

    def test_status_pending_for_future_start(self):
        ledger = make_ledger()
        account = ledger.grant_free_time_window(
            ledger.get_or_create(USER_ID, COMPANY_ID), 3, start=T + timedelta(days=2)
        )

        assert ledger.free_time_status(account, T) == FreeTimeStatus.PENDING

    def test_status_without_window(self):
        ledger = make_ledger()
        account = ledger.get_or_create(USER_ID, COMPANY_ID)

        assert ledger.free_time_status(account) == FreeTimeStatus.NO_FREE_TIME

    def test_new_grant_replaces_old(self):
        """Grants do not stack remaining time."""
        ledger = make_ledger()
        account = ledger.get_or_create(USER_ID, COMPANY_ID)
        ledger.grant_free_time_window(account, 30, start=T)

        later = T + timedelta(days=5)
        regranted = ledger.grant_free_time_window(account, 2, start=later)

        assert regranted.freetime_start_date == later
        assert regranted.freetime_end_date == later + timedelta(days=2)

    def test_grant_defaults_to_clock(self):
        ledger = make_ledger()
        account = ledger.grant_free_time_window(ledger.get_or_create(USER_ID, COMPANY_ID), 1)

        assert account.freetime_start_date == T

    def test_zero_day_grant_rejected(self):
        ledger = make_ledger()
        account = ledger.get_or_create(USER_ID, COMPANY_ID)

        with pytest.raises(InvalidValueError):
            ledger.grant_free_time_window(account, 0)

    def test_snapshot_includes_status(self):
        ledger = make_ledger()
        account = ledger.grant_free_time_window(ledger.get_or_create(USER_ID, COMPANY_ID), 7, start=T)

        snapshot = ledger.snapshot(account)

        assert snapshot.free_time_status == FreeTimeStatus.ACTIVE
        assert snapshot.freetime_end_date == T + timedelta(days=7)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
