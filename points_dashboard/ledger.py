import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from .identity import DEFAULT_STRATEGIES, ResolutionStrategy, resolve_account
from .models import (
    Account,
    AccountSnapshot,
    FreeTimeStatus,
    IdentityProfile,
    MembershipStatus,
    utc_now,
)
from .storage import Storage

logger = logging.getLogger(__name__)

NOT_PENDING = (
    MembershipStatus.NONE,
    MembershipStatus.APPROVED,
    MembershipStatus.REJECTED,
)


class AccountServiceError(Exception):
    pass


class AccountNotFoundError(AccountServiceError):
    pass


class InvalidValueError(AccountServiceError):
    pass


class RequestAlreadyPendingError(AccountServiceError):
    pass


class InsufficientPointsError(AccountServiceError):
    def __init__(self, current_points: int, required_points: int):
        super().__init__(
            f"Insufficient points: {current_points} available, {required_points} required"
        )
        self.current_points = current_points
        self.required_points = required_points


def free_time_window(duration_days: int, start: datetime) -> dict[str, datetime]:
    return {
        "freetime_start_date": start,
        "freetime_end_date": start + timedelta(days=duration_days),
    }


class AccountLedger:
    def __init__(
        self,
        storage: Storage,
        clock: Callable[[], datetime] = utc_now,
        strategies: Sequence[ResolutionStrategy] = DEFAULT_STRATEGIES,
    ):
        self.storage = storage
        self.clock = clock
        self.strategies = strategies

    def get_or_create(
        self, user_id: str, company_id: str, profile: Optional[IdentityProfile] = None
    ) -> Account:
        """Find the caller's account, re-keying a recovered record or creating a fresh one."""
        profile = profile or IdentityProfile()
        account = resolve_account(self.storage, user_id, company_id, profile, self.strategies)

        if account is not None:
            if account.key != (user_id, company_id):
                logger.info(
                    "Re-keying account %s/%s to %s/%s (matched username %r)",
                    account.user_id, account.company_id, user_id, company_id, account.username,
                )
                account = self.storage.rekey_account(account, user_id, company_id)
            return account

        logger.info("Creating account for %s in %s", user_id, company_id)
        return self.storage.create_account(Account(
            user_id=user_id,
            company_id=company_id,
            username=profile.username,
            name=profile.name,
            avatar_url=profile.avatar_url,
            roles=list(profile.roles),
            points=0,
            created_at=self.clock(),
        ))

    def get_account(self, user_id: str, company_id: str) -> Account:
        account = self.storage.get_account(user_id, company_id)
        if account is None:
            raise AccountNotFoundError(f"User {user_id} not found")
        return account

    def list_accounts(self, company_id: str) -> list[Account]:
        return self.storage.list_accounts(company_id)

    def debit(
        self,
        account: Account,
        amount: int,
        *,
        changes: Optional[dict[str, Any]] = None,
        reject_pending: bool = False,
    ) -> Account:
        """Take ``amount`` points in one conditional update.

        ``changes`` are written in the same update, so a purchase's status
        change cannot land without its debit (or the other way round).
        """
        if amount < 0:
            raise InvalidValueError("Debit amount must be non-negative")

        updated = self.storage.update_account(
            account.user_id,
            account.company_id,
            changes or {},
            debit=amount,
            statuses=NOT_PENDING if reject_pending else None,
        )
        if updated is not None:
            return updated

        current = self.get_account(account.user_id, account.company_id)
        if reject_pending and current.has_pending_request():
            raise RequestAlreadyPendingError("A membership request is already pending approval")
        if current.points < amount:
            raise InsufficientPointsError(current.points, amount)
        raise AccountServiceError("Account changed while processing, please retry")

    def grant_free_time_window(
        self, account: Account, duration_days: int, start: Optional[datetime] = None
    ) -> Account:
        if duration_days < 1:
            raise InvalidValueError("Duration must be at least 1 day")
        window = free_time_window(duration_days, start or self.clock())
        return self._update(account, window)

    def set_points(self, account: Account, new_value: int) -> Account:
        if new_value < 0:
            raise InvalidValueError("Points must be non-negative")
        updated = self._update(account, {"points": new_value})
        logger.info(
            "Points for %s/%s set to %d (was %d)",
            account.user_id, account.company_id, new_value, account.points,
        )
        return updated

    def transition(
        self,
        account: Account,
        changes: dict[str, Any],
        from_statuses: Sequence[MembershipStatus],
    ) -> Optional[Account]:
        """Apply ``changes`` only while the stored status is one of ``from_statuses``."""
        return self.storage.update_account(
            account.user_id, account.company_id, changes, statuses=tuple(from_statuses)
        )

    def free_time_status(self, account: Account, now: Optional[datetime] = None) -> FreeTimeStatus:
        start, end = account.freetime_start_date, account.freetime_end_date
        if start is None or end is None:
            return FreeTimeStatus.NO_FREE_TIME
        now = now or self.clock()
        if now > end:
            return FreeTimeStatus.EXPIRED
        if start <= now:
            return FreeTimeStatus.ACTIVE
        return FreeTimeStatus.PENDING

    def snapshot(self, account: Account, now: Optional[datetime] = None) -> AccountSnapshot:
        return AccountSnapshot(
            user_id=account.user_id,
            username=account.username,
            name=account.name,
            avatar_url=account.avatar_url,
            points=account.points,
            roles=list(account.roles),
            freetime_start_date=account.freetime_start_date,
            freetime_end_date=account.freetime_end_date,
            free_time_status=self.free_time_status(account, now),
            membership_status=account.membership_status,
            membership_request_date=account.membership_request_date,
            requested_membership_id=account.requested_membership_id,
        )

    def _update(self, account: Account, changes: dict[str, Any]) -> Account:
        updated = self.storage.update_account(account.user_id, account.company_id, changes)
        if updated is None:
            raise AccountNotFoundError(f"User {account.user_id} not found")
        return updated
