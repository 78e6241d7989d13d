import threading
from typing import Any, Collection, Optional, Protocol
from uuid import UUID

from .models import Account, MembershipPlan, MembershipStatus


class StorageError(Exception):
    pass


class Storage(Protocol):
    """Persistence operations the services rely on.

    Every account mutation goes through ``update_account`` so that balance
    checks and status checks are applied in the same atomic step as the
    write. A ``None`` return means the guard did not match (or the account is
    missing); callers re-read to find out which.
    """

    def get_account(self, user_id: str, company_id: str) -> Optional[Account]: ...

    def find_accounts_by_username(
        self, username: str, company_id: Optional[str] = None
    ) -> list[Account]: ...

    def create_account(self, account: Account) -> Account: ...

    def rekey_account(self, account: Account, user_id: str, company_id: str) -> Account: ...

    def list_accounts(self, company_id: str) -> list[Account]: ...

    def update_account(
        self,
        user_id: str,
        company_id: str,
        changes: dict[str, Any],
        *,
        debit: int = 0,
        statuses: Optional[Collection[MembershipStatus]] = None,
    ) -> Optional[Account]: ...

    def create_plan(self, plan: MembershipPlan) -> MembershipPlan: ...

    def get_plan(
        self, plan_id: UUID, company_id: str, active_only: bool = False
    ) -> Optional[MembershipPlan]: ...

    def list_plans(self, company_id: str, active_only: bool = False) -> list[MembershipPlan]: ...

    def update_plan(
        self, plan_id: UUID, company_id: str, changes: dict[str, Any]
    ) -> Optional[MembershipPlan]: ...

    def delete_plan(self, plan_id: UUID, company_id: str) -> bool: ...

    def close(self) -> None: ...


class InMemoryStorage:
    def __init__(self):
        self.accounts: dict[tuple[str, str], Account] = {}
        self.plans: dict[UUID, MembershipPlan] = {}
        self._lock = threading.RLock()

    # -- accounts -----------------------------------------------------------

    def get_account(self, user_id: str, company_id: str) -> Optional[Account]:
        with self._lock:
            account = self.accounts.get((user_id, company_id))
            return account.model_copy(deep=True) if account else None

    def find_accounts_by_username(
        self, username: str, company_id: Optional[str] = None
    ) -> list[Account]:
        with self._lock:
            matches = [
                a for a in self.accounts.values()
                if a.username == username and (company_id is None or a.company_id == company_id)
            ]
            matches.sort(key=lambda a: a.created_at)
            return [a.model_copy(deep=True) for a in matches]

    def create_account(self, account: Account) -> Account:
        with self._lock:
            existing = self.accounts.get(account.key)
            if existing is None:
                existing = account.model_copy(deep=True)
                self.accounts[account.key] = existing
            return existing.model_copy(deep=True)

    def rekey_account(self, account: Account, user_id: str, company_id: str) -> Account:
        with self._lock:
            taken = self.accounts.get((user_id, company_id))
            if taken is not None:
                return taken.model_copy(deep=True)
            stored = self.accounts.pop(account.key, None)
            if stored is None:
                raise StorageError(f"Account {account.user_id}/{account.company_id} vanished during re-key")
            moved = stored.model_copy(update={"user_id": user_id, "company_id": company_id})
            self.accounts[moved.key] = moved
            return moved.model_copy(deep=True)

    def list_accounts(self, company_id: str) -> list[Account]:
        with self._lock:
            accounts = [a for a in self.accounts.values() if a.company_id == company_id]
            accounts.sort(key=lambda a: a.created_at, reverse=True)
            return [a.model_copy(deep=True) for a in accounts]

    def update_account(
        self,
        user_id: str,
        company_id: str,
        changes: dict[str, Any],
        *,
        debit: int = 0,
        statuses: Optional[Collection[MembershipStatus]] = None,
    ) -> Optional[Account]:
        with self._lock:
            current = self.accounts.get((user_id, company_id))
            if current is None:
                return None
            if current.points < debit:
                return None
            if statuses is not None and current.membership_status not in statuses:
                return None

            data = current.model_dump()
            data.update(changes)
            if debit:
                data["points"] = current.points - debit
            updated = Account.model_validate(data)
            self.accounts[updated.key] = updated
            return updated.model_copy(deep=True)

    # -- plans --------------------------------------------------------------

    def create_plan(self, plan: MembershipPlan) -> MembershipPlan:
        with self._lock:
            self.plans[plan.id] = plan.model_copy(deep=True)
            return plan.model_copy(deep=True)

    def get_plan(
        self, plan_id: UUID, company_id: str, active_only: bool = False
    ) -> Optional[MembershipPlan]:
        with self._lock:
            plan = self.plans.get(plan_id)
            if plan is None or plan.company_id != company_id:
                return None
            if active_only and not plan.is_active:
                return None
            return plan.model_copy(deep=True)

    def list_plans(self, company_id: str, active_only: bool = False) -> list[MembershipPlan]:
        with self._lock:
            plans = [
                p for p in self.plans.values()
                if p.company_id == company_id and (p.is_active or not active_only)
            ]
            if active_only:
                plans.sort(key=lambda p: p.cost)
            else:
                plans.sort(key=lambda p: p.created_at, reverse=True)
            return [p.model_copy(deep=True) for p in plans]

    def update_plan(
        self, plan_id: UUID, company_id: str, changes: dict[str, Any]
    ) -> Optional[MembershipPlan]:
        with self._lock:
            current = self.plans.get(plan_id)
            if current is None or current.company_id != company_id:
                return None
            data = current.model_dump()
            data.update(changes)
            updated = MembershipPlan.model_validate(data)
            self.plans[plan_id] = updated
            return updated.model_copy(deep=True)

    def delete_plan(self, plan_id: UUID, company_id: str) -> bool:
        with self._lock:
            current = self.plans.get(plan_id)
            if current is None or current.company_id != company_id:
                return False
            del self.plans[plan_id]
            return True

    def close(self) -> None:
        pass
