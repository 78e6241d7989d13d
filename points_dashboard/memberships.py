import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from .ledger import AccountLedger, free_time_window
from .models import (
    MAX_PLAN_DURATION_DAYS,
    Account,
    AccountResponse,
    AdminAccountView,
    Decision,
    MembershipPlan,
    MembershipStatus,
    PlanCreate,
    PlanUpdate,
    PurchaseResponse,
    RequestedMembership,
    utc_now,
)
from .storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_GRANT_DAYS = 7


class MembershipServiceError(Exception):
    pass


class PlanNotFoundError(MembershipServiceError):
    pass


class PlanValidationError(MembershipServiceError):
    pass


class NoPendingRequestError(MembershipServiceError):
    pass


class AdminRequiredError(MembershipServiceError):
    pass


def require_admin(actor: Account) -> None:
    if not actor.is_admin():
        raise AdminRequiredError("Admin access required")


def _check_plan_values(
    name: Optional[str], description: Optional[str], duration: Optional[int], cost: Optional[int]
) -> None:
    if name is not None and not name.strip():
        raise PlanValidationError("Name must not be empty")
    if description is not None and not description.strip():
        raise PlanValidationError("Description must not be empty")
    if (duration is not None and duration < 1) or (cost is not None and cost < 0):
        raise PlanValidationError("Duration must be at least 1 day and cost must be non-negative")
    if duration is not None and duration > MAX_PLAN_DURATION_DAYS:
        raise PlanValidationError(f"Duration must be at most {MAX_PLAN_DURATION_DAYS} days")


class MembershipCatalog:
    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utc_now):
        self.storage = storage
        self.clock = clock

    def list_active_plans(self, company_id: str) -> list[MembershipPlan]:
        return self.storage.list_plans(company_id, active_only=True)

    def list_plans(self, company_id: str) -> list[MembershipPlan]:
        return self.storage.list_plans(company_id)

    def get_plan(self, plan_id: UUID, company_id: str, active_only: bool = False) -> MembershipPlan:
        plan = self.storage.get_plan(plan_id, company_id, active_only=active_only)
        if plan is None:
            raise PlanNotFoundError(
                "Membership not found or inactive" if active_only else "Membership not found"
            )
        return plan

    def find_plan(self, plan_id: Optional[UUID], company_id: str) -> Optional[MembershipPlan]:
        if plan_id is None:
            return None
        return self.storage.get_plan(plan_id, company_id)

    def create_plan(self, actor: Account, company_id: str, fields: PlanCreate) -> MembershipPlan:
        require_admin(actor)
        _check_plan_values(fields.name, fields.description, fields.duration, fields.cost)

        now = self.clock()
        plan = self.storage.create_plan(MembershipPlan(
            company_id=company_id,
            name=fields.name.strip(),
            description=fields.description.strip(),
            duration=fields.duration,
            cost=fields.cost,
            is_active=fields.is_active,
            created_at=now,
            updated_at=now,
        ))
        logger.info("Plan %s (%s) created in %s by %s", plan.id, plan.name, company_id, actor.user_id)
        return plan

    def update_plan(
        self, actor: Account, plan_id: UUID, company_id: str, fields: PlanUpdate
    ) -> MembershipPlan:
        require_admin(actor)
        _check_plan_values(fields.name, fields.description, fields.duration, fields.cost)

        changes = fields.model_dump(exclude_none=True, exclude={"membership_id"})
        for key in ("name", "description"):
            if key in changes:
                changes[key] = changes[key].strip()
        changes["updated_at"] = self.clock()

        plan = self.storage.update_plan(plan_id, company_id, changes)
        if plan is None:
            raise PlanNotFoundError("Membership not found")
        logger.info("Plan %s updated by %s: %s", plan_id, actor.user_id, sorted(changes))
        return plan

    def delete_plan(self, actor: Account, plan_id: UUID, company_id: str) -> None:
        require_admin(actor)
        if not self.storage.delete_plan(plan_id, company_id):
            raise PlanNotFoundError("Membership not found")
        logger.info("Plan %s deleted from %s by %s", plan_id, company_id, actor.user_id)


class MembershipWorkflow:
    """Purchase requests and their admin resolution.

    ``none``/``approved``/``rejected`` move to ``pending`` on submission (points
    are taken at that moment). An admin then approves, which grants the plan's
    free-time window, or rejects, which only records the outcome.
    """

    def __init__(
        self,
        catalog: MembershipCatalog,
        ledger: AccountLedger,
        clock: Callable[[], datetime] = utc_now,
        default_grant_days: int = DEFAULT_GRANT_DAYS,
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.clock = clock
        self.default_grant_days = default_grant_days

    def purchase(self, account: Account, plan_id: UUID, require_approval: bool = True) -> PurchaseResponse:
        if require_approval:
            return self.submit_purchase_request(account, plan_id)
        return self.direct_purchase(account, plan_id)

    def submit_purchase_request(self, account: Account, plan_id: UUID) -> PurchaseResponse:
        plan = self.catalog.get_plan(plan_id, account.company_id, active_only=True)
        updated = self.ledger.debit(
            account,
            plan.cost,
            changes={
                "membership_status": MembershipStatus.PENDING,
                "membership_request_date": self.clock(),
                "requested_membership_id": plan.id,
            },
            reject_pending=True,
        )
        logger.info(
            "Purchase request for %s by %s/%s pending approval (%d points taken)",
            plan.name, updated.user_id, updated.company_id, plan.cost,
        )
        return PurchaseResponse(
            message=f"Membership request for {plan.name} submitted and awaiting approval",
            remaining_points=updated.points,
            membership_type=plan.name,
            cost=plan.cost,
            membership_status=updated.membership_status,
            freetime_start_date=updated.freetime_start_date,
            freetime_end_date=updated.freetime_end_date,
        )

    def direct_purchase(self, account: Account, plan_id: UUID) -> PurchaseResponse:
        plan = self.catalog.get_plan(plan_id, account.company_id, active_only=True)
        updated = self.ledger.debit(
            account,
            plan.cost,
            changes=free_time_window(plan.duration, self.clock()),
            reject_pending=True,
        )
        logger.info(
            "Direct purchase of %s by %s/%s (%d points taken)",
            plan.name, updated.user_id, updated.company_id, plan.cost,
        )
        return PurchaseResponse(
            message=f"Successfully purchased {plan.name} membership",
            remaining_points=updated.points,
            membership_type=plan.name,
            cost=plan.cost,
            membership_status=updated.membership_status,
            freetime_start_date=updated.freetime_start_date,
            freetime_end_date=updated.freetime_end_date,
        )

    def resolve_request(self, actor: Account, account: Account, decision: Decision) -> AccountResponse:
        require_admin(actor)
        if not account.has_pending_request():
            raise NoPendingRequestError("User does not have a pending membership request")

        if decision == Decision.APPROVE:
            # Deleted or deactivated plans fall back to the default window.
            plan = self.catalog.find_plan(account.requested_membership_id, account.company_id)
            duration = plan.duration if plan and plan.is_active else self.default_grant_days
            changes = free_time_window(duration, self.clock())
            changes["membership_status"] = MembershipStatus.APPROVED
        else:
            changes = {"membership_status": MembershipStatus.REJECTED}

        updated = self.ledger.transition(account, changes, from_statuses=(MembershipStatus.PENDING,))
        if updated is None:
            raise NoPendingRequestError("User does not have a pending membership request")

        logger.info(
            "Membership request of %s/%s %s by %s",
            account.user_id, account.company_id, updated.membership_status.value, actor.user_id,
        )
        return AccountResponse(
            message=f"Membership request {decision.value}d successfully",
            user=self.ledger.snapshot(updated),
        )

    def grant_plan(self, actor: Account, account: Account, plan_id: UUID) -> AccountResponse:
        """Give a plan's window to a user without taking points."""
        require_admin(actor)
        plan = self.catalog.get_plan(plan_id, account.company_id, active_only=True)
        updated = self.ledger.grant_free_time_window(account, plan.duration, self.clock())
        logger.info("Plan %s granted to %s by %s", plan.name, account.user_id, actor.user_id)
        return AccountResponse(
            message="Free time membership granted successfully",
            user=self.ledger.snapshot(updated),
        )

    def set_points(self, actor: Account, account: Account, points: int) -> AccountResponse:
        require_admin(actor)
        updated = self.ledger.set_points(account, points)
        return AccountResponse(
            message="User points updated successfully",
            user=self.ledger.snapshot(updated),
        )

    def list_accounts(self, actor: Account, company_id: str) -> list[AdminAccountView]:
        require_admin(actor)
        now = self.clock()
        views = []
        for account in self.ledger.list_accounts(company_id):
            plan = self.catalog.find_plan(account.requested_membership_id, company_id)
            snapshot = self.ledger.snapshot(account, now)
            views.append(AdminAccountView(
                **snapshot.model_dump(),
                company_id=account.company_id,
                created_at=account.created_at,
                requested_membership=RequestedMembership(
                    id=plan.id, name=plan.name, duration=plan.duration, cost=plan.cost,
                ) if plan else None,
            ))
        return views
