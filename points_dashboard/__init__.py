"""
Points Dashboard

This package provides:
- Per-tenant point balances with atomic, never-negative debits
- Membership plans bought with points, granting timed free-access windows
- Purchase request lifecycle: pending -> approved / rejected
- Admin management of balances and the plan catalog
- A FastAPI surface over all of the above
"""

from .models import (
    Account,
    Decision,
    FreeTimeStatus,
    MembershipPlan,
    MembershipStatus,
)
from .ledger import AccountLedger
from .memberships import MembershipCatalog, MembershipWorkflow

__all__ = [
    "Account",
    "Decision",
    "FreeTimeStatus",
    "MembershipPlan",
    "MembershipStatus",
    "AccountLedger",
    "MembershipCatalog",
    "MembershipWorkflow",
]
