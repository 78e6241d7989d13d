# points_dashboard/seed.py: demo plans and accounts for local development
import argparse
import logging

from .config import Settings, configure_logging, settings as default_settings
from .identity import issue_token
from .ledger import AccountLedger
from .memberships import MembershipCatalog
from .models import ADMIN_ROLE, IdentityProfile, PlanCreate
from .sql_storage import SqlStorage
from .storage import Storage

logger = logging.getLogger(__name__)

DEMO_PLANS = [
    PlanCreate(name="Day Pass", description="One day of free access", duration=1, cost=50),
    PlanCreate(name="Weekly", description="Seven days of free access", duration=7, cost=150),
    PlanCreate(name="Monthly", description="Thirty days of free access", duration=30, cost=500),
]

DEMO_ADMIN = ("user_demo_admin", IdentityProfile(username="admin", name="Demo Admin", roles=[ADMIN_ROLE]))
DEMO_MEMBER = ("user_demo_member", IdentityProfile(username="member", name="Demo Member"))


def seed_demo_data(storage: Storage, company_id: str, member_points: int = 200) -> dict[str, int]:
    """Create the demo admin, a funded member and the demo catalog (idempotent)."""
    ledger = AccountLedger(storage)
    catalog = MembershipCatalog(storage)

    admin = ledger.get_or_create(DEMO_ADMIN[0], company_id, DEMO_ADMIN[1])
    member = ledger.get_or_create(DEMO_MEMBER[0], company_id, DEMO_MEMBER[1])
    if member.points == 0:
        ledger.set_points(member, member_points)

    existing = {plan.name for plan in catalog.list_plans(company_id)}
    created = 0
    for fields in DEMO_PLANS:
        if fields.name not in existing:
            catalog.create_plan(admin, company_id, fields)
            created += 1

    logger.info("Seeded %s: %d new plans", company_id, created)
    return {"plans_created": created, "accounts": len(ledger.list_accounts(company_id))}


def demo_tokens(settings: Settings) -> dict[str, str]:
    tokens = {}
    for user_id, profile in (DEMO_ADMIN, DEMO_MEMBER):
        tokens[profile.username] = issue_token(
            user_id,
            settings.SECRET_KEY,
            settings.ALGORITHM,
            username=profile.username,
            name=profile.name,
            roles=profile.roles,
        )
    return tokens


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Seed the points dashboard database.")
    parser.add_argument("--company-id", default=default_settings.COMPANY_ID, help="Tenant to seed")
    parser.add_argument("--member-points", type=int, default=200, help="Starting balance of the demo member")
    args = parser.parse_args(argv)

    configure_logging(default_settings.LOG_LEVEL)
    if not args.company_id:
        parser.error("--company-id is required when COMPANY_ID is not configured")
    if not default_settings.DATABASE_URL:
        parser.error("DATABASE_URL must point at a database to seed")

    storage = SqlStorage(default_settings.DATABASE_URL)
    try:
        summary = seed_demo_data(storage, args.company_id, args.member_points)
    finally:
        storage.close()

    print(f"Seeded {args.company_id}: {summary}")
    for username, token in demo_tokens(default_settings).items():
        print(f"{username}: {token}")


if __name__ == "__main__":
    main()
