import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Collection, Generator, Optional
from uuid import UUID

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint, delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .models import Account, MembershipPlan, MembershipStatus, utc_now
from .storage import StorageError

logger = logging.getLogger(__name__)


# ============================================================
# Tables
# ============================================================
class AccountRecord(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("user_id", "company_id", name="uq_users_user_company"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=100)
    company_id: str = Field(index=True, max_length=100)
    username: str = Field(default="", index=True, max_length=100)
    name: str = Field(default="", max_length=200)
    avatar_url: str = Field(default="", max_length=500)
    points: int = Field(default=0)
    freetime_start_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    freetime_end_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    roles: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    membership_status: str = Field(default=MembershipStatus.NONE.value, max_length=20)
    membership_request_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    requested_membership_id: Optional[str] = Field(default=None, max_length=36)
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))


class PlanRecord(SQLModel, table=True):
    __tablename__ = "memberships"
    __table_args__ = (Index("ix_memberships_company_active", "company_id", "is_active"),)

    id: str = Field(primary_key=True, max_length=36)
    company_id: str = Field(index=True, max_length=100)
    name: str = Field(max_length=200)
    description: str
    duration: int
    cost: int
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))


# ============================================================
# Conversions
# ============================================================
def _to_db(value: Any) -> Any:
    """Store enums by value, UUIDs as text and datetimes as aware UTC."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_account(record: AccountRecord) -> Account:
    return Account(
        user_id=record.user_id,
        company_id=record.company_id,
        username=record.username,
        name=record.name,
        avatar_url=record.avatar_url,
        points=record.points,
        freetime_start_date=_from_db(record.freetime_start_date),
        freetime_end_date=_from_db(record.freetime_end_date),
        roles=list(record.roles or []),
        membership_status=MembershipStatus(record.membership_status),
        membership_request_date=_from_db(record.membership_request_date),
        requested_membership_id=UUID(record.requested_membership_id) if record.requested_membership_id else None,
        created_at=_from_db(record.created_at),
    )


def _to_plan(record: PlanRecord) -> MembershipPlan:
    return MembershipPlan(
        id=UUID(record.id),
        company_id=record.company_id,
        name=record.name,
        description=record.description,
        duration=record.duration,
        cost=record.cost,
        is_active=record.is_active,
        created_at=_from_db(record.created_at),
        updated_at=_from_db(record.updated_at),
    )


def _columns(model: Account | MembershipPlan) -> dict[str, Any]:
    return {key: _to_db(value) for key, value in model.model_dump().items()}


# ============================================================
# Engine
# ============================================================
def build_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)
    # pool_pre_ping avoids stale connections on managed Postgres
    return create_engine(database_url, echo=False, pool_pre_ping=True)


class SqlStorage:
    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            if not database_url:
                raise ValueError("SqlStorage needs either database_url or engine")
            engine = build_engine(database_url)
        self.engine = engine
        self.create_tables()

    def create_tables(self) -> None:
        try:
            SQLModel.metadata.create_all(
                self.engine, tables=[AccountRecord.__table__, PlanRecord.__table__]
            )
            logger.info("Database tables ready")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create tables: {e}")
            raise StorageError("Could not initialise database tables") from e

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        with Session(self.engine) as session:
            try:
                yield session
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Database operation failed: {e}")
                raise StorageError("Database operation failed") from e

    # -- accounts -----------------------------------------------------------

    @staticmethod
    def _account_query(user_id: str, company_id: str):
        return select(AccountRecord).where(
            AccountRecord.user_id == user_id,
            AccountRecord.company_id == company_id,
        )

    def get_account(self, user_id: str, company_id: str) -> Optional[Account]:
        with self._session() as session:
            record = session.exec(self._account_query(user_id, company_id)).first()
            return _to_account(record) if record else None

    def find_accounts_by_username(
        self, username: str, company_id: Optional[str] = None
    ) -> list[Account]:
        query = select(AccountRecord).where(AccountRecord.username == username)
        if company_id is not None:
            query = query.where(AccountRecord.company_id == company_id)
        query = query.order_by(AccountRecord.created_at, AccountRecord.id)
        with self._session() as session:
            return [_to_account(r) for r in session.exec(query).all()]

    def create_account(self, account: Account) -> Account:
        with self._session() as session:
            session.add(AccountRecord(**_columns(account)))
            try:
                session.commit()
            except IntegrityError:
                # Another request created the same (user_id, company_id) first.
                session.rollback()
            record = session.exec(self._account_query(account.user_id, account.company_id)).one()
            return _to_account(record)

    def rekey_account(self, account: Account, user_id: str, company_id: str) -> Account:
        stmt = (
            update(AccountRecord)
            .where(
                AccountRecord.user_id == account.user_id,
                AccountRecord.company_id == account.company_id,
            )
            .values(user_id=user_id, company_id=company_id)
        )
        with self._session() as session:
            try:
                session.exec(stmt)
                session.commit()
            except IntegrityError:
                session.rollback()
            record = session.exec(self._account_query(user_id, company_id)).first()
            if record is None:
                raise StorageError(f"Account {account.user_id}/{account.company_id} vanished during re-key")
            return _to_account(record)

    def list_accounts(self, company_id: str) -> list[Account]:
        query = (
            select(AccountRecord)
            .where(AccountRecord.company_id == company_id)
            .order_by(AccountRecord.created_at.desc(), AccountRecord.id.desc())
        )
        with self._session() as session:
            return [_to_account(r) for r in session.exec(query).all()]

    def update_account(
        self,
        user_id: str,
        company_id: str,
        changes: dict[str, Any],
        *,
        debit: int = 0,
        statuses: Optional[Collection[MembershipStatus]] = None,
    ) -> Optional[Account]:
        stmt = update(AccountRecord).where(
            AccountRecord.user_id == user_id,
            AccountRecord.company_id == company_id,
        )
        if debit:
            stmt = stmt.where(AccountRecord.points >= debit)
        if statuses is not None:
            stmt = stmt.where(AccountRecord.membership_status.in_([s.value for s in statuses]))

        values = {key: _to_db(value) for key, value in changes.items()}
        if debit:
            values["points"] = AccountRecord.points - debit
        if not values:
            # Nothing to write; still apply the status guard.
            account = self.get_account(user_id, company_id)
            if account is None or (statuses is not None and account.membership_status not in statuses):
                return None
            return account
        stmt = stmt.values(**values)

        with self._session() as session:
            result = session.exec(stmt)
            session.commit()
            if result.rowcount == 0:
                return None
            record = session.exec(self._account_query(user_id, company_id)).first()
            return _to_account(record) if record else None

    # -- plans --------------------------------------------------------------

    def create_plan(self, plan: MembershipPlan) -> MembershipPlan:
        with self._session() as session:
            record = PlanRecord(**_columns(plan))
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_plan(record)

    def get_plan(
        self, plan_id: UUID, company_id: str, active_only: bool = False
    ) -> Optional[MembershipPlan]:
        query = select(PlanRecord).where(
            PlanRecord.id == str(plan_id),
            PlanRecord.company_id == company_id,
        )
        if active_only:
            query = query.where(PlanRecord.is_active == True)  # noqa: E712
        with self._session() as session:
            record = session.exec(query).first()
            return _to_plan(record) if record else None

    def list_plans(self, company_id: str, active_only: bool = False) -> list[MembershipPlan]:
        query = select(PlanRecord).where(PlanRecord.company_id == company_id)
        if active_only:
            query = query.where(PlanRecord.is_active == True).order_by(PlanRecord.cost)  # noqa: E712
        else:
            query = query.order_by(PlanRecord.created_at.desc())
        with self._session() as session:
            return [_to_plan(r) for r in session.exec(query).all()]

    def update_plan(
        self, plan_id: UUID, company_id: str, changes: dict[str, Any]
    ) -> Optional[MembershipPlan]:
        with self._session() as session:
            record = session.exec(
                select(PlanRecord).where(
                    PlanRecord.id == str(plan_id),
                    PlanRecord.company_id == company_id,
                )
            ).first()
            if record is None:
                return None
            for key, value in changes.items():
                setattr(record, key, _to_db(value))
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_plan(record)

    def delete_plan(self, plan_id: UUID, company_id: str) -> bool:
        stmt = delete(PlanRecord).where(
            PlanRecord.id == str(plan_id),
            PlanRecord.company_id == company_id,
        )
        with self._session() as session:
            result = session.exec(stmt)
            session.commit()
            return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()
