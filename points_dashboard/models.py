from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


ADMIN_ROLE = "admin"
# Longest plan a window can be computed for without leaving the datetime range.
MAX_PLAN_DURATION_DAYS = 36500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MembershipStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class FreeTimeStatus(str, Enum):
    NO_FREE_TIME = "no_free_time"
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class IdentityProfile(CamelModel):
    username: str = ""
    name: str = ""
    avatar_url: str = ""
    roles: list[str] = Field(default_factory=list)


class Account(CamelModel):
    user_id: str
    company_id: str
    username: str = ""
    name: str = ""
    avatar_url: str = ""
    points: int = Field(default=0, ge=0)
    freetime_start_date: Optional[datetime] = None
    freetime_end_date: Optional[datetime] = None
    roles: list[str] = Field(default_factory=list)
    membership_status: MembershipStatus = MembershipStatus.NONE
    membership_request_date: Optional[datetime] = None
    requested_membership_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_window(self) -> "Account":
        start, end = self.freetime_start_date, self.freetime_end_date
        if start is not None and end is not None and end < start:
            raise ValueError("freetime_end_date must not precede freetime_start_date")
        return self

    @property
    def key(self) -> tuple[str, str]:
        return self.user_id, self.company_id

    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    def has_pending_request(self) -> bool:
        return self.membership_status == MembershipStatus.PENDING


class MembershipPlan(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    company_id: str
    name: str
    description: str
    duration: int = Field(ge=1, le=MAX_PLAN_DURATION_DAYS, description="Length of the granted window in days")
    cost: int = Field(ge=0, description="Price in points")
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def window_length(self) -> timedelta:
        return timedelta(days=self.duration)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class PlanCreate(CamelModel):
    name: str
    description: str
    duration: int
    cost: int
    is_active: bool = True

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Weekend Pass",
            "description": "Two days of free access",
            "duration": 2,
            "cost": 150,
            "isActive": True,
        }
    })


class PlanUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = None
    cost: Optional[int] = None
    is_active: Optional[bool] = None


class PlanUpdateRequest(PlanUpdate):
    membership_id: UUID


class PurchaseRequest(CamelModel):
    membership_type: UUID = Field(..., description="Id of the plan being purchased")


class PointsUpdateRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    points: int


class ApprovalRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    action: Decision


class GrantRequest(CamelModel):
    target_user_id: str = Field(..., min_length=1)
    membership_id: UUID


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class AccountSnapshot(CamelModel):
    user_id: str
    username: str
    name: str
    avatar_url: str
    points: int
    roles: list[str]
    freetime_start_date: Optional[datetime] = None
    freetime_end_date: Optional[datetime] = None
    free_time_status: FreeTimeStatus
    membership_status: MembershipStatus
    membership_request_date: Optional[datetime] = None
    requested_membership_id: Optional[UUID] = None


class RequestedMembership(CamelModel):
    id: UUID
    name: str
    duration: int
    cost: int


class AdminAccountView(AccountSnapshot):
    company_id: str
    created_at: datetime
    requested_membership: Optional[RequestedMembership] = None


class PurchaseResponse(CamelModel):
    success: bool = True
    message: str
    remaining_points: int
    membership_type: str
    cost: int
    membership_status: MembershipStatus
    freetime_start_date: Optional[datetime] = None
    freetime_end_date: Optional[datetime] = None


class AccountResponse(CamelModel):
    success: bool = True
    message: str
    user: AccountSnapshot


class PlanResponse(CamelModel):
    success: bool = True
    message: str
    membership: MembershipPlan


class MessageResponse(CamelModel):
    success: bool = True
    message: str
