import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, configure_logging, settings as default_settings
from .identity import TokenIdentityVerifier, Unverified, Verified
from .ledger import (
    AccountLedger,
    AccountNotFoundError,
    AccountServiceError,
    InsufficientPointsError,
    InvalidValueError,
)
from .memberships import (
    AdminRequiredError,
    MembershipCatalog,
    MembershipWorkflow,
    NoPendingRequestError,
    PlanNotFoundError,
    PlanValidationError,
)
from .models import (
    Account,
    AccountResponse,
    AccountSnapshot,
    AdminAccountView,
    ApprovalRequest,
    GrantRequest,
    MembershipPlan,
    MessageResponse,
    PlanCreate,
    PlanResponse,
    PlanUpdateRequest,
    PointsUpdateRequest,
    PurchaseRequest,
    PurchaseResponse,
    utc_now,
)
from .sql_storage import SqlStorage
from .storage import InMemoryStorage, Storage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: Storage
    verifier: TokenIdentityVerifier
    ledger: AccountLedger
    catalog: MembershipCatalog
    workflow: MembershipWorkflow


def build_storage(settings: Settings) -> Storage:
    if settings.DATABASE_URL:
        logger.info("Using SQL storage")
        return SqlStorage(settings.DATABASE_URL)
    logger.warning("DATABASE_URL not set, using in-memory storage")
    return InMemoryStorage()


def build_services(
    settings: Settings,
    storage: Storage,
    verifier: Optional[TokenIdentityVerifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    ledger = AccountLedger(storage, clock=clock)
    catalog = MembershipCatalog(storage, clock=clock)
    return Services(
        settings=settings,
        storage=storage,
        verifier=verifier or TokenIdentityVerifier(
            settings.SECRET_KEY, settings.ALGORITHM, settings.IDENTITY_HEADER
        ),
        ledger=ledger,
        catalog=catalog,
        workflow=MembershipWorkflow(
            catalog, ledger, clock=clock, default_grant_days=settings.DEFAULT_GRANT_DAYS
        ),
    )


# ============================================================
# Dependencies
# ============================================================
def get_services(request: Request) -> Services:
    return request.app.state.services


def get_company_id(services: Services = Depends(get_services)) -> str:
    if not services.settings.COMPANY_ID:
        raise HTTPException(status_code=500, detail="Company ID not configured")
    return services.settings.COMPANY_ID


def get_identity(request: Request, services: Services = Depends(get_services)) -> Verified:
    result = services.verifier.verify(request.headers)
    if isinstance(result, Unverified):
        logger.debug("Rejected request: %s", result.reason)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated")
    return result


def get_current_account(
    identity: Verified = Depends(get_identity),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> Account:
    return services.ledger.get_or_create(identity.user_id, company_id, identity.profile)


def get_current_admin(account: Account = Depends(get_current_account)) -> Account:
    if not account.is_admin():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return account


def _find_target(services: Services, user_id: str, company_id: str) -> Account:
    try:
        return services.ledger.get_account(user_id, company_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "points-dashboard"}


# ============================================================
# User surface
# ============================================================
@router.get("/user", response_model=AccountSnapshot, tags=["User"])
def read_current_user(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> AccountSnapshot:
    return services.ledger.snapshot(account)


@router.get("/memberships", response_model=list[MembershipPlan], tags=["Memberships"])
def list_active_memberships(
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> list[MembershipPlan]:
    return services.catalog.list_active_plans(company_id)


@router.post("/membership/purchase", response_model=PurchaseResponse, tags=["Memberships"])
def purchase_membership(
    request: PurchaseRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
) -> PurchaseResponse:
    try:
        return services.workflow.purchase(
            account, request.membership_type, services.settings.REQUIRE_APPROVAL
        )
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except InsufficientPointsError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Insufficient points",
                "currentPoints": e.current_points,
                "requiredPoints": e.required_points,
            },
        )
    except AccountServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ============================================================
# Admin: users
# ============================================================
@router.get("/admin/users", response_model=list[AdminAccountView], tags=["Admin"])
def list_users(
    admin: Account = Depends(get_current_admin),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> list[AdminAccountView]:
    return services.workflow.list_accounts(admin, company_id)


@router.put("/admin/users", response_model=AccountResponse, tags=["Admin"])
def update_user_points(
    request: PointsUpdateRequest,
    admin: Account = Depends(get_current_admin),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> AccountResponse:
    target = _find_target(services, request.user_id, company_id)
    try:
        return services.workflow.set_points(admin, target, request.points)
    except AdminRequiredError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    except InvalidValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/admin/users/approve", response_model=AccountResponse, tags=["Admin"])
def resolve_membership_request(
    request: ApprovalRequest,
    admin: Account = Depends(get_current_admin),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> AccountResponse:
    target = _find_target(services, request.user_id, company_id)
    try:
        return services.workflow.resolve_request(admin, target, request.action)
    except AdminRequiredError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except NoPendingRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ============================================================
# Admin: membership catalog
# ============================================================
@router.get("/admin/memberships", response_model=list[MembershipPlan], tags=["Admin"])
def list_all_memberships(
    account: Account = Depends(get_current_account),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> list[MembershipPlan]:
    return services.catalog.list_plans(company_id)


@router.post(
    "/admin/memberships",
    response_model=PlanResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Admin"],
)
@router.post(
    "/admin/memberships/create",
    response_model=PlanResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Admin"],
)
def create_membership(
    request: PlanCreate,
    admin: Account = Depends(get_current_admin),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> PlanResponse:
    try:
        plan = services.catalog.create_plan(admin, company_id, request)
    except AdminRequiredError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except PlanValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return PlanResponse(message="Membership created successfully", membership=plan)


@router.put("/admin/memberships", response_model=PlanResponse, tags=["Admin"])
def update_membership(
    request: PlanUpdateRequest,
    admin: Account = Depends(get_current_admin),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> PlanResponse:
    try:
        plan = services.catalog.update_plan(admin, request.membership_id, company_id, request)
    except AdminRequiredError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except PlanValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return PlanResponse(message="Membership updated successfully", membership=plan)


@router.delete("/admin/memberships", response_model=MessageResponse, tags=["Admin"])
def delete_membership(
    membership_id: UUID = Query(..., alias="id"),
    admin: Account = Depends(get_current_admin),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> MessageResponse:
    try:
        services.catalog.delete_plan(admin, membership_id, company_id)
    except AdminRequiredError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return MessageResponse(message="Membership deleted successfully")


@router.post("/admin/memberships/grant", response_model=AccountResponse, tags=["Admin"])
def grant_membership(
    request: GrantRequest,
    admin: Account = Depends(get_current_admin),
    company_id: str = Depends(get_company_id),
    services: Services = Depends(get_services),
) -> AccountResponse:
    target = _find_target(services, request.target_user_id, company_id)
    try:
        return services.workflow.grant_plan(admin, target, request.membership_id)
    except AdminRequiredError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except PlanNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


# ============================================================
# Error rendering: every failure is {"error": ...}
# ============================================================
def _describe_validation_error(exc: RequestValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(problems) or "Invalid request"


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(content, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": _describe_validation_error(exc)}, status_code=status.HTTP_400_BAD_REQUEST)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    verifier: Optional[TokenIdentityVerifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)
    services = build_services(settings, storage or build_storage(settings), verifier, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Points dashboard started (company=%s, environment=%s)",
            settings.COMPANY_ID, settings.ENVIRONMENT,
        )
        yield
        services.storage.close()
        logger.info("Points dashboard shut down")

    app = FastAPI(
        title="Points Dashboard API",
        description="Points balances, membership plans and free-time grants for a community",
        version="1.0.0",
        lifespan=lifespan,
        # Interactive docs stay off in production
        docs_url=None if settings.IS_PRODUCTION else "/docs",
        redoc_url=None if settings.IS_PRODUCTION else "/redoc",
        openapi_url=None if settings.IS_PRODUCTION else "/openapi.json",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(router)
    return app
