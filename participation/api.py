import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .analytics import MAX_PERIOD_DAYS, participation_analytics
from .config import Config, build_ledger, configure_logging
from .models import (
    EntryStatus,
    LogParticipationRequest,
    Member,
    MemberRole,
    ParticipationAnalytics,
    ParticipationEntry,
    ParticipationListResponse,
    TransitionRequest,
)
from .roles import is_admin
from .service import (
    IdempotencyConflictError,
    InvalidStateError,
    NotFoundError,
    ParticipationLedger,
    PermissionDeniedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

config = Config()
configure_logging(config)

ledger_service = build_ledger(config)

router = APIRouter()


def get_ledger() -> ParticipationLedger:
    return ledger_service


def get_current_member(
    x_member_id: Optional[str] = Header(default=None),
    x_member_role: Optional[str] = Header(default=None),
) -> Member:
    """Identity supplied by the session layer in front of this service."""
    if not x_member_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        member_id = UUID(x_member_id)
        role = MemberRole(x_member_role) if x_member_role else MemberRole.RESIDENT
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return Member(id=member_id, role=role)


def invalid_input(errors: dict[str, str]) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid input", "details": errors},
    )


async def ledger_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return invalid_input(exc.errors)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = {}
    for error in exc.errors():
        # loc looks like ("body", "hours") or ("query", "period"); a missing body is just ("body",).
        field = str(error["loc"][-1]) if len(error["loc"]) > 1 else str(error["loc"][0])
        errors.setdefault(field, error["msg"])
    return invalid_input(errors)


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "participation-ledger"}


@router.get("/participation", response_model=ParticipationListResponse, tags=["Participation"])
def list_participation(
    status_filter: Optional[EntryStatus] = Query(default=None, alias="status"),
    offset: int = 0,
    limit: Optional[int] = None,
    member: Member = Depends(get_current_member),
    ledger: ParticipationLedger = Depends(get_ledger),
) -> ParticipationListResponse:
    logs = ledger.list_entries(
        member.id,
        statuses=[status_filter] if status_filter else None,
        offset=offset,
        limit=limit,
    )
    return ParticipationListResponse(logs=logs, summary=ledger.compute_summary(member.id))


@router.post(
    "/participation",
    response_model=ParticipationEntry,
    status_code=status.HTTP_201_CREATED,
    tags=["Participation"],
)
def log_participation(
    request: LogParticipationRequest,
    idempotency_key: Optional[str] = Header(default=None),
    member: Member = Depends(get_current_member),
    ledger: ParticipationLedger = Depends(get_ledger),
) -> ParticipationEntry:
    try:
        return ledger.record_entry(
            member.id,
            request.hours,
            request.category,
            request.description,
            idempotency_key=idempotency_key,
        )
    except IdempotencyConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


def _decide(ledger: ParticipationLedger, entry_id: UUID, new_status: EntryStatus, member: Member, request):
    try:
        return ledger.transition_status(
            entry_id, new_status, actor=member, note=request.reason if request else None
        )
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Entry {entry_id} not found")
    except PermissionDeniedError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    except InvalidStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/participation/{entry_id}/approve", response_model=ParticipationEntry, tags=["Review"])
def approve_entry(
    entry_id: UUID,
    request: Optional[TransitionRequest] = None,
    member: Member = Depends(get_current_member),
    ledger: ParticipationLedger = Depends(get_ledger),
) -> ParticipationEntry:
    return _decide(ledger, entry_id, EntryStatus.APPROVED, member, request)


@router.post("/participation/{entry_id}/reject", response_model=ParticipationEntry, tags=["Review"])
def reject_entry(
    entry_id: UUID,
    request: Optional[TransitionRequest] = None,
    member: Member = Depends(get_current_member),
    ledger: ParticipationLedger = Depends(get_ledger),
) -> ParticipationEntry:
    return _decide(ledger, entry_id, EntryStatus.REJECTED, member, request)


@router.get("/analytics/participation", response_model=ParticipationAnalytics, tags=["Analytics"])
def get_participation_analytics(
    period: int = Query(default=30, gt=0, le=MAX_PERIOD_DAYS),
    member: Member = Depends(get_current_member),
    ledger: ParticipationLedger = Depends(get_ledger),
) -> ParticipationAnalytics:
    if not is_admin(member.role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return participation_analytics(ledger, period_days=period)


def create_app(root_path: str = "") -> FastAPI:
    app = FastAPI(
        title="Participation Ledger API",
        description="Participation hours, reviewer decisions and equity units for BRITE POOL members",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ValidationError, ledger_validation_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
