from datetime import datetime
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from followup.db.session import get_db
from .clock import Clock, SystemClock
from .entities import EntityProvider, NullEntityProvider
from .errors import ReminderError, StoreError, ValidationError
from .followup_service import FollowUpReminderService
from .models import ReminderPriority, ReminderStatus
from .schemas import (
    CalendarResponse,
    CompletionRead,
    DashboardResponse,
    EntityStats,
    ReminderAction,
    ReminderCreate,
    ReminderFilter,
    ReminderHistoryRead,
    ReminderPage,
    ReminderRead,
    ReminderUpdate,
)
from .transport import DeliveryTransport, build_transport


logger = logging.getLogger(__name__)

router = APIRouter()


# Collaborators; tests override these through app.dependency_overrides
def get_clock() -> Clock:
    return SystemClock()


def get_transport() -> DeliveryTransport:
    return build_transport()


def get_entity_provider() -> EntityProvider:
    return NullEntityProvider()


def get_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    transport: DeliveryTransport = Depends(get_transport),
    entities: EntityProvider = Depends(get_entity_provider),
) -> FollowUpReminderService:
    return FollowUpReminderService(db, clock=clock, transport=transport, entity_provider=entities)


def get_filters(
    entity_id: Optional[str] = None,
    status: Optional[ReminderStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    client: Optional[str] = None,
    priority: Optional[ReminderPriority] = None,
    created_by: Optional[str] = None,
) -> ReminderFilter:
    return ReminderFilter(
        entity_id=entity_id,
        status=status,
        start=start,
        end=end,
        client=client,
        priority=priority,
        created_by=created_by,
    )


def _page(result) -> ReminderPage:
    return ReminderPage(
        items=[ReminderRead.model_validate(r) for r in result.items],
        page=result.page,
        limit=result.limit,
        total=result.total,
        pages=result.pages,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render service errors and request validation failures as ``{"error": {...}}``."""

    @app.exception_handler(ReminderError)
    async def reminder_error_handler(request: Request, exc: ReminderError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'request'}: {err.get('msg')}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=ValidationError.status_code,
            content={"error": ValidationError(problems).to_dict()},
        )


@router.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        raise StoreError(f"Database unavailable: {e.__class__.__name__}") from e
    return {"status": "ok"}


@router.post("/", response_model=ReminderRead, status_code=201)
def create_reminder_endpoint(payload: ReminderCreate, service: FollowUpReminderService = Depends(get_service)):
    return service.create_reminder(payload)


@router.get("/", response_model=ReminderPage)
def list_reminders_endpoint(
    filters: ReminderFilter = Depends(get_filters),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    sort_by: str = "scheduled_at",
    sort_order: str = "asc",
    service: FollowUpReminderService = Depends(get_service),
):
    return _page(service.list_reminders(filters, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order))


@router.get("/dashboard/stats", response_model=DashboardResponse)
def dashboard_stats_endpoint(
    filters: ReminderFilter = Depends(get_filters),
    service: FollowUpReminderService = Depends(get_service),
):
    return service.get_dashboard(filters)


@router.get("/calendar", response_model=CalendarResponse)
def calendar_endpoint(
    start: datetime,
    end: datetime,
    entity_id: Optional[str] = None,
    status: Optional[ReminderStatus] = None,
    client: Optional[str] = None,
    service: FollowUpReminderService = Depends(get_service),
):
    reminders, grouped = service.get_calendar(
        start, end, ReminderFilter(entity_id=entity_id, status=status, client=client)
    )
    return CalendarResponse(
        reminders=[ReminderRead.model_validate(r) for r in reminders],
        grouped_by_date={
            day: [ReminderRead.model_validate(r) for r in items] for day, items in grouped.items()
        },
    )


@router.get("/entity/{entity_id}", response_model=ReminderPage)
def entity_reminders_endpoint(
    entity_id: str,
    status: Optional[ReminderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    service: FollowUpReminderService = Depends(get_service),
):
    return _page(service.list_entity_reminders(entity_id, status=status, page=page, limit=limit))


@router.get("/entity/{entity_id}/stats", response_model=EntityStats)
def entity_stats_endpoint(entity_id: str, service: FollowUpReminderService = Depends(get_service)):
    return service.get_entity_stats(entity_id)


@router.get("/{reminder_id}", response_model=ReminderRead)
def get_reminder_endpoint(reminder_id: str, service: FollowUpReminderService = Depends(get_service)):
    return service.get_reminder(reminder_id)


@router.patch("/{reminder_id}", response_model=ReminderRead)
def update_reminder_endpoint(
    reminder_id: str,
    payload: ReminderUpdate,
    service: FollowUpReminderService = Depends(get_service),
):
    """Edit a pending reminder. Anything past pending answers 409."""
    return service.update_reminder(reminder_id, payload)


@router.post("/{reminder_id}/cancel", response_model=ReminderRead)
def cancel_reminder_endpoint(
    reminder_id: str,
    payload: Optional[ReminderAction] = Body(default=None),
    service: FollowUpReminderService = Depends(get_service),
):
    action = payload or ReminderAction()
    return service.cancel_reminder(reminder_id, reason=action.notes, actor=action.actor)


@router.post("/{reminder_id}/complete", response_model=CompletionRead)
def complete_reminder_endpoint(
    reminder_id: str,
    payload: Optional[ReminderAction] = Body(default=None),
    service: FollowUpReminderService = Depends(get_service),
):
    action = payload or ReminderAction()
    completed, successor = service.complete_reminder_with_successor(
        reminder_id, notes=action.notes, actor=action.actor
    )
    return CompletionRead(
        completed=ReminderRead.model_validate(completed),
        successor=ReminderRead.model_validate(successor) if successor else None,
    )


@router.post("/{reminder_id}/send", response_model=ReminderRead)
def send_reminder_endpoint(reminder_id: str, service: FollowUpReminderService = Depends(get_service)):
    return service.send_now(reminder_id)


@router.get("/{reminder_id}/history", response_model=List[ReminderHistoryRead])
def reminder_history_endpoint(reminder_id: str, service: FollowUpReminderService = Depends(get_service)):
    return service.get_history(reminder_id)
