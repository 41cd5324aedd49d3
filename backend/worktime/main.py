from __future__ import annotations

import datetime as dt
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .controller import ControllerRegistry, SessionController
from .database import SessionLocal, engine, get_db
from .domain import EntryKind
from .errors import EntryNotFound, InvariantViolation, PersistenceError, ValidationError
from .repository import SqlAlchemyTimeEntryRepository, TimeEntryRepository
from .schemas import (
    DailyDurationResponse,
    ManualEntryCreateRequest,
    MonthlySummaryResponse,
    SessionCommandResponse,
    SessionStatusResponse,
    TimeEntryResponse,
    TimeEntryUpdateRequest,
    UserProfilePayload,
    UserProfileResponse,
)
from .services import day_duration, get_profile, month_summary, save_profile
from .utils import local_day, utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

repository = SqlAlchemyTimeEntryRepository(SessionLocal)
controllers = ControllerRegistry(repository)

app = FastAPI(title=settings.app_name)
app.state.repository = repository
app.state.controllers = controllers


def get_repository(request: Request) -> TimeEntryRepository:
    return request.app.state.repository


def get_controllers(request: Request) -> ControllerRegistry:
    return request.app.state.controllers


def get_clock():
    return utcnow


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)


@app.exception_handler(EntryNotFound)
async def _not_found(request: Request, exc: EntryNotFound) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)


@app.exception_handler(InvariantViolation)
async def _invalid_transition(request: Request, exc: InvariantViolation) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_409_CONFLICT)


@app.exception_handler(PersistenceError)
async def _persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Persistence failure on %s: %s", request.url.path, exc)
    return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/users/{user_id}/profile", response_model=UserProfileResponse)
def read_profile(user_id: str, db: Session = Depends(get_db)) -> UserProfileResponse:
    profile = get_profile(db, user_id)
    return UserProfileResponse(
        user_id=user_id,
        employment_type=profile.employment_type.value,
        holiday_region=profile.holiday_region,
        weekly_hours=profile.weekly_hours,
        region_class=profile.region_class.value,
    )


@app.put("/users/{user_id}/profile", response_model=UserProfileResponse)
def write_profile(user_id: str, payload: UserProfilePayload, db: Session = Depends(get_db)) -> UserProfileResponse:
    profile = save_profile(db, user_id, payload.employment_type, payload.holiday_region, payload.weekly_hours)
    return UserProfileResponse(
        user_id=user_id,
        employment_type=profile.employment_type.value,
        holiday_region=profile.holiday_region,
        weekly_hours=profile.weekly_hours,
        region_class=profile.region_class.value,
    )


async def _controller(user_id: str, registry: ControllerRegistry) -> SessionController:
    controller = registry.get(user_id)
    await controller.refresh()
    return controller


@app.post("/users/{user_id}/work/start", response_model=SessionCommandResponse, status_code=status.HTTP_201_CREATED)
async def work_start(user_id: str, registry: ControllerRegistry = Depends(get_controllers)) -> SessionCommandResponse:
    controller = await _controller(user_id, registry)
    result = await controller.start_work()
    return SessionCommandResponse.from_result(result)


@app.post("/users/{user_id}/work/stop", response_model=SessionCommandResponse)
async def work_stop(user_id: str, registry: ControllerRegistry = Depends(get_controllers)) -> SessionCommandResponse:
    controller = await _controller(user_id, registry)
    result = await controller.stop_work()
    return SessionCommandResponse.from_result(result)


@app.post("/users/{user_id}/work/break", response_model=SessionCommandResponse)
async def work_break(user_id: str, registry: ControllerRegistry = Depends(get_controllers)) -> SessionCommandResponse:
    controller = await _controller(user_id, registry)
    result = await controller.toggle_break()
    return SessionCommandResponse.from_result(result)


@app.get("/users/{user_id}/work/status", response_model=SessionStatusResponse)
async def work_status(
    user_id: str,
    registry: ControllerRegistry = Depends(get_controllers),
    clock=Depends(get_clock),
) -> SessionStatusResponse:
    controller = await _controller(user_id, registry)
    active = controller.active_entry
    return SessionStatusResponse(
        day=controller.day,
        state=controller.state.value,
        active_entry=TimeEntryResponse.from_entry(active) if active else None,
        total_work_seconds=int(controller.total_work_time.total_seconds()),
        total_break_seconds=int(controller.total_break_time.total_seconds()),
        active_elapsed_seconds=int(controller.elapsed_active(clock()).total_seconds()),
    )


@app.get("/users/{user_id}/entries", response_model=List[TimeEntryResponse])
async def list_entries(
    user_id: str,
    day: Optional[dt.date] = Query(default=None),
    repo: TimeEntryRepository = Depends(get_repository),
    clock=Depends(get_clock),
) -> List[TimeEntryResponse]:
    entries = await repo.list_for_day(user_id, day or local_day(clock()))
    return [TimeEntryResponse.from_entry(entry) for entry in entries]


@app.post("/users/{user_id}/entries", response_model=TimeEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_entry(
    user_id: str,
    payload: ManualEntryCreateRequest,
    repo: TimeEntryRepository = Depends(get_repository),
) -> TimeEntryResponse:
    entry_id = await repo.create_manual(
        user_id,
        payload.day,
        EntryKind(payload.kind),
        payload.start_time,
        payload.end_time,
        payload.note,
    )
    entry = await repo.get(entry_id)
    return TimeEntryResponse.from_entry(entry)


@app.patch("/entries/{entry_id}", response_model=TimeEntryResponse)
async def update_entry(
    entry_id: int,
    payload: TimeEntryUpdateRequest,
    repo: TimeEntryRepository = Depends(get_repository),
) -> TimeEntryResponse:
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No changes supplied")
    entry = await repo.update(entry_id, changes)
    return TimeEntryResponse.from_entry(entry)


@app.delete("/entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entry(entry_id: int, repo: TimeEntryRepository = Depends(get_repository)) -> Response:
    await repo.delete(entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/users/{user_id}/days/{day}", response_model=DailyDurationResponse)
async def daily_duration(
    user_id: str,
    day: dt.date,
    db: Session = Depends(get_db),
    repo: TimeEntryRepository = Depends(get_repository),
    clock=Depends(get_clock),
) -> DailyDurationResponse:
    profile = get_profile(db, user_id)
    result, has_open = await day_duration(repo, user_id, day, profile, clock())
    return DailyDurationResponse.from_result(day, result, has_open)


@app.get("/users/{user_id}/months/{year}/{month}", response_model=MonthlySummaryResponse)
async def monthly_summary(
    user_id: str,
    month: int,
    year: int = Path(..., ge=1, le=9999),
    db: Session = Depends(get_db),
    repo: TimeEntryRepository = Depends(get_repository),
    clock=Depends(get_clock),
) -> MonthlySummaryResponse:
    if not 1 <= month <= 12:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Month must be between 1 and 12")
    profile = get_profile(db, user_id)
    summary, open_days = await month_summary(repo, user_id, year, month, profile, clock())
    return MonthlySummaryResponse.from_summary(summary, open_days)
