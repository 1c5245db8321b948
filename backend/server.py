from fastapi import FastAPI, APIRouter, HTTPException, Query, Depends, Request
from fastapi import Path as PathParam
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.gzip import GZipMiddleware
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path

# Setup logging early
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any
import uuid
import io
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from period_calendar import (
    MAX_PERIOD_NUMBER,
    PeriodType,
    all_school_fortnights,
    all_school_weeks,
    clamp_period_number,
    current_fortnight_number,
    current_week_number,
    fortnight_range,
    recent_periods,
    remaining_work_days,
    resolve_school_year,
    upcoming_periods,
    week_range,
)
from compliance import (
    TENURE_NEW,
    TENURE_TENURED,
    ViewerScope,
    build_trend,
    compliance_metric,
    compute_compliance,
    coordinator_history,
    domain_metric,
    fetch_floor,
    unassigned_teachers,
    windows_at_period_end,
)
from follow_ups import schedule_follow_ups
from rubric import DANIELSON_FRAMEWORK, INDICATOR_IDS, indicator_score, observation_score
from reports import EXCEL_MEDIA_TYPE, PDF_MEDIA_TYPE, generate_compliance_excel, generate_compliance_pdf
from store import DataUnavailable, ObservationStore


ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

mongo_url = os.environ.get('MONGO_URL')
if not mongo_url:
    raise ValueError("MONGO_URL environment variable is not set. Please check your .env file.")

# URL encode special characters in password if needed
from urllib.parse import quote_plus
if '@' in mongo_url and '://' in mongo_url:
    protocol_end = mongo_url.find('://') + 3
    at_pos = mongo_url.find('@', protocol_end)
    if at_pos > protocol_end:
        user_pass = mongo_url[protocol_end:at_pos]
        if ':' in user_pass:
            username, password = user_pass.split(':', 1)
            # Only encode if password contains special chars
            if any(c in password for c in ['@', '#', '$', '%', '&', '+', '=']):
                encoded_password = quote_plus(password)
                mongo_url = mongo_url[:protocol_end] + f"{username}:{encoded_password}" + mongo_url[at_pos:]

try:
    client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=5000)
except Exception as e:
    logger.error(f"Failed to create MongoDB client: {e}")
    raise

db = client[os.environ.get('DB_NAME', 'observation_db')]

SCHOOL_TIMEZONE = ZoneInfo(os.environ.get("SCHOOL_TIMEZONE", "America/Mexico_City"))
store = ObservationStore(db, tz=SCHOOL_TIMEZONE)

DEFAULT_TREND_COUNTS = {PeriodType.WEEKLY: 8, PeriodType.FORTNIGHTLY: 4}


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_store() -> ObservationStore:
    return store


def get_now() -> datetime:
    """Local wall-clock time, captured once per request."""
    return datetime.now(SCHOOL_TIMEZONE).replace(tzinfo=None)


app = FastAPI()
api_router = APIRouter(prefix="/api")


@app.exception_handler(DataUnavailable)
async def data_unavailable_handler(request: Request, exc: DataUnavailable):
    return JSONResponse(status_code=503, content={"detail": f"Data store unavailable: {exc}"})


@app.get("/health")
async def health_check():
    return {"status": "ok"}


class TeacherBase(BaseModel):
    full_name: str
    email: Optional[str] = None
    school_id: Optional[str] = None
    coordinator_id: Optional[str] = None
    tenure_status: str = TENURE_NEW
    is_active: bool = True


class TeacherRecord(TeacherBase):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = Field(default_factory=iso_now)
    updated_at: str = Field(default_factory=iso_now)


class TeacherAssignment(BaseModel):
    coordinator_id: Optional[str] = None


class ObservationCreate(BaseModel):
    teacher_id: str
    observer_id: str
    template_data: Dict[str, Any]
    subject: Optional[str] = None


class ObservationRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    teacher_id: str
    observer_id: str
    template_data: Dict[str, Any]
    score: float
    status: str = "completed"
    created_at: str = Field(default_factory=iso_now)


class FollowUpCreate(BaseModel):
    teacher_id: str
    coordinator_id: Optional[str] = None
    type: PeriodType = PeriodType.WEEKLY
    period_numbers: List[int]
    notes: str = ""
    action_plan: Optional[Any] = None


class FollowUpRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    teacher_id: str
    coordinator_id: Optional[str] = None
    type: PeriodType
    week_number: Optional[int] = None
    fortnight_number: Optional[int] = None
    scheduled_date: str
    end_date: str
    period_label: Optional[str] = None
    notes: str = ""
    action_plan: Optional[Any] = None
    status: str
    created_at: str


def _viewer(viewer_role: Optional[str], viewer_school_id: Optional[str]) -> ViewerScope:
    return ViewerScope(role=(viewer_role or "").strip().lower() or None, school_id=viewer_school_id)


@api_router.get("/")
async def root():
    return {"message": "Observation compliance API is running"}


@api_router.get("/rubric")
async def get_rubric():
    return DANIELSON_FRAMEWORK


@api_router.get("/periods/current")
async def get_current_periods(now: datetime = Depends(get_now)):
    school_year = resolve_school_year(now)
    return {
        "school_year": {**school_year.model_dump(), "name": school_year.name},
        "week": current_week_number(now),
        "fortnight": current_fortnight_number(now),
    }


@api_router.get("/periods/weeks/{week_number}")
async def get_week(week_number: int = PathParam(..., le=MAX_PERIOD_NUMBER), now: datetime = Depends(get_now)):
    return week_range(clamp_period_number(week_number), now)


@api_router.get("/periods/fortnights/{fortnight_number}")
async def get_fortnight(fortnight_number: int = PathParam(..., le=MAX_PERIOD_NUMBER), now: datetime = Depends(get_now)):
    return fortnight_range(clamp_period_number(fortnight_number), now)


@api_router.get("/periods")
async def list_periods(
    period_type: PeriodType = Query(PeriodType.WEEKLY),
    mode: str = Query("upcoming", description="upcoming, recent or all"),
    count: int = Query(4, ge=1, le=60),
    now: datetime = Depends(get_now),
):
    if mode == "all":
        return all_school_weeks(now) if period_type == PeriodType.WEEKLY else all_school_fortnights(now)
    if mode == "recent":
        return recent_periods(period_type, count, now)
    if mode == "upcoming":
        return upcoming_periods(period_type, count, now)
    raise HTTPException(status_code=400, detail="mode must be one of: upcoming, recent, all")


@api_router.get("/periods/remaining-days")
async def get_remaining_days(
    period_type: PeriodType = Query(PeriodType.WEEKLY),
    period_number: Optional[int] = Query(default=None, le=MAX_PERIOD_NUMBER),
    now: datetime = Depends(get_now),
):
    number = clamp_period_number(period_number) if period_number is not None else None
    return remaining_work_days(period_type, number, now)


@api_router.get("/coordinators")
async def list_coordinators(
    viewer_role: Optional[str] = Query(default=None),
    viewer_school_id: Optional[str] = Query(default=None),
    campus: Optional[str] = Query(default=None),
    store: ObservationStore = Depends(get_store),
):
    return await store.fetch_coordinators(_viewer(viewer_role, viewer_school_id), campus)


@api_router.get("/teachers")
async def list_teachers(
    unassigned: bool = Query(default=False),
    school_id: Optional[str] = Query(default=None),
    store: ObservationStore = Depends(get_store),
):
    teachers = await store.fetch_teachers(school_id=school_id, unassigned=unassigned)
    if unassigned:
        return unassigned_teachers(teachers)
    return teachers


@api_router.post("/teachers", response_model=TeacherRecord)
async def create_teacher(payload: TeacherBase, store: ObservationStore = Depends(get_store)):
    if payload.tenure_status not in (TENURE_NEW, TENURE_TENURED):
        raise HTTPException(status_code=400, detail="tenure_status must be 'new' or 'tenured'")
    teacher = TeacherRecord(**payload.model_dump())
    await store.insert_teacher(teacher.model_dump())
    return teacher


async def _require_teacher(store: ObservationStore, teacher_id: str) -> Dict[str, Any]:
    teacher = await store.get_teacher(teacher_id)
    if not teacher:
        raise HTTPException(status_code=404, detail="Teacher not found")
    return teacher


@api_router.put("/teachers/{teacher_id}/coordinator")
async def assign_coordinator(
    teacher_id: str,
    payload: TeacherAssignment,
    store: ObservationStore = Depends(get_store),
):
    await _require_teacher(store, teacher_id)
    updated = await store.update_teacher(
        teacher_id, {"coordinator_id": payload.coordinator_id, "updated_at": iso_now()}
    )
    logger.info("Teacher %s assigned to coordinator %s", teacher_id, payload.coordinator_id)
    return updated


@api_router.post("/teachers/{teacher_id}/toggle-tenure")
async def toggle_tenure(teacher_id: str, store: ObservationStore = Depends(get_store)):
    teacher = await _require_teacher(store, teacher_id)
    next_status = TENURE_TENURED if teacher.get("tenure_status") == TENURE_NEW else TENURE_NEW
    return await store.update_teacher(teacher_id, {"tenure_status": next_status, "updated_at": iso_now()})


@api_router.post("/teachers/{teacher_id}/toggle-active")
async def toggle_active(teacher_id: str, store: ObservationStore = Depends(get_store)):
    teacher = await _require_teacher(store, teacher_id)
    return await store.update_teacher(
        teacher_id, {"is_active": not teacher.get("is_active", True), "updated_at": iso_now()}
    )


@api_router.delete("/teachers/{teacher_id}")
async def delete_teacher(teacher_id: str, store: ObservationStore = Depends(get_store)):
    await _require_teacher(store, teacher_id)
    return {"status": await store.delete_teacher(teacher_id)}


@api_router.post("/observations", response_model=ObservationRecord)
async def create_observation(payload: ObservationCreate, store: ObservationStore = Depends(get_store)):
    await _require_teacher(store, payload.teacher_id)
    if not any(indicator_score(payload.template_data.get(i)) is not None for i in INDICATOR_IDS):
        raise HTTPException(status_code=400, detail="Observation has no scored rubric indicators")
    template_data = dict(payload.template_data)
    if payload.subject:
        template_data["metadata"] = {**(template_data.get("metadata") or {}), "subject": payload.subject}
    observation = ObservationRecord(
        teacher_id=payload.teacher_id,
        observer_id=payload.observer_id,
        template_data=template_data,
        score=observation_score(template_data),
    )
    await store.insert_observation(observation.model_dump())
    return observation


@api_router.get("/observations")
async def list_observations(
    teacher_id: Optional[str] = Query(default=None),
    store: ObservationStore = Depends(get_store),
):
    return await store.fetch_observations([teacher_id] if teacher_id else None)


@api_router.post("/follow-ups", response_model=List[FollowUpRecord])
async def create_follow_ups(
    payload: FollowUpCreate,
    store: ObservationStore = Depends(get_store),
    now: datetime = Depends(get_now),
):
    teacher = await _require_teacher(store, payload.teacher_id)
    if not payload.period_numbers:
        raise HTTPException(status_code=400, detail="Select at least one week or fortnight")
    if any(number > MAX_PERIOD_NUMBER for number in payload.period_numbers):
        raise HTTPException(status_code=400, detail=f"Period numbers must not exceed {MAX_PERIOD_NUMBER}")
    follow_ups = schedule_follow_ups(
        payload.teacher_id,
        payload.coordinator_id or teacher.get("coordinator_id"),
        payload.type,
        payload.period_numbers,
        now,
        notes=payload.notes,
        action_plan=payload.action_plan,
    )
    await store.insert_follow_ups(follow_ups)
    logger.info("Scheduled %d %s follow-ups for teacher %s", len(follow_ups), payload.type.value, payload.teacher_id)
    return follow_ups


@api_router.get("/follow-ups", response_model=List[FollowUpRecord])
async def list_follow_ups(
    teacher_id: Optional[str] = Query(default=None),
    coordinator_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    store: ObservationStore = Depends(get_store),
):
    return await store.fetch_follow_ups(teacher_id=teacher_id, coordinator_id=coordinator_id, status=status)


async def _current_compliance(
    store: ObservationStore,
    now: datetime,
    viewer: ViewerScope,
    campus: Optional[str],
    week: Optional[int],
    fortnight: Optional[int],
):
    week_period = week_range(clamp_period_number(week) if week is not None else current_week_number(now), now)
    fortnight_period = fortnight_range(
        clamp_period_number(fortnight) if fortnight is not None else current_fortnight_number(now), now
    )
    snapshot = await store.fetch_snapshot(viewer, campus, fetch_floor([week_period, fortnight_period]))
    summary = compute_compliance(
        snapshot.coordinators,
        snapshot.teachers,
        snapshot.observations,
        viewer,
        week_period,
        fortnight_period,
        tz=SCHOOL_TIMEZONE,
    )
    return summary, snapshot


async def _compliance_trend(
    store: ObservationStore,
    now: datetime,
    viewer: ViewerScope,
    campus: Optional[str],
    period_type: PeriodType,
    count: int,
):
    periods = recent_periods(period_type, count, now)
    windows = [window for period in periods for window in windows_at_period_end(period, now)]
    snapshot = await store.fetch_snapshot(viewer, campus, fetch_floor(windows))
    metric = compliance_metric(
        snapshot.coordinators, snapshot.teachers, snapshot.observations, viewer, now, tz=SCHOOL_TIMEZONE
    )
    return build_trend(period_type, count, metric, now)


@api_router.get("/compliance")
async def get_compliance(
    viewer_role: Optional[str] = Query(default=None),
    viewer_school_id: Optional[str] = Query(default=None),
    campus: Optional[str] = Query(default=None),
    week: Optional[int] = Query(default=None, le=MAX_PERIOD_NUMBER),
    fortnight: Optional[int] = Query(default=None, le=MAX_PERIOD_NUMBER),
    store: ObservationStore = Depends(get_store),
    now: datetime = Depends(get_now),
):
    try:
        summary, _ = await _current_compliance(
            store, now, _viewer(viewer_role, viewer_school_id), campus, week, fortnight
        )
        return summary
    except DataUnavailable:
        raise
    except Exception as e:
        logger.exception("Compliance summary failed")
        raise HTTPException(status_code=500, detail=f"Failed to compute compliance: {str(e)}")


@api_router.get("/compliance/trend")
async def get_compliance_trend(
    period_type: PeriodType = Query(PeriodType.WEEKLY),
    count: Optional[int] = Query(default=None, ge=1, le=52),
    viewer_role: Optional[str] = Query(default=None),
    viewer_school_id: Optional[str] = Query(default=None),
    campus: Optional[str] = Query(default=None),
    store: ObservationStore = Depends(get_store),
    now: datetime = Depends(get_now),
):
    try:
        return await _compliance_trend(
            store,
            now,
            _viewer(viewer_role, viewer_school_id),
            campus,
            period_type,
            count or DEFAULT_TREND_COUNTS[period_type],
        )
    except DataUnavailable:
        raise
    except Exception as e:
        logger.exception("Compliance trend failed")
        raise HTTPException(status_code=500, detail=f"Failed to build compliance trend: {str(e)}")


@api_router.get("/compliance/coordinators/{coordinator_id}/history")
async def get_coordinator_history(
    coordinator_id: str,
    week_count: int = Query(8, ge=1, le=52),
    store: ObservationStore = Depends(get_store),
    now: datetime = Depends(get_now),
):
    periods = recent_periods(PeriodType.WEEKLY, week_count, now)
    windows = [window for period in periods for window in windows_at_period_end(period, now)]
    snapshot = await store.fetch_snapshot(since=fetch_floor(windows))
    if not any(c.get("id") == coordinator_id for c in snapshot.coordinators):
        raise HTTPException(status_code=404, detail="Coordinator not found")
    return coordinator_history(
        coordinator_id,
        snapshot.coordinators,
        snapshot.teachers,
        snapshot.observations,
        week_count,
        now,
        tz=SCHOOL_TIMEZONE,
    )


@api_router.get("/compliance/export")
async def export_compliance(
    format: str = Query("pdf"),
    period_type: PeriodType = Query(PeriodType.WEEKLY),
    viewer_role: Optional[str] = Query(default=None),
    viewer_school_id: Optional[str] = Query(default=None),
    campus: Optional[str] = Query(default=None),
    store: ObservationStore = Depends(get_store),
    now: datetime = Depends(get_now),
):
    if format not in ("pdf", "excel"):
        raise HTTPException(status_code=400, detail="format must be one of: pdf, excel")
    viewer = _viewer(viewer_role, viewer_school_id)
    summary, _ = await _current_compliance(store, now, viewer, campus, None, None)
    trend = await _compliance_trend(store, now, viewer, campus, period_type, DEFAULT_TREND_COUNTS[period_type])
    stamp = now.strftime("%Y%m%d")
    if format == "excel":
        content = generate_compliance_excel(summary, trend)
        filename = f"compliance_{stamp}.xlsx"
        media_type = EXCEL_MEDIA_TYPE
    else:
        unassigned = unassigned_teachers(
            await store.fetch_teachers(school_id=viewer.school_id if viewer.role == "director" else None, unassigned=True)
        )
        content = generate_compliance_pdf(summary, trend, unassigned=unassigned, generated_at=now)
        filename = f"compliance_{stamp}.pdf"
        media_type = PDF_MEDIA_TYPE
    headers = {"Content-Disposition": f"attachment; filename={filename}"}
    return StreamingResponse(io.BytesIO(content), media_type=media_type, headers=headers)


@api_router.get("/analytics/domains/trend")
async def get_domain_trend(
    period_type: PeriodType = Query(PeriodType.WEEKLY),
    count: Optional[int] = Query(default=None, ge=1, le=52),
    teacher_id: Optional[str] = Query(default=None),
    store: ObservationStore = Depends(get_store),
    now: datetime = Depends(get_now),
):
    count = count or DEFAULT_TREND_COUNTS[period_type]
    since = fetch_floor(recent_periods(period_type, count, now), buffer_days=1)
    observations = await store.fetch_observations([teacher_id] if teacher_id else None, since)
    return build_trend(period_type, count, domain_metric(observations, tz=SCHOOL_TIMEZONE), now)


@app.on_event("startup")
async def prepare_database():
    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection successful")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        logger.error("Please check your MONGO_URL in .env file")
        return

    try:
        await store.ensure_indexes()
    except Exception as e:
        logger.error(f"Error while creating indexes: {e}")
        logger.warning("Continuing without indexes. Compliance queries may be slow.")


app.include_router(api_router)

_cors_origins_raw = os.environ.get("CORS_ORIGINS", "*").strip()
_cors_origins = [o.strip() for o in _cors_origins_raw.split(",") if o.strip()] if _cors_origins_raw else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=_cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1024)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
