import asyncio
import logging

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketDisconnect

from fieldservice.config import Settings, get_settings
from fieldservice.errors import FieldServiceError
from fieldservice.geo import format_distance, navigation_url
from fieldservice.logging_config import setup_logging
from fieldservice.models import (
    Job,
    JobCreate,
    JobStatus,
    JobUpdate,
    NearestTechnician,
    Technician,
    TechnicianLocation,
    TimelineEntry,
)
from fieldservice.service import FieldServiceManager

logger = logging.getLogger(__name__)

router = APIRouter()


class AssignRequest(BaseModel):
    employee_id: str
    employee_name: str


class StatusUpdateRequest(BaseModel):
    status: JobStatus
    employee_id: str | None = None
    notes: str | None = None


class LocationUpdateRequest(BaseModel):
    employee_name: str
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy: float = Field(ge=0)
    current_job_id: str | None = None
    battery: int | None = Field(default=None, ge=0, le=100)


class NearestRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    candidates: list[Technician]


def _manager(request: Request) -> FieldServiceManager:
    return request.app.state.manager


def _require_job(manager: FieldServiceManager, job_id: str) -> Job:
    job = manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/jobs", status_code=201)
async def create_job(fields: JobCreate, request: Request) -> Job:
    return _manager(request).create_job(fields)


@router.get("/jobs")
async def list_jobs(request: Request, active_only: bool = False) -> list[Job]:
    manager = _manager(request)
    return manager.get_active_jobs() if active_only else manager.get_all_jobs()


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request) -> Job:
    return _require_job(_manager(request), job_id)


@router.patch("/jobs/{job_id}")
async def update_job(job_id: str, update: JobUpdate, request: Request) -> Job:
    job = _manager(request).update_job(job_id, update)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/jobs/{job_id}/timeline")
async def get_timeline(job_id: str, request: Request) -> list[TimelineEntry]:
    manager = _manager(request)
    _require_job(manager, job_id)
    return manager.get_timeline(job_id)


@router.post("/jobs/{job_id}/assign")
async def assign_job(job_id: str, body: AssignRequest, request: Request) -> dict:
    manager = _manager(request)
    _require_job(manager, job_id)

    assigned = await manager.assign(job_id, body.employee_id, body.employee_name)
    if not assigned:
        raise HTTPException(
            status_code=409, detail="Job can no longer be reassigned"
        )
    return {"status": "assigned", "job_id": job_id, "employee_id": body.employee_id}


@router.post("/jobs/{job_id}/status")
async def update_status(
    job_id: str, body: StatusUpdateRequest, request: Request
) -> Job:
    # registry errors carry their own status codes; see the app handler
    return _manager(request).jobs.transition(
        job_id, body.status, employee_id=body.employee_id, notes=body.notes
    )


@router.post("/dispatch/nearest")
async def find_nearest(body: NearestRequest, request: Request) -> dict:
    match: NearestTechnician | None = _manager(request).find_nearest_available(
        body.lat, body.lng, body.candidates
    )
    if match is None:
        return {"match": None}
    return {
        "match": match.model_dump(),
        "distance": format_distance(match.distance_km),
    }


@router.post("/technicians/{employee_id}/location")
async def update_location(
    employee_id: str, body: LocationUpdateRequest, request: Request
) -> TechnicianLocation:
    return _manager(request).update_location(
        employee_id,
        body.employee_name,
        body.lat,
        body.lng,
        body.accuracy,
        current_job_id=body.current_job_id,
        battery=body.battery,
    )


@router.get("/technicians/locations")
async def list_locations(request: Request) -> list[TechnicianLocation]:
    return _manager(request).get_all_locations()


@router.get("/technicians/{employee_id}/location")
async def get_location(employee_id: str, request: Request) -> TechnicianLocation:
    location = _manager(request).get_location(employee_id)
    if location is None:
        raise HTTPException(status_code=404, detail="Technician location not found")
    return location


@router.get("/technicians/{employee_id}/jobs")
async def list_technician_jobs(
    employee_id: str, request: Request, active_only: bool = False
) -> list[Job]:
    return _manager(request).get_jobs_by_employee(employee_id, active_only)


@router.get("/technicians/{employee_id}/jobs/{job_id}/distance")
async def job_distance(employee_id: str, job_id: str, request: Request) -> dict:
    manager = _manager(request)
    job = _require_job(manager, job_id)

    distance = manager.distance_to_job(employee_id, job_id)
    if distance is None:
        raise HTTPException(status_code=404, detail="Technician location not found")
    return {
        "job_id": job_id,
        "employee_id": employee_id,
        "distance_km": round(distance, 1),
        "distance": format_distance(distance),
        "eta_minutes": manager.eta_minutes(employee_id, job_id),
        "navigation_url": navigation_url(job.location.lat, job.location.lng),
    }


@router.websocket("/ws")
async def changes_feed(websocket: WebSocket) -> None:
    """Sends ``{"type": "changed"}`` after every registry mutation."""
    manager: FieldServiceManager = websocket.app.state.manager
    await websocket.accept()

    loop = asyncio.get_running_loop()
    pending: asyncio.Queue[None] = asyncio.Queue()

    async def forward() -> None:
        while True:
            await pending.get()
            await websocket.send_json({"type": "changed"})

    # listeners may fire from worker threads
    unsubscribe = manager.subscribe(
        lambda: loop.call_soon_threadsafe(pending.put_nowait, None)
    )
    forwarder = asyncio.create_task(forward())
    try:
        while True:
            # client messages are ignored; this only watches for disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Change feed client disconnected")
    finally:
        unsubscribe()
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)


async def _domain_error_handler(
    request: Request, exc: FieldServiceError
) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, use_json=settings.log_json)

    app = FastAPI(title="Field service dispatch")
    app.state.settings = settings
    app.state.manager = FieldServiceManager(settings)

    app.add_exception_handler(FieldServiceError, _domain_error_handler)
    app.include_router(router)
    return app
