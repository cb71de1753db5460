import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from fieldservice.config import Settings
from fieldservice.dispatch import DispatchEngine, PushSender
from fieldservice.errors import FieldServiceError
from fieldservice.geo import estimate_eta_minutes, haversine_km
from fieldservice.jobs import JobRegistry, sort_by_priority
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
from fieldservice.notifications import Listener, NotificationHub, Unsubscribe
from fieldservice.sampler import PositionSource
from fieldservice.technicians import TechnicianLocationRegistry
from fieldservice.tracking import LocationHeartbeat

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class FieldServiceManager:
    """
    Entry point for everything outside the engine: job intake, dispatch,
    technician updates, and the read side dashboards render from.

    Construct one per process (or per test) and pass it around. ``assign``
    and ``update_status`` report rule violations as ``False``; ``update_job``
    raises the registry errors so the HTTP layer can map them.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        push_sender: PushSender | None = None,
        now_fn: NowFn | None = None,
    ) -> None:
        self.settings = settings or Settings()
        now_fn = now_fn or (lambda: datetime.now(UTC))
        self._now_fn = now_fn
        self.hub = NotificationHub()
        self.jobs = JobRegistry(self.hub, now_fn=now_fn)
        self.locations = TechnicianLocationRegistry(
            self.jobs, self.hub, now_fn=now_fn
        )
        self.dispatch = DispatchEngine(
            self.jobs,
            self.locations,
            push_sender=push_sender,
            deep_link=self.settings.push_deep_link,
        )

    # mutations

    def create_job(self, fields: JobCreate) -> Job:
        return self.jobs.create_job(fields)

    async def assign(self, job_id: str, employee_id: str, employee_name: str) -> bool:
        return await self.dispatch.assign(job_id, employee_id, employee_name)

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        employee_id: str | None = None,
        notes: str | None = None,
    ) -> bool:
        try:
            self.jobs.transition(
                job_id, status, employee_id=employee_id, notes=notes
            )
        except FieldServiceError as exc:
            logger.error(
                f"Status update rejected: {exc.detail}",
                extra={"job_id": job_id, "employee_id": employee_id},
            )
            return False
        return True

    def update_job(self, job_id: str, update: JobUpdate) -> Job | None:
        return self.jobs.update_job(job_id, update)

    def update_location(
        self,
        employee_id: str,
        employee_name: str,
        lat: float,
        lng: float,
        accuracy: float,
        current_job_id: str | None = None,
        battery: int | None = None,
    ) -> TechnicianLocation:
        return self.locations.update_location(
            employee_id,
            employee_name,
            lat,
            lng,
            accuracy,
            current_job_id=current_job_id,
            battery=battery,
        )

    def track(
        self,
        source: PositionSource,
        employee_id: str,
        employee_name: str,
        *,
        current_job_id: str | None = None,
        battery: int | None = None,
    ) -> LocationHeartbeat:
        """Heartbeat feeding ``source`` into the location registry; not started."""
        return LocationHeartbeat.from_settings(
            self.locations,
            source,
            self.settings,
            employee_id=employee_id,
            employee_name=employee_name,
            current_job_id=current_job_id,
            battery=battery,
            now_fn=self._now_fn,
        )

    def subscribe(self, listener: Listener) -> Unsubscribe:
        return self.hub.subscribe(listener)

    def clear(self) -> None:
        self.jobs.clear()
        self.locations.clear()

    # queries

    def get_job(self, job_id: str) -> Job | None:
        return self.jobs.get_job(job_id)

    def get_all_jobs(self) -> list[Job]:
        return self.jobs.get_all_jobs()

    def get_active_jobs(self) -> list[Job]:
        return self.jobs.get_active_jobs()

    def get_jobs_by_employee(
        self, employee_id: str, active_only: bool = False
    ) -> list[Job]:
        """The technician's jobs; the active list is ordered for working through."""
        jobs = self.jobs.get_jobs_by_employee(employee_id, active_only=active_only)
        return sort_by_priority(jobs) if active_only else jobs

    def get_timeline(self, job_id: str) -> list[TimelineEntry]:
        return self.jobs.get_timeline(job_id)

    def get_location(self, employee_id: str) -> TechnicianLocation | None:
        return self.locations.get_location(employee_id)

    def get_all_locations(self) -> list[TechnicianLocation]:
        return self.locations.get_all_locations()

    def find_nearest_available(
        self, lat: float, lng: float, candidates: Iterable[Technician]
    ) -> NearestTechnician | None:
        return self.dispatch.find_nearest_available(lat, lng, candidates)

    def distance_to_job(self, employee_id: str, job_id: str) -> float | None:
        """Kilometres between a technician's last fix and the job site."""
        location = self.locations.get_location(employee_id)
        job = self.jobs.get_job(job_id)
        if location is None or job is None:
            return None
        return haversine_km(
            location.location.lat,
            location.location.lng,
            job.location.lat,
            job.location.lng,
        )

    def eta_minutes(self, employee_id: str, job_id: str) -> int | None:
        distance = self.distance_to_job(employee_id, job_id)
        if distance is None:
            return None
        return estimate_eta_minutes(distance, self.settings.average_speed_kmh)
