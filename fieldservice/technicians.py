import logging
from collections.abc import Callable
from datetime import UTC, datetime

from fieldservice.database import InMemoryKeyValueDatabase
from fieldservice.jobs import JobRegistry
from fieldservice.models import GeoReading, TechnicianLocation, TechnicianStatus
from fieldservice.notifications import NotificationHub

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class TechnicianLocationRegistry:
    """
    Latest known position of every technician, one record per id.

    Status is derived from the referenced job rather than stored as truth:
    it is computed on write and recomputed on every read, so a technician
    whose job completes becomes available without sending a new sample.
    """

    def __init__(
        self,
        jobs: JobRegistry,
        hub: NotificationHub,
        *,
        db: InMemoryKeyValueDatabase[str, TechnicianLocation] | None = None,
        now_fn: NowFn | None = None,
    ) -> None:
        self._jobs = jobs
        self._hub = hub
        self._db: InMemoryKeyValueDatabase[str, TechnicianLocation] = (
            db if db is not None else InMemoryKeyValueDatabase()
        )
        self._now_fn = now_fn or (lambda: datetime.now(UTC))

    def derive_status(self, current_job_id: str | None) -> TechnicianStatus:
        if current_job_id:
            job = self._jobs.get_job(current_job_id)
            if job is not None and job.is_active:
                return TechnicianStatus.ON_JOB
        return TechnicianStatus.AVAILABLE

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
        with self._db.lock(employee_id):
            location = TechnicianLocation(
                employee_id=employee_id,
                employee_name=employee_name,
                status=self.derive_status(current_job_id),
                current_job_id=current_job_id,
                location=GeoReading(lat=lat, lng=lng, accuracy=accuracy),
                last_updated=self._now_fn(),
                battery=battery,
            )
            self._db.put(employee_id, location)

        logger.debug(
            f"Location update: {lat}, {lng} (±{accuracy}m) status={location.status}",
            extra={"employee_id": employee_id},
        )
        self._hub.notify()
        return location

    def _refresh(self, location: TechnicianLocation) -> TechnicianLocation:
        status = self.derive_status(location.current_job_id)
        if status == location.status:
            return location
        return location.model_copy(update={"status": status})

    def get_location(self, employee_id: str) -> TechnicianLocation | None:
        location = self._db.get(employee_id)
        if location is None:
            return None
        return self._refresh(location)

    def get_all_locations(self) -> list[TechnicianLocation]:
        return [self._refresh(location) for location in self._db]

    def clear(self) -> None:
        self._db.clear()
        self._hub.notify()
