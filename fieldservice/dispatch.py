import logging
from collections.abc import Awaitable, Callable, Iterable

from fieldservice import notifier
from fieldservice.errors import FieldServiceError
from fieldservice.geo import haversine_km
from fieldservice.jobs import JobRegistry
from fieldservice.models import NearestTechnician, Technician, TechnicianStatus
from fieldservice.technicians import TechnicianLocationRegistry

logger = logging.getLogger(__name__)

PushSender = Callable[[str, str, str, str], Awaitable[bool]]

ASSIGNMENT_TITLE = "🔧 New Job Assigned"


class DispatchEngine:
    """
    Matches jobs to technicians by proximity and performs assignment.
    """

    def __init__(
        self,
        jobs: JobRegistry,
        locations: TechnicianLocationRegistry,
        *,
        push_sender: PushSender | None = None,
        deep_link: str = "/field-jobs",
    ) -> None:
        self._jobs = jobs
        self._locations = locations
        self._push_sender = push_sender
        self._deep_link = deep_link

    async def assign(self, job_id: str, employee_id: str, employee_name: str) -> bool:
        """
        Hand ``job_id`` to a technician and push them a notification.

        Does not check the technician's availability; callers filter with
        ``find_nearest_available`` or their own rules.
        """
        try:
            job = self._jobs.assign(job_id, employee_id, employee_name)
        except FieldServiceError as exc:
            logger.warning(
                f"Assignment rejected: {exc.detail}",
                extra={"job_id": job_id, "employee_id": employee_id},
            )
            return False

        body = f"{job.customer_name} - {job.bike_number}\n{job.issue_description}"
        # resolved at call time so tests can patch notifier.send_job_notification
        send = self._push_sender or notifier.send_job_notification
        try:
            delivered = await send(ASSIGNMENT_TITLE, body, job_id, self._deep_link)
        except Exception:
            logger.exception(
                "Failed to send job notification",
                extra={"job_id": job_id, "employee_id": employee_id},
            )
        else:
            if not delivered:
                logger.warning(
                    "Job notification was not delivered",
                    extra={"job_id": job_id, "employee_id": employee_id},
                )

        logger.info(
            f"Job {job_id} assigned to {employee_name}",
            extra={"job_id": job_id, "employee_id": employee_id},
        )
        return True

    def find_nearest_available(
        self,
        customer_lat: float,
        customer_lng: float,
        candidates: Iterable[Technician],
    ) -> NearestTechnician | None:
        """
        Closest candidate whose current status is available. Ties go to the
        candidate listed first.
        """
        nearest: Technician | None = None
        min_distance = float("inf")

        for technician in candidates:
            location = self._locations.get_location(technician.id)
            if location is None or location.status != TechnicianStatus.AVAILABLE:
                continue
            distance = haversine_km(
                customer_lat,
                customer_lng,
                location.location.lat,
                location.location.lng,
            )
            if distance < min_distance:
                min_distance = distance
                nearest = technician

        if nearest is None:
            return None
        return NearestTechnician(technician=nearest, distance_km=round(min_distance, 1))
