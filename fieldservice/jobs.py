import logging
import secrets
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from fieldservice.database import InMemoryKeyValueDatabase
from fieldservice.errors import (
    InvalidTransition,
    JobClosed,
    JobNotFound,
    UnauthorizedTechnician,
)
from fieldservice.models import (
    PRIORITY_RANK,
    Job,
    JobCreate,
    JobStatus,
    JobUpdate,
    TimelineEntry,
)
from fieldservice.notifications import NotificationHub

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

LIFECYCLE = (
    JobStatus.ASSIGNED,
    JobStatus.ACCEPTED,
    JobStatus.EN_ROUTE,
    JobStatus.ARRIVED,
    JobStatus.IN_PROGRESS,
    JobStatus.RETURNING,
    JobStatus.COMPLETED,
)

# status -> Job field stamped the first time the status is reached
LIFECYCLE_STAMPS: dict[JobStatus, str] = {
    JobStatus.ACCEPTED: "accepted_at",
    JobStatus.EN_ROUTE: "started_at",
    JobStatus.ARRIVED: "arrived_at",
    JobStatus.COMPLETED: "completed_at",
}


def allowed_next(status: JobStatus) -> frozenset[JobStatus]:
    """Statuses a job in ``status`` may move to."""
    if status.is_terminal:
        return frozenset()
    following = LIFECYCLE[LIFECYCLE.index(status) + 1]
    return frozenset({following, JobStatus.CANCELLED})


def check_transition(job: Job, requested: JobStatus) -> None:
    if requested == job.status:
        return
    if job.status.is_terminal:
        raise JobClosed(job.id, job.status)
    if requested not in allowed_next(job.status):
        raise InvalidTransition(job.id, job.status, requested)


def check_caller(job: Job, requested: JobStatus, employee_id: str | None) -> None:
    """
    Only the assignee moves a job. A dispatcher (no technician id) may
    cancel a job nobody has accepted yet.
    """
    dispatcher_cancel = (
        employee_id is None
        and job.status == JobStatus.ASSIGNED
        and requested == JobStatus.CANCELLED
    )
    if dispatcher_cancel:
        return
    if employee_id is None or job.assigned_to != employee_id:
        raise UnauthorizedTechnician(job.id, employee_id)


def sort_by_priority(jobs: Iterable[Job]) -> list[Job]:
    """Urgent first, oldest first within a priority."""
    return sorted(jobs, key=lambda j: (PRIORITY_RANK[j.priority], j.created_at))


def _new_job_id(now: datetime) -> str:
    return f"job_{int(now.timestamp() * 1000)}_{secrets.token_hex(5)[:9]}"


class JobRegistry:
    """
    Owns field-service jobs, their lifecycle, and the per-job timeline.

    Every read-modify-write runs under the job's key lock; the hub is
    notified only after the lock is released.
    """

    def __init__(
        self,
        hub: NotificationHub,
        *,
        db: InMemoryKeyValueDatabase[str, Job] | None = None,
        now_fn: NowFn | None = None,
    ) -> None:
        self._hub = hub
        self._db: InMemoryKeyValueDatabase[str, Job] = (
            db if db is not None else InMemoryKeyValueDatabase()
        )
        self._timelines: dict[str, list[TimelineEntry]] = {}
        self._now_fn = now_fn or (lambda: datetime.now(UTC))

    def create_job(self, fields: JobCreate) -> Job:
        now = self._now_fn()
        job = Job(
            **fields.model_dump(),
            id=_new_job_id(now),
            created_at=now,
            status=JobStatus.ASSIGNED,
        )
        with self._db.lock(job.id):
            self._timelines[job.id] = [
                TimelineEntry(status=job.status, timestamp=now, note="Job created")
            ]
            # stored last: from here on callers lock it under its own key
            self._db.put(job.id, job)

        logger.info("Field service job created", extra={"job_id": job.id})
        self._hub.notify()
        return job

    def update_job(self, job_id: str, update: JobUpdate) -> Job | None:
        """
        Apply the fields set on ``update``. Unknown ids are a logged no-op
        returning None.

        Explicit nulls only clear ``notes``; every other field keeps its
        value. A status change carries no technician id, so only the
        dispatcher cancel passes ``check_caller``; technicians go through
        ``transition``.
        """
        with self._db.lock(job_id):
            job = self._db.get(job_id)
            if job is None:
                logger.warning(
                    "Ignoring update for unknown job", extra={"job_id": job_id}
                )
                return None
            changes = {}
            for name in update.model_fields_set:
                value = getattr(update, name)
                if value is not None or name == "notes":
                    changes[name] = value

            status = changes.get("status")
            if (
                status is not None
                and status != job.status
                and not job.status.is_terminal
            ):
                check_caller(job, status, None)
            updated = self._apply(job, changes)

        self._hub.notify()
        return updated

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        employee_id: str | None = None,
        notes: str | None = None,
    ) -> Job:
        """
        Status change requested by a technician (or a dispatcher cancelling
        a job nobody has accepted yet).
        """
        with self._db.lock(job_id):
            job = self._db.get(job_id)
            if job is None:
                raise JobNotFound(job_id)

            check_caller(job, status, employee_id)

            changes: dict = {"status": status}
            if notes is not None:
                changes["notes"] = notes
            updated = self._apply(job, changes)

        logger.info(
            f"Job status updated to {updated.status}",
            extra={"job_id": job_id, "employee_id": employee_id},
        )
        self._hub.notify()
        return updated

    def assign(self, job_id: str, employee_id: str, employee_name: str) -> Job:
        """
        Set the assignee and re-assert ``assigned``. Reassignment is only
        possible before the current assignee accepts.
        """
        with self._db.lock(job_id):
            job = self._db.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.status.is_terminal:
                raise JobClosed(job_id, job.status)
            if job.status != JobStatus.ASSIGNED:
                raise InvalidTransition(
                    job_id,
                    job.status,
                    JobStatus.ASSIGNED,
                    reason=f"already {job.status} by {job.assigned_to_name}",
                )
            updated = self._apply(
                job,
                {
                    "assigned_to": employee_id,
                    "assigned_to_name": employee_name,
                    "status": JobStatus.ASSIGNED,
                },
            )

        self._hub.notify()
        return updated

    def _apply(self, job: Job, changes: dict) -> Job:
        """Validate and write ``changes``. Caller holds the job's lock."""
        if job.status.is_terminal:
            # resending the terminal status alongside notes is harmless
            touched = {
                name
                for name, value in changes.items()
                if not (name == "status" and value == job.status)
            }
            if touched - {"notes"}:
                raise JobClosed(job.id, job.status)

        new_status = changes.get("status", job.status)
        check_transition(job, new_status)

        leaving_assigned = job.status == JobStatus.ASSIGNED and new_status not in (
            JobStatus.ASSIGNED,
            JobStatus.CANCELLED,
        )
        if leaving_assigned and not changes.get("assigned_to", job.assigned_to):
            raise InvalidTransition(
                job.id, job.status, new_status, reason="no technician assigned"
            )

        if new_status != job.status:
            now = self._now_fn()
            stamp = LIFECYCLE_STAMPS.get(new_status)
            if stamp and getattr(job, stamp) is None:
                changes[stamp] = now
            self._timelines.setdefault(job.id, []).append(
                TimelineEntry(
                    status=new_status, timestamp=now, note=changes.get("notes")
                )
            )

        updated = job.model_copy(update=changes)
        self._db.put(job.id, updated)
        return updated

    def get_job(self, job_id: str) -> Job | None:
        return self._db.get(job_id)

    def get_all_jobs(self) -> list[Job]:
        return self._db.all()

    def get_jobs_by_employee(
        self, employee_id: str, *, active_only: bool = False
    ) -> list[Job]:
        return [
            job
            for job in self._db
            if job.assigned_to == employee_id and (job.is_active or not active_only)
        ]

    def get_active_jobs(self) -> list[Job]:
        return [job for job in self._db if job.is_active]

    def get_timeline(self, job_id: str) -> list[TimelineEntry]:
        return list(self._timelines.get(job_id, []))

    def clear(self) -> None:
        self._db.clear()
        self._timelines.clear()
        self._hub.notify()
