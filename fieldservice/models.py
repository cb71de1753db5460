"""
Domain models for field-service jobs and technician positions.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class JobPriority(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


# lower sorts first
PRIORITY_RANK: dict[JobPriority, int] = {
    JobPriority.URGENT: 0,
    JobPriority.HIGH: 1,
    JobPriority.MEDIUM: 2,
    JobPriority.LOW: 3,
}


class JobStatus(StrEnum):
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    RETURNING = "returning"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELLED)


class TechnicianStatus(StrEnum):
    AVAILABLE = "available"
    ON_JOB = "on_job"
    OFFLINE = "offline"


class JobLocation(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: str = ""


class JobCreate(BaseModel):
    customer_id: str
    customer_name: str
    customer_phone: str
    bike_number: str
    issue_description: str
    priority: JobPriority = JobPriority.MEDIUM
    location: JobLocation
    notes: str | None = None


class Job(JobCreate):
    id: str
    status: JobStatus = JobStatus.ASSIGNED
    assigned_to: str | None = None  # technician id
    assigned_to_name: str | None = None
    created_at: datetime
    accepted_at: datetime | None = None
    started_at: datetime | None = None  # set when the technician sets off
    arrived_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


class JobUpdate(BaseModel):
    """
    Partial update of a job. Only fields explicitly set are applied;
    assignment goes through ``JobRegistry.assign``.
    """

    customer_name: str | None = None
    customer_phone: str | None = None
    bike_number: str | None = None
    issue_description: str | None = None
    priority: JobPriority | None = None
    location: JobLocation | None = None
    status: JobStatus | None = None
    notes: str | None = None


class TimelineEntry(BaseModel):
    status: JobStatus
    timestamp: datetime
    note: str | None = None


class GeoReading(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy: float = Field(ge=0)  # metres


class TechnicianLocation(BaseModel):
    employee_id: str
    employee_name: str
    status: TechnicianStatus
    current_job_id: str | None = None
    location: GeoReading
    last_updated: datetime
    battery: int | None = Field(default=None, ge=0, le=100)


class Technician(BaseModel):
    id: str
    name: str
    phone: str | None = None


class NearestTechnician(BaseModel):
    technician: Technician
    distance_km: float
