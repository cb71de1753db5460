import pytest

from fieldservice.jobs import JobRegistry
from fieldservice.notifications import NotificationHub
from fieldservice.technicians import TechnicianLocationRegistry
from tests.factories import Clock


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub()


@pytest.fixture
def jobs(hub: NotificationHub, clock: Clock) -> JobRegistry:
    return JobRegistry(hub, now_fn=clock)


@pytest.fixture
def locations(
    jobs: JobRegistry, hub: NotificationHub, clock: Clock
) -> TechnicianLocationRegistry:
    return TechnicianLocationRegistry(jobs, hub, now_fn=clock)
