import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from fieldservice.config import Settings
from fieldservice.models import GeoReading
from fieldservice.sampler import (
    GeolocationSampler,
    LocationErrorKind,
    PositionOptions,
    PositionSource,
)
from fieldservice.technicians import TechnicianLocationRegistry

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]


class LocationHeartbeat:
    """
    Pushes a technician's sampler readings into the location registry, and
    re-sends the last reading every ``interval`` seconds while the sampler
    is quiet so the dashboard keeps seeing a fresh ``last_updated``.
    """

    def __init__(
        self,
        locations: TechnicianLocationRegistry,
        sampler: GeolocationSampler,
        *,
        employee_id: str,
        employee_name: str,
        current_job_id: str | None = None,
        battery: int | None = None,
        interval: float = 15.0,
        now_fn: NowFn | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        self._locations = locations
        self._sampler = sampler
        self.employee_id = employee_id
        self.employee_name = employee_name
        self.current_job_id = current_job_id
        self.battery = battery
        self._interval = interval
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._sleep_fn = sleep_fn
        self._task: asyncio.Task | None = None
        self._last_reading: GeoReading | None = None
        self._last_sent_at: datetime | None = None
        self.last_error: LocationErrorKind | None = None

    @classmethod
    def from_settings(
        cls,
        locations: TechnicianLocationRegistry,
        source: PositionSource,
        settings: Settings,
        **kwargs,
    ) -> "LocationHeartbeat":
        """Sampler options and heartbeat interval taken from ``settings``."""
        sampler = GeolocationSampler(
            source, options=PositionOptions.from_settings(settings)
        )
        return cls(
            locations,
            sampler,
            interval=settings.heartbeat_interval_seconds,
            **kwargs,
        )

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def sampler(self) -> GeolocationSampler:
        return self._sampler

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> bool:
        if self._task is not None:
            return True
        if not self._sampler.start(self._on_sample, self._on_error):
            return False
        self._task = asyncio.create_task(self._beat())
        return True

    def stop(self) -> None:
        self._sampler.stop()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()

    async def aclose(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def _on_sample(self, lat: float, lng: float, accuracy: float) -> None:
        self._last_reading = GeoReading(lat=lat, lng=lng, accuracy=accuracy)
        self._send()

    def _on_error(self, kind: LocationErrorKind, message: str) -> None:
        self.last_error = kind
        logger.warning(
            f"GPS error: {message}", extra={"employee_id": self.employee_id}
        )

    def _send(self) -> None:
        reading = self._last_reading
        if reading is None:
            return
        self._last_sent_at = self._now_fn()
        self._locations.update_location(
            self.employee_id,
            self.employee_name,
            reading.lat,
            reading.lng,
            reading.accuracy,
            current_job_id=self.current_job_id,
            battery=self.battery,
        )

    async def _beat(self) -> None:
        while True:
            await self._sleep_fn(self._interval)
            if self._last_sent_at is None:
                continue
            quiet_for = (self._now_fn() - self._last_sent_at).total_seconds()
            if quiet_for >= self._interval:
                logger.debug(
                    "No fresh sample, re-sending last reading",
                    extra={"employee_id": self.employee_id},
                )
                self._send()
