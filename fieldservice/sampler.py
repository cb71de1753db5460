"""
Geolocation sampling for technician devices.

A ``PositionSource`` wraps whatever produces fixes (a device GPS bridge, or
readings posted by the mobile client). ``GeolocationSampler`` turns its
stream into ``on_sample`` / ``on_error`` callbacks from a cancellable task.
Cadence follows the source: a fixed heartbeat is layered on top by
``fieldservice.tracking``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel, Field

from fieldservice.config import Settings

logger = logging.getLogger(__name__)


class LocationErrorKind(StrEnum):
    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"


ERROR_MESSAGES: dict[LocationErrorKind, str] = {
    LocationErrorKind.PERMISSION_DENIED: "Location permission denied",
    LocationErrorKind.UNAVAILABLE: "Location unavailable",
    LocationErrorKind.TIMEOUT: "Location request timeout",
}


class PositionError(Exception):
    def __init__(self, kind: LocationErrorKind, message: str | None = None):
        self.kind = kind
        self.message = message or ERROR_MESSAGES[kind]
        super().__init__(self.message)


class Position(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy: float = Field(ge=0)  # metres
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PositionOptions(BaseModel):
    enable_high_accuracy: bool = True
    timeout_ms: int = Field(default=10_000, gt=0)
    maximum_age_ms: int = Field(default=0, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PositionOptions":
        return cls(
            enable_high_accuracy=settings.sampler_high_accuracy,
            timeout_ms=settings.sampler_timeout_ms,
            maximum_age_ms=settings.sampler_maximum_age_ms,
        )


class SamplerState(StrEnum):
    IDLE = "idle"
    TRACKING = "tracking"


OnSample = Callable[[float, float, float], None]
OnError = Callable[[LocationErrorKind, str], None]


class PositionSource(Protocol):
    def is_available(self) -> bool: ...

    async def current_position(self, options: PositionOptions) -> Position: ...

    def watch(
        self, options: PositionOptions
    ) -> AsyncIterator[Position | PositionError]: ...

    async def battery_level(self) -> int | None: ...


_CLOSED = object()


class QueuePositionSource:
    """
    Source fed in-process by ``push``: fixes posted by a mobile client, or
    scripted readings in tests.
    """

    def __init__(self, *, available: bool = True, battery: int | None = None):
        self._available = available
        self._battery = battery
        self._queue: asyncio.Queue = asyncio.Queue()
        self._latest: Position | None = None

    def is_available(self) -> bool:
        return self._available

    def push(self, item: Position | PositionError) -> None:
        self._queue.put_nowait(item)

    def close(self) -> None:
        """End any active ``watch`` stream."""
        self._queue.put_nowait(_CLOSED)

    async def _next(self, options: PositionOptions):
        try:
            return await asyncio.wait_for(
                self._queue.get(), timeout=options.timeout_ms / 1000
            )
        except TimeoutError:
            return PositionError(LocationErrorKind.TIMEOUT)

    async def current_position(self, options: PositionOptions) -> Position:
        if self._latest is not None and options.maximum_age_ms > 0:
            age = datetime.now(UTC) - self._latest.timestamp
            age_ms = age.total_seconds() * 1000
            if age_ms <= options.maximum_age_ms:
                return self._latest

        item = await self._next(options)
        if item is _CLOSED:
            raise PositionError(LocationErrorKind.UNAVAILABLE)
        if isinstance(item, PositionError):
            raise item
        self._latest = item
        return item

    async def watch(
        self, options: PositionOptions
    ) -> AsyncIterator[Position | PositionError]:
        while True:
            item = await self._next(options)
            if item is _CLOSED:
                return
            if isinstance(item, Position):
                self._latest = item
            yield item

    async def battery_level(self) -> int | None:
        return self._battery


class GeolocationSampler:
    """
    Idle -> Tracking -> Idle, via ``stop`` or an unrecoverable source error.

    ``stop`` may be called at any time, including right after ``start``;
    once it returns no further callbacks are made. Errors are reported once
    per occurrence and never retried here.
    """

    def __init__(
        self, source: PositionSource, *, options: PositionOptions | None = None
    ) -> None:
        self._source = source
        self._options = options or PositionOptions()
        self._task: asyncio.Task | None = None
        self._generation = 0
        self._on_sample: OnSample | None = None
        self._on_error: OnError | None = None
        self._last_position: Position | None = None

    @property
    def state(self) -> SamplerState:
        return SamplerState.TRACKING if self._task is not None else SamplerState.IDLE

    @property
    def is_tracking(self) -> bool:
        return self.state == SamplerState.TRACKING

    @property
    def options(self) -> PositionOptions:
        return self._options

    @property
    def last_position(self) -> Position | None:
        return self._last_position

    def start(self, on_sample: OnSample, on_error: OnError | None = None) -> bool:
        if not self._source.is_available():
            logger.error("Geolocation not supported")
            return False

        if self._task is not None:
            logger.info("Already tracking")
            return True

        self._on_sample = on_sample
        self._on_error = on_error
        self._generation += 1
        self._task = asyncio.create_task(self._run(self._generation))
        logger.info("GPS tracking started")
        return True

    def stop(self) -> None:
        task = self._task
        self._generation += 1
        self._task = None
        self._on_sample = None
        self._on_error = None
        if task is not None:
            task.cancel()
            logger.info("GPS tracking stopped")

    async def aclose(self) -> None:
        """Stop and wait for the sampling task to unwind."""
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self, generation: int) -> None:
        try:
            async for item in self._source.watch(self._options):
                if generation != self._generation:
                    return
                if isinstance(item, PositionError):
                    self._emit_error(item)
                    if item.kind == LocationErrorKind.PERMISSION_DENIED:
                        return
                    continue
                self._last_position = item
                self._emit_sample(item)
        except PositionError as exc:
            if generation == self._generation:
                self._emit_error(exc)
        finally:
            if generation == self._generation:
                # stream ended on its own: fall back to idle
                self._task = None
                self._on_sample = None
                self._on_error = None

    def _emit_sample(self, position: Position) -> None:
        if self._on_sample is None:
            return
        try:
            self._on_sample(position.lat, position.lng, position.accuracy)
        except Exception:
            # a failing consumer must not end tracking
            logger.exception("Location sample callback failed")

    def _emit_error(self, error: PositionError) -> None:
        logger.warning(f"Location error: {error.kind} {error.message}")
        if self._on_error is None:
            return
        try:
            self._on_error(error.kind, error.message)
        except Exception:
            logger.exception("Location error callback failed")

    async def get_once(self, options: PositionOptions | None = None) -> Position:
        """Single fix; raises ``PositionError``."""
        if not self._source.is_available():
            raise PositionError(
                LocationErrorKind.UNAVAILABLE, "Geolocation not supported"
            )
        position = await self._source.current_position(options or self._options)
        self._last_position = position
        return position

    async def request_permission(self) -> bool:
        """Probe the source with a single fix."""
        try:
            await self.get_once()
        except PositionError as exc:
            logger.error(f"Location permission probe failed: {exc.message}")
            return False
        return True

    async def battery_level(self) -> int | None:
        return await self._source.battery_level()
