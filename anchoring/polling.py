"""
Status polling.

``StatusPoller`` watches one registration from the client side: it asks
a ``StatusSource`` for the current status at a fixed interval until the
registration is terminal or ``max_wait`` has passed. Giving up only
raises ``ClientPollTimeout`` locally; the server keeps anchoring and may
still confirm later.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol
from uuid import UUID

import structlog

from .models import RegistrationStatus, RegistrationStatusResponse

logger = structlog.get_logger().bind(system="anchoring.polling")

PROGRESS = {
    RegistrationStatus.PENDING: 10,
    RegistrationStatus.PROCESSING: 50,
    RegistrationStatus.CONFIRMED: 100,
}


class ClientPollTimeout(Exception):
    def __init__(self, registration_id: UUID, waited: float, last_status: Optional[RegistrationStatus]):
        super().__init__(
            f"Still working on registration {registration_id}, check back later "
            f"(stopped watching after {waited:.0f}s)"
        )
        self.registration_id = registration_id
        self.waited = waited
        self.last_status = last_status


class StatusUnavailable(Exception):
    """The status could not be fetched right now; the next tick tries again."""


class StatusSource(Protocol):
    async def fetch_status(self, registration_id: UUID) -> RegistrationStatusResponse: ...


class LocalStatusSource:
    """Reads status straight from an in-process ``RegistrationService``."""

    def __init__(self, service, owner_id: Optional[str] = None):
        self.service = service
        self.owner_id = owner_id

    async def fetch_status(self, registration_id: UUID) -> RegistrationStatusResponse:
        return self.service.status_view(registration_id, self.owner_id)


@dataclass(frozen=True)
class PollUpdate:
    registration_id: UUID
    status: RegistrationStatus
    progress: int
    elapsed: float
    response: RegistrationStatusResponse


class StatusPoller:
    def __init__(
        self,
        source: StatusSource,
        registration_id: UUID,
        interval: float = 3.0,
        max_wait: float = 300.0,
        on_update: Optional[Callable[[PollUpdate], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("poll interval must be positive")
        self.source = source
        self.registration_id = registration_id
        self.interval = interval
        self.max_wait = max_wait
        self.on_update = on_update
        self._sleep = sleep
        self._clock = clock
        self.progress = 0
        self.last: Optional[RegistrationStatusResponse] = None
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, source: StatusSource, registration_id: UUID, settings, **kwargs) -> "StatusPoller":
        return cls(
            source,
            registration_id,
            interval=settings.poll_interval_seconds,
            max_wait=settings.poll_max_wait_seconds,
            **kwargs,
        )

    @property
    def status(self) -> Optional[RegistrationStatus]:
        return self.last.status if self.last else None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> RegistrationStatusResponse:
        started = self._clock()
        while True:
            elapsed = self._clock() - started
            try:
                response = await self.source.fetch_status(self.registration_id)
            except StatusUnavailable as e:
                logger.info("poll_status_unavailable", registration_id=str(self.registration_id), error=str(e))
            else:
                self._observe(response, elapsed)
                if response.status.is_terminal:
                    return response

            elapsed = self._clock() - started
            if elapsed >= self.max_wait:
                logger.info(
                    "poll_timeout",
                    registration_id=str(self.registration_id),
                    waited=elapsed,
                    last_status=self.status.value if self.status else None,
                )
                raise ClientPollTimeout(self.registration_id, elapsed, self.status)
            await self._sleep(min(self.interval, self.max_wait - elapsed))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> RegistrationStatusResponse:
        return await self.start()

    async def __aenter__(self) -> "StatusPoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()
        # settle the task so nothing keeps polling after the caller left
        await asyncio.gather(self._task, return_exceptions=True)

    def _observe(self, response: RegistrationStatusResponse, elapsed: float) -> None:
        self.last = response
        if response.status != RegistrationStatus.FAILED:
            self.progress = max(self.progress, PROGRESS[response.status])
        if self.on_update is not None:
            self.on_update(PollUpdate(
                registration_id=self.registration_id,
                status=response.status,
                progress=self.progress,
                elapsed=elapsed,
                response=response,
            ))
