"""
Unit Tests for the Status Polling Client

Tests cover:
1. Progress mapping and terminal states
2. Client-side timeout that leaves server state alone
3. Transient status failures
4. Cancellation and cleanup
"""

import asyncio
from uuid import uuid4

import pytest

from accounting.models import AddCreditsRequest
from accounting.service import LedgerService
from anchoring.fingerprint import fingerprint_bytes
from anchoring.models import RegistrationStatus, RegistrationStatusResponse
from anchoring.network import InternalTimestamp
from anchoring.polling import (
    ClientPollTimeout,
    LocalStatusSource,
    StatusPoller,
    StatusUnavailable,
)
from anchoring.service import RegistrationService
from common.config import Settings


OWNER_ID = "user-123"
FINGERPRINT = fingerprint_bytes(b"my brand logo")
REGISTRATION_ID = uuid4()


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedSource:
    """Returns the given statuses in order, repeating the last one."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.calls = 0

    async def fetch_status(self, registration_id):
        status = self.statuses[min(self.calls, len(self.statuses) - 1)]
        self.calls += 1
        if isinstance(status, Exception):
            raise status
        return RegistrationStatusResponse(
            registration_id=registration_id,
            status=status,
            fingerprint=FINGERPRINT,
            error_message="Anchoring failed: calendar down" if status == RegistrationStatus.FAILED else None,
        )


def _poller(source, time: FakeTime, **kwargs) -> StatusPoller:
    kwargs.setdefault("interval", 3.0)
    kwargs.setdefault("max_wait", 300.0)
    return StatusPoller(source, REGISTRATION_ID, sleep=time.sleep, clock=time.clock, **kwargs)


class TestPolling:
    """Tests for polling until a terminal state."""

    @pytest.mark.asyncio
    async def test_polls_until_confirmed(self):
        time = FakeTime()
        updates = []
        source = ScriptedSource(
            RegistrationStatus.PENDING,
            RegistrationStatus.PROCESSING,
            RegistrationStatus.PROCESSING,
            RegistrationStatus.CONFIRMED,
        )
        poller = _poller(source, time, on_update=updates.append)

        result = await poller.run()

        assert result.status == RegistrationStatus.CONFIRMED
        assert poller.progress == 100
        assert [u.progress for u in updates] == [10, 50, 50, 100]
        assert time.sleeps == [3.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_failed_stalls_progress(self):
        time = FakeTime()
        updates = []
        source = ScriptedSource(
            RegistrationStatus.PENDING,
            RegistrationStatus.PROCESSING,
            RegistrationStatus.FAILED,
        )
        poller = _poller(source, time, on_update=updates.append)

        result = await poller.run()

        assert result.status == RegistrationStatus.FAILED
        assert result.error_message
        assert poller.progress == 50
        assert updates[-1].progress == 50

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_next_tick(self):
        time = FakeTime()
        source = ScriptedSource(StatusUnavailable("connection reset"), RegistrationStatus.CONFIRMED)
        poller = _poller(source, time)

        result = await poller.run()

        assert result.status == RegistrationStatus.CONFIRMED
        assert source.calls == 2

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            StatusPoller(ScriptedSource(RegistrationStatus.PENDING), REGISTRATION_ID, interval=0)

    def test_from_settings(self):
        settings = Settings(poll_interval_seconds=2.0, poll_max_wait_seconds=60)

        poller = StatusPoller.from_settings(ScriptedSource(RegistrationStatus.PENDING), REGISTRATION_ID, settings)

        assert poller.interval == 2.0
        assert poller.max_wait == 60


class TestClientTimeout:
    """Tests for the advisory client-side timeout."""

    @pytest.mark.asyncio
    async def test_timeout_is_local(self):
        time = FakeTime()
        poller = _poller(ScriptedSource(RegistrationStatus.PROCESSING), time, max_wait=10.0)

        with pytest.raises(ClientPollTimeout) as exc_info:
            await poller.run()

        assert exc_info.value.last_status == RegistrationStatus.PROCESSING
        assert "check back" in str(exc_info.value)
        assert time.sleeps == [3.0, 3.0, 3.0, 1.0]

    @pytest.mark.asyncio
    async def test_timeout_leaves_server_state_alone(self):
        """Test that a registration can still confirm after the client gave up."""
        ledger = LedgerService()
        ledger.add_credits(OWNER_ID, AddCreditsRequest(amount=1, reason="Single registration", reference_id="pay-1"))
        service = RegistrationService(ledger, InternalTimestamp(), settings=Settings(sweep_interval_seconds=0))
        registration = service.submit(OWNER_ID, FINGERPRINT)
        service.begin_processing(registration.id)

        time = FakeTime()
        poller = StatusPoller(
            LocalStatusSource(service, OWNER_ID),
            registration.id,
            interval=3.0,
            max_wait=9.0,
            sleep=time.sleep,
            clock=time.clock,
        )
        with pytest.raises(ClientPollTimeout):
            await poller.run()

        assert service.get(registration.id).status == RegistrationStatus.PROCESSING

        receipt = await service.network.submit(FINGERPRINT)
        assert service.confirm(registration.id, receipt).status == RegistrationStatus.CONFIRMED


class TestCancellation:
    """Tests for stopping a poller."""

    @pytest.mark.asyncio
    async def test_cancel_stops_task(self):
        poller = StatusPoller(ScriptedSource(RegistrationStatus.PROCESSING), REGISTRATION_ID, interval=60.0)

        task = poller.start()
        await asyncio.sleep(0.01)
        poller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert task.cancelled()
        assert poller.running is False
        assert poller.progress == 50

    @pytest.mark.asyncio
    async def test_context_manager_releases_task(self):
        async with StatusPoller(
            ScriptedSource(RegistrationStatus.PENDING), REGISTRATION_ID, interval=60.0
        ) as poller:
            await asyncio.sleep(0.01)
            assert poller.running is True

        assert poller.running is False
        assert poller.progress == 10
