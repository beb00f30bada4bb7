"""HTTP client for the registration API.

Wraps submit / process / status / verify with bounded retry on transport
errors and exposes ``fetch_status`` so it can feed a ``StatusPoller``.
Fingerprints are validated locally before anything goes on the wire.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional
from uuid import UUID, uuid4

import httpx
import structlog

from .fingerprint import fingerprint_bytes, is_valid_fingerprint, normalize_fingerprint
from .models import (
    RegistrationStatus,
    RegistrationStatusResponse,
    VerificationResponse,
    VerificationStatus,
)
from .polling import StatusPoller, StatusUnavailable

logger = structlog.get_logger().bind(system="anchoring.client")

PRINCIPAL_HEADER = "X-Principal-Id"


class RegistryClientError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class RegistryClient:
    def __init__(
        self,
        base_url: str,
        principal_id: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.principal_id = principal_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._max_retries = max_retries
        self._backoff = backoff
        self._sleep = sleep

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {PRINCIPAL_HEADER: self.principal_id}
        for attempt in range(self._max_retries):
            try:
                return await self._client.request(
                    method, f"{self.base_url}{path}", headers=headers, **kwargs
                )
            except httpx.TransportError as e:
                if attempt == self._max_retries - 1:
                    raise
                wait = self._backoff * 2 ** attempt
                logger.warning("registry_request_retry", path=path, attempt=attempt, wait=wait, error=str(e))
                await self._sleep(wait)
        raise ConnectionError("Max retries exceeded")

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail", resp.text)
            except ValueError:
                detail = resp.text
            raise RegistryClientError(resp.status_code, str(detail))

    async def submit(
        self, fingerprint: str, registration_id: Optional[UUID] = None
    ) -> RegistrationStatusResponse:
        """Register ``fingerprint``. The id is fixed up front so retries never pay twice."""
        fingerprint = normalize_fingerprint(fingerprint)
        registration_id = registration_id or uuid4()
        resp = await self._request(
            "POST",
            "/registrations",
            json={"fingerprint": fingerprint, "registrationId": str(registration_id)},
        )
        self._raise_for_status(resp)
        return RegistrationStatusResponse.model_validate(resp.json())

    async def submit_content(
        self, content: bytes, registration_id: Optional[UUID] = None
    ) -> RegistrationStatusResponse:
        return await self.submit(fingerprint_bytes(content), registration_id)

    async def process(self, registration_id: UUID) -> RegistrationStatusResponse:
        resp = await self._request("POST", f"/registrations/{registration_id}/process")
        self._raise_for_status(resp)
        return RegistrationStatusResponse.model_validate(resp.json())

    async def retry(self, registration_id: UUID) -> RegistrationStatusResponse:
        resp = await self._request("POST", f"/registrations/{registration_id}/retry")
        self._raise_for_status(resp)
        return RegistrationStatusResponse.model_validate(resp.json())

    async def status(self, registration_id: UUID) -> RegistrationStatusResponse:
        resp = await self._request("GET", "/registration-status", params={"id": str(registration_id)})
        self._raise_for_status(resp)
        return RegistrationStatusResponse.model_validate(resp.json())

    async def fetch_status(self, registration_id: UUID) -> RegistrationStatusResponse:
        try:
            return await self.status(registration_id)
        except httpx.TransportError as e:
            raise StatusUnavailable(str(e)) from e
        except RegistryClientError as e:
            if e.status_code >= 500 or e.status_code == 429:
                raise StatusUnavailable(str(e)) from e
            raise

    async def verify(self, fingerprint: str) -> VerificationResponse:
        if not isinstance(fingerprint, str) or not is_valid_fingerprint(fingerprint.strip()):
            return VerificationResponse(
                status=VerificationStatus.INVALID_FORMAT,
                fingerprint=fingerprint if isinstance(fingerprint, str) else "",
                message="Invalid fingerprint. A SHA-256 fingerprint has exactly 64 hexadecimal characters.",
            )
        resp = await self._request("GET", "/verify", params={"fingerprint": normalize_fingerprint(fingerprint)})
        return self._verification(resp)

    async def verify_proof(self, content: bytes, proof: bytes) -> VerificationResponse:
        resp = await self._request(
            "POST",
            "/verify",
            data={"fingerprint": fingerprint_bytes(content)},
            files={"proofFile": ("proof.ots", proof, "application/octet-stream")},
        )
        return self._verification(resp)

    def _verification(self, resp: httpx.Response) -> VerificationResponse:
        # INVALID_FORMAT comes back as a 400 with a regular body
        if resp.status_code in (200, 400):
            try:
                return VerificationResponse.model_validate(resp.json())
            except ValueError:
                pass
        self._raise_for_status(resp)
        return VerificationResponse.model_validate(resp.json())

    async def resume(self, registration_id: UUID) -> RegistrationStatusResponse:
        """Pick a registration back up after a reconnect.

        PENDING is triggered again (the trigger is idempotent), PROCESSING is
        only observed, and terminal registrations are returned as they are.
        """
        current = await self.status(registration_id)
        if current.status == RegistrationStatus.PENDING:
            logger.info("registration_resume_trigger", registration_id=str(registration_id))
            return await self.process(registration_id)
        return current

    def watch(self, registration_id: UUID, interval: float = 3.0, max_wait: float = 300.0, **kwargs) -> StatusPoller:
        return StatusPoller(self, registration_id, interval=interval, max_wait=max_wait, **kwargs)
