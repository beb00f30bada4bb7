"""
Anchoring networks.

``OpenTimestampsCalendar`` submits digests to public OpenTimestamps
calendars and later upgrades their pending attestations to Bitcoin
block-header attestations. ``InternalTimestamp`` records the time in our
own database only; it is a fallback, not an independent proof.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

import httpx
import structlog

from .fingerprint import normalize_fingerprint
from .models import AnchorMethod, AnchorReceipt
from .proof import (
    InvalidProofFormat,
    build_detached_timestamp,
    build_internal_receipt,
    parse_detached_timestamp,
    parse_timestamp,
    splice,
)

logger = structlog.get_logger().bind(system="anchoring.network")

OTS_HEADERS = {
    "Accept": "application/vnd.opentimestamps.v1",
    "User-Agent": "proofstamp",
}


class AnchoringError(Exception):
    pass


class AnchoringNetwork(Protocol):
    name: str

    async def submit(self, fingerprint: str) -> AnchorReceipt: ...

    async def upgrade(self, receipt: AnchorReceipt) -> AnchorReceipt: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def proof_reference(prefix: str, fingerprint: str, at: datetime) -> str:
    return f"{prefix}:{fingerprint[:16]}:{int(at.timestamp() * 1000)}"


class OpenTimestampsCalendar:
    name = "opentimestamps"

    def __init__(
        self,
        calendar_urls: list[str],
        timeout: float = 10.0,
        confirm_on_acceptance: bool = True,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not calendar_urls:
            raise ValueError("at least one calendar url is required")
        self.calendar_urls = [url.rstrip("/") for url in calendar_urls]
        self.confirm_on_acceptance = confirm_on_acceptance
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=OTS_HEADERS)
        self._now = clock

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def submit(self, fingerprint: str) -> AnchorReceipt:
        fingerprint = normalize_fingerprint(fingerprint)
        digest = bytes.fromhex(fingerprint)
        errors = []

        for url in self.calendar_urls:
            try:
                resp = await self._client.post(f"{url}/digest", content=digest, headers=OTS_HEADERS)
                resp.raise_for_status()
                artifact = build_detached_timestamp(fingerprint, resp.content)
                parsed = parse_detached_timestamp(artifact)
            except (httpx.HTTPError, InvalidProofFormat) as e:
                logger.warning("calendar_failed", calendar=url, error=str(e))
                errors.append(f"{url}: {e}")
                continue

            now = self._now()
            heights = parsed.block_heights
            logger.info("calendar_accepted", calendar=url, fingerprint=fingerprint, pending=len(parsed.pending))
            return AnchorReceipt(
                proof_reference=proof_reference("ots", fingerprint, now),
                network=self.name,
                method=AnchorMethod.OPEN_TIMESTAMP,
                confirmed=bool(heights) or self.confirm_on_acceptance,
                proof_data=artifact,
                anchored_at=now,
                block_reference=str(heights[0]) if heights else None,
            )

        raise AnchoringError("all calendars failed: " + "; ".join(errors))

    async def upgrade(self, receipt: AnchorReceipt) -> AnchorReceipt:
        """Ask each pending calendar for a Bitcoin attestation and splice it in."""
        try:
            parsed = parse_detached_timestamp(receipt.proof_data)
        except InvalidProofFormat as e:
            raise AnchoringError(f"stored receipt is unreadable: {e}") from e

        data = receipt.proof_data
        if not parsed.bitcoin_anchored:
            # back to front, so spans of earlier attestations stay valid
            for attestation in sorted(parsed.pending, key=lambda a: a.span[0], reverse=True):
                upgraded = await self._fetch_upgrade(data, attestation)
                if upgraded is not None:
                    data = upgraded

        final = parse_detached_timestamp(data)
        if not final.bitcoin_anchored:
            return receipt

        heights = final.block_heights
        logger.info("receipt_upgraded", proof_reference=receipt.proof_reference, block_height=heights[0])
        return receipt.model_copy(update={
            "confirmed": True,
            "proof_data": data,
            "block_reference": str(heights[0]),
        })

    async def _fetch_upgrade(self, data: bytes, attestation) -> Optional[bytes]:
        url = f"{attestation.uri}/timestamp/{attestation.commitment.hex()}"
        try:
            resp = await self._client.get(url, headers=OTS_HEADERS)
        except httpx.HTTPError as e:
            logger.warning("calendar_upgrade_failed", calendar=attestation.uri, error=str(e))
            return None

        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            logger.warning("calendar_upgrade_failed", calendar=attestation.uri, status=resp.status_code)
            return None

        try:
            found = parse_timestamp(resp.content, attestation.commitment)
            if not any(a.kind == "bitcoin" for a in found):
                return None
            _, merged = splice(data, attestation, resp.content)
        except InvalidProofFormat as e:
            logger.warning("calendar_upgrade_invalid", calendar=attestation.uri, error=str(e))
            return None
        return merged


class InternalTimestamp:
    name = "internal"

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._now = clock

    async def submit(self, fingerprint: str) -> AnchorReceipt:
        fingerprint = normalize_fingerprint(fingerprint)
        now = self._now()
        return AnchorReceipt(
            proof_reference=proof_reference("internal", fingerprint, now),
            network=self.name,
            method=AnchorMethod.INTERNAL,
            confirmed=True,
            proof_data=build_internal_receipt(fingerprint, now.isoformat()),
            anchored_at=now,
        )

    async def upgrade(self, receipt: AnchorReceipt) -> AnchorReceipt:
        return receipt


class FallbackNetwork:
    """Try ``primary``; when it fails outright, record with ``fallback``."""

    def __init__(self, primary: AnchoringNetwork, fallback: AnchoringNetwork):
        self.primary = primary
        self.fallback = fallback
        self.name = primary.name

    async def submit(self, fingerprint: str) -> AnchorReceipt:
        try:
            return await self.primary.submit(fingerprint)
        except AnchoringError as e:
            logger.warning("anchoring_fallback", network=self.fallback.name, error=str(e))
            return await self.fallback.submit(fingerprint)

    async def upgrade(self, receipt: AnchorReceipt) -> AnchorReceipt:
        if receipt.network == self.fallback.name:
            return await self.fallback.upgrade(receipt)
        return await self.primary.upgrade(receipt)

    async def aclose(self) -> None:
        close = getattr(self.primary, "aclose", None)
        if close is not None:
            await close()


def build_network(settings, client: Optional[httpx.AsyncClient] = None) -> AnchoringNetwork:
    calendar = OpenTimestampsCalendar(
        settings.calendar_urls,
        timeout=settings.calendar_timeout_seconds,
        confirm_on_acceptance=settings.confirm_on_calendar_acceptance,
        client=client,
    )
    if settings.internal_fallback:
        return FallbackNetwork(calendar, InternalTimestamp())
    return calendar
