"""
Unit Tests for the Proof Verifier

Tests cover:
1. Format gate before any lookup
2. Fingerprint-only lookups (VERIFIED / PROCESSING / NOT_FOUND)
3. Stored proofs are re-validated, not trusted
4. Proof-file verification without any registry
"""

import httpx
import pytest

from accounting.models import AddCreditsRequest
from accounting.service import LedgerService
from anchoring.fingerprint import fingerprint_bytes
from anchoring.models import AnchorMethod, VerificationStatus
from anchoring.network import AnchoringError, InternalTimestamp, OpenTimestampsCalendar
from anchoring.proof import (
    OP_SHA256,
    TAG_FORK,
    bitcoin_attestation,
    build_detached_timestamp,
    pending_attestation,
)
from anchoring.service import RegistrationService
from anchoring.storage import InMemoryRegistry
from anchoring.verifier import INTERNAL_INSTRUCTIONS, OTS_INSTRUCTIONS, ProofVerifier
from common.config import DEFAULT_LEGAL_NOTICE, Settings


OWNER_ID = "user-123"
CONTENT = b"my brand logo"
FINGERPRINT = fingerprint_bytes(CONTENT)
CALENDAR = "https://a.pool.opentimestamps.org"


class SpyRegistry(InMemoryRegistry):
    def __init__(self):
        super().__init__()
        self.lookups = 0

    def find_by_fingerprint(self, fingerprint):
        self.lookups += 1
        return super().find_by_fingerprint(fingerprint)


class BrokenNetwork:
    name = "opentimestamps"

    async def submit(self, fingerprint):
        raise AnchoringError("calendar down")

    async def upgrade(self, receipt):
        return receipt


def _calendar_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=pending_attestation(CALENDAR))


def _service(network=None) -> RegistrationService:
    ledger = LedgerService()
    ledger.add_credits(OWNER_ID, AddCreditsRequest(amount=5, reason="Professional plan", reference_id="pay-1"))
    if network is None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(_calendar_handler))
        network = OpenTimestampsCalendar([CALENDAR], client=client)
    return RegistrationService(ledger, network, registry=SpyRegistry(), settings=Settings(sweep_interval_seconds=0))


def _artifact(body: bytes = None) -> bytes:
    return build_detached_timestamp(FINGERPRINT, body or pending_attestation(CALENDAR))


class TestFormatGate:
    """Tests for syntactic validation before lookup."""

    @pytest.mark.parametrize("value", [FINGERPRINT[:63], "z" * 64, "", None, FINGERPRINT + "00"])
    def test_invalid_format_without_lookup(self, value):
        registry = SpyRegistry()
        verifier = ProofVerifier(registry)

        result = verifier.verify_fingerprint(value)

        assert result.status == VerificationStatus.INVALID_FORMAT
        assert registry.lookups == 0
        assert result.legal_notice is None

    def test_invalid_fingerprint_with_proof(self):
        result = ProofVerifier().verify_proof("abc", _artifact())

        assert result.status == VerificationStatus.INVALID_FORMAT


class TestFingerprintLookup:
    """Tests for fingerprint-only verification."""

    @pytest.mark.asyncio
    async def test_confirmed_registration_verifies(self):
        service = _service()
        registration = service.submit(OWNER_ID, FINGERPRINT)
        await service.process(registration.id)
        verifier = ProofVerifier(service.registry)

        result = verifier.verify_fingerprint(f"  {FINGERPRINT.upper()}  ")

        assert result.status == VerificationStatus.VERIFIED
        assert result.fingerprint == FINGERPRINT
        assert result.registration.id == registration.id
        assert result.proof.proof_reference == service.proof_for(registration.id).proof_reference
        assert result.legal_notice == DEFAULT_LEGAL_NOTICE
        assert result.instructions == OTS_INSTRUCTIONS

    def test_pending_registration_is_processing(self):
        service = _service()
        service.submit(OWNER_ID, FINGERPRINT)

        result = ProofVerifier(service.registry).verify_fingerprint(FINGERPRINT)

        assert result.status == VerificationStatus.PROCESSING
        assert result.proof is None
        assert result.legal_notice

    def test_unknown_fingerprint_not_found(self):
        result = ProofVerifier(InMemoryRegistry()).verify_fingerprint(FINGERPRINT)

        assert result.status == VerificationStatus.NOT_FOUND
        assert result.message

    @pytest.mark.asyncio
    async def test_failed_only_is_not_found(self):
        service = _service(BrokenNetwork())
        registration = service.submit(OWNER_ID, FINGERPRINT)
        await service.process(registration.id)

        result = ProofVerifier(service.registry).verify_fingerprint(FINGERPRINT)

        assert result.status == VerificationStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_tampered_stored_proof_is_not_trusted(self):
        service = _service()
        registration = service.submit(OWNER_ID, FINGERPRINT)
        await service.process(registration.id)
        service.registry.proofs[registration.id]["proof_data"] = b"tampered"

        result = ProofVerifier(service.registry).verify_fingerprint(FINGERPRINT)

        assert result.status == VerificationStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_internal_receipt_verifies_with_caveat(self):
        service = _service(InternalTimestamp())
        registration = service.submit(OWNER_ID, FINGERPRINT)
        await service.process(registration.id)

        result = ProofVerifier(service.registry).verify_fingerprint(FINGERPRINT)

        assert result.status == VerificationStatus.VERIFIED
        assert result.proof.method == AnchorMethod.INTERNAL
        assert result.instructions == INTERNAL_INSTRUCTIONS


class TestProofFile:
    """Tests for verifying content against a .ots artifact."""

    def test_pending_artifact_verifies_without_registry(self):
        result = ProofVerifier().verify_content(CONTENT, _artifact())

        assert result.status == VerificationStatus.VERIFIED
        assert result.registration is None
        assert result.details["bitcoinAnchored"] is False
        assert result.details["attestations"][0]["calendar"] == CALENDAR
        assert result.instructions == OTS_INSTRUCTIONS

    def test_bitcoin_artifact(self):
        body = bytes([TAG_FORK]) + pending_attestation(CALENDAR) + bytes([OP_SHA256]) + bitcoin_attestation(840000)

        result = ProofVerifier().verify_content(CONTENT, _artifact(body))

        assert result.status == VerificationStatus.VERIFIED
        assert result.details["bitcoinAnchored"] is True
        assert result.details["blockHeights"] == [840000]

    def test_other_content_not_found(self):
        result = ProofVerifier().verify_content(b"different content", _artifact())

        assert result.status == VerificationStatus.NOT_FOUND
        assert result.details["proofFingerprint"] == FINGERPRINT

    def test_malformed_artifact(self):
        result = ProofVerifier().verify_proof(FINGERPRINT, b"\x00OpenTimestamps junk")

        assert result.status == VerificationStatus.INVALID_FORMAT

    @pytest.mark.asyncio
    async def test_registry_enriches_result(self):
        service = _service()
        registration = service.submit(OWNER_ID, FINGERPRINT)
        await service.process(registration.id)
        artifact = service.proof_for(registration.id).proof_data

        result = ProofVerifier(service.registry).verify(content=CONTENT, proof=artifact)

        assert result.status == VerificationStatus.VERIFIED
        assert result.registration.id == registration.id
        assert result.proof is not None

    @pytest.mark.asyncio
    async def test_other_artifact_is_not_reported_as_stored_proof(self):
        """Test that a different valid artifact for the same content only links the registration."""
        service = _service()
        registration = service.submit(OWNER_ID, FINGERPRINT)
        await service.process(registration.id)
        artifact = build_detached_timestamp(FINGERPRINT, bitcoin_attestation(840000))

        result = ProofVerifier(service.registry).verify(content=CONTENT, proof=artifact)

        assert result.status == VerificationStatus.VERIFIED
        assert result.details["bitcoinAnchored"] is True
        assert result.registration.id == registration.id
        assert result.proof is None

    def test_dispatch_content_only(self):
        result = ProofVerifier(InMemoryRegistry()).verify(content=CONTENT)

        assert result.status == VerificationStatus.NOT_FOUND
        assert result.fingerprint == FINGERPRINT
