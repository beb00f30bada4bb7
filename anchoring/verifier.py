"""Proof verification.

Fingerprint-only checks look the fingerprint up in the registry and
re-validate the stored proof rather than trusting the CONFIRMED flag.
Proof-file checks need nothing but the content (or its fingerprint) and
the ``.ots`` artifact, so any third party can reproduce the result.
"""

from __future__ import annotations

from typing import Optional

import structlog

from common.config import DEFAULT_LEGAL_NOTICE

from .fingerprint import fingerprint_bytes, is_valid_fingerprint, normalize_fingerprint
from .models import (
    AnchorMethod,
    AnchoringProof,
    ProofSummary,
    Registration,
    RegistrationStatus,
    RegistrationSummary,
    VerificationResponse,
    VerificationStatus,
)
from .proof import InvalidProofFormat, parse_detached_timestamp, parse_internal_receipt
from .storage import InMemoryRegistry

logger = structlog.get_logger().bind(system="anchoring.verifier")

OTS_INSTRUCTIONS = (
    "Download the .ots proof and verify it together with the original file, "
    "for example with `ots verify <file>.ots` or at https://opentimestamps.org. "
    "No account or access to this service is needed."
)
INTERNAL_INSTRUCTIONS = (
    "This record was timestamped by the service database only and cannot be "
    "checked against a public ledger."
)


def _summary(registration: Registration) -> RegistrationSummary:
    return RegistrationSummary(
        id=registration.id,
        status=registration.status,
        created_at=registration.created_at,
        confirmed_at=registration.confirmed_at,
    )


class ProofVerifier:
    def __init__(self, registry: Optional[InMemoryRegistry] = None, legal_notice: str = DEFAULT_LEGAL_NOTICE):
        self.registry = registry
        self.legal_notice = legal_notice

    def verify(
        self,
        fingerprint: Optional[str] = None,
        proof: Optional[bytes] = None,
        content: Optional[bytes] = None,
    ) -> VerificationResponse:
        if content is not None:
            if proof is None:
                return self.verify_fingerprint(fingerprint_bytes(content))
            return self.verify_content(content, proof)
        if proof is not None:
            return self.verify_proof(fingerprint, proof)
        return self.verify_fingerprint(fingerprint)

    def verify_fingerprint(self, fingerprint: object) -> VerificationResponse:
        normalized = self._gate(fingerprint)
        if normalized is None:
            return self._invalid_fingerprint(fingerprint)
        if self.registry is None:
            return self._not_found(normalized, "No registry is available for lookups.")

        registrations = [Registration(**r) for r in self.registry.find_by_fingerprint(normalized)]

        for registration in registrations:
            if registration.status != RegistrationStatus.CONFIRMED:
                continue
            proof = self._stored_proof(registration)
            if proof is None:
                continue
            return VerificationResponse(
                status=VerificationStatus.VERIFIED,
                fingerprint=normalized,
                message="Registration verified. This content has a valid, immutable proof of existence.",
                registration=_summary(registration),
                proof=ProofSummary.from_proof(proof),
                legal_notice=self.legal_notice,
                instructions=self._instructions(proof.method),
            )

        for registration in registrations:
            if registration.status in (RegistrationStatus.PENDING, RegistrationStatus.PROCESSING):
                return VerificationResponse(
                    status=VerificationStatus.PROCESSING,
                    fingerprint=normalized,
                    message="A registration for this content exists and is still being anchored.",
                    registration=_summary(registration),
                    legal_notice=self.legal_notice,
                )

        return self._not_found(normalized, "No registration matches this fingerprint.")

    def verify_content(self, content: bytes, proof_data: bytes) -> VerificationResponse:
        return self.verify_proof(fingerprint_bytes(content), proof_data)

    def verify_proof(self, fingerprint: object, proof_data: bytes) -> VerificationResponse:
        """Check that ``proof_data`` anchors ``fingerprint`` without any registry state."""
        normalized = self._gate(fingerprint)
        if normalized is None:
            return self._invalid_fingerprint(fingerprint)

        try:
            timestamp = parse_detached_timestamp(proof_data)
        except InvalidProofFormat as e:
            logger.info("proof_rejected", fingerprint=normalized, error=str(e))
            return VerificationResponse(
                status=VerificationStatus.INVALID_FORMAT,
                fingerprint=normalized,
                message=f"The proof file is not a valid OpenTimestamps proof: {e}",
            )

        if timestamp.fingerprint != normalized:
            return self._not_found(
                normalized,
                "The proof does not anchor this content.",
                details={"proofFingerprint": timestamp.fingerprint},
            )

        response = VerificationResponse(
            status=VerificationStatus.VERIFIED,
            fingerprint=normalized,
            message=(
                "Proof verified against a Bitcoin block header."
                if timestamp.bitcoin_anchored
                else "Proof verified. The calendar attestation is awaiting inclusion in a Bitcoin block."
            ),
            legal_notice=self.legal_notice,
            instructions=OTS_INSTRUCTIONS,
            details={
                "attestations": [a.describe() for a in timestamp.attestations],
                "bitcoinAnchored": timestamp.bitcoin_anchored,
                "blockHeights": timestamp.block_heights,
            },
        )
        return self._enrich(response, proof_data)

    def _enrich(self, response: VerificationResponse, proof_data: bytes) -> VerificationResponse:
        """Attach the confirmed registration for this content.

        ``proof`` is only filled in when the uploaded artifact is the one
        stored for that registration.
        """
        if self.registry is None:
            return response
        enriched = None
        for data in self.registry.find_by_fingerprint(response.fingerprint):
            registration = Registration(**data)
            if registration.status != RegistrationStatus.CONFIRMED:
                continue
            stored = self.registry.proof_for(registration.id)
            if stored and stored["proof_data"] == proof_data:
                return response.model_copy(update={
                    "registration": _summary(registration),
                    "proof": ProofSummary.from_proof(AnchoringProof(**stored)),
                })
            if enriched is None:
                enriched = response.model_copy(update={"registration": _summary(registration)})
        return enriched or response

    def _stored_proof(self, registration: Registration) -> Optional[AnchoringProof]:
        data = self.registry.proof_for(registration.id)
        if not data:
            logger.error("confirmed_without_proof", registration_id=str(registration.id))
            return None
        proof = AnchoringProof(**data)
        try:
            if proof.method == AnchorMethod.INTERNAL:
                anchored = parse_internal_receipt(proof.proof_data)["hash"]
            else:
                anchored = parse_detached_timestamp(proof.proof_data).fingerprint
        except InvalidProofFormat as e:
            logger.error("stored_proof_invalid", registration_id=str(registration.id), error=str(e))
            return None
        if anchored != registration.fingerprint:
            logger.error("stored_proof_mismatch", registration_id=str(registration.id))
            return None
        return proof

    @staticmethod
    def _gate(fingerprint: object) -> Optional[str]:
        if isinstance(fingerprint, str) and is_valid_fingerprint(fingerprint.strip()):
            return normalize_fingerprint(fingerprint)
        return None

    @staticmethod
    def _instructions(method: AnchorMethod) -> str:
        return INTERNAL_INSTRUCTIONS if method == AnchorMethod.INTERNAL else OTS_INSTRUCTIONS

    def _invalid_fingerprint(self, fingerprint: object) -> VerificationResponse:
        return VerificationResponse(
            status=VerificationStatus.INVALID_FORMAT,
            fingerprint=fingerprint if isinstance(fingerprint, str) else "",
            message="Invalid fingerprint. A SHA-256 fingerprint has exactly 64 hexadecimal characters.",
        )

    def _not_found(self, fingerprint: str, message: str, details: Optional[dict] = None) -> VerificationResponse:
        return VerificationResponse(
            status=VerificationStatus.NOT_FOUND,
            fingerprint=fingerprint,
            message=message,
            legal_notice=self.legal_notice,
            details=details or {},
        )
