import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel

from accounting.models import RefundRequest
from accounting.service import LedgerService
from common.config import Settings, get_settings

from .fingerprint import normalize_fingerprint
from .models import (
    RegistrationStatus,
    AnchorReceipt,
    Registration,
    AnchoringProof,
    ProofSummary,
    RegistrationStatusResponse,
    RegistrationSummary,
    DuplicateCheckResponse,
)
from .network import AnchoringError, AnchoringNetwork
from .storage import InMemoryRegistry, DuplicateRegistration

logger = structlog.get_logger().bind(system="anchoring.registrations")

ANCHORING_TIMEOUT = "AnchoringTimeout"


class RegistrationError(Exception):
    pass


class RegistrationNotFound(RegistrationError):
    pass


class RetryNotAllowed(RegistrationError):
    pass


class RegistrationConflict(RegistrationError):
    pass


class SweepResult(BaseModel):
    checked: int = 0
    confirmed: int = 0
    failed: int = 0


class RegistrationService:
    def __init__(
        self,
        ledger: LedgerService,
        network: AnchoringNetwork,
        registry: Optional[InMemoryRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.network = network
        self.registry = registry or InMemoryRegistry()
        self.settings = settings or get_settings()
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def submit(
        self, owner_id: str, fingerprint: str, registration_id: Optional[UUID] = None
    ) -> Registration:
        """Consume one credit and create a PENDING registration.

        Submitting an id that already exists returns that registration
        without touching the ledger again. ``InsufficientBalance`` leaves
        no registration behind.
        """
        fingerprint = normalize_fingerprint(fingerprint)
        registration_id = registration_id or uuid4()

        existing = self.registry.get(registration_id)
        if existing:
            return self._resubmitted(Registration(**existing), owner_id, fingerprint)

        credit_reference = str(registration_id)
        consumed = self.ledger.consume_credit(
            owner_id,
            credit_reference,
            reason="Registration anchoring",
            amount=self.settings.credits_per_registration,
            created_by=owner_id,
        )

        now = self._now()
        registration = Registration(
            id=registration_id,
            owner_id=owner_id,
            fingerprint=fingerprint,
            created_at=now,
            updated_at=now,
            credit_reference=credit_reference,
        )
        try:
            self.registry.insert(registration.model_dump())
        except DuplicateRegistration as e:
            existing = Registration(**e.existing)
            if consumed.success and existing.owner_id != owner_id:
                # lost the race for this id to another owner: give the credit back
                self.ledger.refund_credit(
                    owner_id,
                    RefundRequest(
                        amount=self.settings.credits_per_registration,
                        reason="Registration id already in use",
                        reference_id=credit_reference,
                    ),
                    performed_by="system",
                )
            return self._resubmitted(existing, owner_id, fingerprint)

        logger.info(
            "registration_created",
            registration_id=str(registration.id),
            owner_id=owner_id,
            fingerprint=fingerprint,
            credit_idempotent=consumed.idempotent,
            remaining_balance=consumed.remaining_balance,
        )
        return registration

    def _resubmitted(self, registration: Registration, owner_id: str, fingerprint: str) -> Registration:
        if registration.owner_id != owner_id or registration.fingerprint != fingerprint:
            raise RegistrationConflict(f"registration id {registration.id} is already in use")
        logger.info("registration_resubmitted", registration_id=str(registration.id))
        return registration

    def begin_processing(self, registration_id: UUID) -> tuple[Registration, bool]:
        """PENDING -> PROCESSING. Only the caller that wins the move gets ``True``."""
        now = self._now()
        updated = self.registry.transition(registration_id, RegistrationStatus.PENDING, {
            "status": RegistrationStatus.PROCESSING,
            "processing_started_at": now,
            "updated_at": now,
        })
        if updated is None:
            return self._load(registration_id), False

        logger.info("registration_processing", registration_id=str(registration_id))
        return Registration(**updated), True

    async def process(self, registration_id: UUID) -> Registration:
        registration, started = self.begin_processing(registration_id)
        if not started:
            # already in flight or finished elsewhere: observe only
            return registration
        return await self._anchor(registration)

    async def _anchor(self, registration: Registration) -> Registration:
        remaining = (self._deadline(registration) - self._now()).total_seconds()
        try:
            receipt = await asyncio.wait_for(
                self.network.submit(registration.fingerprint), timeout=max(remaining, 0)
            )
        except asyncio.TimeoutError:
            return self.fail(registration.id, self._timeout_message())
        except AnchoringError as e:
            return self.fail(registration.id, f"Anchoring failed: {e}")

        if receipt.confirmed:
            return self.confirm(registration.id, receipt)

        updated = self.registry.transition(registration.id, RegistrationStatus.PROCESSING, {
            "pending_receipt": receipt.model_dump(),
            "updated_at": self._now(),
        })
        if updated is None:
            return self._load(registration.id)
        logger.info(
            "registration_awaiting_confirmation",
            registration_id=str(registration.id),
            proof_reference=receipt.proof_reference,
        )
        return Registration(**updated)

    def confirm(self, registration_id: UUID, receipt: AnchorReceipt) -> Registration:
        """PROCESSING -> CONFIRMED, writing the proof in the same step."""
        now = self._now()
        proof = AnchoringProof(
            id=uuid4(),
            registration_id=registration_id,
            proof_reference=receipt.proof_reference,
            network=receipt.network,
            method=receipt.method,
            confirmed_at=now,
            block_reference=receipt.block_reference,
            confirmation_count=receipt.confirmation_count,
            proof_data=receipt.proof_data,
        )
        updated = self.registry.confirm(registration_id, {
            "status": RegistrationStatus.CONFIRMED,
            "confirmed_at": now,
            "updated_at": now,
            "pending_receipt": None,
        }, proof.model_dump())
        if updated is None:
            current = self._load(registration_id)
            logger.info("registration_transition_ignored", registration_id=str(registration_id), status=current.status.value)
            return current

        logger.info(
            "registration_confirmed",
            registration_id=str(registration_id),
            proof_reference=proof.proof_reference,
            network=proof.network,
        )
        return Registration(**updated)

    def fail(self, registration_id: UUID, error_message: str) -> Registration:
        """PROCESSING -> FAILED. Refunds the credit once the last attempt fails."""
        if not error_message:
            raise ValueError("a failed registration needs an error message")

        updated = self.registry.transition(registration_id, RegistrationStatus.PROCESSING, {
            "status": RegistrationStatus.FAILED,
            "error_message": error_message,
            "updated_at": self._now(),
            "pending_receipt": None,
        })
        if updated is None:
            current = self._load(registration_id)
            logger.info("registration_transition_ignored", registration_id=str(registration_id), status=current.status.value)
            return current

        registration = Registration(**updated)
        logger.warning(
            "registration_failed",
            registration_id=str(registration_id),
            attempt=registration.attempt,
            error=error_message,
        )
        if registration.attempt >= self.settings.anchoring_max_attempts and self.settings.refund_on_definitive_failure:
            self.ledger.refund_credit(
                registration.owner_id,
                RefundRequest(
                    amount=self.settings.credits_per_registration,
                    reason="Anchoring failed on the final attempt",
                    reference_id=registration.credit_reference,
                ),
                performed_by="system",
            )
        return registration

    async def refresh(self, registration_id: UUID) -> Registration:
        """Re-check a PROCESSING registration: upgrade its receipt or time it out."""
        registration = self._load(registration_id)
        if registration.status != RegistrationStatus.PROCESSING:
            return registration

        if self._now() >= self._deadline(registration):
            return self.fail(registration.id, self._timeout_message())

        if registration.pending_receipt is None:
            return registration

        try:
            receipt = await self.network.upgrade(registration.pending_receipt)
        except AnchoringError as e:
            logger.warning("receipt_upgrade_failed", registration_id=str(registration_id), error=str(e))
            return registration

        if receipt.confirmed:
            return self.confirm(registration.id, receipt)
        return registration

    async def sweep(self) -> SweepResult:
        result = SweepResult()
        for data in self.registry.list_by_status(RegistrationStatus.PROCESSING):
            result.checked += 1
            after = await self.refresh(data["id"])
            if after.status == RegistrationStatus.CONFIRMED:
                result.confirmed += 1
            elif after.status == RegistrationStatus.FAILED:
                result.failed += 1

        if result.checked:
            logger.info("registrations_swept", **result.model_dump())
        return result

    def retry(self, registration_id: UUID, owner_id: str) -> Registration:
        """Start a fresh attempt for a FAILED registration under the same credit."""
        failed = self.get(registration_id, owner_id)
        if failed.status != RegistrationStatus.FAILED:
            raise RetryNotAllowed(f"registration {registration_id} is {failed.status.value}, only FAILED can be retried")
        if failed.attempt >= self.settings.anchoring_max_attempts:
            raise RetryNotAllowed(
                f"registration {registration_id} reached the limit of {self.settings.anchoring_max_attempts} attempts"
            )

        now = self._now()
        registration = Registration(
            id=uuid4(),
            owner_id=failed.owner_id,
            fingerprint=failed.fingerprint,
            created_at=now,
            updated_at=now,
            attempt=failed.attempt + 1,
            retry_of=failed.id,
            credit_reference=failed.credit_reference,
        )
        try:
            self.registry.insert(registration.model_dump())
        except DuplicateRegistration as e:
            return Registration(**e.existing)

        logger.info(
            "registration_retried",
            registration_id=str(registration.id),
            retry_of=str(failed.id),
            attempt=registration.attempt,
        )
        return registration

    def get(self, registration_id: UUID, owner_id: Optional[str] = None) -> Registration:
        registration = self._load(registration_id)
        if owner_id is not None and registration.owner_id != owner_id:
            raise RegistrationNotFound(f"registration {registration_id} not found")
        return registration

    def proof_for(self, registration_id: UUID) -> Optional[AnchoringProof]:
        data = self.registry.proof_for(registration_id)
        return AnchoringProof(**data) if data else None

    def status_view(self, registration_id: UUID, owner_id: Optional[str] = None) -> RegistrationStatusResponse:
        registration = self.get(registration_id, owner_id)
        proof = self.proof_for(registration.id)
        return RegistrationStatusResponse(
            registration_id=registration.id,
            status=registration.status,
            fingerprint=registration.fingerprint,
            error_message=registration.error_message,
            confirmed_at=registration.confirmed_at,
            proof=ProofSummary.from_proof(proof) if proof else None,
            attempt=registration.attempt,
            retry_of=registration.retry_of,
            can_retry=(
                registration.status == RegistrationStatus.FAILED
                and registration.attempt < self.settings.anchoring_max_attempts
            ),
        )

    def check_duplicate(self, owner_id: str, fingerprint: str) -> DuplicateCheckResponse:
        existing = self.registry.find_duplicate(owner_id, normalize_fingerprint(fingerprint))
        if not existing:
            return DuplicateCheckResponse(is_duplicate=False)
        registration = Registration(**existing)
        return DuplicateCheckResponse(
            is_duplicate=True,
            existing=RegistrationSummary(
                id=registration.id,
                status=registration.status,
                created_at=registration.created_at,
                confirmed_at=registration.confirmed_at,
            ),
        )

    def _load(self, registration_id: UUID) -> Registration:
        data = self.registry.get(registration_id)
        if not data:
            raise RegistrationNotFound(f"registration {registration_id} not found")
        return Registration(**data)

    def _deadline(self, registration: Registration) -> datetime:
        started = registration.processing_started_at or registration.created_at
        return started + timedelta(seconds=self.settings.anchoring_timeout_seconds)

    def _timeout_message(self) -> str:
        hours = self.settings.anchoring_timeout_seconds / 3600
        return f"{ANCHORING_TIMEOUT}: no confirmation within {hours:g} hours"
