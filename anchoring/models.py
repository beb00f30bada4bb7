from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from .fingerprint import normalize_fingerprint


class RegistrationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RegistrationStatus.CONFIRMED, RegistrationStatus.FAILED)

    @property
    def rank(self) -> int:
        # CONFIRMED and FAILED share a rank: neither follows the other
        return {"PENDING": 0, "PROCESSING": 1, "CONFIRMED": 2, "FAILED": 2}[self.value]


class AnchorMethod(str, Enum):
    OPEN_TIMESTAMP = "OPEN_TIMESTAMP"
    INTERNAL = "INTERNAL"


class VerificationStatus(str, Enum):
    VERIFIED = "VERIFIED"
    PROCESSING = "PROCESSING"
    NOT_FOUND = "NOT_FOUND"
    INVALID_FORMAT = "INVALID_FORMAT"


class AnchorReceipt(BaseModel):
    """What an anchoring network hands back for one fingerprint."""

    proof_reference: str
    network: str
    method: AnchorMethod
    confirmed: bool
    proof_data: bytes
    anchored_at: datetime
    block_reference: Optional[str] = None
    confirmation_count: Optional[int] = None


class Registration(BaseModel):
    id: UUID
    owner_id: str
    fingerprint: str
    status: RegistrationStatus = RegistrationStatus.PENDING
    error_message: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    processing_started_at: Optional[datetime] = None
    attempt: int = 1
    retry_of: Optional[UUID] = None
    credit_reference: str
    pending_receipt: Optional[AnchorReceipt] = None

    model_config = ConfigDict(from_attributes=True)


class AnchoringProof(BaseModel):
    id: UUID
    registration_id: UUID
    proof_reference: str
    network: str
    method: AnchorMethod
    confirmed_at: datetime
    block_reference: Optional[str] = None
    confirmation_count: Optional[int] = None
    proof_data: bytes = b""

    model_config = ConfigDict(from_attributes=True, frozen=True)


class SubmitRegistrationRequest(BaseModel):
    fingerprint: str = Field(..., description="Lower-case hex SHA-256 of the content")
    registration_id: Optional[UUID] = Field(
        default=None, description="Client-chosen id; resubmitting it never consumes twice"
    )

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, json_schema_extra={
        "example": {
            "fingerprint": "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
            "registrationId": "550e8400-e29b-41d4-a716-446655440000"
        }
    })

    @field_validator("fingerprint")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_fingerprint(value)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProofSummary(_CamelModel):
    id: UUID
    proof_reference: str
    network: str
    method: AnchorMethod
    confirmed_at: datetime
    block_reference: Optional[str] = None
    confirmation_count: Optional[int] = None

    @classmethod
    def from_proof(cls, proof: AnchoringProof) -> "ProofSummary":
        return cls(
            id=proof.id,
            proof_reference=proof.proof_reference,
            network=proof.network,
            method=proof.method,
            confirmed_at=proof.confirmed_at,
            block_reference=proof.block_reference,
            confirmation_count=proof.confirmation_count,
        )


class RegistrationStatusResponse(_CamelModel):
    registration_id: UUID
    status: RegistrationStatus
    fingerprint: str
    error_message: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    proof: Optional[ProofSummary] = None
    attempt: int = 1
    retry_of: Optional[UUID] = None
    can_retry: bool = False


class RegistrationSummary(_CamelModel):
    id: UUID
    status: RegistrationStatus
    created_at: datetime
    confirmed_at: Optional[datetime] = None


class VerificationResponse(_CamelModel):
    status: VerificationStatus
    fingerprint: str
    message: str
    registration: Optional[RegistrationSummary] = None
    proof: Optional[ProofSummary] = None
    legal_notice: Optional[str] = None
    instructions: Optional[str] = None
    details: dict = Field(default_factory=dict)


class DuplicateCheckResponse(_CamelModel):
    is_duplicate: bool
    existing: Optional[RegistrationSummary] = None
