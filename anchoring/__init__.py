"""
Registration Anchoring

This module provides:
- Local SHA-256 content fingerprints
- OpenTimestamps proof artifacts and calendar clients
- Registration state machine (PENDING -> PROCESSING -> CONFIRMED | FAILED)
- Proof verification that any third party can reproduce
- Client-side status polling and an HTTP client for the API
"""

from .fingerprint import (
    ContentUnreadable,
    InvalidFingerprint,
    fingerprint_bytes,
    fingerprint_file,
    normalize_fingerprint,
)
from .models import (
    RegistrationStatus,
    AnchorMethod,
    VerificationStatus,
    Registration,
    AnchoringProof,
    RegistrationStatusResponse,
    VerificationResponse,
)
from .proof import InvalidProofFormat
from .network import AnchoringError, OpenTimestampsCalendar, InternalTimestamp, build_network
from .service import (
    RegistrationService,
    RegistrationError,
    RegistrationNotFound,
    RetryNotAllowed,
    RegistrationConflict,
)
from .verifier import ProofVerifier
from .polling import StatusPoller, ClientPollTimeout, LocalStatusSource
from .client import RegistryClient

__all__ = [
    "ContentUnreadable",
    "InvalidFingerprint",
    "fingerprint_bytes",
    "fingerprint_file",
    "normalize_fingerprint",
    "RegistrationStatus",
    "AnchorMethod",
    "VerificationStatus",
    "Registration",
    "AnchoringProof",
    "RegistrationStatusResponse",
    "VerificationResponse",
    "InvalidProofFormat",
    "AnchoringError",
    "OpenTimestampsCalendar",
    "InternalTimestamp",
    "build_network",
    "RegistrationService",
    "RegistrationError",
    "RegistrationNotFound",
    "RetryNotAllowed",
    "RegistrationConflict",
    "ProofVerifier",
    "StatusPoller",
    "ClientPollTimeout",
    "LocalStatusSource",
    "RegistryClient",
]
