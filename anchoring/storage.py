"""
In-memory registration registry.

Status changes are compare-and-set on the current status, so only one
caller can win a given transition. A proof row is written in the same
step that moves a registration to CONFIRMED.
"""

import threading
from typing import Optional
from uuid import UUID


class RegistryError(Exception):
    pass


class DuplicateRegistration(RegistryError):
    def __init__(self, existing: dict):
        super().__init__(f"registration {existing['id']} already exists")
        self.existing = existing


def _status(value) -> str:
    return getattr(value, "value", value)


class InMemoryRegistry:
    def __init__(self):
        self.registrations: dict[UUID, dict] = {}
        self.proofs: dict[UUID, dict] = {}
        self.fingerprint_index: dict[str, list[UUID]] = {}
        self._lock = threading.RLock()

    def insert(self, registration: dict) -> None:
        """Insert a new registration; ids and retries of one registration are unique."""
        with self._lock:
            existing = self.registrations.get(registration["id"])
            if existing:
                raise DuplicateRegistration(dict(existing))
            if registration.get("retry_of"):
                sibling = self.find_retry_of(registration["retry_of"])
                if sibling:
                    raise DuplicateRegistration(sibling)

            self.registrations[registration["id"]] = dict(registration)
            self.fingerprint_index.setdefault(registration["fingerprint"], []).append(registration["id"])

    def get(self, registration_id: UUID) -> Optional[dict]:
        with self._lock:
            data = self.registrations.get(registration_id)
            return dict(data) if data else None

    def transition(self, registration_id: UUID, expected_status: str, updates: dict) -> Optional[dict]:
        """Apply ``updates`` only if the status is still ``expected_status``."""
        with self._lock:
            data = self.registrations.get(registration_id)
            if data is None or _status(data["status"]) != _status(expected_status):
                return None
            data.update(updates)
            return dict(data)

    def confirm(self, registration_id: UUID, updates: dict, proof: dict) -> Optional[dict]:
        with self._lock:
            if registration_id in self.proofs:
                return None
            updated = self.transition(registration_id, "PROCESSING", updates)
            if updated is None:
                return None
            self.proofs[registration_id] = dict(proof)
            return updated

    def proof_for(self, registration_id: UUID) -> Optional[dict]:
        with self._lock:
            proof = self.proofs.get(registration_id)
            return dict(proof) if proof else None

    def find_by_fingerprint(self, fingerprint: str) -> list[dict]:
        """Registrations for ``fingerprint``, newest first."""
        with self._lock:
            ids = self.fingerprint_index.get(fingerprint, [])
            found = [dict(self.registrations[i]) for i in ids]
        found.sort(key=lambda r: r["created_at"], reverse=True)
        return found

    def list_by_status(self, status: str) -> list[dict]:
        with self._lock:
            return [
                dict(r) for r in self.registrations.values()
                if _status(r["status"]) == _status(status)
            ]

    def find_duplicate(self, owner_id: str, fingerprint: str) -> Optional[dict]:
        for registration in self.find_by_fingerprint(fingerprint):
            if registration["owner_id"] == owner_id and _status(registration["status"]) != "FAILED":
                return registration
        return None

    def find_retry_of(self, registration_id: UUID) -> Optional[dict]:
        with self._lock:
            for registration in self.registrations.values():
                if registration.get("retry_of") == registration_id:
                    return dict(registration)
        return None
