"""
In-memory ledger storage.

Entries are append-only. A commit is accepted only when the caller's view
of the account's ledger tail and balance version is still current
(compare-and-swap), and (account, operation, reference) is unique, the
same guarantees a ``UNIQUE`` index plus a version column give in SQL.
Locks are per account, so different accounts never contend.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import UUID


class StorageError(Exception):
    pass


class StaleWrite(StorageError):
    """The ledger tail or balance version moved since it was read."""


class DuplicateReference(StorageError):
    def __init__(self, existing: dict):
        super().__init__(
            f"{existing['operation']} already recorded for reference {existing['reference_id']}"
        )
        self.existing = existing


class InMemoryLedgerStorage:
    def __init__(self):
        self.entries: dict[UUID, dict] = {}
        self.account_entries: dict[str, list[UUID]] = {}
        self.reference_index: dict[tuple[str, str, str], UUID] = {}
        self.balances: dict[str, dict] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def locked(self, account_id: str) -> Iterator[None]:
        with self._lock_for(account_id):
            yield

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.RLock()
            return lock

    def tail(self, account_id: str) -> Optional[dict]:
        with self._lock_for(account_id):
            ids = self.account_entries.get(account_id)
            return dict(self.entries[ids[-1]]) if ids else None

    def entries_for(self, account_id: str) -> list[dict]:
        with self._lock_for(account_id):
            return [dict(self.entries[i]) for i in self.account_entries.get(account_id, [])]

    def find_reference(self, account_id: str, operation: str, reference_id: str) -> Optional[dict]:
        with self._lock_for(account_id):
            entry_id = self.reference_index.get((account_id, operation, reference_id))
            return dict(self.entries[entry_id]) if entry_id else None

    def read_balance(self, account_id: str) -> Optional[dict]:
        with self._lock_for(account_id):
            balance = self.balances.get(account_id)
            return dict(balance) if balance else None

    def commit(
        self,
        account_id: str,
        entries: list[dict],
        balance: dict,
        expected_tail_id: Optional[UUID],
        expected_version: int,
    ) -> None:
        """Append entries and write the balance projection as one unit."""
        with self._lock_for(account_id):
            ids = self.account_entries.get(account_id, [])
            current_tail = ids[-1] if ids else None
            if current_tail != expected_tail_id:
                raise StaleWrite(f"ledger tail for {account_id} moved")

            current_version = self.balances.get(account_id, {}).get("version", 0)
            if current_version != expected_version:
                raise StaleWrite(f"balance version for {account_id} moved")

            for entry in entries:
                key = self._reference_key(entry)
                if key and key in self.reference_index:
                    raise DuplicateReference(dict(self.entries[self.reference_index[key]]))

            account_ids = self.account_entries.setdefault(account_id, [])
            for entry in entries:
                self.entries[entry["id"]] = dict(entry)
                account_ids.append(entry["id"])
                key = self._reference_key(entry)
                if key:
                    self.reference_index[key] = entry["id"]
            self.balances[account_id] = dict(balance)

    def overwrite_balance(self, account_id: str, balance: dict, expected_version: int) -> None:
        with self._lock_for(account_id):
            current_version = self.balances.get(account_id, {}).get("version", 0)
            if current_version != expected_version:
                raise StaleWrite(f"balance version for {account_id} moved")
            self.balances[account_id] = dict(balance)

    @staticmethod
    def _reference_key(entry: dict) -> Optional[tuple[str, str, str]]:
        if not entry.get("reference_id"):
            return None
        operation = entry["operation"]
        operation = getattr(operation, "value", operation)
        return (entry["account_id"], operation, entry["reference_id"])
