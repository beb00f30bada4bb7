"""Read-through balance cache for clients.

Serves ``BalanceCache`` snapshots for at most ``ttl_seconds`` before reading
through to the ledger service again. It never decides entitlement: the
ledger does.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .events import BalanceChanged
from .models import BalanceCache, ReconcileResult
from .service import LedgerService


class CachedBalanceReader:
    def __init__(
        self,
        ledger: LedgerService,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, BalanceCache]] = {}
        self._unsubscribe = ledger.channel.subscribe(self._on_change)

    @classmethod
    def from_settings(cls, ledger: LedgerService, settings, **kwargs) -> "CachedBalanceReader":
        return cls(ledger, ttl_seconds=settings.balance_cache_ttl_seconds, **kwargs)

    def get(self, account_id: str) -> BalanceCache:
        now = self._clock()
        with self._lock:
            cached = self._entries.get(account_id)
        if cached and now - cached[0] < self.ttl_seconds:
            return cached[1]

        balance = self.ledger.get_balance(account_id)
        with self._lock:
            current = self._entries.get(account_id)
            # keep whichever snapshot is newer
            if current is None or current[1].version <= balance.version:
                self._entries[account_id] = (now, balance)
        return balance

    def has_credits(self, account_id: str, required: int = 1) -> bool:
        return self.get(account_id).available_credits >= required

    def peek(self, account_id: str) -> Optional[BalanceCache]:
        with self._lock:
            cached = self._entries.get(account_id)
        return cached[1] if cached else None

    def invalidate(self, account_id: Optional[str] = None) -> None:
        with self._lock:
            if account_id is None:
                self._entries.clear()
            else:
                self._entries.pop(account_id, None)

    def reconcile(self, account_id: str) -> ReconcileResult:
        result = self.ledger.reconcile(account_id)
        self.invalidate(account_id)
        self.get(account_id)
        return result

    def close(self) -> None:
        self._unsubscribe()

    def _on_change(self, event: BalanceChanged) -> None:
        self.invalidate(event.account_id)
