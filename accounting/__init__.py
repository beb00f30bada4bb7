"""
Credit Accounting for Registrations

This module provides:
- Append-only credit ledger (ADD, CONSUME, REFUND, ADJUST, EXPIRE)
- Balance cache kept in step with the ledger, rebuildable by reconcile
- At-most-once credit consumption per registration
- Balance change notifications and a client read-through cache
"""

from .models import (
    LedgerOperation,
    LedgerEntry,
    BalanceCache,
    ConsumeResult,
    ReconcileResult,
)
from .events import BalanceChannel, BalanceChanged
from .service import (
    LedgerService,
    LedgerServiceError,
    InsufficientBalance,
    InvalidAmount,
    MissingReference,
    LedgerConflict,
)
from .cache import CachedBalanceReader

__all__ = [
    "LedgerOperation",
    "LedgerEntry",
    "BalanceCache",
    "ConsumeResult",
    "ReconcileResult",
    "BalanceChannel",
    "BalanceChanged",
    "LedgerService",
    "LedgerServiceError",
    "InsufficientBalance",
    "InvalidAmount",
    "MissingReference",
    "LedgerConflict",
    "CachedBalanceReader",
]
