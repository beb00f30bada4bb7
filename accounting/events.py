"""Balance change notifications.

A plain in-process publish/subscribe channel. Subscribers are called after
a mutation has been committed, outside of any ledger lock.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional
from uuid import UUID

import structlog

logger = structlog.get_logger().bind(system="accounting.events")

ALL_ACCOUNTS = "*"


@dataclass(frozen=True)
class BalanceChanged:
    account_id: str
    available_credits: int
    version: int
    operation: str
    entry_id: Optional[UUID] = None


Subscriber = Callable[[BalanceChanged], None]


class BalanceChannel:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(self, callback: Subscriber, account_id: str = ALL_ACCOUNTS) -> Callable[[], None]:
        """Register ``callback``; returns a function that removes it again."""
        with self._lock:
            self._subscribers.setdefault(account_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(account_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, event: BalanceChanged) -> None:
        with self._lock:
            callbacks = [
                *self._subscribers.get(event.account_id, []),
                *self._subscribers.get(ALL_ACCOUNTS, []),
            ]
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("balance_subscriber_failed", account_id=event.account_id)
