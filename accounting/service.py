from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from uuid import uuid4

import structlog

from .events import BalanceChannel, BalanceChanged
from .models import (
    LedgerOperation,
    AdjustDirection,
    LedgerEntry,
    BalanceCache,
    ConsumeResult,
    AddCreditsRequest,
    AddCreditsResult,
    RefundRequest,
    RefundResult,
    AdjustRequest,
    AdjustResult,
    ExpireResult,
    ReconcileResult,
    LedgerHistoryResponse,
)
from .storage import InMemoryLedgerStorage, StaleWrite, DuplicateReference

logger = structlog.get_logger().bind(system="accounting.ledger")


class LedgerServiceError(Exception):
    pass


class InsufficientBalance(LedgerServiceError):
    def __init__(self, account_id: str, available: int, required: int):
        super().__init__(
            f"insufficient balance for {account_id}: have {available}, need {required}"
        )
        self.account_id = account_id
        self.available = available
        self.required = required


class InvalidAmount(LedgerServiceError):
    pass


class MissingReference(LedgerServiceError):
    pass


class LedgerConflict(LedgerServiceError):
    pass


def _require_reference(reference_id: Optional[str]) -> str:
    # blank references never reach the idempotency index
    if not reference_id or not reference_id.strip():
        raise MissingReference("a non-blank reference id is required")
    return reference_id


def project_ledger(account_id: str, entries: Iterable[LedgerEntry]) -> BalanceCache:
    """Fold ledger entries, oldest first, into the balance they imply."""
    projection = BalanceCache(account_id=account_id)
    for entry in entries:
        expected = projection.available_credits + entry.signed_amount
        if entry.balance_after != expected:
            logger.error(
                "ledger_chain_broken",
                account_id=account_id,
                entry_id=str(entry.id),
                balance_after=entry.balance_after,
                expected=expected,
            )
        projection = projection.apply(entry)
    return projection


# (operation, amount, reason, reference_type, reference_id, metadata)
Draft = tuple[LedgerOperation, int, str, Optional[str], Optional[str], dict]


class LedgerService:
    def __init__(
        self,
        storage: Optional[InMemoryLedgerStorage] = None,
        channel: Optional[BalanceChannel] = None,
        max_retries: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryLedgerStorage()
        self.channel = channel or BalanceChannel()
        self.max_retries = max_retries
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def consume_credit(
        self,
        account_id: str,
        reference_id: str,
        reason: str = "Registration anchoring",
        amount: int = 1,
        created_by: Optional[str] = None,
    ) -> ConsumeResult:
        if amount <= 0:
            raise InvalidAmount("consumption amount must be positive")
        _require_reference(reference_id)

        def build(balance: int) -> list[Draft]:
            self._raise_if_referenced(account_id, LedgerOperation.CONSUME, reference_id)
            if balance < amount:
                raise InsufficientBalance(account_id, balance, amount)
            return [(LedgerOperation.CONSUME, amount, reason, "registration", reference_id, {})]

        try:
            entries, _ = self._append(account_id, build, created_by)
        except DuplicateReference as e:
            logger.info("credit_consume_idempotent", account_id=account_id, reference_id=reference_id)
            return ConsumeResult(
                success=False,
                idempotent=True,
                remaining_balance=self.get_ledger_balance(account_id),
                entry_id=e.existing["id"],
            )
        except InsufficientBalance as e:
            logger.info(
                "credit_consume_rejected",
                account_id=account_id,
                reference_id=reference_id,
                available=e.available,
            )
            raise

        entry = entries[-1]
        logger.info(
            "credit_consumed",
            account_id=account_id,
            reference_id=reference_id,
            amount=amount,
            balance_after=entry.balance_after,
        )
        return ConsumeResult(success=True, remaining_balance=entry.balance_after, entry_id=entry.id)

    def add_credits(
        self, account_id: str, request: AddCreditsRequest, created_by: Optional[str] = None
    ) -> AddCreditsResult:
        _require_reference(request.reference_id)

        def build(balance: int) -> list[Draft]:
            self._raise_if_referenced(account_id, LedgerOperation.ADD, request.reference_id)
            drafts: list[Draft] = []
            if request.is_subscription and balance > 0:
                drafts.append((
                    LedgerOperation.EXPIRE, balance, f"Subscription cycle reset: {request.reason}",
                    request.reference_type, f"{request.reference_id}:reset", {},
                ))
            drafts.append((
                LedgerOperation.ADD, request.amount, request.reason,
                request.reference_type, request.reference_id, dict(request.metadata),
            ))
            return drafts

        try:
            entries, _ = self._append(account_id, build, created_by)
        except DuplicateReference:
            logger.info("credit_add_idempotent", account_id=account_id, reference_id=request.reference_id)
            return AddCreditsResult(
                success=False, idempotent=True, new_balance=self.get_ledger_balance(account_id)
            )

        was_reset = entries[0].operation == LedgerOperation.EXPIRE
        logger.info(
            "credits_added",
            account_id=account_id,
            reference_id=request.reference_id,
            amount=request.amount,
            subscription_reset=was_reset,
            balance_after=entries[-1].balance_after,
        )
        return AddCreditsResult(
            success=True,
            amount_added=request.amount,
            new_balance=entries[-1].balance_after,
            was_subscription_reset=was_reset,
        )

    def refund_credit(
        self, account_id: str, request: RefundRequest, performed_by: Optional[str] = None
    ) -> RefundResult:
        _require_reference(request.reference_id)

        def build(balance: int) -> list[Draft]:
            self._raise_if_referenced(account_id, LedgerOperation.REFUND, request.reference_id)
            return [(
                LedgerOperation.REFUND, request.amount, request.reason,
                "registration", request.reference_id, {},
            )]

        try:
            entries, _ = self._append(account_id, build, performed_by)
        except DuplicateReference:
            logger.info("credit_refund_idempotent", account_id=account_id, reference_id=request.reference_id)
            return RefundResult(
                success=False, idempotent=True, new_balance=self.get_ledger_balance(account_id)
            )

        logger.info(
            "credit_refunded",
            account_id=account_id,
            reference_id=request.reference_id,
            amount=request.amount,
            performed_by=performed_by,
            balance_after=entries[-1].balance_after,
        )
        return RefundResult(
            success=True, amount_refunded=request.amount, new_balance=entries[-1].balance_after
        )

    def adjust_balance(
        self, account_id: str, request: AdjustRequest, performed_by: Optional[str] = None
    ) -> AdjustResult:
        previous = {}

        def build(balance: int) -> list[Draft]:
            previous["balance"] = balance
            difference = request.new_balance - balance
            if difference == 0:
                return []
            direction = AdjustDirection.INCREASE if difference > 0 else AdjustDirection.DECREASE
            return [(
                LedgerOperation.ADJUST, abs(difference), request.reason, "adjustment", None,
                {"direction": direction.value, "previous_balance": balance},
            )]

        self._append(account_id, build, performed_by)
        logger.info(
            "credit_adjusted",
            account_id=account_id,
            previous_balance=previous["balance"],
            new_balance=request.new_balance,
            performed_by=performed_by,
        )
        return AdjustResult(
            success=True,
            previous_balance=previous["balance"],
            new_balance=request.new_balance,
            difference=request.new_balance - previous["balance"],
        )

    def expire_credits(
        self,
        account_id: str,
        amount: int,
        reason: str,
        reference_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ExpireResult:
        if amount <= 0:
            raise InvalidAmount("expiry amount must be positive")
        expired = {"amount": 0}

        def build(balance: int) -> list[Draft]:
            if reference_id:
                self._raise_if_referenced(account_id, LedgerOperation.EXPIRE, reference_id)
            expired["amount"] = min(amount, balance)
            if expired["amount"] == 0:
                return []
            return [(LedgerOperation.EXPIRE, expired["amount"], reason, "expiry", reference_id, {})]

        try:
            entries, balance = self._append(account_id, build, created_by)
        except DuplicateReference:
            return ExpireResult(
                success=False, idempotent=True, new_balance=self.get_ledger_balance(account_id)
            )

        if entries:
            logger.info("credits_expired", account_id=account_id, amount=expired["amount"])
        return ExpireResult(
            success=True, amount_expired=expired["amount"], new_balance=balance.available_credits
        )

    def reconcile(self, account_id: str) -> ReconcileResult:
        """Rebuild the cached balance from the ledger. The ledger always wins."""
        with self.storage.locked(account_id):
            entries = [LedgerEntry(**e) for e in self.storage.entries_for(account_id)]
            folded = project_ledger(account_id, entries)
            cached = self._read_cache(account_id)
            consistent = cached.matches(folded)
            if not consistent:
                corrected = folded.model_copy(update={
                    "version": cached.version + 1,
                    "updated_at": self._now(),
                })
                self.storage.overwrite_balance(
                    account_id, corrected.model_dump(), expected_version=cached.version
                )

        if not consistent:
            logger.warning(
                "balance_reconciled",
                account_id=account_id,
                ledger_balance=folded.available_credits,
                cache_balance=cached.available_credits,
            )
            self.channel.publish(BalanceChanged(
                account_id=account_id,
                available_credits=corrected.available_credits,
                version=corrected.version,
                operation="RECONCILE",
                entry_id=corrected.last_ledger_id,
            ))

        return ReconcileResult(
            was_consistent=consistent,
            corrected=not consistent,
            ledger_balance=folded.available_credits,
            cache_balance=cached.available_credits,
        )

    def get_balance(self, account_id: str) -> BalanceCache:
        return self._read_cache(account_id)

    def get_ledger_balance(self, account_id: str) -> int:
        tail = self.storage.tail(account_id)
        return tail["balance_after"] if tail else 0

    def get_ledger_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = [LedgerEntry(**e) for e in self.storage.entries_for(account_id)]
        current_balance = all_entries[-1].balance_after if all_entries else 0
        all_entries.reverse()
        paginated = all_entries[offset:offset + limit]

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=current_balance,
        )

    def _append(
        self,
        account_id: str,
        build: Callable[[int], list[Draft]],
        created_by: Optional[str],
    ) -> tuple[list[LedgerEntry], BalanceCache]:
        """Optimistically append the drafts ``build`` returns for the current balance.

        ``build`` runs again on every retry so its checks always see the
        latest ledger tail.
        """
        for attempt in range(self.max_retries):
            tail = self.storage.tail(account_id)
            cache = self._read_cache(account_id)
            running = tail["balance_after"] if tail else 0

            drafts = build(running)
            if not drafts:
                return [], cache

            now = self._now()
            entries: list[LedgerEntry] = []
            projected = cache
            for operation, amount, reason, reference_type, reference_id, metadata in drafts:
                entry = LedgerEntry(
                    id=uuid4(),
                    account_id=account_id,
                    operation=operation,
                    amount=amount,
                    balance_after=0,
                    reason=reason,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    created_by=created_by,
                    created_at=now,
                    metadata=metadata,
                )
                running += entry.signed_amount
                entry = entry.model_copy(update={"balance_after": running})
                entries.append(entry)
                projected = projected.apply(entry)
            projected = projected.model_copy(update={"available_credits": running})

            try:
                self.storage.commit(
                    account_id,
                    [e.model_dump() for e in entries],
                    projected.model_dump(),
                    expected_tail_id=tail["id"] if tail else None,
                    expected_version=cache.version,
                )
            except (StaleWrite, DuplicateReference) as e:
                logger.debug("ledger_commit_retry", account_id=account_id, attempt=attempt, reason=str(e))
                continue

            self.channel.publish(BalanceChanged(
                account_id=account_id,
                available_credits=projected.available_credits,
                version=projected.version,
                operation=entries[-1].operation.value,
                entry_id=entries[-1].id,
            ))
            return entries, projected

        raise LedgerConflict(f"could not commit to ledger of {account_id} after {self.max_retries} attempts")

    def _raise_if_referenced(self, account_id: str, operation: LedgerOperation, reference_id: str) -> None:
        existing = self.storage.find_reference(account_id, operation.value, reference_id)
        if existing:
            raise DuplicateReference(existing)

    def _read_cache(self, account_id: str) -> BalanceCache:
        data = self.storage.read_balance(account_id)
        if not data:
            return BalanceCache(account_id=account_id)
        return BalanceCache(**data)
