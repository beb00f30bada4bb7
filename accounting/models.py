from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class LedgerOperation(str, Enum):
    ADD = "ADD"
    CONSUME = "CONSUME"
    REFUND = "REFUND"
    ADJUST = "ADJUST"
    EXPIRE = "EXPIRE"


class AdjustDirection(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


# Amounts are stored positive; the operation implies the sign.
OPERATION_SIGN = {
    LedgerOperation.ADD: 1,
    LedgerOperation.CONSUME: -1,
    LedgerOperation.REFUND: 1,
    LedgerOperation.EXPIRE: -1,
}


class LedgerEntry(BaseModel):
    id: UUID
    account_id: str
    operation: LedgerOperation
    amount: int = Field(..., ge=0)
    balance_after: int
    reason: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def signed_amount(self) -> int:
        if self.operation == LedgerOperation.ADJUST:
            direction = self.metadata.get("direction", AdjustDirection.INCREASE.value)
            return self.amount if direction == AdjustDirection.INCREASE.value else -self.amount
        return OPERATION_SIGN[self.operation] * self.amount


class BalanceCache(BaseModel):
    account_id: str
    total_credits: int = 0
    available_credits: int = 0
    used_credits: int = 0
    version: int = 0
    last_ledger_id: Optional[UUID] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def apply(self, entry: LedgerEntry) -> "BalanceCache":
        """Project one ledger entry onto this balance, returning the next version."""
        total, used = self.total_credits, self.used_credits
        op = entry.operation
        if op == LedgerOperation.ADD:
            total += entry.amount
        elif op == LedgerOperation.CONSUME:
            used += entry.amount
        elif op == LedgerOperation.REFUND:
            used = max(used - entry.amount, 0)
        elif op == LedgerOperation.ADJUST:
            total += entry.signed_amount

        return BalanceCache(
            account_id=self.account_id,
            total_credits=total,
            available_credits=self.available_credits + entry.signed_amount,
            used_credits=used,
            version=self.version + 1,
            last_ledger_id=entry.id,
            updated_at=entry.created_at,
        )

    def matches(self, other: "BalanceCache") -> bool:
        return (
            self.available_credits == other.available_credits
            and self.total_credits == other.total_credits
            and self.used_credits == other.used_credits
        )


class ConsumeResult(BaseModel):
    success: bool
    idempotent: bool = False
    remaining_balance: Optional[int] = None
    entry_id: Optional[UUID] = None


class AddCreditsResult(BaseModel):
    success: bool
    idempotent: bool = False
    amount_added: int = 0
    new_balance: int
    was_subscription_reset: bool = False


class RefundResult(BaseModel):
    success: bool
    idempotent: bool = False
    amount_refunded: int = 0
    new_balance: int


class AdjustResult(BaseModel):
    success: bool
    previous_balance: int
    new_balance: int
    difference: int


class ExpireResult(BaseModel):
    success: bool
    idempotent: bool = False
    amount_expired: int = 0
    new_balance: int


class ReconcileResult(BaseModel):
    was_consistent: bool
    corrected: bool
    ledger_balance: int
    cache_balance: int


class AddCreditsRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str
    reference_type: str = Field(default="payment")
    reference_id: str = Field(..., description="Payment or subscription id; repeats are ignored")
    is_subscription: bool = False
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 5,
            "reason": "Professional plan",
            "reference_type": "payment",
            "reference_id": "pay_abc123",
            "is_subscription": False
        }
    })


class RefundRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str
    reference_id: str


class AdjustRequest(BaseModel):
    new_balance: int = Field(..., ge=0)
    reason: str


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int
