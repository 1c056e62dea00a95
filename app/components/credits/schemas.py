from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ...models.credit_ledger import CreditTransactionType

# Amounts are stored in 32-bit integer columns.
MAX_CREDIT_AMOUNT = 2**31 - 1

WorkflowType = Literal[
    "content_sync",
    "trend_analysis",
    "recommendation_generation",
    "script_generation",
    "caption_generation",
    "image_generation",
    "transcription",
    "content_analysis",
]


class EntryMetadata(BaseModel):
    """Open key/value payload stored with a ledger entry.

    Only the known keys below are checked; anything else is kept as-is.
    """

    workflow_type: Optional[WorkflowType] = None
    units: Optional[int] = Field(default=None, gt=0)
    model_usage: Optional[Dict[str, int]] = None
    source: Optional[str] = Field(default=None, max_length=100)

    model_config = {"extra": "allow"}

    @field_validator("model_usage")
    @classmethod
    def _non_negative_usage(cls, value: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
        if value is None:
            return value
        for model_name, count in value.items():
            if count < 0:
                raise ValueError(f"model_usage[{model_name!r}] must be >= 0")
        return value

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ConsumeCreditsRequest(BaseModel):
    amount: int = Field(gt=0, le=MAX_CREDIT_AMOUNT)
    description: str = Field(min_length=1, max_length=500)
    job_id: Optional[UUID] = None
    metadata: Optional[EntryMetadata] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)


class GrantCreditsRequest(BaseModel):
    amount: int = Field(gt=0, le=MAX_CREDIT_AMOUNT)
    description: str = Field(min_length=1, max_length=500)
    metadata: Optional[EntryMetadata] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)


class RefundCreditsRequest(BaseModel):
    amount: int = Field(gt=0, le=MAX_CREDIT_AMOUNT)
    description: str = Field(min_length=1, max_length=500)
    job_id: Optional[UUID] = None
    metadata: Optional[EntryMetadata] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255)


class LedgerEntryResponse(BaseModel):
    id: int
    organization_id: int
    amount: int
    balance_after: int
    transaction_type: CreditTransactionType
    description: Optional[str] = None
    job_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class BalanceResponse(BaseModel):
    balance: int
    plan_tier: str


class LedgerMutationResponse(BaseModel):
    transaction: LedgerEntryResponse
    new_balance: int
    replayed: bool = False


class HistoryResponse(BaseModel):
    items: List[LedgerEntryResponse]
    total: int
    has_more: bool


class CanAffordResponse(BaseModel):
    can_afford: bool
    current_balance: int
    required: int
    shortfall: int


class UsageSummaryResponse(BaseModel):
    period_days: int
    consumed: int
    granted: int
    net: int
    by_description: Dict[str, int]
    transaction_count: int


class ReconciliationBreak(BaseModel):
    entry_id: int
    expected_balance_after: int
    recorded_balance_after: int


class ReconciliationResponse(BaseModel):
    organization_id: int
    cached_balance: int
    ledger_sum: int
    last_balance_after: int
    entry_count: int
    consistent: bool
    breaks: List[ReconciliationBreak] = Field(default_factory=list)
