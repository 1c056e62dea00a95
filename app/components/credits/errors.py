"""Credit ledger error taxonomy.

Every error carries the organization and the ledger operation it came from,
so callers and logs get context without re-wrapping.
"""

from __future__ import annotations

from typing import Any


class CreditLedgerError(Exception):
    code = "credit_ledger_error"

    def __init__(self, message: str, *, organization_id: int | None = None, operation: str | None = None):
        super().__init__(message)
        self.message = message
        self.organization_id = organization_id
        self.operation = operation

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.organization_id is not None:
            detail["organization_id"] = self.organization_id
        if self.operation:
            detail["operation"] = self.operation
        return detail


class LedgerValidationError(CreditLedgerError):
    code = "invalid_request"


class OrganizationNotFound(CreditLedgerError):
    code = "organization_not_found"

    def __init__(self, organization_id: int, *, operation: str | None = None):
        super().__init__("Organization not found", organization_id=organization_id, operation=operation)


class InsufficientCredits(CreditLedgerError):
    """Recoverable: the caller is expected to offer a top-up path."""

    code = "insufficient_credits"

    def __init__(self, *, balance: int, required: int, organization_id: int | None = None, operation: str | None = None):
        super().__init__("Insufficient credits", organization_id=organization_id, operation=operation)
        self.balance = int(balance)
        self.required = int(required)

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.balance)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            {
                "balance": self.balance,
                "required": self.required,
                "shortfall": self.shortfall,
            }
        )
        return detail


class ConcurrencyConflict(CreditLedgerError):
    code = "concurrency_conflict"


class PersistenceUnavailable(CreditLedgerError):
    code = "persistence_unavailable"

    def __init__(
        self,
        message: str = "Credit ledger storage is unavailable",
        *,
        organization_id: int | None = None,
        operation: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message, organization_id=organization_id, operation=operation)
        # False once a commit was attempted without an idempotency key: the write may have landed.
        self.retryable = retryable
