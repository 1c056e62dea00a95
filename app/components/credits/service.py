"""Credit ledger service: the only writer of an organization's credit balance.

Every balance change is one transaction that swaps the cached balance on
the organization row and appends the matching ledger entry. Writes for the
same organization are serialized by an in-process lock, a ``FOR UPDATE``
row lock and a compare-and-swap on the cached balance; a lost race surfaces
as ConcurrencyConflict and the whole read-check-write is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ...models.credit_ledger import CreditLedgerEntry, CreditTransactionType
from ...platform.config import settings
from .errors import (
    ConcurrencyConflict,
    CreditLedgerError,
    InsufficientCredits,
    LedgerValidationError,
    OrganizationNotFound,
    PersistenceUnavailable,
)
from .locks import OrganizationLockRegistry, organization_locks
from .repository import CreditLedgerRepository, NewLedgerEntry
from .schemas import MAX_CREDIT_AMOUNT, EntryMetadata

logger = logging.getLogger("oro.credits")

SIGNUP_GRANT_DESCRIPTION = "signup_grant"
UNLABELLED_USAGE = "Other"
MAX_RECONCILIATION_BREAKS = 20


@dataclass(frozen=True)
class LedgerResult:
    entry: CreditLedgerEntry
    new_balance: int
    replayed: bool = False


@dataclass(frozen=True)
class HistoryPage:
    items: List[CreditLedgerEntry]
    total: int
    has_more: bool


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ConcurrencyConflict):
        return True
    return isinstance(exc, PersistenceUnavailable) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying credit ledger write after %s",
        type(exc).__name__ if exc else "unknown error",
        extra={
            "organization_id": getattr(exc, "organization_id", None),
            "operation": getattr(exc, "operation", None),
            "attempt": retry_state.attempt_number,
        },
    )


def serialize_ledger_entry(entry: CreditLedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "organization_id": entry.organization_id,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "transaction_type": entry.transaction_type.value
        if isinstance(entry.transaction_type, CreditTransactionType)
        else entry.transaction_type,
        "description": entry.description,
        "job_id": entry.job_id,
        "metadata": entry.entry_metadata or {},
        "created_at": entry.created_at,
    }


class CreditLedgerService:
    def __init__(
        self,
        db: Session,
        *,
        locks: OrganizationLockRegistry | None = None,
        repository: CreditLedgerRepository | None = None,
    ):
        self.db = db
        self.locks = locks if locks is not None else organization_locks
        self.repository = repository if repository is not None else CreditLedgerRepository(db)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_balance(self, organization_id: int) -> Dict[str, Any]:
        operation = "get_balance"
        try:
            org = self.repository.get_organization(organization_id)
        except DBAPIError as exc:
            self._rollback()
            raise self._storage_failure(exc, organization_id, operation) from exc
        if org is None:
            raise OrganizationNotFound(organization_id, operation=operation)
        return {"balance": int(org.credit_balance or 0), "plan_tier": org.plan_tier or "free"}

    def can_afford(self, organization_id: int, amount: int) -> Dict[str, Any]:
        self._validate_amount(amount, organization_id, "can_afford")
        balance = self.get_balance(organization_id)["balance"]
        return {
            "can_afford": balance >= amount,
            "current_balance": balance,
            "required": amount,
            "shortfall": max(0, amount - balance),
        }

    def history(
        self,
        organization_id: int,
        *,
        transaction_type: CreditTransactionType | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> HistoryPage:
        operation = "history"
        limit = settings.CREDITS_HISTORY_DEFAULT_LIMIT if limit is None else limit
        if not 1 <= int(limit) <= settings.CREDITS_HISTORY_MAX_LIMIT:
            raise LedgerValidationError(
                f"limit must be between 1 and {settings.CREDITS_HISTORY_MAX_LIMIT}",
                organization_id=organization_id,
                operation=operation,
            )
        if int(offset) < 0:
            raise LedgerValidationError("offset must be >= 0", organization_id=organization_id, operation=operation)
        kind = self._coerce_transaction_type(transaction_type, organization_id, operation)

        self.get_balance(organization_id)
        try:
            items, total = self.repository.query_entries(
                organization_id,
                transaction_type=kind,
                limit=int(limit),
                offset=int(offset),
            )
        except DBAPIError as exc:
            self._rollback()
            raise self._storage_failure(exc, organization_id, operation) from exc
        return HistoryPage(items=items, total=total, has_more=total > int(offset) + int(limit))

    def usage_summary(
        self,
        organization_id: int,
        window_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> Dict[str, Any]:
        operation = "usage_summary"
        window_days = settings.CREDITS_USAGE_DEFAULT_WINDOW_DAYS if window_days is None else int(window_days)
        if not 1 <= window_days <= settings.CREDITS_USAGE_MAX_WINDOW_DAYS:
            raise LedgerValidationError(
                f"window_days must be between 1 and {settings.CREDITS_USAGE_MAX_WINDOW_DAYS}",
                organization_id=organization_id,
                operation=operation,
            )
        self.get_balance(organization_id)
        since = (now or datetime.now(timezone.utc)) - timedelta(days=window_days)
        try:
            rows = self.repository.entries_since(organization_id, since)
        except DBAPIError as exc:
            self._rollback()
            raise self._storage_failure(exc, organization_id, operation) from exc

        consumed = 0
        granted = 0
        by_description: Dict[str, int] = {}
        for amount, description in rows:
            if amount < 0:
                consumed += -amount
                label = description or UNLABELLED_USAGE
                by_description[label] = by_description.get(label, 0) + (-amount)
            else:
                granted += amount
        return {
            "period_days": window_days,
            "consumed": consumed,
            "granted": granted,
            "net": granted - consumed,
            "by_description": by_description,
            "transaction_count": len(rows),
        }

    def reconcile(self, organization_id: int) -> Dict[str, Any]:
        """Replay the ledger and compare it with the cached balance."""
        operation = "reconcile"
        cached = self.get_balance(organization_id)["balance"]
        running = 0
        ledger_sum = 0
        last_balance_after = 0
        entry_count = 0
        breaks: List[Dict[str, int]] = []
        try:
            for entry in self.repository.entries_ascending(organization_id):
                entry_count += 1
                ledger_sum += int(entry.amount)
                expected = running + int(entry.amount)
                if expected != int(entry.balance_after) and len(breaks) < MAX_RECONCILIATION_BREAKS:
                    breaks.append(
                        {
                            "entry_id": entry.id,
                            "expected_balance_after": expected,
                            "recorded_balance_after": int(entry.balance_after),
                        }
                    )
                running = int(entry.balance_after)
                last_balance_after = running
        except DBAPIError as exc:
            self._rollback()
            raise self._storage_failure(exc, organization_id, operation) from exc

        consistent = not breaks and cached == ledger_sum == last_balance_after
        if not consistent:
            logger.error(
                "Credit ledger out of balance: cached=%d ledger_sum=%d last_balance_after=%d breaks=%d",
                cached,
                ledger_sum,
                last_balance_after,
                len(breaks),
                extra={"organization_id": organization_id, "operation": operation},
            )
        return {
            "organization_id": organization_id,
            "cached_balance": cached,
            "ledger_sum": ledger_sum,
            "last_balance_after": last_balance_after,
            "entry_count": entry_count,
            "consistent": consistent,
            "breaks": breaks,
        }

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def consume(
        self,
        organization_id: int,
        amount: int,
        description: str | None,
        *,
        job_id: UUID | str | None = None,
        metadata: EntryMetadata | Dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        self._validate_amount(amount, organization_id, "consume")
        return self._apply(
            "consume",
            organization_id,
            transaction_type=CreditTransactionType.CONSUMPTION,
            delta=-int(amount),
            description=description,
            job_id=job_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    def grant(
        self,
        organization_id: int,
        amount: int,
        description: str | None,
        *,
        metadata: EntryMetadata | Dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        self._validate_amount(amount, organization_id, "grant")
        return self._apply(
            "grant",
            organization_id,
            transaction_type=CreditTransactionType.GRANT,
            delta=int(amount),
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    def refund(
        self,
        organization_id: int,
        amount: int,
        description: str | None,
        *,
        job_id: UUID | str | None = None,
        metadata: EntryMetadata | Dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        self._validate_amount(amount, organization_id, "refund")
        return self._apply(
            "refund",
            organization_id,
            transaction_type=CreditTransactionType.REFUND,
            delta=int(amount),
            description=description,
            job_id=job_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    def _apply(
        self,
        operation: str,
        organization_id: int,
        *,
        transaction_type: CreditTransactionType,
        delta: int,
        description: str | None,
        job_id: UUID | str | None = None,
        metadata: EntryMetadata | Dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerResult:
        entry_fields = {
            "description": self._normalize_description(description, organization_id, operation),
            "job_id": self._normalize_job_id(job_id, organization_id, operation),
            "metadata": self._normalize_metadata(metadata, organization_id, operation),
            "idempotency_key": self._normalize_idempotency_key(idempotency_key, organization_id, operation),
        }
        retrying = Retrying(
            stop=stop_after_attempt(max(1, int(settings.CREDIT_LEDGER_MAX_ATTEMPTS))),
            wait=wait_exponential(
                multiplier=settings.CREDIT_LEDGER_RETRY_BACKOFF_SECONDS,
                max=settings.CREDIT_LEDGER_RETRY_BACKOFF_MAX_SECONDS,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._apply_once(
                    operation,
                    organization_id,
                    transaction_type=transaction_type,
                    delta=delta,
                    **entry_fields,
                )
        raise AssertionError("unreachable")  # pragma: no cover

    def _apply_once(
        self,
        operation: str,
        organization_id: int,
        *,
        transaction_type: CreditTransactionType,
        delta: int,
        description: str | None,
        job_id: str | None,
        metadata: Dict[str, Any],
        idempotency_key: str | None,
    ) -> LedgerResult:
        with self.locks.hold(organization_id, timeout=settings.CREDIT_LEDGER_LOCK_TIMEOUT_SECONDS) as acquired:
            if not acquired:
                raise ConcurrencyConflict(
                    "Timed out waiting for another credit ledger write",
                    organization_id=organization_id,
                    operation=operation,
                )
            committing = False
            try:
                org = self.repository.lock_organization(organization_id)
                if org is None:
                    raise OrganizationNotFound(organization_id, operation=operation)
                current = int(org.credit_balance or 0)

                if idempotency_key:
                    existing = self.repository.find_by_idempotency_key(organization_id, idempotency_key)
                    if existing is not None:
                        self._check_replay(existing, transaction_type, delta, operation)
                        self.db.rollback()
                        logger.info(
                            "Credit ledger %s replayed for idempotency key",
                            operation,
                            extra={"organization_id": organization_id, "operation": operation},
                        )
                        return LedgerResult(entry=existing, new_balance=current, replayed=True)

                new_balance = current + delta
                if new_balance < 0:
                    raise InsufficientCredits(
                        balance=current,
                        required=-delta,
                        organization_id=organization_id,
                        operation=operation,
                    )
                if new_balance > MAX_CREDIT_AMOUNT:
                    raise LedgerValidationError(
                        f"balance would exceed {MAX_CREDIT_AMOUNT} credits",
                        organization_id=organization_id,
                        operation=operation,
                    )
                entry = self.repository.append_entry_and_update_balance(
                    organization_id,
                    NewLedgerEntry(
                        amount=delta,
                        balance_after=new_balance,
                        transaction_type=transaction_type,
                        description=description,
                        job_id=job_id,
                        metadata=metadata,
                        idempotency_key=idempotency_key,
                    ),
                    expected_balance=current,
                    new_balance=new_balance,
                )
                committing = True
                self.db.commit()
            except CreditLedgerError as exc:
                self._rollback()
                if exc.organization_id is None:
                    exc.organization_id = organization_id
                if not exc.operation:
                    exc.operation = operation
                if isinstance(exc, ConcurrencyConflict):
                    logger.warning(
                        "Credit ledger write conflicted: %s",
                        exc.message,
                        extra={"organization_id": organization_id, "operation": operation},
                    )
                raise
            except IntegrityError as exc:
                # Another writer inserted the same idempotency key first.
                self._rollback()
                raise ConcurrencyConflict(
                    "Concurrent ledger write with the same idempotency key",
                    organization_id=organization_id,
                    operation=operation,
                ) from exc
            except DBAPIError as exc:
                self._rollback()
                raise self._storage_failure(
                    exc,
                    organization_id,
                    operation,
                    retryable=(not committing) or bool(idempotency_key),
                ) from exc
            except SQLAlchemyError as exc:
                self._rollback()
                raise self._storage_failure(exc, organization_id, operation) from exc

        logger.info(
            "Credit ledger %s applied",
            operation,
            extra={
                "organization_id": organization_id,
                "operation": operation,
                "transaction_type": transaction_type.value,
                "amount": delta,
                "balance_after": new_balance,
            },
        )
        return LedgerResult(entry=entry, new_balance=new_balance)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _rollback(self) -> None:
        try:
            self.db.rollback()
        except SQLAlchemyError:
            logger.warning("Credit ledger rollback failed", exc_info=True)

    def _storage_failure(
        self,
        exc: SQLAlchemyError,
        organization_id: int,
        operation: str,
        *,
        retryable: bool = False,
    ) -> PersistenceUnavailable:
        logger.error(
            "Credit ledger storage failure: %s",
            type(getattr(exc, "orig", None) or exc).__name__,
            exc_info=exc,
            extra={"organization_id": organization_id, "operation": operation},
        )
        return PersistenceUnavailable(organization_id=organization_id, operation=operation, retryable=retryable)

    @staticmethod
    def _validate_amount(amount: Any, organization_id: int, operation: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise LedgerValidationError("amount must be an integer", organization_id=organization_id, operation=operation)
        if amount <= 0:
            raise LedgerValidationError("amount must be positive", organization_id=organization_id, operation=operation)
        if amount > MAX_CREDIT_AMOUNT:
            raise LedgerValidationError(
                f"amount must be at most {MAX_CREDIT_AMOUNT}", organization_id=organization_id, operation=operation
            )

    @staticmethod
    def _normalize_description(description: str | None, organization_id: int, operation: str) -> str | None:
        if description is None:
            return None
        cleaned = str(description).strip()
        if len(cleaned) > settings.CREDITS_DESCRIPTION_MAX_LENGTH:
            raise LedgerValidationError(
                f"description must be at most {settings.CREDITS_DESCRIPTION_MAX_LENGTH} characters",
                organization_id=organization_id,
                operation=operation,
            )
        return cleaned or None

    @staticmethod
    def _normalize_job_id(job_id: UUID | str | None, organization_id: int, operation: str) -> str | None:
        if job_id is None:
            return None
        try:
            return str(job_id if isinstance(job_id, UUID) else UUID(str(job_id)))
        except ValueError as exc:
            raise LedgerValidationError(
                "job_id must be a UUID", organization_id=organization_id, operation=operation
            ) from exc

    @staticmethod
    def _normalize_metadata(
        metadata: EntryMetadata | Dict[str, Any] | None,
        organization_id: int,
        operation: str,
    ) -> Dict[str, Any]:
        if metadata is None:
            return {}
        if not isinstance(metadata, (EntryMetadata, dict)):
            raise LedgerValidationError(
                "metadata must be an object", organization_id=organization_id, operation=operation
            )
        try:
            model = metadata if isinstance(metadata, EntryMetadata) else EntryMetadata.model_validate(metadata)
        except ValidationError as exc:
            raise LedgerValidationError(
                f"invalid metadata: {exc.errors()[0].get('msg', 'validation error')}",
                organization_id=organization_id,
                operation=operation,
            ) from exc
        try:
            return model.to_payload()
        except PydanticSerializationError as exc:
            raise LedgerValidationError(
                "metadata values must be JSON serializable", organization_id=organization_id, operation=operation
            ) from exc

    @staticmethod
    def _normalize_idempotency_key(idempotency_key: str | None, organization_id: int, operation: str) -> str | None:
        if idempotency_key is None:
            return None
        cleaned = str(idempotency_key).strip()
        if not cleaned:
            return None
        if len(cleaned) > 255:
            raise LedgerValidationError(
                "idempotency key must be at most 255 characters",
                organization_id=organization_id,
                operation=operation,
            )
        return cleaned

    @staticmethod
    def _coerce_transaction_type(
        value: CreditTransactionType | str | None,
        organization_id: int,
        operation: str,
    ) -> CreditTransactionType | None:
        if value is None or isinstance(value, CreditTransactionType):
            return value
        try:
            return CreditTransactionType(str(value).strip().lower())
        except ValueError as exc:
            raise LedgerValidationError(
                f"unknown transaction type: {value}", organization_id=organization_id, operation=operation
            ) from exc

    @staticmethod
    def _check_replay(
        existing: CreditLedgerEntry,
        transaction_type: CreditTransactionType,
        delta: int,
        operation: str,
    ) -> None:
        if existing.transaction_type != transaction_type or int(existing.amount) != delta:
            raise LedgerValidationError(
                "Idempotency key was already used for a different ledger transaction",
                organization_id=existing.organization_id,
                operation=operation,
            )


def grant_signup_credits(db: Session, organization_id: int) -> Optional[LedgerResult]:
    """Give a newly created organization its starting balance through the ledger."""
    amount = int(settings.CREDITS_SIGNUP_GRANT or 0)
    if amount <= 0:
        return None
    return CreditLedgerService(db).grant(
        organization_id,
        amount,
        SIGNUP_GRANT_DESCRIPTION,
        metadata={"source": "signup"},
        idempotency_key=f"signup:{organization_id}",
    )
