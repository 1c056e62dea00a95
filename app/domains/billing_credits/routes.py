"""Credits: balance, history, consumption, grants, refunds, usage summary."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from ...components.credits.errors import (
    ConcurrencyConflict,
    CreditLedgerError,
    InsufficientCredits,
    LedgerValidationError,
    OrganizationNotFound,
    PersistenceUnavailable,
)
from ...components.credits.schemas import (
    BalanceResponse,
    CanAffordResponse,
    MAX_CREDIT_AMOUNT,
    ConsumeCreditsRequest,
    GrantCreditsRequest,
    HistoryResponse,
    LedgerMutationResponse,
    ReconciliationResponse,
    RefundCreditsRequest,
    UsageSummaryResponse,
)
from ...components.credits.service import CreditLedgerService, LedgerResult, serialize_ledger_entry
from ...deps import get_credit_admin, get_current_org_user
from ...models.credit_ledger import CreditTransactionType
from ...models.user import User
from ...platform.config import settings
from ...platform.database import get_db

router = APIRouter(prefix="/credits", tags=["Credits"])

_ERROR_STATUS = {
    OrganizationNotFound: 404,
    InsufficientCredits: 402,
    ConcurrencyConflict: 409,
    PersistenceUnavailable: 503,
    LedgerValidationError: 400,
}


def _http_error(exc: CreditLedgerError) -> HTTPException:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        500,
    )
    headers = {"Retry-After": "1"} if isinstance(exc, (ConcurrencyConflict, PersistenceUnavailable)) else None
    return HTTPException(status_code=status_code, detail=exc.to_detail(), headers=headers)


def _mutation_response(result: LedgerResult) -> dict:
    return {
        "transaction": serialize_ledger_entry(result.entry),
        "new_balance": result.new_balance,
        "replayed": result.replayed,
    }


@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_org_user),
):
    try:
        return CreditLedgerService(db).get_balance(current_user.organization_id)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/history", response_model=HistoryResponse)
def get_history(
    limit: int = Query(default=settings.CREDITS_HISTORY_DEFAULT_LIMIT, ge=1, le=settings.CREDITS_HISTORY_MAX_LIMIT),
    offset: int = Query(default=0, ge=0),
    transaction_type: Optional[CreditTransactionType] = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_org_user),
):
    try:
        page = CreditLedgerService(db).history(
            current_user.organization_id,
            transaction_type=transaction_type,
            limit=limit,
            offset=offset,
        )
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "items": [serialize_ledger_entry(entry) for entry in page.items],
        "total": page.total,
        "has_more": page.has_more,
    }


@router.post("/consume", response_model=LedgerMutationResponse)
def consume_credits(
    body: ConsumeCreditsRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_org_user),
):
    """Debit credits for a unit of work (called by jobs/workflows)."""
    try:
        result = CreditLedgerService(db).consume(
            current_user.organization_id,
            body.amount,
            body.description,
            job_id=body.job_id,
            metadata=body.metadata,
            idempotency_key=body.idempotency_key or idempotency_key,
        )
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.post("/grant", response_model=LedgerMutationResponse)
def grant_credits(
    body: GrantCreditsRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_credit_admin),
):
    try:
        result = CreditLedgerService(db).grant(
            current_user.organization_id,
            body.amount,
            body.description,
            metadata=body.metadata,
            idempotency_key=body.idempotency_key or idempotency_key,
        )
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.post("/refund", response_model=LedgerMutationResponse)
def refund_credits(
    body: RefundCreditsRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_credit_admin),
):
    """Return credits for work that did not complete (e.g. a failed job)."""
    try:
        result = CreditLedgerService(db).refund(
            current_user.organization_id,
            body.amount,
            body.description,
            job_id=body.job_id,
            metadata=body.metadata,
            idempotency_key=body.idempotency_key or idempotency_key,
        )
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.get("/can-afford", response_model=CanAffordResponse)
def can_afford(
    amount: int = Query(gt=0, le=MAX_CREDIT_AMOUNT),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_org_user),
):
    try:
        return CreditLedgerService(db).can_afford(current_user.organization_id, amount)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/usage-summary", response_model=UsageSummaryResponse)
def usage_summary(
    window_days: int = Query(
        default=settings.CREDITS_USAGE_DEFAULT_WINDOW_DAYS,
        ge=1,
        le=settings.CREDITS_USAGE_MAX_WINDOW_DAYS,
    ),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_org_user),
):
    try:
        return CreditLedgerService(db).usage_summary(current_user.organization_id, window_days)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/reconcile", response_model=ReconciliationResponse)
def reconcile(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_org_user),
):
    try:
        return CreditLedgerService(db).reconcile(current_user.organization_id)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
