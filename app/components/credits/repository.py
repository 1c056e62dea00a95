"""Credit ledger persistence: SQLAlchemy queries behind the ledger service.

Nothing here commits. The ledger service owns the transaction boundary and
decides when to commit or roll back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ...models.credit_ledger import CreditLedgerEntry, CreditTransactionType
from ...models.organization import Organization
from .errors import ConcurrencyConflict


@dataclass(frozen=True)
class NewLedgerEntry:
    amount: int
    balance_after: int
    transaction_type: CreditTransactionType
    description: Optional[str] = None
    job_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    idempotency_key: Optional[str] = None


class CreditLedgerRepository:
    def __init__(self, db: Session):
        self.db = db

    # -----------------------------------------------------------------------
    # Organization balance register
    # -----------------------------------------------------------------------

    def get_organization(self, organization_id: int) -> Optional[Organization]:
        return (
            self.db.query(Organization)
            .filter(Organization.id == organization_id)
            .populate_existing()
            .first()
        )

    def lock_organization(self, organization_id: int) -> Optional[Organization]:
        """Load the organization row with ``FOR UPDATE`` (ignored by SQLite)."""
        return (
            self.db.query(Organization)
            .filter(Organization.id == organization_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def read_balance(self, organization_id: int) -> Optional[int]:
        value = (
            self.db.query(Organization.credit_balance)
            .filter(Organization.id == organization_id)
            .scalar()
        )
        return None if value is None else int(value)

    def organization_ids(self) -> List[int]:
        return [row[0] for row in self.db.query(Organization.id).order_by(Organization.id.asc()).all()]

    # -----------------------------------------------------------------------
    # Append-only ledger
    # -----------------------------------------------------------------------

    def find_by_idempotency_key(self, organization_id: int, idempotency_key: str) -> Optional[CreditLedgerEntry]:
        return (
            self.db.query(CreditLedgerEntry)
            .filter(
                CreditLedgerEntry.organization_id == organization_id,
                CreditLedgerEntry.idempotency_key == idempotency_key,
            )
            .first()
        )

    def append_entry_and_update_balance(
        self,
        organization_id: int,
        entry: NewLedgerEntry,
        *,
        expected_balance: int,
        new_balance: int,
    ) -> CreditLedgerEntry:
        """Swap the cached balance and insert the entry in the caller's transaction.

        The balance update only applies while the stored balance still equals
        ``expected_balance``; otherwise another writer got there first and
        ConcurrencyConflict is raised before anything is inserted.
        """
        if entry.balance_after != new_balance or expected_balance + entry.amount != new_balance:
            raise ValueError("ledger entry does not match the balance transition")

        result = self.db.execute(
            update(Organization)
            .where(
                Organization.id == organization_id,
                Organization.credit_balance == expected_balance,
            )
            .values(credit_balance=new_balance, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                "Balance changed while the ledger entry was being written",
                organization_id=organization_id,
            )

        row = CreditLedgerEntry(
            organization_id=organization_id,
            amount=entry.amount,
            balance_after=entry.balance_after,
            transaction_type=entry.transaction_type,
            description=entry.description,
            job_id=entry.job_id,
            entry_metadata=dict(entry.metadata or {}),
            idempotency_key=entry.idempotency_key,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def query_entries(
        self,
        organization_id: int,
        *,
        transaction_type: Optional[CreditTransactionType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[CreditLedgerEntry], int]:
        query = self.db.query(CreditLedgerEntry).filter(CreditLedgerEntry.organization_id == organization_id)
        if transaction_type is not None:
            query = query.filter(CreditLedgerEntry.transaction_type == transaction_type)
        total = query.count()
        items = (
            query.order_by(CreditLedgerEntry.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, int(total)

    def entries_since(self, organization_id: int, since: datetime) -> List[Tuple[int, Optional[str]]]:
        rows = (
            self.db.query(CreditLedgerEntry.amount, CreditLedgerEntry.description)
            .filter(
                CreditLedgerEntry.organization_id == organization_id,
                CreditLedgerEntry.created_at >= since,
            )
            .order_by(CreditLedgerEntry.id.desc())
            .all()
        )
        return [(int(amount), description) for amount, description in rows]

    def entries_ascending(self, organization_id: int, batch_size: int = 500) -> Iterator[CreditLedgerEntry]:
        """Yield every entry in insertion order."""
        return (
            self.db.query(CreditLedgerEntry)
            .filter(CreditLedgerEntry.organization_id == organization_id)
            .order_by(CreditLedgerEntry.id.asc())
            .yield_per(batch_size)
        )
