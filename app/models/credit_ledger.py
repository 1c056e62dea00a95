import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..platform.database import Base


class CreditTransactionType(str, enum.Enum):
    GRANT = "grant"
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedgerEntry(Base):
    """Append-only record of one balance-affecting transaction."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("organization_id", "idempotency_key", name="uq_credit_ledger_org_idempotency_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)  # positive credit, negative debit
    balance_after = Column(Integer, nullable=False)
    transaction_type = Column(
        Enum(
            CreditTransactionType,
            name="credit_transaction_type",
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        index=True,
    )
    description = Column(String(500), nullable=True)
    # Jobs live in the workflow engine's schema; kept as an opaque UUID string.
    job_id = Column(String(36), nullable=True, index=True)
    entry_metadata = Column("metadata", JSON, nullable=False, default=dict)
    idempotency_key = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)

    organization = relationship("Organization", back_populates="credit_ledger_entries")
