from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..platform.database import Base


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, index=True)
    # Cached running balance. Written only by CreditLedgerRepository.append_entry_and_update_balance.
    credit_balance = Column(Integer, nullable=False, default=0)
    plan_tier = Column(String(50), nullable=False, default="free")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    users = relationship("User", back_populates="organization")
    credit_ledger_entries = relationship(
        "CreditLedgerEntry",
        back_populates="organization",
        order_by="CreditLedgerEntry.id",
        viewonly=True,
    )
