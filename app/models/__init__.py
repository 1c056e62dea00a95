from .user import User
from .organization import Organization
from .credit_ledger import CreditLedgerEntry, CreditTransactionType

__all__ = [
    "User",
    "Organization",
    "CreditLedgerEntry",
    "CreditTransactionType",
]
