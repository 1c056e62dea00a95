from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class OrgResponse(BaseModel):
    id: int
    name: str
    slug: Optional[str] = None
    plan_tier: str = "free"
    # Read-only view of the ledger-maintained balance.
    credit_balance: int = 0
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
