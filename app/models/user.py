from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fastapi_users.db import SQLAlchemyBaseUserTable

from ..platform.database import Base

USER_ROLES = ("owner", "admin", "member")
# Roles allowed to add credits (grants, refunds) to their organization.
CREDIT_ADMIN_ROLES = frozenset({"owner", "admin"})


class User(SQLAlchemyBaseUserTable[int], Base):
    """User model extending FastAPI-Users base with organization membership."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True, autoincrement=True)
    full_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    organization_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("organizations.id"), nullable=True, index=True
    )
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="owner")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    organization = relationship("Organization", back_populates="users")

    @property
    def can_manage_credits(self) -> bool:
        return bool(self.is_superuser) or (self.role or "") in CREDIT_ADMIN_ROLES
