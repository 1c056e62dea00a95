"""
FastAPI-Users configuration: user manager, auth backend, schemas, signup credits.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi_users import BaseUserManager, FastAPIUsers, IntegerIDMixin, InvalidPasswordException
from fastapi_users.authentication import AuthenticationBackend, BearerTransport, JWTStrategy
from fastapi_users.db import SQLAlchemyUserDatabase
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from ...components.credits.errors import CreditLedgerError
from ...components.credits.service import grant_signup_credits
from ...models.user import User
from ...models.organization import Organization
from ...platform.config import settings
from ...platform.database import SessionLocal, get_async_db

logger = logging.getLogger("oro.auth")

ORGANIZATION_ALREADY_EXISTS = "REGISTER_ORGANIZATION_ALREADY_EXISTS"


# ---- Schemas (extend FastAPI-Users base) ----
from fastapi_users import schemas


class UserRead(schemas.BaseUser[int]):
    full_name: Optional[str] = None
    organization_id: Optional[int] = None
    role: str = "owner"


class UserCreate(schemas.BaseUserCreate):
    full_name: Optional[str] = None
    organization_name: Optional[str] = None


class UserUpdate(schemas.BaseUserUpdate):
    full_name: Optional[str] = None


def _grant_signup_credits_sync(organization_id: int) -> None:
    db = SessionLocal()
    try:
        grant_signup_credits(db, organization_id)
    finally:
        db.close()


# ---- User Manager ----
class UserManager(IntegerIDMixin, BaseUserManager[User, int]):
    reset_password_token_secret = settings.SECRET_KEY
    verification_token_secret = settings.SECRET_KEY
    reset_password_token_lifetime_seconds = 3600
    verification_token_lifetime_seconds = 86400  # 24 hours

    async def validate_password(self, password: str, user) -> None:
        if len(password) < 8:
            raise InvalidPasswordException(reason="Password should be at least 8 characters")

    async def create(self, user_create, safe: bool = False, request: Optional[Request] = None) -> User:
        await self.validate_password(user_create.password, user_create)

        existing_user = await self.user_db.get_by_email(user_create.email)
        if existing_user is not None:
            from fastapi_users import exceptions

            raise exceptions.UserAlreadyExists()

        user_dict = (
            user_create.create_update_dict()
            if safe
            else user_create.create_update_dict_superuser()
        )
        password = user_dict.pop("password")
        user_dict["hashed_password"] = self.password_helper.hash(password)

        organization_name = user_dict.pop("organization_name", None) or getattr(user_create, "organization_name", None)

        org_id = None
        created_org_id = None
        role = "member"
        if organization_name:
            session: AsyncSession = self.user_db.session
            slug = organization_name.strip().lower().replace(" ", "-")
            result = await session.execute(select(Organization.id).where(Organization.slug == slug))
            if result.scalar_one_or_none() is not None:
                # Self-registration only creates organizations; members are added out of band.
                raise HTTPException(status_code=400, detail=ORGANIZATION_ALREADY_EXISTS)
            # Balance starts at 0; signup credits arrive as a ledger grant below.
            org = Organization(name=organization_name.strip(), slug=slug, credit_balance=0)
            session.add(org)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise HTTPException(status_code=400, detail=ORGANIZATION_ALREADY_EXISTS) from exc
            created_org_id = org_id = org.id
            role = "owner"
        user_dict["organization_id"] = org_id
        user_dict["role"] = role

        created_user = await self.user_db.create(user_dict)
        if created_org_id is not None:
            try:
                await run_in_threadpool(_grant_signup_credits_sync, created_org_id)
            except CreditLedgerError:
                logger.exception("Signup credit grant failed for organization %s", created_org_id)
        await self.on_after_register(created_user, request)
        return created_user

    async def on_after_register(self, user: User, request: Optional[Request] = None) -> None:
        logger.info("User %s registered (organization_id=%s)", user.id, user.organization_id)


async def get_user_db(session: AsyncSession = Depends(get_async_db)):
    yield SQLAlchemyUserDatabase(session, User)


async def get_user_manager(user_db: SQLAlchemyUserDatabase = Depends(get_user_db)):
    yield UserManager(user_db)


# ---- Auth Backend ----
bearer_transport = BearerTransport(tokenUrl="/api/v1/auth/jwt/login")


def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(
        secret=settings.SECRET_KEY,
        lifetime_seconds=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


auth_backend = AuthenticationBackend(
    name="jwt",
    transport=bearer_transport,
    get_strategy=get_jwt_strategy,
)

fastapi_users = FastAPIUsers[User, int](get_user_manager, [auth_backend])

current_active_user = fastapi_users.current_user(active=True)
