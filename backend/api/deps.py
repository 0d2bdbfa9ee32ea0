"""
LoyaltyOps API Dependencies

Dependency injection for DB sessions, auth, merchant context and the
merchant's Square client.
"""

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.session import AsyncSessionLocal, set_tenant_context

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_MERCHANT_ID = "00000000-0000-0000-0000-000000000001"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@loyaltyops.local",
            "merchant_id": DEV_MERCHANT_ID,
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


def get_merchant_id(user: dict = Depends(get_current_user)) -> uuid.UUID:
    """Merchant context from the token; every loyalty call is scoped to it."""
    merchant_id = user.get("merchant_id")
    if not merchant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No merchant context",
        )
    try:
        return uuid.UUID(str(merchant_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid merchant context",
        )


async def get_tenant_db(
    db: AsyncSession = Depends(get_db),
    merchant_id: uuid.UUID = Depends(get_merchant_id),
) -> AsyncSession:
    """
    Get a DB session with tenant context set.
    Every transaction on the session carries the merchant id consumed by
    row-level security, including those opened after a commit.
    """
    await set_tenant_context(db, merchant_id)
    return db


async def get_square_client(
    db: AsyncSession = Depends(get_tenant_db),
    merchant_id: uuid.UUID = Depends(get_merchant_id),
):
    """SquareClient for the merchant's connected integration."""
    from db.models import Integration
    from integrations.square import SquareClient

    result = await db.execute(
        select(Integration).where(
            Integration.merchant_id == merchant_id,
            Integration.provider == "square",
            Integration.status == "connected",
        )
    )
    integration = result.scalar_one_or_none()
    if integration is None or not integration.access_token_encrypted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Square integration is not connected",
        )
    return SquareClient(integration.access_token_encrypted)
