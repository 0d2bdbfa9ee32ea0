"""
LoyaltyOps Database Session Management

Async SQLAlchemy engine, session factory and the tenant context consumed by
row-level security.
"""

import uuid

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from core.config import get_settings

settings = get_settings()

_engine_kwargs = {"echo": settings.database_echo, "pool_pre_ping": True}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs.update(pool_size=20, max_overflow=10)

engine = create_async_engine(settings.database_url, **_engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

TENANT_INFO_KEY = "merchant_id"
TENANT_CONTEXT_SQL = text("SELECT set_config('app.current_merchant_id', :merchant_id, true)")


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


def _apply_tenant_context(session, transaction, connection):
    merchant_id = session.info.get(TENANT_INFO_KEY)
    if merchant_id is not None:
        connection.execute(TENANT_CONTEXT_SQL, {"merchant_id": merchant_id})


async def set_tenant_context(db: AsyncSession, merchant_id: uuid.UUID | str) -> None:
    """
    Scope every transaction of this session to one merchant.

    The setting is transaction-local and re-applied whenever the session
    begins a transaction, so it holds across commits even when the next
    transaction checks out a different pooled connection.
    """
    if not event.contains(db.sync_session, "after_begin", _apply_tenant_context):
        event.listen(db.sync_session, "after_begin", _apply_tenant_context)
    db.info[TENANT_INFO_KEY] = str(merchant_id)
    if db.in_transaction():
        await db.execute(TENANT_CONTEXT_SQL, {"merchant_id": str(merchant_id)})
