"""
MarketSync API Dependencies

Dependency injection for DB sessions, auth, tenant context and the sync
core's collaborators (rate limiter, credential store, adapter factory).
"""

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.session import AsyncSessionLocal
from integrations.base import get_adapter
from integrations.credentials import DatabaseCredentialStore
from sync.rate_limiter import RateLimiter, build_rate_limiter

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

# Dev tenant_id used when debug bypasses auth
DEV_TENANT_ID = "00000000-0000-0000-0000-000000000001"


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
            "email": "dev@marketsync.local",
            "tenant_id": DEV_TENANT_ID,
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


def get_tenant_id(user: dict = Depends(get_current_user)) -> uuid.UUID:
    tenant_id = user.get("tenant_id")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No tenant context",
        )
    try:
        return uuid.UUID(str(tenant_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Malformed tenant context",
        )


async def get_tenant_db(
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
) -> AsyncSession:
    """
    Get a DB session with tenant context set.
    On PostgreSQL this also sets the RLS variable for row-level security.
    """
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        await db.execute(
            text("SELECT set_config('app.current_tenant_id', :tid, true)"),
            {"tid": str(tenant_id)},
        )
    return db


def get_rate_limiter(request: Request) -> RateLimiter:
    """Process-wide limiter, created on first use."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = build_rate_limiter(settings)
        request.app.state.rate_limiter = limiter
    return limiter


def get_credential_store(db: AsyncSession = Depends(get_tenant_db)):
    return DatabaseCredentialStore(db)


def get_adapter_factory():
    return get_adapter
