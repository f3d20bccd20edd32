"""
Credential store — where adapters get per-tenant marketplace tokens.

The sync core only reads credentials. A missing, inactive or expired
credential is an AuthFailure so the executor raises a credential alert
instead of retrying. MissingCredential marks a platform the tenant never
connected.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from cryptography.fernet import InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import AuthFailure, MissingCredential
from integrations.base import Credential


class CredentialStore(Protocol):
    async def get_credential(self, tenant_id: str, platform: str) -> Credential: ...


class DatabaseCredentialStore:
    """Reads platform_credentials and decrypts the access token."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_credential(self, tenant_id: str, platform: str) -> Credential:
        from core.security import decrypt
        from db.models import PlatformCredential

        result = await self.db.execute(
            select(PlatformCredential)
            .where(
                PlatformCredential.tenant_id == tenant_id,
                PlatformCredential.platform == platform,
                PlatformCredential.is_active.is_(True),
            )
            .order_by(PlatformCredential.updated_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None or not row.access_token_encrypted:
            raise MissingCredential(f"No active {platform} credential for tenant", platform=platform)
        if row.token_expires_at is not None and row.token_expires_at <= datetime.utcnow():
            raise AuthFailure(
                f"{platform} access token expired",
                platform=platform,
                details={"expired_at": row.token_expires_at.isoformat()},
            )

        try:
            token = decrypt(row.access_token_encrypted)
        except InvalidToken as exc:
            raise AuthFailure(f"{platform} access token could not be decrypted", platform=platform) from exc

        return Credential(
            platform=platform,
            shop_id=row.shop_id,
            access_token=token,
            shop_name=row.shop_name,
            expires_at=row.token_expires_at,
        )


class StaticCredentialStore:
    """In-memory store keyed by (tenant_id, platform). Used locally and in tests."""

    def __init__(self, credentials: dict[tuple[str, str], Credential] | None = None):
        self._credentials = {(str(t), p): c for (t, p), c in (credentials or {}).items()}

    def put(self, tenant_id: str, credential: Credential) -> None:
        self._credentials[(str(tenant_id), credential.platform)] = credential

    async def get_credential(self, tenant_id: str, platform: str) -> Credential:
        credential = self._credentials.get((str(tenant_id), platform))
        if credential is None:
            raise MissingCredential(f"No {platform} credential for tenant", platform=platform)
        return credential
