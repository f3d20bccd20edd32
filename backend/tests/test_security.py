"""
Tests for settings guardrails, token encryption and the credential stores.
"""

import uuid
from datetime import datetime, timedelta

import pytest

from core import config as config_module
from core.errors import AuthFailure, MissingCredential
from core.security import create_access_token, decode_access_token, decrypt, encrypt
from integrations.base import Credential
from integrations.credentials import DatabaseCredentialStore, StaticCredentialStore


def _reset_settings_cache():
    config_module.get_settings.cache_clear()


@pytest.fixture
def restore_settings_cache():
    yield
    _reset_settings_cache()


# ── Settings guardrails ────────────────────────────────────────────────


def test_non_local_debug_mode_is_blocked(monkeypatch, restore_settings_cache):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("JWT_SECRET", "real-secret")
    monkeypatch.setenv("ENCRYPTION_KEY", "real-encryption-key")
    _reset_settings_cache()

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_default_encryption_key_is_blocked(monkeypatch, restore_settings_cache):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", "real-secret")
    monkeypatch.setenv("ENCRYPTION_KEY", config_module.DEFAULT_ENCRYPTION_KEY)
    _reset_settings_cache()

    with pytest.raises(ValueError, match="default encryption key"):
        config_module.get_settings()


def test_rate_limit_for_unknown_platform_is_strictest():
    settings = config_module.Settings(rate_limit_shopee_per_window=100, rate_limit_tiktokshop_per_window=60)
    assert settings.rate_limit_for("shopee") == 100
    assert settings.rate_limit_for("lazada") == 60


# ── Encryption & JWT ───────────────────────────────────────────────────


def test_access_tokens_are_encrypted_at_rest():
    ciphertext = encrypt("shopee-access-token")
    assert ciphertext != "shopee-access-token"
    assert decrypt(ciphertext) == "shopee-access-token"


def test_jwt_round_trip_carries_tenant():
    token = create_access_token({"sub": "user-1", "tenant_id": "t-1"})
    assert decode_access_token(token)["tenant_id"] == "t-1"


def test_tampered_jwt_is_rejected():
    token = create_access_token({"sub": "user-1"})
    assert decode_access_token(token + "x") is None


# ── Credential stores ──────────────────────────────────────────────────


@pytest.mark.asyncio
class TestDatabaseCredentialStore:
    async def _add(self, test_db, tenant_id, **overrides):
        from db.models import PlatformCredential

        fields = {
            "tenant_id": tenant_id,
            "platform": "shopee",
            "shop_id": "shop-1",
            "shop_name": "Main Shop",
            "access_token_encrypted": encrypt("live-token"),
            "is_active": True,
        }
        fields.update(overrides)
        row = PlatformCredential(**fields)
        test_db.add(row)
        await test_db.flush()
        return row

    async def test_decrypts_active_credential(self, test_db, tenant_id):
        await self._add(test_db, tenant_id)
        credential = await DatabaseCredentialStore(test_db).get_credential(tenant_id, "shopee")
        assert credential.access_token == "live-token"
        assert credential.shop_id == "shop-1"

    async def test_missing_credential(self, test_db, tenant_id):
        with pytest.raises(MissingCredential):
            await DatabaseCredentialStore(test_db).get_credential(tenant_id, "tiktokshop")

    async def test_inactive_credential_counts_as_missing(self, test_db, tenant_id):
        await self._add(test_db, tenant_id, is_active=False)
        with pytest.raises(MissingCredential):
            await DatabaseCredentialStore(test_db).get_credential(tenant_id, "shopee")

    async def test_expired_credential_is_auth_failure(self, test_db, tenant_id):
        await self._add(test_db, tenant_id, token_expires_at=datetime.utcnow() - timedelta(hours=1))
        with pytest.raises(AuthFailure) as excinfo:
            await DatabaseCredentialStore(test_db).get_credential(tenant_id, "shopee")
        assert not isinstance(excinfo.value, MissingCredential)

    async def test_undecryptable_token_is_auth_failure(self, test_db, tenant_id):
        await self._add(test_db, tenant_id, access_token_encrypted="not-a-fernet-token")
        with pytest.raises(AuthFailure):
            await DatabaseCredentialStore(test_db).get_credential(tenant_id, "shopee")


@pytest.mark.asyncio
async def test_static_store_is_keyed_by_tenant():
    tenant = str(uuid.uuid4())
    store = StaticCredentialStore()
    store.put(tenant, Credential(platform="shopee", shop_id="s", access_token="tok"))
    assert (await store.get_credential(tenant, "shopee")).access_token == "tok"
    with pytest.raises(MissingCredential):
        await store.get_credential(str(uuid.uuid4()), "shopee")
