"""Pytest configuration for adsync tests

WHAT: Shared fixtures: in-memory database, fake Redis, fake Meta API, stored credentials
WHY: Services take their collaborators as arguments, so tests run without
     network, Redis or PostgreSQL
REFERENCES:
    - adsync/database.py: Database configuration
    - adsync/services/: Services under test
"""

import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Dict, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (adsync.security validates on first use)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("META_APP_ID", "test-app-id")
os.environ.setdefault("META_APP_SECRET", "test-app-secret")
os.environ.setdefault("META_OAUTH_REDIRECT_URI", "https://app.example.com/meta/callback")


# ============================================================================
# Async
# ============================================================================

@pytest.fixture
def anyio_backend():
    return "asyncio"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine.

    StaticPool keeps one connection so the database is shared with the
    worker threads the sync engine writes from.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from adsync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Fakes
# ============================================================================

class FakeLock:
    def __init__(self, store: "FakeRedis", name: str):
        self.store = store
        self.name = name
        self.owned = False

    def acquire(self, blocking: bool = True) -> bool:
        if self.name in self.store.locks:
            return False
        self.store.locks.add(self.name)
        self.owned = True
        return True

    def release(self) -> None:
        self.store.locks.discard(self.name)
        self.owned = False


class FakeRedis:
    """Subset of redis.Redis used by the OAuth session store and SyncLock."""

    def __init__(self):
        self.values: Dict[str, bytes] = {}
        self.ttls: Dict[str, int] = {}
        self.locks = set()
        self.lock_timeouts: Dict[str, Optional[int]] = {}

    def setex(self, key: str, ttl: int, value: str) -> bool:
        self.values[key] = value.encode("utf-8")
        self.ttls[key] = ttl
        return True

    def get(self, key: str) -> Optional[bytes]:
        return self.values.get(key)

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if key in self.values:
                del self.values[key]
                self.ttls.pop(key, None)
                removed += 1
        return removed

    def lock(self, name: str, timeout: Optional[int] = None, blocking: bool = True) -> FakeLock:
        self.lock_timeouts[name] = timeout
        return FakeLock(self, name)

    def close(self) -> None:
        pass


class FakeMetaApi:
    """In-memory stand-in for MetaAdsClient.

    `insights` maps (account_id, level value) to rows. `fail_on` names a
    method and account id that raise `error` when called.
    """

    def __init__(
        self,
        accounts=None,
        campaigns=None,
        ad_sets=None,
        ads=None,
        insights=None,
        fail_on=None,
        error: Optional[Exception] = None,
    ):
        self.accounts = accounts or []
        self.campaigns = campaigns or {}
        self.ad_sets = ad_sets or {}
        self.ads = ads or {}
        self.insights = insights or {}
        self.fail_on = fail_on
        self.error = error
        self.calls: List[tuple] = []

    def _maybe_fail(self, method: str, account_id: Optional[str] = None):
        self.calls.append((method, account_id))
        if self.fail_on == (method, account_id):
            raise self.error

    async def list_ad_accounts(self):
        self._maybe_fail("list_ad_accounts")
        return [account.model_copy() for account in self.accounts]

    async def list_campaigns(self, account_id):
        self._maybe_fail("list_campaigns", account_id)
        return [row.model_copy() for row in self.campaigns.get(account_id, [])]

    async def list_ad_sets(self, account_id):
        self._maybe_fail("list_ad_sets", account_id)
        return [row.model_copy() for row in self.ad_sets.get(account_id, [])]

    async def list_ads(self, account_id):
        self._maybe_fail("list_ads", account_id)
        return [row.model_copy() for row in self.ads.get(account_id, [])]

    async def list_insights(self, account_id, level, since=None):
        self._maybe_fail("list_insights", account_id)
        return [row.model_copy() for row in self.insights.get((account_id, level.value), [])]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def meta_api_cls():
    return FakeMetaApi


# ============================================================================
# Credential Fixtures
# ============================================================================

@pytest.fixture
def make_credential(test_db_session):
    """Factory storing a credential with an encrypted token."""
    from adsync.models import MetaCredential
    from adsync.security import encrypt_secret
    from adsync.utils.clock import utcnow

    def _make(
        user_id: str = "user-1",
        access_token: str = "EAAB-user-token",
        expires_in: timedelta = timedelta(days=30),
        requires_reauth: bool = False,
    ) -> MetaCredential:
        credential = MetaCredential(
            user_id=user_id,
            ad_account_ids=[],
            access_token_enc=encrypt_secret(access_token, context="test"),
            expires_at=utcnow() + expires_in,
            requires_reauth=requires_reauth,
        )
        test_db_session.add(credential)
        test_db_session.commit()
        return credential

    return _make
