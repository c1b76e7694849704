# tests/conftest.py
import os
import tempfile
from datetime import timedelta

# The app reads its settings (and builds its engine) at import time
_TEST_DB_DIR = tempfile.mkdtemp(prefix="marketplace-sync-tests-")
os.environ["ENV_FILE"] = os.path.join(_TEST_DB_DIR, "missing.env")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'app.db')}"
os.environ["ENVIRONMENT"] = "test"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["WEBHOOK_SECRET_TOKEN"] = "test-secret"
os.environ.pop("BASIC_AUTH_PASSWORD", None)

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app import models  # noqa: F401  registers every table on Base.metadata
from app.core.config import Settings
from app.core.utils import utcnow
from app.database import Base
from app.models.marketplace_account import MarketplaceAccount
from app.models.order import Order


@pytest.fixture
def settings():
    """Provide test settings"""
    return Settings(
        DATABASE_URL=os.environ["DATABASE_URL"],
        WEBHOOK_SECRET_TOKEN="test-secret",
        MARKETPLACE_CLIENT_ID="test-client-id",
        MARKETPLACE_CLIENT_SECRET="test-client-secret",
        MARKETPLACE_REDIRECT_URI="https://shop.example.com/marketplace/callback",
        MARKETPLACE_API_BASE_URL="https://marketplace.test",
        PAYMENT_API_BASE_URL="https://payments.test",
        PAYMENT_ACCESS_TOKEN="test-payment-token",
        SYNC_RATE_LIMIT_DELAY_MS=0,
        SYNC_PAGE_SIZE=4,
        WEBHOOK_RATE_LIMIT_MAX_REQUESTS=3,
        WEBHOOK_RATE_LIMIT_WINDOW_SECONDS=60,
        WEBHOOK_RETRY_MAX_ATTEMPTS=4,
        WEBHOOK_RETRY_BASE_DELAY_SECONDS=30,
        WEBHOOK_RETRY_MAX_DELAY_SECONDS=3600,
        NOTIFICATION_EMAILS=["ops@example.com"],
        ENVIRONMENT="test",
    )


@pytest.fixture
async def test_engine(tmp_path):
    """Create a fresh SQLite database per test function."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def create_account(session_factory):
    """Factory for connected marketplace accounts."""

    async def _create(user_id=1, seller_id="123456", expires_in=timedelta(hours=6), **overrides):
        values = {
            "user_id": user_id,
            "seller_id": seller_id,
            "nickname": "TESTSELLER",
            "access_token": "access-token-1",
            "refresh_token": "refresh-token-1",
            "expires_at": utcnow() + expires_in,
            "scope": "offline_access read",
        }
        values.update(overrides)
        async with session_factory() as db:
            account = MarketplaceAccount(**values)
            db.add(account)
            await db.commit()
            await db.refresh(account)
        return account

    return _create


@pytest.fixture
def create_order(session_factory):
    """Factory for storefront orders awaiting payment."""

    async def _create(external_reference="order-ref-1", **overrides):
        values = {
            "order_number": f"ORD-{external_reference}",
            "external_reference": external_reference,
            "total_amount": 199.9,
            "customer_email": "buyer@example.com",
        }
        values.update(overrides)
        async with session_factory() as db:
            order = Order(**values)
            db.add(order)
            await db.commit()
            await db.refresh(order)
        return order

    return _create


@pytest.fixture
def sample_item():
    """A marketplace item payload as returned by GET /items/{id}"""
    return {
        "id": "MLB1000",
        "title": "Guitarra Stratocaster",
        "price": 2499.9,
        "original_price": 2999.9,
        "available_quantity": 3,
        "condition": "new",
        "status": "active",
        "category_id": "MLB3004",
        "last_updated": "2026-10-01T12:00:00.000Z",
        "pictures": [
            {"secure_url": "https://img.example.com/1.jpg", "url": "http://img.example.com/1.jpg"},
            {"url": "http://img.example.com/2.jpg"},
        ],
        "attributes": [
            {"id": "BRAND", "name": "Marca", "value_name": "Fender"},
            {"id": "MODEL", "name": "Modelo", "value_name": "Player"},
            {"id": "WEIGHT", "name": "Peso", "value_name": "3,5 kg"},
            {"id": "WIDTH", "name": "Largura", "value_name": "32 cm"},
            {"id": "LENGTH", "name": "Comprimento", "value_name": "1,02 m"},
        ],
    }
