"""
Centralized Test Configuration.
"""

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core.jwt import create_access_token
from backend.app.core.redis_client import get_redis
import backend.app.core.redis_client as redis_client_module
from backend.app.domain.actor import Actor
from backend.app.domain.ledger.inventory_ledger import InventoryLedger
from backend.app.domain.ledger.wallet_ledger import WalletLedger
from backend.app.integrations.courier.fake_adapter import FakeCourierGateway
from backend.app.integrations.courier.registry import get_courier_gateway
from backend.app.models.brand_authorization import BrandAuthorization
from backend.app.models.enums import UserRole, AuthorizationStatus
from backend.app.models.part import Part
from backend.app.models.rate_card import RateCard
from backend.app.models.shipment_enums import ShipmentType
from backend.app.models.user import User

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def exists(self, key):
        if self._closed:
            return 0
        return 1 if key in self.store else 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()


@pytest.fixture(scope="session")
def fake_courier():
    return FakeCourierGateway()


@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session, fake_courier):
    """Apply overrides once for the session."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client_session

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_courier_gateway] = lambda: fake_courier
    yield

    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


@pytest.fixture(autouse=True)
async def setup_database(redis_client_session, fake_courier):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()
    fake_courier.reset()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


# --- Data helpers ---

def auth_headers(user: User, **extra) -> dict:
    token = create_access_token(data={"sub": user.email, "user_id": user.id, "role": user.role.value})
    headers = {"Authorization": f"Bearer {token}"}
    headers.update(extra)
    return headers


def actor_for(user: User) -> Actor:
    return Actor.user(user.id, user.email, user.role)


async def make_user(db, role: UserRole, email: str, pincode: str = "110001", **kwargs) -> User:
    user = User(
        email=email,
        name=kwargs.pop("name", email.split("@")[0]),
        role=role,
        is_active=kwargs.pop("is_active", True),
        phone="9876543210",
        address_line1="12 Main Road",
        city="Delhi",
        state="Delhi",
        pincode=pincode,
        **kwargs,
    )
    db.add(user)
    await db.flush()
    return user


async def make_rate_card(db, shipment_type: ShipmentType, **kwargs) -> RateCard:
    values = dict(
        name=f"{shipment_type.value} standard",
        shipment_type=shipment_type,
        base_rate_per_box=Decimal("50.00"),
        weight_rate_per_kg=Decimal("20.00"),
        free_weight_per_box=Decimal("0.5"),
        express_multiplier=Decimal("1.5"),
        remote_surcharge_per_box=Decimal("25.00"),
        markup_percent=Decimal("10"),
        min_charge=Decimal("0"),
        insurance_threshold=Decimal("5000.00"),
        insurance_premium_rate=Decimal("0.02"),
        insurance_gst_rate=Decimal("0.18"),
        effective_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
        is_active=True,
    )
    values.update(kwargs)
    card = RateCard(**values)
    db.add(card)
    await db.flush()
    return card


@pytest.fixture
async def network(db_session):
    """
    A brand with one distributor, one service center and one customer.

    Parts: P1 (1.0kg, 100.00) and P2 (2.0kg, 3000.00), both with 10 on hand.
    Brand, service center and customer wallets hold 1000.00 each.
    """
    db = db_session
    admin = await make_user(db, UserRole.SUPER_ADMIN, "admin@spareflow.test")
    brand = await make_user(db, UserRole.BRAND, "ops@brand.test")
    distributor = await make_user(db, UserRole.DISTRIBUTOR, "dist@partner.test")
    service_center = await make_user(db, UserRole.SERVICE_CENTER, "sc@partner.test")
    customer = await make_user(db, UserRole.CUSTOMER, "customer@home.test")

    for partner in (distributor, service_center):
        db.add(BrandAuthorization(
            brand_id=brand.id, partner_id=partner.id, partner_role=partner.role, status=AuthorizationStatus.ACTIVE,
        ))

    p1 = Part(brand_id=brand.id, code="P1", name="Compressor relay", weight_kg=Decimal("1.000"), price=Decimal("100.00"))
    p2 = Part(brand_id=brand.id, code="P2", name="Control board", weight_kg=Decimal("2.000"), price=Decimal("3000.00"))
    db.add_all([p1, p2])
    await db.flush()

    forward_card = await make_rate_card(db, ShipmentType.FORWARD)
    reverse_card = await make_rate_card(db, ShipmentType.REVERSE)

    seed = Actor.system("test-seed")
    for part in (p1, p2):
        await InventoryLedger.add_stock(db, brand.id, part.id, 10, seed)
    for owner in (brand, service_center, customer):
        await WalletLedger.credit(db, owner.id, Decimal("1000.00"), f"seed:{owner.id}", seed)
    await db.commit()

    return SimpleNamespace(
        admin=admin,
        brand=brand,
        distributor=distributor,
        service_center=service_center,
        customer=customer,
        p1=p1,
        p2=p2,
        forward_card=forward_card,
        reverse_card=reverse_card,
    )
