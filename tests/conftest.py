"""
Test fixtures for the Voucher Ledger API test suite.

This module provides shared fixtures used across all test files:

  - db_engine / db_session: Fresh in-memory SQLite database for each test
  - file_engine: File-backed SQLite database, for tests that need several
    real connections (concurrent redemptions)
  - client: Async HTTP test client with the test database injected
  - auth_headers: Builds a bearer header for any identity address
  - factory: Inserts organizations, funds, products, vouchers and ledger rows
  - notifications: Starts the notification dispatcher with a recording sender

Key design decisions:
  - In-memory SQLite (sqlite+aiosqlite://) is used for speed and isolation.
    Each test gets a completely fresh database — no state leaks between tests.
  - We override FastAPI's get_db dependency to inject our test session,
    so the application code works exactly as it does in production.
  - Identities are issued elsewhere; tests mint tokens with the same secret.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

import app.models  # noqa: F401
from app.database import Base, get_db
from app.main import app
from app.models.fund import Fund, FundProvider, FundProviderState, FundState
from app.models.organization import Organization, Permission
from app.models.product import Product, ProductCategory
from app.models.voucher import Voucher, VoucherToken
from app.models.voucher_transaction import TransactionState, VoucherTransaction
from app.security import create_access_token
from app.services import organization_service
from app.services.notification_service import dispatcher


# In-memory SQLite for fast, isolated tests
TEST_DATABASE_URL = "sqlite+aiosqlite://"

HOLDER = "0xholder"
OTHER_HOLDER = "0xotherholder"
SPONSOR_OWNER = "0xsponsor"
PROVIDER_OWNER = "0xprovider"
CASHIER = "0xcashier"


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed SQLite: every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Provide an async session bound to the test engine."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_engine):
    """
    Async HTTP test client with the test database injected.

    This overrides the get_db dependency so all requests hit the
    in-memory test database instead of the real one.
    """
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async def override_get_db():
        async with async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def auth_headers():
    def _headers(identity_address: str) -> dict:
        token = create_access_token({"sub": identity_address})
        return {"Authorization": f"Bearer {token}"}
    return _headers


class RecordingSender:
    """Collects every delivered notification; optionally fails on demand."""

    def __init__(self):
        self.sent = []
        self.fail_with: Exception | None = None

    async def send(self, notification) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(notification)

    def of_type(self, event_type) -> list:
        return [n for n in self.sent if isinstance(n, event_type)]


@pytest_asyncio.fixture
async def notifications():
    """
    Run the dispatcher with a RecordingSender for the duration of a test.

    Call `await dispatcher.drain()` before asserting on `sender.sent`.
    """
    sender = RecordingSender()
    original = dispatcher.sender
    dispatcher.set_sender(sender)
    await dispatcher.start()
    yield sender
    await dispatcher.stop()
    dispatcher.set_sender(original)


class Factory:
    """
    Inserts test data through one session and commits after every call,
    so HTTP requests (separate sessions) see it immediately.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _save(self, instance):
        self.session.add(instance)
        await self.session.commit()
        return instance

    async def organization(
        self,
        name: str = "Bakery",
        owner: str = PROVIDER_OWNER,
        iban: str | None = "NL91ABNA0417164300",
        email: str | None = "owner@example.com",
    ) -> Organization:
        return await self._save(
            Organization(name=name, identity_address=owner, iban=iban, email=email)
        )

    async def fund(
        self,
        sponsor: Organization,
        name: str = "Kindpakket",
        state: FundState = FundState.ACTIVE,
        formula_amount_cents: int = 10000,
        end_date: date | None = None,
    ) -> Fund:
        today = datetime.now(timezone.utc).date()
        return await self._save(
            Fund(
                organization=sponsor,
                name=name,
                state=state,
                start_date=today - timedelta(days=30),
                end_date=end_date or today + timedelta(days=365),
                formula_amount_cents=formula_amount_cents,
            )
        )

    async def fund_provider(
        self,
        fund: Fund,
        provider: Organization,
        state: FundProviderState = FundProviderState.APPROVED,
    ) -> FundProvider:
        return await self._save(
            FundProvider(fund=fund, organization=provider, state=state)
        )

    async def category(self, name: str = "Food") -> ProductCategory:
        return await self._save(ProductCategory(name=name))

    async def product(
        self,
        provider: Organization,
        price_cents: int = 2500,
        name: str = "Bread",
        category: ProductCategory | None = None,
        expire_at: datetime | None = None,
    ) -> Product:
        return await self._save(
            Product(
                organization=provider,
                name=name,
                price_cents=price_cents,
                product_category_id=category.id if category else None,
                expire_at=expire_at,
            )
        )

    async def voucher(
        self,
        fund: Fund,
        identity: str = HOLDER,
        amount_cents: int = 10000,
        expire_at: datetime | None = None,
        product: Product | None = None,
        parent: Voucher | None = None,
    ) -> Voucher:
        return await self._save(
            Voucher(
                fund=fund,
                identity_address=identity,
                amount_cents=amount_cents,
                expire_at=expire_at or datetime.now(timezone.utc) + timedelta(days=30),
                product=product,
                parent=parent,
                tokens=[
                    VoucherToken(address=uuid.uuid4().hex * 2, need_confirmation=True),
                    VoucherToken(address=uuid.uuid4().hex * 2, need_confirmation=False),
                ],
                transactions=[],
                product_vouchers=[],
            )
        )

    async def transaction(
        self,
        voucher: Voucher,
        provider: Organization,
        amount_cents: int,
        created_at: datetime | None = None,
        product: Product | None = None,
        state: TransactionState = TransactionState.PENDING,
    ) -> VoucherTransaction:
        return await self._save(
            VoucherTransaction(
                voucher_id=voucher.id,
                organization_id=provider.id,
                product_id=product.id if product else None,
                amount_cents=amount_cents,
                state=state,
                created_at=created_at or datetime.now(timezone.utc),
            )
        )

    async def grant(self, organization: Organization, identity: str, permission: Permission):
        grant = await organization_service.grant_permission(
            self.session, organization.id, identity, permission
        )
        await self.session.commit()
        return grant


@pytest_asyncio.fixture
async def factory(db_session):
    return Factory(db_session)


def token_address(voucher: Voucher, need_confirmation: bool = False) -> str:
    return next(t.address for t in voucher.tokens if t.need_confirmation == need_confirmation)


@pytest_asyncio.fixture
async def world(factory):
    """
    A typical world: a sponsor with one active fund, an approved provider
    with one product, and a holder with a 100.00 voucher.
    """
    sponsor = await factory.organization(name="City Council", owner=SPONSOR_OWNER)
    provider = await factory.organization(name="Corner Bakery", owner=PROVIDER_OWNER)
    fund = await factory.fund(sponsor)
    fund_provider = await factory.fund_provider(fund, provider)
    product = await factory.product(provider, price_cents=2500)
    voucher = await factory.voucher(fund, amount_cents=10000)
    return {
        "sponsor": sponsor,
        "provider": provider,
        "fund": fund,
        "fund_provider": fund_provider,
        "product": product,
        "voucher": voucher,
    }
