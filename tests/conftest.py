import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardmint.db.database import get_session
from cardmint.models.db import Base
from cardmint.services.allocation_engine import AllocationEngine, reset_allocation_engine
from cardmint.services.merkle import MerkleTree
from cardmint.services.supply_ledger import InMemorySupplyLedger
from tests.factories import build_tree, make_engine


@pytest.fixture(autouse=True)
def clear_global_state():
    """Reset the process-wide engine between tests."""
    reset_allocation_engine()
    yield
    reset_allocation_engine()


@pytest.fixture
def allowlist_tree() -> MerkleTree:
    """Allowlist tree over ALLOWLIST, indexed by position."""
    return build_tree()


@pytest.fixture
def ledger() -> InMemorySupplyLedger:
    return InMemorySupplyLedger()


@pytest.fixture
def engine(ledger: InMemorySupplyLedger, allowlist_tree: MerkleTree) -> AllocationEngine:
    return make_engine(ledger=ledger, tree=allowlist_tree)


@pytest.fixture
async def async_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def session(async_engine) -> AsyncSession:
    """Provide a database session for tests."""
    async_session = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session


@pytest.fixture
async def client(async_engine):
    """Provide an async test client with overridden database session."""
    from cardmint.main import app

    async_session = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_session():
        async with async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
