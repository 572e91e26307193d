import os

# The oracle client is built at import time and needs a key to exist
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vendorlens.ai import OracleCandidate
from vendorlens.auth import get_current_user
from vendorlens.database import Base, get_db
from vendorlens.errors import PersistenceError
from vendorlens.main import app
from vendorlens.models import VendorMapping, owner_scope
from vendorlens.query import MappingCreate


class _TestUser:
    """Minimal stand-in for User; tests switch ``id`` to act as someone else."""

    def __init__(self, user_id=1):
        self.id = user_id
        self.email = f"user{user_id}@example.com"
        self.name = "Test"


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db_session(engine):
    factory = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False
    )
    async with factory() as session:
        yield session


@pytest.fixture
def current_user():
    return _TestUser(1)


@pytest_asyncio.fixture
async def client(db_session, current_user):
    async def _override_get_db():
        yield db_session

    async def _override_get_current_user():
        return current_user

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_current_user] = _override_get_current_user
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def anon_client(db_session):
    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Data helper fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def make_mapping(db_session):
    async def _make(
        original_text="amzn mktplace us",
        mapped_name="Amazon",
        confidence=0.9,
        source="llm",
        user_id=None,
    ):
        m = VendorMapping(
            original_text=original_text,
            mapped_name=mapped_name,
            confidence=confidence,
            source=source,
            user_id=user_id,
            scope=owner_scope(user_id),
        )
        db_session.add(m)
        await db_session.flush()
        await db_session.commit()
        return m

    return _make


# ---------------------------------------------------------------------------
# Engine fakes
# ---------------------------------------------------------------------------


class FakeOracle:
    """Oracle double that records calls and replays a canned answer."""

    def __init__(self, candidate=None, error=None):
        self.candidate = candidate or OracleCandidate(
            name="Amazon", confidence=0.92, reasoning="Amazon marketplace"
        )
        self.error = error
        self.calls = []

    def resolve(self, vendor_text, context=None):
        self.calls.append((vendor_text, context))
        if self.error is not None:
            raise self.error
        return OracleCandidate(
            name=self.candidate.name,
            confidence=self.candidate.confidence,
            reasoning=self.candidate.reasoning,
            sources=list(self.candidate.sources),
        )


class InMemoryMappingStore:
    """Mapping store double with the same unique (key, scope) rule as the table."""

    def __init__(self):
        self.rows = {}
        self.create_calls = 0

    def _by_scope(self, key, scope):
        return next(
            (
                m
                for m in self.rows.values()
                if m.original_text == key and m.scope == scope
            ),
            None,
        )

    async def find_mapping(self, normalized_text, user_id):
        if user_id is not None:
            own = self._by_scope(normalized_text, owner_scope(user_id))
            if own is not None:
                return own
        return self._by_scope(normalized_text, owner_scope(None))

    async def find_owned(self, normalized_text, user_id):
        return self._by_scope(normalized_text, owner_scope(user_id))

    async def find_global(self, normalized_text):
        return self._by_scope(normalized_text, owner_scope(None))

    async def list_user_mappings(self, normalized_text):
        return [
            m
            for m in self.rows.values()
            if m.original_text == normalized_text
            and m.user_id is not None
            and m.source == "user"
        ]

    async def create_mapping(self, data: MappingCreate):
        self.create_calls += 1
        scope = owner_scope(data.user_id)
        if self._by_scope(data.original_text, scope) is not None:
            raise PersistenceError("insert", "duplicate", code="INSERT_ERROR")
        m = VendorMapping(
            id=f"00000000-0000-4000-8000-{len(self.rows):012d}",
            original_text=data.original_text,
            mapped_name=data.mapped_name,
            confidence=data.confidence,
            source=data.source,
            user_id=data.user_id,
            scope=scope,
        )
        self.rows[m.id] = m
        return m

    async def update_mapping(self, mapping_id, patch, user_id):
        m = self.rows[mapping_id]
        for key, value in patch.values().items():
            setattr(m, key, value)
        return m

    async def replace_global(self, mapping, mapped_name, confidence, source):
        mapping.mapped_name = mapped_name
        mapping.confidence = confidence
        mapping.source = source
        return mapping


@pytest.fixture
def fake_oracle():
    return FakeOracle()


@pytest.fixture
def memory_store():
    return InMemoryMappingStore()
