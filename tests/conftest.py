import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

# Settings are read at import time
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "payment_ledger_app.db"),
)
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.api.v1.activity.audit_service import get_audit_sink
from app.auth.schemas import CurrentUser
from app.core.config import settings
from app.core.models import Registration
from app.core.models.registration import utcnow
from app.db.session import Base, get_db
from app.main import app


class RecordingSink:
    """In-memory audit sink; keeps every record for assertions."""

    def __init__(self) -> None:
        self.records: List[Dict] = []

    async def record(self, **fields) -> None:
        self.records.append(fields)

    @property
    def actions(self) -> List[str]:
        return [r["action"] for r in self.records]

    def last(self) -> Dict:
        return self.records[-1]


@pytest.fixture()
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh file-backed SQLite DB per test, so separate sessions see the same data."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        future=True,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def audit() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def admin() -> CurrentUser:
    return CurrentUser(id=7, name="Finance Admin", email="finance@example.com", role="FINANCE")


@pytest.fixture()
def make_registration(session_factory: async_sessionmaker):
    """Insert a registration and return its id."""
    counter = itertools.count(1)

    async def _make(
        full_amount: Optional[str] = "1000.00",
        slips=None,
        deleted: bool = False,
        full_name: Optional[str] = None,
    ) -> int:
        n = next(counter)
        async with session_factory() as session:
            reg = Registration(
                register_id=f"REG-{n:04d}",
                full_name=full_name or f"Student {n}",
                full_amount=Decimal(full_amount) if full_amount is not None else None,
                current_paid_amount=Decimal("0.00"),
                payment_slips=slips,
                deleted_at=utcnow() if deleted else None,
            )
            session.add(reg)
            await session.commit()
            return reg.id

    return _make


@pytest.fixture()
def auth_headers():
    def _headers(role: str = "FINANCE", user_id: int = 7) -> Dict[str, str]:
        claims = {
            "sub": str(user_id),
            "role": role,
            "name": "Finance Admin",
            "email": "finance@example.com",
            "exp": datetime.now(timezone.utc) + timedelta(minutes=15),
        }
        token = jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
async def client(session_factory: async_sessionmaker, audit: RecordingSink) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, with DB and audit sink overridden."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_audit_sink] = lambda: audit
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
