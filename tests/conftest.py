import contextlib
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from helpdesk.core.clock import get_clock
from helpdesk.core.database import get_db
from helpdesk.core.security import hash_password
from helpdesk.main import app as fastapi_app
from helpdesk.models import Base, Role, User, UserStatus
from helpdesk.rbac.permission_seed import seed

PASSWORD = "correct horse battery staple"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class FrozenClock:
    """Clock that only moves when a test moves it.

    Starts at the real current time: bearer JWTs are still checked
    against the real wall clock by the JWT library.
    """

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime.now(timezone.utc).replace(microsecond=0)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """A throwaway SQLite file per test.

    pysqlite/aiosqlite defer BEGIN on their own, which breaks SAVEPOINT
    and lets two writers interleave.  Emitting BEGIN IMMEDIATE ourselves
    gives real serializable transactions: concurrent writers queue on
    the database lock instead of losing updates.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'helpdesk-test.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


def _user(email: str, full_name: str, role: Role, password_hash: str | None, **kwargs) -> User:
    user = User(email=email, full_name=full_name, password_hash=password_hash, **kwargs)
    user.roles.append(role)
    return user


@pytest_asyncio.fixture(scope="function")
async def users(session_factory) -> SimpleNamespace:
    """Seeded roles/permissions plus an admin, two users and a disabled account."""
    async with session_factory() as session:
        await seed(session)
        roles = {r.name: r for r in (await session.execute(select(Role))).scalars().all()}
        hashed = hash_password(PASSWORD)
        ns = SimpleNamespace(
            admin=_user("admin@example.com", "Ada Admin", roles["ADMIN"], hashed),
            alice=_user("alice@example.com", "Alice Agent", roles["AGENT"], hashed),
            bob=_user("bob@example.com", "Bob User", roles["USER"], hashed),
            disabled=_user(
                "gone@example.com", "Gone User", roles["USER"], hashed, status=UserStatus.DISABLED,
            ),
        )
        session.add_all([ns.admin, ns.alice, ns.bob, ns.disabled])
        await session.commit()
    return ns


@pytest_asyncio.fixture(scope="function")
async def db(session_factory, users) -> AsyncGenerator[AsyncSession, None]:
    """One session for service-level tests; commit before handing the DB to other sessions."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def make_client(session_factory, users, clock):
    """Factory for API clients; each one can come from its own source address."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_clock] = lambda: clock

    async with contextlib.AsyncExitStack() as stack:

        async def _make(ip: str = "10.0.0.1") -> AsyncClient:
            transport = ASGITransport(app=fastapi_app, client=(ip, 51000))
            return await stack.enter_async_context(
                AsyncClient(transport=transport, base_url="http://test")
            )

        yield _make

    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def client(make_client) -> AsyncClient:
    return await make_client()
