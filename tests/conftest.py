"""Pytest configuration and fixtures."""

import itertools
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Settings are read at import time; point them at test values first
os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite+aiosqlite://"
os.environ["PAYMENT_GATEWAY"] = "fake"
os.environ["HEALTH_CHECK_ENABLED"] = "false"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["LOCATION_VERIFICATION_ENABLED"] = "true"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from gigmarket.db import crud, models  # noqa: E402,F401
from gigmarket.db.session import Base, get_db_session  # noqa: E402
from gigmarket.domain.models import ApplicationDetails, CallerIdentity, JobDetails  # noqa: E402
from gigmarket.domain.states import AccountType, Decision  # noqa: E402
from gigmarket.main import app  # noqa: E402
from gigmarket.payments.fake import FakeGateway  # noqa: E402
from gigmarket.payments.provider import get_gateway  # noqa: E402
from gigmarket.services.health import HealthMonitor  # noqa: E402

JOB_LAT = 37.7749
JOB_LNG = -122.4194


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs work on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway(webhook_secret="whsec_test")


@pytest_asyncio.fixture
async def client(session_factory, gateway):
    """HTTP client wired to the test database and the fake gateway."""

    async def _get_db_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _get_db_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.state.health_monitor = HealthMonitor(interval=30, critical_threshold=2)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


def caller_for(user) -> CallerIdentity:
    return CallerIdentity(user_id=user.id, account_type=user.account_type)


def job_details(**overrides) -> JobDetails:
    fields = dict(
        title="Fix leaking sink",
        description="Kitchen sink drips under the cabinet",
        category="Plumbing",
        payment_type="fixed",
        payment_amount=Decimal("100.00"),
        location="123 Market St, San Francisco",
        latitude=JOB_LAT,
        longitude=JOB_LNG,
        date_needed=datetime.now(timezone.utc) + timedelta(days=1),
        required_skills=["plumbing"],
    )
    fields.update(overrides)
    return JobDetails(**fields)


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    async def _make(account_type: AccountType = AccountType.WORKER, **fields):
        n = next(counter)
        fields.setdefault("username", f"{account_type}-{n}")
        fields.setdefault("full_name", f"Test {str(account_type).title()} {n}")
        fields.setdefault("email", f"{account_type}{n}@example.com")
        return await crud.create_user(db, account_type=account_type, **fields)

    return _make


@pytest.fixture
def make_job(db):
    from gigmarket.commands.create_job import create_job

    async def _make(poster, **overrides):
        return await create_job(db, poster.id, job_details(**overrides))

    return _make


@pytest_asyncio.fixture
async def poster(make_user):
    return await make_user(AccountType.POSTER, full_name="Pat Poster")


@pytest_asyncio.fixture
async def worker(make_user):
    return await make_user(AccountType.WORKER, full_name="Wren Worker")


@pytest_asyncio.fixture
async def open_job(make_job, poster):
    return await make_job(poster)


@pytest_asyncio.fixture
async def assigned_job(db, open_job, poster, worker):
    """Open job with the worker's application accepted."""
    from gigmarket.commands.decide_application import decide_application
    from gigmarket.commands.submit_application import submit_application

    application = await submit_application(db, open_job.id, worker.id, ApplicationDetails(message="I can help"))
    await decide_application(db, application.id, poster.id, Decision.ACCEPT)
    return open_job


@pytest_asyncio.fixture
async def completed_job(db, assigned_job, worker):
    from gigmarket.commands.complete_job import complete_job
    from gigmarket.commands.start_job import start_job
    from gigmarket.domain.models import LocationFix

    await start_job(db, assigned_job.id, worker.id, LocationFix(latitude=JOB_LAT, longitude=JOB_LNG, accuracy=5.0))
    await complete_job(db, assigned_job.id, worker.id)
    return assigned_job


@pytest_asyncio.fixture
async def payout_ready_worker(db, gateway, worker):
    """Worker with a fully onboarded connected account on the fake gateway."""
    from gigmarket.payments.service import create_connected_account

    onboarding = await create_connected_account(db, gateway, worker.id)
    gateway.complete_onboarding(onboarding.account_id)
    return worker
