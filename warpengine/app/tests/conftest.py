############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# conftest.py: Pytest configuration and shared test fixtures
#
############################################################

"""Pytest configuration and shared fixtures for WarpEngine tests.

Each test gets its own file-backed SQLite database, an in-memory RunPod
stand-in and a clock that only moves when told to.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from warpengine.app.api.auth import get_current_user_id
from warpengine.app.core.runpod.client import RunpodError, RunpodNotFoundError
from warpengine.app.core.runpod.models import JobHandle, JobStatusReport, parse_job_status
from warpengine.app.core.warps.engine import WarpLifecycleEngine
from warpengine.app.db import crud
from warpengine.app.db.base import Base
from warpengine.app.db.models import JobStatus, User, Warp
from warpengine.app.db.session import (
    create_engine_from_settings,
    create_session_factory,
    get_async_db,
)
from warpengine.app.main import create_app
from warpengine.app.services import EmailNotifier, PaymentService
from warpengine.app.settings import Settings, get_settings


class FakeClock:
    """Deterministic clock; advance() moves it forward."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def ago(self, seconds: float) -> datetime:
        return self.now - timedelta(seconds=seconds)


class FakeRunpod:
    """In-memory RunPod.

    Cancelling a job records the request but leaves the job's reported
    status alone, like the real provider until the worker stops.
    """

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.start_calls = 0
        self.status_calls: List[str] = []
        self.cancel_calls: List[str] = []
        self.terminated_pods: List[str] = []
        self.start_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.terminate_error: Optional[Exception] = None
        self.status_errors: Dict[str, Exception] = {}
        self.on_cancel: Optional[Callable[[str], Awaitable[None]]] = None
        self._seq = 0

    def set_job(self, job_id: str, status: str, **fields: Any) -> None:
        self.jobs[job_id] = {"id": job_id, "status": status, **fields}

    async def start_job(self) -> JobHandle:
        self.start_calls += 1
        if self.start_error:
            raise self.start_error
        self._seq += 1
        job_id = f"job-{self._seq}"
        self.set_job(job_id, "IN_QUEUE")
        return JobHandle(id=job_id, status="IN_QUEUE")

    async def get_job_status(self, job_id: str) -> JobStatusReport:
        self.status_calls.append(job_id)
        if job_id in self.status_errors:
            raise self.status_errors[job_id]
        data = self.jobs.get(job_id)
        if data is None:
            raise RunpodNotFoundError(f"job {job_id} does not exist", status_code=404)
        return parse_job_status(job_id, data)

    async def cancel_job(self, job_id: str) -> Optional[str]:
        self.cancel_calls.append(job_id)
        if self.cancel_error:
            raise self.cancel_error
        if job_id not in self.jobs:
            raise RunpodNotFoundError(f"job {job_id} does not exist", status_code=404)
        if self.on_cancel:
            await self.on_cancel(job_id)
        return "CANCELLED"

    async def terminate_pod(self, pod_id: str) -> None:
        self.terminated_pods.append(pod_id)
        if self.terminate_error:
            raise self.terminate_error

    async def close(self) -> None:
        pass


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite file."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'warpengine.db'}",
        runpod_api_key="rp_test_key",
        runpod_endpoint_id="ep-test",
        sweep_enabled=False,
        warp_stuck_threshold=1200,
        warp_inactivity_threshold=600,
        legacy_pod_inactivity_threshold=300,
        clerk_webhook_secret="whsec_dGVzdHNlY3JldA==",
        stripe_secret_key="sk_test_123",
        stripe_endpoint_secret="whsec_stripe_test",
        email_from="alerts@example.com",
        email_to="ops@example.com",
        sendgrid_api_key="SG.test",
        log_format="console",
    )


@pytest_asyncio.fixture
async def db_engine(settings):
    engine = create_engine_from_settings(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runpod() -> FakeRunpod:
    return FakeRunpod()


@pytest.fixture
def warp_engine(settings, runpod, session_factory, clock) -> WarpLifecycleEngine:
    return WarpLifecycleEngine(settings, runpod, session_factory, clock=clock)


@pytest.fixture
def make_user(session_factory, clock):
    """Insert a user and return it."""

    async def _make(user_id: str = "user_1", time_balance: int = 3600, **fields) -> User:
        async with session_factory.begin() as db:
            user = User(
                id=user_id,
                time_balance=time_balance,
                created_at=clock.now,
                updated_at=clock.now,
                **fields,
            )
            db.add(user)
        return user

    return _make


@pytest.fixture
def make_warp(session_factory, clock):
    """Insert a warp with arbitrary column values and return it."""

    async def _make(user_id: str = "user_1", **fields) -> Warp:
        fields.setdefault("created_at", clock.now)
        fields.setdefault("updated_at", fields["created_at"])
        async with session_factory.begin() as db:
            warp = Warp(created_by_id=user_id, **fields)
            db.add(warp)
        return warp

    return _make


@pytest.fixture
def load_warp(session_factory):
    async def _load(warp_id: str) -> Warp:
        async with session_factory() as db:
            return await crud.get_warp_by_id(db, warp_id)

    return _load


@pytest.fixture
def load_user(session_factory):
    async def _load(user_id: str) -> User:
        async with session_factory() as db:
            return await crud.get_user_by_id(db, user_id)

    return _load


@pytest.fixture
def remote_error() -> RunpodError:
    return RunpodError("RunPod API request failed (500): upstream exploded", status_code=500)


@pytest.fixture
def running_warp(make_user, make_warp, runpod, clock):
    """A warp that has been IN_PROGRESS for `elapsed` seconds."""

    async def _make(
        elapsed: float = 120,
        time_balance: int = 3600,
        job_id: str = "job-run",
        user_id: str = "user_1",
    ) -> Warp:
        await make_user(user_id, time_balance=time_balance)
        runpod.set_job(job_id, "IN_PROGRESS")
        return await make_warp(
            user_id,
            job_id=job_id,
            job_status=JobStatus.IN_PROGRESS,
            job_requested_at=clock.ago(elapsed + 5),
            job_started_at=clock.ago(elapsed),
            created_at=clock.ago(elapsed + 5),
            updated_at=clock.now,
        )

    return _make


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=EmailNotifier)


@pytest.fixture
def payment_service(settings, session_factory, notifier) -> PaymentService:
    return PaymentService(settings, session_factory, notifier)


@pytest.fixture
def app(settings, session_factory, warp_engine, payment_service):
    """Application wired to the test database, fake RunPod and user_1."""
    application = create_app()
    application.state.warp_engine = warp_engine
    application.state.payment_service = payment_service

    async def _db():
        async with session_factory() as session:
            yield session
            await session.commit()

    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_async_db] = _db
    application.dependency_overrides[get_current_user_id] = lambda: "user_1"
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
