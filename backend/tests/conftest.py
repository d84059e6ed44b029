"""Shared fixtures: in-memory SQLite database, sample and bank factories, API client."""

import os

# Point the module-level engine at SQLite before cryobank is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cryobank.database import get_db
from cryobank.models import Base
from cryobank.models.enums import SampleStatus, SampleType
from cryobank.schemas.sample import SampleCreate
from cryobank.schemas.storage import DefaultBankCreate
from cryobank.services.sample import SampleService
from cryobank.services.storage import StorageService


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def actor():
    return uuid.uuid4()


@pytest.fixture
def witness():
    return uuid.uuid4()


@pytest.fixture
def patient_id():
    return uuid.uuid4()


@pytest.fixture
def make_sample(db, actor, patient_id):
    """Create a committed sample, optionally already quality checked."""

    async def _make(
        sample_type: SampleType = SampleType.SPERM,
        *,
        checked: bool = True,
        **fields,
    ):
        fields.setdefault("patient_id", patient_id)
        svc = SampleService(db)
        sample = await svc.create_sample(
            SampleCreate(sample_type=sample_type, **fields), created_by=actor
        )
        if checked:
            await svc.transition(
                sample.id, SampleStatus.QUALITY_CHECKED, actor, sample=sample
            )
        await db.commit()
        return sample

    return _make


@pytest_asyncio.fixture
async def bank(db, actor):
    """One tank, one canister, one goblet, three slots. Ids only."""
    svc = StorageService(db)
    tanks = await svc.initialize_default_bank(
        DefaultBankCreate(
            tanks=1, canisters_per_tank=1, goblets_per_canister=1, slots_per_goblet=3
        ),
        actor,
    )
    await db.commit()
    tank = tanks[0]
    canister = (await svc.list_children(tank.id))[0]
    goblet = (await svc.list_children(canister.id))[0]
    slots = await svc.list_children(goblet.id)
    slots.sort(key=lambda s: s.name)
    return SimpleNamespace(
        tank_id=tank.id,
        canister_id=canister.id,
        goblet_id=goblet.id,
        slot_ids=[s.id for s in slots],
    )


@pytest_asyncio.fixture
async def app(session_factory):
    from cryobank.main import create_app

    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on a file database, each with its own connection.

    Used by tests where two sessions interleave.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
