"""
Fixtures compartidas para Pytest.
Configura el backend remoto de test (SQLite async), almacenamiento local
en memoria y una fábrica de motores de sincronización.
"""

import asyncio
import random
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from studysync.api.dependencies import get_sync_engine
from studysync.config import Settings
from studysync.core.exceptions import RemoteCommitError
from studysync.database import build_engine, build_session_factory, create_all
from studysync.main import app
from studysync.schemas.sync import RemoteCall
from studysync.services.local_storage import MemoryLocalStorage
from studysync.services.network_monitor import NetworkMonitor
from studysync.services.remote_backend import SqlDocumentBackend, WriteBatch
from studysync.services.sync_service import SyncEngine


# ── Dobles de test ───────────────────────────────────

class FakeClock:
    """Reloj en milisegundos controlado por el test."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FlakyBackend:
    """
    Envuelve un backend real: cuenta commits, puede fallar, quedar retenido
    o aplicar el commit y perder la respuesta.
    """

    def __init__(self, inner: SqlDocumentBackend):
        self.inner = inner
        self.commits = 0
        self.failures_left = 0
        self.always_fail = False
        self.lost_responses = 0
        self.gate: asyncio.Event | None = None

    def batch(self) -> WriteBatch:
        return self.inner.batch()

    def allocate_id(self, collection_path: str) -> str:
        return self.inner.allocate_id(collection_path)

    async def commit(self, batch: WriteBatch) -> None:
        self.commits += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.always_fail or self.failures_left > 0:
            self.failures_left = max(self.failures_left - 1, 0)
            raise RemoteCommitError("backend remoto no responde")
        await self.inner.commit(batch)
        if self.lost_responses > 0:
            self.lost_responses -= 1
            raise RemoteCommitError("se perdió la respuesta del commit")

    async def find_by_temp_id(self, collection_path: str, temp_id: str):
        return await self.inner.find_by_temp_id(collection_path, temp_id)

    async def apply(self, call: RemoteCall) -> None:
        await self.inner.apply(call)

    async def get(self, collection_path: str, document_id: str):
        return await self.inner.get(collection_path, document_id)


# ── Fixtures ─────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DEBUG=False,
        SYNC_DRAIN_DELAY_SECONDS=60.0,
        SYNC_QUEUE_INTERVAL_SECONDS=3600.0,
        SYNC_RETRY_INTERVAL_SECONDS=3600.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> MemoryLocalStorage:
    return MemoryLocalStorage()


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Crea la base de test y la destruye al terminar."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_backend(db_engine: AsyncEngine) -> SqlDocumentBackend:
    return SqlDocumentBackend(build_session_factory(db_engine))


@pytest.fixture
def backend(sql_backend: SqlDocumentBackend) -> FlakyBackend:
    return FlakyBackend(sql_backend)


@pytest_asyncio.fixture
async def make_engine(backend, storage, settings, clock):
    """Fábrica de motores; todos se detienen al final del test."""
    engines: list[SyncEngine] = []

    def _make(online: bool = True, **overrides) -> SyncEngine:
        engine = SyncEngine(
            backend=overrides.pop("backend", backend),
            storage=overrides.pop("storage", storage),
            monitor=NetworkMonitor(online=online),
            settings=overrides.pop("settings", settings),
            clock=clock,
            rng=random.Random(42),
        )
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.stop()


@pytest.fixture
def settle():
    """Espera a que terminen las pasadas disparadas en segundo plano."""

    async def _settle(engine: SyncEngine) -> None:
        while engine._tasks:
            await asyncio.gather(*list(engine._tasks), return_exceptions=True)

    return _settle


@pytest_asyncio.fixture
async def client(make_engine) -> AsyncGenerator[tuple[AsyncClient, SyncEngine], None]:
    """Cliente HTTP de test con un motor offline inyectado."""
    engine = make_engine(online=False)
    app.dependency_overrides[get_sync_engine] = lambda: engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac, engine

    app.dependency_overrides.clear()
