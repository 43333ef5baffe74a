"""
Configuración de base de datos con SQLAlchemy 2.0 async.
Es el almacenamiento del backend remoto de documentos.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from studysync.config import get_settings


# ── Base declarativa ─────────────────────────────────
class Base(DeclarativeBase):
    pass


# ── Engine async ─────────────────────────────────────
def build_engine(url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """
    Crea el engine async. Para SQLite no se configura el pool
    (aiosqlite no acepta pool_size/max_overflow).
    """
    settings = get_settings()
    url = url or settings.DATABASE_URL
    echo = settings.DEBUG if echo is None else echo

    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)

    return create_async_engine(
        url,
        echo=echo,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


# ── Session factory ──────────────────────────────────
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_all(engine: AsyncEngine) -> None:
    """Crea las tablas (desarrollo/tests; en producción usar Alembic)."""
    import studysync.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
