"""
Backend remoto de documentos.

El motor necesita cuatro capacidades del backend:
1. Commits atómicos de varias escrituras (set/update/delete) en una unidad
2. IDs generados por el servidor para los create
3. Un campo `version` que el servidor incrementa en cada update
4. Buscar un documento por el ID temporal que lo originó, para que un
   create reintentado tras un commit aplicado (respuesta perdida)
   reutilice el mismo ID en lugar de duplicar el documento

SqlDocumentBackend las implementa sobre SQLAlchemy async: un commit es una
transacción, por lo que el batch se aplica completo o no se aplica.
"""

import logging
import uuid
from typing import Any, Literal, Protocol

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studysync.core.exceptions import (
    BackendUnavailableError,
    DocumentNotFoundError,
    RemoteCommitError,
)
from studysync.models.document import SyncDocument
from studysync.schemas.sync import RemoteCall

logger = logging.getLogger(__name__)


# ── Batch de escrituras ──────────────────────────────

class StagedWrite(BaseModel):
    kind: Literal["set", "update", "delete"]
    collection_path: str
    document_id: str
    data: dict[str, Any] | None = None
    temp_id: str | None = None


class WriteBatch:
    """Escrituras acumuladas que se confirman juntas en un solo commit."""

    def __init__(self) -> None:
        self.writes: list[StagedWrite] = []

    def __len__(self) -> int:
        return len(self.writes)

    def set(
        self,
        collection_path: str,
        document_id: str,
        data: dict[str, Any],
        temp_id: str | None = None,
    ) -> None:
        self.writes.append(StagedWrite(
            kind="set",
            collection_path=collection_path,
            document_id=document_id,
            data=data,
            temp_id=temp_id,
        ))

    def update(self, collection_path: str, document_id: str, patch: dict[str, Any]) -> None:
        self.writes.append(StagedWrite(
            kind="update",
            collection_path=collection_path,
            document_id=document_id,
            data=patch,
        ))

    def delete(self, collection_path: str, document_id: str) -> None:
        self.writes.append(StagedWrite(
            kind="delete",
            collection_path=collection_path,
            document_id=document_id,
        ))


class DocumentBackend(Protocol):
    def batch(self) -> WriteBatch: ...

    def allocate_id(self, collection_path: str) -> str: ...

    async def find_by_temp_id(self, collection_path: str, temp_id: str) -> SyncDocument | None: ...

    async def commit(self, batch: WriteBatch) -> None: ...

    async def apply(self, call: RemoteCall) -> None: ...


# ── Implementación SQLAlchemy ────────────────────────

class SqlDocumentBackend:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def batch(self) -> WriteBatch:
        return WriteBatch()

    def allocate_id(self, collection_path: str) -> str:
        return str(uuid.uuid4())

    async def commit(self, batch: WriteBatch) -> None:
        """Aplica todas las escrituras en una transacción."""
        if not batch.writes:
            return
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for write in batch.writes:
                        await self._apply_write(session, write)
        except RemoteCommitError:
            raise
        except SQLAlchemyError as e:
            raise RemoteCommitError(f"Commit rechazado por el backend: {e}") from e
        except OSError as e:
            raise BackendUnavailableError(f"Backend remoto no disponible: {e}") from e

        logger.debug(f"Commit atómico aplicado: {len(batch)} escrituras")

    async def apply(self, call: RemoteCall) -> None:
        """Ejecuta una escritura suelta (reintentos reproducibles)."""
        batch = self.batch()
        if call.kind == "set":
            batch.set(call.collection_path, call.entity_id, call.data or {})
        elif call.kind == "update":
            batch.update(call.collection_path, call.entity_id, call.data or {})
        else:
            batch.delete(call.collection_path, call.entity_id)
        await self.commit(batch)

    async def _apply_write(self, session: AsyncSession, write: StagedWrite) -> None:
        doc = await session.get(SyncDocument, (write.collection_path, write.document_id))

        if write.kind == "set":
            if doc is None:
                session.add(SyncDocument(
                    collection_path=write.collection_path,
                    id=write.document_id,
                    data=dict(write.data or {}),
                    temp_id=write.temp_id,
                    version=1,
                ))
                await session.flush()
            else:
                doc.data = dict(write.data or {})
                doc.temp_id = write.temp_id
                doc.version = 1

        elif write.kind == "update":
            if doc is None:
                raise DocumentNotFoundError(write.collection_path, write.document_id)
            patch = {k: v for k, v in (write.data or {}).items() if k != "version"}
            doc.data = {**doc.data, **patch}
            doc.version = doc.version + 1

        elif write.kind == "delete":
            if doc is not None:
                await session.delete(doc)
                await session.flush()

    # ── Lectura ──────────────────────────────────────

    async def get(self, collection_path: str, document_id: str) -> SyncDocument | None:
        async with self.session_factory() as session:
            return await session.get(SyncDocument, (collection_path, document_id))

    async def find_by_temp_id(self, collection_path: str, temp_id: str) -> SyncDocument | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncDocument).where(
                    SyncDocument.collection_path == collection_path,
                    SyncDocument.temp_id == temp_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_collection(self, collection_path: str) -> list[SyncDocument]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncDocument)
                .where(SyncDocument.collection_path == collection_path)
                .order_by(SyncDocument.created_at)
            )
            return list(result.scalars().all())
