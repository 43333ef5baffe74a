"""
Modelo SyncDocument — documento del backend remoto.

Cada entidad sincronizada (tareas, sesiones, materias, notas...) se guarda
como un documento JSON dentro de una colección, identificado por
(collection_path, id). El campo `version` lo incrementa el servidor en
cada update.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from studysync.database import Base


class SyncDocument(Base):
    __tablename__ = "sync_documents"

    collection_path: Mapped[str] = mapped_column(
        String(255), primary_key=True,
        comment="Ruta de la colección, ej: users/u1/tasks"
    )
    id: Mapped[str] = mapped_column(
        String(128), primary_key=True,
        comment="ID definitivo asignado por el servidor o por el cliente"
    )

    # ── Contenido ────────────────────────────────────
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    temp_id: Mapped[str | None] = mapped_column(
        String(128),
        comment="ID temporal del cliente que originó el documento"
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # ── Timestamps ───────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # ── Índices ──────────────────────────────────────
    __table_args__ = (
        Index("idx_sync_documents_temp", "collection_path", "temp_id"),
    )

    def __repr__(self) -> str:
        return f"<SyncDocument {self.collection_path}/{self.id} v{self.version}>"
