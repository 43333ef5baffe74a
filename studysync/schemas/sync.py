"""
Schemas del motor de sincronización offline.

El flujo es:
1. El cliente registra cada mutación local en la cola (MutationQueueItem)
2. El committer envía la cola en batches atómicos al backend remoto
3. Los IDs temporarios se reemplazan por los definitivos (IdMapping)
4. Las operaciones sueltas que fallan van a la cola de reintentos
5. Todo cambio se publica como AppSyncStatus a los observadores
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

MutationOperation = Literal["create", "update", "delete"]
SyncState = Literal["idle", "syncing", "error", "offline"]
RemoteCallKind = Literal["set", "update", "delete"]

# Operación remota diferida: callable sin argumentos que retorna un awaitable
RetryOperation = Callable[[], Awaitable[Any]]


# ── Cola de mutaciones ───────────────────────────────

class MutationQueueItem(BaseModel):
    """Una mutación local pendiente de enviar al backend remoto."""
    id: str
    operation: MutationOperation
    collection_path: str
    entity_id: str
    data: dict[str, Any] | None = None
    timestamp: int = Field(..., description="Epoch en milisegundos de la última mutación")
    attempts: int = 0
    last_attempt: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.collection_path, self.entity_id)

    @property
    def entity_type(self) -> str:
        return self.collection_path.rstrip("/").split("/")[-1]


# ── Cola de reintentos ───────────────────────────────

class RemoteCall(BaseModel):
    """Descripción serializable de una escritura remota (reproducible)."""
    kind: RemoteCallKind
    collection_path: str
    entity_id: str
    data: dict[str, Any] | None = None


class RetryQueueItem(BaseModel):
    """Una operación remota suelta que falló y espera reintento."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    operation: RetryOperation = Field(exclude=True)
    error_message: str
    timestamp: int
    attempts: int = 0
    next_retry_at: int
    last_error: str | None = None
    call: RemoteCall | None = None


class RetrySummary(BaseModel):
    """Lo que se persiste de un RetryQueueItem (el callable no se serializa)."""
    id: str
    error_message: str
    timestamp: int
    attempts: int = 0
    next_retry_at: int
    last_error: str | None = None
    call: RemoteCall | None = None


# ── Estado ───────────────────────────────────────────

class SyncError(BaseModel):
    """Error de sincronización visible para la UI."""
    id: str
    message: str
    timestamp: datetime
    entity_type: str = ""
    entity_id: str = ""
    retryable: bool = True


class AppSyncStatus(BaseModel):
    """Estado global de sincronización (uno por motor)."""
    last_sync_time: datetime | None = None
    pending_changes: int = 0
    sync_state: SyncState = "idle"
    errors: list[SyncError] = Field(default_factory=list)


class IdMapping(BaseModel):
    """Mapeo temp_id → id definitivo tras confirmar un create."""
    collection_path: str
    temporary_id: str
    permanent_id: str


class OperationFailure(BaseModel):
    """Resultado estructurado de una operación remota fallida."""
    success: Literal[False] = False
    code: str = "unknown"
    message: str
    retry_item_id: str | None = None


# ── Requests / responses HTTP ────────────────────────

class MutationRequest(BaseModel):
    """Mutación local enviada por el store del cliente."""
    operation: MutationOperation
    collection_path: str = Field(..., min_length=1, max_length=255)
    entity_id: str = Field(..., min_length=1, max_length=128)
    data: dict[str, Any] | None = None

    @model_validator(mode="after")
    def data_required_for_writes(self) -> "MutationRequest":
        if self.operation in ("create", "update") and self.data is None:
            raise ValueError(f"data es obligatorio para '{self.operation}'")
        return self


class ConnectivityUpdate(BaseModel):
    online: bool


class QueueSnapshot(BaseModel):
    pending_changes: int
    items: list[MutationQueueItem] = Field(default_factory=list)
    retry_items: list[RetrySummary] = Field(default_factory=list)
