"""
Endpoints del motor de sincronización offline.

GET  /sync/status          — Estado actual (pendientes, estado, errores)
GET  /sync/queue           — Contenido de las colas
GET  /sync/queue/{item_id} — Una mutación pendiente
POST /sync/mutations       — Registrar una mutación local
POST /sync/process         — Forzar una pasada del committer
POST /sync/retry           — Procesar reintentos vencidos
PUT  /sync/connectivity    — Informar cambio online/offline
GET  /sync/mappings        — Mapeos temp_id → id definitivo
"""

import logging

from fastapi import APIRouter, Depends, status

from studysync.api.dependencies import get_sync_engine
from studysync.core.exceptions import NotFoundException
from studysync.schemas.sync import (
    AppSyncStatus,
    ConnectivityUpdate,
    IdMapping,
    MutationQueueItem,
    MutationRequest,
    QueueSnapshot,
)
from studysync.services.sync_service import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/status",
    response_model=AppSyncStatus,
    summary="Estado de sincronización",
)
async def sync_status(
    engine: SyncEngine = Depends(get_sync_engine),
) -> AppSyncStatus:
    return engine.get_status()


@router.get(
    "/queue",
    response_model=QueueSnapshot,
    summary="Contenido de las colas de sync",
)
async def sync_queue(
    engine: SyncEngine = Depends(get_sync_engine),
) -> QueueSnapshot:
    return QueueSnapshot(
        pending_changes=len(engine.queue),
        items=engine.queue.items(),
        retry_items=engine.retries.summaries(),
    )


@router.get(
    "/queue/{item_id}",
    response_model=MutationQueueItem,
    summary="Consultar una mutación pendiente",
)
async def sync_queue_item(
    item_id: str,
    engine: SyncEngine = Depends(get_sync_engine),
) -> MutationQueueItem:
    item = engine.queue.get(item_id)
    if item is None:
        raise NotFoundException("Mutación pendiente")
    return item


@router.post(
    "/mutations",
    response_model=MutationQueueItem,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Registrar una mutación local",
    description=(
        "Encola la mutación (coalesciendo por colección + entidad) y la persiste. "
        "Si hay conexión, el envío al backend remoto se dispara en segundo plano."
    ),
)
async def enqueue_mutation(
    mutation: MutationRequest,
    engine: SyncEngine = Depends(get_sync_engine),
) -> MutationQueueItem:
    item = engine.enqueue(
        mutation.operation,
        mutation.collection_path,
        mutation.entity_id,
        mutation.data,
    )
    logger.info(
        f"Mutación encolada: {item.operation} {item.collection_path}/{item.entity_id} "
        f"(pendientes={len(engine.queue)})"
    )
    return item


@router.post(
    "/process",
    response_model=AppSyncStatus,
    summary="Forzar una pasada del committer",
)
async def process_queue(
    engine: SyncEngine = Depends(get_sync_engine),
) -> AppSyncStatus:
    await engine.process_queue()
    return engine.get_status()


@router.post(
    "/retry",
    response_model=dict,
    summary="Procesar reintentos vencidos",
)
async def process_retries(
    engine: SyncEngine = Depends(get_sync_engine),
) -> dict:
    succeeded = await engine.process_retries()
    return {
        "succeeded": succeeded,
        "remaining": len(engine.retries),
    }


@router.put(
    "/connectivity",
    response_model=AppSyncStatus,
    summary="Informar cambio de conectividad",
)
async def update_connectivity(
    update: ConnectivityUpdate,
    engine: SyncEngine = Depends(get_sync_engine),
) -> AppSyncStatus:
    engine.monitor.set_online(update.online)
    return engine.get_status()


@router.get(
    "/mappings",
    response_model=list[IdMapping],
    summary="Mapeos de IDs temporales",
)
async def id_mappings(
    engine: SyncEngine = Depends(get_sync_engine),
) -> list[IdMapping]:
    return engine.id_mappings()
