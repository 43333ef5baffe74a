"""
Motor de sincronización offline-first.

Flujo:
1. El store local registra cada mutación con enqueue() (cola persistida)
2. process_queue() toma hasta BATCH_SIZE items, los prepara en un único
   batch atómico y lo confirma contra el backend remoto
   a. create con ID temporal → el servidor asigna el ID definitivo y se
      guarda el mapeo temp_id → id para reescribir referencias locales
   b. update → patch parcial, el servidor incrementa `version`
   c. delete → elimina el documento
3. Si el commit falla, los items quedan en la cola (con su intento
   contado); al superar MAX_RETRY_ATTEMPTS se descartan con un error final
4. Mientras queden items se programa otra pasada tras una pausa corta
5. Las operaciones remotas sueltas que fallan van a la RetryQueue

Todo corre en un único event loop; el estado `syncing` evita que dos
pasadas confirmen el mismo batch.
"""

import asyncio
import copy
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from studysync.config import Settings, get_settings
from studysync.schemas.sync import (
    AppSyncStatus,
    IdMapping,
    MutationOperation,
    MutationQueueItem,
    OperationFailure,
    RemoteCall,
    RetryOperation,
    RetryQueueItem,
)
from studysync.services import id_generator
from studysync.services.local_storage import LocalStorage
from studysync.services.mutation_queue import MutationQueue, now_ms, resolve_references
from studysync.services.network_monitor import NetworkMonitor
from studysync.services.remote_backend import DocumentBackend, WriteBatch
from studysync.services.retry_queue import RetryQueue
from studysync.services.sync_status import StatusBroadcaster, StatusListener

logger = logging.getLogger(__name__)

MUTATION_OPERATIONS = ("create", "update", "delete")

IdMappingListener = Callable[[IdMapping], None]


def _fingerprint(item: MutationQueueItem, data: dict[str, Any] | None) -> tuple:
    """Contenido de un item tal como se envió; detecta coalescencias en vuelo."""
    return (item.operation, item.entity_id, item.timestamp, copy.deepcopy(data))


class SyncEngine:
    """
    Dueño de la cola de mutaciones, la cola de reintentos y el estado.
    Se construye una vez al inicio y se pasa a los colaboradores.
    """

    def __init__(
        self,
        backend: DocumentBackend,
        storage: LocalStorage,
        monitor: NetworkMonitor | None = None,
        settings: Settings | None = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ):
        settings = settings or get_settings()
        self.backend = backend
        self.clock = clock
        self.batch_size = settings.SYNC_BATCH_SIZE
        self.max_attempts = settings.SYNC_MAX_RETRY_ATTEMPTS
        self.drain_delay = settings.SYNC_DRAIN_DELAY_SECONDS
        self.queue_interval = settings.SYNC_QUEUE_INTERVAL_SECONDS
        self.retry_interval = settings.SYNC_RETRY_INTERVAL_SECONDS
        self.probe_interval = settings.SYNC_PROBE_INTERVAL_SECONDS

        self.monitor = monitor or NetworkMonitor(
            probe_url=settings.SYNC_PROBE_URL,
            probe_timeout=settings.SYNC_PROBE_TIMEOUT_SECONDS,
        )
        self.status = StatusBroadcaster(
            max_errors=settings.SYNC_MAX_ERRORS,
            initial_state="idle" if self.monitor.is_online else "offline",
        )
        self.queue = MutationQueue(storage, self.status, clock=clock)
        self.retries = RetryQueue(
            storage,
            self.status,
            max_attempts=settings.SYNC_MAX_RETRY_ATTEMPTS,
            base_backoff_ms=settings.SYNC_BASE_BACKOFF_MS,
            jitter_ms=settings.SYNC_RETRY_JITTER_MS,
            clock=clock,
            rng=rng,
        )

        self._permanent_ids: dict[str, str] = {}
        self._mappings: list[IdMapping] = []
        self._mapping_listeners: list[IdMappingListener] = []

        self._processing = False
        self._recheck = False
        self._drain_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._timers: list[asyncio.Task] = []

        self._unsubscribe_monitor = self.monitor.subscribe(self._on_connectivity_change)

    # ── Ciclo de vida ────────────────────────────────

    def load_from_disk(self) -> None:
        """Restaura las colas persistidas y republica el conteo pendiente."""
        self.queue.load_from_disk()
        self.retries.load_from_disk(self.remote_operation)

    async def start(self) -> None:
        """Carga el estado persistido y arranca los timers periódicos."""
        self.load_from_disk()
        self.status.set_state("idle" if self.monitor.is_online else "offline")

        self._timers = [
            asyncio.create_task(
                self._run_periodically(self.queue_interval, self.process_queue, "cola de sync")
            ),
            asyncio.create_task(
                self._run_periodically(self.retry_interval, self.process_retries, "reintentos")
            ),
        ]
        if self.monitor.probe_url:
            self._timers.append(asyncio.create_task(
                self._run_periodically(self.probe_interval, self.monitor.probe, "conectividad")
            ))

        logger.info(
            f"Motor de sync iniciado: {len(self.queue)} mutaciones y "
            f"{len(self.retries)} reintentos pendientes"
        )
        if self.monitor.is_online:
            self._trigger()

    async def stop(self) -> None:
        """Cancela timers y pasadas programadas; persiste las colas."""
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None

        pending = [*self._timers, *self._tasks]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._timers = []
        self._tasks.clear()

        self._unsubscribe_monitor()
        self.queue.persist()
        self.retries.persist()
        logger.info("Motor de sync detenido")

    async def _run_periodically(
        self,
        interval: float,
        fn: Callable[[], Awaitable[Any]],
        name: str,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception as e:
                logger.error(f"Error en el ciclo periódico de {name}: {e}")

    # ── Estado ───────────────────────────────────────

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        return self.status.subscribe(listener)

    def get_status(self) -> AppSyncStatus:
        return self.status.snapshot()

    # ── Mapeo de IDs temporales ──────────────────────

    def on_id_mapping(self, listener: IdMappingListener) -> Callable[[], None]:
        """Registra al store externo para reescribir referencias temp → definitivo."""
        self._mapping_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._mapping_listeners:
                self._mapping_listeners.remove(listener)

        return unsubscribe

    def resolve_id(self, entity_id: str) -> str:
        return self._permanent_ids.get(entity_id, entity_id)

    def id_mappings(self) -> list[IdMapping]:
        return list(self._mappings)

    def _register_mapping(self, mapping: IdMapping) -> None:
        self._permanent_ids[mapping.temporary_id] = mapping.permanent_id
        self._mappings.append(mapping)
        self.queue.rewrite_references(mapping.temporary_id, mapping.permanent_id)
        logger.info(
            f"ID temporal {mapping.temporary_id} → {mapping.permanent_id} "
            f"({mapping.collection_path})"
        )

    def _notify_mapping(self, mapping: IdMapping) -> None:
        for listener in list(self._mapping_listeners):
            try:
                listener(mapping)
            except Exception as e:
                logger.error(f"Observador de mapeo de IDs falló: {e}")

    # ── Encolar mutaciones ───────────────────────────

    def enqueue(
        self,
        operation: MutationOperation,
        collection_path: str,
        entity_id: str,
        data: dict[str, Any] | None = None,
    ) -> MutationQueueItem:
        """
        Registra una mutación local. Retorna de inmediato; si hay
        conexión, dispara el procesamiento en segundo plano.
        """
        if operation not in MUTATION_OPERATIONS:
            raise ValueError(f"Operación no soportada: {operation}")

        entity_id = self.resolve_id(entity_id)
        if data:
            data = resolve_references(data, self._permanent_ids)

        item = self.queue.enqueue(operation, collection_path, entity_id, data)
        if self.monitor.is_online:
            self._trigger()
        return item

    def _trigger(self) -> None:
        """Dispara process_queue() en el loop activo (best-effort)."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.process_queue())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_drain(self, delay: float) -> None:
        if self._drain_handle is not None and not self._drain_handle.cancelled():
            return
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._drain_handle = None
            self._trigger()

        self._drain_handle = loop.call_later(delay, fire)

    # ── Committer de batches ─────────────────────────

    async def process_queue(self) -> None:
        """Envía el siguiente batch de la cola al backend remoto."""
        if len(self.queue) == 0:
            return
        if self._processing or self.status.sync_state == "syncing":
            self._recheck = True
            logger.debug("Pasada de sync en curso, se revisará la cola al terminar")
            return
        if not self.monitor.is_online:
            logger.debug(f"Sin conexión: {len(self.queue)} mutaciones esperan")
            return

        self._processing = True
        self._recheck = False
        self.status.set_state("syncing")

        items = self.queue.oldest(self.batch_size)
        batch = self.backend.batch()
        staged: list[tuple[MutationQueueItem, tuple, IdMapping | None]] = []
        live: list[MutationQueueItem] = []
        exceeded: list[MutationQueueItem] = []
        committed = False

        try:
            for item in items:
                item.attempts += 1
                item.last_attempt = self.clock()

                if item.attempts > self.max_attempts:
                    logger.error(
                        f"Mutación {item.id} descartada: {item.operation} "
                        f"{item.collection_path}/{item.entity_id} superó "
                        f"{self.max_attempts} intentos"
                    )
                    self.status.add_error(
                        f"Máximo de reintentos superado para {item.operation} "
                        f"en {item.collection_path}/{item.entity_id}",
                        entity_type=item.entity_type,
                        entity_id=item.entity_id,
                        retryable=False,
                    )
                    exceeded.append(item)
                    continue
                live.append(item)

            # IDs definitivos de todo el batch antes de preparar payloads:
            # una referencia a otro create del mismo batch ya viaja resuelta
            allocated = await self._allocate_permanent_ids(live)
            known_ids = {**self._permanent_ids, **allocated}

            for item in live:
                data = resolve_references(item.data, known_ids)
                try:
                    mapping = self._stage(batch, item, data, allocated.get(item.entity_id))
                except Exception as e:
                    logger.error(f"Error preparando la mutación {item.id}: {e}")
                    self.status.add_error(
                        f"Error procesando {item.operation}: {e}",
                        entity_type=item.entity_type,
                        entity_id=item.entity_id,
                    )
                    continue
                staged.append((item, _fingerprint(item, data), mapping))

            if staged:
                await self.backend.commit(batch)
                committed = True
                self._apply_commit(staged)

        except Exception as e:
            logger.error(f"Falló el commit del batch de sync ({len(staged)} items): {e}")
            self.status.set_state("error")
            self.status.add_error(f"Falló el batch de sincronización: {e}")

        finally:
            if exceeded:
                self.queue.remove(exceeded)
            self.queue.persist()
            self.status.set_pending(len(self.queue))
            self.status.set_state("idle" if self.monitor.is_online else "offline")
            self._processing = False

            if len(self.queue) > 0 and self.monitor.is_online:
                if self._recheck and committed:
                    self._trigger()
                else:
                    self._schedule_drain(self.drain_delay)
            self._recheck = False

    async def _allocate_permanent_ids(self, items: list[MutationQueueItem]) -> dict[str, str]:
        """
        temp_id → ID definitivo para cada create temporal del batch. Si un
        commit anterior se aplicó pero su respuesta se perdió, el documento
        ya existe con ese temp_id y se reutiliza su ID.
        """
        allocated: dict[str, str] = {}
        for item in items:
            if item.operation == "delete" or not id_generator.is_temporary(item.entity_id):
                continue
            existing = await self.backend.find_by_temp_id(item.collection_path, item.entity_id)
            if existing is not None:
                logger.info(
                    f"ID temporal {item.entity_id} ya confirmado como {existing.id}, "
                    f"se reutiliza"
                )
                allocated[item.entity_id] = existing.id
            else:
                allocated[item.entity_id] = self.backend.allocate_id(item.collection_path)
        return allocated

    def _stage(
        self,
        batch: WriteBatch,
        item: MutationQueueItem,
        data: dict[str, Any] | None,
        permanent_id: str | None,
    ) -> IdMapping | None:
        """Agrega la escritura del item al batch. Retorna el mapeo si asigna ID."""
        path = item.collection_path
        entity_id = item.entity_id
        data = data or {}

        if item.operation == "delete":
            if not id_generator.is_temporary(entity_id):
                batch.delete(path, entity_id)
            return None

        # Un update sobre un ID temporal sin mapear es un create coalescido
        if permanent_id is not None:
            batch.set(
                path,
                permanent_id,
                {**data, "id": permanent_id, "temp_id": entity_id},
                temp_id=entity_id,
            )
            return IdMapping(
                collection_path=path,
                temporary_id=entity_id,
                permanent_id=permanent_id,
            )

        if item.operation == "create":
            batch.set(path, entity_id, data)
        else:
            batch.update(path, entity_id, data)
        return None

    def _apply_commit(self, staged: list[tuple[MutationQueueItem, tuple, IdMapping | None]]) -> None:
        """Reconciliación tras un commit exitoso."""
        mappings = [mapping for _, _, mapping in staged if mapping is not None]
        for mapping in mappings:
            self._register_mapping(mapping)

        done: list[MutationQueueItem] = []
        for item, fingerprint, mapping in staged:
            # Con los mapeos aplicados, un item sin cambios coincide con lo enviado
            if _fingerprint(item, item.data) == fingerprint:
                done.append(item)
                continue

            # Coalescido durante el commit: queda pendiente con los datos nuevos
            if mapping is not None:
                if item.operation == "create":
                    item.operation = "update"
                self.queue.rekey(item, mapping.permanent_id)

        self.queue.remove(done)
        self.status.mark_synced()
        logger.info(
            f"Batch de sync confirmado: {len(done)} mutaciones, "
            f"{len(mappings)} IDs asignados, {len(self.queue)} pendientes"
        )

        for mapping in mappings:
            self._notify_mapping(mapping)

    # ── Operaciones remotas sueltas ──────────────────

    def remote_operation(self, call: RemoteCall) -> RetryOperation:
        """Construye la operación reproducible de un RemoteCall."""

        async def operation() -> None:
            await self.backend.apply(call)

        return operation

    def schedule(
        self,
        operation: RetryOperation,
        error_message: str,
        call: RemoteCall | None = None,
    ) -> RetryQueueItem:
        return self.retries.schedule(operation, error_message, call=call)

    async def process_retries(self) -> int:
        try:
            return await self.retries.process_due()
        except Exception as e:
            logger.error(f"Error procesando la cola de reintentos: {e}")
            return 0

    async def execute_remote_operation(
        self,
        operation: RetryOperation,
        error_message: str,
        on_error: Callable[[Exception], None] | None = None,
        call: RemoteCall | None = None,
    ) -> Any:
        """
        Ejecuta una operación remota. Si falla, la programa para reintento
        y retorna un OperationFailure en lugar de propagar la excepción.
        """
        try:
            return await operation()
        except Exception as e:
            logger.error(f"{error_message}: {e}")
            item = self.schedule(operation, error_message, call=call)

            if on_error is not None:
                try:
                    on_error(e)
                except Exception as handler_error:
                    logger.error(f"Manejador de error falló: {handler_error}")

            return OperationFailure(
                code=str(getattr(e, "code", None) or "unknown"),
                message=str(e) or error_message,
                retry_item_id=item.id,
            )

    async def execute_remote_call(self, call: RemoteCall, error_message: str) -> Any:
        return await self.execute_remote_operation(
            self.remote_operation(call), error_message, call=call
        )

    # ── Conectividad ─────────────────────────────────

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.status.set_state("idle")
            self._trigger()
        else:
            self.status.set_state("offline")
