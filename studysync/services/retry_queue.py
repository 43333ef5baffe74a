"""
Cola de reintentos para operaciones remotas sueltas.

A diferencia de la cola de mutaciones, aquí se guardan operaciones
arbitrarias (callables) que fallaron. Se reintentan con backoff
exponencial más jitter hasta alcanzar el tope de intentos.

Solo se persiste un resumen (mensajes, tiempos, intentos). El callable no
se puede serializar: tras un reinicio sobreviven únicamente los items que
traen un RemoteCall, que el motor sabe reconstruir.
"""

import logging
import random
from collections.abc import Callable

from pydantic import TypeAdapter, ValidationError

from studysync.schemas.sync import (
    RemoteCall,
    RetryOperation,
    RetryQueueItem,
    RetrySummary,
)
from studysync.services import id_generator
from studysync.services.local_storage import LocalStorage
from studysync.services.mutation_queue import now_ms
from studysync.services.sync_status import StatusBroadcaster

logger = logging.getLogger(__name__)

RETRY_STORAGE_KEY = "retryQueue"

_summary_adapter = TypeAdapter(list[RetrySummary])


class RetryQueue:

    def __init__(
        self,
        storage: LocalStorage,
        status: StatusBroadcaster,
        max_attempts: int = 5,
        base_backoff_ms: int = 1000,
        jitter_ms: int = 1000,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ):
        self.storage = storage
        self.status = status
        self.max_attempts = max_attempts
        self.base_backoff_ms = base_backoff_ms
        self.jitter_ms = jitter_ms
        self.clock = clock
        self.rng = rng or random.Random()
        self._items: list[RetryQueueItem] = []
        self._in_flight: set[str] = set()

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> list[RetryQueueItem]:
        return list(self._items)

    def summaries(self) -> list[RetrySummary]:
        return [RetrySummary(**item.model_dump()) for item in self._items]

    # ── Programar ────────────────────────────────────

    def schedule(
        self,
        operation: RetryOperation,
        error_message: str,
        call: RemoteCall | None = None,
    ) -> RetryQueueItem:
        now = self.clock()
        item = RetryQueueItem(
            id=id_generator.generate(),
            operation=operation,
            error_message=error_message,
            timestamp=now,
            attempts=0,
            next_retry_at=now + self.base_backoff_ms,
            call=call,
        )
        self._items.append(item)
        self.persist()

        self.status.add_error(
            error_message,
            entity_type=call.collection_path.rstrip("/").split("/")[-1] if call else "",
            entity_id=call.entity_id if call else "",
            retryable=True,
        )
        logger.info(f"Operación programada para reintento: {item.id} ({error_message})")
        return item

    def backoff_for(self, attempts: int) -> int:
        """Retardo base (sin jitter) después de `attempts` intentos fallidos."""
        return self.base_backoff_ms * 2 ** max(attempts - 1, 0)

    # ── Procesar vencidos ────────────────────────────

    async def process_due(self) -> int:
        """
        Reintenta los items cuyo next_retry_at ya venció.
        Retorna cuántos se completaron con éxito.
        """
        if not self._items:
            return 0

        now = self.clock()
        due = [
            item for item in self._items
            if item.next_retry_at <= now and item.id not in self._in_flight
        ]
        succeeded = 0

        for item in due:
            # Otra pasada pudo tomarlo, reprogramarlo o completarlo mientras tanto
            if (
                item.id in self._in_flight
                or item.next_retry_at > now
                or all(i.id != item.id for i in self._items)
            ):
                continue

            if item.attempts >= self.max_attempts:
                logger.warning(
                    f"Reintento {item.id} abandonado tras {item.attempts} intentos: "
                    f"{item.error_message}"
                )
                self._discard(item)
                continue

            item.attempts += 1
            self._in_flight.add(item.id)
            try:
                await item.operation()
            except Exception as e:
                logger.error(f"Intento {item.attempts} de {item.id} falló: {e}")
                item.last_error = str(e) or type(e).__name__
                jitter = self.rng.randrange(self.jitter_ms) if self.jitter_ms > 0 else 0
                item.next_retry_at = self.clock() + self.backoff_for(item.attempts) + jitter
            else:
                logger.info(f"Reintento {item.id} completado en el intento {item.attempts}")
                self._discard(item)
                succeeded += 1
            finally:
                self._in_flight.discard(item.id)

        self.persist()
        return succeeded

    def _discard(self, item: RetryQueueItem) -> None:
        self._items = [i for i in self._items if i.id != item.id]

    # ── Persistencia ─────────────────────────────────

    def persist(self) -> None:
        try:
            payload = _summary_adapter.dump_json(self.summaries()).decode("utf-8")
            self.storage.set(RETRY_STORAGE_KEY, payload)
        except OSError as e:
            logger.error(f"Error guardando la cola de reintentos: {e}")

    def load_from_disk(self, replay: Callable[[RemoteCall], RetryOperation]) -> int:
        """
        Restaura los items reproducibles (con RemoteCall). Los que solo
        tenían un callable se registran como perdidos y se descartan.
        """
        try:
            stored = self.storage.get(RETRY_STORAGE_KEY)
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Error leyendo la cola de reintentos, se descarta: {e}")
            return 0
        if not stored:
            return 0

        try:
            summaries = _summary_adapter.validate_json(stored)
        except ValidationError as e:
            logger.error(
                f"Cola de reintentos persistida corrupta, se descarta: "
                f"{e.error_count()} errores de validación"
            )
            return 0

        restored: list[RetryQueueItem] = []
        for summary in summaries:
            if summary.call is None:
                logger.warning(
                    f"Reintento {summary.id} no es reproducible tras el reinicio, "
                    f"se descarta: {summary.error_message}"
                )
                continue
            restored.append(RetryQueueItem(
                operation=replay(summary.call),
                **summary.model_dump(exclude={"call"}),
                call=summary.call,
            ))

        self._items = restored
        self.persist()
        logger.info(f"Cola de reintentos restaurada: {len(restored)} de {len(summaries)} items")
        return len(restored)
