"""
Cola de mutaciones pendientes.

Lista ordenada (más antigua primero) de intenciones create/update/delete
que esperan ser enviadas al backend remoto. Deduplica por
(collection_path, entity_id) y se persiste en el almacenamiento local
después de cada cambio.
"""

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import TypeAdapter, ValidationError

from studysync.schemas.sync import MutationOperation, MutationQueueItem
from studysync.services import id_generator
from studysync.services.local_storage import LocalStorage
from studysync.services.sync_status import StatusBroadcaster

logger = logging.getLogger(__name__)

QUEUE_STORAGE_KEY = "syncQueue"

_queue_adapter = TypeAdapter(list[MutationQueueItem])


def now_ms() -> int:
    return int(time.time() * 1000)


def resolve_references(value: Any, ids: Mapping[str, str]) -> Any:
    """
    Copia `value` reemplazando cada string que sea clave de `ids`,
    también dentro de listas y dicts anidados.
    """
    if isinstance(value, str):
        return ids.get(value, value)
    if isinstance(value, dict):
        return {k: resolve_references(v, ids) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, ids) for v in value]
    return value


class MutationQueue:

    def __init__(
        self,
        storage: LocalStorage,
        status: StatusBroadcaster,
        clock: Callable[[], int] = now_ms,
    ):
        self.storage = storage
        self.status = status
        self.clock = clock
        self._items: list[MutationQueueItem] = []

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> list[MutationQueueItem]:
        return list(self._items)

    def get(self, item_id: str) -> MutationQueueItem | None:
        return next((i for i in self._items if i.id == item_id), None)

    def find(self, collection_path: str, entity_id: str) -> MutationQueueItem | None:
        key = (collection_path, entity_id)
        return next((i for i in self._items if i.key == key), None)

    def oldest(self, n: int) -> list[MutationQueueItem]:
        return self._items[:n]

    # ── Encolar (con coalescencia) ───────────────────

    def enqueue(
        self,
        operation: MutationOperation,
        collection_path: str,
        entity_id: str,
        data: dict[str, Any] | None = None,
    ) -> MutationQueueItem:
        """
        Registra una mutación. Si ya hay una pendiente para la misma entidad,
        se sobreescribe operation/data/timestamp y se conservan los intentos.
        """
        existing = self.find(collection_path, entity_id)
        if existing:
            existing.operation = operation
            existing.data = data
            existing.timestamp = self.clock()
            item = existing
            logger.debug(
                f"Mutación coalescida: {operation} {collection_path}/{entity_id} "
                f"(intentos={item.attempts})"
            )
        else:
            item = MutationQueueItem(
                id=id_generator.generate(),
                operation=operation,
                collection_path=collection_path,
                entity_id=entity_id,
                data=data,
                timestamp=self.clock(),
                attempts=0,
            )
            self._items.append(item)

        self.persist()
        self.status.set_pending(len(self._items))
        return item

    # ── Remoción y re-key ────────────────────────────

    def remove(self, items: Iterable[MutationQueueItem]) -> int:
        ids = {i.id for i in items}
        before = len(self._items)
        self._items = [i for i in self._items if i.id not in ids]
        return before - len(self._items)

    def rekey(self, item: MutationQueueItem, entity_id: str) -> MutationQueueItem:
        """
        Cambia el entity_id de un item. Si ya existe otro item con la nueva
        clave, el más reciente absorbe al otro para mantener la unicidad.
        """
        clash = self.find(item.collection_path, entity_id)
        item.entity_id = entity_id
        if clash is None or clash is item:
            return item
        newer, older = (item, clash) if item.timestamp >= clash.timestamp else (clash, item)
        newer.attempts = max(newer.attempts, older.attempts)
        self.remove([older])
        return newer

    def rewrite_references(self, temporary_id: str, permanent_id: str) -> int:
        """Reemplaza el ID temporal en los payloads (a cualquier profundidad)."""
        ids = {temporary_id: permanent_id}
        rewritten = 0
        for item in self._items:
            if not item.data:
                continue
            data = resolve_references(item.data, ids)
            if data != item.data:
                item.data = data
                rewritten += 1
        return rewritten

    # ── Persistencia ─────────────────────────────────

    def persist(self) -> None:
        try:
            payload = _queue_adapter.dump_json(self._items).decode("utf-8")
            self.storage.set(QUEUE_STORAGE_KEY, payload)
        except OSError as e:
            logger.error(f"Error guardando la cola de sync en almacenamiento local: {e}")

    def load_from_disk(self) -> int:
        """
        Restaura la cola persistida. Un contenido corrupto se trata como
        cola vacía (se registra, nunca se propaga).
        """
        try:
            stored = self.storage.get(QUEUE_STORAGE_KEY)
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Error leyendo la cola de sync, se trata como vacía: {e}")
            stored = None

        if stored:
            try:
                self._items = _queue_adapter.validate_json(stored)
            except ValidationError as e:
                logger.error(
                    f"Cola de sync persistida corrupta, se descarta: "
                    f"{e.error_count()} errores de validación"
                )
                self._items = []
            else:
                logger.info(f"Cola de sync restaurada: {len(self._items)} mutaciones pendientes")

        self.status.set_pending(len(self._items))
        return len(self._items)
