"""
Script para inspeccionar las colas persistidas en el almacenamiento local.
Útil para diagnosticar un cliente que quedó con mutaciones pendientes:

    python scripts/inspect_queue.py --dir ./.studysync
    python scripts/inspect_queue.py --dir ./.studysync --json
"""

import argparse
import sys
from datetime import datetime, timezone

from pydantic import TypeAdapter, ValidationError

from studysync.config import get_settings
from studysync.schemas.sync import MutationQueueItem, RetrySummary
from studysync.services.local_storage import FileLocalStorage
from studysync.services.mutation_queue import QUEUE_STORAGE_KEY
from studysync.services.retry_queue import RETRY_STORAGE_KEY


def _fmt_ms(value: int | None) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _load(storage: FileLocalStorage, key: str, adapter: TypeAdapter) -> list:
    try:
        raw = storage.get(key)
    except UnicodeDecodeError as e:
        print(f"⚠️  {key} ilegible: {e}")
        return []
    if not raw:
        return []
    try:
        return adapter.validate_json(raw)
    except ValidationError as e:
        print(f"⚠️  {key} corrupto: {e.error_count()} errores de validación")
        return []


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspeccionar colas de sync persistidas")
    parser.add_argument("--dir", default=get_settings().LOCAL_STORAGE_DIR, help="Directorio de almacenamiento local")
    parser.add_argument("--json", action="store_true", help="Imprimir el contenido crudo")
    args = parser.parse_args()

    storage = FileLocalStorage(args.dir)

    if args.json:
        print(storage.get(QUEUE_STORAGE_KEY) or "[]")
        print(storage.get(RETRY_STORAGE_KEY) or "[]")
        return 0

    items = _load(storage, QUEUE_STORAGE_KEY, TypeAdapter(list[MutationQueueItem]))
    retries = _load(storage, RETRY_STORAGE_KEY, TypeAdapter(list[RetrySummary]))

    print(f"📦 Mutaciones pendientes: {len(items)}")
    for item in items:
        print(
            f"  {item.operation:<6} {item.collection_path}/{item.entity_id}  "
            f"intentos={item.attempts}  último={_fmt_ms(item.last_attempt)}  "
            f"registrada={_fmt_ms(item.timestamp)}"
        )

    print(f"🔁 Reintentos pendientes: {len(retries)}")
    for retry in retries:
        replay = "sí" if retry.call else "no"
        print(
            f"  {retry.id}  intentos={retry.attempts}  "
            f"próximo={_fmt_ms(retry.next_retry_at)}  reproducible={replay}  "
            f"{retry.error_message}"
        )

    return 0


if __name__ == "__main__":
    sys.exit(main())
