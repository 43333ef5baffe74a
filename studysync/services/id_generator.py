"""
Generación de identificadores.

- generate(): IDs estilo UUIDv7 (timestamp de 48 bits + bits aleatorios),
  ordenables lexicográficamente por momento de creación.
- generate_temporary(): IDs provisionales del cliente (prefijo `temp-`),
  válidos solo hasta que el servidor asigna el definitivo.
- generate_prefixed(): IDs cortos por entidad (`task-…`, `session-…`).
"""

import re
import secrets
import string
import time

TEMPORARY_PREFIX = "temp-"

_BASE36 = string.digits + string.ascii_lowercase
_PREFIXED_RE = re.compile(r"^(?:[a-z]+-)?[a-z0-9]+-[a-z0-9]+$")


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate() -> str:
    """
    Genera un ID estilo UUIDv7 (8-4-4-4-12).
    Los primeros 12 dígitos hex son el timestamp en milisegundos.
    """
    ts_hex = f"{int(time.time() * 1000) & 0xFFFFFFFFFFFF:012x}"
    rand = f"{secrets.randbits(74):019x}"
    return (
        f"{ts_hex[:8]}-{ts_hex[8:]}"
        f"-7{rand[:3]}"
        f"-{rand[3:7]}"
        f"-{rand[7:19]}"
    )


def timestamp_of(identifier: str) -> int:
    """Extrae el timestamp (ms) embebido en un ID de generate()."""
    compact = identifier.replace("-", "")
    return int(compact[:12], 16)


def generate_temporary() -> str:
    """ID provisional del cliente, antes de sincronizar con el servidor."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(13))
    return f"{TEMPORARY_PREFIX}{suffix}"


def is_temporary(identifier: str) -> bool:
    return identifier.startswith(TEMPORARY_PREFIX)


def generate_prefixed(prefix: str | None = None) -> str:
    """ID `<timestamp base36>-<aleatorio>` con prefijo de entidad opcional."""
    ts = _to_base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_BASE36) for _ in range(7))
    identifier = f"{ts}-{rand}"
    return f"{prefix}-{identifier}" if prefix else identifier


def is_valid_prefixed(identifier: str) -> bool:
    if not identifier or not isinstance(identifier, str):
        return False
    return bool(_PREFIXED_RE.match(identifier))
