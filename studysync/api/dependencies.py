"""
Dependencies de FastAPI para acceder al motor de sincronización.
"""

from fastapi import Request

from studysync.core.exceptions import ServiceUnavailableException
from studysync.services.sync_service import SyncEngine


# ── Motor de sync (creado en el lifespan) ────────────
def get_sync_engine(request: Request) -> SyncEngine:
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise ServiceUnavailableException()
    return engine
