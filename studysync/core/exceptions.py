"""
Excepciones del motor de sincronización y excepciones HTTP de la API.
"""

from fastapi import HTTPException, status


# ── Motor de sincronización ──────────────────────────

class SyncEngineError(Exception):
    """Base de los errores internos del motor (nunca cruzan su API pública)."""

    code = "sync_error"


class RemoteCommitError(SyncEngineError):
    """Falló un commit atómico contra el backend remoto."""

    code = "commit_failed"


class DocumentNotFoundError(RemoteCommitError):
    """Un update apuntó a un documento que no existe en el backend."""

    code = "not_found"

    def __init__(self, collection_path: str, document_id: str):
        self.collection_path = collection_path
        self.document_id = document_id
        super().__init__(f"Documento no encontrado: {collection_path}/{document_id}")


class BackendUnavailableError(SyncEngineError):
    """El backend remoto no está disponible (timeout, conexión rechazada)."""

    code = "unavailable"


# ── HTTP ─────────────────────────────────────────────

class NotFoundException(HTTPException):
    """Recurso no encontrado (404)."""

    def __init__(self, resource: str = "Recurso", detail: str | None = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail or f"{resource} no encontrado",
        )


class ServiceUnavailableException(HTTPException):
    """Motor de sincronización no inicializado (503)."""

    def __init__(self, detail: str = "Motor de sincronización no disponible"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
        )
