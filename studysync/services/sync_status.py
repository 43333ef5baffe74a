"""
Difusor de estado de sincronización.

Mantiene el AppSyncStatus vigente y notifica a los observadores (UI/store)
en cada cambio. Los observadores reciben siempre una copia, nunca el
objeto interno.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from studysync.schemas.sync import AppSyncStatus, SyncError, SyncState
from studysync.services import id_generator

logger = logging.getLogger(__name__)

StatusListener = Callable[[AppSyncStatus], None]


class StatusBroadcaster:

    def __init__(self, max_errors: int = 10, initial_state: SyncState = "idle"):
        self.max_errors = max_errors
        self._status = AppSyncStatus(sync_state=initial_state)
        self._listeners: list[StatusListener] = []

    # ── Suscripción ──────────────────────────────────

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Registra un observador. Se invoca de inmediato con el estado actual
        y luego en cada cambio. Retorna la función para desuscribirse.
        """
        self._listeners.append(listener)
        self._deliver(listener, self.snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> AppSyncStatus:
        return self._status.model_copy(deep=True)

    def publish(self) -> None:
        for listener in list(self._listeners):
            self._deliver(listener, self.snapshot())

    def _deliver(self, listener: StatusListener, status: AppSyncStatus) -> None:
        try:
            listener(status)
        except Exception as e:
            logger.error(f"Observador de estado falló: {e}")

    # ── Mutadores (solo el motor) ────────────────────

    @property
    def sync_state(self) -> SyncState:
        return self._status.sync_state

    def set_state(self, state: SyncState) -> None:
        self._status.sync_state = state
        self.publish()

    def set_pending(self, count: int) -> None:
        self._status.pending_changes = count
        self.publish()

    def mark_synced(self, when: datetime | None = None) -> None:
        self._status.last_sync_time = when or datetime.now(timezone.utc)
        self.publish()

    def add_error(
        self,
        message: str,
        entity_type: str = "",
        entity_id: str = "",
        retryable: bool = True,
    ) -> SyncError:
        """Agrega un error al inicio; descarta el más antiguo si se supera el tope."""
        error = SyncError(
            id=id_generator.generate(),
            message=message,
            timestamp=datetime.now(timezone.utc),
            entity_type=entity_type,
            entity_id=entity_id,
            retryable=retryable,
        )
        errors = self._status.errors
        errors.insert(0, error)
        del errors[self.max_errors:]
        self.publish()
        return error
