"""
Monitor de conectividad.

Fuente booleana online/offline con suscripción. Los cambios llegan desde
la UI (eventos online/offline del cliente) vía set_online(), o desde
probe(), que consulta un endpoint de salud del backend remoto.
"""

import logging
from collections.abc import Callable

import httpx

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class NetworkMonitor:

    def __init__(
        self,
        online: bool = True,
        probe_url: str | None = None,
        probe_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._online = online
        self.probe_url = probe_url
        self.probe_timeout = probe_timeout
        self.transport = transport
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Actualiza la conectividad. Solo notifica en transiciones."""
        if online == self._online:
            return False
        self._online = online
        logger.info(f"Conectividad: {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Observador de conectividad falló: {e}")
        return True

    async def probe(self) -> bool:
        """
        Consulta el endpoint de salud del backend remoto.
        Cualquier respuesta HTTP < 500 cuenta como conectado.
        """
        if not self.probe_url:
            return self._online

        try:
            async with httpx.AsyncClient(
                timeout=self.probe_timeout, transport=self.transport
            ) as client:
                response = await client.get(self.probe_url)
            reachable = response.status_code < 500
        except httpx.TimeoutException:
            logger.warning(f"Timeout verificando conectividad con {self.probe_url}")
            reachable = False
        except httpx.RequestError as e:
            logger.warning(f"Sin conexión con {self.probe_url}: {e}")
            reachable = False

        self.set_online(reachable)
        return reachable
