"""
Push notifications to connected driver clients.

Each service instance keeps its own registry of driver WebSocket sessions.
The registry is never consulted for assignment decisions; it only delivers
messages, at most once, to drivers connected to this instance.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class DriverNotifier(ABC):
    @abstractmethod
    async def send(self, driver_id: str, payload: Dict[str, Any]) -> bool:
        """Push a message to a driver. Returns False if it could not be delivered."""


class DriverSocketRegistry(DriverNotifier):
    """Maps driver ids to their open WebSocket on this instance."""

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}

    def connect(self, driver_id: str, websocket: WebSocket) -> None:
        self._sockets[driver_id] = websocket
        logger.info(f"Driver {driver_id} connected")

    def disconnect(self, driver_id: str, websocket: WebSocket) -> None:
        # A reconnect may already have replaced this socket
        if self._sockets.get(driver_id) is websocket:
            del self._sockets[driver_id]
            logger.info(f"Driver {driver_id} disconnected")

    def is_connected(self, driver_id: str) -> bool:
        return driver_id in self._sockets

    async def send(self, driver_id: str, payload: Dict[str, Any]) -> bool:
        websocket = self._sockets.get(driver_id)
        if websocket is None:
            logger.warning(f"Driver {driver_id} is not connected, dropping '{payload.get('type')}' message")
            return False
        try:
            await websocket.send_json(payload)
            return True
        except (RuntimeError, OSError) as e:
            logger.warning(f"Push to driver {driver_id} failed: {e}")
            self.disconnect(driver_id, websocket)
            return False


driver_sockets = DriverSocketRegistry()
