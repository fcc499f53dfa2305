from typing import Dict, Set, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Routes typed events to the WebSocket bound to each identity"""

    def __init__(self, stale_after_s: int = 300):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self.stale_after_s = stale_after_s
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            previous = self.active_connections.get(session_id)
            self.active_connections[session_id] = websocket
            self.session_metadata[session_id] = {
                "connected_at": datetime.now(timezone.utc),
                "last_activity": datetime.now(timezone.utc)
            }

        if previous is not None:
            # One socket per identity; the newest wins
            try:
                await previous.close(code=1000, reason="Superseded by a new connection")
            except Exception as e:
                logger.warning("Error closing superseded WebSocket", session_id=session_id, error=str(e))

        await self.send_event(session_id, ConnectionEvent(status="connected", session_id=session_id))

        logger.info("WebSocket connected", session_id=session_id)

    async def disconnect(self, session_id: str):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            ws = self.active_connections.pop(session_id, None)
            self.session_metadata.pop(session_id, None)

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                # Already closed by the peer
                logger.debug("Error closing WebSocket", session_id=session_id, error=str(e))

        logger.info("WebSocket disconnected", session_id=session_id)

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific session"""
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected session", session_id=session_id, event_type=event.type.value)
            return False

        if event.session_id is None:
            event.session_id = session_id

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if session_id in self.session_metadata:
                self.session_metadata[session_id]["last_activity"] = datetime.now(timezone.utc)

            return True

        except Exception as e:
            logger.error("Failed to send event", session_id=session_id, error=str(e))
            await self.disconnect(session_id)
            return False

    async def send_error(self, session_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a session"""
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code,
            session_id=session_id
        )
        await self.send_event(session_id, error_event)

    def touch(self, session_id: str):
        """Record inbound activity"""
        if session_id in self.session_metadata:
            self.session_metadata[session_id]["last_activity"] = datetime.now(timezone.utc)

    def get_session_metadata(self, session_id: str) -> Optional[Dict]:
        """Get metadata for a session"""
        return self.session_metadata.get(session_id)

    def get_active_sessions(self) -> Set[str]:
        """Get active session IDs"""
        return set(self.active_connections.keys())

    async def health_check(self, interval_s: int = 60):
        """Periodic health check to clean up stale connections"""
        while True:
            try:
                current_time = datetime.now(timezone.utc)
                stale_sessions = [
                    session_id
                    for session_id, metadata in list(self.session_metadata.items())
                    if metadata.get("last_activity")
                    and (current_time - metadata["last_activity"]).total_seconds() > self.stale_after_s
                ]

                for session_id in stale_sessions:
                    logger.warning("Disconnecting stale session", session_id=session_id)
                    await self.disconnect(session_id)

            except Exception as e:
                logger.error("Health check error", error=str(e))

            await asyncio.sleep(interval_s)
