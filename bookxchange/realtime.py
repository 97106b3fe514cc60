"""
Live delivery channel.

Keeps at most one identified WebSocket per user and pushes newly sent
messages to the receiver's socket. Delivery is best-effort and at-most-once:
nothing is queued or retried, the database stays the record of truth and
clients catch up through the regular GET endpoints.

Protocol:
- client -> server: {"type": "identify", "userId": <int>}
- server -> client: {"type": "new_message", "message": {...}}
"""

import json
import logging
import threading
from typing import Dict, Optional

from fastapi import WebSocket
from pydantic import ValidationError as PydanticValidationError
from starlette.websockets import WebSocketState

from bookxchange.metrics import record_live_delivery, set_websocket_connections
from bookxchange.schemas import IdentifyFrame

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Registry of identified WebSocket connections, one per user.

    Registering a new socket for a user replaces the previous one. Removal
    compares socket identity, so a replaced socket closing late cannot evict
    its successor.
    """

    def __init__(self):
        # Structure: {user_id: WebSocket}
        self._connections: Dict[int, WebSocket] = {}
        self._lock = threading.Lock()

    def register(self, user_id: int, websocket: WebSocket) -> None:
        with self._lock:
            previous = self._connections.get(user_id)
            self._connections[user_id] = websocket
            count = len(self._connections)
        set_websocket_connections(count)

        if previous is not None and previous is not websocket:
            logger.info(f"WebSocket replaced: user={user_id}, total_connections={count}")
        else:
            logger.info(f"WebSocket identified: user={user_id}, total_connections={count}")

    def unregister(self, user_id: int, websocket: WebSocket) -> bool:
        """
        Remove the registration of user_id if it still points at websocket.

        Returns:
            True if an entry was removed, False if the user is registered
            with another socket or not at all
        """
        with self._lock:
            if self._connections.get(user_id) is not websocket:
                return False
            del self._connections[user_id]
            count = len(self._connections)
        set_websocket_connections(count)
        logger.info(f"WebSocket unregistered: user={user_id}, remaining_connections={count}")
        return True

    def get(self, user_id: int) -> Optional[WebSocket]:
        with self._lock:
            return self._connections.get(user_id)

    def is_online(self, user_id: int) -> bool:
        return self.get(user_id) is not None

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    async def push(self, user_id: int, payload: dict) -> bool:
        """
        Send payload to the user's registered socket, if any.

        Failures are logged and swallowed; the failing socket is dropped
        from the registry.

        Returns:
            True if the payload was handed to an open socket
        """
        websocket = self.get(user_id)
        if websocket is None:
            logger.debug(f"No live connection for user {user_id}")
            record_live_delivery("offline")
            return False

        if (
            websocket.client_state != WebSocketState.CONNECTED
            or websocket.application_state != WebSocketState.CONNECTED
        ):
            logger.info(f"Live connection for user {user_id} is not writable, dropping it")
            self.unregister(user_id, websocket)
            record_live_delivery("offline")
            return False

        try:
            await websocket.send_json(payload)
        except Exception as e:
            logger.warning(f"Live delivery to user {user_id} failed: {e}")
            self.unregister(user_id, websocket)
            record_live_delivery("failed")
            return False

        logger.debug(f"Pushed {payload.get('type')} to user {user_id}")
        record_live_delivery("delivered")
        return True

    def handle_frame(self, websocket: WebSocket, raw: str, current_user_id: Optional[int]) -> Optional[int]:
        """
        Process one client frame.

        Malformed frames are logged and ignored; the connection stays open
        and no error frame is sent back.

        Args:
            websocket: Connection the frame arrived on
            raw: Frame text
            current_user_id: User this connection is identified as, if any

        Returns:
            The user the connection is identified as after this frame
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed WebSocket frame: {e}")
            return current_user_id

        if not isinstance(data, dict) or data.get("type") != "identify":
            frame_type = data.get("type") if isinstance(data, dict) else type(data).__name__
            logger.warning(f"Ignoring unsupported WebSocket frame: type={frame_type}")
            return current_user_id

        try:
            frame = IdentifyFrame.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Ignoring invalid identify frame: {e.error_count()} error(s)")
            return current_user_id

        if current_user_id is not None and current_user_id != frame.user_id:
            self.unregister(current_user_id, websocket)
        self.register(frame.user_id, websocket)
        return frame.user_id


async def serve_connection(websocket: WebSocket, manager: ConnectionManager) -> None:
    """
    Run one WebSocket connection until the client goes away.

    The connection is anonymous until it sends an identify frame. On close
    its registration is removed, unless a newer socket replaced it.
    """
    await websocket.accept()
    user_id: Optional[int] = None
    logger.debug("WebSocket connection opened")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            user_id = manager.handle_frame(websocket, raw, user_id)
    finally:
        if user_id is not None:
            manager.unregister(user_id, websocket)
        logger.debug(f"WebSocket connection closed: user={user_id}")
