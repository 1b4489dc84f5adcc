import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

SYMBOL_FILTERED_TYPES = frozenset({"candle", "alert"})


@dataclass
class ConnectionContext:
    websocket: WebSocket
    symbols: Set[str] = field(default_factory=set)


class ConnectionManager:
    """
    Manages WebSocket connections and broadcasting.
    Singleton pattern to ensure one manager across the app.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConnectionManager, cls).__new__(cls)
            cls._instance.active_connections: Dict[WebSocket, ConnectionContext] = {}
        return cls._instance

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections[websocket] = ConnectionContext(websocket=websocket)
        logger.info("WebSocket connected total=%s", len(self.active_connections))

    def subscribe_symbol(self, websocket: WebSocket, symbol: str):
        ctx = self.active_connections.get(websocket)
        if not ctx:
            return
        ctx.symbols.add(symbol.upper())

    def unsubscribe_symbol(self, websocket: WebSocket, symbol: str):
        ctx = self.active_connections.get(websocket)
        if not ctx:
            return
        ctx.symbols.discard(symbol.upper())

    def get_symbols(self, websocket: WebSocket) -> Set[str]:
        ctx = self.active_connections.get(websocket)
        if not ctx:
            return set()
        return set(ctx.symbols)

    def disconnect(self, websocket: WebSocket):
        ctx = self.active_connections.pop(websocket, None)
        if not ctx:
            return
        logger.info("WebSocket disconnected remaining=%s", len(self.active_connections))

    @staticmethod
    def _is_socket_disconnected(websocket: WebSocket) -> bool:
        for state in (getattr(websocket, "client_state", None), getattr(websocket, "application_state", None)):
            if state is None:
                continue
            state_name = getattr(state, "name", str(state)).upper()
            if "DISCONNECTED" in state_name:
                return True
        return False

    @staticmethod
    def _is_expected_disconnect(exc: Exception) -> bool:
        if isinstance(exc, WebSocketDisconnect):
            return True
        msg = str(exc).lower()
        exc_name = exc.__class__.__name__.lower()
        if "disconnect" in exc_name or "closed" in exc_name:
            return True
        return any(
            fragment in msg
            for fragment in ("connection closed", "websocket is not connected", "broken pipe", "endofstream")
        )

    @staticmethod
    def _message_symbol(message: Dict[str, Any]) -> Optional[str]:
        data = message.get("data")
        if isinstance(data, dict) and data.get("symbol"):
            return str(data["symbol"]).upper()
        return None

    async def broadcast(self, message: Dict[str, Any]):
        """Parallel non-blocking broadcast. Per-symbol messages only reach clients subscribed to that symbol."""
        if not self.active_connections:
            return

        current_contexts = list(self.active_connections.values())
        msg_type = message.get("type")
        symbol = self._message_symbol(message) if msg_type in SYMBOL_FILTERED_TYPES else None

        try:
            encoded = json.dumps(message)
        except (TypeError, ValueError):
            logger.exception("Broadcast serialization failed type=%s", msg_type)
            return

        tasks = []
        recipients: list[ConnectionContext] = []
        stale: Set[WebSocket] = set()
        for ctx in current_contexts:
            if self._is_socket_disconnected(ctx.websocket):
                stale.add(ctx.websocket)
                continue
            # candles are opt-in; alerts go to everyone unless the client narrowed its symbols
            if msg_type == "candle" and symbol not in ctx.symbols:
                continue
            if msg_type == "alert" and ctx.symbols and symbol not in ctx.symbols:
                continue
            recipients.append(ctx)
            tasks.append(ctx.websocket.send_text(encoded))

        for dead in stale:
            self.disconnect(dead)

        if not tasks:
            return

        results = await asyncio.gather(*tasks, return_exceptions=True)

        disconnected: Set[WebSocket] = set()
        for i, result in enumerate(results):
            if isinstance(result, Exception):
                ctx = recipients[i]
                if self._is_expected_disconnect(result):
                    logger.info("Broadcast dropped disconnected client symbols=%s err=%s", len(ctx.symbols), result)
                else:
                    logger.warning("Broadcast failed client symbols=%s err=%r", len(ctx.symbols), result)
                disconnected.add(ctx.websocket)

        for dead in disconnected:
            self.disconnect(dead)


manager = ConnectionManager()
