"""
WebSocket Gateway - Status streams over WebSocket

Endpoints:
- /orders/{order_id}/status: status events for one order, starting with
  its current status. Clients may send {"type": "ping"}, {"type": "status"}
  or {"type": "cancel"}.
- /orders/stream: global channel; confirms the connection and answers pings.

Unknown orders and paths are closed with code 1008 (policy violation).
"""

import asyncio
import json
import re
from typing import Dict, Optional, Any
from urllib.parse import urlsplit

from loguru import logger
from websockets.asyncio.server import serve, Server, ServerConnection
from websockets.exceptions import ConnectionClosed

from .execution_engine import ExecutionEngine
from .status_broadcaster import Subscription
from .errors import SwapExecutionError, OrderNotFoundError


ORDER_STATUS_PATH = re.compile(r"^/orders/(?P<order_id>[^/]+)/status/?$")
GLOBAL_STREAM_PATH = "/orders/stream"

POLICY_VIOLATION = 1008


def error_frame(message: str, order_id: Optional[str] = None) -> str:
    frame: Dict[str, Any] = {'type': 'error', 'message': message}
    if order_id:
        frame['order_id'] = order_id
    return json.dumps(frame)


class WebSocketGateway:
    """Serves the engine's status subscriptions to WebSocket clients"""

    def __init__(self, engine: ExecutionEngine, host: str = "0.0.0.0", port: int = 3000):
        self.engine = engine
        self.host = host
        self.port = port
        self._server: Optional[Server] = None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (useful when started on port 0)"""
        if self._server is None:
            return None
        sockets = list(self._server.sockets)
        return sockets[0].getsockname()[1] if sockets else None

    async def start(self) -> None:
        self._server = await serve(self._handle_connection, self.host, self.port)
        logger.info(f"WebSocket gateway listening on {self.host}:{self.bound_port}")

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("WebSocket gateway stopped")

    def connection_stats(self) -> Dict[str, Any]:
        return self.engine.broadcaster.get_connection_stats()

    async def _handle_connection(self, connection: ServerConnection) -> None:
        path = urlsplit(connection.request.path).path
        match = ORDER_STATUS_PATH.match(path)
        if match:
            await self._serve_order(connection, match.group('order_id'))
        elif path.rstrip('/') == GLOBAL_STREAM_PATH:
            await self._serve_global(connection)
        else:
            await connection.close(POLICY_VIOLATION, "Unknown endpoint")

    async def _serve_order(self, connection: ServerConnection, order_id: str) -> None:
        try:
            subscription = await self.engine.subscribe_status(order_id)
        except OrderNotFoundError:
            await connection.send(error_frame("Order not found", order_id))
            await connection.close(POLICY_VIOLATION, "Order not found")
            return

        logger.info(f"WebSocket client subscribed to order {order_id}")
        await self._run(connection, subscription, order_id)

    async def _serve_global(self, connection: ServerConnection) -> None:
        subscription = await self.engine.subscribe_global()
        logger.info("WebSocket client joined the global stream")
        await self._run(connection, subscription, None)

    async def _run(self, connection: ServerConnection, subscription: Subscription,
                   order_id: Optional[str]) -> None:
        sender = asyncio.create_task(self._forward_events(connection, subscription))
        try:
            async for raw in connection:
                await self._handle_message(connection, subscription, order_id, raw)
        except ConnectionClosed:
            pass
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            await self.engine.unsubscribe(subscription)
            logger.debug(f"WebSocket client left {order_id or 'global stream'}")

    async def _forward_events(self, connection: ServerConnection, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                await connection.send(json.dumps(event.to_dict()))
        except ConnectionClosed:
            pass

    async def _handle_message(self, connection: ServerConnection, subscription: Subscription,
                              order_id: Optional[str], raw) -> None:
        subscription.touch()
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            await connection.send(error_frame("Invalid JSON message", order_id))
            return
        if not isinstance(message, dict):
            await connection.send(error_frame("Message must be a JSON object", order_id))
            return

        message_type = message.get('type')
        if message_type == 'ping':
            self.engine.broadcaster.ping(subscription)
        elif order_id is None:
            await connection.send(error_frame(f"Unsupported message type: {message_type}"))
        elif message_type == 'status':
            order = await self.engine.get_status(order_id)
            if order is None:
                await connection.send(error_frame("Order not found", order_id))
            else:
                await connection.send(json.dumps({'type': 'status', 'order': order.to_dict()}))
        elif message_type == 'cancel':
            try:
                order = await self.engine.cancel(order_id)
            except SwapExecutionError as e:
                await connection.send(error_frame(str(e), order_id))
            else:
                await connection.send(json.dumps({
                    'type': 'cancelled',
                    'order_id': order_id,
                    'status': order.status.value
                }))
        else:
            await connection.send(error_frame(f"Unsupported message type: {message_type}", order_id))
