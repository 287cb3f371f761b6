"""
Chain Mirror - Ledger Notification Channel

GraphQL subscription over the `graphql-transport-ws` protocol:

    -> connection_init {payload}
    <- connection_ack
    -> subscribe {id, payload: {query, variables}}
    <- next ...        one per ledger change, payload is opaque
    <- ping / -> pong
    <- error | complete | socket close   end of stream

Connection problems surface as NetworkError so the listener can fall
back to polling.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import websockets

from chainmirror.bridges.queries import notifications_subscription
from chainmirror.core.errors import NetworkError

logger = logging.getLogger(__name__)

GRAPHQL_TRANSPORT_WS = "graphql-transport-ws"
SUBSCRIPTION_ID = "notifications"


class GraphQLWSChannel:
    """Subscription to change notifications for one chain."""

    def __init__(
        self,
        url: str,
        chain_id: str,
        application_id: str,
        open_timeout: float = 10.0,
        ack_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.chain_id = chain_id
        self.application_id = application_id
        self.open_timeout = open_timeout
        self.ack_timeout = ack_timeout

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[AsyncIterator[Any]]:
        """
        Connect and subscribe.

        Entering returns only once the server acknowledged the connection
        and the subscribe message was sent; the yielded iterator produces
        one item per notification.
        """
        try:
            ws = await websockets.connect(
                self.url,
                subprotocols=[GRAPHQL_TRANSPORT_WS],
                open_timeout=self.open_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise NetworkError(f"Notification channel unavailable at {self.url}: {e}") from e

        try:
            await self._handshake(ws)
            logger.info(f"[NOTIFY] Subscribed to notifications for chain {self.chain_id}")
            yield self._messages(ws)
        finally:
            await ws.close()

    async def _handshake(self, ws: Any) -> None:
        try:
            await self._send(
                ws,
                {
                    "type": "connection_init",
                    "payload": {"chainId": self.chain_id, "applicationId": self.application_id},
                },
            )
            while True:
                message = await asyncio.wait_for(self._recv(ws), self.ack_timeout)
                kind = message.get("type")
                if kind == "connection_ack":
                    break
                if kind == "ping":
                    await self._send(ws, {"type": "pong"})
                    continue
                raise NetworkError(f"Expected connection_ack, got {kind!r}")

            request = notifications_subscription(self.chain_id)
            await self._send(ws, {"id": SUBSCRIPTION_ID, "type": "subscribe", "payload": request.body()})
        except asyncio.TimeoutError as e:
            raise NetworkError("Timed out waiting for connection_ack") from e
        except websockets.ConnectionClosed as e:
            raise NetworkError(f"Notification channel closed during handshake: {e}") from e

    async def _messages(self, ws: Any) -> AsyncIterator[Any]:
        while True:
            try:
                message = await self._recv(ws)
            except websockets.ConnectionClosed as e:
                raise NetworkError(f"Notification channel closed: {e}") from e

            kind = message.get("type")
            if kind == "next":
                yield message.get("payload")
            elif kind == "ping":
                await self._send(ws, {"type": "pong"})
            elif kind == "error":
                raise NetworkError(f"Subscription rejected: {message.get('payload')}")
            elif kind == "complete":
                logger.info("[NOTIFY] Server completed the subscription")
                return

    @staticmethod
    async def _send(ws: Any, message: dict[str, Any]) -> None:
        await ws.send(json.dumps(message))

    @staticmethod
    async def _recv(ws: Any) -> dict[str, Any]:
        raw = await ws.recv()
        try:
            message = json.loads(raw)
        except ValueError as e:
            raise NetworkError(f"Malformed notification frame: {e}") from e
        if not isinstance(message, dict):
            raise NetworkError("Malformed notification frame: not an object")
        return message
