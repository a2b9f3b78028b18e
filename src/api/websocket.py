import asyncio
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect

from src.core.logger import logger
from src.services.connection_registry import ConnectionRegistry
from src.services.push_gateway import PushGateway, encode_json
from src.services.state_store import StateStore


class ConversationWebSocketHandler:
    """Push stream for one user over a WebSocket.

    Frames are the same JSON events as the SSE stream. Incoming client text
    is only read to notice the disconnect; a ``ping`` is answered with
    ``pong``.
    """

    def __init__(
        self,
        websocket: WebSocket,
        user_id: str,
        store: StateStore,
        registry: Optional[ConnectionRegistry] = None,
        queue_size: int = 100,
    ):
        self.websocket = websocket
        self.user_id = user_id
        self._gateway = PushGateway(
            user_id,
            store,
            registry=registry,
            transport="websocket",
            queue_size=queue_size,
        )

    async def connect(self):
        await self.websocket.accept()
        logger.info(f"WebSocket push connection accepted for {self.user_id}")

    async def disconnect(self):
        self._gateway.close()
        logger.info(f"WebSocket push connection closed for {self.user_id}")

    async def send_error(self, message: str):
        try:
            await self.websocket.send_json({"type": "error", "data": {"message": message}})
        except Exception as e:
            logger.error(f"Error sending error frame to {self.user_id}: {e}")

    async def handle_stream(self):
        pump = asyncio.create_task(self._pump())
        listen = asyncio.create_task(self._listen())

        done, pending = await asyncio.wait({pump, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                raise error

        if pump in done:
            await self.websocket.close()

    async def _pump(self):
        async for frame in self._gateway.stream(encode_json):
            await self.websocket.send_text(frame)

    async def _listen(self):
        while True:
            text = await self.websocket.receive_text()
            if text.strip().lower() == "ping":
                await self.websocket.send_json({"type": "pong"})
            else:
                logger.debug(f"Ignoring client frame from {self.user_id}: {text[:80]}")
