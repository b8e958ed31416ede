"""
Live update broadcaster.

Connected WebSocket subscribers are grouped into rooms: every subscriber
joins the shared market room plus a private ``user:{sub}`` room. Delivery
is best effort with no replay; a subscriber that reconnects re-reads state
from the API.

With Redis configured, every event is also published on a pub/sub channel
so subscribers attached to other server instances receive it. Each
instance delivers its own events locally and ignores its own echoes.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from collections import defaultdict
from typing import Any, Dict, Optional, Set

from redis.exceptions import RedisError
from starlette.websockets import WebSocket, WebSocketDisconnect

from navpulse.core.logging_config import get_main_logger

logger = get_main_logger()

MARKET_ROOM = "market-indices"
RELAY_RETRY_SECONDS = 5.0


def user_room(subject: str) -> str:
    return f"user:{subject}"


class Broadcaster:

    def __init__(self, redis=None, channel: str = "navpulse:broadcast", instance_id: Optional[str] = None):
        self._redis = redis
        self._channel = channel
        self.instance_id = instance_id or uuid.uuid4().hex
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._relay_task: Optional[asyncio.Task] = None

    # ==================== CONNECTIONS ====================

    async def connect(self, websocket: WebSocket, identity: dict) -> None:
        """Join an accepted socket to the market room and its identity's room."""
        self._rooms[MARKET_ROOM].add(websocket)
        subject = identity.get("sub")
        if subject:
            self._rooms[user_room(str(subject))].add(websocket)
        logger.debug(f"Subscriber connected (sub={subject}), {self.subscriber_count()} total")

    def disconnect(self, websocket: WebSocket) -> None:
        for room in list(self._rooms):
            self._rooms[room].discard(websocket)
            if not self._rooms[room]:
                del self._rooms[room]

    def subscriber_count(self, room: str = MARKET_ROOM) -> int:
        return len(self._rooms.get(room, ()))

    # ==================== DELIVERY ====================

    async def send(self, websocket: WebSocket, event: str, payload: Any) -> bool:
        try:
            await websocket.send_json({"event": event, "data": payload})
            return True
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
            logger.debug(f"Dropping subscriber after failed send of {event}: {e}")
            self.disconnect(websocket)
            return False

    async def emit(self, event: str, payload: Any, room: str = MARKET_ROOM) -> int:
        """Deliver to local subscribers of ``room``. Returns sockets reached."""
        delivered = 0
        for websocket in list(self._rooms.get(room, ())):
            if await self.send(websocket, event, payload):
                delivered += 1
        return delivered

    async def publish(self, event: str, payload: Any, room: str = MARKET_ROOM) -> int:
        """Deliver locally and relay to other instances. Returns local sockets reached."""
        delivered = await self.emit(event, payload, room)
        if self._redis is not None:
            message = json.dumps(
                {"origin": self.instance_id, "event": event, "room": room, "data": payload},
                default=str,
            )
            try:
                await self._redis.publish(self._channel, message)
            except RedisError as e:
                logger.warning(f"Broadcast relay publish failed, delivered locally only: {e}")
        return delivered

    # ==================== RELAY ====================

    async def _handle_relay_message(self, raw: Any) -> int:
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            message = json.loads(raw)
            origin, event, room, data = message["origin"], message["event"], message["room"], message["data"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed relay message: {e}")
            return 0
        if origin == self.instance_id:
            return 0
        return await self.emit(event, data, room)

    async def run_relay(self) -> None:
        """Forward events published by other instances until cancelled."""
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self._handle_relay_message(message["data"])
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()

    async def _relay_forever(self) -> None:
        while True:
            try:
                await self.run_relay()
            except RedisError as e:
                logger.warning(f"Broadcast relay disconnected, retrying in {RELAY_RETRY_SECONDS:.0f}s: {e}")
            await asyncio.sleep(RELAY_RETRY_SECONDS)

    def start_relay(self) -> None:
        if self._redis is None or self._relay_task is not None:
            return
        self._relay_task = asyncio.create_task(self._relay_forever(), name="broadcast-relay")

    async def stop_relay(self) -> None:
        if self._relay_task is None:
            return
        self._relay_task.cancel()
        await asyncio.gather(self._relay_task, return_exceptions=True)
        self._relay_task = None
