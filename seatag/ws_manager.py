from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Iterable, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

log = logging.getLogger("ws")


class Role(str, Enum):
    VIEWER = "viewer"
    RECEIVER = "receiver"


class Subscription:
    """One live connection plus its outbound buffer.

    The buffer is bounded; when a slow client lets it fill up the oldest
    pending message is dropped so the newest state still gets through.
    """

    def __init__(self, websocket: WebSocket, role: Role, queue_size: int) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.websocket = websocket
        self.role = role
        self.queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.task: asyncio.Task | None = None

    def offer(self, message: dict) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.queue.get_nowait()
            self.queue.task_done()
            self.queue.put_nowait(message)
        return True

    def __repr__(self) -> str:
        return f"<Subscription {self.id} {self.role.value}>"


class ConnectionManager:
    def __init__(self, queue_size: int = 256) -> None:
        self.active_connections: Set[Subscription] = set()
        self.queue_size = queue_size
        self._lock = asyncio.Lock()

    async def connect(
        self,
        websocket: WebSocket,
        role: Role = Role.VIEWER,
        replay: Callable[[], Iterable[dict]] | None = None,
    ) -> Subscription:
        # registered before the handshake completes, so a client that sees
        # the accept is already reachable by broadcasts and commands
        sub = await self._add(websocket, role, replay)
        try:
            await websocket.accept()
        except Exception:
            await self.disconnect(sub)
            raise
        self._start(sub)
        return sub

    async def register(
        self,
        websocket: WebSocket,
        role: Role = Role.VIEWER,
        replay: Callable[[], Iterable[dict]] | None = None,
    ) -> Subscription:
        """Add an already-open connection.

        ``replay`` is called under the registry lock and its messages are
        queued ahead of any later broadcast.
        """
        sub = await self._add(websocket, role, replay)
        self._start(sub)
        return sub

    async def _add(self, websocket, role, replay) -> Subscription:
        async with self._lock:
            messages = list(replay()) if replay else []
            # the buffer must hold the whole replay, one message per known device
            sub = Subscription(websocket, Role(role), max(self.queue_size, len(messages)))
            for message in messages:
                sub.offer(message)
            self.active_connections.add(sub)
        log.info("WebSocket %s connected (%d open)", sub, len(self.active_connections))
        return sub

    def _start(self, sub: Subscription) -> None:
        sub.task = asyncio.create_task(self._pump(sub))

    async def disconnect(self, sub: Subscription) -> None:
        async with self._lock:
            if sub in self.active_connections:
                self.active_connections.remove(sub)
                log.info("WebSocket %s disconnected (%d open)", sub, len(self.active_connections))
        sub.closed = True
        while not sub.queue.empty():
            sub.queue.get_nowait()
            sub.queue.task_done()
        if sub.task and sub.task is not asyncio.current_task() and not sub.task.done():
            sub.task.cancel()

    async def broadcast_json(self, message: dict) -> int:
        """Queue ``message`` for every open connection; returns how many took it."""
        return await self._fan_out(message, lambda sub: True)

    async def send_to_role(self, role: Role, message: dict) -> int:
        return await self._fan_out(message, lambda sub: sub.role == role)

    async def _fan_out(self, message: dict, wanted: Callable[[Subscription], bool]) -> int:
        async with self._lock:
            targets = [s for s in self.active_connections if wanted(s)]
        return sum(1 for s in targets if s.offer(message))

    def count(self, role: Role | None = None) -> int:
        return sum(1 for s in self.active_connections if role is None or s.role == role)

    async def flush(self) -> None:
        """Wait until every queued message has been handed to its transport."""
        async with self._lock:
            queues = [s.queue for s in self.active_connections]
        await asyncio.gather(*(q.join() for q in queues))

    async def close_all(self) -> None:
        async with self._lock:
            subs = list(self.active_connections)
        for sub in subs:
            await self.disconnect(sub)

    async def _pump(self, sub: Subscription) -> None:
        while not sub.closed:
            message = await sub.queue.get()
            try:
                await self._safe_send(sub, message)
            finally:
                sub.queue.task_done()
        await self.disconnect(sub)

    async def _safe_send(self, sub: Subscription, message: Any) -> None:
        state = getattr(sub.websocket, "application_state", None)
        if state is not None and state != WebSocketState.CONNECTED:
            sub.closed = True
            return
        try:
            await sub.websocket.send_json(message)
        except Exception as e:
            log.info("Send to %s failed, dropping it: %s", sub, e)
            sub.closed = True
