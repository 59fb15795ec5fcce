from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from ..constants import EVENT_CHANNELS


@dataclass
class _WsClient:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    task_ids: set[str] = field(default_factory=set)


class WebSocketHub:
    """Fans engine events out to websocket subscribers.

    Clients send `{"action": "subscribe", "channels": [...], "task_ids": [...]}`;
    an empty `task_ids` set means every task on the subscribed channels.
    """

    def __init__(self) -> None:
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    async def _reply(self, websocket: WebSocket, event_type: str, payload: dict[str, Any]) -> None:
        await websocket.send_text(json.dumps({"channel": "system", "type": event_type, "payload": payload}))

    async def handle_connection(self, websocket: WebSocket) -> None:
        # Remember the active event loop so scheduler threads can publish safely.
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket)
        cid = id(websocket)
        self._clients[cid] = client
        try:
            await self._reply(websocket, "connected", {"channels": sorted(EVENT_CHANNELS)})
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await self._reply(websocket, "error", {"detail": "invalid json"})
                    continue
                action = message.get("action")
                channels = set(message.get("channels", []))
                task_ids = {str(task_id).strip() for task_id in message.get("task_ids", []) if str(task_id).strip()}
                if action == "subscribe":
                    client.channels |= channels & EVENT_CHANNELS
                    client.task_ids |= task_ids
                    await self._reply(
                        websocket,
                        "subscribed",
                        {"channels": sorted(client.channels), "task_ids": sorted(client.task_ids)},
                    )
                elif action == "unsubscribe":
                    client.channels -= channels
                    client.task_ids -= task_ids
                    await self._reply(
                        websocket,
                        "unsubscribed",
                        {"channels": sorted(client.channels), "task_ids": sorted(client.task_ids)},
                    )
                elif action == "ping":
                    await self._reply(websocket, "pong", {})
        except WebSocketDisconnect:
            logger.debug("Websocket client {} disconnected", cid)
        finally:
            self._clients.pop(cid, None)

    def _wants(self, client: _WsClient, event: dict[str, Any]) -> bool:
        channel = event.get("channel")
        if channel == "system":
            return True
        if channel not in client.channels:
            return False
        if not client.task_ids:
            return True
        payload = event.get("payload") or {}
        task_id = payload.get("task_id") or event.get("entity_id")
        return str(task_id) in client.task_ids

    async def publish(self, event: dict[str, Any]) -> None:
        self._counter += 1
        payload = json.dumps({**event, "seq": self._counter})
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if not self._wants(client, event):
                continue
            try:
                await client.ws.send_text(payload)
            except (RuntimeError, WebSocketDisconnect):
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        with self._lock:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), loop)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop anywhere: nobody can be connected.
            return
        self.attach_loop(loop)
        loop.create_task(self.publish(event))


hub = WebSocketHub()
