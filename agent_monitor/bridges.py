"""
Transports that carry fabric events out of the process.

``WebSocketBridge`` serves the fabric to live clients using ``websockets``;
``WebhookForwarder`` POSTs events to an HTTP endpoint with ``httpx``. Both
only talk to the :class:`~agent_monitor.events.NotificationFabric`, so the
lifecycle engine never knows which transport is in use.

Client frames understood by the WebSocket bridge::

    {"type": "subscribe", "topics": ["agents", "tasks"]}
    {"type": "unsubscribe", "topics": ["tasks"]}
    {"type": "command", "agentId": "main", "command": "restart"}
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from agent_monitor.events import NotificationFabric, Observer
from agent_monitor.types import MonitorEvent

logger = logging.getLogger(__name__)


def _topic_list(frame: dict[str, Any]) -> list[str]:
    topics = frame.get("topics", [])
    if isinstance(topics, str):
        return [topics]
    return [t for t in topics if isinstance(t, str)] if isinstance(topics, list) else []


class WebSocketBridge:
    """Serves the notification fabric over WebSocket connections."""

    def __init__(self, fabric: NotificationFabric) -> None:
        self._fabric = fabric
        self._server: Any | None = None

    async def serve(self, host: str = "127.0.0.1", port: int = 8765) -> Any:
        """Start listening. Returns the ``websockets`` server object."""
        self._server = await websockets.serve(self.handle, host, port)
        logger.info("WebSocket bridge listening on %s:%d", host, port)
        return self._server

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def handle(self, ws: Any) -> None:
        """Run one client connection until it closes.

        The connection becomes an observer; closing it drops every
        subscription it held. If the fabric drops the observer first
        (queue overflow), the socket is closed too.
        """
        observer = self._fabric.observer()
        logger.info("Client connected: %s", observer.id)
        reader = asyncio.create_task(self._read_loop(ws, observer))
        dropped = asyncio.create_task(observer.wait_closed())
        sender = asyncio.create_task(self._send_loop(ws, observer))
        try:
            await asyncio.wait({reader, dropped}, return_when=asyncio.FIRST_COMPLETED)
            if not reader.done():
                logger.info("Closing connection of %s: dropped by the fabric", observer.id)
                await ws.close()
        finally:
            self._fabric.disconnect(observer)
            for task in (reader, dropped, sender):
                task.cancel()
            await asyncio.gather(reader, dropped, sender, return_exceptions=True)
            logger.info("Client disconnected: %s", observer.id)

    async def _read_loop(self, ws: Any, observer: Observer) -> None:
        try:
            async for raw in ws:
                self.handle_frame(observer, raw)
        except ConnectionClosed:
            pass

    def handle_frame(self, observer: Observer, raw: str | bytes) -> None:
        """Apply one client frame. Malformed frames are ignored."""
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("Ignoring non-JSON frame from %s", observer.id)
            return
        if not isinstance(frame, dict):
            return

        kind = frame.get("type")
        if kind == "subscribe":
            self._fabric.subscribe(observer, _topic_list(frame))
        elif kind == "unsubscribe":
            self._fabric.unsubscribe(observer, _topic_list(frame))
        elif kind == "command":
            agent_id, command = frame.get("agentId"), frame.get("command")
            if isinstance(agent_id, str) and isinstance(command, str):
                self._fabric.route_command(agent_id, command, frame.get("payload"))
            else:
                logger.debug("Ignoring command frame without agentId/command from %s", observer.id)
        else:
            logger.debug("Ignoring frame type %r from %s", kind, observer.id)

    async def _send_loop(self, ws: Any, observer: Observer) -> None:
        try:
            async for event in observer.events():
                await ws.send(event.model_dump_json())
        except ConnectionClosed:
            logger.debug("Send loop for %s ended: connection closed", observer.id)


class WebhookForwarder:
    """POSTs every event on the given topics to a webhook URL."""

    def __init__(
        self,
        fabric: NotificationFabric,
        url: str,
        topics: Iterable[str],
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._fabric = fabric
        self.url = url
        self.topics = list(topics)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(headers=headers, timeout=timeout)
        self._observer: Observer | None = None
        self._task: asyncio.Task[None] | None = None
        self.delivered = 0
        self.failed = 0

    def attach(self) -> Observer:
        """Subscribe without starting the background loop."""
        if self._observer is None:
            self._observer = self._fabric.observer()
            self._fabric.subscribe(self._observer, self.topics)
        return self._observer

    def start(self) -> None:
        """Subscribe and forward events from a background task."""
        observer = self.attach()
        if self._task is None:
            self._task = asyncio.create_task(self._forward_loop(observer))

    async def _forward_loop(self, observer: Observer) -> None:
        try:
            async for event in observer.events():
                await self.forward(event)
        except asyncio.CancelledError:
            pass

    async def flush(self) -> int:
        """Forward everything already queued. Returns the number sent."""
        if self._observer is None:
            return 0
        sent = 0
        for event in self._observer.drain():
            if await self.forward(event):
                sent += 1
        return sent

    async def forward(self, event: MonitorEvent) -> bool:
        """POST one event. Failures are logged and counted, never raised."""
        try:
            response = await self._client.post(self.url, json=event.model_dump(mode="json"))
        except httpx.HTTPError as exc:
            self.failed += 1
            logger.warning("Webhook delivery of %s to %s failed: %s", event.type, self.url, exc)
            return False
        if response.status_code >= 400:
            self.failed += 1
            logger.warning(
                "Webhook %s rejected %s (%d)", self.url, event.type, response.status_code
            )
            return False
        self.delivered += 1
        return True

    async def close(self) -> None:
        if self._observer is not None:
            self._fabric.disconnect(self._observer)
            self._observer = None
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._owns_client:
            await self._client.aclose()
