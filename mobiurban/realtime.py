"""Subscription to the backend's change feed and fan-out to browser listeners."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

import anyio
import websockets

from .backend import BackendError
from .models import DriverListing

logger = logging.getLogger("mobiurban.realtime")

HEARTBEAT_INTERVAL = 25.0
DRIVER_UPDATES_TOPIC = "driver-updates"
LOAD_ERROR_MESSAGE = "Erro ao carregar motoristas online"
FEED_LOST_MESSAGE = "Conexão em tempo real perdida. Recarregue a página para continuar recebendo atualizações."

ChangeCallback = Callable[[Dict[str, Any]], Awaitable[None] | None]


class RealtimeError(RuntimeError):
    """Raised when the change feed cannot be joined or is closed by the server."""


class RealtimeChannel:
    """A single channel on the backend's Phoenix-style realtime socket."""

    def __init__(
        self,
        url: str,
        api_key: str,
        topic: str,
        *,
        table: str,
        schema: str = "public",
        event: str = "*",
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._topic = f"realtime:{topic}"
        self._table = table
        self._schema = schema
        self._event = event
        self._heartbeat_interval = heartbeat_interval
        self._connect = connect
        self._ref = 0

    @property
    def topic(self) -> str:
        return self._topic

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def join_message(self) -> Dict[str, Any]:
        return {
            "topic": self._topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"ack": False, "self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [
                        {"event": self._event, "schema": self._schema, "table": self._table}
                    ],
                },
                "access_token": self._api_key,
            },
            "ref": self._next_ref(),
        }

    def heartbeat_message(self) -> Dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    def leave_message(self) -> Dict[str, Any]:
        return {"topic": self._topic, "event": "phx_leave", "payload": {}, "ref": self._next_ref()}

    async def _send_heartbeats(self, socket: Any) -> None:
        while True:
            await anyio.sleep(self._heartbeat_interval)
            await socket.send(json.dumps(self.heartbeat_message()))

    async def _handle(self, raw: str | bytes, on_change: ChangeCallback) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring undecodable realtime frame")
            return
        if not isinstance(message, dict):
            return

        event = message.get("event")
        payload = message.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}

        if event == "phx_reply":
            if payload.get("status") == "error" and message.get("topic") == self._topic:
                raise RealtimeError(f"Subscription to {self._topic} was rejected: {payload.get('response')}")
            return
        if event in {"phx_error", "phx_close"} and message.get("topic") == self._topic:
            raise RealtimeError(f"Channel {self._topic} was closed by the server")
        if event == "system" and payload.get("status") == "error":
            raise RealtimeError(str(payload.get("message") or "Realtime system error"))
        if event != "postgres_changes":
            return

        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        logger.debug("Change received on %s: %s", self._topic, data.get("type"))
        result = on_change(data)
        if inspect.isawaitable(result):
            await result

    async def listen(self, on_change: ChangeCallback) -> None:
        """Join the channel and deliver changes until the socket closes."""

        try:
            async with self._connect(self._url) as socket:
                await socket.send(json.dumps(self.join_message()))
                logger.info("Subscribed to %s", self._topic)
                heartbeats = asyncio.create_task(self._send_heartbeats(socket))
                try:
                    async for raw in socket:
                        await self._handle(raw, on_change)
                finally:
                    heartbeats.cancel()
                    with suppress(asyncio.CancelledError, Exception):
                        await heartbeats
                    with suppress(Exception):
                        await socket.send(json.dumps(self.leave_message()))
        except websockets.ConnectionClosed as exc:
            raise RealtimeError(f"Realtime connection closed: {exc}") from exc
        except OSError as exc:
            raise RealtimeError(f"Failed to connect to the realtime service: {exc}") from exc


@dataclass(frozen=True)
class FeedEvent:
    """Message delivered to every listener of a :class:`DriverFeed`."""

    type: str
    drivers: List[DriverListing] = field(default_factory=list)
    message: Optional[str] = None


class DriverFeed:
    """Re-fetches online drivers on every change and publishes the snapshot."""

    def __init__(
        self,
        fetch: Callable[[], List[DriverListing]],
        channel_factory: Callable[[], RealtimeChannel],
        *,
        queue_size: int = 8,
    ) -> None:
        self._fetch = fetch
        self._channel_factory = channel_factory
        self._queue_size = queue_size
        self._listeners: Set[asyncio.Queue[FeedEvent]] = set()
        self._task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue[FeedEvent]]:
        """Register a listener for the lifetime of the context."""

        queue: asyncio.Queue[FeedEvent] = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._listeners.add(queue)
            if not self.running:
                self._task = asyncio.create_task(self._run())
        try:
            yield queue
        finally:
            task: Optional[asyncio.Task[None]] = None
            async with self._lock:
                self._listeners.discard(queue)
                if not self._listeners and self._task is not None:
                    task, self._task = self._task, None
                    task.cancel()
            if task is not None:
                with suppress(asyncio.CancelledError):
                    await task
                logger.info("Driver feed stopped; no listeners remain")

    def publish(self, event: FeedEvent) -> None:
        for queue in list(self._listeners):
            if queue.full():
                with suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
            queue.put_nowait(event)

    async def refresh(self) -> None:
        """Fetch the online drivers once and publish the result."""

        try:
            drivers = await anyio.to_thread.run_sync(self._fetch)
        except BackendError as exc:
            logger.error("Failed to refresh online drivers: %s", exc)
            self.publish(FeedEvent(type="error", message=LOAD_ERROR_MESSAGE))
            return
        self.publish(FeedEvent(type="drivers", drivers=drivers))

    async def _on_change(self, change: Dict[str, Any]) -> None:
        await self.refresh()

    async def _run(self) -> None:
        channel = self._channel_factory()
        try:
            await channel.listen(self._on_change)
        except asyncio.CancelledError:
            raise
        except RealtimeError as exc:
            logger.warning("Driver feed subscription ended: %s", exc)
        except Exception:
            logger.exception("Unhandled exception in driver feed subscription")
        else:
            logger.warning("Driver feed subscription closed by the server")
        self.publish(FeedEvent(type="error", message=FEED_LOST_MESSAGE))


__all__ = [
    "DRIVER_UPDATES_TOPIC",
    "DriverFeed",
    "FeedEvent",
    "RealtimeChannel",
    "RealtimeError",
]
