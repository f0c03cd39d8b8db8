"""Utilities for pushing driver feed events to browsers over WebSockets."""
from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Any, Callable, Dict

import anyio
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .realtime import FeedEvent


async def send_websocket_json(websocket: WebSocket, payload: dict[str, Any]) -> None:
    """Safely send a JSON payload to a websocket client."""

    if websocket.client_state == WebSocketState.DISCONNECTED:
        return
    with suppress(Exception):
        await websocket.send_json(payload)


async def relay_feed_events(
    websocket: WebSocket,
    queue: asyncio.Queue[FeedEvent],
    render: Callable[[FeedEvent], Dict[str, object]],
) -> None:
    """Forward feed events to ``websocket`` until the client goes away."""

    cancel_exc = anyio.get_cancelled_exc_class()

    async def pump_feed_to_websocket() -> None:
        while True:
            event = await queue.get()
            await send_websocket_json(websocket, render(event))

    async def watch_websocket(task_group) -> None:
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except (WebSocketDisconnect, cancel_exc):
            pass
        finally:
            task_group.cancel_scope.cancel()

    async with anyio.create_task_group() as task_group:
        task_group.start_soon(pump_feed_to_websocket)
        task_group.start_soon(watch_websocket, task_group)

    if websocket.application_state != WebSocketState.DISCONNECTED:
        with suppress(Exception):
            await websocket.close()


__all__ = ["relay_feed_events", "send_websocket_json"]
