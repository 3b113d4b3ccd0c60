from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], Union[None, Awaitable[None]]]


def _ws_url(base_url: str) -> str:
    url = base_url.rstrip("/")
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


# Event-stream transport: one websocket, JSON {"event", "data"} frames, fan-out to listeners
class RealtimeClient:
    def __init__(self, base_url: str, token: str):
        self.url = f"{_ws_url(base_url)}/ws?{urlencode({'token': token})}"
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._listeners: list[Listener] = []
        self._connect_lock = asyncio.Lock()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._ws is not None:
                return
            self._ws = await websockets.connect(self.url)
            self._reader = asyncio.create_task(self._read_loop(self._ws))
            logger.info("realtime.connected")

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        if self._ws is None:
            await self.connect()
        await self._ws.send(json.dumps({"event": event, "data": data}))

    async def _dispatch(self, event: str, data: dict) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event, data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("realtime.listener.error: event=%s", event)

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("realtime.frame.malformed")
                    continue
                await self._dispatch(frame.get("event", ""), frame.get("data") or {})
        except ConnectionClosed as e:
            logger.info("realtime.closed: %s", e)
        finally:
            if self._ws is ws:
                self._ws = None

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            await self._reader
            self._reader = None
