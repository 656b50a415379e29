"""Thin DevTools protocol client over an aiohttp WebSocket.

One CDPConnection talks to one target (a page). Commands are correlated with
their responses by message id; protocol events are handed to listeners in the
order they arrive on the socket, from the single read loop, so a listener
that only enqueues work preserves event order.
"""

import asyncio
import json
import logging
from typing import Any, Callable

import aiohttp

from kioskremote.exceptions import CDPError

logger = logging.getLogger(__name__)

EventListener = Callable[[dict], Any]
CloseListener = Callable[[], Any]


# ── Target discovery ─────────────────────────────────────────────────────────

async def get_targets(http_url: str, session: aiohttp.ClientSession | None = None) -> list[dict]:
    """List DevTools targets from the browser's /json endpoint."""
    if session is not None:
        async with session.get(f"{http_url}/json") as resp:
            return await resp.json(content_type=None)
    async with aiohttp.ClientSession() as s:
        async with s.get(f"{http_url}/json") as resp:
            return await resp.json(content_type=None)


async def get_version(http_url: str) -> dict:
    """Browser version info; raises aiohttp.ClientError while the browser is down."""
    async with aiohttp.ClientSession() as s:
        async with s.get(f"{http_url}/json/version") as resp:
            return await resp.json(content_type=None)


async def new_page_target(http_url: str, url: str = "about:blank") -> dict:
    async with aiohttp.ClientSession() as s:
        async with s.put(f"{http_url}/json/new?{url}") as resp:
            return await resp.json(content_type=None)


def pick_page_target(targets: list[dict]) -> dict | None:
    """First ordinary page target, skipping devtools and extension pages."""
    for target in targets:
        if target.get("type") != "page":
            continue
        url = target.get("url", "")
        if url.startswith(("devtools://", "chrome-extension://")):
            continue
        return target
    return None


# ── CDPConnection ────────────────────────────────────────────────────────────

class CDPConnection:
    """Manages a WebSocket connection to a CDP target."""

    def __init__(self, ws_url: str, timeout: float = 30.0):
        self.ws_url = ws_url
        self.timeout = timeout
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._session: aiohttp.ClientSession | None = None
        self._msg_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._closed = False
        self._listeners: dict[str, list[EventListener]] = {}
        self._close_listeners: list[CloseListener] = []

    @property
    def is_alive(self) -> bool:
        return (
            not self._closed
            and self._ws is not None
            and not self._ws.closed
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def connect(self):
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.ws_url, max_msg_size=50 * 1024 * 1024)
        except Exception:
            await self._session.close()
            raise
        self._closed = False
        self._reader_task = asyncio.create_task(self._read_loop())

    async def close(self):
        self._closed = True
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self._ws:
            await self._ws.close()
        if self._session:
            await self._session.close()

    # ── Listeners ────────────────────────────────────────────────────────────

    def on(self, method: str, listener: EventListener):
        """Call listener(params) for every `method` event."""
        self._listeners.setdefault(method, []).append(listener)

    def on_close(self, listener: CloseListener):
        """Call listener() once when the socket goes away, for any reason."""
        self._close_listeners.append(listener)

    def _dispatch(self, method: str, params: dict):
        for listener in list(self._listeners.get(method, ())):
            try:
                listener(params)
            except Exception as e:
                logger.error(f"CDP listener for {method} failed: {e}", exc_info=True)

    # ── Read loop ────────────────────────────────────────────────────────────

    async def _read_loop(self):
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    msg_id = data.get("id")
                    if msg_id is not None:
                        future = self._pending.get(msg_id)
                        if future is not None and not future.done():
                            future.set_result(data)
                    elif "method" in data:
                        self._dispatch(data["method"], data.get("params", {}))
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._closed = True
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(CDPError("CDP connection closed"))
            listeners, self._close_listeners = self._close_listeners, []
            for listener in listeners:
                try:
                    listener()
                except Exception as e:
                    logger.error(f"CDP close listener failed: {e}", exc_info=True)

    async def send(self, method: str, params: dict | None = None, timeout: float | None = None) -> dict:
        """Send a CDP command and wait for the response."""
        if not self.is_alive:
            raise CDPError(f"CDP connection is closed (while sending {method})")
        self._msg_id += 1
        msg_id = self._msg_id
        message: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            message["params"] = params

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[msg_id] = future

        try:
            await self._ws.send_json(message)
            result = await asyncio.wait_for(future, timeout=timeout or self.timeout)
        except asyncio.TimeoutError:
            raise CDPError(f"CDP {method} timed out")
        except ConnectionResetError as e:
            raise CDPError(f"CDP {method} failed: {e}") from e
        finally:
            self._pending.pop(msg_id, None)

        if "error" in result:
            raise CDPError(f"CDP {method} error: {result['error']}")
        return result.get("result", {})

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *args):
        await self.close()
