"""Page control over a single CDP target.

CDPPage is the collaborator the script executor and the HTTP routes drive:
evaluate script text, expose host callbacks into the page, and the plain
navigate / click / type / screenshot / window commands of the kiosk.
"""

import asyncio
import base64
import json
import logging
import math
from typing import Any, Callable

from kioskremote.cdp import CDPConnection
from kioskremote.exceptions import BindingExistsError, CDPError, PageEvaluationError
from kioskremote.interceptor import ResourceInterceptor

logger = logging.getLogger(__name__)

BindingCallback = Callable[[str], Any]
LostListener = Callable[[str], Any]

_UNSERIALIZABLE = {
    "NaN": math.nan,
    "Infinity": math.inf,
    "-Infinity": -math.inf,
    "-0": -0.0,
}


def _remote_value(remote: dict) -> Any:
    """Python value for a Runtime.RemoteObject fetched with returnByValue."""
    if "value" in remote:
        return remote["value"]
    unserializable = remote.get("unserializableValue")
    if unserializable is None:
        return None
    if unserializable in _UNSERIALIZABLE:
        return _UNSERIALIZABLE[unserializable]
    if unserializable.endswith("n"):
        return int(unserializable[:-1])
    return unserializable


def _exception_message(details: dict) -> str:
    exception = details.get("exception") or {}
    description = exception.get("description")
    if description:
        return description.splitlines()[0]
    if "value" in exception:
        return str(exception["value"])
    return details.get("text") or "Uncaught exception"


class CDPPage:
    """One browser tab, reached through its DevTools WebSocket."""

    def __init__(
        self,
        target_id: str,
        ws_url: str,
        timeout: float = 30.0,
        navigation_timeout: float = 30.0,
    ):
        self.target_id = target_id
        self.navigation_timeout = navigation_timeout
        self.connection = CDPConnection(ws_url, timeout=timeout)
        self.interceptor = ResourceInterceptor(self)
        self._bindings: dict[str, BindingCallback] = {}
        self._lost_listeners: list[LostListener] = []

    @property
    def is_alive(self) -> bool:
        return self.connection.is_alive

    @property
    def bindings(self) -> frozenset[str]:
        return frozenset(self._bindings)

    async def connect(self):
        await self.connection.connect()
        self.connection.on("Runtime.bindingCalled", self._on_binding_called)
        self.connection.on("Runtime.executionContextsCleared", self._on_contexts_cleared)
        self.connection.on_close(self._on_connection_closed)
        await self.connection.send("Runtime.enable")
        await self.connection.send("Page.enable")
        # Injected scripts are compiled with the Function constructor.
        await self.connection.send("Page.setBypassCSP", {"enabled": True})
        logger.info(f"Connected to page target {self.target_id}")

    async def close(self):
        await self.connection.close()

    # ── Page loss ────────────────────────────────────────────────────────────

    def on_lost(self, listener: LostListener):
        """Call listener(reason) when the document is replaced or the page goes away.

        reason is "navigated" or "closed".
        """
        self._lost_listeners.append(listener)

    def _notify_lost(self, reason: str):
        self.interceptor.reset()
        for listener in list(self._lost_listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.error(f"Page-lost listener failed: {e}", exc_info=True)

    def _on_contexts_cleared(self, params: dict):
        logger.debug(f"Execution contexts cleared on {self.target_id}")
        self._notify_lost("navigated")

    def _on_connection_closed(self):
        logger.warning(f"Lost CDP connection to page {self.target_id}")
        self._notify_lost("closed")

    # ── Evaluation ───────────────────────────────────────────────────────────

    async def evaluate(self, expression: str, await_promise: bool = True, timeout: float | None = None) -> Any:
        """Evaluate an expression in the page and return its JSON value.

        Raises PageEvaluationError if the page throws.
        """
        result = await self.connection.send(
            "Runtime.evaluate",
            {
                "expression": expression,
                "returnByValue": True,
                "awaitPromise": await_promise,
                "userGesture": True,
            },
            timeout=timeout,
        )
        details = result.get("exceptionDetails")
        if details:
            raise PageEvaluationError(_exception_message(details), details)
        return _remote_value(result.get("result", {}))

    async def is_valid_script(self, source: str) -> bool:
        """Whether `source` parses as a classic script, without running it."""
        result = await self.connection.send(
            "Runtime.compileScript",
            {
                "expression": source,
                "sourceURL": "kiosk-script.js",
                "persistScript": False,
            },
        )
        return "exceptionDetails" not in result

    # ── Bindings ─────────────────────────────────────────────────────────────

    async def expose_binding(self, name: str, callback: BindingCallback):
        """Expose window[name](payload: string) in the page; each call reaches callback."""
        if name in self._bindings:
            raise BindingExistsError(f"Binding already exposed: {name}")
        self._bindings[name] = callback
        try:
            await self.connection.send("Runtime.addBinding", {"name": name})
        except Exception:
            self._bindings.pop(name, None)
            raise

    async def remove_binding(self, name: str) -> bool:
        """Stop routing calls for `name`. Host-side routing is dropped even if the page is gone."""
        if self._bindings.pop(name, None) is None:
            return False
        if self.is_alive:
            await self.connection.send("Runtime.removeBinding", {"name": name})
        return True

    def _on_binding_called(self, params: dict):
        callback = self._bindings.get(params.get("name", ""))
        if callback is None:
            return
        callback(params.get("payload", ""))

    # ── Navigation and input ─────────────────────────────────────────────────

    async def _wait_for_load(self):
        """Wait for page load by polling readyState."""
        while True:
            try:
                state = await self.evaluate("document.readyState")
            except (CDPError, PageEvaluationError):
                # context torn down mid-navigation
                state = None
            if state == "complete":
                return
            await asyncio.sleep(0.25)

    async def navigate(self, url: str) -> dict:
        """Navigate the tab to a URL and wait for it to load."""
        logger.info(f"Navigating to: {url}")
        result = await self.connection.send("Page.navigate", {"url": url}, timeout=self.navigation_timeout)
        if result.get("errorText"):
            raise CDPError(f"Navigation to {url} failed: {result['errorText']}")
        try:
            await asyncio.wait_for(self._wait_for_load(), timeout=self.navigation_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Page load did not complete within {self.navigation_timeout}s: {url}")
        try:
            await self.evaluate(
                "document.fullscreenElement ? null : "
                "document.documentElement.requestFullscreen().catch(() => null)"
            )
        except PageEvaluationError as e:
            logger.warning(f"Failed to enter fullscreen: {e}")
        return result

    async def wait_for(self, selector: str, timeout: float = 5.0) -> bool:
        """Wait for a visible element matching selector. Returns True if found."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        expression = f"""
            (() => {{
                const el = document.querySelector({json.dumps(selector)});
                if (!el) return false;
                const rect = el.getBoundingClientRect();
                return rect.width > 0 && rect.height > 0;
            }})()
        """
        while loop.time() < deadline:
            if await self.evaluate(expression):
                return True
            await asyncio.sleep(0.25)
        return False

    async def click(self, selector: str, timeout: float = 5.0) -> dict:
        """Click an element by CSS selector."""
        if not await self.wait_for(selector, timeout=timeout):
            raise PageEvaluationError(f"Element not found: {selector}")
        pos = await self.evaluate(f"""
            (() => {{
                const el = document.querySelector({json.dumps(selector)});
                if (!el) return null;
                el.scrollIntoView({{ block: 'center', inline: 'center' }});
                const rect = el.getBoundingClientRect();
                return {{ x: rect.x + rect.width / 2, y: rect.y + rect.height / 2 }};
            }})()
        """)
        if not pos:
            raise PageEvaluationError(f"Element not found: {selector}")

        x, y = pos["x"], pos["y"]
        for event_type in ("mousePressed", "mouseReleased"):
            await self.connection.send("Input.dispatchMouseEvent", {
                "type": event_type,
                "x": x,
                "y": y,
                "button": "left",
                "clickCount": 1,
            })
        return {"clicked": selector, "x": x, "y": y}

    async def type_text(self, selector: str, text: str) -> dict:
        """Replace the value of an input element with text."""
        found = await self.evaluate(f"""
            (() => {{
                const el = document.querySelector({json.dumps(selector)});
                if (!el) return false;
                el.focus();
                if ('value' in el) el.value = '';
                return true;
            }})()
        """)
        if not found:
            raise PageEvaluationError(f"Element not found: {selector}")
        await self.connection.send("Input.insertText", {"text": text})
        return {"typed": text, "into": selector}

    async def screenshot(self) -> bytes:
        """PNG screenshot of the viewport."""
        result = await self.connection.send("Page.captureScreenshot", {
            "format": "png",
            "captureBeyondViewport": False,
        })
        return base64.b64decode(result.get("data", ""))

    # ── Window ───────────────────────────────────────────────────────────────

    async def _window_id(self) -> int:
        result = await self.connection.send("Browser.getWindowForTarget", {"targetId": self.target_id})
        return result["windowId"]

    async def show_window(self, width: int, height: int):
        """Bring the kiosk window up fullscreen."""
        window_id = await self._window_id()
        await self.connection.send("Browser.setWindowBounds", {
            "windowId": window_id,
            "bounds": {"windowState": "normal", "left": 0, "top": 0, "width": width, "height": height},
        })
        await asyncio.sleep(0.1)
        await self.connection.send("Browser.setWindowBounds", {
            "windowId": window_id,
            "bounds": {"windowState": "fullscreen"},
        })
        await self.connection.send("Page.bringToFront")

    async def hide_window(self):
        """Minimize the kiosk window."""
        window_id = await self._window_id()
        await self.connection.send("Browser.setWindowBounds", {
            "windowId": window_id,
            "bounds": {"windowState": "normal"},
        })
        await asyncio.sleep(0.1)
        await self.connection.send("Browser.setWindowBounds", {
            "windowId": window_id,
            "bounds": {"windowState": "minimized"},
        })
