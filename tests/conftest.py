"""Shared fixtures: an in-memory stand-in for CDPPage."""

import asyncio
import json
import re
from typing import Any, Callable

import pytest

from kioskremote.exceptions import BindingExistsError
from kioskremote.interceptor import MARKER, ResourceInterceptor, interceptor_source

_LAUNCH_RE = re.compile(rf"window\.{MARKER}\.launch\((\"[^\"]+\"), (\"[^\"]+\"), ")
_CLEANUP_RE = re.compile(rf"window\.{MARKER}\.cleanup\((\"[^\"]+\")\)")


class FakePage:
    """Records what the executor asks of a page and lets tests play the page's part.

    - `results` maps an expression to the value evaluate() returns for it
      (a callable is called, an exception instance is raised).
    - `valid_scripts` lists sources that parse as classic scripts.
    - `on_launch(script_id, binding)` runs inside the launch evaluation, the
      way a script's synchronous startup runs inside the real one.
    """

    def __init__(self, target_id: str = "fake-target"):
        self.target_id = target_id
        self.interceptor = ResourceInterceptor(self)
        self.evaluated: list[str] = []
        self.results: dict[str, Any] = {}
        self.valid_scripts: set[str] = set()
        self.bindings: dict[str, Callable[[str], Any]] = {}
        self.removed_bindings: list[str] = []
        self.installed = False
        self.launched: list[str] = []
        self.cleaned: list[str] = []
        self.launch_result = True
        self.on_launch: Callable[[str, str], Any] | None = None
        self.cleanup_error: Exception | None = None
        self.expose_error: Exception | None = None
        self.is_alive = True
        self._lost_listeners: list[Callable[[str], Any]] = []

    # ── CDPPage surface ──────────────────────────────────────────────────────

    async def evaluate(self, expression: str, await_promise: bool = True, timeout: float | None = None) -> Any:
        self.evaluated.append(expression)
        launch = _LAUNCH_RE.search(expression)
        if launch:
            script_id, binding = json.loads(launch.group(1)), json.loads(launch.group(2))
            self.installed = True
            if not self.launch_result:
                return False
            self.launched.append(script_id)
            if self.on_launch is not None:
                self.on_launch(script_id, binding)
            return True
        cleanup = _CLEANUP_RE.search(expression)
        if cleanup:
            script_id = json.loads(cleanup.group(1))
            self.cleaned.append(script_id)
            if self.cleanup_error is not None:
                raise self.cleanup_error
            return script_id in self.launched
        if expression == interceptor_source():
            installed_now = not self.installed
            self.installed = True
            return installed_now

        value = self.results.get(expression)
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value()
        return value

    async def is_valid_script(self, source: str) -> bool:
        return source in self.valid_scripts

    async def expose_binding(self, name: str, callback: Callable[[str], Any]):
        if self.expose_error is not None:
            raise self.expose_error
        if name in self.bindings:
            raise BindingExistsError(name)
        self.bindings[name] = callback

    async def remove_binding(self, name: str) -> bool:
        if self.bindings.pop(name, None) is None:
            return False
        self.removed_bindings.append(name)
        return True

    def on_lost(self, listener: Callable[[str], Any]):
        self._lost_listeners.append(listener)

    # ── Test controls ────────────────────────────────────────────────────────

    def call_binding(self, binding: str, message: dict):
        """Deliver a bridge call the way Runtime.bindingCalled would."""
        callback = self.bindings.get(binding)
        if callback is not None:
            callback(json.dumps(message))

    def emit(self, script_id: str, data: Any):
        self.call_binding(f"__kioskBridge_{script_id}", {"type": "data", "data": data})

    def finish(self, script_id: str):
        self.call_binding(f"__kioskBridge_{script_id}", {"type": "end"})

    def lose(self, reason: str = "navigated"):
        self.interceptor.reset()
        for listener in list(self._lost_listeners):
            listener(reason)


async def settle(rounds: int = 10):
    """Let spawned stop tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_page():
    return FakePage()
