"""Script execution inside the live page.

One-shot scripts are evaluated once and their value returned. Continuous
scripts get an identity, a bridge binding named after it, and a result
channel; they run until one of these happens first:

- the script finishes on its own (body settled, no tracked timers or
  observers left),
- someone calls stop_script(id),
- the consumer of the channel goes away,
- the page navigates or its connection drops.

Every one of those paths ends in ScriptRegistry.stop(id), which tears the
script down exactly once.
"""

import asyncio
import json
import logging
import weakref
from functools import partial
from typing import Any, Awaitable, Callable

from kioskremote.channel import ResultChannel
from kioskremote.exceptions import ScriptSetupError
from kioskremote.page import CDPPage
from kioskremote.registry import ScriptExecution, ScriptMode, ScriptRegistry

logger = logging.getLogger(__name__)

BRIDGE_PREFIX = "__kioskBridge_"

PageProvider = Callable[[], Awaitable[CDPPage]]


def bridge_name(script_id: str) -> str:
    return f"{BRIDGE_PREFIX}{script_id}"


def wrap_function_body(source: str) -> str:
    """Expression that runs `source` as the body of an async function."""
    return f"(async () => {{\n{source}\n}})()"


class ScriptExecutor:
    """Runs caller-supplied scripts in the page and manages their lifecycle."""

    def __init__(self, get_page: PageProvider, registry: ScriptRegistry | None = None):
        self._get_page = get_page
        self.registry = registry or ScriptRegistry()
        self._watched_pages: weakref.WeakSet = weakref.WeakSet()
        self._tasks: set[asyncio.Task] = set()

    # ── One-shot ─────────────────────────────────────────────────────────────

    async def execute(self, source: str) -> Any:
        """Evaluate script text once and return its value.

        Text that parses as a classic script is evaluated as-is and yields its
        completion value. Text that only makes sense as a function body (a
        top-level `return` or `await`) runs inside an async function.
        Page-side exceptions propagate as PageEvaluationError.
        """
        page = await self._get_page()
        if await page.is_valid_script(source):
            expression = source
        else:
            expression = wrap_function_body(source)
        return await page.evaluate(expression)

    # ── Continuous ───────────────────────────────────────────────────────────

    async def execute_continuous(self, source: str) -> tuple[ResultChannel, str]:
        """Start a long-running script; returns its channel and identity.

        The script body sees three names: `sendResult(data)` posts an event on
        the channel, `tracked` creates timers/observers explicitly owned by
        this script, and `scriptId` is its identity.
        """
        page = await self._get_page()
        self._watch(page)

        script_id = self.registry.generate_id()
        channel = ResultChannel(script_id)
        binding = bridge_name(script_id)
        exposed = False
        try:
            await page.interceptor.ensure_installed()
            await page.expose_binding(binding, partial(self._on_bridge_message, channel))
            exposed = True
            if not await page.interceptor.launch(script_id, binding, source):
                raise ScriptSetupError(f"Page refused to launch {script_id}")
        except Exception as e:
            logger.error(f"Failed to start script {script_id}: {e}")
            channel.close("setup_failed")
            self.registry.release_id(script_id)
            await self._discard_setup(page, script_id, binding, exposed)
            if isinstance(e, ScriptSetupError):
                raise
            raise ScriptSetupError(f"Failed to start script: {e}") from e

        self.registry.register(
            script_id,
            channel,
            partial(self._cleanup, page, script_id, binding, channel),
            mode=ScriptMode.CONTINUOUS,
            page=page,
            binding=binding,
        )
        stop = partial(self._spawn_stop, script_id)
        channel.on_end(stop)
        channel.on_close(stop)
        if channel.closed:
            # finished before registration completed
            stop()

        logger.info(f"Started continuous script {script_id}")
        return channel, script_id

    async def stop_script(self, script_id: str) -> bool:
        return await self.registry.stop(script_id)

    async def stop_all(self):
        """Stop every script and wait for pending stop triggers to settle."""
        stopped = await self.registry.stop_all()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if stopped:
            logger.info(f"Stopped {stopped} script(s)")

    def list_scripts(self) -> list[dict[str, Any]]:
        return self.registry.list_scripts()

    def get(self, script_id: str) -> ScriptExecution | None:
        return self.registry.get(script_id)

    # ── Internals ────────────────────────────────────────────────────────────

    def _on_bridge_message(self, channel: ResultChannel, payload: str):
        try:
            message = json.loads(payload) if payload else {}
        except ValueError:
            logger.warning(f"Dropping malformed bridge payload from {channel.script_id}")
            return
        kind = message.get("type")
        if kind == "data":
            channel.write(message.get("data"))
        elif kind == "end":
            logger.debug(f"Script {channel.script_id} finished on its own")
            channel.end()
        else:
            logger.warning(f"Unknown bridge message type from {channel.script_id}: {kind!r}")

    async def _cleanup(self, page: CDPPage, script_id: str, binding: str, channel: ResultChannel):
        try:
            await page.interceptor.cleanup(script_id)
        finally:
            try:
                await page.remove_binding(binding)
            finally:
                channel.close("stopped")

    async def _discard_setup(self, page: CDPPage, script_id: str, binding: str, exposed: bool):
        """Undo whatever part of a failed setup reached the page."""
        try:
            await page.interceptor.cleanup(script_id)
        except Exception as e:
            logger.debug(f"Page cleanup after failed setup of {script_id} failed: {e}")
        if exposed:
            try:
                await page.remove_binding(binding)
            except Exception as e:
                logger.debug(f"Removing binding {binding} failed: {e}")

    def _spawn_stop(self, script_id: str):
        if script_id not in self.registry:
            return
        self._spawn(self.registry.stop(script_id))

    def _spawn(self, coro: Awaitable):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _watch(self, page: CDPPage):
        if page in self._watched_pages:
            return
        self._watched_pages.add(page)
        page.on_lost(partial(self._on_page_lost, page))

    def _on_page_lost(self, page: CDPPage, reason: str):
        if not any(s.page is page for s in self.registry.executions()):
            return
        logger.warning(f"Page {page.target_id} {reason}; stopping its scripts")
        self._spawn(self.registry.stop_where(lambda s: s.page is page))

