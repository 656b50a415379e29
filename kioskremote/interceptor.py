"""Host-side handle on the page-resident resource interceptor.

The shim itself lives in assets/interceptor.js. It is installed into a page on
first use and uninstalls itself when the last script it tracks is cleaned up.
This object keeps the matching host-side reference count so the page owner
knows which identities are still attributed in the page.

Attribution window: resources are attributed to the identity that is
"current" while they are created. A script is current for its synchronous
startup and inside callbacks of timers and observers it owns. Code resumed
after an `await` has no current identity and must use the `tracked` helpers
handed to every script.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kioskremote.page import CDPPage

logger = logging.getLogger(__name__)

MARKER = "__kioskInterceptor"
_ASSET = Path(__file__).parent / "assets" / "interceptor.js"


@lru_cache(maxsize=1)
def interceptor_source() -> str:
    """JavaScript that installs the interceptor; evaluates to true if it installed."""
    return _ASSET.read_text(encoding="utf-8").strip()


def launch_expression(script_id: str, binding: str, source: str) -> str:
    """Expression that starts `source` under `script_id`.

    The install step is repeated in front of the launch so both happen in one
    page task; a cleanup that uninstalled the shim in between cannot strand
    the launch.
    """
    return (
        f"{interceptor_source()};\n"
        f"window.{MARKER}.launch({json.dumps(script_id)}, {json.dumps(binding)}, {json.dumps(source)})"
    )


def cleanup_expression(script_id: str) -> str:
    return f"window.{MARKER} ? window.{MARKER}.cleanup({json.dumps(script_id)}) : false"


def installed_expression() -> str:
    return f"typeof window.{MARKER} !== 'undefined'"


class ResourceInterceptor:
    """Installs, drives and tracks the interceptor shim of one page."""

    def __init__(self, page: "CDPPage"):
        self._page = page
        self._active: set[str] = set()

    @property
    def active_ids(self) -> frozenset[str]:
        return frozenset(self._active)

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def ensure_installed(self) -> bool:
        """Install the shim unless the page already has it. True if this call installed it."""
        installed = bool(await self._page.evaluate(interceptor_source()))
        if installed:
            logger.debug("Resource interceptor installed in page")
        return installed

    async def is_installed(self) -> bool:
        return bool(await self._page.evaluate(installed_expression()))

    async def launch(self, script_id: str, binding: str, source: str) -> bool:
        """Start a script in the page with `script_id` as the current identity."""
        self._active.add(script_id)
        try:
            launched = bool(await self._page.evaluate(launch_expression(script_id, binding, source)))
        except Exception:
            self._active.discard(script_id)
            raise
        if not launched:
            self._active.discard(script_id)
        return launched

    async def cleanup(self, script_id: str) -> bool:
        """Release every resource attributed to `script_id` in the page.

        The host-side count drops even if the page call fails, so a page that
        went away never pins the count above zero.
        """
        self._active.discard(script_id)
        return bool(await self._page.evaluate(cleanup_expression(script_id)))

    async def handles(self, script_id: str) -> dict | None:
        """Live timer/observer counts for a script, or None if the page does not know it."""
        return await self._page.evaluate(
            f"window.{MARKER} ? window.{MARKER}.handles({json.dumps(script_id)}) : null"
        )

    def reset(self):
        """Forget every identity; the page context they lived in is gone."""
        if self._active:
            logger.info(f"Page context lost with {len(self._active)} script(s) attributed")
        self._active.clear()
