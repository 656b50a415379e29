"""Kiosk browser lifecycle: launch or attach, keep a current page, reconnect.

The manager owns the Chromium process (when it launched one) and the CDPPage
of the kiosk tab. Everything else asks it for a page through ensure_page(),
which transparently reconnects when the browser went away.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path

import aiohttp

from kioskremote.cdp import get_targets, get_version, new_page_target, pick_page_target
from kioskremote.config import Settings
from kioskremote.exceptions import BrowserUnavailableError
from kioskremote.page import CDPPage

logger = logging.getLogger(__name__)

RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY = 1.0
STARTUP_TIMEOUT = 20.0


class BrowserManager:
    """Launches (or attaches to) the kiosk browser and hands out its page."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.page: CDPPage | None = None
        self.is_initialized = False
        self._process: asyncio.subprocess.Process | None = None
        self._lock = asyncio.Lock()

    # ── Startup ──────────────────────────────────────────────────────────────

    async def init(self) -> bool:
        """Start the browser and attach to its page. Returns False on failure."""
        try:
            if self.settings.browser.launch:
                await self._launch()
            await self._attach()
            self.is_initialized = True
            logger.info("Browser initialized successfully")
            return True
        except Exception as e:
            logger.error(f"Browser initialization failed: {e}", exc_info=True)
            await self._reset()
            return False

    async def _browser_responds(self) -> bool:
        try:
            await get_version(self.settings.browser.cdp_http_url)
            return True
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError):
            return False

    def _prepare_profile(self) -> Path:
        profile_path = self.settings.browser.profile_path
        if profile_path.exists():
            logger.info(f"Profile directory already exists: {profile_path}")
        else:
            profile_path.mkdir(parents=True, exist_ok=True)
            os.chmod(profile_path, 0o777)
            logger.info(f"Created new profile directory: {profile_path}")
        # A crashed Chromium leaves these behind and refuses to start.
        for lock_file in profile_path.glob("Singleton*"):
            try:
                lock_file.unlink()
            except OSError as e:
                logger.warning(f"Could not remove {lock_file}: {e}")
        return profile_path

    async def _launch(self):
        if await self._browser_responds():
            logger.info("Browser already listening on the debugging port; attaching")
            return

        executable = self.settings.browser.executable_path
        if not Path(executable).exists() and shutil.which(executable) is None:
            raise BrowserUnavailableError(f"Chromium not found at {executable}")
        logger.info(f"Found Chromium at {executable}")

        self._prepare_profile()
        args = self.settings.chromium_args()
        logger.info(f"Launching browser: {executable} {' '.join(args)}")
        self._process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT
        while loop.time() < deadline:
            if self._process.returncode is not None:
                raise BrowserUnavailableError(f"Browser exited during startup (code {self._process.returncode})")
            if await self._browser_responds():
                return
            await asyncio.sleep(0.25)
        raise BrowserUnavailableError(f"Browser did not open its debugging port within {STARTUP_TIMEOUT}s")

    async def _attach(self):
        http_url = self.settings.browser.cdp_http_url
        target = pick_page_target(await get_targets(http_url))
        if target is None:
            logger.info("No page target found, creating one")
            target = await new_page_target(http_url)

        page = CDPPage(
            target["id"],
            target["webSocketDebuggerUrl"],
            timeout=self.settings.command_timeout,
            navigation_timeout=self.settings.navigation_timeout,
        )
        await page.connect()
        page.on_lost(self._on_page_lost)
        self.page = page

    def _on_page_lost(self, reason: str):
        if reason == "closed":
            logger.warning("Browser disconnected")
            self.is_initialized = False
            self.page = None

    # ── Page access ──────────────────────────────────────────────────────────

    async def ensure_page(self) -> CDPPage:
        """Current page, reconnecting first if the browser went away."""
        async with self._lock:
            if self.is_initialized and self.page is not None and self.page.is_alive:
                return self.page
            logger.info("Browser needs initialization, attempting to reconnect...")
            if not await self.reconnect():
                raise BrowserUnavailableError("Failed to ensure browser and page availability")
            assert self.page is not None
            return self.page

    async def reconnect(self) -> bool:
        await self._reset()
        for attempt in range(1, RECONNECT_ATTEMPTS + 1):
            if await self.init():
                logger.info("Browser reconnected successfully")
                return True
            logger.error(f"Reconnection attempt failed. Retries left: {RECONNECT_ATTEMPTS - attempt}")
            await asyncio.sleep(RECONNECT_DELAY)
        return False

    # ── Kiosk commands ───────────────────────────────────────────────────────

    async def goto(self, url: str):
        page = await self.ensure_page()
        await page.navigate(url)

    async def click(self, selector: str):
        page = await self.ensure_page()
        await page.click(selector)

    async def type(self, selector: str, text: str):
        page = await self.ensure_page()
        await page.type_text(selector, text)

    async def screenshot(self) -> bytes:
        page = await self.ensure_page()
        return await page.screenshot()

    async def show(self):
        page = await self.ensure_page()
        await page.show_window(self.settings.display.width, self.settings.display.height)

    async def hide(self):
        page = await self.ensure_page()
        await page.hide_window()

    # ── Shutdown ─────────────────────────────────────────────────────────────

    async def _reset(self):
        page, self.page = self.page, None
        self.is_initialized = False
        if page is not None:
            try:
                await page.close()
            except Exception as e:
                logger.debug(f"Closing page connection failed: {e}")

    async def cleanup(self):
        """Close the page connection and stop the browser process we started."""
        logger.info("Cleaning up browser resources...")
        await self._reset()
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Browser did not exit after SIGTERM; killing it")
            process.kill()
            await process.wait()

    async def restart(self):
        await self.cleanup()
        if not await self.init():
            raise BrowserUnavailableError("Failed to restart browser")
