"""HTTP API of the kiosk remote control server.

Kiosk commands (goto, click, type, screenshot, window) go straight to the
BrowserManager. Scripts go through the ScriptExecutor; a continuous script is
answered with a server-sent event stream, one `data:` message per channel item,
and its identity in the X-Script-Id header so the caller can stop it later.
"""

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask

from kioskremote.browser_manager import BrowserManager
from kioskremote.channel import ResultChannel
from kioskremote.config import Settings, load_settings
from kioskremote.exceptions import (
    BrowserUnavailableError,
    KioskError,
    PageEvaluationError,
)
from kioskremote.executor import ScriptExecutor

logger = logging.getLogger(__name__)

SCRIPT_ID_HEADER = "X-Script-Id"


class GotoRequest(BaseModel):
    url: str


class ClickRequest(BaseModel):
    selector: str


class TypeRequest(BaseModel):
    selector: str
    text: str


class ScriptRequest(BaseModel):
    script: str


class StopScriptRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    script_id: str = Field(alias="scriptId")


def _sse_event(data: dict) -> str:
    """Format a dict as an SSE event."""
    return f"data: {json.dumps(data)}\n\n"


def _error_status(error: KioskError) -> int:
    if isinstance(error, BrowserUnavailableError):
        return 503
    return 500


def _stream_channel(channel: ResultChannel):
    async def event_stream():
        try:
            async for item in channel:
                yield _sse_event(item)
        finally:
            # Consumer gone or stream finished; either way the script is done.
            channel.close("consumer_closed")

    return event_stream()


def _stream_response(channel: ResultChannel, script_id: str) -> StreamingResponse:
    """SSE response for a continuous script.

    The background close also runs when the client disconnects before the
    stream body was ever started.
    """

    async def close_channel():
        channel.close("consumer_closed")

    return StreamingResponse(
        _stream_channel(channel),
        media_type="text/event-stream",
        headers={SCRIPT_ID_HEADER: script_id, "Cache-Control": "no-cache"},
        background=BackgroundTask(close_channel),
    )


def create_app(
    settings: Settings | None = None,
    browser_manager: BrowserManager | None = None,
    executor: ScriptExecutor | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    browser_manager = browser_manager or BrowserManager(settings)
    executor = executor or ScriptExecutor(browser_manager.ensure_page)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if await browser_manager.init():
            logger.info(f"Server running at http://{settings.host}:{settings.port}")
        else:
            logger.error("Failed to initialize browser; will retry on first request")
        yield
        await executor.stop_all()
        await browser_manager.cleanup()

    app = FastAPI(title="kioskremote", lifespan=lifespan)
    app.state.settings = settings
    app.state.browser_manager = browser_manager
    app.state.executor = executor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[SCRIPT_ID_HEADER],
    )

    @app.exception_handler(KioskError)
    async def kiosk_error_handler(request: Request, exc: KioskError):
        logger.error(f"{request.url.path} failed: {exc}")
        body = {"error": str(exc)}
        if isinstance(exc, PageEvaluationError) and exc.details:
            body["details"] = exc.details
        return JSONResponse(body, status_code=_error_status(exc))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"{request.url.path} failed unexpectedly: {exc}", exc_info=True)
        return JSONResponse({"error": str(exc)}, status_code=500)

    @app.get("/")
    async def read_root():
        return {
            "status": "Kiosk remote control running",
            "browser": browser_manager.is_initialized,
            "activeScripts": len(executor.registry),
        }

    # ── Kiosk commands ───────────────────────────────────────────────────────

    @app.post("/api/goto")
    async def goto(body: GotoRequest):
        await browser_manager.goto(body.url)
        return {"success": True}

    @app.post("/api/click")
    async def click(body: ClickRequest):
        await browser_manager.click(body.selector)
        return {"success": True}

    @app.post("/api/type")
    async def type_text(body: TypeRequest):
        await browser_manager.type(body.selector, body.text)
        return {"success": True}

    @app.get("/api/screenshot")
    async def screenshot():
        png = await browser_manager.screenshot()
        return Response(content=png, media_type="image/png")

    @app.post("/api/browser/show")
    async def show_browser():
        await browser_manager.show()
        return {"success": True}

    @app.post("/api/browser/hide")
    async def hide_browser():
        await browser_manager.hide()
        return {"success": True}

    @app.post("/api/browser/close")
    async def close_browser():
        await executor.stop_all()
        await browser_manager.cleanup()
        return {"success": True, "message": "Browser closed successfully"}

    @app.post("/api/browser/restart")
    async def restart_browser():
        await executor.stop_all()
        await browser_manager.restart()
        return {"success": True, "message": "Browser restarted successfully"}

    # ── Scripts ──────────────────────────────────────────────────────────────

    @app.post("/api/script/execute")
    async def execute_script(body: ScriptRequest):
        result = await executor.execute(body.script)
        return {"success": True, "result": result}

    @app.post("/api/script/continuous")
    async def execute_continuous_script(body: ScriptRequest):
        channel, script_id = await executor.execute_continuous(body.script)
        return _stream_response(channel, script_id)

    @app.post("/api/script/stop")
    async def stop_script(body: StopScriptRequest):
        stopped = await executor.stop_script(body.script_id)
        return {"success": stopped}

    @app.get("/api/scripts")
    async def list_scripts():
        return {"scripts": executor.list_scripts()}

    return app


app = create_app()
